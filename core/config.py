from dotenv import load_dotenv, find_dotenv
# Load the .env closest to the repo (not the caller's cwd)
load_dotenv(dotenv_path=find_dotenv(usecwd=True), override=False)

import os
import json
import logging
from typing import Any, Dict, List, Optional


logger = logging.getLogger("Config")
MASK = "****"
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw.strip())
    except ValueError:
        logger.warning("Invalid integer for %s=%r; using default %s", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw.strip())
    except ValueError:
        logger.warning("Invalid number for %s=%r; using default %s", name, raw, default)
        return default


def _env_json(name: str, default: Any) -> Any:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (ValueError, TypeError):
        logger.warning("Invalid JSON for %s; ignoring it.", name)
        return default


def _env_address(name: str) -> str:
    raw = (os.getenv(name) or "").strip()
    return raw if raw else ZERO_ADDRESS


def parse_service_ids(raw: Optional[str]) -> List[int]:
    """Parse a comma-separated service id list, skipping junk entries."""
    if not raw:
        return []
    out: List[int] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            sid = int(part)
        except ValueError:
            continue
        if sid >= 0 and sid not in out:
            out.append(sid)
    return out


def parse_service_vaults(raw: Any) -> Dict[int, List[str]]:
    """
    Normalize the static vault table. Accepts {"0": "0x.."} and
    {"0": ["0x..", "0x.."]}; zero/empty addresses are dropped.
    """
    out: Dict[int, List[str]] = {}
    if not isinstance(raw, dict):
        return out
    for key, value in raw.items():
        try:
            sid = int(key)
        except (TypeError, ValueError):
            continue
        values = value if isinstance(value, list) else [value]
        addrs = [str(v) for v in values if isinstance(v, str) and v and v.lower() != ZERO_ADDRESS]
        if addrs:
            out[sid] = addrs
    return out


class Config:
    """
    Centralized configuration for the bot arena tracker.
    - Safe local-devnet defaults; everything can be overridden via .env
    - Contract addresses default to the zero address, meaning "not deployed"
    """

    # ---------- Static (class-level) ----------
    RPC_URL = "http://127.0.0.1:8545"
    CHAIN_ID = 31337
    BLUEPRINT_ID = 0

    DISCOVERY_INTERVAL_SEC = 30.0
    PROGRESS_POLL_INTERVAL_SEC = 2.0
    PROGRESS_POLL_MAX_FAILURES = 5
    STUCK_THRESHOLD_SEC = 300.0
    EVENT_POLL_INTERVAL_SEC = 4.0
    RECEIPT_TIMEOUT_SEC = 300.0
    HTTP_TIMEOUT_SEC = 15.0

    MAX_PROVISIONS = 20
    MAX_DISMISSED_BOTS = 100
    OPERATOR_BOT_LIMIT = 200

    DATABASE_PATH = "arena_intents.db"
    DASHBOARD_HOST = "127.0.0.1"
    DASHBOARD_PORT = 8000

    # ----- helper -----
    @staticmethod
    def _mask(s: str, head: int = 4, tail: int = 2) -> str:
        if not s:
            return ""
        if len(s) <= head + tail:
            return MASK
        return f"{s[:head]}{MASK}{s[-tail:]}"

    def __init__(self):
        # Ledger
        self.RPC_URL = os.getenv("RPC_URL", Config.RPC_URL)
        self.CHAIN_ID = _env_int("CHAIN_ID", Config.CHAIN_ID)
        self.BLUEPRINT_ID = _env_int("BLUEPRINT_ID", Config.BLUEPRINT_ID)
        self.TANGLE_ADDRESS = _env_address("TANGLE_ADDRESS")
        self.TRADING_BLUEPRINT_ADDRESS = _env_address("TRADING_BLUEPRINT_ADDRESS")
        self.VAULT_FACTORY_ADDRESS = _env_address("VAULT_FACTORY_ADDRESS")

        # Static fallbacks used by discovery
        self.SERVICE_IDS = parse_service_ids(os.getenv("SERVICE_IDS", ""))
        self.SERVICE_VAULTS = parse_service_vaults(_env_json("SERVICE_VAULTS", {}))
        meta = _env_json("BOT_META", {})
        self.BOT_META: Dict[str, Dict[str, Any]] = meta if isinstance(meta, dict) else {}

        # Operator
        self.OPERATOR_API_URL = (os.getenv("OPERATOR_API_URL") or "").rstrip("/")
        self.OPERATOR_PRIVATE_KEY = os.getenv("OPERATOR_PRIVATE_KEY", "")
        self.OPERATOR_BOT_LIMIT = _env_int("OPERATOR_BOT_LIMIT", Config.OPERATOR_BOT_LIMIT)
        self.OWNER_ADDRESS = (os.getenv("OWNER_ADDRESS") or "").strip()

        # Cadences & caps
        self.DISCOVERY_INTERVAL_SEC = _env_float("DISCOVERY_INTERVAL_SEC", Config.DISCOVERY_INTERVAL_SEC)
        self.PROGRESS_POLL_INTERVAL_SEC = _env_float("PROGRESS_POLL_INTERVAL_SEC", Config.PROGRESS_POLL_INTERVAL_SEC)
        self.PROGRESS_POLL_MAX_FAILURES = _env_int("PROGRESS_POLL_MAX_FAILURES", Config.PROGRESS_POLL_MAX_FAILURES)
        self.STUCK_THRESHOLD_SEC = _env_float("STUCK_THRESHOLD_SEC", Config.STUCK_THRESHOLD_SEC)
        self.EVENT_POLL_INTERVAL_SEC = _env_float("EVENT_POLL_INTERVAL_SEC", Config.EVENT_POLL_INTERVAL_SEC)
        self.RECEIPT_TIMEOUT_SEC = _env_float("RECEIPT_TIMEOUT_SEC", Config.RECEIPT_TIMEOUT_SEC)
        self.HTTP_TIMEOUT_SEC = _env_float("HTTP_TIMEOUT_SEC", Config.HTTP_TIMEOUT_SEC)
        self.MAX_PROVISIONS = _env_int("MAX_PROVISIONS", Config.MAX_PROVISIONS)
        self.MAX_DISMISSED_BOTS = _env_int("MAX_DISMISSED_BOTS", Config.MAX_DISMISSED_BOTS)

        # Storage / surfaces
        self.DATABASE_PATH = os.getenv("DATABASE_PATH", Config.DATABASE_PATH)
        self.DASHBOARD_HOST = os.getenv("DASHBOARD_HOST", Config.DASHBOARD_HOST)
        self.DASHBOARD_PORT = _env_int("DASHBOARD_PORT", Config.DASHBOARD_PORT)
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self.LOG_FILE = os.getenv("LOG_FILE") or None

        logger.info(
            "⚙️ Config loaded: rpc=%s chain=%s blueprint=%s operator=%s key=%s",
            self.RPC_URL,
            self.CHAIN_ID,
            self.BLUEPRINT_ID,
            self.OPERATOR_API_URL or "<unset>",
            self._mask(self.OPERATOR_PRIVATE_KEY) or "<unset>",
        )

    # ----- derived -----
    @property
    def infrastructure_addresses(self) -> List[str]:
        """Known non-bot contract addresses (lowercased, zero excluded)."""
        out = []
        for addr in (self.TANGLE_ADDRESS, self.TRADING_BLUEPRINT_ADDRESS, self.VAULT_FACTORY_ADDRESS):
            if addr and addr.lower() != ZERO_ADDRESS:
                out.append(addr.lower())
        return out

    def has_contract(self, name: str) -> bool:
        addr = getattr(self, name, ZERO_ADDRESS) or ZERO_ADDRESS
        return addr.lower() != ZERO_ADDRESS

    def bot_meta(self, service_id: Optional[int]) -> Dict[str, Any]:
        if service_id is None:
            return {}
        meta = self.BOT_META.get(str(service_id))
        return meta if isinstance(meta, dict) else {}
