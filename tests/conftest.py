import inspect

import pytest

from core.config import Config
from core.errors import LedgerError
from core.ledger_client import Receipt

TANGLE = "0x" + "11" * 20
REGISTRY = "0x" + "22" * 20
FACTORY = "0x" + "33" * 20
OWNER = "0x" + "0f" * 20

VAULT_A = "0x" + "a1" * 20
VAULT_B = "0x" + "b2" * 20
VAULT_C = "0x" + "c3" * 20
USDC = "0x" + "d4" * 20
WETH = "0x" + "e5" * 20

CONFIG_KEYS = (
    "RPC_URL", "CHAIN_ID", "BLUEPRINT_ID", "TANGLE_ADDRESS", "TRADING_BLUEPRINT_ADDRESS",
    "VAULT_FACTORY_ADDRESS", "SERVICE_IDS", "SERVICE_VAULTS", "BOT_META", "OPERATOR_API_URL",
    "OPERATOR_PRIVATE_KEY", "OPERATOR_BOT_LIMIT", "OWNER_ADDRESS", "DISCOVERY_INTERVAL_SEC",
    "PROGRESS_POLL_INTERVAL_SEC", "PROGRESS_POLL_MAX_FAILURES", "STUCK_THRESHOLD_SEC",
    "EVENT_POLL_INTERVAL_SEC", "RECEIPT_TIMEOUT_SEC", "HTTP_TIMEOUT_SEC", "MAX_PROVISIONS",
    "MAX_DISMISSED_BOTS", "DATABASE_PATH", "DASHBOARD_HOST", "DASHBOARD_PORT", "LOG_LEVEL", "LOG_FILE",
)


@pytest.fixture
def make_config(monkeypatch):
    """Build a Config from a clean environment plus the given overrides."""

    def _make(**env):
        for key in CONFIG_KEYS:
            monkeypatch.delenv(key, raising=False)
        env.setdefault("EVENT_POLL_INTERVAL_SEC", "0")
        env.setdefault("PROGRESS_POLL_INTERVAL_SEC", "0")
        for key, value in env.items():
            monkeypatch.setenv(key, str(value))
        return Config()

    return _make


class FakeLedger:
    """In-memory ledger: canned call results, event history and receipts."""

    def __init__(self):
        self.results = {}
        self.logs = {}
        self.receipts = {}
        self.handlers = {}
        self.fail = False
        self.reads = []
        self.receipt_requests = []
        self.subscriptions = []

    def set_call(self, address, function, args, value):
        self.results[(address.lower(), function, tuple(args))] = value

    def add_log(self, log):
        self.logs.setdefault(log.event, []).append(log)

    def _lookup(self, call):
        if self.fail:
            raise LedgerError("rpc down")
        self.reads.append(call)
        key = (call.address.lower(), call.function, tuple(call.args))
        if key not in self.results:
            raise LedgerError(f"execution reverted: {call.function}")
        value = self.results[key]
        if isinstance(value, Exception):
            raise value
        return value

    async def read_one(self, call):
        return self._lookup(call)

    async def batch_read(self, calls):
        if self.fail:
            raise LedgerError("rpc down")
        out = []
        for call in calls:
            try:
                out.append(self._lookup(call))
            except LedgerError:
                out.append(None)
        return out

    async def get_logs(self, address, abi, event, argument_filters=None, from_block=0, to_block="latest"):
        if self.fail:
            raise LedgerError("rpc down")
        out = []
        for log in self.logs.get(event, []):
            if all(log.args.get(k) == v for k, v in (argument_filters or {}).items()):
                out.append(log)
        return out

    async def wait_for_receipt(self, tx_hash, timeout=None):
        self.receipt_requests.append(tx_hash)
        value = self.receipts.get(tx_hash)
        if value is None:
            raise LedgerError(f"receipt for {tx_hash} unavailable")
        if isinstance(value, Exception):
            raise value
        return value

    def subscribe_to_event(self, address, abi, event, on_logs, argument_filters=None):
        self.subscriptions.append(event)
        self.handlers[event] = on_logs

        def _unsubscribe():
            self.handlers.pop(event, None)

        return _unsubscribe

    def subscribed(self, event):
        return event in self.handlers

    async def emit(self, event, logs):
        handler = self.handlers.get(event)
        if handler is None:
            return
        res = handler(logs)
        if inspect.isawaitable(res):
            await res

    async def close(self):
        self.handlers.clear()


class FakeOperator:
    def __init__(self, enabled=True):
        self.enabled = enabled
        self.signer_address = None
        self.bots = []
        self.progress = {}
        self.known_bots = {}
        self.by_call = {}
        self.secrets = []
        self.list_error = None
        self.activation = {}

    async def start(self):
        pass

    async def authenticate(self, force=False):
        return "token"

    async def close(self):
        pass

    async def list_bots(self, limit=None):
        if self.list_error is not None:
            raise self.list_error
        return [dict(b) for b in self.bots]

    async def find_bots(self, call_id, service_id):
        return list(self.by_call.get((call_id, service_id), []))

    async def get_bot(self, bot_id):
        return self.known_bots.get(bot_id)

    async def get_provision_progress(self, call_id):
        value = self.progress.get(call_id)
        if isinstance(value, Exception):
            raise value
        return value

    async def get_activation_progress(self, bot_id):
        return self.activation.get(bot_id)

    async def submit_secrets(self, bot_id, env_json):
        self.secrets.append((bot_id, env_json))
        return {"sandbox_id": "sbx-live", "workflow_id": 4}


def success_receipt(tx_hash, *logs):
    return Receipt(status="success", logs=list(logs), tx_hash=tx_hash)


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def operator():
    return FakeOperator()
