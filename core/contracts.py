# core/contracts.py
from __future__ import annotations
from dataclasses import dataclass, field, asdict, fields
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional
import time

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def is_zero_address(addr: Optional[str]) -> bool:
    return not addr or addr.lower() == ZERO_ADDRESS


def norm_address(addr: Optional[str]) -> str:
    return (addr or "").strip().lower()


def is_placeholder_vault(addr: Optional[str], infrastructure: Iterable[str] = ()) -> bool:
    """Empty, zero, or one of the known infrastructure contracts."""
    if is_zero_address(addr):
        return True
    return norm_address(addr) in {norm_address(a) for a in infrastructure}


class ProvisionPhase(str, Enum):
    PENDING_CONFIRMATION = "pending_confirmation"
    JOB_SUBMITTED = "job_submitted"
    JOB_PROCESSING = "job_processing"
    AWAITING_SECRETS = "awaiting_secrets"
    ACTIVE = "active"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _PHASE_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PHASES


_PHASE_RANK = {
    ProvisionPhase.PENDING_CONFIRMATION: 0,
    ProvisionPhase.JOB_SUBMITTED: 1,
    ProvisionPhase.JOB_PROCESSING: 2,
    ProvisionPhase.AWAITING_SECRETS: 3,
    ProvisionPhase.ACTIVE: 4,
    # failed sits outside the linear order
    ProvisionPhase.FAILED: 99,
}

TERMINAL_PHASES = frozenset({ProvisionPhase.ACTIVE, ProvisionPhase.FAILED})
EVENT_ELIGIBLE_PHASES = frozenset({ProvisionPhase.JOB_SUBMITTED, ProvisionPhase.JOB_PROCESSING})


def can_transition(current: ProvisionPhase, new: ProvisionPhase) -> bool:
    """
    Phase moves forward only. `failed` is reachable from every non-terminal
    phase; nothing leaves a terminal phase. Re-asserting the current phase is
    allowed (a no-op for the phase itself).
    """
    current = ProvisionPhase(current)
    new = ProvisionPhase(new)
    if current == new:
        return True
    if current.is_terminal:
        return False
    if new == ProvisionPhase.FAILED:
        return True
    return new.rank > current.rank


class BotStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    STOPPED = "stopped"
    NEEDS_CONFIG = "needs_config"


@dataclass
class Provision:
    id: str
    owner: str
    name: str
    strategy_type: str
    blueprint_id: str = "0"
    chain_id: int = 0
    phase: ProvisionPhase = ProvisionPhase.PENDING_CONFIRMATION
    operators: List[str] = field(default_factory=list)
    service_id: Optional[int] = None
    tx_hash: Optional[str] = None
    call_id: Optional[int] = None
    job_index: Optional[int] = None
    cost_wei: Optional[str] = None
    vault_address: Optional[str] = None
    sandbox_id: Optional[str] = None
    workflow_id: Optional[int] = None
    progress_phase: Optional[str] = None
    progress_detail: Optional[str] = None
    error_message: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def __post_init__(self):
        self.phase = ProvisionPhase(self.phase)

    @property
    def is_event_eligible(self) -> bool:
        return self.phase in EVENT_ELIGIBLE_PHASES and self.call_id is not None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["phase"] = self.phase.value
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Provision":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class Bot:
    id: str
    service_id: Optional[int]
    name: str
    operator_address: str
    vault_address: str
    strategy_type: str
    status: BotStatus
    created_at: float = 0
    tvl: float = 0.0
    # performance, filled by a separate enrichment step
    pnl_percent: float = 0.0
    pnl_absolute: float = 0.0
    sharpe_ratio: float = 0.0
    max_drawdown: float = 0.0
    win_rate: float = 0.0
    total_trades: int = 0
    # operator overlay
    sandbox_id: Optional[str] = None
    trading_active: Optional[bool] = None
    secrets_configured: Optional[bool] = None
    paper_trade: Optional[bool] = None
    workflow_id: Optional[int] = None
    operator_bot_id: Optional[str] = None
    provision_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = BotStatus(self.status).value
        return d


class VaultSource(str, Enum):
    """Where a discovered record came from; higher rank wins per field."""
    REGISTRY = "registry"
    FACTORY = "factory"
    OPERATOR = "operator"
    ENV = "env"
    INTENT = "intent"

    @property
    def rank(self) -> int:
        return _SOURCE_RANK[self]


_SOURCE_RANK = {
    VaultSource.REGISTRY: 50,
    VaultSource.FACTORY: 40,
    VaultSource.OPERATOR: 30,
    VaultSource.ENV: 20,
    VaultSource.INTENT: 10,
}


@dataclass
class SourceRecord:
    source: VaultSource
    fields: Dict[str, Any] = field(default_factory=dict)


def fold_records(records: Iterable[SourceRecord]) -> Dict[str, Any]:
    """Merge records into one field map, keeping the highest-ranked non-null value per field."""
    out: Dict[str, Any] = {}
    ordered = sorted(records, key=lambda r: r.source.rank, reverse=True)
    for rec in ordered:
        for k, v in rec.fields.items():
            if v is None:
                continue
            if k not in out:
                out[k] = v
    return out


@dataclass
class VaultEntry:
    service_id: int
    vault_address: str
    source: VaultSource
    provision_id: Optional[str] = None


@dataclass(frozen=True)
class ProvisionOutput:
    vault_address: str
    share_token: str
    sandbox_id: str
    workflow_id: int


@dataclass
class ProvisionProgress:
    phase: str
    progress_pct: float = 0.0
    message: str = ""
    sandbox_id: Optional[str] = None
    bot_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "ProvisionProgress":
        pct = data.get("progress_pct")
        try:
            pct = float(pct) if pct is not None else 0.0
        except (TypeError, ValueError):
            pct = 0.0
        meta = data.get("metadata")
        return cls(
            phase=str(data.get("phase") or ""),
            progress_pct=pct,
            message=str(data.get("message") or data.get("detail") or ""),
            sandbox_id=data.get("sandbox_id") or None,
            bot_id=data.get("bot_id") or None,
            metadata=meta if isinstance(meta, dict) else {},
        )

    @property
    def is_ready(self) -> bool:
        return self.progress_pct >= 100

    @property
    def is_failed(self) -> bool:
        return self.phase == "failed"
