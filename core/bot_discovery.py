"""
BotDiscovery: derives the canonical bot list from the ledger, the operator
API and the Local Intent Store.

Each run is strictly ordered:
  1. service enumeration (activation events, static list, intent services)
  2. per-service operators/active flag and vault resolution
     (registry -> factory -> env table -> intent)
  3. vault reads, then asset symbol/decimals for distinct assets
  4. ledger bot construction
  5. operator listing merge
  6. intent fallback merge

Phases 1-4 and phase 5 are best-effort blocks; phase 6 always runs, so a
user's own intents stay visible when every other source is down. The engine
never raises to its caller.
"""

import asyncio
import copy
import logging
from typing import Any, Dict, List, Optional, Tuple

from core.contracts import (
    Bot,
    BotStatus,
    Provision,
    ProvisionPhase,
    SourceRecord,
    VaultEntry,
    VaultSource,
    ZERO_ADDRESS,
    fold_records,
    is_placeholder_vault,
    is_zero_address,
    norm_address,
)
from core.errors import LedgerError
from core.ledger_client import ContractCall

logger = logging.getLogger("BotDiscovery")

DEFAULT_STRATEGY = "momentum"
DEFAULT_SYMBOL = "???"
DEFAULT_DECIMALS = 18


def _intent_fields(p: Provision) -> Dict[str, Any]:
    return {
        "name": p.name or None,
        "strategy_type": p.strategy_type or None,
        "created_at": p.created_at,
        "provision_id": p.id,
        "service_id": p.service_id,
        "sandbox_id": p.sandbox_id,
        "workflow_id": p.workflow_id,
    }


def _meta_fields(meta: Dict[str, Any]) -> Dict[str, Any]:
    created = meta.get("createdAt")
    return {
        "name": meta.get("name") or None,
        "strategy_type": meta.get("strategyType") or None,
        "created_at": created if isinstance(created, (int, float)) else None,
    }


def _operator_fields(entry: Dict[str, Any]) -> Dict[str, Any]:
    def _flag(key):
        v = entry.get(key)
        return bool(v) if v is not None else None

    return {
        "operator_bot_id": str(entry["id"]) if entry.get("id") is not None else None,
        "operator_address": entry.get("operator_address") or None,
        "strategy_type": entry.get("strategy_type") or None,
        "sandbox_id": entry.get("sandbox_id") or None,
        "trading_active": _flag("trading_active"),
        "secrets_configured": _flag("secrets_configured"),
        "paper_trade": _flag("paper_trade"),
    }


def intent_status(phase: ProvisionPhase) -> BotStatus:
    if phase == ProvisionPhase.ACTIVE:
        return BotStatus.ACTIVE
    if phase == ProvisionPhase.AWAITING_SECRETS:
        return BotStatus.NEEDS_CONFIG
    return BotStatus.STOPPED


def ledger_status(provisioned: bool, active: bool, paused: bool) -> BotStatus:
    if not provisioned or not active:
        return BotStatus.STOPPED
    if paused:
        return BotStatus.PAUSED
    return BotStatus.ACTIVE


def operator_status(fields: Dict[str, Any]) -> BotStatus:
    if fields.get("trading_active"):
        return BotStatus.ACTIVE
    if fields.get("secrets_configured") is False:
        return BotStatus.NEEDS_CONFIG
    return BotStatus.STOPPED


def build_bot(bot_id: str, records: List[SourceRecord]) -> Bot:
    f = fold_records(records)
    sid = f.get("service_id")
    name = f.get("name") or (f"Bot #{sid}" if sid is not None else f"Bot {bot_id[-8:]}")
    if f.get("asset_suffix"):
        name = f"{name} ({f['asset_suffix']})"
    status = BotStatus(f.get("status", BotStatus.STOPPED))
    # operator override: trading inactive wins over an on-chain "active"
    if status == BotStatus.ACTIVE and f.get("trading_active") is False:
        status = BotStatus.STOPPED
    return Bot(
        id=bot_id,
        service_id=sid,
        name=name,
        operator_address=f.get("operator_address") or ZERO_ADDRESS,
        vault_address=f.get("vault_address") or "",
        strategy_type=f.get("strategy_type") or DEFAULT_STRATEGY,
        status=status,
        created_at=f.get("created_at") or 0,
        tvl=float(f.get("tvl") or 0.0),
        sandbox_id=f.get("sandbox_id"),
        trading_active=f.get("trading_active"),
        secrets_configured=f.get("secrets_configured"),
        paper_trade=f.get("paper_trade"),
        workflow_id=f.get("workflow_id"),
        operator_bot_id=f.get("operator_bot_id"),
        provision_id=f.get("provision_id"),
    )


class _RunState:
    """Per-run working set: bot id -> source records, in insertion order."""

    def __init__(self):
        self.records: Dict[str, List[SourceRecord]] = {}

    def add(self, bot_id: str, record: SourceRecord):
        self.records.setdefault(bot_id, []).append(record)

    def bots(self) -> List[Bot]:
        return [build_bot(bid, recs) for bid, recs in self.records.items()]


class BotDiscovery:
    def __init__(self, config, intent_manager, ledger_client, operator_client=None, logger=None):
        self.config = config
        self.intents = intent_manager
        self.ledger = ledger_client
        self.operator = operator_client
        self.logger = logger or logging.getLogger("BotDiscovery")
        self.interval = float(getattr(config, "DISCOVERY_INTERVAL_SEC", 30.0))
        self.owner = norm_address(getattr(config, "OWNER_ADDRESS", ""))
        self._bots: List[Bot] = []
        self._stop_event = asyncio.Event()
        self._alive = True
        self.last_run_ok: Optional[bool] = None

    @property
    def bots(self) -> List[Bot]:
        return list(self._bots)

    def _addr(self, name: str) -> Optional[str]:
        addr = getattr(self.config, name, None)
        return None if is_zero_address(addr) else addr

    @property
    def _infrastructure(self) -> List[str]:
        return list(getattr(self.config, "infrastructure_addresses", []) or [])

    # ---------------- entry points ----------------

    async def discover(self) -> List[Bot]:
        intents = self.intents.list_all()
        state = _RunState()
        ok = True

        try:
            await self._ledger_phase(state, intents)
        except Exception:
            ok = False
            self.logger.warning("Ledger discovery failed; degrading to fallbacks.", exc_info=True)
            state = _RunState()

        if self.operator is not None and getattr(self.operator, "enabled", True):
            trial = copy.deepcopy(state)
            try:
                await self._operator_phase(trial, intents)
                state = trial
            except Exception:
                ok = False
                self.logger.warning("Operator bot listing unavailable; skipping merge.", exc_info=True)

        self._intent_phase(state, intents)

        dismissed = set(self.intents.dismissed_bots())
        bots = [b for b in state.bots() if b.id not in dismissed]
        self.last_run_ok = ok
        self.logger.debug("Discovery produced %d bots (ok=%s)", len(bots), ok)
        return bots

    async def refresh(self) -> List[Bot]:
        bots = await self.discover()
        if self._alive:
            self._bots = bots
        return bots

    async def run_loop(self):
        self.logger.info("🔎 BotDiscovery loop started (interval=%.1fs)", self.interval)
        while not self._stop_event.is_set():
            try:
                await self.refresh()
            except Exception:
                self.logger.error("Discovery iteration failed", exc_info=True)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    async def stop(self):
        self._alive = False
        self._stop_event.set()

    # ---------------- phases 1-4 ----------------

    async def _ledger_phase(self, state: _RunState, intents: List[Provision]):
        service_ids = await self._enumerate_services(intents)
        if not service_ids:
            return
        services, entries = await self._resolve_services(service_ids, intents)
        if not entries:
            return
        vault_data = await self._read_vaults(entries)
        self._build_ledger_bots(state, services, entries, vault_data, intents)

    async def _enumerate_services(self, intents: List[Provision]) -> List[int]:
        ids: List[int] = []
        tangle = self._addr("TANGLE_ADDRESS")
        if tangle:
            try:
                logs = await self.ledger.get_logs(
                    tangle, "tangle", "ServiceActivated",
                    {"blueprintId": int(getattr(self.config, "BLUEPRINT_ID", 0))},
                    0, "latest",
                )
                for log in logs:
                    sid = log.args.get("serviceId")
                    if sid is not None and int(sid) not in ids:
                        ids.append(int(sid))
            except LedgerError:
                self.logger.warning("ServiceActivated scan failed; using static service list.", exc_info=True)
        if not ids:
            ids = [int(s) for s in getattr(self.config, "SERVICE_IDS", []) or []]
        for p in intents:
            if p.service_id is not None and int(p.service_id) not in ids:
                ids.append(int(p.service_id))
        return ids

    async def _resolve_services(
        self, service_ids: List[int], intents: List[Provision]
    ) -> Tuple[Dict[int, Dict[str, Any]], List[VaultEntry]]:
        services: Dict[int, Dict[str, Any]] = {
            sid: {"operators": [], "active": False, "provisioned": False} for sid in service_ids
        }

        tangle = self._addr("TANGLE_ADDRESS")
        if tangle:
            calls = []
            for sid in service_ids:
                calls.append(ContractCall(tangle, "tangle", "getServiceOperators", (sid,)))
                calls.append(ContractCall(tangle, "tangle", "isServiceActive", (sid,)))
            results = await self.ledger.batch_read(calls)
            for i, sid in enumerate(service_ids):
                ops, active = results[2 * i], results[2 * i + 1]
                services[sid]["operators"] = [str(o) for o in (ops or [])]
                services[sid]["active"] = bool(active)

        vaults: Dict[int, List[Tuple[str, VaultSource, Optional[str]]]] = {sid: [] for sid in service_ids}

        registry = self._addr("TRADING_BLUEPRINT_ADDRESS")
        if registry:
            calls = []
            for sid in service_ids:
                calls.append(ContractCall(registry, "registry", "botVaults", (sid,)))
                calls.append(ContractCall(registry, "registry", "instanceVault", (sid,)))
            results = await self.ledger.batch_read(calls)
            for i, sid in enumerate(service_ids):
                found = list(results[2 * i] or [])
                if results[2 * i + 1]:
                    found.append(results[2 * i + 1])
                vaults[sid] += [(str(a), VaultSource.REGISTRY, None) for a in found]

        factory = self._addr("VAULT_FACTORY_ADDRESS")
        pending = [sid for sid in service_ids if not self._real(vaults[sid])]
        if factory and pending:
            calls = [ContractCall(factory, "factory", "getServiceVaults", (sid,)) for sid in pending]
            results = await self.ledger.batch_read(calls)
            for sid, found in zip(pending, results):
                vaults[sid] += [(str(a), VaultSource.FACTORY, None) for a in (found or [])]

        static = getattr(self.config, "SERVICE_VAULTS", {}) or {}
        for sid in service_ids:
            if not self._real(vaults[sid]) and static.get(sid):
                vaults[sid] += [(a, VaultSource.ENV, None) for a in static[sid]]

        for sid in service_ids:
            if self._real(vaults[sid]):
                continue
            for p in intents:
                if p.service_id == sid and not is_placeholder_vault(p.vault_address, self._infrastructure):
                    vaults[sid].append((p.vault_address, VaultSource.INTENT, p.id))

        entries: List[VaultEntry] = []
        seen = set()
        for sid in service_ids:
            for addr, source, pid in vaults[sid]:
                key = norm_address(addr)
                if is_zero_address(key) or key in seen:
                    continue
                seen.add(key)
                entries.append(VaultEntry(service_id=sid, vault_address=addr, source=source, provision_id=pid))
                services[sid]["provisioned"] = True
        return services, entries

    @staticmethod
    def _real(found) -> bool:
        return any(not is_zero_address(a) for a, _, _ in found)

    async def _read_vaults(self, entries: List[VaultEntry]) -> List[Dict[str, Any]]:
        calls = []
        for e in entries:
            calls.append(ContractCall(e.vault_address, "vault", "totalAssets"))
            calls.append(ContractCall(e.vault_address, "vault", "paused"))
            calls.append(ContractCall(e.vault_address, "vault", "asset"))
        results = await self.ledger.batch_read(calls)

        data = []
        assets: List[str] = []
        for i in range(len(entries)):
            total, paused, asset = results[3 * i], results[3 * i + 1], results[3 * i + 2]
            asset_key = "" if is_zero_address(asset) else norm_address(asset)
            if asset_key and asset_key not in assets:
                assets.append(asset_key)
            data.append({"total_assets": total, "paused": bool(paused), "asset": asset_key, "orig_asset": asset})

        # one symbol/decimals pair per distinct asset, in first-seen order
        meta: Dict[str, Tuple[str, int]] = {}
        if assets:
            originals = {d["asset"]: d["orig_asset"] for d in data if d["asset"]}
            calls = []
            for a in assets:
                calls.append(ContractCall(originals[a], "erc20", "symbol"))
                calls.append(ContractCall(originals[a], "erc20", "decimals"))
            results = await self.ledger.batch_read(calls)
            for j, a in enumerate(assets):
                sym, dec = results[2 * j], results[2 * j + 1]
                meta[a] = (sym if sym else DEFAULT_SYMBOL, int(dec) if dec is not None else DEFAULT_DECIMALS)

        for d in data:
            sym, dec = meta.get(d["asset"], (DEFAULT_SYMBOL, DEFAULT_DECIMALS))
            d["symbol"] = sym
            total = d["total_assets"]
            d["tvl"] = (int(total) / (10 ** dec)) if total else 0.0
        return data

    def _build_ledger_bots(self, state, services, entries, vault_data, intents):
        per_service: Dict[int, int] = {}
        for e in entries:
            per_service[e.service_id] = per_service.get(e.service_id, 0) + 1

        for e, d in zip(entries, vault_data):
            svc = services[e.service_id]
            bot_id = norm_address(e.vault_address)
            ops = svc["operators"]
            state.add(bot_id, SourceRecord(e.source, {
                "service_id": e.service_id,
                "vault_address": e.vault_address,
                "operator_address": ops[0] if ops else None,
                "tvl": d["tvl"],
                "status": ledger_status(svc["provisioned"], svc["active"], d["paused"]),
                "asset_suffix": d["symbol"] if per_service[e.service_id] > 1 else None,
            }))
            meta = self.config.bot_meta(e.service_id) if hasattr(self.config, "bot_meta") else {}
            if meta:
                state.add(bot_id, SourceRecord(VaultSource.ENV, _meta_fields(meta)))
            prov = self._match_provision(intents, vault=e.vault_address, service_id=e.service_id)
            if prov is not None:
                state.add(bot_id, SourceRecord(VaultSource.INTENT, _intent_fields(prov)))

    @staticmethod
    def _match_provision(intents, vault=None, service_id=None, sandbox_id=None) -> Optional[Provision]:
        v = norm_address(vault)
        if v:
            for p in intents:
                if norm_address(p.vault_address) == v:
                    return p
        if sandbox_id:
            for p in intents:
                if p.sandbox_id and p.sandbox_id == sandbox_id:
                    return p
        if service_id is not None:
            for p in intents:
                if p.service_id == service_id and p.phase != ProvisionPhase.FAILED:
                    return p
        return None

    # ---------------- phase 5 ----------------

    async def _operator_phase(self, state: _RunState, intents: List[Provision]):
        entries = await self.operator.list_bots()
        infra = set(self._infrastructure)
        for entry in entries:
            vault = norm_address(entry.get("vault_address"))
            fields = _operator_fields(entry)
            if vault and vault in state.records:
                state.add(vault, SourceRecord(VaultSource.OPERATOR, fields))
                continue
            if is_zero_address(vault) or vault in infra:
                self.logger.debug("Skipping operator entry %s (vault=%r)", entry.get("id"), vault)
                continue
            fields["vault_address"] = entry.get("vault_address")
            fields["status"] = operator_status(fields)
            fields["service_id"] = entry.get("service_id")
            created = entry.get("created_at")
            fields["created_at"] = created if isinstance(created, (int, float)) else None
            state.add(vault, SourceRecord(VaultSource.OPERATOR, fields))
            prov = self._match_provision(intents, vault=vault, sandbox_id=fields.get("sandbox_id"))
            if prov is not None:
                state.add(vault, SourceRecord(VaultSource.INTENT, _intent_fields(prov)))

    # ---------------- phase 6 ----------------

    def _intent_phase(self, state: _RunState, intents: List[Provision]):
        infra = self._infrastructure
        built = state.bots()
        vaults = {norm_address(b.vault_address) for b in built if b.vault_address}
        linked = {b.provision_id for b in built if b.provision_id}
        for p in intents:
            if p.phase == ProvisionPhase.FAILED:
                continue
            if self.owner and norm_address(p.owner) != self.owner:
                continue
            synthetic = f"provision:{p.id}"
            vault = "" if is_placeholder_vault(p.vault_address, infra) else norm_address(p.vault_address)
            if synthetic in state.records or (vault and vault in vaults) or p.id in linked:
                continue
            fields = _intent_fields(p)
            fields["status"] = intent_status(p.phase)
            fields["vault_address"] = p.vault_address if vault else None
            bot_id = vault or synthetic
            state.add(bot_id, SourceRecord(VaultSource.INTENT, fields))
            if vault:
                vaults.add(vault)
