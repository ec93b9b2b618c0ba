"""
RecoveryEngine

Purpose
-------
One-shot repair pass run at boot, before the live watchers start. Live event
subscriptions only see events emitted after they start, so a provision whose
job result landed while this process was down never learns its vault.

For every provision in `active` or `awaiting_secrets` whose vault is missing
or a placeholder (zero address or a known infrastructure contract), the full
JobResultSubmitted history for its call id is re-scanned and the same
decode-and-lookup logic as the live watcher is re-applied.

The same scan backs the manual re-check of a single stuck provision.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from core.contracts import (
    Provision,
    ProvisionPhase,
    is_placeholder_vault,
    is_zero_address,
)
from core.errors import LedgerError
from core.provision_codec import extract_job_submission, has_output
from core.provision_watcher import REVERTED_MESSAGE, lookup_bot_vault, matches_log, result_fields

REPAIRABLE_PHASES = (ProvisionPhase.ACTIVE, ProvisionPhase.AWAITING_SECRETS)


async def _with_timeout(coro, sec: float):
    try:
        return await asyncio.wait_for(coro, timeout=sec)
    except asyncio.TimeoutError:
        return None


def _unsettled(p: Provision, fields: Dict[str, Any]) -> Dict[str, Any]:
    # keep values an earlier step already settled (e.g. workflow id from activation)
    return {
        k: v for k, v in fields.items()
        if k in ("phase", "vault_address") or getattr(p, k, None) in (None, "")
    }


class RecoveryEngine:
    component_name = "RecoveryEngine"

    def __init__(self, config, intent_manager, ledger_client, logger: Optional[logging.Logger] = None):
        self.config = config
        self.intents = intent_manager
        self.ledger = ledger_client
        self.logger = logger or logging.getLogger(self.component_name)
        self.scan_timeout = float(getattr(config, "HTTP_TIMEOUT_SEC", 15.0)) * 4
        self._ran = False

    @property
    def infrastructure(self) -> List[str]:
        return list(getattr(self.config, "infrastructure_addresses", []) or [])

    def needs_repair(self, p: Provision) -> bool:
        return p.phase in REPAIRABLE_PHASES and is_placeholder_vault(p.vault_address, self.infrastructure)

    async def run(self) -> int:
        """Run the reconciliation pass; only the first call per instance does any work."""
        if self._ran:
            self.logger.debug("Reconciliation already ran in this process; skipping.")
            return 0
        self._ran = True
        try:
            return await self.rebuild_state()
        except Exception:
            self.logger.error("Reconciliation pass failed", exc_info=True)
            return 0

    async def rebuild_state(self) -> int:
        candidates = [p for p in self.intents.list_all() if self.needs_repair(p)]
        if not candidates:
            self.logger.info("Reconciliation: nothing to repair.")
            return 0
        self.logger.info("Reconciliation: %d provision(s) missing a vault.", len(candidates))
        repaired = 0
        for p in candidates:
            try:
                if await self.repair(p):
                    repaired += 1
            except Exception:
                self.logger.warning("Reconciliation failed for provision %s", p.id, exc_info=True)
        self.logger.info("✅ Reconciliation done: %d/%d repaired.", repaired, len(candidates))
        return repaired

    async def _history(self, p: Provision):
        tangle = getattr(self.config, "TANGLE_ADDRESS", None)
        if is_zero_address(tangle) or p.call_id is None:
            return []
        filters: Dict[str, Any] = {"callId": p.call_id}
        if p.service_id is not None:
            filters["serviceId"] = p.service_id
        logs = await _with_timeout(
            self.ledger.get_logs(tangle, "tangle", "JobResultSubmitted", filters, 0, "latest"),
            self.scan_timeout,
        )
        return [log for log in (logs or []) if matches_log(p, log)]

    async def repair(self, p: Provision) -> bool:
        """Re-scan result history for one provision; True when a vault was recovered."""
        if p.call_id is None:
            self.logger.debug("Provision %s has no call id; cannot re-scan.", p.id)
            return False
        try:
            logs = await self._history(p)
        except LedgerError:
            self.logger.warning("History scan for provision %s failed", p.id, exc_info=True)
            return False

        with_output = [log for log in logs if has_output(log.args.get("output"))]
        if with_output:
            fields = await result_fields(self.ledger, self.config, p, with_output[-1])
        else:
            vault = await lookup_bot_vault(self.ledger, self.config, p.service_id, p.call_id)
            fields = {"vault_address": vault} if vault else {}

        fields = _unsettled(p, fields)
        if not fields:
            return False
        updated = await self.intents.update(p.id, fields)
        ok = updated is not None and not is_placeholder_vault(updated.vault_address, self.infrastructure)
        if ok:
            self.logger.info("Provision %s: recovered vault %s", p.id, updated.vault_address)
        return ok

    async def recheck(self, p: Provision) -> Optional[Provision]:
        """
        Manual re-check for a single provision: re-read its receipt when the
        call id is still unknown, then re-scan its result history.
        """
        if p.call_id is None and p.tx_hash and p.phase in (
            ProvisionPhase.PENDING_CONFIRMATION, ProvisionPhase.JOB_SUBMITTED
        ):
            receipt = await self.ledger.wait_for_receipt(p.tx_hash)
            if not receipt.succeeded:
                return await self.intents.update(
                    p.id, {"phase": ProvisionPhase.FAILED, "error_message": REVERTED_MESSAGE}
                )
            call_id, service_id = extract_job_submission(receipt)
            fields: Dict[str, Any] = {"phase": ProvisionPhase.JOB_SUBMITTED}
            if call_id is not None:
                fields["call_id"] = call_id
            if service_id is not None:
                fields["service_id"] = service_id
            p = await self.intents.update(p.id, fields) or p

        if p.call_id is None:
            return self.intents.get(p.id)

        logs = await self._history(p)
        if logs:
            with_output = [log for log in logs if has_output(log.args.get("output"))]
            log = with_output[-1] if with_output else logs[-1]
            fields = await result_fields(self.ledger, self.config, p, log)
            if p.phase in REPAIRABLE_PHASES:
                fields = _unsettled(p, fields)
            await self.intents.update(p.id, fields)
        elif self.needs_repair(p):
            await self.repair(p)
        return self.intents.get(p.id)
