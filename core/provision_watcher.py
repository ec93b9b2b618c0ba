"""
ProvisionWatcher: advances provisions through their lifecycle.

    pending_confirmation -> job_submitted -> job_processing
        -> awaiting_secrets -> active          (failed from any non-terminal)

Receipt watchers (one task per pending transaction) and event watchers
(JobResultSubmitted / JobCompleted, keyed by call id) never write to the
store directly. They publish TransitionRequest objects to a queue drained by a
single applier task, so updates to one provision are applied one at a time.

Event subscriptions are edge-triggered on the set of event-eligible
provisions: established when the set becomes non-empty, torn down when it
becomes empty.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Set

from core.contracts import (
    EVENT_ELIGIBLE_PHASES,
    Provision,
    ProvisionPhase,
    is_zero_address,
)
from core.errors import LedgerError, OutputDecodeError
from core.ledger_client import ContractCall
from core.provision_codec import (
    JOB_COMPLETED,
    RESULT_PENDING,
    decode_provision_output,
    extract_job_submission,
    has_output,
    next_phase_for_output,
)

logger = logging.getLogger("ProvisionWatcher")

REVERTED_MESSAGE = "Transaction reverted"
RECEIPT_ATTEMPTS = 3


@dataclass
class TransitionRequest:
    provision_id: str
    fields: Dict[str, Any]
    reason: str = ""
    # apply only while the record is still in one of these phases
    only_in: Optional[FrozenSet[ProvisionPhase]] = None


async def lookup_bot_vault(ledger, config, service_id: Optional[int], call_id: Optional[int]) -> Optional[str]:
    """Per-bot vault from the registry's (service id, call id) lookup, if it exists yet."""
    registry = getattr(config, "TRADING_BLUEPRINT_ADDRESS", None)
    if is_zero_address(registry) or service_id is None or call_id is None:
        return None
    try:
        vault = await ledger.read_one(
            ContractCall(registry, "registry", "botVaultByCall", (int(service_id), int(call_id)))
        )
    except LedgerError:
        logger.debug("botVaultByCall(%s, %s) unavailable", service_id, call_id, exc_info=True)
        return None
    return None if is_zero_address(vault) else str(vault)


async def result_fields(ledger, config, provision: Provision, log) -> Dict[str, Any]:
    """
    Fields to merge for a JobResultSubmitted log that matches `provision`.
    Shared by the live watcher and the reconciliation pass.
    """
    sid = provision.service_id
    if sid is None and log.args.get("serviceId") is not None:
        sid = int(log.args["serviceId"])
    output = log.args.get("output")

    if not has_output(output):
        return {
            "phase": ProvisionPhase.JOB_PROCESSING,
            "service_id": sid,
            "progress_phase": RESULT_PENDING,
            "progress_detail": "Waiting for job output...",
        }

    decoded = None
    try:
        decoded = decode_provision_output(output)
    except OutputDecodeError:
        logger.warning(
            "Provision %s: could not decode job output for call %s; advancing without it.",
            provision.id, provision.call_id, exc_info=True,
        )

    fields: Dict[str, Any] = {
        "phase": next_phase_for_output(decoded),
        "service_id": sid,
        "progress_phase": None,
        "progress_detail": None,
    }
    if decoded is not None:
        fields["sandbox_id"] = decoded.sandbox_id or None
        fields["workflow_id"] = decoded.workflow_id
        if not is_zero_address(decoded.vault_address):
            fields["vault_address"] = decoded.vault_address

    vault = await lookup_bot_vault(ledger, config, sid, provision.call_id)
    if vault:
        fields["vault_address"] = vault
    return fields


def matches_log(provision: Provision, log) -> bool:
    cid = log.args.get("callId")
    if cid is None or provision.call_id is None or int(cid) != provision.call_id:
        return False
    sid = log.args.get("serviceId")
    if provision.service_id is not None and sid is not None and int(sid) != provision.service_id:
        return False
    return True


class ProvisionWatcher:
    component_name = "ProvisionWatcher"

    def __init__(self, config, intent_manager, ledger_client, logger: Optional[logging.Logger] = None):
        self.config = config
        self.intents = intent_manager
        self.ledger = ledger_client
        self.logger = logger or logging.getLogger(self.component_name)
        self.retry_delay = float(getattr(config, "EVENT_POLL_INTERVAL_SEC", 4.0))
        self._requests: asyncio.Queue = asyncio.Queue()
        self._receipt_tasks: Dict[str, asyncio.Task] = {}
        # receipt read, transition possibly still queued
        self._receipt_done: Set[str] = set()
        self._unsubscribers: List[Callable[[], None]] = []
        self._applier: Optional[asyncio.Task] = None
        self._unsub_store: Optional[Callable[[], None]] = None
        self._alive = False

    @property
    def subscribed(self) -> bool:
        return bool(self._unsubscribers)

    async def start(self):
        self._alive = True
        self._applier = asyncio.create_task(self._apply_loop())
        self._unsub_store = self.intents.subscribe(self._on_store_change)
        await self._on_store_change(self.intents.snapshot())
        self.logger.info("👀 ProvisionWatcher started.")

    async def stop(self):
        self._alive = False
        if self._unsub_store:
            self._unsub_store()
            self._unsub_store = None
        self._teardown_events()
        tasks = list(self._receipt_tasks.values())
        if self._applier:
            tasks.append(self._applier)
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._receipt_tasks.clear()
        self._receipt_done.clear()
        self._applier = None
        self.logger.info("ProvisionWatcher stopped.")

    # ---------------- transitions ----------------

    async def publish(self, request: TransitionRequest):
        if not self._alive:
            self.logger.debug("Discarding late transition for %s (%s)", request.provision_id, request.reason)
            return
        await self._requests.put(request)

    async def apply(self, request: TransitionRequest) -> Optional[Provision]:
        current = self.intents.get(request.provision_id)
        if current is None:
            return None
        if request.only_in is not None and current.phase not in request.only_in:
            self.logger.debug(
                "Skipping %s for %s: phase is now %s", request.reason, current.id, current.phase.value
            )
            return None
        updated = await self.intents.update(request.provision_id, request.fields)
        if updated is not None and updated.phase != current.phase:
            self.logger.info(
                "Provision %s: %s -> %s (%s)",
                current.id, current.phase.value, updated.phase.value, request.reason,
            )
        return updated

    async def _apply_loop(self):
        while True:
            req = await self._requests.get()
            try:
                await self.apply(req)
            except Exception:
                self.logger.error("Failed to apply transition for %s", req.provision_id, exc_info=True)
            finally:
                self._requests.task_done()

    async def wait_idle(self):
        """Wait until no receipt task is running and the request queue is drained."""
        while True:
            pending = [t for t in self._receipt_tasks.values() if not t.done()]
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            await self._requests.join()
            # let store notifications spawned by the applier run
            await asyncio.sleep(0)
            if not any(not t.done() for t in self._receipt_tasks.values()) and self._requests.empty():
                return

    # ---------------- store feed ----------------

    async def _on_store_change(self, snap):
        if not self._alive:
            return
        pending = [p for p in snap if p.phase == ProvisionPhase.PENDING_CONFIRMATION and p.tx_hash]
        self._receipt_done &= {p.id for p in pending}
        for p in pending:
            if p.id not in self._receipt_tasks and p.id not in self._receipt_done:
                self._receipt_tasks[p.id] = asyncio.create_task(self._watch_receipt(p))

        eligible = any(p.is_event_eligible for p in snap)
        if eligible and not self._unsubscribers:
            self._subscribe_events()
        elif not eligible and self._unsubscribers:
            self._teardown_events()

    def _subscribe_events(self):
        tangle = getattr(self.config, "TANGLE_ADDRESS", None)
        if is_zero_address(tangle):
            self.logger.warning("TANGLE_ADDRESS not configured; job result events are not watched.")
            return
        self._unsubscribers = [
            self.ledger.subscribe_to_event(tangle, "tangle", "JobResultSubmitted", self._on_result_logs),
            self.ledger.subscribe_to_event(tangle, "tangle", "JobCompleted", self._on_completed_logs),
        ]
        self.logger.info("Subscribed to job result events.")

    def _teardown_events(self):
        for unsub in self._unsubscribers:
            try:
                unsub()
            except Exception:
                self.logger.debug("unsubscribe failed", exc_info=True)
        if self._unsubscribers:
            self.logger.info("No provisions awaiting job results; event watch torn down.")
        self._unsubscribers = []

    # ---------------- receipts ----------------

    async def _watch_receipt(self, p: Provision):
        try:
            receipt = None
            error = None
            for attempt in range(RECEIPT_ATTEMPTS):
                try:
                    receipt = await self.ledger.wait_for_receipt(p.tx_hash)
                    break
                except LedgerError as e:
                    error = e
                    self.logger.warning(
                        "Receipt for %s unavailable (%d/%d): %s", p.tx_hash, attempt + 1, RECEIPT_ATTEMPTS, e
                    )
                    await asyncio.sleep(self.retry_delay)

            only = frozenset({ProvisionPhase.PENDING_CONFIRMATION})
            if receipt is None:
                await self.publish(TransitionRequest(
                    p.id, {"phase": ProvisionPhase.FAILED, "error_message": str(error)[:200]},
                    "receipt-error", only,
                ))
                return
            if not receipt.succeeded:
                await self.publish(TransitionRequest(
                    p.id, {"phase": ProvisionPhase.FAILED, "error_message": REVERTED_MESSAGE},
                    "receipt-reverted", only,
                ))
                return

            call_id, service_id = extract_job_submission(receipt)
            fields: Dict[str, Any] = {"phase": ProvisionPhase.JOB_SUBMITTED}
            if call_id is not None:
                fields["call_id"] = call_id
            else:
                self.logger.warning("Provision %s: no JobSubmitted event in receipt %s", p.id, p.tx_hash)
            if service_id is not None:
                fields["service_id"] = service_id
            await self.publish(TransitionRequest(p.id, fields, "receipt", only))
        finally:
            self._receipt_tasks.pop(p.id, None)
            if self._alive:
                self._receipt_done.add(p.id)

    # ---------------- events ----------------

    async def _on_result_logs(self, logs):
        if not self._alive:
            return
        waiting = [p for p in self.intents.list_all() if p.is_event_eligible]
        for log in logs:
            for p in waiting:
                if not matches_log(p, log):
                    continue
                try:
                    fields = await result_fields(self.ledger, self.config, p, log)
                except Exception:
                    self.logger.warning("Result handling failed for %s", p.id, exc_info=True)
                    continue
                await self.publish(TransitionRequest(p.id, fields, "JobResultSubmitted", EVENT_ELIGIBLE_PHASES))

    async def _on_completed_logs(self, logs):
        if not self._alive:
            return
        waiting = [p for p in self.intents.list_all() if p.is_event_eligible]
        for log in logs:
            for p in waiting:
                if not matches_log(p, log):
                    continue
                await self.publish(TransitionRequest(
                    p.id,
                    {
                        "phase": ProvisionPhase.JOB_PROCESSING,
                        "progress_phase": JOB_COMPLETED,
                        "progress_detail": "Job completed, waiting for result...",
                    },
                    "JobCompleted",
                    EVENT_ELIGIBLE_PHASES,
                ))
