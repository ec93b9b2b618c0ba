import asyncio
import logging
from typing import Callable, Dict, List, Optional, Set

from core.contracts import EVENT_ELIGIBLE_PHASES, Provision, ProvisionPhase
from core.provision_codec import progress_label
from core.provision_watcher import TransitionRequest

logger = logging.getLogger("ProgressPoller")


class ProgressPoller:
    """
    Polls the operator's per-call progress endpoint for provisions waiting on
    their job result, on a fixed interval.

    - A 404 means "not known yet" and is not a failure.
    - After PROGRESS_POLL_MAX_FAILURES consecutive failures a provision is no
      longer polled (until reset()).
    - 100% ready moves the provision to awaiting_secrets without waiting for
      the ledger event.
    The polling task only exists while at least one provision is pollable.
    """

    def __init__(self, config, intent_manager, operator_client, watcher=None, logger: Optional[logging.Logger] = None):
        self.config = config
        self.intents = intent_manager
        self.operator = operator_client
        self.watcher = watcher
        self.logger = logger or logging.getLogger("ProgressPoller")
        self.interval = float(getattr(config, "PROGRESS_POLL_INTERVAL_SEC", 2.0))
        self.max_failures = int(getattr(config, "PROGRESS_POLL_MAX_FAILURES", 5))
        self._failures: Dict[str, int] = {}
        self._given_up: Set[str] = set()
        self._task: Optional[asyncio.Task] = None
        self._in_round = False
        self._unsub_store: Optional[Callable[[], None]] = None
        self._alive = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def pollable(self, provisions) -> List[Provision]:
        return [p for p in provisions if p.is_event_eligible and p.id not in self._given_up]

    def reset(self, provision_id: str):
        self._failures.pop(provision_id, None)
        self._given_up.discard(provision_id)

    async def start(self):
        if not getattr(self.operator, "enabled", False):
            self.logger.info("Operator API not configured; progress polling disabled.")
            return
        self._alive = True
        self._unsub_store = self.intents.subscribe(self._on_store_change)
        await self._on_store_change(self.intents.snapshot())

    async def stop(self):
        self._alive = False
        if self._unsub_store:
            self._unsub_store()
            self._unsub_store = None
        await self._cancel_task()

    async def _cancel_task(self):
        task, self._task = self._task, None
        if task and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _on_store_change(self, snap):
        if not self._alive:
            return
        if self.pollable(snap):
            if not self.running:
                self._task = asyncio.create_task(self.run_loop())
        elif self.running and not self._in_round:
            self._task.cancel()
            self._task = None

    async def run_loop(self):
        self.logger.debug("Progress polling started.")
        while self._alive:
            targets = self.pollable(self.intents.list_all())
            if not targets:
                break
            self._in_round = True
            try:
                await self.run_once(targets)
            finally:
                self._in_round = False
            if not self.pollable(self.intents.list_all()):
                break
            await asyncio.sleep(self.interval)
        self.logger.debug("Progress polling stopped.")

    async def run_once(self, targets: Optional[List[Provision]] = None):
        targets = targets if targets is not None else self.pollable(self.intents.list_all())
        await asyncio.gather(*(self.poll_one(p) for p in targets))

    async def poll_one(self, p: Provision):
        try:
            progress = await self.operator.get_provision_progress(p.call_id)
        except Exception as e:
            n = self._failures.get(p.id, 0) + 1
            self._failures[p.id] = n
            if n >= self.max_failures:
                self._given_up.add(p.id)
                self.logger.warning(
                    "Provision %s: progress poll failed %d times in a row; giving up (%s)", p.id, n, e
                )
            else:
                self.logger.debug("Provision %s: progress poll failed (%d/%d): %s", p.id, n, self.max_failures, e)
            return

        self._failures.pop(p.id, None)
        if progress is None:
            return

        if progress.is_failed:
            fields = {
                "phase": ProvisionPhase.FAILED,
                "error_message": (progress.message or "Provisioning failed on operator")[:200],
            }
        elif progress.is_ready:
            fields = {
                "phase": ProvisionPhase.AWAITING_SECRETS,
                "progress_phase": progress.phase or None,
                "progress_detail": progress_label(progress.phase, progress.message) or None,
            }
        else:
            fields = {
                "phase": ProvisionPhase.JOB_PROCESSING,
                "progress_phase": progress.phase or None,
                "progress_detail": progress_label(progress.phase, progress.message) or None,
            }
        if progress.sandbox_id and not p.sandbox_id:
            fields["sandbox_id"] = progress.sandbox_id

        request = TransitionRequest(p.id, fields, "operator-progress", EVENT_ELIGIBLE_PHASES)
        if self.watcher is not None:
            await self.watcher.publish(request)
        else:
            current = self.intents.get(p.id)
            if current is not None and current.phase in EVENT_ELIGIBLE_PHASES:
                await self.intents.update(p.id, fields)
