"""
IntentManager: the Local Intent Store.

Holds every provision the local user started, newest first, behind a single
asyncio.Lock. Every committed mutation is written through to SQLite and then
announced to subscribers as an immutable snapshot. Nobody outside this class
holds a reference to a stored record; reads return copies.
"""

import asyncio
import copy
import inspect
import logging
import time
from itertools import count
from typing import Any, Callable, Dict, List, Optional, Tuple

from core.contracts import Provision, ProvisionPhase, can_transition, norm_address

Snapshot = Tuple[Provision, ...]
Subscriber = Callable[[Snapshot], Any]

_IMMUTABLE_FIELDS = {"id", "created_at", "updated_at"}
_FIELD_NAMES = set(Provision.__dataclass_fields__)


class IntentManager:
    def __init__(self, config, database_manager=None, logger: Optional[logging.Logger] = None):
        self.db = database_manager
        self.logger = logger or logging.getLogger("IntentManager")
        self.max_provisions = int(getattr(config, "MAX_PROVISIONS", 20))
        self.max_dismissed = int(getattr(config, "MAX_DISMISSED_BOTS", 100))
        self._provisions: List[Provision] = []
        self._dismissed: List[str] = []
        self._lock = asyncio.Lock()
        self._handlers: Dict[int, Subscriber] = {}
        self._handler_ids = count(1)
        self._queues: Dict[str, asyncio.Queue] = {}

    async def load(self):
        """Rehydrate from the database (no-op without one)."""
        if self.db is None:
            return
        rows = await self.db.load_provisions()
        dismissed = await self.db.load_dismissed_bots()
        async with self._lock:
            self._provisions = []
            for row in rows:
                try:
                    self._provisions.append(Provision.from_dict(row))
                except (TypeError, ValueError):
                    self.logger.warning("Dropping unreadable stored provision: %r", row.get("id"))
            self._dismissed = list(dismissed)[-self.max_dismissed:]
        self.logger.info(
            "Loaded %d provisions and %d dismissed bots from storage.",
            len(self._provisions), len(self._dismissed),
        )

    # ---------------- reads ----------------

    def list_all(self) -> List[Provision]:
        return [copy.deepcopy(p) for p in self._provisions]

    def snapshot(self) -> Snapshot:
        return tuple(copy.deepcopy(p) for p in self._provisions)

    def get(self, provision_id: str) -> Optional[Provision]:
        p = self._find(provision_id)
        return copy.deepcopy(p) if p else None

    def list_for_owner(self, address: Optional[str]) -> List[Provision]:
        if not address:
            return []
        owner = norm_address(address)
        return [copy.deepcopy(p) for p in self._provisions if norm_address(p.owner) == owner]

    def dismissed_bots(self) -> List[str]:
        return list(self._dismissed)

    def _find(self, provision_id: str) -> Optional[Provision]:
        for p in self._provisions:
            if p.id == provision_id:
                return p
        return None

    # ---------------- writes ----------------

    async def add(self, provision: Provision) -> bool:
        async with self._lock:
            if self._find(provision.id) is not None:
                self.logger.debug("add: provision %s already tracked", provision.id)
                return False
            self._provisions.insert(0, copy.deepcopy(provision))
            dropped = self._overflow()
            if dropped:
                gone = {p.id for p in dropped}
                self._provisions = [p for p in self._provisions if p.id not in gone]
            if self.db is not None:
                await self.db.insert_provision(provision.to_dict())
                if dropped:
                    await self.db.delete_provisions([p.id for p in dropped])
            snap = self.snapshot()
        self.logger.info("➕ Tracking provision %s (%s)", provision.id, provision.name)
        await self._notify(snap)
        return True

    def _overflow(self) -> List[Provision]:
        """
        Records to evict once the store is over its cap: failed ones first,
        then active ones, oldest first within each. In-flight provisions are
        never evicted, so the store may grow past the cap.
        """
        excess = len(self._provisions) - self.max_provisions
        if excess <= 0:
            return []
        oldest_first = self._provisions[::-1]
        failed = [p for p in oldest_first if p.phase == ProvisionPhase.FAILED]
        active = [p for p in oldest_first if p.phase == ProvisionPhase.ACTIVE]
        return (failed + active)[:excess]

    async def update(self, provision_id: str, fields: Dict[str, Any]) -> Optional[Provision]:
        """
        Merge a partial update into one record. Returns the updated copy, or
        None when the record is unknown or already failed.
        """
        async with self._lock:
            p = self._find(provision_id)
            if p is None:
                self.logger.debug("update: unknown provision %s", provision_id)
                return None
            if p.phase == ProvisionPhase.FAILED:
                self.logger.debug("update: provision %s already failed; ignoring %s", provision_id, fields)
                return None

            changes = {k: v for k, v in fields.items() if k in _FIELD_NAMES and k not in _IMMUTABLE_FIELDS}
            if "phase" in changes:
                new_phase = ProvisionPhase(changes["phase"])
                if can_transition(p.phase, new_phase):
                    changes["phase"] = new_phase
                else:
                    self.logger.info(
                        "Provision %s: dropping phase change %s -> %s",
                        provision_id, p.phase.value, new_phase.value,
                    )
                    del changes["phase"]

            for k, v in changes.items():
                setattr(p, k, v)
            p.updated_at = time.time()
            if self.db is not None:
                await self.db.update_provision(p.to_dict())
            result = copy.deepcopy(p)
            snap = self.snapshot()
        await self._notify(snap)
        return result

    async def remove(self, provision_id: str) -> bool:
        async with self._lock:
            p = self._find(provision_id)
            if p is None:
                return False
            self._provisions.remove(p)
            if self.db is not None:
                await self.db.delete_provisions([provision_id])
            snap = self.snapshot()
        await self._notify(snap)
        return True

    async def clear_failed(self) -> int:
        async with self._lock:
            failed = [p.id for p in self._provisions if p.phase == ProvisionPhase.FAILED]
            if not failed:
                return 0
            self._provisions = [p for p in self._provisions if p.phase != ProvisionPhase.FAILED]
            if self.db is not None:
                await self.db.delete_provisions(failed)
            snap = self.snapshot()
        await self._notify(snap)
        return len(failed)

    async def dismiss_bot(self, bot_id: str):
        async with self._lock:
            if bot_id in self._dismissed:
                return
            self._dismissed.append(bot_id)
            overflow = self._dismissed[:-self.max_dismissed] if len(self._dismissed) > self.max_dismissed else []
            self._dismissed = self._dismissed[-self.max_dismissed:]
            if self.db is not None:
                await self.db.insert_dismissed_bot(bot_id)
                if overflow:
                    await self.db.delete_dismissed_bots(overflow)

    async def undismiss_bot(self, bot_id: str):
        async with self._lock:
            if bot_id not in self._dismissed:
                return
            self._dismissed.remove(bot_id)
            if self.db is not None:
                await self.db.delete_dismissed_bots([bot_id])

    # ---------------- notifications ----------------

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        key = next(self._handler_ids)
        self._handlers[key] = callback

        def _unsubscribe():
            self._handlers.pop(key, None)

        return _unsubscribe

    def subscribe_queue(self, subscriber_name: str, max_queue: int = 100) -> asyncio.Queue:
        q = asyncio.Queue(maxsize=max_queue)
        self._queues[subscriber_name] = q
        return q

    def unsubscribe_queue(self, subscriber_name: str):
        self._queues.pop(subscriber_name, None)

    async def _notify(self, snap: Snapshot):
        for handler in list(self._handlers.values()):
            try:
                res = handler(snap)
                if inspect.isawaitable(res):
                    await res
            except Exception:
                self.logger.warning("IntentManager subscriber failed", exc_info=True)
        for q in list(self._queues.values()):
            if q.full():
                # keep only the freshest snapshots
                try:
                    q.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            q.put_nowait(snap)
