# === SECTION: Imports ===
"""
AppContext: wires and runs the tracker.

Start order:
  database -> intent store -> operator session -> reconciliation (once)
  -> provision watcher -> progress poller -> discovery loop
stop() tears every watcher and timer down together; results that arrive
after teardown are discarded by each component's liveness flag.
"""

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Dict, List, Optional

from core.bot_actions import BotActions
from core.bot_discovery import BotDiscovery
from core.database_manager import DatabaseManager
from core.errors import OperatorAuthError, SourceUnavailableError
from core.intent_manager import IntentManager
from core.ledger_client import LedgerClient
from core.operator_client import OperatorClient
from core.progress_poller import ProgressPoller
from core.provision_watcher import ProvisionWatcher
from core.recovery_engine import RecoveryEngine

LOGGER = logging.getLogger("AppContext")


class AppContext:
    def __init__(
        self,
        config,
        ledger_client: Optional[Any] = None,
        operator_client: Optional[Any] = None,
        database_manager: Optional[Any] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.logger = logger or LOGGER
        self.db = database_manager if database_manager is not None else DatabaseManager(config)
        self.ledger = ledger_client if ledger_client is not None else LedgerClient(config)
        self.operator = operator_client if operator_client is not None else OperatorClient(config)

        self.intents = IntentManager(config, self.db)
        self.recovery = RecoveryEngine(config, self.intents, self.ledger)
        self.watcher = ProvisionWatcher(config, self.intents, self.ledger)
        self.poller = ProgressPoller(config, self.intents, self.operator, watcher=self.watcher)
        self.discovery = BotDiscovery(config, self.intents, self.ledger, self.operator)
        self.actions = BotActions(config, self.intents, self.operator, self.recovery, self.poller)

        self._tasks: List[asyncio.Task] = []
        self._tasks_map: Dict[str, asyncio.Task] = {}
        self._started = False
        self.alive = False

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    # === SECTION: Generic Helpers ===
    def _spawn(self, name: str, aw: Awaitable[Any]):
        t = asyncio.create_task(aw, name=name)
        self._tasks.append(t)
        self._tasks_map[name] = t
        return t

    async def _step(self, name: str, coro: Awaitable[Any]):
        try:
            return await coro
        except Exception:
            self.logger.error("startup step %s failed", name, exc_info=True)
            raise

    # === SECTION: Lifecycle ===
    async def start(self):
        if self._started:
            return
        self._started = True
        self.alive = True

        await self._step("database", self.db.connect())
        await self._step("intent_store", self.intents.load())

        if getattr(self.operator, "enabled", False):
            await self.operator.start()
            if getattr(self.operator, "signer_address", None):
                try:
                    await self.operator.authenticate()
                except (OperatorAuthError, SourceUnavailableError):
                    # writes re-authenticate on demand
                    self.logger.warning("Operator session not established at startup.", exc_info=True)

        repaired = await self.recovery.run()
        self.logger.info("Reconciliation repaired %d provision(s).", repaired)

        await self._step("provision_watcher", self.watcher.start())
        await self._step("progress_poller", self.poller.start())
        self._spawn("discovery_loop", self.discovery.run_loop())
        self.logger.info("🚀 AppContext started.")

    async def stop(self):
        if not self._started:
            return
        self.alive = False

        # timers and subscriptions go down together
        await asyncio.gather(
            self.discovery.stop(),
            self.watcher.stop(),
            self.poller.stop(),
            return_exceptions=True,
        )
        for t in list(self._tasks):
            if not t.done():
                t.cancel()
        with contextlib.suppress(Exception):
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        self._tasks_map.clear()

        for name, closer in (
            ("operator", getattr(self.operator, "close", None)),
            ("ledger", getattr(self.ledger, "close", None)),
            ("database", getattr(self.db, "close", None)),
        ):
            if closer is None:
                continue
            try:
                await closer()
            except Exception:
                self.logger.debug("shutdown: %s close failed", name, exc_info=True)
        self._started = False
        self.logger.info("AppContext stopped.")
