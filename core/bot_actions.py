import logging
import time
import uuid
from typing import Any, Dict, Iterable, List, Optional

from core.contracts import Provision, ProvisionPhase
from core.provision_watcher import REVERTED_MESSAGE
from core.errors import (
    ArenaError,
    BotNotFoundError,
    InvalidTransitionError,
    OperatorAPIError,
    ProvisionNotFoundError,
    TransactionRevertedError,
)

logger = logging.getLogger("BotActions")


class BotActions:
    """User-triggered operations. Unlike the background loops, these raise."""

    def __init__(
        self,
        config,
        intent_manager,
        operator_client,
        recovery_engine,
        progress_poller=None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.intents = intent_manager
        self.operator = operator_client
        self.recovery = recovery_engine
        self.poller = progress_poller
        self.logger = logger or logging.getLogger("BotActions")
        self.stuck_threshold = float(getattr(config, "STUCK_THRESHOLD_SEC", 300.0))

    def _require(self, provision_id: str) -> Provision:
        p = self.intents.get(provision_id)
        if p is None:
            raise ProvisionNotFoundError(provision_id)
        return p

    async def submit_provision(
        self,
        owner: str,
        name: str,
        strategy_type: str,
        tx_hash: Optional[str] = None,
        provision_id: Optional[str] = None,
        service_id: Optional[int] = None,
        blueprint_id: Optional[str] = None,
        operators: Iterable[str] = (),
        job_index: Optional[int] = None,
        cost_wei: Optional[str] = None,
        chain_id: Optional[int] = None,
    ) -> Provision:
        if not owner or not name or not strategy_type:
            raise ValueError("owner, name and strategy_type are required")
        pid = provision_id or tx_hash or uuid.uuid4().hex
        now = time.time()
        p = Provision(
            id=pid,
            owner=owner,
            name=name,
            strategy_type=strategy_type,
            blueprint_id=str(blueprint_id if blueprint_id is not None else getattr(self.config, "BLUEPRINT_ID", 0)),
            chain_id=int(chain_id if chain_id is not None else getattr(self.config, "CHAIN_ID", 0)),
            operators=list(operators),
            service_id=service_id,
            tx_hash=tx_hash,
            job_index=job_index,
            cost_wei=cost_wei,
            created_at=now,
            updated_at=now,
        )
        if not await self.intents.add(p):
            raise ArenaError(f"Provision {pid} is already tracked")
        return p

    async def resolve_bot_id(
        self,
        bot_id: Optional[str] = None,
        call_id: Optional[int] = None,
        service_id: Optional[int] = None,
        sandbox_id: Optional[str] = None,
    ) -> str:
        """
        Operator bot id, trying in order: the known id, the (call id, service id)
        lookup, then a scan of the listing by sandbox id.
        """
        if not getattr(self.operator, "enabled", False):
            raise OperatorAPIError("Operator API URL not configured")

        if bot_id:
            try:
                if await self.operator.get_bot(bot_id) is not None:
                    return bot_id
            except OperatorAPIError:
                self.logger.debug("bot id %s could not be verified", bot_id, exc_info=True)

        if call_id is not None and service_id is not None:
            try:
                found = await self.operator.find_bots(call_id=call_id, service_id=service_id)
                if found and found[0].get("id") is not None:
                    return str(found[0]["id"])
            except OperatorAPIError:
                self.logger.debug("lookup by call %s / service %s failed", call_id, service_id, exc_info=True)

        if sandbox_id:
            try:
                for b in await self.operator.list_bots(limit=int(getattr(self.config, "OPERATOR_BOT_LIMIT", 200))):
                    if b.get("sandbox_id") == sandbox_id and b.get("id") is not None:
                        return str(b["id"])
            except OperatorAPIError:
                self.logger.debug("sandbox scan for %s failed", sandbox_id, exc_info=True)

        raise BotNotFoundError()

    async def submit_secrets(
        self, provision_id: str, env_json: Dict[str, str], bot_id: Optional[str] = None
    ) -> Provision:
        p = self._require(provision_id)
        if p.phase != ProvisionPhase.AWAITING_SECRETS:
            raise InvalidTransitionError(p.id, p.phase.value, ProvisionPhase.ACTIVE.value)
        env = {k.strip(): v.strip() for k, v in (env_json or {}).items() if k and k.strip() and v and v.strip()}
        if not env:
            raise ValueError("env_json must contain at least one non-empty entry")

        resolved = await self.resolve_bot_id(
            bot_id=bot_id, call_id=p.call_id, service_id=p.service_id, sandbox_id=p.sandbox_id
        )
        result: Dict[str, Any] = await self.operator.submit_secrets(resolved, env)
        fields: Dict[str, Any] = {
            "phase": ProvisionPhase.ACTIVE,
            "sandbox_id": result.get("sandbox_id") or p.sandbox_id,
        }
        if result.get("workflow_id") is not None:
            fields["workflow_id"] = int(result["workflow_id"])
        updated = await self.intents.update(p.id, fields)
        self.logger.info("🔐 Secrets configured for provision %s (bot %s)", p.id, resolved)
        return updated or self._require(provision_id)

    async def recheck_provision(self, provision_id: str) -> Provision:
        p = self._require(provision_id)
        if p.phase == ProvisionPhase.FAILED:
            raise InvalidTransitionError(p.id, p.phase.value, "recheck")
        if self.poller is not None:
            self.poller.reset(p.id)
        checked = await self.recovery.recheck(p) or self._require(provision_id)
        if checked.phase == ProvisionPhase.FAILED and checked.error_message == REVERTED_MESSAGE:
            raise TransactionRevertedError(checked.tx_hash)
        return checked

    async def activation_progress(self, provision_id: str, bot_id: Optional[str] = None) -> Dict[str, Any]:
        """Operator-side activation status once secrets were submitted; empty while unknown."""
        p = self._require(provision_id)
        if p.phase not in (ProvisionPhase.AWAITING_SECRETS, ProvisionPhase.ACTIVE):
            raise InvalidTransitionError(p.id, p.phase.value, "activation")
        resolved = await self.resolve_bot_id(
            bot_id=bot_id, call_id=p.call_id, service_id=p.service_id, sandbox_id=p.sandbox_id
        )
        return await self.operator.get_activation_progress(resolved) or {}

    async def dismiss_provision(self, provision_id: str):
        if not await self.intents.remove(provision_id):
            raise ProvisionNotFoundError(provision_id)

    async def clear_failed(self) -> int:
        return await self.intents.clear_failed()

    async def dismiss_bot(self, bot_id: str):
        await self.intents.dismiss_bot(bot_id)

    async def undismiss_bot(self, bot_id: str):
        await self.intents.undismiss_bot(bot_id)

    def stuck_provisions(self, now: Optional[float] = None) -> List[Provision]:
        now = time.time() if now is None else now
        return [
            p for p in self.intents.list_all()
            if p.phase == ProvisionPhase.JOB_SUBMITTED and now - p.updated_at > self.stuck_threshold
        ]
