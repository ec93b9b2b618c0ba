import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

import aiohttp
from web3 import AsyncWeb3, Web3
from web3.providers import AsyncHTTPProvider

from core.abis import ABIS, TANGLE_ABI
from core.errors import LedgerError

logger = logging.getLogger("LedgerClient")

BlockId = Union[int, str]
OnLogs = Callable[[List["LedgerLog"]], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class ContractCall:
    address: str
    abi: str
    function: str
    args: tuple = ()


@dataclass
class LedgerLog:
    event: str
    args: Dict[str, Any]
    block_number: int = 0
    tx_hash: str = ""
    log_index: int = 0


@dataclass
class Receipt:
    status: str
    logs: List[LedgerLog] = field(default_factory=list)
    tx_hash: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


def _to_log(ev) -> LedgerLog:
    tx = ev.get("transactionHash")
    return LedgerLog(
        event=ev.get("event", ""),
        args=dict(ev.get("args", {})),
        block_number=int(ev.get("blockNumber") or 0),
        tx_hash=Web3.to_hex(tx) if tx is not None else "",
        log_index=int(ev.get("logIndex") or 0),
    )


class LedgerClient:
    """
    Read-only ledger access over JSON-RPC.
    Every failure surfaces as LedgerError; batch_read degrades per call.
    """

    def __init__(self, config, logger: Optional[logging.Logger] = None):
        self.config = config
        self.logger = logger or logging.getLogger("LedgerClient")
        timeout = float(getattr(config, "HTTP_TIMEOUT_SEC", 15.0))
        self.poll_interval = float(getattr(config, "EVENT_POLL_INTERVAL_SEC", 4.0))
        self.receipt_timeout = float(getattr(config, "RECEIPT_TIMEOUT_SEC", 300.0))
        self.w3 = AsyncWeb3(AsyncHTTPProvider(config.RPC_URL, request_kwargs={"timeout": aiohttp.ClientTimeout(total=timeout)}))
        self._contracts: Dict[tuple, Any] = {}
        self._subscriptions: Dict[int, asyncio.Task] = {}

    def _contract(self, address: str, abi: str):
        key = (address.lower(), abi)
        c = self._contracts.get(key)
        if c is None:
            c = self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=ABIS[abi])
            self._contracts[key] = c
        return c

    async def block_number(self) -> int:
        try:
            return int(await self.w3.eth.block_number)
        except Exception as e:
            raise LedgerError(f"block_number failed: {e}") from e

    async def read_one(self, call: ContractCall) -> Any:
        try:
            fn = self._contract(call.address, call.abi).functions[call.function]
            return await fn(*call.args).call()
        except Exception as e:
            raise LedgerError(f"{call.function}{call.args} on {call.address} failed: {e}") from e

    async def batch_read(self, calls: Sequence[ContractCall]) -> List[Any]:
        """
        Send all reads as one JSON-RPC batch; a failed read yields None in its
        slot. When the batch fails as a whole, the reads are retried one by one
        so the healthy slots still resolve.
        """
        if not calls:
            return []
        out: List[Any] = [None] * len(calls)
        prepared = []
        for i, call in enumerate(calls):
            try:
                fn = self._contract(call.address, call.abi).functions[call.function]
                prepared.append((i, fn(*call.args)))
            except Exception as e:
                self.logger.debug("batch_read: cannot build %s on %s: %s", call.function, call.address, e)
        if not prepared:
            return out

        try:
            async with self.w3.batch_requests() as batch:
                for _, fn_call in prepared:
                    batch.add(fn_call)
                responses = await batch.async_execute()
        except Exception as e:
            self.logger.debug("batch_read: batch of %d rejected (%s); reading singly", len(prepared), e)
            singles = await asyncio.gather(
                *(self.read_one(calls[i]) for i, _ in prepared), return_exceptions=True
            )
            responses = list(singles)

        for (i, _), res in zip(prepared, responses):
            if isinstance(res, BaseException):
                self.logger.debug("batch_read: %s on %s failed: %s", calls[i].function, calls[i].address, res)
            else:
                out[i] = res
        return out

    async def get_logs(
        self,
        address: str,
        abi: str,
        event: str,
        argument_filters: Optional[Dict[str, Any]] = None,
        from_block: BlockId = 0,
        to_block: BlockId = "latest",
    ) -> List[LedgerLog]:
        try:
            ev = self._contract(address, abi).events[event]()
            raw = await ev.get_logs(
                argument_filters=argument_filters or None,
                from_block=from_block,
                to_block=to_block,
            )
        except Exception as e:
            raise LedgerError(f"get_logs {event} failed: {e}") from e
        return [_to_log(x) for x in raw]

    def _decode_receipt_logs(self, raw_logs) -> List[LedgerLog]:
        tangle = self.w3.eth.contract(abi=TANGLE_ABI)
        events = [e["name"] for e in TANGLE_ABI if e["type"] == "event"]
        out: List[LedgerLog] = []
        for raw in raw_logs or []:
            for name in events:
                try:
                    out.append(_to_log(tangle.events[name]().process_log(raw)))
                    break
                except Exception:
                    continue
        return out

    async def wait_for_receipt(self, tx_hash: str, timeout: Optional[float] = None) -> Receipt:
        try:
            rcpt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=timeout or self.receipt_timeout
            )
        except Exception as e:
            raise LedgerError(f"receipt for {tx_hash} unavailable: {e}") from e
        status = "success" if int(rcpt.get("status", 0)) == 1 else "reverted"
        return Receipt(status=status, logs=self._decode_receipt_logs(rcpt.get("logs")), tx_hash=tx_hash)

    def subscribe_to_event(
        self,
        address: str,
        abi: str,
        event: str,
        on_logs: OnLogs,
        argument_filters: Optional[Dict[str, Any]] = None,
    ) -> Callable[[], None]:
        """
        Poll for new logs from the current head onwards and hand each
        non-empty batch to on_logs. Returns an unsubscribe callable.
        """
        task = asyncio.create_task(self._poll_events(address, abi, event, on_logs, argument_filters))
        key = id(task)
        self._subscriptions[key] = task

        def _unsubscribe():
            t = self._subscriptions.pop(key, None)
            if t and not t.done():
                t.cancel()

        return _unsubscribe

    async def _poll_events(self, address, abi, event, on_logs, argument_filters):
        last_seen: Optional[int] = None
        while True:
            try:
                head = await self.block_number()
                if last_seen is None:
                    last_seen = head
                elif head > last_seen:
                    logs = await self.get_logs(address, abi, event, argument_filters, last_seen + 1, head)
                    last_seen = head
                    if logs:
                        res = on_logs(logs)
                        if inspect.isawaitable(res):
                            await res
            except asyncio.CancelledError:
                raise
            except Exception:
                self.logger.warning("Event poll for %s failed; will retry.", event, exc_info=True)
            await asyncio.sleep(self.poll_interval)

    async def close(self):
        for unsub_key in list(self._subscriptions):
            t = self._subscriptions.pop(unsub_key)
            t.cancel()
        disconnect = getattr(self.w3.provider, "disconnect", None)
        if callable(disconnect):
            try:
                await disconnect()
            except Exception:
                self.logger.debug("provider disconnect failed", exc_info=True)
