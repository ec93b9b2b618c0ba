import asyncio
from types import SimpleNamespace

from aiohttp import web
from aiohttp.test_utils import TestServer
from eth_abi import encode

from conftest import VAULT_A, VAULT_B, VAULT_C
from core.ledger_client import ContractCall, LedgerClient


def _rpc_app(state):
    def answer(req):
        if req.get("method") != "eth_call":
            return {"jsonrpc": "2.0", "id": req.get("id"), "result": "0x7a69"}
        to = req["params"][0]["to"].lower()
        if to in state["reverting"]:
            return {"jsonrpc": "2.0", "id": req.get("id"), "error": {"code": 3, "message": "execution reverted"}}
        return {"jsonrpc": "2.0", "id": req.get("id"), "result": "0x" + encode(["uint256"], [42]).hex()}

    async def rpc(request):
        body = await request.json()
        if isinstance(body, list):
            state["batches"].append(len(body))
            return web.json_response([answer(r) for r in body])
        if body.get("method") == "eth_call":
            state["singles"] += 1
        return web.json_response(answer(body))

    app = web.Application()
    app.router.add_post("/", rpc)
    return app


async def _with_ledger(state, body):
    server = TestServer(_rpc_app(state))
    await server.start_server()
    config = SimpleNamespace(RPC_URL=str(server.make_url("/")), HTTP_TIMEOUT_SEC=5.0)
    ledger = LedgerClient(config)
    try:
        return await body(ledger)
    finally:
        await ledger.close()
        await server.close()


def _state(reverting=()):
    return {"batches": [], "singles": 0, "reverting": {a.lower() for a in reverting}}


def test_batch_read_sends_one_request():
    state = _state()
    calls = [ContractCall(v, "vault", "totalAssets") for v in (VAULT_A, VAULT_B, VAULT_C)]

    result = asyncio.run(_with_ledger(state, lambda ledger: ledger.batch_read(calls)))
    assert result == [42, 42, 42]
    assert state["batches"] == [3]
    assert state["singles"] == 0


def test_batch_read_isolates_failed_slots():
    state = _state(reverting=[VAULT_B])
    calls = [
        ContractCall(VAULT_A, "vault", "totalAssets"),
        ContractCall(VAULT_B, "vault", "totalAssets"),
        ContractCall(VAULT_C, "vault", "noSuchFunction"),
    ]

    result = asyncio.run(_with_ledger(state, lambda ledger: ledger.batch_read(calls)))
    assert result == [42, None, None]
    assert state["batches"] == [2]


def test_batch_read_of_nothing_makes_no_request():
    state = _state()

    result = asyncio.run(_with_ledger(state, lambda ledger: ledger.batch_read([])))
    assert result == []
    assert state["batches"] == []
