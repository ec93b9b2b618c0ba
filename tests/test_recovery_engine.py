import asyncio

from eth_abi import encode

from conftest import OWNER, REGISTRY, TANGLE, success_receipt
from core.contracts import Provision, ProvisionPhase
from core.intent_manager import IntentManager
from core.ledger_client import LedgerLog
from core.recovery_engine import RecoveryEngine

BOT_VAULT = "0x" + "ab" * 20


def _output(workflow_id=5):
    return encode(
        ["address", "address", "string", "uint64"],
        [BOT_VAULT, "0x" + "cd" * 20, "sbx-r", workflow_id],
    )


def _stranded(pid="p1", call_id=7, vault=None, phase=ProvisionPhase.ACTIVE, **kw):
    return Provision(
        id=pid, owner=OWNER, name="Alpha", strategy_type="dex",
        phase=phase, service_id=1, call_id=call_id, vault_address=vault, **kw,
    )


def test_rebuilds_missing_vault_from_history(make_config, ledger):
    config = make_config(TANGLE_ADDRESS=TANGLE)
    ledger.add_log(LedgerLog("JobResultSubmitted", {"serviceId": 1, "callId": 7, "output": _output()}))

    async def scenario():
        intents = IntentManager(config)
        await intents.add(_stranded(workflow_id=2))
        engine = RecoveryEngine(config, intents, ledger)
        first = await engine.run()
        second = await engine.run()
        return first, second, intents.get("p1")

    first, second, p = asyncio.run(scenario())
    assert first == 1
    assert second == 0
    assert p.vault_address.lower() == BOT_VAULT
    assert p.phase == ProvisionPhase.ACTIVE
    # already-settled values are kept
    assert p.workflow_id == 2
    assert p.sandbox_id == "sbx-r"


def test_placeholder_vault_is_repaired_via_registry_lookup(make_config, ledger):
    config = make_config(TANGLE_ADDRESS=TANGLE, TRADING_BLUEPRINT_ADDRESS=REGISTRY)
    ledger.set_call(REGISTRY, "botVaultByCall", (1, 8), BOT_VAULT)

    async def scenario():
        intents = IntentManager(config)
        await intents.add(_stranded(call_id=8, vault=TANGLE, phase=ProvisionPhase.AWAITING_SECRETS))
        engine = RecoveryEngine(config, intents, ledger)
        needs = engine.needs_repair(intents.get("p1"))
        repaired = await engine.run()
        return needs, repaired, intents.get("p1")

    needs, repaired, p = asyncio.run(scenario())
    assert needs
    assert repaired == 1
    assert p.vault_address == BOT_VAULT
    assert p.phase == ProvisionPhase.AWAITING_SECRETS


def test_healthy_and_in_flight_provisions_are_left_alone(make_config, ledger):
    config = make_config(TANGLE_ADDRESS=TANGLE)

    async def scenario():
        intents = IntentManager(config)
        await intents.add(_stranded("ok", vault=BOT_VAULT))
        await intents.add(_stranded("busy", phase=ProvisionPhase.JOB_PROCESSING))
        await intents.add(_stranded("nocall", call_id=None))
        engine = RecoveryEngine(config, intents, ledger)
        return await engine.run(), [p.vault_address for p in intents.list_all()]

    repaired, vaults = asyncio.run(scenario())
    assert repaired == 0
    assert vaults == [None, None, BOT_VAULT]


def test_ledger_failure_does_not_raise(make_config, ledger):
    config = make_config(TANGLE_ADDRESS=TANGLE)
    ledger.fail = True

    async def scenario():
        intents = IntentManager(config)
        await intents.add(_stranded())
        return await RecoveryEngine(config, intents, ledger).run()

    assert asyncio.run(scenario()) == 0


def test_recheck_reads_receipt_then_history(make_config, ledger):
    config = make_config(TANGLE_ADDRESS=TANGLE)
    ledger.receipts["0xtx"] = success_receipt(
        "0xtx", LedgerLog("JobSubmitted", {"serviceId": 1, "callId": 9, "job": 0})
    )
    ledger.add_log(LedgerLog("JobResultSubmitted", {"serviceId": 1, "callId": 9, "output": _output(0)}))

    async def scenario():
        intents = IntentManager(config)
        await intents.add(Provision(id="p1", owner=OWNER, name="Alpha", strategy_type="dex", tx_hash="0xtx"))
        engine = RecoveryEngine(config, intents, ledger)
        return await engine.recheck(intents.get("p1"))

    p = asyncio.run(scenario())
    assert p.call_id == 9
    assert p.phase == ProvisionPhase.AWAITING_SECRETS
    assert p.vault_address.lower() == BOT_VAULT
