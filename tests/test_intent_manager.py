import asyncio

from conftest import OWNER
from core.contracts import Provision, ProvisionPhase
from core.database_manager import DatabaseManager
from core.intent_manager import IntentManager


def _provision(pid, **kw):
    kw.setdefault("owner", OWNER)
    return Provision(id=pid, name=f"Bot {pid}", strategy_type="dex", **kw)


def test_store_survives_restart(make_config, tmp_path):
    config = make_config(DATABASE_PATH=str(tmp_path / "intents.db"))

    async def first_run():
        db = DatabaseManager(config)
        await db.connect()
        intents = IntentManager(config, db)
        await intents.load()
        await intents.add(_provision("p1"))
        await intents.add(_provision("p2"))
        await intents.update("p1", {"phase": ProvisionPhase.JOB_SUBMITTED, "call_id": 11, "service_id": 3})
        await intents.dismiss_bot("0xdead")
        await db.close()

    async def second_run():
        db = DatabaseManager(config)
        await db.connect()
        intents = IntentManager(config, db)
        await intents.load()
        result = intents.list_all(), intents.dismissed_bots()
        await db.close()
        return result

    asyncio.run(first_run())
    provisions, dismissed = asyncio.run(second_run())

    assert [p.id for p in provisions] == ["p2", "p1"]
    p1 = provisions[1]
    assert p1.phase == ProvisionPhase.JOB_SUBMITTED
    assert p1.call_id == 11
    assert p1.service_id == 3
    assert dismissed == ["0xdead"]


def test_provision_cap_evicts_settled_records_first(make_config, tmp_path):
    config = make_config(DATABASE_PATH=str(tmp_path / "intents.db"), MAX_PROVISIONS="3")

    async def scenario():
        db = DatabaseManager(config)
        await db.connect()
        intents = IntentManager(config, db)
        await intents.add(_provision("inflight", phase=ProvisionPhase.JOB_SUBMITTED, call_id=1))
        await intents.add(_provision("live", phase=ProvisionPhase.ACTIVE))
        await intents.add(_provision("broken", phase=ProvisionPhase.FAILED))
        await intents.add(_provision("p4"))
        after_failed = [p.id for p in intents.list_all()]
        await intents.add(_provision("p5"))
        after_active = [p.id for p in intents.list_all()]
        reloaded = IntentManager(config, db)
        await reloaded.load()
        await db.close()
        return after_failed, after_active, [p.id for p in reloaded.list_all()]

    after_failed, after_active, stored = asyncio.run(scenario())
    assert after_failed == ["p4", "live", "inflight"]
    assert after_active == ["p5", "p4", "inflight"]
    assert stored == ["p5", "p4", "inflight"]


def test_cap_never_evicts_in_flight_provisions(make_config):
    config = make_config()

    async def scenario():
        intents = IntentManager(config)
        await intents.add(_provision("inflight", phase=ProvisionPhase.JOB_SUBMITTED, call_id=1))
        for i in range(20):
            await intents.add(_provision(f"f{i}", phase=ProvisionPhase.FAILED))
        for i in range(25):
            await intents.add(_provision(f"n{i}"))
        return intents.get("inflight"), intents.list_all()

    inflight, items = asyncio.run(scenario())
    assert inflight is not None
    assert inflight.phase == ProvisionPhase.JOB_SUBMITTED
    assert not any(p.phase == ProvisionPhase.FAILED for p in items)
    assert len(items) == 26


def test_dismissed_cap_keeps_most_recent(make_config, tmp_path):
    config = make_config(DATABASE_PATH=str(tmp_path / "intents.db"), MAX_DISMISSED_BOTS="2")

    async def scenario():
        db = DatabaseManager(config)
        await db.connect()
        intents = IntentManager(config, db)
        for bot_id in ("a", "b", "c"):
            await intents.dismiss_bot(bot_id)
        await intents.undismiss_bot("b")
        reloaded = IntentManager(config, db)
        await reloaded.load()
        await db.close()
        return intents.dismissed_bots(), reloaded.dismissed_bots()

    live, stored = asyncio.run(scenario())
    assert live == ["c"]
    assert stored == ["c"]


def test_duplicate_add_is_ignored(make_config):
    config = make_config()

    async def scenario():
        intents = IntentManager(config)
        first = await intents.add(_provision("p1"))
        second = await intents.add(_provision("p1", owner="0x" + "aa" * 20))
        return first, second, intents.list_all()

    first, second, items = asyncio.run(scenario())
    assert first is True
    assert second is False
    assert len(items) == 1
    assert items[0].owner == OWNER


def test_reads_return_copies(make_config):
    config = make_config()

    async def scenario():
        intents = IntentManager(config)
        await intents.add(_provision("p1"))
        leaked = intents.get("p1")
        leaked.phase = ProvisionPhase.ACTIVE
        leaked.operators.append("0xbeef")
        return intents.get("p1")

    stored = asyncio.run(scenario())
    assert stored.phase == ProvisionPhase.PENDING_CONFIRMATION
    assert stored.operators == []


def test_update_ignores_unknown_and_immutable_fields(make_config):
    config = make_config()

    async def scenario():
        intents = IntentManager(config)
        await intents.add(_provision("p1"))
        before = intents.get("p1")
        after = await intents.update("p1", {"id": "other", "created_at": 0, "bogus": 1, "sandbox_id": "sbx"})
        missing = await intents.update("nope", {"sandbox_id": "x"})
        return before, after, missing

    before, after, missing = asyncio.run(scenario())
    assert after.id == "p1"
    assert after.created_at == before.created_at
    assert after.sandbox_id == "sbx"
    assert after.updated_at >= before.updated_at
    assert missing is None


def test_subscribers_get_snapshots_and_failures_are_isolated(make_config):
    config = make_config()
    seen = []

    def broken(_snap):
        raise RuntimeError("subscriber bug")

    async def recorder(snap):
        seen.append(tuple(p.phase for p in snap))

    async def scenario():
        intents = IntentManager(config)
        intents.subscribe(broken)
        unsubscribe = intents.subscribe(recorder)
        queue = intents.subscribe_queue("ui", max_queue=1)
        await intents.add(_provision("p1"))
        await intents.update("p1", {"phase": ProvisionPhase.JOB_SUBMITTED})
        unsubscribe()
        await intents.update("p1", {"phase": ProvisionPhase.JOB_PROCESSING})
        latest = queue.get_nowait()
        return latest, queue.empty()

    latest, drained = asyncio.run(scenario())
    assert seen == [(ProvisionPhase.PENDING_CONFIRMATION,), (ProvisionPhase.JOB_SUBMITTED,)]
    assert latest[0].phase == ProvisionPhase.JOB_PROCESSING
    assert drained


def test_list_for_owner_is_case_insensitive(make_config):
    config = make_config()

    async def scenario():
        intents = IntentManager(config)
        await intents.add(_provision("p1"))
        await intents.add(_provision("p2", owner="0x" + "aa" * 20))
        return intents.list_for_owner(OWNER.upper().replace("0X", "0x")), intents.list_for_owner("")

    mine, nobody = asyncio.run(scenario())
    assert [p.id for p in mine] == ["p1"]
    assert nobody == []


def test_clear_failed(make_config):
    config = make_config()

    async def scenario():
        intents = IntentManager(config)
        await intents.add(_provision("p1"))
        await intents.add(_provision("p2"))
        await intents.update("p1", {"phase": ProvisionPhase.FAILED})
        removed = await intents.clear_failed()
        return removed, [p.id for p in intents.list_all()]

    removed, left = asyncio.run(scenario())
    assert removed == 1
    assert left == ["p2"]
