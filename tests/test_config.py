import json

from conftest import FACTORY, REGISTRY, TANGLE
from core.config import ZERO_ADDRESS, parse_service_ids, parse_service_vaults


def test_parse_service_ids_skips_junk():
    assert parse_service_ids("1, 2,x,2,-1,,3") == [1, 2, 3]
    assert parse_service_ids("") == []
    assert parse_service_ids(None) == []


def test_parse_service_vaults():
    raw = {"0": "0xabc", "1": [ZERO_ADDRESS, "0xdef", "0x123"], "bad": "0x1", "2": ZERO_ADDRESS}
    assert parse_service_vaults(raw) == {0: ["0xabc"], 1: ["0xdef", "0x123"]}
    assert parse_service_vaults(["not", "a", "dict"]) == {}


def test_config_from_environment(make_config):
    config = make_config(
        TANGLE_ADDRESS=TANGLE,
        TRADING_BLUEPRINT_ADDRESS=REGISTRY.upper().replace("0X", "0x"),
        SERVICE_IDS="3,4",
        SERVICE_VAULTS=json.dumps({"3": "0x" + "aa" * 20}),
        BOT_META=json.dumps({"3": {"name": "Named"}}),
        MAX_PROVISIONS="5",
        DISCOVERY_INTERVAL_SEC="not-a-number",
    )
    assert config.SERVICE_IDS == [3, 4]
    assert config.SERVICE_VAULTS == {3: ["0x" + "aa" * 20]}
    assert config.MAX_PROVISIONS == 5
    assert config.DISCOVERY_INTERVAL_SEC == 30.0
    assert config.infrastructure_addresses == [TANGLE, REGISTRY]
    assert config.has_contract("TANGLE_ADDRESS")
    assert not config.has_contract("VAULT_FACTORY_ADDRESS")
    assert config.bot_meta(3) == {"name": "Named"}
    assert config.bot_meta(4) == {}
    assert config.bot_meta(None) == {}


def test_defaults_and_bad_json(make_config):
    config = make_config(SERVICE_VAULTS="{oops", VAULT_FACTORY_ADDRESS=FACTORY)
    assert config.SERVICE_VAULTS == {}
    assert config.BOT_META == {}
    assert config.OPERATOR_API_URL == ""
    assert config.MAX_DISMISSED_BOTS == 100
    assert config.infrastructure_addresses == [FACTORY]
