import pytest
from eth_abi import encode

from core.contracts import (
    Provision,
    ProvisionPhase,
    ProvisionProgress,
    SourceRecord,
    VaultSource,
    ZERO_ADDRESS,
    can_transition,
    fold_records,
    is_placeholder_vault,
)
from core.errors import OutputDecodeError
from core.ledger_client import LedgerLog, Receipt
from core.provision_codec import (
    decode_provision_output,
    extract_job_submission,
    has_output,
    next_phase_for_output,
    progress_label,
)

P = ProvisionPhase


@pytest.mark.parametrize("current,new,allowed", [
    (P.PENDING_CONFIRMATION, P.JOB_SUBMITTED, True),
    (P.PENDING_CONFIRMATION, P.AWAITING_SECRETS, True),
    (P.JOB_PROCESSING, P.JOB_SUBMITTED, False),
    (P.AWAITING_SECRETS, P.JOB_PROCESSING, False),
    (P.JOB_PROCESSING, P.FAILED, True),
    (P.ACTIVE, P.FAILED, False),
    (P.FAILED, P.ACTIVE, False),
    (P.ACTIVE, P.ACTIVE, True),
])
def test_can_transition(current, new, allowed):
    assert can_transition(current, new) is allowed


def test_fold_records_rank_order():
    folded = fold_records([
        SourceRecord(VaultSource.INTENT, {"name": "intent", "strategy_type": "dex"}),
        SourceRecord(VaultSource.OPERATOR, {"name": None, "sandbox_id": "sbx"}),
        SourceRecord(VaultSource.FACTORY, {"name": "factory"}),
    ])
    assert folded == {"name": "factory", "sandbox_id": "sbx", "strategy_type": "dex"}


def test_placeholder_vaults():
    infra = ["0x" + "11" * 20]
    assert is_placeholder_vault(None)
    assert is_placeholder_vault(ZERO_ADDRESS)
    assert is_placeholder_vault("0x" + "11" * 20, infra)
    assert not is_placeholder_vault("0x" + "22" * 20, infra)


def test_provision_dict_round_trip_ignores_unknown_keys():
    p = Provision(id="p1", owner="0xowner", name="Alpha", strategy_type="dex", phase="job_submitted", call_id=3)
    data = p.to_dict()
    assert data["phase"] == "job_submitted"
    data["legacy_field"] = True
    again = Provision.from_dict(data)
    assert again == p
    assert again.is_event_eligible


def test_progress_payload():
    progress = ProvisionProgress.from_payload({"phase": "ready", "progress_pct": "100", "detail": "done", "metadata": []})
    assert progress.is_ready
    assert progress.message == "done"
    assert progress.metadata == {}
    assert progress_label("container_start") == "Container ready, configuring..."
    assert progress_label("custom_step", "fallback") == "fallback"
    assert progress_label(None, "fallback") == "fallback"


def test_decode_provision_output():
    vault = "0x" + "ab" * 20
    raw = encode(["address", "address", "string", "uint64"], [vault, "0x" + "cd" * 20, "sbx-1", 12])
    out = decode_provision_output("0x" + raw.hex())
    assert out.vault_address.lower() == vault
    assert out.sandbox_id == "sbx-1"
    assert out.workflow_id == 12
    assert next_phase_for_output(out) == P.ACTIVE
    assert next_phase_for_output(None) == P.AWAITING_SECRETS


def test_malformed_output_raises():
    with pytest.raises(OutputDecodeError):
        decode_provision_output(b"\x01\x02")
    with pytest.raises(OutputDecodeError):
        decode_provision_output("0xzz")
    assert not has_output("0x")
    assert not has_output(b"")


def test_extract_job_submission():
    receipt = Receipt(status="success", logs=[
        LedgerLog("ServiceActivated", {"serviceId": 1}),
        LedgerLog("JobSubmitted", {"serviceId": 2, "callId": 40}),
    ])
    assert extract_job_submission(receipt) == (40, 2)
    assert extract_job_submission(Receipt(status="success")) == (None, None)
