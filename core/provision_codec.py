import logging
from typing import Optional, Tuple

from eth_abi import decode as abi_decode
from eth_utils import to_checksum_address

from core.abis import PROVISION_OUTPUT_TYPES
from core.contracts import ProvisionOutput, ProvisionPhase
from core.errors import OutputDecodeError

logger = logging.getLogger("ProvisionCodec")

PROGRESS_LABELS = {
    "queued": "Preparing environment...",
    "image_pull": "Pulling container image...",
    "container_create": "Launching container...",
    "container_start": "Container ready, configuring...",
    "health_check": "Saving bot configuration...",
    "ready": "Submitting on-chain result...",
}

RESULT_PENDING = "result_pending"
JOB_COMPLETED = "job_completed"


def progress_label(phase: Optional[str], fallback: str = "") -> str:
    if not phase:
        return fallback
    return PROGRESS_LABELS.get(phase, fallback or phase)


def extract_job_submission(receipt) -> Tuple[Optional[int], Optional[int]]:
    """(call_id, service_id) from the first JobSubmitted log of a receipt."""
    for log in getattr(receipt, "logs", None) or []:
        if log.event != "JobSubmitted":
            continue
        try:
            call_id = int(log.args["callId"])
        except (KeyError, TypeError, ValueError):
            continue
        sid = log.args.get("serviceId")
        return call_id, int(sid) if sid is not None else None
    return None, None


def _to_bytes(output) -> bytes:
    if isinstance(output, (bytes, bytearray)):
        return bytes(output)
    if isinstance(output, str):
        s = output[2:] if output.startswith("0x") else output
        try:
            return bytes.fromhex(s)
        except ValueError as e:
            raise OutputDecodeError(f"output is not hex: {e}") from e
    raise OutputDecodeError(f"unsupported output type {type(output).__name__}")


def has_output(output) -> bool:
    if output is None:
        return False
    if isinstance(output, str):
        return output not in ("", "0x")
    return len(output) > 0


def decode_provision_output(output) -> ProvisionOutput:
    """Decode (address vault, address share, string sandbox_id, uint64 workflow_id)."""
    data = _to_bytes(output)
    try:
        vault, share, sandbox_id, workflow_id = abi_decode(PROVISION_OUTPUT_TYPES, data)
    except Exception as e:
        raise OutputDecodeError(f"malformed provision output ({len(data)} bytes): {e}") from e
    return ProvisionOutput(
        vault_address=to_checksum_address(vault),
        share_token=to_checksum_address(share),
        sandbox_id=sandbox_id,
        workflow_id=int(workflow_id),
    )


def next_phase_for_output(output: Optional[ProvisionOutput]) -> ProvisionPhase:
    # A missing output (decode failure) still advances: the job result landed.
    if output is None or output.workflow_id == 0:
        return ProvisionPhase.AWAITING_SECRETS
    return ProvisionPhase.ACTIVE
