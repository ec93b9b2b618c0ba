# core/abis.py
"""Minimal contract ABIs: only the entries the tracker reads."""


def _fn(name, inputs, outputs):
    return {
        "type": "function",
        "name": name,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": "", "type": t} for t in outputs],
        "stateMutability": "view",
    }


def _event(name, inputs):
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [{"name": n, "type": t, "indexed": idx} for n, t, idx in inputs],
    }


TANGLE_ABI = [
    _fn("getServiceOperators", [("serviceId", "uint64")], ["address[]"]),
    _fn("isServiceActive", [("serviceId", "uint64")], ["bool"]),
    _event("ServiceActivated", [
        ("serviceId", "uint64", True),
        ("requestId", "uint64", True),
        ("blueprintId", "uint64", True),
    ]),
    _event("JobSubmitted", [
        ("serviceId", "uint64", True),
        ("callId", "uint64", True),
        ("jobIndex", "uint8", True),
        ("caller", "address", False),
        ("inputs", "bytes", False),
    ]),
    _event("JobResultSubmitted", [
        ("serviceId", "uint64", True),
        ("callId", "uint64", True),
        ("operator", "address", True),
        ("output", "bytes", False),
    ]),
    _event("JobCompleted", [
        ("serviceId", "uint64", True),
        ("callId", "uint64", True),
    ]),
]

TRADING_BLUEPRINT_ABI = [
    _fn("instanceVault", [("serviceId", "uint64")], ["address"]),
    _fn("botVaults", [("serviceId", "uint64")], ["address[]"]),
    _fn("botVaultByCall", [("serviceId", "uint64"), ("callId", "uint64")], ["address"]),
]

VAULT_FACTORY_ABI = [
    _fn("getServiceVaults", [("serviceId", "uint64")], ["address[]"]),
]

VAULT_ABI = [
    _fn("totalAssets", [], ["uint256"]),
    _fn("paused", [], ["bool"]),
    _fn("asset", [], ["address"]),
]

ERC20_ABI = [
    _fn("symbol", [], ["string"]),
    _fn("decimals", [], ["uint8"]),
]

# Fixed job output tuple for the provision job
PROVISION_OUTPUT_TYPES = ["address", "address", "string", "uint64"]

ABIS = {
    "tangle": TANGLE_ABI,
    "registry": TRADING_BLUEPRINT_ABI,
    "factory": VAULT_FACTORY_ABI,
    "vault": VAULT_ABI,
    "erc20": ERC20_ABI,
}
