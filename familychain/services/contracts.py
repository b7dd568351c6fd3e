"""
Minimal ABIs of the FamilyChain contracts.

Only the events the reconciler consumes and the functions it calls are
listed; the full artifacts live with the contracts.
"""

from typing import Any, Dict, List, Tuple

from ..core.config import TASK_REGISTRY, FAMILY_REGISTRY, REWARD_TOKEN


def _param(name: str, type_: str, indexed: bool = False) -> Dict[str, Any]:
    return {"name": name, "type": type_, "internalType": type_, "indexed": indexed}


def _event(name: str, *inputs: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": "event", "name": name, "anonymous": False, "inputs": list(inputs)}


def _function(
    name: str,
    inputs: List[Tuple[str, str]],
    outputs: List[Tuple[str, str]],
    mutability: str = "view",
) -> Dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"name": n, "type": t, "internalType": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t, "internalType": t} for n, t in outputs],
    }


TASK_REGISTRY_ABI = [
    _event(
        "TaskCreated",
        _param("taskId", "uint256", indexed=True),
        _param("creator", "address", indexed=True),
        _param("title", "string"),
        _param("reward", "uint256"),
    ),
    _event(
        "TaskAssigned",
        _param("taskId", "uint256", indexed=True),
        _param("assignedTo", "address", indexed=True),
    ),
    _event(
        "TaskCompleted",
        _param("taskId", "uint256", indexed=True),
        _param("completedBy", "address", indexed=True),
    ),
    _event(
        "TaskApproved",
        _param("taskId", "uint256", indexed=True),
        _param("approvedBy", "address", indexed=True),
    ),
    _event(
        "TaskRejected",
        _param("taskId", "uint256", indexed=True),
        _param("rejectedBy", "address", indexed=True),
    ),
    _event(
        "RewardTransferred",
        _param("taskId", "uint256", indexed=True),
        _param("recipient", "address", indexed=True),
        _param("amount", "uint256"),
    ),
    _function(
        "getTask",
        [("taskId", "uint256")],
        [
            ("id", "uint256"),
            ("creator", "address"),
            ("assignedTo", "address"),
            ("title", "string"),
            ("description", "string"),
            ("reward", "uint256"),
            ("completed", "bool"),
            ("approved", "bool"),
            ("rejected", "bool"),
        ],
    ),
    _function("taskCount", [], [("", "uint256")]),
    _function("assignTask", [("taskId", "uint256"), ("childAddress", "address")], [], "nonpayable"),
    _function("completeTask", [("taskId", "uint256")], [], "nonpayable"),
    _function("approveTask", [("taskId", "uint256")], [], "nonpayable"),
    _function("rejectTask", [("taskId", "uint256")], [], "nonpayable"),
]

FAMILY_REGISTRY_ABI = [
    _event(
        "FamilyCreated",
        _param("familyId", "uint256", indexed=True),
        _param("parent", "address", indexed=True),
        _param("name", "string"),
    ),
    _event(
        "FamilyUpdated",
        _param("familyId", "uint256", indexed=True),
        _param("name", "string"),
    ),
    _event(
        "ChildAdded",
        _param("familyId", "uint256", indexed=True),
        _param("childAddress", "address", indexed=True),
        _param("name", "string"),
        _param("age", "uint8"),
    ),
    _event(
        "ChildRemoved",
        _param("familyId", "uint256", indexed=True),
        _param("childAddress", "address", indexed=True),
    ),
    _function(
        "families",
        [("", "uint256")],
        [("id", "uint256"), ("parent", "address"), ("name", "string"), ("active", "bool")],
    ),
    _function(
        "getChild",
        [("familyId", "uint256"), ("childAddress", "address")],
        [("", "address"), ("", "string"), ("", "uint8"), ("", "bool")],
    ),
    _function("familyCount", [], [("", "uint256")]),
]

REWARD_TOKEN_ABI = [
    _event(
        "Transfer",
        _param("from", "address", indexed=True),
        _param("to", "address", indexed=True),
        _param("value", "uint256"),
    ),
    _event(
        "Approval",
        _param("owner", "address", indexed=True),
        _param("spender", "address", indexed=True),
        _param("value", "uint256"),
    ),
    _function("balanceOf", [("account", "address")], [("", "uint256")]),
    _function("decimals", [], [("", "uint8")]),
    _function("mint", [("to", "address"), ("amount", "uint256")], [], "nonpayable"),
    _function("transfer", [("to", "address"), ("value", "uint256")], [("", "bool")], "nonpayable"),
]

CONTRACT_ABIS: Dict[str, List[Dict[str, Any]]] = {
    TASK_REGISTRY: TASK_REGISTRY_ABI,
    FAMILY_REGISTRY: FAMILY_REGISTRY_ABI,
    REWARD_TOKEN: REWARD_TOKEN_ABI,
}


def event_abis(contract: str) -> List[Dict[str, Any]]:
    """Event entries of a contract ABI."""
    return [entry for entry in CONTRACT_ABIS[contract] if entry["type"] == "event"]
