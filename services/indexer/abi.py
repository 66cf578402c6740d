from __future__ import annotations

import json
from pathlib import Path
from typing import Any


def _event(name: str, *inputs: tuple[str, str, bool]) -> dict[str, Any]:
    return {
        'anonymous': False,
        'inputs': [
            {'indexed': indexed, 'internalType': type_, 'name': input_name, 'type': type_}
            for input_name, type_, indexed in inputs
        ],
        'name': name,
        'type': 'event'
    }


DRUG_TRACKING_EVENTS_ABI: list[dict[str, Any]] = [
    _event(
        'DrugManufactured',
        ('id', 'string', False),
        ('productId', 'string', False),
        ('batchId', 'string', False),
        ('manufacturer', 'address', True),
        ('timestamp', 'uint256', False)
    ),
    _event(
        'DrugTransferred',
        ('id', 'string', False),
        ('from', 'address', True),
        ('to', 'address', True),
        ('newStatus', 'string', False),
        ('timestamp', 'uint256', False)
    ),
    _event(
        'ColdChainViolation',
        ('id', 'string', False),
        ('details', 'string', False),
        ('timestamp', 'uint256', False)
    ),
    _event(
        'OwnershipTransferred',
        ('previousOwner', 'address', True),
        ('newOwner', 'address', True)
    ),
    _event(
        'RoleGranted',
        ('role', 'bytes32', True),
        ('account', 'address', True),
        ('sender', 'address', True)
    ),
    _event(
        'RoleRevoked',
        ('role', 'bytes32', True),
        ('account', 'address', True),
        ('sender', 'address', True)
    ),
    _event(
        'RoleAdminChanged',
        ('role', 'bytes32', True),
        ('previousAdminRole', 'bytes32', True),
        ('newAdminRole', 'bytes32', True)
    )
]


def load_contract_abi(path_value: str | None) -> list[dict[str, Any]]:
    """Load an ABI from a Truffle/Hardhat artifact (`{"abi": [...]}`) or a bare ABI list.

    Falls back to the built-in DrugTracking event ABI when no path is configured.
    """
    if not path_value:
        return list(DRUG_TRACKING_EVENTS_ABI)

    path = Path(path_value)
    payload = json.loads(path.read_text(encoding='utf-8'))
    if isinstance(payload, dict):
        payload = payload.get('abi')
    if not isinstance(payload, list):
        raise ValueError(f'no ABI list found in {path}')
    return [entry for entry in payload if isinstance(entry, dict)]
