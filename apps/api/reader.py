from __future__ import annotations

from typing import Any

from web3 import Web3

from services.common.store import DRUGS, HISTORY, INDEXER_STATE, DocumentStore, StorageError
from services.indexer.progress import PROGRESS_KEY

HISTORY_ORDER = [('blockNumber', 1), ('logIndex', 1)]


class ReaderError(Exception):
    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


def _checksum(value: str | None, field: str) -> str | None:
    if value is None or not value.strip():
        return None
    if not Web3.is_address(value.strip()):
        raise ReaderError(422, f'{field} is not a valid address: {value}')
    return Web3.to_checksum_address(value.strip())


def _public_drug(document: dict[str, Any]) -> dict[str, Any]:
    drug = {key: value for key, value in document.items() if key != '_id'}
    drug['id'] = document['_id']
    return drug


def _load(store: DocumentStore, operation: str, fn):
    try:
        return fn()
    except StorageError as exc:
        raise ReaderError(503, f'{operation} unavailable: {exc}') from exc


def get_drug(store: DocumentStore, drug_id: str) -> dict[str, Any]:
    document = _load(store, 'drug lookup', lambda: store.find_one(DRUGS, {'_id': drug_id}))
    if document is None:
        raise ReaderError(404, f'drug_id={drug_id} not found')
    return _public_drug(document)


def list_drugs(
    store: DocumentStore,
    owner: str | None = None,
    manufacturer: str | None = None,
    limit: int = 100
) -> list[dict[str, Any]]:
    query: dict[str, Any] = {}
    owner_address = _checksum(owner, 'owner')
    if owner_address:
        query['currentOwnerAddress'] = owner_address
    manufacturer_address = _checksum(manufacturer, 'manufacturer')
    if manufacturer_address:
        query['manufacturerAddress'] = manufacturer_address

    rows = _load(
        store,
        'drug listing',
        lambda: store.find(DRUGS, query, sort=[('_id', 1)], limit=limit)
    )
    return [_public_drug(row) for row in rows]


def drug_history(store: DocumentStore, drug_id: str) -> list[dict[str, Any]]:
    return _load(
        store,
        'history lookup',
        lambda: store.find(HISTORY, {'drugId': drug_id}, sort=HISTORY_ORDER, projection={'_id': 0})
    )


def verify_drug(store: DocumentStore, drug_id: str) -> dict[str, Any]:
    """Drug summary plus its ordered custody trail, as shown to a verifying party."""
    drug = get_drug(store, drug_id)
    history = drug_history(store, drug_id)
    return {
        'id': drug['id'],
        'productId': drug.get('productId'),
        'batchId': drug.get('batchId'),
        'manufacturer': drug.get('manufacturerAddress'),
        'currentOwner': drug.get('currentOwnerAddress'),
        'status': drug.get('status'),
        'history': [
            {
                'eventType': row.get('eventType'),
                'fromAddress': row.get('fromAddress'),
                'toAddress': row.get('toAddress'),
                'details': row.get('details'),
                'timestamp': row.get('eventTimestamp'),
                'transactionHash': row.get('transactionHash'),
                'blockNumber': row.get('blockNumber')
            }
            for row in history
        ]
    }


def indexer_progress(store: DocumentStore) -> dict[str, Any]:
    state = _load(store, 'progress lookup', lambda: store.find_one(INDEXER_STATE, {'_id': PROGRESS_KEY}))
    if not state:
        return {'blockNumber': None, 'updatedAt': None}
    return {'blockNumber': state.get('blockNumber'), 'updatedAt': state.get('timestamp')}
