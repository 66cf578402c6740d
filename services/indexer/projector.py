from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from services.common.store import DRUGS, HISTORY, DocumentStore, DuplicateDocumentError, StorageError

from .events import (
    ZERO_ADDRESS,
    ChainEvent,
    ColdChainViolation,
    ContractAdminEvent,
    DrugManufactured,
    DrugTransferred,
    UnknownEvent
)
from .metrics import EVENTS_PROJECTED_TOTAL

LOGGER = logging.getLogger('drugtrace.indexer.projector')

MANUFACTURED_STATUS = 'MANUFACTURED'


class ProjectionOutcome(Enum):
    PROJECTED = 'projected'
    DUPLICATE = 'duplicate'
    FILTERED = 'filtered'
    UNKNOWN = 'unknown'
    DEFERRED = 'deferred'


def _to_datetime(seconds: int | None) -> datetime | None:
    if seconds is None:
        return None
    return datetime.fromtimestamp(int(seconds), tz=timezone.utc)


def _is_stale(drug: dict[str, Any], event: ChainEvent) -> bool:
    synced = (int(drug.get('lastSyncedBlock', -1)), int(drug.get('lastSyncedLogIndex', -1)))
    return synced > event.sort_key


class EventProjector:
    """Turns one chain event into a drug upsert plus one history row, atomically.

    The (transactionHash, logIndex) pair is the idempotency key: replaying an
    event that already has a history row is a no-op.

    A drug whose event failed with a storage error is deferred for the rest of
    the run: its later events are not written, so the next run replays them in
    chain order behind the retried one.
    """

    def __init__(
        self,
        store: DocumentStore,
        contract_address: str,
        role_names: dict[str, str] | None = None
    ) -> None:
        self.store = store
        self.contract_address = contract_address
        self.role_names = role_names or {}
        self.deferred_drugs: set[str] = set()

    def retry_deferred(self) -> None:
        self.deferred_drugs.clear()

    def project(self, event: ChainEvent) -> ProjectionOutcome:
        payload = event.payload

        if isinstance(payload, ContractAdminEvent):
            self._log_admin_event(event, payload)
            return self._count(ProjectionOutcome.FILTERED)

        if isinstance(payload, UnknownEvent):
            LOGGER.warning('unknown event type consumed without writes %s', event.describe())
            return self._count(ProjectionOutcome.UNKNOWN)

        drug_id = payload.drug_id
        if drug_id in self.deferred_drugs:
            LOGGER.warning('drug deferred after earlier storage failure; not projected %s', event.describe())
            return self._count(ProjectionOutcome.DEFERRED)

        try:
            with self.store.atomic() as unit:
                existing = unit.find_one(
                    HISTORY,
                    {'transactionHash': event.transaction_hash, 'logIndex': event.log_index}
                )
                if existing is not None:
                    LOGGER.info('event already processed %s', event.describe())
                    return self._count(ProjectionOutcome.DUPLICATE)

                history = self._apply(unit, event)
                unit.insert(HISTORY, history)
        except DuplicateDocumentError:
            # a concurrent writer won the unique index race; same outcome as the lookup above
            LOGGER.info('event already processed (unique index) %s', event.describe())
            return self._count(ProjectionOutcome.DUPLICATE)
        except StorageError:
            self.deferred_drugs.add(drug_id)
            raise

        LOGGER.info('projected %s', event.describe())
        return self._count(ProjectionOutcome.PROJECTED)

    def _apply(self, unit: DocumentStore, event: ChainEvent) -> dict[str, Any]:
        payload = event.payload
        if isinstance(payload, DrugManufactured):
            return self._apply_manufactured(unit, event, payload)
        if isinstance(payload, DrugTransferred):
            return self._apply_transferred(unit, event, payload)
        if isinstance(payload, ColdChainViolation):
            return self._history(
                event,
                drug_id=payload.drug_id,
                from_address=None,
                to_address=None,
                details=f'Cold Chain Violation: {payload.details}',
                fallback_ts=payload.timestamp
            )
        raise TypeError(f'no projection for payload {type(payload).__name__}')

    def _apply_manufactured(
        self,
        unit: DocumentStore,
        event: ChainEvent,
        payload: DrugManufactured
    ) -> dict[str, Any]:
        drug = unit.find_one(DRUGS, {'_id': payload.drug_id})
        if drug is not None and _is_stale(drug, event):
            LOGGER.warning('drug state newer than event; history only %s', event.describe())
        else:
            manufactured_at = _to_datetime(payload.timestamp)
            unit.upsert(
                DRUGS,
                payload.drug_id,
                {
                    'productId': payload.product_id,
                    'batchId': payload.batch_id,
                    'manufacturerAddress': payload.manufacturer,
                    'currentOwnerAddress': payload.manufacturer,
                    'status': MANUFACTURED_STATUS,
                    'manufactureTimestamp': manufactured_at,
                    'lastUpdateTimestamp': manufactured_at,
                    'contractAddress': self.contract_address,
                    'lastSyncedBlock': event.block_number,
                    'lastSyncedLogIndex': event.log_index
                }
            )
            self._replay_later_transfer(unit, event, payload.drug_id)

        return self._history(
            event,
            drug_id=payload.drug_id,
            from_address=ZERO_ADDRESS,
            to_address=payload.manufacturer,
            details=(
                f'Manufactured by {payload.manufacturer}. '
                f'Product: {payload.product_id}, Batch: {payload.batch_id}'
            ),
            fallback_ts=payload.timestamp
        )

    def _replay_later_transfer(self, unit: DocumentStore, event: ChainEvent, drug_id: str) -> None:
        """Apply the newest transfer already recorded history-only for a drug created out of order."""
        rows = unit.find(
            HISTORY,
            {'drugId': drug_id, 'eventType': DrugTransferred.name},
            sort=[('blockNumber', -1), ('logIndex', -1)]
        )
        later = [row for row in rows if (row['blockNumber'], row['logIndex']) > event.sort_key]
        if not later:
            return

        latest = later[0]
        LOGGER.warning(
            'applying later transfer recorded before manufacture drug_id=%s tx_hash=%s block=%s log_index=%s',
            drug_id,
            latest['transactionHash'],
            latest['blockNumber'],
            latest['logIndex']
        )
        unit.upsert(
            DRUGS,
            drug_id,
            {
                'currentOwnerAddress': latest['toAddress'],
                'status': latest.get('status'),
                'lastUpdateTimestamp': latest.get('eventTimestamp'),
                'lastSyncedBlock': latest['blockNumber'],
                'lastSyncedLogIndex': latest['logIndex']
            }
        )

    def _apply_transferred(
        self,
        unit: DocumentStore,
        event: ChainEvent,
        payload: DrugTransferred
    ) -> dict[str, Any]:
        drug = unit.find_one(DRUGS, {'_id': payload.drug_id})
        if drug is None:
            LOGGER.warning('transfer for unindexed drug; history only %s', event.describe())
        elif _is_stale(drug, event):
            LOGGER.warning('drug state newer than event; history only %s', event.describe())
        else:
            unit.upsert(
                DRUGS,
                payload.drug_id,
                {
                    'currentOwnerAddress': payload.recipient,
                    'status': payload.new_status,
                    'lastUpdateTimestamp': _to_datetime(payload.timestamp),
                    'lastSyncedBlock': event.block_number,
                    'lastSyncedLogIndex': event.log_index
                }
            )

        history = self._history(
            event,
            drug_id=payload.drug_id,
            from_address=payload.sender,
            to_address=payload.recipient,
            details=(
                f'Transferred from {payload.sender} to {payload.recipient}. '
                f'New Status: {payload.new_status}'
            ),
            fallback_ts=payload.timestamp
        )
        history['status'] = payload.new_status
        return history

    def _history(
        self,
        event: ChainEvent,
        *,
        drug_id: str,
        from_address: str | None,
        to_address: str | None,
        details: str,
        fallback_ts: int | None
    ) -> dict[str, Any]:
        ts = event.block_timestamp if event.block_timestamp is not None else fallback_ts
        return {
            'drugId': drug_id,
            'eventType': event.name,
            'fromAddress': from_address,
            'toAddress': to_address,
            'details': details,
            'eventTimestamp': _to_datetime(ts),
            'transactionHash': event.transaction_hash,
            'blockNumber': event.block_number,
            'logIndex': event.log_index
        }

    def _log_admin_event(self, event: ChainEvent, payload: ContractAdminEvent) -> None:
        args = dict(payload.args)
        for key in ('role', 'previousAdminRole', 'newAdminRole'):
            if key in args:
                role_hash = str(args[key]).lower()
                args[key] = self.role_names.get(role_hash, role_hash)
        details = ' '.join(f'{key}={value}' for key, value in sorted(args.items()))
        LOGGER.info('contract admin event filtered %s %s', event.describe(), details)

    @staticmethod
    def _count(outcome: ProjectionOutcome) -> ProjectionOutcome:
        EVENTS_PROJECTED_TOTAL.labels(outcome=outcome.value).inc()
        return outcome
