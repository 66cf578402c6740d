import unittest
from datetime import datetime, timezone

from services.common.store import DRUGS, HISTORY, StorageError
from services.indexer.events import ZERO_ADDRESS, role_names
from services.indexer.projector import EventProjector, ProjectionOutcome
from services.indexer.tests.fakes import (
    MemoryDocumentStore,
    admin_event,
    manufactured,
    transferred,
    unknown_event,
    violation
)

CONTRACT = '0x00000000000000000000000000000000000000Cc'


class EventProjectorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = MemoryDocumentStore()
        self.projector = EventProjector(self.store, CONTRACT, role_names=role_names())

    def test_manufactured_creates_drug_and_history(self) -> None:
        outcome = self.projector.project(manufactured(drug_id='D1', manufacturer='0xA', ts=100, tx='t1', log=0))

        self.assertEqual(outcome, ProjectionOutcome.PROJECTED)
        drug = self.store.find_one(DRUGS, {'_id': 'D1'})
        self.assertEqual(drug['currentOwnerAddress'], '0xA')
        self.assertEqual(drug['manufacturerAddress'], '0xA')
        self.assertEqual(drug['status'], 'MANUFACTURED')
        self.assertEqual(drug['contractAddress'], CONTRACT)
        self.assertEqual(drug['manufactureTimestamp'], datetime.fromtimestamp(100, tz=timezone.utc))
        self.assertEqual(drug['lastSyncedBlock'], 1)

        history = self.store.rows(HISTORY)
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0]['fromAddress'], ZERO_ADDRESS)
        self.assertEqual(history[0]['toAddress'], '0xA')
        self.assertEqual(history[0]['eventType'], 'DrugManufactured')
        self.assertIn('Product: P1, Batch: B1', history[0]['details'])

    def test_replayed_event_is_a_noop(self) -> None:
        self.projector.project(manufactured())
        before = self.store.find_one(DRUGS, {'_id': 'D1'})

        outcome = self.projector.project(manufactured())

        self.assertEqual(outcome, ProjectionOutcome.DUPLICATE)
        self.assertEqual(len(self.store.rows(HISTORY)), 1)
        self.assertEqual(self.store.find_one(DRUGS, {'_id': 'D1'}), before)

    def test_transfer_moves_owner_and_status(self) -> None:
        self.projector.project(manufactured())
        outcome = self.projector.project(
            transferred(sender='0xA', recipient='0xB', status='IN_TRANSIT', tx='t2', log=0)
        )

        self.assertEqual(outcome, ProjectionOutcome.PROJECTED)
        drug = self.store.find_one(DRUGS, {'_id': 'D1'})
        self.assertEqual(drug['currentOwnerAddress'], '0xB')
        self.assertEqual(drug['status'], 'IN_TRANSIT')
        self.assertEqual(drug['lastUpdateTimestamp'], datetime.fromtimestamp(200, tz=timezone.utc))

        row = self.store.find_one(HISTORY, {'transactionHash': 't2'})
        self.assertEqual(row['fromAddress'], '0xA')
        self.assertEqual(row['toAddress'], '0xB')
        self.assertEqual(row['status'], 'IN_TRANSIT')

    def test_later_log_index_in_same_transaction_wins(self) -> None:
        self.projector.project(manufactured(tx='t3', log=0, block=5))
        self.projector.project(transferred(tx='t3', log=1, block=5, status='RECEIVED_BY_DISTRIBUTOR'))

        drug = self.store.find_one(DRUGS, {'_id': 'D1'})
        self.assertEqual(drug['status'], 'RECEIVED_BY_DISTRIBUTOR')
        self.assertEqual(len(self.store.rows(HISTORY)), 2)

    def test_stale_event_records_history_without_touching_state(self) -> None:
        self.projector.project(manufactured(tx='t1', block=1))
        self.projector.project(transferred(tx='t5', block=9, status='DISPENSED_TO_PATIENT', recipient='0xC'))

        outcome = self.projector.project(transferred(tx='t6', block=4, status='IN_TRANSIT', recipient='0xB'))

        self.assertEqual(outcome, ProjectionOutcome.PROJECTED)
        drug = self.store.find_one(DRUGS, {'_id': 'D1'})
        self.assertEqual(drug['status'], 'DISPENSED_TO_PATIENT')
        self.assertEqual(drug['lastSyncedBlock'], 9)
        self.assertIsNotNone(self.store.find_one(HISTORY, {'transactionHash': 't6'}))

    def test_transfer_for_unindexed_drug_keeps_history_only(self) -> None:
        outcome = self.projector.project(transferred(drug_id='D404'))

        self.assertEqual(outcome, ProjectionOutcome.PROJECTED)
        self.assertIsNone(self.store.find_one(DRUGS, {'_id': 'D404'}))
        self.assertEqual(len(self.store.rows(HISTORY)), 1)

    def test_cold_chain_violation_is_history_only(self) -> None:
        self.projector.project(manufactured())
        before = self.store.find_one(DRUGS, {'_id': 'D1'})

        self.projector.project(violation(details='Temperature out of range (12C).'))

        self.assertEqual(self.store.find_one(DRUGS, {'_id': 'D1'}), before)
        row = self.store.find_one(HISTORY, {'transactionHash': 't4'})
        self.assertEqual(row['details'], 'Cold Chain Violation: Temperature out of range (12C).')
        self.assertIsNone(row['fromAddress'])
        self.assertIsNone(row['toAddress'])

    def test_contract_admin_events_are_filtered(self) -> None:
        role = role_names()
        admin_hash = next(key for key, value in role.items() if value == 'DEFAULT_ADMIN_ROLE')

        self.assertEqual(self.projector.project(admin_event()), ProjectionOutcome.FILTERED)
        with self.assertLogs('drugtrace.indexer.projector', level='INFO') as logs:
            outcome = self.projector.project(
                admin_event(name='RoleGranted', args={'role': admin_hash, 'account': '0x1', 'sender': '0x2'})
            )

        self.assertEqual(outcome, ProjectionOutcome.FILTERED)
        self.assertIn('role=DEFAULT_ADMIN_ROLE', logs.output[0])
        self.assertEqual(self.store.rows(DRUGS), [])
        self.assertEqual(self.store.rows(HISTORY), [])

    def test_unknown_event_consumed_without_writes(self) -> None:
        with self.assertLogs('drugtrace.indexer.projector', level='WARNING'):
            outcome = self.projector.project(unknown_event())

        self.assertEqual(outcome, ProjectionOutcome.UNKNOWN)
        self.assertEqual(self.store.rows(DRUGS), [])
        self.assertEqual(self.store.rows(HISTORY), [])

    def test_history_insert_failure_rolls_back_drug_upsert(self) -> None:
        self.store.fail_on[f'insert:{HISTORY}'] = StorageError('write conflict')

        with self.assertRaises(StorageError):
            self.projector.project(manufactured())

        self.assertIsNone(self.store.find_one(DRUGS, {'_id': 'D1'}))
        self.assertEqual(self.store.rows(HISTORY), [])
        self.assertEqual(self.store.aborts, 1)

    def test_drug_with_failed_event_is_deferred_until_retry(self) -> None:
        self.store.fail_on[f'insert:{HISTORY}'] = StorageError('write conflict')
        with self.assertRaises(StorageError):
            self.projector.project(manufactured())
        del self.store.fail_on[f'insert:{HISTORY}']

        outcome = self.projector.project(transferred())

        self.assertEqual(outcome, ProjectionOutcome.DEFERRED)
        self.assertEqual(self.store.rows(HISTORY), [])
        self.assertEqual(self.projector.project(manufactured(drug_id='D2', tx='t5')), ProjectionOutcome.PROJECTED)

        self.projector.retry_deferred()

        self.assertEqual(self.projector.project(manufactured()), ProjectionOutcome.PROJECTED)
        self.assertEqual(self.projector.project(transferred()), ProjectionOutcome.PROJECTED)
        self.assertEqual(self.store.find_one(DRUGS, {'_id': 'D1'})['status'], 'IN_TRANSIT')

    def test_manufacture_after_history_only_transfer_applies_that_transfer(self) -> None:
        self.projector.project(transferred(tx='t6', block=6, recipient='0xB', status='IN_TRANSIT'))
        self.projector.project(transferred(tx='t7', block=7, sender='0xB', recipient='0xC', status='RECEIVED_BY_PHARMACY'))

        self.projector.project(manufactured(tx='t5', block=5))

        drug = self.store.find_one(DRUGS, {'_id': 'D1'})
        self.assertEqual(drug['currentOwnerAddress'], '0xC')
        self.assertEqual(drug['status'], 'RECEIVED_BY_PHARMACY')
        self.assertEqual(drug['manufacturerAddress'], '0xA')
        self.assertEqual((drug['lastSyncedBlock'], drug['lastSyncedLogIndex']), (7, 0))
        self.assertEqual(len(self.store.rows(HISTORY)), 3)

    def test_unique_index_violation_reports_duplicate(self) -> None:
        self.projector.project(manufactured())
        # lookup misses (e.g. another writer committed in between), insert hits the unique index
        original = self.store.find_one
        self.store.find_one = lambda collection, query: None if collection == HISTORY else original(collection, query)

        outcome = self.projector.project(manufactured())

        self.assertEqual(outcome, ProjectionOutcome.DUPLICATE)
        self.assertEqual(len(self.store.rows(HISTORY)), 1)


if __name__ == '__main__':
    unittest.main()
