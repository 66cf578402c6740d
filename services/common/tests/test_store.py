import unittest
from unittest.mock import MagicMock

from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError

from services.common.store import (
    DRUGS,
    HISTORY,
    DuplicateDocumentError,
    MongoDocumentStore,
    StorageError
)


class MongoDocumentStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.database = MagicMock()
        self.store = MongoDocumentStore(self.database)

    def test_upsert_sets_fields_by_id(self) -> None:
        self.store.upsert(DRUGS, 'D1', {'status': 'MANUFACTURED'})

        self.database[DRUGS].update_one.assert_called_once_with(
            {'_id': 'D1'},
            {'$set': {'status': 'MANUFACTURED'}},
            upsert=True,
            session=None
        )

    def test_find_applies_sort_and_limit(self) -> None:
        cursor = self.database[HISTORY].find.return_value
        cursor.sort.return_value = cursor
        cursor.limit.return_value = cursor
        cursor.__iter__.return_value = iter([{'drugId': 'D1'}])

        rows = self.store.find(
            HISTORY,
            {'drugId': 'D1'},
            sort=[('blockNumber', 1), ('logIndex', 1)],
            limit=10,
            projection={'_id': 0}
        )

        self.database[HISTORY].find.assert_called_once_with({'drugId': 'D1'}, {'_id': 0}, session=None)
        cursor.sort.assert_called_once_with([('blockNumber', 1), ('logIndex', 1)])
        cursor.limit.assert_called_once_with(10)
        self.assertEqual(rows, [{'drugId': 'D1'}])

    def test_duplicate_key_maps_to_duplicate_document_error(self) -> None:
        self.database[HISTORY].insert_one.side_effect = DuplicateKeyError('E11000 duplicate key')

        with self.assertRaises(DuplicateDocumentError):
            self.store.insert(HISTORY, {'transactionHash': '0x1', 'logIndex': 0})

    def test_driver_errors_map_to_storage_error(self) -> None:
        self.database[DRUGS].find_one.side_effect = ServerSelectionTimeoutError('no primary')

        with self.assertRaises(StorageError):
            self.store.find_one(DRUGS, {'_id': 'D1'})

    def test_atomic_binds_writes_to_one_transaction(self) -> None:
        session = self.database.client.start_session.return_value.__enter__.return_value

        with self.store.atomic() as unit:
            unit.insert(HISTORY, {'transactionHash': '0x1', 'logIndex': 0})
            with unit.atomic() as nested:
                self.assertIs(nested, unit)

        session.start_transaction.assert_called_once_with()
        self.database[HISTORY].insert_one.assert_called_once_with(
            {'transactionHash': '0x1', 'logIndex': 0},
            session=session
        )

    def test_ensure_indexes_declares_unique_event_key(self) -> None:
        self.store.ensure_indexes()

        calls = self.database[HISTORY].create_index.call_args_list
        self.assertEqual(calls[0].kwargs['unique'], True)
        self.assertEqual(calls[0].args[0], [('transactionHash', 1), ('logIndex', 1)])


if __name__ == '__main__':
    unittest.main()
