from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator

from pymongo import ASCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

LOGGER = logging.getLogger('drugtrace.store')

DRUGS = 'drugs'
HISTORY = 'drugHistoryEvents'
INDEXER_STATE = 'indexer_state'


class StorageError(RuntimeError):
    pass


class DuplicateDocumentError(StorageError):
    pass


@contextmanager
def _storage_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except DuplicateKeyError as exc:
        raise DuplicateDocumentError(f'{operation}: {exc}') from exc
    except PyMongoError as exc:
        raise StorageError(f'{operation}: {exc}') from exc


class DocumentStore:
    """Collection-level reads and writes shared by the indexer and the reader API.

    `atomic()` yields a store whose writes commit together when the block exits
    normally and are discarded when it raises.
    """

    def find_one(self, collection: str, query: dict[str, Any]) -> dict[str, Any] | None:
        raise NotImplementedError

    def find(
        self,
        collection: str,
        query: dict[str, Any],
        *,
        sort: list[tuple[str, int]] | None = None,
        limit: int = 0,
        projection: dict[str, int] | None = None
    ) -> list[dict[str, Any]]:
        raise NotImplementedError

    def upsert(self, collection: str, key: Any, fields: dict[str, Any]) -> None:
        raise NotImplementedError

    def insert(self, collection: str, document: dict[str, Any]) -> None:
        raise NotImplementedError

    def atomic(self):
        raise NotImplementedError

    def ping(self) -> None:
        raise NotImplementedError

    def ensure_indexes(self) -> None:
        raise NotImplementedError


class MongoDocumentStore(DocumentStore):
    def __init__(self, database: Database, session: Any = None) -> None:
        self.database = database
        self._session = session

    def find_one(self, collection: str, query: dict[str, Any]) -> dict[str, Any] | None:
        with _storage_errors(f'find_one {collection}'):
            return self.database[collection].find_one(query, session=self._session)

    def find(
        self,
        collection: str,
        query: dict[str, Any],
        *,
        sort: list[tuple[str, int]] | None = None,
        limit: int = 0,
        projection: dict[str, int] | None = None
    ) -> list[dict[str, Any]]:
        with _storage_errors(f'find {collection}'):
            cursor = self.database[collection].find(query, projection, session=self._session)
            if sort:
                cursor = cursor.sort(sort)
            if limit > 0:
                cursor = cursor.limit(limit)
            return list(cursor)

    def upsert(self, collection: str, key: Any, fields: dict[str, Any]) -> None:
        with _storage_errors(f'upsert {collection}'):
            self.database[collection].update_one(
                {'_id': key},
                {'$set': fields},
                upsert=True,
                session=self._session
            )

    def insert(self, collection: str, document: dict[str, Any]) -> None:
        with _storage_errors(f'insert {collection}'):
            self.database[collection].insert_one(document, session=self._session)

    @contextmanager
    def atomic(self) -> Iterator[MongoDocumentStore]:
        if self._session is not None:
            yield self
            return

        with _storage_errors('transaction'):
            with self.database.client.start_session() as session:
                with session.start_transaction():
                    yield MongoDocumentStore(self.database, session=session)

    def ping(self) -> None:
        with _storage_errors('ping'):
            self.database.client.admin.command('ping')

    def ensure_indexes(self) -> None:
        with _storage_errors('ensure_indexes'):
            history = self.database[HISTORY]
            history.create_index(
                [('transactionHash', ASCENDING), ('logIndex', ASCENDING)],
                unique=True,
                name='history_tx_log_unique'
            )
            history.create_index(
                [('drugId', ASCENDING), ('blockNumber', ASCENDING), ('logIndex', ASCENDING)],
                name='history_by_drug'
            )
            drugs = self.database[DRUGS]
            drugs.create_index([('currentOwnerAddress', ASCENDING)], name='drugs_by_owner')
            drugs.create_index([('manufacturerAddress', ASCENDING)], name='drugs_by_manufacturer')
        LOGGER.info('indexes ensured database=%s', self.database.name)

    def close(self) -> None:
        self.database.client.close()


def connect_mongo(uri: str, database: str) -> MongoDocumentStore:
    client: MongoClient = MongoClient(uri, tz_aware=True)
    return MongoDocumentStore(client[database])
