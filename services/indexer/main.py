from __future__ import annotations

import asyncio
import logging
import os
import signal
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any

from prometheus_client import start_http_server
from web3 import Web3

from services.common.store import DocumentStore, StorageError, connect_mongo

from .abi import load_contract_abi
from .backfill import DEFAULT_BATCH_SIZE, BackfillReader
from .events import ZERO_ROLE_HASH, EventDecoder, role_names
from .live import LiveSubscriber
from .metrics import INDEXER_STATE
from .progress import ProgressTracker
from .projector import EventProjector
from .source import SourceError, Web3EventSource

LOGGER = logging.getLogger('drugtrace.indexer')


@dataclass
class Settings:
    service_name: str
    rpc_url: str
    ws_url: str
    rpc_timeout_seconds: int
    contract_address: str
    contract_abi_path: str
    start_block: int
    batch_size: int
    confirmation_depth: int
    admin_role_hash: str
    mongodb_uri: str
    mongodb_database: str
    metrics_port: int


def _ws_url_from_rpc(rpc_url: str) -> str:
    if rpc_url.startswith('https://'):
        return 'wss://' + rpc_url[len('https://'):]
    if rpc_url.startswith('http://'):
        return 'ws://' + rpc_url[len('http://'):]
    return rpc_url


def _settings_from_env() -> Settings:
    rpc_url = (
        os.getenv('INDEXER_RPC_URL', '').strip()
        or os.getenv('WEB3_PROVIDER_URL', '').strip()
        or 'http://127.0.0.1:8545'
    )
    ws_url = os.getenv('INDEXER_WS_URL', '').strip() or _ws_url_from_rpc(rpc_url)

    contract_address = os.getenv('DRUG_TRACKING_CONTRACT_ADDRESS', '').strip()
    if not Web3.is_address(contract_address):
        raise ValueError(f'DRUG_TRACKING_CONTRACT_ADDRESS is missing or invalid: {contract_address!r}')

    batch_size = int(os.getenv('INDEXER_BATCH_SIZE', str(DEFAULT_BATCH_SIZE)))
    if batch_size <= 0:
        raise ValueError('INDEXER_BATCH_SIZE must be > 0')

    return Settings(
        service_name=os.getenv('SERVICE_NAME', 'indexer'),
        rpc_url=rpc_url,
        ws_url=ws_url,
        rpc_timeout_seconds=int(os.getenv('INDEXER_RPC_TIMEOUT_SECONDS', '30')),
        contract_address=Web3.to_checksum_address(contract_address),
        contract_abi_path=os.getenv('INDEXER_CONTRACT_ABI_PATH', '').strip(),
        start_block=int(os.getenv('START_BLOCK_NUMBER', '0')),
        batch_size=batch_size,
        confirmation_depth=int(os.getenv('INDEXER_CONFIRMATION_DEPTH', '0')),
        admin_role_hash=os.getenv('INDEXER_ADMIN_ROLE_HASH', '').strip() or ZERO_ROLE_HASH,
        mongodb_uri=os.getenv('MONGODB_URI', 'mongodb://localhost:27017/?replicaSet=rs0'),
        mongodb_database=os.getenv('MONGODB_DATABASE', 'drug_tracking_db'),
        metrics_port=int(os.getenv('INDEXER_METRICS_PORT', '0'))
    )


@dataclass
class IndexerContext:
    """Connection handles built once at start-up and handed to every component."""

    settings: Settings
    store: DocumentStore
    source: Web3EventSource


def build_context(settings: Settings) -> IndexerContext:
    store = connect_mongo(settings.mongodb_uri, settings.mongodb_database)
    store.ensure_indexes()

    web3 = Web3(Web3.HTTPProvider(settings.rpc_url, request_kwargs={'timeout': settings.rpc_timeout_seconds}))
    decoder = EventDecoder(load_contract_abi(settings.contract_abi_path))
    source = Web3EventSource(
        web3,
        settings.contract_address,
        decoder,
        confirmation_depth=settings.confirmation_depth
    )
    return IndexerContext(settings=settings, store=store, source=source)


class IndexerState(Enum):
    STARTING = 'starting'
    BACKFILLING = 'backfilling'
    CAUGHT_UP = 'caught_up'
    LIVE = 'live'
    TERMINATED = 'terminated'


_TRANSITIONS: dict[IndexerState, set[IndexerState]] = {
    IndexerState.STARTING: {IndexerState.BACKFILLING, IndexerState.TERMINATED},
    IndexerState.BACKFILLING: {IndexerState.CAUGHT_UP, IndexerState.TERMINATED},
    IndexerState.CAUGHT_UP: {IndexerState.LIVE, IndexerState.TERMINATED},
    IndexerState.LIVE: {IndexerState.TERMINATED},
    IndexerState.TERMINATED: set()
}


class InvalidTransition(RuntimeError):
    pass


class DrugIndexer:
    def __init__(self, context: IndexerContext, subscriber: LiveSubscriber | None = None) -> None:
        settings = context.settings
        self.settings = settings
        self.source = context.source
        self.state = IndexerState.STARTING
        self._stop = threading.Event()

        self.progress = ProgressTracker(context.store, settings.start_block)
        self.projector = EventProjector(
            context.store,
            settings.contract_address,
            role_names=role_names(settings.admin_role_hash)
        )
        self.backfill = BackfillReader(
            self.source,
            self.projector,
            self.progress,
            batch_size=settings.batch_size,
            should_stop=self._stop.is_set
        )
        self.subscriber = subscriber or LiveSubscriber(
            settings.ws_url,
            self.source,
            self.projector,
            self.progress
        )
        self._publish_state()

    def transition(self, target: IndexerState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise InvalidTransition(f'{self.state.value} -> {target.value}')
        LOGGER.info('indexer state %s -> %s', self.state.value, target.value)
        self.state = target
        self._publish_state()

    def request_stop(self, *_: Any) -> None:
        if not self._stop.is_set():
            LOGGER.info('shutdown requested state=%s', self.state.value)
        self._stop.set()
        self.subscriber.stop()

    def run(self) -> None:
        LOGGER.info(
            'starting service=%s contract=%s rpc=%s',
            self.settings.service_name,
            self.settings.contract_address,
            self.settings.rpc_url
        )
        try:
            self.transition(IndexerState.BACKFILLING)
            self.catch_up()
            if self._stop.is_set():
                return

            self.transition(IndexerState.CAUGHT_UP)
            self.transition(IndexerState.LIVE)
            asyncio.run(self._run_live())
        finally:
            self.transition(IndexerState.TERMINATED)

    def catch_up(self) -> int:
        start = self.progress.get_progress()
        head = self.source.head_position()
        return self.backfill.run(start, head)

    async def _run_live(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self.request_stop)
            except (NotImplementedError, RuntimeError):
                # not the main thread, or a platform without loop signal handlers
                pass
        await self.subscriber.run(on_subscribed=self.catch_up)

    def _publish_state(self) -> None:
        for state in IndexerState:
            INDEXER_STATE.labels(state=state.value).set(1 if state is self.state else 0)


def main() -> None:
    logging.basicConfig(
        level=os.getenv('LOG_LEVEL', 'INFO').upper(),
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s'
    )
    settings = _settings_from_env()
    if settings.metrics_port > 0:
        start_http_server(settings.metrics_port)

    try:
        context = build_context(settings)
    except StorageError:
        LOGGER.exception('document store unavailable at start-up')
        raise SystemExit(1)

    indexer = DrugIndexer(context)
    signal.signal(signal.SIGINT, indexer.request_stop)
    signal.signal(signal.SIGTERM, indexer.request_stop)

    try:
        indexer.run()
    except SourceError:
        LOGGER.exception('event source failure; exiting for supervisor restart')
        raise SystemExit(1)


if __name__ == '__main__':
    main()
