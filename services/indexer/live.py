from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Mapping

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from services.common.store import StorageError

from .events import DecodeError, RawLog
from .metrics import DECODE_FAILURES_TOTAL, PROJECTION_FAILURES_TOTAL
from .progress import ProgressTracker
from .projector import EventProjector, ProjectionOutcome
from .source import SourceError, Web3EventSource

LOGGER = logging.getLogger('drugtrace.indexer.live')

SUBSCRIBE_REQUEST_ID = 1
UNSUBSCRIBE_REQUEST_ID = 2


class LiveSubscriber:
    """Pushes `eth_subscribe("logs")` deliveries for one contract through the projector.

    Deliveries are handled one at a time; `stop()` lets the in-flight delivery
    finish, unsubscribes and returns from `run()`.
    """

    def __init__(
        self,
        ws_url: str,
        source: Web3EventSource,
        projector: EventProjector,
        progress: ProgressTracker,
        connect: Callable[..., Any] | None = None
    ) -> None:
        self.ws_url = ws_url
        self.source = source
        self.projector = projector
        self.progress = progress
        self._connect = connect or websockets.connect
        self._stop = asyncio.Event()
        self.subscription_id: str | None = None

    def stop(self) -> None:
        LOGGER.info('live subscriber stop requested')
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def run(self, on_subscribed: Callable[[], Any] | None = None) -> None:
        try:
            # unbounded queue: deliveries pile up while the gap backfill runs and keepalive must not stall
            async with self._connect(self.ws_url, ping_interval=20, ping_timeout=20, max_queue=None) as ws:
                self.subscription_id = await self._subscribe(ws)
                LOGGER.info('live subscription open id=%s address=%s', self.subscription_id, self.source.contract_address)

                if on_subscribed is not None:
                    # deliveries queue on the socket while the gap since backfill is closed
                    await asyncio.to_thread(on_subscribed)

                await self._consume(ws)
                await self._unsubscribe(ws)
        except ConnectionClosed as exc:
            raise SourceError(f'live subscription closed: {exc}') from exc
        except (WebSocketException, OSError) as exc:
            raise SourceError(f'live subscription failed: {exc}') from exc

    async def _subscribe(self, ws: Any) -> str:
        request = {
            'jsonrpc': '2.0',
            'id': SUBSCRIBE_REQUEST_ID,
            'method': 'eth_subscribe',
            'params': ['logs', {'address': self.source.contract_address}]
        }
        await ws.send(json.dumps(request))

        while True:
            response = json.loads(await ws.recv())
            if response.get('id') != SUBSCRIBE_REQUEST_ID:
                continue
            if 'error' in response:
                raise SourceError(f'eth_subscribe rejected: {response["error"]}')
            return str(response['result'])

    async def _unsubscribe(self, ws: Any) -> None:
        if self.subscription_id is None:
            return
        request = {
            'jsonrpc': '2.0',
            'id': UNSUBSCRIBE_REQUEST_ID,
            'method': 'eth_unsubscribe',
            'params': [self.subscription_id]
        }
        await ws.send(json.dumps(request))
        LOGGER.info('live subscription closed id=%s', self.subscription_id)
        self.subscription_id = None

    async def _consume(self, ws: Any) -> None:
        while not self._stop.is_set():
            receive = asyncio.ensure_future(ws.recv())
            stopped = asyncio.ensure_future(self._stop.wait())
            try:
                done, _ = await asyncio.wait({receive, stopped}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for waiter in (receive, stopped):
                    if not waiter.done():
                        waiter.cancel()

            if receive not in done:
                break

            try:
                message = json.loads(receive.result())
            except json.JSONDecodeError as exc:
                LOGGER.warning('ignoring non-JSON websocket frame: %s', exc)
                continue

            if message.get('method') != 'eth_subscription':
                if message.get('error'):
                    LOGGER.error('websocket rpc error: %s', message['error'])
                continue

            params = message.get('params') or {}
            if params.get('subscription') != self.subscription_id:
                continue

            result = params.get('result')
            if result:
                await asyncio.to_thread(self.handle_delivery, result)

    def handle_delivery(self, payload: Mapping[str, Any]) -> ProjectionOutcome | None:
        try:
            log = RawLog.from_rpc(payload)
        except DecodeError as exc:
            DECODE_FAILURES_TOTAL.inc()
            LOGGER.warning('skipping malformed delivery: %s', exc)
            return None

        if log.removed:
            LOGGER.warning(
                'skipping removed log tx_hash=%s block=%s log_index=%s',
                log.transaction_hash,
                log.block_number,
                log.log_index
            )
            return None

        try:
            event = self.source.to_event(log)
        except DecodeError as exc:
            DECODE_FAILURES_TOTAL.inc()
            LOGGER.warning('skipping undecodable delivery block=%s: %s', log.block_number, exc)
            self.progress.set_progress(log.block_number)
            return None

        try:
            outcome = self.projector.project(event)
        except StorageError as exc:
            PROJECTION_FAILURES_TOTAL.inc()
            LOGGER.error('projection failed %s: %s', event.describe(), exc)
            self.progress.hold(event.block_number)
            return None

        self.progress.set_progress(event.block_number)
        return outcome
