from __future__ import annotations

import logging
from typing import Any

from web3 import Web3
from web3.exceptions import Web3Exception

from .events import ChainEvent, DecodeError, EventDecoder, RawLog, canonical_event
from .metrics import DECODE_FAILURES_TOTAL

LOGGER = logging.getLogger('drugtrace.indexer.source')

BLOCK_TS_CACHE_LIMIT = 4096


class SourceError(RuntimeError):
    pass


class Web3EventSource:
    def __init__(
        self,
        web3: Web3,
        contract_address: str,
        decoder: EventDecoder,
        confirmation_depth: int = 0
    ) -> None:
        self.web3 = web3
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.decoder = decoder
        self.confirmation_depth = max(0, confirmation_depth)
        self._block_ts_cache: dict[int, int] = {}

    def head_position(self) -> int:
        try:
            latest = int(self.web3.eth.block_number)
        except (Web3Exception, OSError, ValueError) as exc:
            raise SourceError(f'cannot read head block: {exc}') from exc
        return latest - self.confirmation_depth

    def get_events(self, from_block: int, to_block: int) -> list[ChainEvent]:
        try:
            logs = self.web3.eth.get_logs(
                {
                    'fromBlock': from_block,
                    'toBlock': to_block,
                    'address': self.contract_address
                }
            )
        except (Web3Exception, OSError, ValueError) as exc:
            raise SourceError(f'get_logs failed from_block={from_block} to_block={to_block}: {exc}') from exc

        events: list[ChainEvent] = []
        for item in logs:
            try:
                events.append(self.to_event(RawLog.from_rpc(item)))
            except DecodeError as exc:
                DECODE_FAILURES_TOTAL.inc()
                LOGGER.warning('skipping undecodable log from_block=%s to_block=%s: %s', from_block, to_block, exc)
        return events

    def to_event(self, log: RawLog) -> ChainEvent:
        decoded = self.decoder.decode(log)
        return canonical_event(decoded, log, block_timestamp=self.block_timestamp(log.block_number))

    def block_timestamp(self, block_number: int) -> int:
        if block_number in self._block_ts_cache:
            return self._block_ts_cache[block_number]

        try:
            block: Any = self.web3.eth.get_block(block_number)
        except (Web3Exception, OSError, ValueError) as exc:
            raise SourceError(f'cannot read block={block_number}: {exc}') from exc

        if len(self._block_ts_cache) >= BLOCK_TS_CACHE_LIMIT:
            self._block_ts_cache.clear()
        ts = int(block['timestamp'])
        self._block_ts_cache[block_number] = ts
        return ts
