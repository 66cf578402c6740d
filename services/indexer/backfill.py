from __future__ import annotations

import logging
from typing import Callable

from services.common.store import StorageError

from .events import ChainEvent
from .metrics import PROJECTION_FAILURES_TOTAL
from .progress import ProgressTracker
from .projector import EventProjector
from .source import Web3EventSource

LOGGER = logging.getLogger('drugtrace.indexer.backfill')

DEFAULT_BATCH_SIZE = 500


class BackfillReader:
    def __init__(
        self,
        source: Web3EventSource,
        projector: EventProjector,
        progress: ProgressTracker,
        batch_size: int = DEFAULT_BATCH_SIZE,
        should_stop: Callable[[], bool] | None = None
    ) -> None:
        if batch_size <= 0:
            raise ValueError('batch_size must be > 0')
        self.source = source
        self.projector = projector
        self.progress = progress
        self.batch_size = batch_size
        self._should_stop = should_stop or (lambda: False)

    def run(self, start_block: int, head_block: int) -> int:
        """Project every event in [start_block, head_block]; returns the next block to read.

        `SourceError` from a fetch propagates: the range is re-read from the last
        checkpoint on the next run.
        """
        held = self.progress.held_at
        if held is not None and start_block <= held:
            # the range re-reads every deferred event, in order
            self.progress.release()
            self.projector.retry_deferred()

        current = start_block
        LOGGER.info('backfill starting from_block=%s head=%s batch_size=%s', start_block, head_block, self.batch_size)

        while current <= head_block:
            if self._should_stop():
                LOGGER.info('backfill interrupted before block=%s', current)
                return current

            to_block = min(current + self.batch_size - 1, head_block)
            events = self.source.get_events(current, to_block)
            LOGGER.info('fetched events from_block=%s to_block=%s count=%s', current, to_block, len(events))

            if not self._project_batch(sorted(events, key=lambda event: event.sort_key)):
                return current

            self.progress.set_progress(to_block)
            current = to_block + 1

        LOGGER.info('backfill reached head=%s', head_block)
        return current

    def _project_batch(self, events: list[ChainEvent]) -> bool:
        for event in events:
            if self._should_stop():
                LOGGER.info('backfill interrupted before %s', event.describe())
                return False

            try:
                self.projector.project(event)
            except StorageError as exc:
                PROJECTION_FAILURES_TOTAL.inc()
                LOGGER.error('projection failed %s: %s', event.describe(), exc)
                self.progress.hold(event.block_number)
                continue

            self.progress.set_progress(event.block_number)
        return True
