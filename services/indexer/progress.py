from __future__ import annotations

import logging
from datetime import datetime, timezone

from services.common.store import INDEXER_STATE, DocumentStore, StorageError

from .metrics import INDEXED_BLOCK

LOGGER = logging.getLogger('drugtrace.indexer.progress')

PROGRESS_KEY = 'last_indexed_block'


class ProgressTracker:
    """Durable checkpoint of the last block known to be fully projected.

    Indexing resumes *at* the stored block, so a partially processed block is
    re-read on restart and its already-projected events are dropped as duplicates.

    `hold(block)` pins the checkpoint at a block whose event failed to project;
    later successes in the same run cannot move it past that block.
    """

    def __init__(self, store: DocumentStore, start_block: int) -> None:
        self.store = store
        self.start_block = start_block
        self.held_at: int | None = None

    def get_progress(self) -> int:
        try:
            state = self.store.find_one(INDEXER_STATE, {'_id': PROGRESS_KEY})
        except StorageError as exc:
            LOGGER.error('progress read failed; using start block=%s: %s', self.start_block, exc)
            return self.start_block

        if not state or state.get('blockNumber') is None:
            return self.start_block
        return int(state['blockNumber'])

    def hold(self, block_number: int) -> None:
        if self.held_at is None or block_number < self.held_at:
            LOGGER.warning('progress held at block=%s until next run', block_number)
            self.held_at = block_number

    def release(self) -> None:
        if self.held_at is not None:
            LOGGER.info('progress hold released block=%s', self.held_at)
        self.held_at = None

    def set_progress(self, block_number: int) -> bool:
        target = block_number if self.held_at is None else min(block_number, self.held_at)

        try:
            with self.store.atomic() as unit:
                state = unit.find_one(INDEXER_STATE, {'_id': PROGRESS_KEY})
                current = state.get('blockNumber') if state else None
                if current is not None and target <= int(current):
                    if target < int(current):
                        LOGGER.warning(
                            'ignoring backward progress stored=%s requested=%s',
                            current,
                            target
                        )
                    return False

                unit.upsert(
                    INDEXER_STATE,
                    PROGRESS_KEY,
                    {'blockNumber': target, 'timestamp': datetime.now(timezone.utc)}
                )
        except StorageError as exc:
            # non-fatal: worst case the next run re-projects from an older checkpoint
            LOGGER.error('progress write failed block=%s: %s', target, exc)
            return False

        INDEXED_BLOCK.set(target)
        LOGGER.debug('progress advanced block=%s', target)
        return True
