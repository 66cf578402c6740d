#!/usr/bin/env python3
from __future__ import annotations

import argparse
import logging
import os
import sys

from services.indexer.backfill import BackfillReader
from services.indexer.events import role_names
from services.indexer.main import _settings_from_env, build_context
from services.indexer.projector import EventProjector
from services.indexer.source import SourceError


class ReplayProgress:
    """Records what a replay touched without moving the stored checkpoint."""

    def __init__(self) -> None:
        self.last_block: int | None = None
        self.failed_blocks: list[int] = []
        self.held_at: int | None = None

    def release(self) -> None:
        self.held_at = None

    def set_progress(self, block_number: int) -> bool:
        self.last_block = block_number
        return True

    def hold(self, block_number: int) -> None:
        self.failed_blocks.append(block_number)


def main() -> None:
    parser = argparse.ArgumentParser(description='Re-project a block range through the event projector')
    parser.add_argument('--from-block', type=int, required=True)
    parser.add_argument('--to-block', type=int, required=True)
    parser.add_argument('--batch-size', type=int, default=None, help='Block range width (defaults to INDEXER_BATCH_SIZE)')
    args = parser.parse_args()

    if args.to_block < args.from_block:
        parser.error('--to-block must be >= --from-block')

    logging.basicConfig(
        level=os.getenv('LOG_LEVEL', 'INFO').upper(),
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s'
    )

    settings = _settings_from_env()
    context = build_context(settings)
    projector = EventProjector(
        context.store,
        settings.contract_address,
        role_names=role_names(settings.admin_role_hash)
    )
    progress = ReplayProgress()
    reader = BackfillReader(
        context.source,
        projector,
        progress,  # type: ignore[arg-type]
        batch_size=args.batch_size or settings.batch_size
    )

    try:
        reader.run(args.from_block, args.to_block)
    except SourceError as exc:
        print(f'[replay] source failure: {exc}', file=sys.stderr)
        raise SystemExit(1)

    if progress.failed_blocks:
        print(f'[replay] storage failures at blocks: {sorted(set(progress.failed_blocks))}', file=sys.stderr)
        raise SystemExit(2)
    print(f'[replay] done from_block={args.from_block} to_block={args.to_block} last_event_block={progress.last_block}')


if __name__ == '__main__':
    main()
