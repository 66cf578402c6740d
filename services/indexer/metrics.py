from __future__ import annotations

from prometheus_client import Counter, Gauge

EVENTS_PROJECTED_TOTAL = Counter(
    'drugtrace_events_projected_total',
    'Chain events consumed by the projector',
    ['outcome']
)

PROJECTION_FAILURES_TOTAL = Counter(
    'drugtrace_projection_failures_total',
    'Events whose atomic unit was aborted by a storage error'
)

DECODE_FAILURES_TOTAL = Counter(
    'drugtrace_decode_failures_total',
    'Contract logs that could not be decoded and were skipped'
)

INDEXED_BLOCK = Gauge(
    'drugtrace_indexed_block',
    'Last block recorded as fully projected'
)

INDEXER_STATE = Gauge(
    'drugtrace_indexer_state',
    'Current indexer lifecycle state (1 for the active state)',
    ['state']
)
