"""Prometheus metrics for synchronization, catalog fetches and voting"""

from prometheus_client import Counter, Gauge, Histogram

sync_writes_total = Counter(
    'setlist_sync_writes_total',
    'Entity writes by kind and the write strategy that produced the result',
    ['kind', 'strategy']
)

sync_fresh_hits_total = Counter(
    'setlist_sync_fresh_hits_total',
    'Sync requests answered from a fresh stored record',
    ['kind']
)

catalog_fetches_total = Counter(
    'setlist_catalog_fetches_total',
    'External track catalog fetches',
    ['status']
)

catalog_circuit_state = Gauge(
    'setlist_catalog_circuit_state',
    'Catalog circuit breaker state (0 closed, 1 half-open, 2 open)',
    ['name']
)

catalog_fetch_duration_seconds = Histogram(
    'setlist_catalog_fetch_duration_seconds',
    'Track catalog fetch duration in seconds',
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)
)

background_tasks_total = Counter(
    'setlist_background_tasks_total',
    'Fire-and-forget tasks by outcome',
    ['name', 'outcome']
)

votes_total = Counter(
    'setlist_votes_total',
    'Vote attempts by outcome',
    ['outcome']
)

songs_added_total = Counter(
    'setlist_songs_added_total',
    'Add-song attempts by outcome',
    ['outcome']
)
