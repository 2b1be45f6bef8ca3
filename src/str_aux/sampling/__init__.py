"""Sampling pipeline: ticks -> time buckets -> rolling point windows.

Modules:
    types: Tick / SamplingPoint value types and boundary parsing.
    buckets: Fixed-width bucket aggregation with quality flags.
    store: Rolling per-symbol point windows (30m / 1h / 3h).
    persistence: Debounced, failure-isolated batch writer.
    sources: Order-book tick sources (Binance REST via httpx).
    poller: Per-symbol poll loops and universe reconciliation.
"""
