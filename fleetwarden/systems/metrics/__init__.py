"""
FleetWarden: Metrics

Rolling-window aggregation of per-service resource snapshots.
"""

from fleetwarden.systems.metrics.aggregator import (
    MetricsAggregator,
    WindowStats,
    percentile,
    snapshot_from_counters,
    summarise,
)

__all__ = [
    "MetricsAggregator",
    "WindowStats",
    "percentile",
    "snapshot_from_counters",
    "summarise",
]
