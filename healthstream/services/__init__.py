"""
Streaming engine services.

This package contains the snapshot store, the per-tick aggregation helpers
(trends, alerts, insights), the fan-out dispatcher and the subscription registry.
"""

from .dispatcher import FanOutDispatcher, Transport
from .event_aggregator import EventAggregator, WindowPolicy
from .monitor import HealthStreamService, UserInsightReport
from .snapshot_store import InMemorySnapshotStore, Result, SnapshotStore
from .subscription_registry import SubscriptionRegistry

__all__ = [
    "EventAggregator",
    "FanOutDispatcher",
    "HealthStreamService",
    "InMemorySnapshotStore",
    "Result",
    "SnapshotStore",
    "SubscriptionRegistry",
    "Transport",
    "UserInsightReport",
    "WindowPolicy",
]
