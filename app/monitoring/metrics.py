"""Metric definitions for the chat service and the realtime store."""

from __future__ import annotations

from .registry import registry

chat_operations_total = registry.counter(
    "chat_operations_total",
    "Conversation manager operations by outcome.",
    label_names=("operation", "outcome"),
)

chat_token_issued_total = registry.counter(
    "chat_token_issued_total",
    "Custom realtime tokens issued by the backend.",
    label_names=("role",),
)

realtime_snapshots_total = registry.counter(
    "realtime_snapshots_total",
    "Snapshots delivered to realtime subscribers.",
    label_names=("backend",),
)

realtime_subscriptions = registry.gauge(
    "realtime_subscriptions",
    "Standing realtime subscriptions held by conversation managers.",
    label_names=("stream",),
)

realtime_update_conflicts_total = registry.counter(
    "realtime_update_conflicts_total",
    "Optimistic update retries caused by concurrent writers.",
    label_names=("backend",),
)

realtime_feed_restarts_total = registry.counter(
    "realtime_feed_restarts_total",
    "Change feeds re-attached after a reader failure.",
    label_names=("backend",),
)
