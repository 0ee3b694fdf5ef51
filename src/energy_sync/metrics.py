"""OpenTelemetry counters for the sync client."""

from __future__ import annotations

from opentelemetry import metrics

_meter = metrics.get_meter("energy_sync", version="0.1.0")

remote_calls_total = _meter.create_counter(
    name="remote_calls_total",
    description="Remote operations dispatched, by operation and outcome",
    unit="1",
)

cache_hits_total = _meter.create_counter(
    name="cache_hits_total",
    description="Remote calls served from the result cache",
    unit="1",
)

session_refresh_total = _meter.create_counter(
    name="session_refresh_total",
    description="Session refresh attempts, by outcome",
    unit="1",
)

change_events_applied_total = _meter.create_counter(
    name="change_events_applied_total",
    description="Change-feed events merged into local collections",
    unit="1",
)

offline_replays_total = _meter.create_counter(
    name="offline_replays_total",
    description="Queued mutations replayed, by outcome",
    unit="1",
)
