"""Prometheus metrics for kubesim."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# Tick metrics
ticks_total = Counter(
    "kubesim_ticks_total",
    "Total simulation ticks executed",
)

tick_duration_seconds = Histogram(
    "kubesim_tick_duration_seconds",
    "Wall-clock duration of one simulation tick",
    buckets=(0.0005, 0.001, 0.005, 0.01, 0.05, 0.1, 0.5),
)

# Controller metrics
mutations_total = Counter(
    "kubesim_mutations_total",
    "Total entity mutations emitted by controllers",
    ["controller", "op"],
)

events_total = Counter(
    "kubesim_events_total",
    "Total cluster events recorded",
    ["type", "reason"],
)

# Command metrics
commands_total = Counter(
    "kubesim_commands_total",
    "Total commands applied",
    ["kind", "outcome"],
)

# Cluster state
pods = Gauge(
    "kubesim_pods",
    "Number of pods by phase after the last tick",
    ["phase"],
)

goals_completed = Gauge(
    "kubesim_goals_completed",
    "Number of latched scenario goals",
)
