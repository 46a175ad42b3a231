from __future__ import annotations

from typing import Callable, Dict, TypeVar

from prometheus_client import REGISTRY, Counter, Gauge, Histogram

_C = TypeVar("_C")

_COLLECTORS: Dict[str, object] = {}


def _collector(name: str, factory: Callable[[], _C]) -> _C:
    if name not in _COLLECTORS:
        try:
            _COLLECTORS[name] = factory()
        except ValueError:
            # already registered, e.g. after a module reload
            _COLLECTORS[name] = REGISTRY._names_to_collectors.get(name)
    return _COLLECTORS[name]  # type: ignore[return-value]


def task_latency_histogram(task_name: str):
    histogram = _collector(
        "fanout_tick_latency_ms",
        lambda: Histogram(
            "fanout_tick_latency_ms",
            "Execution latency (ms) per scheduled tick",
            ["task"],
            buckets=(0.1, 0.5, 1, 2, 5, 10, 20, 50, 100),
        ),
    )
    return histogram.labels(task=task_name)


def task_jitter_histogram(task_name: str):
    histogram = _collector(
        "fanout_tick_jitter_ms",
        lambda: Histogram(
            "fanout_tick_jitter_ms",
            "Start-time jitter (ms) per scheduled tick",
            ["task"],
            buckets=(0.05, 0.1, 0.2, 0.5, 1, 2, 5, 10),
        ),
    )
    return histogram.labels(task=task_name)


def task_deadline_counter(task_name: str):
    counter = _collector(
        "fanout_tick_deadline_miss",
        lambda: Counter("fanout_tick_deadline_miss", "Deadline misses per scheduled tick", ["task"]),
    )
    return counter.labels(task=task_name)


def task_backlog_gauge() -> Gauge:
    return _collector(
        "fanout_scheduler_backlog",
        lambda: Gauge("fanout_scheduler_backlog", "Number of ticks waiting for scheduling"),
    )


def connections_gauge(state: str):
    gauge = _collector(
        "fanout_connections",
        lambda: Gauge("fanout_connections", "Viewer connections by lifecycle state", ["state"]),
    )
    return gauge.labels(state=state)


def samples_emitted_counter(channel: str):
    counter = _collector(
        "fanout_samples_emitted",
        lambda: Counter("fanout_samples_emitted", "Samples produced per channel", ["channel"]),
    )
    return counter.labels(channel=channel)


def samples_delivered_counter(channel: str):
    counter = _collector(
        "fanout_samples_delivered",
        lambda: Counter("fanout_samples_delivered", "Samples written to a viewer transport", ["channel"]),
    )
    return counter.labels(channel=channel)


def samples_dropped_counter(channel: str, reason: str):
    counter = _collector(
        "fanout_samples_dropped",
        lambda: Counter("fanout_samples_dropped", "Samples dropped before delivery", ["channel", "reason"]),
    )
    return counter.labels(channel=channel, reason=reason)


def generator_errors_counter(channel: str):
    counter = _collector(
        "fanout_generator_errors",
        lambda: Counter("fanout_generator_errors", "Failed generator ticks per channel", ["channel"]),
    )
    return counter.labels(channel=channel)


def observability_events_counter(kind: str):
    counter = _collector(
        "fanout_observability_events",
        lambda: Counter("fanout_observability_events", "Structured events emitted by the core", ["kind"]),
    )
    return counter.labels(kind=kind)
