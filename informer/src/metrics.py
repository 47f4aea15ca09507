from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Info


@dataclass(frozen=True)
class InformerMetrics:
    """Prometheus metrics exported by the informer on ``/metrics``.

    Event counts carry a ``type`` label so operators can alert on the rate of
    ``ERROR`` events separately from normal churn.
    """

    events_total: Counter = field(
        default_factory=lambda: Counter(
            "informer_events_total",
            "Total watch events observed, by event type",
            ["type"],
        )
    )
    stream_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "informer_stream_errors_total",
            "Total transport-level errors surfaced inside open watch streams",
        )
    )
    connection_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "informer_connection_errors_total",
            "Total failures to open a watch stream",
        )
    )
    resyncs_total: Counter = field(
        default_factory=lambda: Counter(
            "informer_resyncs_total",
            "Total resourceVersion resets back to the initial snapshot",
        )
    )
    backoffs_total: Counter = field(
        default_factory=lambda: Counter(
            "informer_backoffs_total",
            "Total recovery backoff waits performed before reopening a watch",
        )
    )
    polls_total: Counter = field(
        default_factory=lambda: Counter(
            "informer_polls_total",
            "Total watch streams requested",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "informer",
            "Build information for the informer",
        )
    )


METRICS = InformerMetrics()
