from __future__ import annotations

from prometheus_client import CollectorRegistry, Gauge, generate_latest

from data_delivery.core.metrics import InMemoryDeliveryMetricsCollector


class DeliveryPrometheusExporter:
    def __init__(self) -> None:
        self._registry = CollectorRegistry()
        self._gate_tasks = Gauge(
            "delivery_gate_tasks_total",
            "Schedule gate tasks grouped by outcome",
            labelnames=("outcome",),
            registry=self._registry,
        )
        self._gate_peak_in_flight = Gauge(
            "delivery_gate_peak_in_flight",
            "Highest number of simultaneously running gate tasks",
            registry=self._registry,
        )
        self._phase_duration = Gauge(
            "delivery_phase_duration_ms",
            "Latest phase load duration in milliseconds",
            labelnames=("collection", "phase"),
            registry=self._registry,
        )
        self._phase_results = Gauge(
            "delivery_phase_results_total",
            "Phase loads grouped by collection, phase and status",
            labelnames=("collection", "phase", "status"),
            registry=self._registry,
        )
        self._invalidations = Gauge(
            "delivery_invalidations_total",
            "Stale transitions grouped by cache phase",
            labelnames=("phase",),
            registry=self._registry,
        )
        self._dropped_records = Gauge(
            "delivery_dropped_records_total",
            "Malformed records dropped grouped by record kind",
            labelnames=("kind",),
            registry=self._registry,
        )

    def render(self, metrics: InMemoryDeliveryMetricsCollector) -> str:
        self._gate_tasks.labels(outcome="submitted").set(metrics.gate_submitted)
        self._gate_tasks.labels(outcome="succeeded").set(metrics.gate_succeeded)
        self._gate_tasks.labels(outcome="failed").set(metrics.gate_failed)
        self._gate_tasks.labels(outcome="retried").set(metrics.gate_retried)
        self._gate_peak_in_flight.set(metrics.gate_peak_in_flight)
        latest: dict[tuple[str, str], float] = {}
        for item in metrics.phase_durations:
            latest[(item.collection, item.phase)] = item.duration_ms
        for (collection, phase), duration in latest.items():
            self._phase_duration.labels(collection=collection, phase=phase).set(duration)
        for (collection, phase, status), count in metrics.phase_results.items():
            self._phase_results.labels(collection=collection, phase=phase, status=status).set(count)
        for phase, count in metrics.invalidations.items():
            self._invalidations.labels(phase=phase).set(count)
        for kind, count in metrics.dropped_records.items():
            self._dropped_records.labels(kind=kind).set(count)
        return generate_latest(self._registry).decode("utf-8")
