from data_delivery.core.metrics import InMemoryDeliveryMetricsCollector
from data_delivery.core.prometheus_exporter import DeliveryPrometheusExporter


def test_prometheus_exporter_renders_delivery_metrics() -> None:
    metrics = InMemoryDeliveryMetricsCollector()
    metrics.increment_submitted()
    metrics.increment_submitted()
    metrics.increment_succeeded()
    metrics.increment_retried()
    metrics.observe_in_flight(2)
    metrics.observe_phase("venues", "basic", "succeeded", 12.5)
    metrics.add_invalidation("basic")
    metrics.add_dropped_records("venues", 3)
    metrics.add_dropped_records("venues", 0)

    body = DeliveryPrometheusExporter().render(metrics)

    assert 'delivery_gate_tasks_total{outcome="submitted"} 2.0' in body
    assert "delivery_gate_peak_in_flight 2.0" in body
    assert 'delivery_phase_duration_ms{collection="venues",phase="basic"} 12.5' in body
    assert 'delivery_phase_results_total{collection="venues",phase="basic",status="succeeded"} 1.0' in body
    assert 'delivery_invalidations_total{phase="basic"} 1.0' in body
    assert 'delivery_dropped_records_total{kind="venues"} 3.0' in body
