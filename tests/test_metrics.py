import pytest

from apps.helpdesk.metrics import DEFAULT_METRIC_DEFINITIONS, MetricsRegistry, register_default_metrics
from apps.helpdesk.metrics.registry import Metric


def test_default_metrics_are_registered():
    registry = MetricsRegistry()
    register_default_metrics(registry)

    names = {metric.name for metric in registry.metrics()}
    assert names == {definition.name for definition in DEFAULT_METRIC_DEFINITIONS}


def test_render_prometheus_includes_labels_and_summaries():
    registry = MetricsRegistry()
    registry.counter("notifications_sent_total", description="Sent", label_names=("kind",)).inc(
        labels={"kind": "verification"}
    )
    with registry.time("ticket_update_duration_seconds", labels={"operation": "update"}):
        pass

    text = registry.render_prometheus()

    assert "# TYPE notifications_sent_total counter" in text
    assert 'notifications_sent_total{kind="verification"} 1.0' in text
    assert 'ticket_update_duration_seconds_count{operation="update"} 1.0' in text


def test_counter_rejects_missing_labels():
    counter = MetricsRegistry().counter("users_registered_total", label_names=("role",))

    with pytest.raises(ValueError):
        counter.inc()


def test_metric_type_mismatch():
    registry = MetricsRegistry()
    registry.counter("tickets_created_total")

    with pytest.raises(TypeError):
        registry.distribution("tickets_created_total")


def test_metric_base_is_abstract():
    with pytest.raises(TypeError):
        Metric("bare")  # type: ignore[abstract]
