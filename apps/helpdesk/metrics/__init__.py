"""Application wide metrics utilities."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

from .registry import CounterMetric, DistributionMetric, MetricsRegistry


@dataclass(frozen=True)
class MetricDefinition:
    """Describe a metric that should exist in the registry."""

    name: str
    metric_type: str
    description: str
    label_names: Tuple[str, ...] = ()


DEFAULT_METRIC_DEFINITIONS: Tuple[MetricDefinition, ...] = (
    MetricDefinition(
        name="tickets_created_total",
        metric_type="counter",
        description="Number of tickets created.",
    ),
    MetricDefinition(
        name="ticket_history_entries_total",
        metric_type="counter",
        description="History entries appended to tickets.",
        label_names=("field",),
    ),
    MetricDefinition(
        name="ticket_update_duration_seconds",
        metric_type="distribution",
        description="Duration of ticket mutations in seconds.",
        label_names=("operation",),
    ),
    MetricDefinition(
        name="users_registered_total",
        metric_type="counter",
        description="Number of user registrations.",
        label_names=("role",),
    ),
    MetricDefinition(
        name="notifications_sent_total",
        metric_type="counter",
        description="Notifications handed to the sender successfully.",
        label_names=("kind",),
    ),
    MetricDefinition(
        name="notifications_failed_total",
        metric_type="counter",
        description="Notifications whose delivery raised an error.",
        label_names=("kind",),
    ),
)

metrics_registry = MetricsRegistry()


def register_default_metrics(registry: MetricsRegistry | None = None) -> None:
    """Ensure all default metric definitions exist in the registry."""
    target = registry or metrics_registry
    for definition in DEFAULT_METRIC_DEFINITIONS:
        if definition.metric_type == "counter":
            target.counter(
                definition.name,
                description=definition.description,
                label_names=definition.label_names,
            )
        elif definition.metric_type == "distribution":
            target.distribution(
                definition.name,
                description=definition.description,
                label_names=definition.label_names,
            )
        else:  # pragma: no cover
            raise ValueError(f"Unsupported metric type: {definition.metric_type}")


register_default_metrics()

__all__ = [
    "CounterMetric",
    "DEFAULT_METRIC_DEFINITIONS",
    "DistributionMetric",
    "MetricDefinition",
    "MetricsRegistry",
    "metrics_registry",
    "register_default_metrics",
]
