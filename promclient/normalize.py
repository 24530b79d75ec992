"""Sorting and pruning of gathered metric families."""

from __future__ import annotations

from collections.abc import Mapping

from .model import Metric, MetricFamily


def metric_sort_key(metric: Metric) -> tuple:
    """Order by label count, then label values, then timestamp with missing ones last."""
    has_no_timestamp = metric.timestamp_ms is None
    return (
        len(metric.labels),
        tuple(pair.value for pair in metric.labels),
        has_no_timestamp,
        0 if has_no_timestamp else metric.timestamp_ms,
    )


def normalize_metric_families(families_by_name: Mapping[str, MetricFamily]) -> list[MetricFamily]:
    """Drop empty families, sort families by name and metrics within each family."""
    for family in families_by_name.values():
        family.metrics.sort(key=metric_sort_key)
    return [
        families_by_name[name]
        for name in sorted(families_by_name)
        if families_by_name[name].metrics
    ]