"""Prometheus-style metrics: descriptors, histograms, process metrics and a Graphite bridge."""

__version__ = "0.1.0"

__all__ = [
    "buckets",
    "graphite",
    "histogram",
    "labels",
    "metric",
    "model",
    "normalize",
    "process_collector",
]