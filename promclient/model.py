"""Plain data structures describing collected metric samples."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class MetricType(Enum):
    """Type of a metric family as it appears in the exposition format."""

    COUNTER = "counter"
    GAUGE = "gauge"
    SUMMARY = "summary"
    UNTYPED = "untyped"
    HISTOGRAM = "histogram"


@dataclass(frozen=True)
class LabelPair:
    """A single label name and its value."""

    name: str
    value: str


@dataclass
class Exemplar:
    """An example observation attached to a histogram bucket."""

    labels: list[LabelPair] = field(default_factory=list)
    value: float = 0.0
    timestamp: datetime | None = None


@dataclass
class Bucket:
    """One cumulative histogram bucket."""

    cumulative_count: int
    upper_bound: float
    exemplar: Exemplar | None = None


@dataclass
class HistogramValue:
    """The state of a histogram at collection time."""

    sample_count: int = 0
    sample_sum: float = 0.0
    buckets: list[Bucket] = field(default_factory=list)


@dataclass
class Quantile:
    """One quantile of a summary."""

    quantile: float
    value: float


@dataclass
class SummaryValue:
    """The state of a summary at collection time."""

    sample_count: int = 0
    sample_sum: float = 0.0
    quantiles: list[Quantile] = field(default_factory=list)


@dataclass
class Metric:
    """A single collected sample (or sample group) with its labels."""

    labels: list[LabelPair] = field(default_factory=list)
    gauge: float | None = None
    counter: float | None = None
    untyped: float | None = None
    summary: SummaryValue | None = None
    histogram: HistogramValue | None = None
    timestamp_ms: int | None = None

    def label_dict(self) -> dict[str, str]:
        """Return the labels as a name-to-value mapping."""
        return {pair.name: pair.value for pair in self.labels}


@dataclass
class MetricFamily:
    """All metrics sharing one name, help text and type."""

    name: str
    help: str = ""
    type: MetricType = MetricType.UNTYPED
    metrics: list[Metric] = field(default_factory=list)