"""Bucket layouts and constant histograms."""

from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence

from . import model
from .labels import validate_label_values
from .metric import Desc, Metric, make_label_pairs

DEFAULT_BUCKETS: tuple[float, ...] = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10)


def _stepped(start: float, count: int, step) -> Iterator[float]:
    value = start
    for _ in range(count):
        yield value
        value = step(value)


def linear_buckets(start: float, width: float, count: int) -> list[float]:
    """Return ``count`` upper bounds, the first ``start``, each ``width`` apart.

    The implicit +Inf bucket is not included.
    """
    if count < 1:
        raise ValueError("linear_buckets needs a positive count")
    return list(_stepped(start, count, lambda v: v + width))


def exponential_buckets(start: float, factor: float, count: int) -> list[float]:
    """Return ``count`` upper bounds, the first ``start``, each ``factor`` times the previous.

    The implicit +Inf bucket is not included.
    """
    if count < 1:
        raise ValueError("exponential_buckets needs a positive count")
    if start <= 0:
        raise ValueError("exponential_buckets needs a positive start value")
    if factor <= 1:
        raise ValueError("exponential_buckets needs a factor greater than 1")
    return list(_stepped(start, count, lambda v: v * factor))


class ConstHistogram(Metric):
    """A histogram with fixed count, sum and cumulative bucket counts."""

    def __init__(
        self,
        desc: Desc,
        count: int,
        total: float,
        buckets: Mapping[float, int],
        label_pairs: Sequence[model.LabelPair],
    ) -> None:
        self._desc = desc
        self.count = count
        self.total = float(total)
        self.buckets = dict(buckets)
        self.label_pairs = list(label_pairs)

    @property
    def desc(self) -> Desc:
        return self._desc

    def write(self) -> model.Metric:
        buckets = [
            model.Bucket(cumulative_count=count, upper_bound=float(bound))
            for bound, count in sorted(self.buckets.items())
        ]
        histogram = model.HistogramValue(
            sample_count=self.count, sample_sum=self.total, buckets=buckets
        )
        return model.Metric(labels=list(self.label_pairs), histogram=histogram)


def new_const_histogram(
    desc: Desc, count: int, total: float, buckets: Mapping[float, int], *args: str
) -> ConstHistogram:
    """Create a constant histogram; the extra arguments are the label values.

    ``buckets`` maps upper bounds to cumulative counts, excluding +Inf.
    """
    if desc.error is not None:
        raise desc.error
    validate_label_values(list(args), len(desc.variable_labels))
    return ConstHistogram(desc, count, total, buckets, make_label_pairs(desc, args))