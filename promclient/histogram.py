"""Histograms: observations counted into configurable cumulative buckets."""

from __future__ import annotations

import copy
import math
import threading
from bisect import bisect_left
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone

from . import model
from .buckets import DEFAULT_BUCKETS
from .labels import (
    check_label_name,
    make_inconsistent_cardinality_error,
    validate_label_values,
    validate_values_in_labels,
)
from .metric import Desc, Metric, Observer, Opts, make_label_pairs

BUCKET_LABEL = "le"
EXEMPLAR_MAX_RUNES = 64

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class HistogramOpts(Opts):
    """Options for a histogram.

    ``buckets`` holds strictly increasing upper bounds; an empty value means
    the default buckets. A trailing +Inf bound is implicit and may be omitted.
    """

    buckets: Sequence[float] = ()


def _bucket_label_error() -> ValueError:
    return ValueError(f'"{BUCKET_LABEL}" is not allowed as label name in histograms')


def _new_exemplar(value: float, timestamp: datetime, labels: Mapping[str, str]) -> model.Exemplar:
    runes = 0
    for name, label_value in labels.items():
        if not check_label_name(name):
            raise ValueError(f"exemplar label name {name!r} is invalid")
        runes += len(name) + len(label_value)
    if runes > EXEMPLAR_MAX_RUNES:
        raise ValueError(
            f"exemplar labels have {runes} runes, exceeding the limit of {EXEMPLAR_MAX_RUNES}"
        )
    pairs = sorted((model.LabelPair(n, v) for n, v in labels.items()), key=lambda p: p.name)
    return model.Exemplar(labels=pairs, value=value, timestamp=timestamp)


class Histogram(Metric, Observer):
    """Counts observations into buckets and tracks their count and sum.

    Exemplars are kept separately for each bucket, including +Inf.
    """

    def __init__(
        self,
        opts: HistogramOpts | None = None,
        *,
        desc: Desc | None = None,
        label_values: Sequence[str] = (),
        clock: Clock | None = None,
    ) -> None:
        opts = opts or HistogramOpts()
        if desc is None:
            desc = Desc(opts.fq_name, opts.help, None, opts.const_labels)
        label_values = tuple(label_values)
        if len(desc.variable_labels) != len(label_values):
            raise make_inconsistent_cardinality_error(
                desc.fq_name, desc.variable_labels, label_values
            )
        if BUCKET_LABEL in desc.variable_labels:
            raise _bucket_label_error()
        if any(pair.name == BUCKET_LABEL for pair in desc.const_label_pairs):
            raise _bucket_label_error()

        bounds = [float(b) for b in (opts.buckets or DEFAULT_BUCKETS)]
        for lower, upper in zip(bounds, bounds[1:]):
            if lower >= upper:
                raise ValueError(
                    f"histogram buckets must be in increasing order: {lower:f} >= {upper:f}"
                )
        if bounds and math.isinf(bounds[-1]) and bounds[-1] > 0:
            bounds.pop()

        self._desc = desc
        self.upper_bounds: tuple[float, ...] = tuple(bounds)
        self.label_pairs = make_label_pairs(desc, label_values)
        self._clock: Clock = clock or _utc_now
        self._lock = threading.Lock()
        self._count = 0
        self._sum = 0.0
        self._bucket_counts = [0] * len(self.upper_bounds)
        self._exemplars: list[model.Exemplar | None] = [None] * (len(self.upper_bounds) + 1)

    @property
    def desc(self) -> Desc:
        return self._desc

    @property
    def exemplars(self) -> list[model.Exemplar | None]:
        """Current exemplar per bucket; the last entry belongs to +Inf."""
        with self._lock:
            return list(self._exemplars)

    def _find_bucket(self, value: float) -> int:
        if math.isnan(value):
            return len(self.upper_bounds)
        return bisect_left(self.upper_bounds, value)

    def _observe(self, value: float, bucket: int) -> None:
        if bucket < len(self._bucket_counts):
            self._bucket_counts[bucket] += 1
        self._sum += value
        self._count += 1

    def observe(self, value: float) -> None:
        """Add a single observation."""
        value = float(value)
        bucket = self._find_bucket(value)
        with self._lock:
            self._observe(value, bucket)

    def observe_with_exemplar(self, value: float, labels: Mapping[str, str] | None) -> None:
        """Add an observation and replace its bucket's exemplar.

        With ``labels`` of None the current exemplar is kept. Invalid or too
        long labels raise ValueError.
        """
        value = float(value)
        bucket = self._find_bucket(value)
        exemplar = None if labels is None else _new_exemplar(value, self._clock(), labels)
        with self._lock:
            self._observe(value, bucket)
            if exemplar is not None:
                self._exemplars[bucket] = exemplar

    def write(self) -> model.Metric:
        with self._lock:
            buckets: list[model.Bucket] = []
            cumulative = 0
            for index, bound in enumerate(self.upper_bounds):
                cumulative += self._bucket_counts[index]
                buckets.append(
                    model.Bucket(
                        cumulative_count=cumulative,
                        upper_bound=bound,
                        exemplar=self._exemplars[index],
                    )
                )
            inf_exemplar = self._exemplars[-1]
            if inf_exemplar is not None:
                buckets.append(
                    model.Bucket(
                        cumulative_count=self._count,
                        upper_bound=math.inf,
                        exemplar=inf_exemplar,
                    )
                )
            histogram = model.HistogramValue(
                sample_count=self._count, sample_sum=self._sum, buckets=buckets
            )
        return model.Metric(labels=list(self.label_pairs), histogram=histogram)

    def describe(self) -> Iterator[Desc]:
        """Yield this histogram's descriptor."""
        yield self._desc

    def collect(self) -> Iterator[Metric]:
        """Yield this histogram itself."""
        yield self


class _Store:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.metrics: dict[tuple[str, ...], Histogram] = {}


class HistogramVec:
    """A set of histograms sharing one descriptor, partitioned by label values."""

    def __init__(self, opts: HistogramOpts, label_names: Sequence[str]) -> None:
        self._opts = opts
        self.desc = Desc(opts.fq_name, opts.help, list(label_names), opts.const_labels)
        self._store = _Store()
        self._curry: dict[str, str] = {}

    @property
    def _free_labels(self) -> int:
        return len(self.desc.variable_labels) - len(self._curry)

    def _values_from_args(self, args: Sequence[str]) -> tuple[str, ...]:
        validate_label_values(list(args), self._free_labels)
        remaining = iter(args)
        return tuple(
            self._curry[name] if name in self._curry else next(remaining)
            for name in self.desc.variable_labels
        )

    def _values_from_labels(self, labels: Mapping[str, str]) -> tuple[str, ...]:
        validate_values_in_labels(labels, self._free_labels)
        values = []
        for name in self.desc.variable_labels:
            if name in self._curry:
                if name in labels:
                    raise ValueError(f'label name "{name}" is already curried')
                values.append(self._curry[name])
            elif name in labels:
                values.append(labels[name])
            else:
                raise ValueError(f'label name "{name}" missing in label map')
        return tuple(values)

    def _get_or_create(self, values: tuple[str, ...]) -> Histogram:
        with self._store.lock:
            histogram = self._store.metrics.get(values)
            if histogram is None:
                histogram = Histogram(self._opts, desc=self.desc, label_values=values)
                self._store.metrics[values] = histogram
            return histogram

    def get_metric_with_label_values(self, *args: str) -> Histogram:
        """Return the histogram for these label values, creating it if needed."""
        return self._get_or_create(self._values_from_args(args))

    def get_metric_with(self, labels: Mapping[str, str]) -> Histogram:
        """Return the histogram for this label mapping, creating it if needed."""
        return self._get_or_create(self._values_from_labels(labels))

    def with_label_values(self, *args: str) -> Histogram:
        """Shortcut for get_metric_with_label_values."""
        return self.get_metric_with_label_values(*args)

    def with_labels(self, labels: Mapping[str, str]) -> Histogram:
        """Shortcut for get_metric_with."""
        return self.get_metric_with(labels)

    def curry_with(self, labels: Mapping[str, str]) -> HistogramVec:
        """Return a view of this vector with some labels preset.

        The histograms are shared with the original vector.
        """
        merged = dict(self._curry)
        matched = 0
        for name in self.desc.variable_labels:
            if name not in labels:
                continue
            if name in self._curry:
                raise ValueError(f'label name "{name}" is already curried')
            merged[name] = labels[name]
            matched += 1
        if matched != len(labels):
            raise ValueError(f"{len(labels) - matched} unknown label(s) found during currying")
        curried = copy.copy(self)
        curried._curry = merged
        return curried

    def _delete(self, values: tuple[str, ...]) -> bool:
        with self._store.lock:
            return self._store.metrics.pop(values, None) is not None

    def delete_label_values(self, *args: str) -> bool:
        """Remove the histogram for these label values; return whether it existed."""
        try:
            values = self._values_from_args(args)
        except ValueError:
            return False
        return self._delete(values)

    def delete(self, labels: Mapping[str, str]) -> bool:
        """Remove the histogram for this label mapping; return whether it existed."""
        try:
            values = self._values_from_labels(labels)
        except ValueError:
            return False
        return self._delete(values)

    def reset(self) -> None:
        """Remove all histograms, including those reached through curried views."""
        with self._store.lock:
            self._store.metrics.clear()

    def describe(self) -> Iterator[Desc]:
        """Yield the shared descriptor."""
        yield self.desc

    def collect(self) -> Iterator[Metric]:
        """Yield every histogram in the vector."""
        with self._store.lock:
            histograms = list(self._store.metrics.values())
        yield from histograms