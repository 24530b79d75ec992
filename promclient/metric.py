"""Metric descriptors, constant metrics and observers."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum

from . import model
from .labels import check_label_name, validate_label_values

_METRIC_NAME_RE = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class ValueType(Enum):
    """Kind of value carried by a simple metric."""

    COUNTER = 1
    GAUGE = 2
    UNTYPED = 3


def build_fq_name(namespace: str, subsystem: str, name: str) -> str:
    """Join non-empty name components with "_"; empty name yields ""."""
    if not name:
        return ""
    return "_".join(part for part in (namespace, subsystem, name) if part)


class Desc:
    """Immutable descriptor of a metric: name, help and label names.

    A descriptor that fails validation keeps the problem in ``error``.
    """

    def __init__(
        self,
        fq_name: str,
        help: str,
        variable_labels: Sequence[str] | None = None,
        const_labels: Mapping[str, str] | None = None,
    ) -> None:
        self.fq_name = fq_name
        self.help = help
        self.variable_labels: tuple[str, ...] = tuple(variable_labels or ())
        self.const_labels: dict[str, str] = dict(const_labels or {})
        self.const_label_pairs: tuple[model.LabelPair, ...] = tuple(
            sorted(
                (model.LabelPair(k, v) for k, v in self.const_labels.items()),
                key=lambda pair: pair.name,
            )
        )
        self.error: Exception | None = self._validate()

    def _validate(self) -> Exception | None:
        if not _METRIC_NAME_RE.match(self.fq_name):
            return ValueError(f"{self.fq_name!r} is not a valid metric name")
        seen: set[str] = set()
        for name in [*self.const_labels, *self.variable_labels]:
            if not check_label_name(name):
                return ValueError(f"{name!r} is not a valid label name for metric {self.fq_name!r}")
            if name in seen:
                return ValueError(f"duplicate label name {name!r} in metric {self.fq_name!r}")
            seen.add(name)
        try:
            validate_label_values(list(self.const_labels.values()), len(self.const_labels))
        except ValueError as exc:
            return exc
        return None

    def __str__(self) -> str:
        consts = ",".join(f'{p.name}="{p.value}"' for p in self.const_label_pairs)
        variables = " ".join(self.variable_labels)
        return (
            f'Desc{{fqName: "{self.fq_name}", help: "{self.help}", '
            f"constLabels: {{{consts}}}, variableLabels: [{variables}]}}"
        )

    __repr__ = __str__


@dataclass
class Opts:
    """Common options for creating a metric."""

    name: str = ""
    namespace: str = ""
    subsystem: str = ""
    help: str = ""
    const_labels: dict[str, str] = field(default_factory=dict)

    @property
    def fq_name(self) -> str:
        return build_fq_name(self.namespace, self.subsystem, self.name)


def make_label_pairs(desc: Desc, label_values: Sequence[str]) -> list[model.LabelPair]:
    """Combine variable label values with the descriptor's constant labels, sorted by name."""
    if not desc.variable_labels:
        return list(desc.const_label_pairs)
    pairs = [model.LabelPair(n, v) for n, v in zip(desc.variable_labels, label_values)]
    pairs.extend(desc.const_label_pairs)
    pairs.sort(key=lambda pair: pair.name)
    return pairs


class Metric(ABC):
    """A single exportable sample together with its descriptor."""

    @property
    @abstractmethod
    def desc(self) -> Desc:
        """The descriptor of this metric."""

    @abstractmethod
    def write(self) -> model.Metric:
        """Return the current state of the metric as data."""


class ConstMetric(Metric):
    """A metric with a fixed value, typically created inside a collector."""

    def __init__(self, desc: Desc, value_type: ValueType, value: float, label_values: Sequence[str]) -> None:
        self._desc = desc
        self.value_type = value_type
        self.value = float(value)
        self.label_pairs = make_label_pairs(desc, label_values)

    @property
    def desc(self) -> Desc:
        return self._desc

    def write(self) -> model.Metric:
        out = model.Metric(labels=list(self.label_pairs))
        if self.value_type is ValueType.COUNTER:
            out.counter = self.value
        elif self.value_type is ValueType.GAUGE:
            out.gauge = self.value
        else:
            out.untyped = self.value
        return out


def new_const_metric(desc: Desc, value_type: ValueType, value: float, *args: str) -> ConstMetric:
    """Create a constant metric; the extra arguments are the label values."""
    if desc.error is not None:
        raise desc.error
    validate_label_values(list(args), len(desc.variable_labels))
    return ConstMetric(desc, value_type, value, args)


class InvalidMetric(Metric):
    """A metric whose write always raises the stored error."""

    def __init__(self, desc: Desc, error: Exception) -> None:
        self._desc = desc
        self.error = error

    @property
    def desc(self) -> Desc:
        return self._desc

    def write(self) -> model.Metric:
        raise self.error


def new_invalid_metric(desc: Desc, error: Exception) -> InvalidMetric:
    """Wrap an error so that it is reported when the metric is written."""
    return InvalidMetric(desc, error)


def _to_millis(timestamp: datetime) -> int:
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return (timestamp - _EPOCH) // timedelta(milliseconds=1)


class TimestampedMetric(Metric):
    """A metric carrying an explicit timestamp, truncated to milliseconds."""

    def __init__(self, timestamp: datetime, metric: Metric) -> None:
        self.timestamp = timestamp
        self.metric = metric

    @property
    def desc(self) -> Desc:
        return self.metric.desc

    def write(self) -> model.Metric:
        out = self.metric.write()
        out.timestamp_ms = _to_millis(self.timestamp)
        return out


def new_metric_with_timestamp(timestamp: datetime, metric: Metric) -> TimestampedMetric:
    """Wrap a metric so it is exported with the given timestamp."""
    return TimestampedMetric(timestamp, metric)


class Observer(ABC):
    """Anything that accepts observations."""

    @abstractmethod
    def observe(self, value: float) -> None:
        """Record a single observation."""


class ObserverFunc(Observer):
    """Adapter turning a plain callable into an observer."""

    def __init__(self, func: Callable[[float], object]) -> None:
        self.func = func

    def observe(self, value: float) -> None:
        self.func(value)

    def __call__(self, value: float) -> None:
        self.observe(value)