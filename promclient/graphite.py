"""Push gathered metrics to a Graphite server over its plaintext protocol."""

from __future__ import annotations

import logging
import math
import socket
import threading
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import TextIO

from .model import MetricFamily, MetricType

DEFAULT_INTERVAL = 15.0
MILLISECONDS_PER_SECOND = 1000
METRIC_NAME_LABEL = "__name__"

Gatherer = Callable[[], Sequence[MetricFamily]]


class ErrorHandling(Enum):
    """How a push reacts to errors while gathering metrics."""

    CONTINUE_ON_ERROR = 0
    ABORT_ON_ERROR = 1


@dataclass
class Sample:
    """A single flattened sample: its full label set, value and timestamp."""

    metric: dict[str, str]
    value: float
    timestamp_ms: int


@dataclass
class Config:
    """Settings of a Graphite bridge.

    ``url`` is ``host:port`` and required. ``interval`` and ``timeout`` are
    seconds; zero means the default of 15 seconds. ``gatherer`` is a callable
    returning the metric families to push.
    """

    url: str = ""
    gatherer: Gatherer | None = None
    use_tags: bool = False
    prefix: str = ""
    interval: float = DEFAULT_INTERVAL
    timeout: float = DEFAULT_INTERVAL
    logger: logging.Logger | None = None
    error_handling: ErrorHandling = ErrorHandling.CONTINUE_ON_ERROR


def _format_float(value: float) -> str:
    """Format a float in the shortest general form used by the exposition format."""
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    sign = "-" if math.copysign(1.0, value) < 0 else ""
    if value == 0:
        return sign + "0"
    _, digit_tuple, exponent = Decimal(repr(abs(value))).as_tuple()
    digits = "".join(str(d) for d in digit_tuple)
    stripped = digits.rstrip("0")
    exponent += len(digits) - len(stripped)
    digits = stripped.lstrip("0") or "0"
    point = len(digits) + exponent
    exp = point - 1
    if exp < -4 or exp >= 6:
        mantissa = digits[0] + ("." + digits[1:] if len(digits) > 1 else "")
        exp_sign = "-" if exp < 0 else "+"
        return f"{sign}{mantissa}e{exp_sign}{abs(exp):02d}"
    if point <= 0:
        return f"{sign}0.{'0' * -point}{digits}"
    if point >= len(digits):
        return sign + digits + "0" * (point - len(digits))
    return f"{sign}{digits[:point]}.{digits[point:]}"


def extract_samples(families: Iterable[MetricFamily], timestamp_ms: int) -> list[Sample]:
    """Flatten metric families into samples.

    Metrics without their own timestamp get ``timestamp_ms``. Summaries yield
    one sample per quantile plus ``_sum`` and ``_count``; histograms yield one
    ``_bucket`` sample per bucket, ``_sum``, ``_count`` and an implicit +Inf
    bucket if none was present.
    """
    samples: list[Sample] = []
    for family in families:
        for metric in family.metrics:
            labels = metric.label_dict()
            ts = metric.timestamp_ms if metric.timestamp_ms is not None else timestamp_ms

            def add(name: str, value: float, extra: dict[str, str] | None = None) -> None:
                label_set = dict(labels)
                if extra:
                    label_set.update(extra)
                label_set[METRIC_NAME_LABEL] = name
                samples.append(Sample(label_set, float(value), ts))

            if family.type is MetricType.COUNTER:
                if metric.counter is not None:
                    add(family.name, metric.counter)
            elif family.type is MetricType.GAUGE:
                if metric.gauge is not None:
                    add(family.name, metric.gauge)
            elif family.type is MetricType.UNTYPED:
                if metric.untyped is not None:
                    add(family.name, metric.untyped)
            elif family.type is MetricType.SUMMARY:
                summary = metric.summary
                if summary is None:
                    continue
                for quantile in summary.quantiles:
                    add(family.name, quantile.value, {"quantile": _format_float(quantile.quantile)})
                add(family.name + "_sum", summary.sample_sum)
                add(family.name + "_count", summary.sample_count)
            elif family.type is MetricType.HISTOGRAM:
                histogram = metric.histogram
                if histogram is None:
                    continue
                inf_seen = False
                for bucket in histogram.buckets:
                    if math.isinf(bucket.upper_bound) and bucket.upper_bound > 0:
                        inf_seen = True
                    add(
                        family.name + "_bucket",
                        bucket.cumulative_count,
                        {"le": _format_float(bucket.upper_bound)},
                    )
                add(family.name + "_sum", histogram.sample_sum)
                add(family.name + "_count", histogram.sample_count)
                if not inf_seen:
                    add(
                        family.name + "_bucket",
                        histogram.sample_count,
                        {"le": _format_float(math.inf)},
                    )
    return samples


def _replace_invalid_char(char: str) -> str:
    if char == " ":
        return "."
    if ("a" <= char <= "z") or ("A" <= char <= "Z") or ("0" <= char <= "9") or char in "_:-":
        return char
    return "_"


def sanitize(text: str) -> str:
    """Make text safe for a Graphite path: spaces become dots, other
    disallowed characters underscores, and runs of underscores collapse."""
    out: list[str] = []
    prev_underscore = False
    for char in text:
        char = _replace_invalid_char(char)
        if char == "_":
            if prev_underscore:
                continue
            prev_underscore = True
        else:
            prev_underscore = False
        out.append(char)
    return "".join(out)


def _format_metric(labels: dict[str, str], use_tags: bool) -> str:
    name = labels.get(METRIC_NAME_LABEL, "")
    others = sorted((k, v) for k, v in labels.items() if k != METRIC_NAME_LABEL)
    if not others:
        return sanitize(name)
    if use_tags:
        return sanitize(name) + "".join(f";{k}={v}" for k, v in others)
    parts = sorted(f"{k} {v}" for k, v in others)
    return sanitize(name) + "".join("." + sanitize(part) for part in parts)


def _seconds(timestamp_ms: int) -> int:
    seconds = abs(timestamp_ms) // MILLISECONDS_PER_SECOND
    return -seconds if timestamp_ms < 0 else seconds


def write_metrics(
    out: TextIO,
    families: Iterable[MetricFamily],
    use_tags: bool,
    prefix: str,
    now_ms: int,
) -> int:
    """Write families to ``out`` as Graphite plaintext lines; return the line count."""
    count = 0
    for sample in extract_samples(families, now_ms):
        out.write(
            f"{prefix}.{_format_metric(sample.metric, use_tags)} "
            f"{_format_float(sample.value)} {_seconds(sample.timestamp_ms)}\n"
        )
        count += 1
    return count


def _split_address(url: str) -> tuple[str, int]:
    host, sep, port = url.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"address {url!r} must be of the form host:port")
    return host.strip("[]"), int(port)


class Bridge:
    """Pushes gathered metrics to a Graphite server."""

    def __init__(self, config: Config) -> None:
        if not config.url:
            raise ValueError("missing URL")
        if config.gatherer is None:
            raise ValueError("missing gatherer")
        self.url = config.url
        self.gatherer = config.gatherer
        self.use_tags = config.use_tags
        self.prefix = config.prefix
        self.interval = config.interval or DEFAULT_INTERVAL
        self.timeout = config.timeout or DEFAULT_INTERVAL
        self.logger = config.logger
        self.error_handling = config.error_handling

    def run(self, stop_event: threading.Event) -> int:
        """Push every interval until ``stop_event`` is set; errors are logged.

        Returns the number of pushes attempted.
        """
        attempts = 0
        while not stop_event.wait(self.interval):
            attempts += 1
            try:
                self.push()
            except Exception as exc:  # noqa: BLE001 - the loop keeps running
                if self.logger is not None:
                    self.logger.error("error pushing to Graphite: %s", exc)
        return attempts

    def push(self) -> int:
        """Gather metrics and send them to the Graphite server.

        Returns the number of lines sent.
        """
        error: Exception | None = None
        families: Sequence[MetricFamily] = []
        try:
            families = list(self.gatherer() or [])
        except Exception as exc:  # noqa: BLE001 - handled per error_handling
            error = exc
        if error is not None or not families:
            if self.error_handling is ErrorHandling.ABORT_ON_ERROR:
                if error is not None:
                    raise error
                return 0
            if self.logger is not None:
                self.logger.warning("continue on error: %s", error)

        host, port = _split_address(self.url)
        now_ms = int(time.time() * 1000)
        with socket.create_connection((host, port), timeout=self.timeout) as conn:
            with conn.makefile("w", encoding="utf-8", newline="") as out:
                return write_metrics(out, families, self.use_tags, self.prefix, now_ms)