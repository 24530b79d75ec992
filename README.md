# promclient

A small, dependency-free library for building Prometheus-style metrics in
Python. It provides:

- plain data classes for collected samples and metric families
  (`promclient.model`);
- label validation helpers (`promclient.labels`);
- metric descriptors, constant metrics, timestamped metrics and observers
  (`promclient.metric`);
- sorting and pruning of gathered metric families (`promclient.normalize`);
- bucket layouts and constant histograms (`promclient.buckets`);
- live histograms with exemplars and labelled histogram vectors
  (`promclient.histogram`);
- a collector for process metrics read from a Linux-style `/proc`
  filesystem (`promclient.process_collector`);
- a bridge that pushes metric families to a Graphite server over TCP
  (`promclient.graphite`).

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Descriptors and constant metrics

A `Desc` holds a fully-qualified name, help text, variable label names and
constant labels. Validation problems (bad metric or label names, duplicate
labels, names starting with `__`) are kept in `desc.error` and raised when a
metric is created from it.

```python
from datetime import datetime, timezone
from promclient.metric import Desc, ValueType, build_fq_name, new_const_metric, new_metric_with_timestamp

name = build_fq_name("our_company", "blob_storage", "ops_queued")  # "our_company_blob_storage_ops_queued"

desc = Desc("temperature_kelvin", "Current temperature in Kelvin.", None, None)
gauge = new_const_metric(desc, ValueType.GAUGE, 298.15)
stamped = new_metric_with_timestamp(datetime(2009, 11, 10, 23, tzinfo=timezone.utc), gauge)
print(stamped.write())  # a promclient.model.Metric with gauge=298.15 and timestamp_ms set
```

Extra positional arguments to `new_const_metric` are the label values; a wrong
number of them raises `InconsistentCardinalityError` (a `ValueError`).
`new_invalid_metric(desc, error)` returns a metric whose `write()` raises the
given error. `ObserverFunc` turns any callable into an `Observer`.

## Histograms

```python
from promclient.buckets import linear_buckets
from promclient.histogram import Histogram, HistogramOpts

temps = Histogram(HistogramOpts(
    name="pond_temperature_celsius",
    help="The temperature of the frog pond.",
    buckets=linear_buckets(20, 5, 5),
))
temps.observe(27.3)
temps.observe_with_exemplar(41.0, {"trace_id": "abc"})
metric = temps.write()
print(metric.histogram.sample_count, metric.histogram.sample_sum)
```

Bucket upper bounds must be strictly increasing, otherwise `ValueError` is
raised; a trailing `+Inf` bound is implicit and dropped if given. Without
buckets, `DEFAULT_BUCKETS` from `promclient.buckets` is used. The label name
`le` is not allowed. `exponential_buckets(start, factor, count)` is also
available. Exemplar labels are limited to 64 characters in total.

Labelled histograms live in a `HistogramVec`:

```python
from promclient.histogram import HistogramVec, HistogramOpts

latency = HistogramVec(
    HistogramOpts(name="api_request_duration_seconds", help="Request latency."),
    ["status_class"],
)
latency.with_label_values("2xx").observe(0.042)
latency.with_labels({"status_class": "5xx"}).observe(1.3)
curried = latency.curry_with({"status_class": "4xx"})
curried.with_label_values().observe(0.2)
```

`delete_label_values`, `delete` and `reset` remove histograms;
`describe()` and `collect()` yield the descriptor and the histograms.

`new_const_histogram(desc, count, total, buckets, *label_values)` builds a
fixed histogram from a mapping of upper bounds to cumulative counts.

## Normalizing gathered families

`normalize_metric_families(families_by_name)` drops empty families and
returns the rest sorted by name, with metrics inside each family sorted by
label values (and timestamp, missing timestamps last).

## Process metrics

```python
from promclient.process_collector import ProcessCollector, ProcessCollectorOpts

collector = ProcessCollector(ProcessCollectorOpts(namespace="myapp", report_errors=True))
for metric in collector.collect():
    print(metric.desc.fq_name, metric.write())
```

The collector yields CPU seconds, virtual and resident memory, start time,
open and maximum file descriptors, and the maximum address space. With
`report_errors=True`, failures appear as invalid metrics; otherwise they are
skipped. Use `new_pid_file_fn(path)` as the `pid_fn` option to inspect the
process whose PID is stored in a file; it raises `PidFileError` if the file
cannot be read or parsed.

## Pushing to Graphite

```python
from promclient.graphite import Bridge, Config

bridge = Bridge(Config(url="localhost:2003", gatherer=my_gatherer, prefix="prefix"))
bridge.push()
```

The gatherer is any callable returning a sequence of
`promclient.model.MetricFamily`. `Bridge.run(stop_event)` pushes every
`interval` seconds until the given `threading.Event` is set. With
`use_tags=True`, labels are sent as Graphite tags instead of being folded
into the dotted path. `write_metrics(out, families, use_tags, prefix, now_ms)`
writes the same lines to any text stream, and `sanitize(text)` applies the
path sanitizing on its own.

## What this package does not do

- There is no registry and no default gatherer: collectors and vectors are
  not registered anywhere, and the Graphite bridge needs a gatherer callable.
- There is no HTTP endpoint and no text exposition format writer.
- Counters, gauges and summaries exist only as constant metrics and data
  classes; live histograms are the only updating metric type.
- Process metrics are read only from a `/proc` filesystem; on systems without
  one the collector yields nothing (or a single invalid metric when errors
  are reported).