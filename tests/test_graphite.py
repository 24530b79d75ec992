import logging
import math
import socket
import threading
from unittest import mock

import pytest

from promclient import model
from promclient.graphite import (
    Bridge,
    Config,
    ErrorHandling,
    Sample,
    extract_samples,
    sanitize,
    write_metrics,
)
from promclient.histogram import HistogramOpts, HistogramVec
from promclient.normalize import normalize_metric_families

NOW = 1477043083


def _lp(**labels):
    return [model.LabelPair(k, v) for k, v in sorted(labels.items())]


def _summary_families():
    def metric(val, quantiles, total):
        return model.Metric(
            labels=_lp(constname="constvalue", labelname=val),
            summary=model.SummaryValue(
                sample_count=3,
                sample_sum=total,
                quantiles=[model.Quantile(q, v) for q, v in quantiles],
            ),
        )

    return [
        model.MetricFamily(
            name="name",
            help="docstring",
            type=model.MetricType.SUMMARY,
            metrics=[
                metric("val1", [(0.5, 20), (0.9, 30), (0.99, 30)], 60),
                metric("val2", [(0.5, 30), (0.9, 40), (0.99, 40)], 90),
            ],
        )
    ]


def _counter_families():
    return [
        model.MetricFamily(
            name="name",
            help="docstring",
            type=model.MetricType.COUNTER,
            metrics=[
                model.Metric(labels=_lp(constname="constvalue", labelname="val1"), counter=1.0),
                model.Metric(labels=_lp(constname="constvalue", labelname="val2"), counter=1.0),
            ],
        )
    ]


def _histogram_families():
    vec = HistogramVec(
        HistogramOpts(
            name="name",
            help="docstring",
            const_labels={"constname": "constvalue"},
            buckets=[0.01, 0.02, 0.05, 0.1],
        ),
        ["labelname"],
    )
    for val, obs in (("val1", (10, 20, 30)), ("val2", (20, 30, 40))):
        for v in obs:
            vec.with_label_values(val).observe(v)
    family = model.MetricFamily(
        name="name",
        help="docstring",
        type=model.MetricType.HISTOGRAM,
        metrics=[m.write() for m in vec.collect()],
    )
    return normalize_metric_families({"name": family})


def _write(families, use_tags, prefix="prefix"):
    lines = []

    class Out:
        def write(self, text):
            lines.append(text)

    write_metrics(Out(), families, use_tags, prefix, NOW)
    return "".join(lines)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("hello", "hello"),
        ("hE/l1o", "hE_l1o"),
        ("he,*ll(.o", "he_ll_o"),
        ("hello_there%^&", "hello_there_"),
        ("hell-.o", "hell-_o"),
    ],
)
def test_sanitize(text, expected):
    assert sanitize(text) == expected


SUMMARY_WANT = """{p}.name.constname.constvalue.labelname.val1.quantile.0_5 20 1477043
{p}.name.constname.constvalue.labelname.val1.quantile.0_9 30 1477043
{p}.name.constname.constvalue.labelname.val1.quantile.0_99 30 1477043
{p}.name_sum.constname.constvalue.labelname.val1 60 1477043
{p}.name_count.constname.constvalue.labelname.val1 3 1477043
{p}.name.constname.constvalue.labelname.val2.quantile.0_5 30 1477043
{p}.name.constname.constvalue.labelname.val2.quantile.0_9 40 1477043
{p}.name.constname.constvalue.labelname.val2.quantile.0_99 40 1477043
{p}.name_sum.constname.constvalue.labelname.val2 90 1477043
{p}.name_count.constname.constvalue.labelname.val2 3 1477043
"""

SUMMARY_WANT_TAGGED = """{p}.name;constname=constvalue;labelname=val1;quantile=0.5 20 1477043
{p}.name;constname=constvalue;labelname=val1;quantile=0.9 30 1477043
{p}.name;constname=constvalue;labelname=val1;quantile=0.99 30 1477043
{p}.name_sum;constname=constvalue;labelname=val1 60 1477043
{p}.name_count;constname=constvalue;labelname=val1 3 1477043
{p}.name;constname=constvalue;labelname=val2;quantile=0.5 30 1477043
{p}.name;constname=constvalue;labelname=val2;quantile=0.9 40 1477043
{p}.name;constname=constvalue;labelname=val2;quantile=0.99 40 1477043
{p}.name_sum;constname=constvalue;labelname=val2 90 1477043
{p}.name_count;constname=constvalue;labelname=val2 3 1477043
"""


@pytest.mark.parametrize("prefix", ["prefix", "pre/fix", "pre.fix"])
@pytest.mark.parametrize("use_tags", [False, True])
def test_write_summary(prefix, use_tags):
    want = (SUMMARY_WANT_TAGGED if use_tags else SUMMARY_WANT).format(p=prefix)
    assert _write(_summary_families(), use_tags, prefix) == want


HISTOGRAM_WANT = """prefix.name_bucket.constname.constvalue.labelname.val1.le.0_01 0 1477043
prefix.name_bucket.constname.constvalue.labelname.val1.le.0_02 0 1477043
prefix.name_bucket.constname.constvalue.labelname.val1.le.0_05 0 1477043
prefix.name_bucket.constname.constvalue.labelname.val1.le.0_1 0 1477043
prefix.name_sum.constname.constvalue.labelname.val1 60 1477043
prefix.name_count.constname.constvalue.labelname.val1 3 1477043
prefix.name_bucket.constname.constvalue.labelname.val1.le._Inf 3 1477043
prefix.name_bucket.constname.constvalue.labelname.val2.le.0_01 0 1477043
prefix.name_bucket.constname.constvalue.labelname.val2.le.0_02 0 1477043
prefix.name_bucket.constname.constvalue.labelname.val2.le.0_05 0 1477043
prefix.name_bucket.constname.constvalue.labelname.val2.le.0_1 0 1477043
prefix.name_sum.constname.constvalue.labelname.val2 90 1477043
prefix.name_count.constname.constvalue.labelname.val2 3 1477043
prefix.name_bucket.constname.constvalue.labelname.val2.le._Inf 3 1477043
"""

HISTOGRAM_WANT_TAGGED = """prefix.name_bucket;constname=constvalue;labelname=val1;le=0.01 0 1477043
prefix.name_bucket;constname=constvalue;labelname=val1;le=0.02 0 1477043
prefix.name_bucket;constname=constvalue;labelname=val1;le=0.05 0 1477043
prefix.name_bucket;constname=constvalue;labelname=val1;le=0.1 0 1477043
prefix.name_sum;constname=constvalue;labelname=val1 60 1477043
prefix.name_count;constname=constvalue;labelname=val1 3 1477043
prefix.name_bucket;constname=constvalue;labelname=val1;le=+Inf 3 1477043
prefix.name_bucket;constname=constvalue;labelname=val2;le=0.01 0 1477043
prefix.name_bucket;constname=constvalue;labelname=val2;le=0.02 0 1477043
prefix.name_bucket;constname=constvalue;labelname=val2;le=0.05 0 1477043
prefix.name_bucket;constname=constvalue;labelname=val2;le=0.1 0 1477043
prefix.name_sum;constname=constvalue;labelname=val2 90 1477043
prefix.name_count;constname=constvalue;labelname=val2 3 1477043
prefix.name_bucket;constname=constvalue;labelname=val2;le=+Inf 3 1477043
"""


@pytest.mark.parametrize("use_tags", [False, True])
def test_write_histogram(use_tags):
    want = HISTOGRAM_WANT_TAGGED if use_tags else HISTOGRAM_WANT
    assert _write(_histogram_families(), use_tags) == want


@pytest.mark.parametrize(
    "use_tags, want",
    [
        (
            False,
            "prefix.name.constname.constvalue.labelname.val1 1 1477043\n"
            "prefix.name.constname.constvalue.labelname.val2 1 1477043\n",
        ),
        (
            True,
            "prefix.name;constname=constvalue;labelname=val1 1 1477043\n"
            "prefix.name;constname=constvalue;labelname=val2 1 1477043\n",
        ),
    ],
)
def test_write_counter(use_tags, want):
    assert _write(_counter_families(), use_tags) == want


def test_write_metrics_returns_line_count():
    class Out:
        def write(self, text):
            pass

    assert write_metrics(Out(), _summary_families(), False, "p", NOW) == 10


def test_metric_without_labels_and_large_values():
    families = [
        model.MetricFamily(
            name="big",
            type=model.MetricType.GAUGE,
            metrics=[model.Metric(gauge=1e6)],
        )
    ]
    assert _write(families, False, "p") == "p.big 1e+06 1477043\n"


def test_extract_samples_uses_metric_timestamp():
    families = [
        model.MetricFamily(
            name="g",
            type=model.MetricType.GAUGE,
            metrics=[model.Metric(gauge=2.5, timestamp_ms=5000), model.Metric(gauge=1.0)],
        )
    ]
    samples = extract_samples(families, 9000)
    assert samples == [
        Sample({"__name__": "g"}, 2.5, 5000),
        Sample({"__name__": "g"}, 1.0, 9000),
    ]


def test_extract_samples_explicit_inf_bucket_not_duplicated():
    histogram = model.HistogramValue(
        sample_count=4,
        sample_sum=10.0,
        buckets=[model.Bucket(1, 1.0), model.Bucket(4, math.inf)],
    )
    families = [
        model.MetricFamily(
            name="h", type=model.MetricType.HISTOGRAM, metrics=[model.Metric(histogram=histogram)]
        )
    ]
    names = [(s.metric["__name__"], s.metric.get("le")) for s in extract_samples(families, 0)]
    assert names == [
        ("h_bucket", "1"),
        ("h_bucket", "+Inf"),
        ("h_sum", None),
        ("h_count", None),
    ]


def test_bridge_requires_url():
    with pytest.raises(ValueError, match="missing URL"):
        Bridge(Config(gatherer=lambda: []))


def test_bridge_defaults():
    bridge = Bridge(Config(url="localhost:2003", gatherer=lambda: [], interval=0, timeout=0))
    assert (bridge.interval, bridge.timeout) == (15.0, 15.0)


def _server():
    server = socket.create_server(("127.0.0.1", 0))
    received = []

    def serve():
        conn, _ = server.accept()
        with conn:
            chunks = []
            while True:
                data = conn.recv(4096)
                if not data:
                    break
                chunks.append(data)
            received.append(b"".join(chunks).decode())
        server.close()

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    return server.getsockname()[1], thread, received


def test_push():
    port, thread, received = _server()
    bridge = Bridge(
        Config(url=f"127.0.0.1:{port}", gatherer=_counter_families, prefix="prefix")
    )
    with mock.patch("time.time", return_value=float(NOW)):
        sent = bridge.push()
    thread.join(timeout=5)
    assert sent == 2
    assert received == [
        "prefix.name.constname.constvalue.labelname.val1 1 1477043083\n"
        "prefix.name.constname.constvalue.labelname.val2 1 1477043083\n"
    ]


def test_push_abort_on_error_raises():
    def failing():
        raise RuntimeError("boom")

    bridge = Bridge(
        Config(url="127.0.0.1:1", gatherer=failing, error_handling=ErrorHandling.ABORT_ON_ERROR)
    )
    with pytest.raises(RuntimeError, match="boom"):
        bridge.push()


def test_push_abort_on_empty_sends_nothing():
    bridge = Bridge(
        Config(url="127.0.0.1:1", gatherer=lambda: [], error_handling=ErrorHandling.ABORT_ON_ERROR)
    )
    assert bridge.push() == 0


def test_push_continue_on_error_sends_nothing(caplog):
    def failing():
        raise RuntimeError("boom")

    port, thread, received = _server()
    bridge = Bridge(
        Config(
            url=f"127.0.0.1:{port}",
            gatherer=failing,
            logger=logging.getLogger("graphite-test"),
        )
    )
    with caplog.at_level(logging.WARNING, logger="graphite-test"):
        sent = bridge.push()
    thread.join(timeout=5)
    assert sent == 0
    assert received == [""]
    assert "continue on error: boom" in caplog.text


def test_run_stops_on_event():
    stop = threading.Event()
    calls = []

    def gather():
        calls.append(1)
        if len(calls) >= 2:
            stop.set()
        return []

    bridge = Bridge(
        Config(
            url="127.0.0.1:1",
            gatherer=gather,
            interval=0.01,
            error_handling=ErrorHandling.ABORT_ON_ERROR,
        )
    )
    assert bridge.run(stop) == 2
    assert len(calls) == 2


def test_run_logs_push_errors(caplog):
    stop = threading.Event()

    def gather():
        stop.set()
        raise RuntimeError("boom")

    bridge = Bridge(
        Config(
            url="127.0.0.1:1",
            gatherer=gather,
            interval=0.01,
            error_handling=ErrorHandling.ABORT_ON_ERROR,
            logger=logging.getLogger("graphite-run"),
        )
    )
    with caplog.at_level(logging.ERROR, logger="graphite-run"):
        attempts = bridge.run(stop)
    assert attempts == 1
    assert "error pushing to Graphite: boom" in caplog.text