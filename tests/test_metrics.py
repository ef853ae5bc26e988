from datetime import timedelta

import pytest

from flagrelay.attributes import (
    EXCEPTION_TYPE_KEY,
    FEATURE_FLAG_KEY_KEY,
    HTTP_METHOD_KEY,
    HTTP_STATUS_CODE_KEY,
    HTTP_URL_KEY,
    SERVICE_NAME_KEY,
    Attribute,
)
from flagrelay.metrics import (
    MetricsReader,
    MetricsRecorder,
    NoopMetricsRecorder,
    Resource,
    exponential_buckets,
    new_otel_recorder,
)

SVC_NAME = "mySvc"
N = 5
ATTRS = [Attribute(SERVICE_NAME_KEY, SVC_NAME)]


def _expected_http(service, url, method, code):
    return [
        Attribute(SERVICE_NAME_KEY, service),
        Attribute(HTTP_URL_KEY, url),
        Attribute(HTTP_METHOD_KEY, method),
        Attribute(HTTP_STATUS_CODE_KEY, code),
    ]


@pytest.mark.parametrize(
    "service, url, method, code",
    [
        ("", "", "", ""),
        ("myService", "#123", "POST", "300"),
        ("!@#$%^&*()_+|}{[];',./<>", "", "", ""),
    ],
    ids=["empty attributes", "some values", "special chars"],
)
def test_http_attributes(service, url, method, code):
    rec = MetricsRecorder()
    assert rec.http_attributes(service, url, method, code) == _expected_http(service, url, method, code)


def _make(reader):
    return new_otel_recorder(reader, Resource("testSchema"), SVC_NAME)


def test_new_otel_recorder_creates_all_instruments():
    reader = MetricsReader()
    rec = _make(reader)
    rec.http_request_duration(0.1, ATTRS)
    rec.http_response_size(100, ATTRS)
    rec.in_flight_request_start(ATTRS)
    rec.impressions("reason", "variant", "key")
    rec.reasons("key", "reason", None)
    names = {m.name for m in reader.collect().scope_metrics[0].metrics}
    assert names == {
        "http.server.duration",
        "http.server.response.size",
        "http.server.active_requests",
        "feature_flag.flagd.impression",
        "feature_flag.flagd.evaluation.reason",
    }


def _duration(rec):
    for _ in range(N):
        rec.http_request_duration(10, ATTRS)


def _size(rec):
    for _ in range(N):
        rec.http_response_size(100, ATTRS)


def _in_flight(rec):
    for _ in range(N):
        rec.in_flight_request_start(ATTRS)
        rec.in_flight_request_end(ATTRS)


def _impressions(rec):
    for _ in range(N):
        rec.impressions("reason", "variant", "key")


def _reasons(rec):
    for _ in range(N):
        rec.reasons("keyA", "reason", None)
    for _ in range(N):
        rec.reasons("keyB", "error", RuntimeError("err not found"))


def _record_evaluations(rec):
    for _ in range(N):
        rec.record_evaluation(None, "reason", "variant", "key")
    for _ in range(N):
        rec.record_evaluation(RuntimeError("general"), "error", "variant", "key")
    for _ in range(N):
        rec.record_evaluation(RuntimeError("not found"), "error", "variant", "key")


@pytest.mark.parametrize(
    "action, metrics_len",
    [
        (_duration, 1),
        (_size, 1),
        (_in_flight, 1),
        (_impressions, 1),
        (_reasons, 1),
        (_record_evaluations, 2),
    ],
    ids=["HTTPRequestDuration", "HTTPResponseSize", "InFlightRequestStart", "Impressions", "Reasons", "RecordEvaluations"],
)
def test_metrics(action, metrics_len):
    reader = MetricsReader()
    action(_make(reader))
    data = reader.collect()
    assert len(data.scope_metrics) == 1
    scope_metrics = data.scope_metrics[0]
    assert scope_metrics.scope == SVC_NAME
    assert len(scope_metrics.metrics) == metrics_len
    assert data.resource.schema_url == "testSchema"


def test_response_size_histogram_uses_exponential_buckets():
    reader = MetricsReader()
    _size(_make(reader))
    (metric,) = reader.collect().scope_metrics[0].metrics
    (point,) = metric.points.values()
    assert point.count == N
    assert point.total == 500.0
    assert point.boundaries[0] == 100.0
    assert point.bucket_counts[0] == N
    assert metric.unit == "By"


def test_duration_histogram_accepts_timedelta():
    reader = MetricsReader()
    rec = _make(reader)
    rec.http_request_duration(timedelta(milliseconds=300), ATTRS)
    (metric,) = reader.collect().scope_metrics[0].metrics
    (point,) = metric.points.values()
    assert point.count == 1
    assert point.total == pytest.approx(0.3)
    # 0.25 < 0.3 <= 0.5
    assert point.bucket_counts[6] == 1
    assert metric.unit == "s"


def test_in_flight_counter_returns_to_zero():
    reader = MetricsReader()
    _in_flight(_make(reader))
    (metric,) = reader.collect().scope_metrics[0].metrics
    assert list(metric.points.values()) == [0]


def test_reasons_record_key_only_on_success():
    reader = MetricsReader()
    _reasons(_make(reader))
    (metric,) = reader.collect().scope_metrics[0].metrics
    assert len(metric.points) == 2
    keys = {a.key: a.value for attrs in metric.points for a in attrs if a.key == FEATURE_FLAG_KEY_KEY}
    assert keys == {FEATURE_FLAG_KEY_KEY: "keyA"}
    errors = [a.value for attrs in metric.points for a in attrs if a.key == EXCEPTION_TYPE_KEY]
    assert errors == ["err not found"]
    assert sorted(metric.points.values()) == [N, N]


def test_collect_unregistered_reader_raises():
    with pytest.raises(RuntimeError):
        MetricsReader().collect()


def test_reader_cannot_be_registered_twice():
    reader = MetricsReader()
    _make(reader)
    with pytest.raises(RuntimeError):
        _make(reader)


def test_exponential_buckets_values():
    assert exponential_buckets(100, 10, 8) == [1e2, 1e3, 1e4, 1e5, 1e6, 1e7, 1e8, 1e9]


@pytest.mark.parametrize("start, factor, count", [(100, 10, 0), (0, 10, 3), (100, 1, 3)])
def test_exponential_buckets_rejects_bad_arguments(start, factor, count):
    with pytest.raises(ValueError):
        exponential_buckets(start, factor, count)


def test_noop_http_attributes_empty():
    assert NoopMetricsRecorder().http_attributes("", "", "", "") == []


def test_noop_recorder_discards_everything():
    no = NoopMetricsRecorder()
    results = [
        no.http_request_duration(0, None),
        no.http_response_size(0, None),
        no.in_flight_request_start(None),
        no.in_flight_request_end(None),
        no.record_evaluation(None, "", "", ""),
        no.impressions("", "", ""),
    ]
    assert results == [None] * 6