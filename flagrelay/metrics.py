"""In-process metrics recording for HTTP traffic and flag evaluations."""

from __future__ import annotations

import bisect
import operator
import threading
from dataclasses import dataclass, replace
from datetime import timedelta
from enum import Enum
from itertools import accumulate, repeat
from typing import Callable, Iterable, Sequence

from .attributes import (
    FEATURE_FLAG_KEY_KEY,
    FEATURE_FLAG_PROVIDER_NAME_KEY,
    HTTP_METHOD_KEY,
    HTTP_STATUS_CODE_KEY,
    HTTP_URL_KEY,
    PROVIDER_NAME,
    SERVICE_NAME_KEY,
    Attribute,
    exception_type,
    feature_flag_reason,
    semconv_feature_flag_attributes,
)

HTTP_REQUEST_DURATION_METRIC = "http.server.duration"
HTTP_RESPONSE_SIZE_METRIC = "http.server.response.size"
HTTP_ACTIVE_REQUESTS_METRIC = "http.server.active_requests"
IMPRESSION_METRIC = f"feature_flag.{PROVIDER_NAME}.impression"
REASON_METRIC = f"feature_flag.{PROVIDER_NAME}.evaluation.reason"

# Bucket boundaries tailored for response times in seconds.
DEFAULT_DURATION_BUCKETS: tuple[float, ...] = (
    0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0,
)
# Boundaries used for histograms that have no view of their own.
DEFAULT_HISTOGRAM_BUCKETS: tuple[float, ...] = (
    0.0, 5.0, 10.0, 25.0, 50.0, 75.0, 100.0, 250.0, 500.0, 750.0,
    1000.0, 2500.0, 5000.0, 7500.0, 10000.0,
)


class _ErrorHook:
    """Holds the process-wide handler for telemetry errors."""

    def __init__(self) -> None:
        self.handler: Callable[[BaseException], None] | None = None
        self._lock = threading.Lock()

    def swap(
        self, handler: Callable[[BaseException], None] | None
    ) -> Callable[[BaseException], None] | None:
        with self._lock:
            previous, self.handler = self.handler, handler
        return previous


_ERROR_HOOK = _ErrorHook()


def _set_error_handler(
    handler: Callable[[BaseException], None] | None,
) -> Callable[[BaseException], None] | None:
    """Install ``handler`` for telemetry errors and return the one it replaces."""
    return _ERROR_HOOK.swap(handler)


def _report_error(err: BaseException) -> None:
    handler = _ERROR_HOOK.handler
    if handler is not None:
        handler(err)


def _attribute_set(attrs: Iterable[Attribute] | None) -> frozenset[Attribute]:
    by_key = {attr.key: attr for attr in attrs or ()}
    return frozenset(by_key.values())


def _seconds(duration: timedelta | float) -> float:
    if isinstance(duration, timedelta):
        return duration.total_seconds()
    return float(duration)


def exponential_buckets(start: float, factor: float, count: int) -> list[float]:
    """Return ``count`` boundaries, the first being ``start``, each ``factor`` times the last."""
    if count < 1:
        raise ValueError("exponential_buckets needs a positive count")
    if start <= 0:
        raise ValueError("exponential_buckets needs a positive start value")
    if factor <= 1:
        raise ValueError("exponential_buckets needs a factor greater than 1")
    return list(accumulate(repeat(float(factor), count - 1), operator.mul, initial=float(start)))


@dataclass(frozen=True)
class Resource:
    """The entity producing telemetry."""

    schema_url: str = ""
    attributes: tuple[Attribute, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "attributes", tuple(self.attributes))

    def get(self, key: str, default: object = None) -> object:
        """Value of the attribute with ``key``, or ``default``."""
        for attr in self.attributes:
            if attr.key == key:
                return attr.value
        return default


class _Kind(Enum):
    COUNTER = "counter"
    UP_DOWN_COUNTER = "up_down_counter"
    HISTOGRAM = "histogram"


@dataclass
class _HistogramPoint:
    boundaries: tuple[float, ...]
    bucket_counts: list[int]
    count: int = 0
    total: float = 0.0
    minimum: float | None = None
    maximum: float | None = None

    def record(self, value: float) -> None:
        self.bucket_counts[bisect.bisect_left(self.boundaries, value)] += 1
        self.count += 1
        self.total += value
        self.minimum = value if self.minimum is None else min(self.minimum, value)
        self.maximum = value if self.maximum is None else max(self.maximum, value)

    def copy(self) -> _HistogramPoint:
        return replace(self, bucket_counts=list(self.bucket_counts))


@dataclass
class _Metric:
    name: str
    description: str
    unit: str
    kind: _Kind
    points: dict[frozenset[Attribute], object]


@dataclass
class _ScopeMetrics:
    scope: str
    metrics: list[_Metric]


@dataclass
class _ResourceMetrics:
    resource: Resource
    scope_metrics: list[_ScopeMetrics]


class _Instrument:
    kind: _Kind

    def __init__(self, name: str, description: str, unit: str) -> None:
        self.name = name
        self.description = description
        self.unit = unit
        self._points: dict[frozenset[Attribute], object] = {}
        self._lock = threading.Lock()

    def _copy_point(self, point: object) -> object:
        return point

    def snapshot(self) -> _Metric | None:
        with self._lock:
            if not self._points:
                return None
            points = {k: self._copy_point(v) for k, v in self._points.items()}
        return _Metric(self.name, self.description, self.unit, self.kind, points)


class _Counter(_Instrument):
    kind = _Kind.COUNTER

    def add(self, value: int, attrs: Iterable[Attribute] | None = None) -> None:
        if value < 0:
            _report_error(ValueError(f"counter {self.name} cannot be decremented"))
            return
        key = _attribute_set(attrs)
        with self._lock:
            self._points[key] = self._points.get(key, 0) + value


class _UpDownCounter(_Instrument):
    kind = _Kind.UP_DOWN_COUNTER

    def add(self, value: int, attrs: Iterable[Attribute] | None = None) -> None:
        key = _attribute_set(attrs)
        with self._lock:
            self._points[key] = self._points.get(key, 0) + value


class _Histogram(_Instrument):
    kind = _Kind.HISTOGRAM

    def __init__(self, name: str, description: str, unit: str, boundaries: Sequence[float]) -> None:
        super().__init__(name, description, unit)
        self.boundaries = tuple(boundaries)

    def _copy_point(self, point: object) -> object:
        assert isinstance(point, _HistogramPoint)
        return point.copy()

    def record(self, value: float, attrs: Iterable[Attribute] | None = None) -> None:
        key = _attribute_set(attrs)
        with self._lock:
            point = self._points.get(key)
            if point is None:
                point = _HistogramPoint(self.boundaries, [0] * (len(self.boundaries) + 1))
                self._points[key] = point
            assert isinstance(point, _HistogramPoint)
            point.record(value)


class _Meter:
    def __init__(self, name: str, provider: _MeterProvider) -> None:
        self.name = name
        self.provider = provider
        self._instruments: dict[str, _Instrument] = {}
        self._lock = threading.Lock()

    def _get_or_create(self, name: str, factory: Callable[[], _Instrument]) -> _Instrument:
        with self._lock:
            instrument = self._instruments.get(name)
            if instrument is None:
                instrument = factory()
                self._instruments[name] = instrument
            return instrument

    def counter(self, name: str, description: str, unit: str) -> _Counter:
        instrument = self._get_or_create(name, lambda: _Counter(name, description, unit))
        assert isinstance(instrument, _Counter)
        return instrument

    def up_down_counter(self, name: str, description: str, unit: str) -> _UpDownCounter:
        instrument = self._get_or_create(name, lambda: _UpDownCounter(name, description, unit))
        assert isinstance(instrument, _UpDownCounter)
        return instrument

    def histogram(self, name: str, description: str, unit: str) -> _Histogram:
        boundaries = self.provider.boundaries_for(name, self.name)
        instrument = self._get_or_create(
            name, lambda: _Histogram(name, description, unit, boundaries)
        )
        assert isinstance(instrument, _Histogram)
        return instrument

    def snapshot(self) -> _ScopeMetrics | None:
        with self._lock:
            instruments = list(self._instruments.values())
        metrics = [m for m in (i.snapshot() for i in instruments) if m is not None]
        return _ScopeMetrics(self.name, metrics) if metrics else None


class _MeterProvider:
    def __init__(
        self,
        reader: MetricsReader | None = None,
        resource: Resource | None = None,
        views: dict[tuple[str, str], Sequence[float]] | None = None,
    ) -> None:
        self.resource = resource if resource is not None else Resource()
        self._views = {k: tuple(v) for k, v in (views or {}).items()}
        self._meters: dict[str, _Meter] = {}
        self._lock = threading.Lock()
        if reader is not None:
            reader._register(self)

    def boundaries_for(self, instrument: str, scope: str) -> tuple[float, ...]:
        return self._views.get((instrument, scope), DEFAULT_HISTOGRAM_BUCKETS)

    def meter(self, name: str) -> _Meter:
        with self._lock:
            meter = self._meters.get(name)
            if meter is None:
                meter = _Meter(name, self)
                self._meters[name] = meter
            return meter

    def collect(self) -> _ResourceMetrics:
        with self._lock:
            meters = list(self._meters.values())
        scopes = [s for s in (m.snapshot() for m in meters) if s is not None]
        return _ResourceMetrics(self.resource, scopes)


class MetricsReader:
    """Reads the measurements of the meter provider it is registered with."""

    def __init__(
        self,
        kind: str = "manual",
        target: str = "",
        export_interval: float | None = None,
        exporter: Callable[[_ResourceMetrics], None] | None = None,
    ) -> None:
        self.kind = kind
        self.target = target
        self.export_interval = export_interval
        self._exporter = exporter
        self._provider: _MeterProvider | None = None

    def _register(self, provider: _MeterProvider) -> None:
        if self._provider is not None:
            raise RuntimeError("reader is already registered with a meter provider")
        self._provider = provider

    def collect(self) -> _ResourceMetrics:
        """Gather current measurements and hand them to the exporter, if any."""
        if self._provider is None:
            raise RuntimeError("reader is not registered with a meter provider")
        data = self._provider.collect()
        if self._exporter is not None:
            try:
                self._exporter(data)
            except Exception as err:  # exporter failures must not break collection
                _report_error(err)
        return data


class NoopMetricsRecorder:
    """A recorder that drops every measurement, keeping only a count of calls."""

    def __init__(self) -> None:
        self.calls = 0
        self._lock = threading.Lock()

    def _drop(self) -> None:
        with self._lock:
            self.calls += 1

    def http_attributes(self, svc_name: str, url: str, method: str, code: str) -> list[Attribute]:
        self._drop()
        return []

    def http_request_duration(self, duration: timedelta | float, attrs: Sequence[Attribute] | None) -> None:
        self._drop()

    def http_response_size(self, size_bytes: int, attrs: Sequence[Attribute] | None) -> None:
        self._drop()

    def in_flight_request_start(self, attrs: Sequence[Attribute] | None) -> None:
        self._drop()

    def in_flight_request_end(self, attrs: Sequence[Attribute] | None) -> None:
        self._drop()

    def record_evaluation(self, err: BaseException | None, reason: str, variant: str, key: str) -> None:
        self._drop()

    def impressions(self, reason: str, variant: str, key: str) -> None:
        self._drop()


class MetricsRecorder:
    """Records HTTP and flag evaluation measurements on a meter."""

    def __init__(self, meter: _Meter | None = None) -> None:
        if meter is None:
            meter = _MeterProvider().meter("")
        self.meter = meter
        self._request_duration = meter.histogram(
            HTTP_REQUEST_DURATION_METRIC,
            "Measures the duration of inbound HTTP requests.",
            "s",
        )
        self._response_size = meter.histogram(
            HTTP_RESPONSE_SIZE_METRIC,
            "Measures the size of HTTP request messages (compressed).",
            "By",
        )
        self._requests_in_flight = meter.up_down_counter(
            HTTP_ACTIVE_REQUESTS_METRIC,
            "Measures the number of concurrent HTTP requests that are currently in-flight.",
            "{request}",
        )
        self._impressions = meter.counter(
            IMPRESSION_METRIC,
            "Measures the number of evaluations for a given flag.",
            "{impression}",
        )
        self._reasons = meter.counter(
            REASON_METRIC,
            "Measures the number of evaluations for a given reason.",
            "{reason}",
        )

    def http_attributes(self, svc_name: str, url: str, method: str, code: str) -> list[Attribute]:
        return [
            Attribute(SERVICE_NAME_KEY, svc_name),
            Attribute(HTTP_URL_KEY, url),
            Attribute(HTTP_METHOD_KEY, method),
            Attribute(HTTP_STATUS_CODE_KEY, code),
        ]

    def http_request_duration(self, duration: timedelta | float, attrs: Sequence[Attribute] | None) -> None:
        """Record a request duration, given as a timedelta or in seconds."""
        self._request_duration.record(_seconds(duration), attrs)

    def http_response_size(self, size_bytes: int, attrs: Sequence[Attribute] | None) -> None:
        self._response_size.record(float(size_bytes), attrs)

    def in_flight_request_start(self, attrs: Sequence[Attribute] | None) -> None:
        self._requests_in_flight.add(1, attrs)

    def in_flight_request_end(self, attrs: Sequence[Attribute] | None) -> None:
        self._requests_in_flight.add(-1, attrs)

    def record_evaluation(self, err: BaseException | None, reason: str, variant: str, key: str) -> None:
        """Count an impression for a successful evaluation and always count its reason."""
        if err is None:
            self.impressions(reason, variant, key)
        self.reasons(key, reason, err)

    def impressions(self, reason: str, variant: str, key: str) -> None:
        attrs = semconv_feature_flag_attributes(key, variant)
        attrs.append(feature_flag_reason(reason))
        self._impressions.add(1, attrs)

    def reasons(self, key: str, reason: str, err: BaseException | None) -> None:
        attrs = [
            Attribute(FEATURE_FLAG_PROVIDER_NAME_KEY, PROVIDER_NAME),
            feature_flag_reason(reason),
        ]
        if err is None:
            # the flag key is recorded only for successful evaluations
            attrs.append(Attribute(FEATURE_FLAG_KEY_KEY, key))
        else:
            attrs.append(exception_type(str(err)))
        self._reasons.add(1, attrs)


def new_otel_recorder(reader: MetricsReader, resource: Resource, service_name: str) -> MetricsRecorder:
    """Create a recorder whose measurements are read by ``reader``."""
    views = {
        (HTTP_REQUEST_DURATION_METRIC, service_name): DEFAULT_DURATION_BUCKETS,
        # eight exponential buckets starting from 100 bytes
        (HTTP_RESPONSE_SIZE_METRIC, service_name): exponential_buckets(100, 10, 8),
    }
    provider = _MeterProvider(reader, resource, views)
    return MetricsRecorder(provider.meter(service_name))