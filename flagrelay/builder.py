"""Builds metric readers, recorders, trace providers and resources from configuration."""

from __future__ import annotations

import logging
import platform
import socket
from dataclasses import dataclass

from .attributes import SERVICE_NAME_KEY, SERVICE_VERSION_KEY, Attribute
from .metrics import (
    MetricsReader,
    MetricsRecorder,
    Resource,
    _set_error_handler,
    new_otel_recorder,
)

METRICS_EXPORTER_OTEL = "otel"
EXPORT_INTERVAL = 2.0


@dataclass(frozen=True)
class TelemetryConfig:
    """Telemetry settings taken from start-up arguments."""

    metrics_exporter: str = ""
    collector_target: str = ""


@dataclass(frozen=True)
class TraceProvider:
    """Trace provider that samples every span and sends it to a collector."""

    collector_target: str
    resource: Resource
    sampler: str = "always_on"
    propagators: tuple[str, ...] = ("tracecontext", "baggage")


@dataclass(frozen=True)
class _TraceInterceptor:
    trust_remote: bool = True


_tracer_provider: TraceProvider | None = None


def register_error_handling(logger: logging.Logger) -> None:
    """Send telemetry errors to ``logger`` at debug level."""

    def handle(err: BaseException) -> None:
        logger.debug("OpenTelemetry Error: %s", err, extra={"component": "otel"})

    _set_error_handler(handle)


def build_metric_reader(cfg: TelemetryConfig) -> MetricsReader:
    """Build the metric reader the configuration asks for."""
    if not cfg.metrics_exporter:
        return MetricsReader(kind="prometheus")
    if cfg.metrics_exporter != METRICS_EXPORTER_OTEL:
        raise ValueError(
            f"provided metrics operator {cfg.metrics_exporter} is not supported. "
            f"currently only support {METRICS_EXPORTER_OTEL}"
        )
    if not cfg.collector_target:
        raise ValueError(
            f"metric exporter is set({cfg.metrics_exporter}) without providing otel collector target. "
            "collector target is required for this option"
        )
    return MetricsReader(kind=METRICS_EXPORTER_OTEL, target=cfg.collector_target, export_interval=EXPORT_INTERVAL)


def build_resource_for(service_name: str, service_version: str) -> Resource:
    """Describe this process, its host and the named service."""
    return Resource(
        attributes=(
            Attribute("os.type", platform.system().lower()),
            Attribute("os.description", platform.platform()),
            Attribute("host.name", socket.gethostname()),
            Attribute("process.runtime.name", platform.python_implementation()),
            Attribute("process.runtime.version", platform.python_version()),
            Attribute("telemetry.sdk.name", "flagrelay"),
            Attribute("telemetry.sdk.language", "python"),
            Attribute(SERVICE_NAME_KEY, service_name),
            Attribute(SERVICE_VERSION_KEY, service_version),
        )
    )


def build_metrics_recorder(svc_name: str, svc_version: str, config: TelemetryConfig) -> MetricsRecorder:
    """Build a metrics recorder from the configuration."""
    try:
        reader = build_metric_reader(config)
    except ValueError as err:
        raise ValueError(f"failed to setup metric reader: {err}") from err
    resource = build_resource_for(svc_name, svc_version)
    return new_otel_recorder(reader, resource, svc_name)


def build_trace_provider(
    logger: logging.Logger, svc: str, svc_version: str, cfg: TelemetryConfig
) -> TraceProvider | None:
    """Register and return a trace provider, or return None when no collector is configured."""
    global _tracer_provider
    if not cfg.collector_target:
        logger.debug(
            "skipping trace provider setup as collector target is not set. "
            "Traces will use NoopTracerProvider provider and propagator will use no-Op TextMapPropagator"
        )
        return None
    provider = TraceProvider(cfg.collector_target, build_resource_for(svc, svc_version))
    _tracer_provider = provider
    return provider


def build_connect_options(cfg: TelemetryConfig) -> list[_TraceInterceptor]:
    """Handler options: a tracing interceptor when a collector is configured."""
    if cfg.collector_target:
        return [_TraceInterceptor(trust_remote=True)]
    return []