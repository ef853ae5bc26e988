"""Semantic-convention attributes attached to telemetry data."""

from __future__ import annotations

from dataclasses import dataclass

PROVIDER_NAME = "flagd"

SERVICE_NAME_KEY = "service.name"
SERVICE_VERSION_KEY = "service.version"
HTTP_URL_KEY = "http.url"
HTTP_METHOD_KEY = "http.method"
HTTP_STATUS_CODE_KEY = "http.status_code"
FEATURE_FLAG_KEY_KEY = "feature_flag.key"
FEATURE_FLAG_VARIANT_KEY = "feature_flag.variant"
FEATURE_FLAG_PROVIDER_NAME_KEY = "feature_flag.provider_name"
FEATURE_FLAG_REASON_KEY = "feature_flag.reason"
EXCEPTION_TYPE_KEY = "ExceptionTypeKeyName"


@dataclass(frozen=True)
class Attribute:
    """A single key/value pair describing a measurement or a resource."""

    key: str
    value: str | int | float | bool


def semconv_feature_flag_attributes(ff_key: str, ff_variant: str) -> list[Attribute]:
    """Feature flag attributes that follow the semantic conventions."""
    return [
        Attribute(FEATURE_FLAG_KEY_KEY, ff_key),
        Attribute(FEATURE_FLAG_VARIANT_KEY, ff_variant),
        Attribute(FEATURE_FLAG_PROVIDER_NAME_KEY, PROVIDER_NAME),
    ]


def feature_flag_reason(val: str) -> Attribute:
    """Attribute holding the reason of a flag evaluation."""
    return Attribute(FEATURE_FLAG_REASON_KEY, val)


def exception_type(val: str) -> Attribute:
    """Attribute holding the error that ended a flag evaluation."""
    return Attribute(EXCEPTION_TYPE_KEY, val)