"""OpenTelemetry spans for refresh passes, exported to Uptrace when configured.

Nothing is exported unless ``UPTRACE_DSN`` is set; until then every span is a
no-op object with the same ``set_attribute``/``record_exception`` surface.
"""

import logging
import os
from contextlib import contextmanager
from typing import Any, Iterator, Mapping

import uptrace
from opentelemetry import trace
from opentelemetry.instrumentation.requests import RequestsInstrumentor

from http_utils import redact_url

SERVICE_NAME = "workshop-mirror"

_state = {"configured": False, "enabled": False}


class _NoopSpan:
    def set_attribute(self, _key: str, _value: Any) -> None:
        return

    def record_exception(self, _exc: BaseException) -> None:
        return


def tracing_enabled() -> bool:
    return _state["enabled"]


def set_attributes(span: Any, attributes: Mapping[str, Any] | None) -> None:
    for key, value in (attributes or {}).items():
        if value is None:
            continue
        span.set_attribute(key, value)


@contextmanager
def start_span(name: str, attributes: Mapping[str, Any] | None = None) -> Iterator[Any]:
    if not _state["enabled"]:
        yield _NoopSpan()
        return
    with trace.get_tracer(SERVICE_NAME).start_as_current_span(name) as span:
        set_attributes(span, attributes)
        yield span


def init_telemetry(service_version: str = "") -> bool:
    if _state["configured"]:
        return _state["enabled"]
    _state["configured"] = True

    dsn = os.environ.get("UPTRACE_DSN", "").strip()
    if not dsn:
        logging.info("UPTRACE_DSN is not set, tracing is disabled")
        return False

    try:
        uptrace.configure_opentelemetry(
            dsn=dsn,
            service_name=os.environ.get("OTEL_SERVICE_NAME", SERVICE_NAME).strip(),
            service_version=os.environ.get("OTEL_SERVICE_VERSION", service_version).strip(),
            deployment_environment=os.environ.get("OTEL_DEPLOYMENT_ENVIRONMENT", "").strip(),
        )
        RequestsInstrumentor().instrument(request_hook=_redact_request_url)
    except (RuntimeError, ValueError, TypeError, AttributeError):
        logging.exception("Failed to initialize OpenTelemetry")
        return False

    _state["enabled"] = True
    logging.info("Tracing refresh passes to Uptrace")
    return True


def shutdown_telemetry() -> None:
    if not _state["enabled"]:
        return
    try:
        uptrace.shutdown()
    except (RuntimeError, ValueError, TypeError, AttributeError):
        logging.exception("Failed to flush OpenTelemetry spans")
    finally:
        _state["enabled"] = False


def _redact_request_url(span: Any, request_obj: Any) -> None:
    # Steam Web API keys travel in the query string.
    if span is None or not span.is_recording():
        return
    url = redact_url(str(getattr(request_obj, "url", "") or ""))
    span.set_attribute("http.url", url)
    span.set_attribute("url.full", url)
