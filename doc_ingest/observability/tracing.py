"""
Observability Tracing — per-stage timing for the ingestion pipeline

Decorator `@traced(name)`:
  Instruments an async stage (extract, embed, upsert, ...) with wall-clock
  timing and error recording. It logs through Python logging, so it is
  always active; when OTEL_ENABLED=true an OpenTelemetry span is opened
  around the call as well.

Environment variables:
  OTEL_ENABLED=false
  OTEL_EXPORTER_OTLP_ENDPOINT=http://otel-collector:4318
"""

from __future__ import annotations

import contextlib
import functools
import logging
import os
import time
from typing import Any, Callable, Coroutine, TypeVar

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Coroutine[Any, Any, Any]])


# ---------------------------------------------------------------------------
# TracingConfig — initialise once per worker process
# ---------------------------------------------------------------------------

class TracingConfig:
    """
    Initialise the OTEL exporter from environment variables.

    Called from the Celery worker_process_init signal::

        from doc_ingest.observability.tracing import TracingConfig
        TracingConfig.init()
    """

    _initialised: bool = False
    _tracer: Any = None

    @classmethod
    def init(cls) -> None:
        if cls._initialised:
            return
        cls._initialised = True

        otel_enabled  = os.environ.get("OTEL_ENABLED", "false").lower() == "true"
        otel_endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT", "")

        if not otel_enabled or not otel_endpoint:
            logger.debug("OTEL tracing disabled")
            return

        try:
            from opentelemetry import trace                                       # type: ignore
            from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter  # type: ignore
            from opentelemetry.sdk.trace import TracerProvider                    # type: ignore
            from opentelemetry.sdk.trace.export import BatchSpanProcessor        # type: ignore

            provider = TracerProvider()
            provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otel_endpoint)))
            trace.set_tracer_provider(provider)
            cls._tracer = trace.get_tracer("doc_ingest")

            logger.info("OTEL tracing enabled | endpoint=%s", otel_endpoint)
        except ImportError:
            logger.warning(
                "opentelemetry-sdk / opentelemetry-exporter-otlp not installed. "
                "Run: pip install opentelemetry-sdk opentelemetry-exporter-otlp"
            )

    @classmethod
    def span(cls, name: str):
        if cls._tracer is None:
            return contextlib.nullcontext()
        return cls._tracer.start_as_current_span(name)


# ---------------------------------------------------------------------------
# @traced decorator
# ---------------------------------------------------------------------------

def traced(name: str | None = None) -> Callable[[F], F]:
    """
    Decorator that instruments an async function with timing and error logging.

    Usage::

        @traced("extract")
        async def extract(self, file_url: str) -> str:
            ...
    """
    def decorator(func: F) -> F:
        span_name = name or func.__qualname__

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            t0 = time.perf_counter()
            with TracingConfig.span(span_name):
                try:
                    result = await func(*args, **kwargs)
                except Exception as exc:
                    elapsed_ms = (time.perf_counter() - t0) * 1000
                    logger.error(
                        "trace | span=%s elapsed_ms=%.1f error=%s: %s",
                        span_name, elapsed_ms, type(exc).__name__, exc,
                    )
                    raise
            elapsed_ms = (time.perf_counter() - t0) * 1000
            logger.debug("trace | span=%s elapsed_ms=%.1f ok", span_name, elapsed_ms)
            return result

        return wrapper  # type: ignore[return-value]
    return decorator
