"""
Observability Package — logging setup + stage tracing

Provides:
  configure_logging — worker log format / level
  TracingConfig     — optional OTEL exporter initialisation
  traced            — decorator for timing async pipeline stages
"""

from doc_ingest.observability.logging import configure_logging
from doc_ingest.observability.tracing import TracingConfig, traced

__all__ = ["configure_logging", "TracingConfig", "traced"]
