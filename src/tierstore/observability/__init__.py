"""Tierstore observability module.

Provides the OpenTelemetry tracing baseline used by the storage backends.
"""

from tierstore.observability.tracing import configure_tracing, is_tracing_enabled

__all__ = ["configure_tracing", "is_tracing_enabled"]
