"""OpenTelemetry tracing for storage operations.

Spans carry only safe attributes: locators are exported as SHA256 hashes and
filesystem paths, bucket keys and content never appear in span attributes.
"""

from __future__ import annotations

import functools
import hashlib
import logging
from collections.abc import Callable
from typing import Any, TypeVar, cast

from opentelemetry import trace

from tierstore.models import StoredObject, VersionRecord
from tierstore.observability.tracing import is_tracing_enabled

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def locator_digest(locator_id: str) -> str:
    """Return the SHA256 hex digest used to correlate a locator in spans."""
    return hashlib.sha256(locator_id.encode("utf-8")).hexdigest()


def traced_storage_operation(operation: str) -> Callable[[F], F]:
    """Decorator to trace a backend operation with OpenTelemetry.

    The decorated method must take the locator id as its first argument.

    Args:
        operation: Operation name (e.g., "write", "read", "list_versions").

    Returns:
        Decorated function that emits spans when tracing is enabled.
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(self: Any, locator_id: str, *args: Any, **kwargs: Any) -> Any:
            if not is_tracing_enabled():
                return func(self, locator_id, *args, **kwargs)

            tracer = trace.get_tracer("tierstore.storage")
            with tracer.start_as_current_span(f"tierstore.storage.{operation}") as span:
                span.set_attribute("tierstore.locator_sha256", locator_digest(locator_id))
                span.set_attribute("storage.backend", getattr(self, "backend_name", "unknown"))
                if kwargs.get("version_id") is not None:
                    span.set_attribute("tierstore.version_id", kwargs["version_id"])

                try:
                    result = func(self, locator_id, *args, **kwargs)
                except Exception as e:
                    span.set_attribute("error", True)
                    span.set_attribute("error.type", type(e).__name__)
                    raise

                if result is not None:
                    _add_result_attributes(span, result, operation)
                return result

        return cast(F, wrapper)

    return decorator


def _add_result_attributes(span: Any, result: Any, operation: str) -> None:
    """Add size, version and etag attributes derived from an operation result."""
    try:
        envelope: StoredObject | None = None
        if isinstance(result, StoredObject):
            envelope = result
        elif isinstance(result, tuple) and len(result) == 2 and isinstance(
            result[1], VersionRecord
        ):
            span.set_attribute("tierstore.version_id", result[0])
            span.set_attribute("tierstore.object_size_bytes", result[1].size)

        if envelope is not None:
            span.set_attribute("tierstore.object_size_bytes", envelope.size)
            if envelope.version_id:
                span.set_attribute("tierstore.version_id", envelope.version_id)
            if envelope.etag:
                span.set_attribute("tierstore.etag", envelope.etag)

        if isinstance(result, bytes):
            span.set_attribute("tierstore.object_size_bytes", len(result))

        if operation == "list_versions" and isinstance(result, list):
            span.set_attribute("tierstore.version_count", len(result))

    except Exception as e:
        logger.debug("Failed to add result attributes to span: %s", e)
