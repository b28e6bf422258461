"""OpenTelemetry tracing for the rollout engine.

All rollout spans come from one tracer, created on first use and shared by
every thread. If OpenTelemetry cannot provide it, a NoOpTracer takes its
place so tracing never stops a rollout.

create_span and @traced record failures the same way: the span status is
set to ERROR with a sanitized message, and ``exception.type`` and
``exception.message`` attributes are added. The exception always propagates.

Example:
    >>> with create_span("rollout.evaluate", attributes={"rollout.application": "t.a"}):
    ...     pass
"""

from __future__ import annotations

import functools
import threading
from collections.abc import Callable
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, ParamSpec, TypeVar, overload

import structlog
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode, Tracer

from rollout_core.telemetry.sanitization import sanitize_error_message

if TYPE_CHECKING:
    from collections.abc import Generator

    from opentelemetry.trace import Span

P = ParamSpec("P")
R = TypeVar("R")

logger = structlog.get_logger(__name__)

_TRACER_NAME = "rollout_core"

_tracer: Tracer | None = None
_lock = threading.Lock()


def get_tracer() -> Tracer:
    """The tracer used by all rollout spans, or a NoOpTracer if none can be created."""
    global _tracer

    tracer = _tracer
    if tracer is not None:
        return tracer
    with _lock:
        if _tracer is None:
            try:
                _tracer = trace.get_tracer(_TRACER_NAME)
            except Exception as e:
                logger.warning("tracer_unavailable", error=sanitize_error_message(str(e)))
                _tracer = trace.NoOpTracer()
        return _tracer


def set_tracer(tracer: Tracer | None) -> None:
    """Replace the rollout tracer (for testing). None creates a fresh one on next use."""
    global _tracer
    with _lock:
        _tracer = tracer


def _record_error(span: Span, error: Exception) -> None:
    sanitized = sanitize_error_message(str(error))
    span.set_status(Status(StatusCode.ERROR, sanitized))
    span.set_attribute("exception.type", type(error).__name__)
    span.set_attribute("exception.message", sanitized)


@contextmanager
def create_span(
    name: str,
    attributes: dict[str, Any] | None = None,
) -> Generator[Span, None, None]:
    """Create a span as a context manager.

    Args:
        name: The span name.
        attributes: Attributes to set on the span.

    Yields:
        The span, for setting further attributes.
    """
    tracer = get_tracer()
    with tracer.start_as_current_span(
        name,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        if attributes:
            for key, value in attributes.items():
                span.set_attribute(key, value)
        try:
            yield span
        except Exception as e:
            _record_error(span, e)
            raise


@overload
def traced(func: Callable[P, R]) -> Callable[P, R]: ...


@overload
def traced(
    *,
    name: str | None = None,
    attributes: dict[str, str] | None = None,
) -> Callable[[Callable[P, R]], Callable[P, R]]: ...


def traced(
    func: Callable[P, R] | None = None,
    *,
    name: str | None = None,
    attributes: dict[str, str] | None = None,
) -> Callable[P, R] | Callable[[Callable[P, R]], Callable[P, R]]:
    """Trace each call of the decorated function in its own span.

    Usable bare (``@traced``) or with arguments (``@traced(name="...")``).

    Args:
        func: The function, when used without parentheses.
        name: Span name. Defaults to the function name.
        attributes: Static attributes set on every span.

    Returns:
        The wrapped function.
    """

    def decorator(fn: Callable[P, R]) -> Callable[P, R]:
        span_name = name if name is not None else fn.__name__

        @functools.wraps(fn)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            with create_span(span_name, attributes=dict(attributes) if attributes else None):
                return fn(*args, **kwargs)

        return wrapper

    if func is not None:
        return decorator(func)
    return decorator


__all__ = ["create_span", "get_tracer", "set_tracer", "traced"]
