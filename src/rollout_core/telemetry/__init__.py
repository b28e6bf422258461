"""Telemetry for the rollout engine: tracing, structured logging and sanitization."""

from __future__ import annotations

from rollout_core.telemetry.logging import add_trace_context, configure_logging
from rollout_core.telemetry.sanitization import sanitize_error_message
from rollout_core.telemetry.tracing import create_span, get_tracer, set_tracer, traced

__all__ = [
    "add_trace_context",
    "configure_logging",
    "create_span",
    "get_tracer",
    "sanitize_error_message",
    "set_tracer",
    "traced",
]
