"""Structured event logging for bomgrid.

Provides a grid event schema, a filesystem NDJSON sink, and safe emit
helpers that never raise uncaught exceptions.
"""

from bomgrid.logging.events import (
    EventLevel,
    EventType,
    GridEvent,
    emit,
    emit_error,
    emit_info,
    emit_warning,
    make_mutation_event,
    redact_context,
    set_log_dir,
)
from bomgrid.logging.sink import EventSink

__all__ = [
    "EventLevel",
    "EventSink",
    "EventType",
    "GridEvent",
    "emit",
    "emit_error",
    "emit_info",
    "emit_warning",
    "make_mutation_event",
    "redact_context",
    "set_log_dir",
]
