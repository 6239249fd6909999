"""Grid event schema and module-level emit helpers.

All timestamps use UTC ISO-8601 with ``Z`` suffix.  The ``emit()``
family of functions is safe to call from any context -- failures are
swallowed and printed to stderr.
"""

from __future__ import annotations

import re
import sys
import time
import traceback
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class EventLevel(str, Enum):
    info = "info"
    warning = "warning"
    error = "error"


class EventType(str, Enum):
    # Grid lifecycle
    seed_loaded = "seed_loaded"

    # Structural mutations
    row_inserted = "row_inserted"
    rows_deleted = "rows_deleted"
    subtree_moved = "subtree_moved"

    # Cell edits
    cell_updated = "cell_updated"
    cells_pasted = "cells_pasted"

    # Recoverable conditions
    invalid_reference = "invalid_reference"
    non_numeric_input = "non_numeric_input"
    circular_dependency = "circular_dependency"
    structural_violation = "structural_violation"
    formula_error = "formula_error"


# ---------------------------------------------------------------------------
# Secret redaction
# ---------------------------------------------------------------------------

_SENSITIVE_KEY_RE = re.compile(
    r"(password|passwd|secret|token|api_key|apikey|authorization|cookie|session)",
    re.IGNORECASE,
)

_MAX_VALUE_LEN = 256


def redact_context(context: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of *context* with sensitive values redacted.

    Rules:
    - Keys matching sensitive patterns have their values replaced with
      ``"[REDACTED]"``.
    - String values longer than 256 chars are truncated.
    - Nested dicts and lists are processed recursively.
    """
    return _redact_dict(context)


def _redact_dict(d: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for k, v in d.items():
        if _SENSITIVE_KEY_RE.search(str(k)):
            out[k] = "[REDACTED]"
        else:
            out[k] = _redact_value(v)
    return out


def _redact_value(v: Any) -> Any:
    if isinstance(v, dict):
        return _redact_dict(v)
    if isinstance(v, (list, tuple)):
        return [_redact_value(item) for item in v]
    if isinstance(v, str) and len(v) > _MAX_VALUE_LEN:
        return v[:_MAX_VALUE_LEN] + "...[truncated]"
    return v


# ---------------------------------------------------------------------------
# Attribution rules
# ---------------------------------------------------------------------------

_EVENT_REQUIRED_KEYS: dict[str, set[str]] = {
    EventType.seed_loaded.value: {"version", "row_count"},
    EventType.row_inserted.value: {"version", "row_id"},
    EventType.rows_deleted.value: {"version", "row_ids"},
    EventType.subtree_moved.value: {"version", "row_ids", "target_id"},
    EventType.cell_updated.value: {"version", "row_id", "column"},
    EventType.cells_pasted.value: {"version"},
    EventType.invalid_reference.value: {"operation"},
    EventType.non_numeric_input.value: {"column"},
    EventType.circular_dependency.value: {"cells"},
    EventType.structural_violation.value: {"operation"},
    EventType.formula_error.value: set(),
}


def _validate_attribution(event: GridEvent) -> GridEvent:
    """Check required context keys; downgrade to warning if missing."""
    raw_type = event.event_type.value if isinstance(event.event_type, EventType) else event.event_type
    required = _EVENT_REQUIRED_KEYS.get(raw_type, set())
    if not required:
        return event
    missing = required - set(event.context.keys())
    if missing:
        ctx = dict(event.context)
        ctx["_missing_attribution"] = sorted(missing)
        return event.model_copy(update={"level": EventLevel.warning, "context": ctx})
    return event


def make_mutation_event(
    event_type: EventType,
    level: EventLevel,
    message: str,
    *,
    version: int,
    row_id: int | None = None,
    row_ids: list[int] | None = None,
    error_code: str | None = None,
    extra: dict[str, Any] | None = None,
) -> GridEvent:
    """Build an event with guaranteed snapshot-version attribution."""
    ctx: dict[str, Any] = {"version": version}
    if row_id is not None:
        ctx["row_id"] = row_id
    if row_ids is not None:
        ctx["row_ids"] = list(row_ids)
    if extra:
        ctx.update(extra)
    return GridEvent(
        level=level,
        event_type=event_type,
        message=message,
        context=ctx,
        error_code=error_code,
    )


# ---------------------------------------------------------------------------
# Event model
# ---------------------------------------------------------------------------


def _utc_now() -> str:
    """Return current UTC timestamp in ISO-8601 with Z suffix."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class GridEvent(BaseModel):
    """A single structured log event."""

    schema_version: int = 1
    ts: str = Field(default_factory=_utc_now)
    level: EventLevel
    event_type: EventType
    context: dict[str, Any] = Field(default_factory=dict)
    message: str = ""
    error_code: str | None = None


# ---------------------------------------------------------------------------
# Module-level sink reference
# ---------------------------------------------------------------------------

# Set by ``set_log_dir``; ``None`` means events are discarded.
_sink: Any = None  # EventSink | None


def set_log_dir(log_dir: Path | str | None, config: dict[str, Any] | None = None) -> None:
    """Configure the module-level event sink.

    Events are appended under ``<log_dir>/logs/``.  Passing ``None``
    disables the sink again.  If this is never called, ``emit()``
    silently discards events.

    ``logging_fsync`` and ``logging_tail_bytes`` are read from *config*
    when given, otherwise from ``bomgrid.yaml`` in *log_dir*.
    """
    global _sink
    if log_dir is None:
        _sink = None
        return

    from bomgrid.logging.sink import EventSink

    log_dir = Path(log_dir)
    fsync = False
    tail_bytes = None
    try:
        if config is None:
            from bomgrid.config import load_grid_config

            config = load_grid_config(log_dir)
        fsync = bool(config.get("logging_fsync", False))
        tb = config.get("logging_tail_bytes")
        if tb is not None:
            tail_bytes = int(tb)
    except Exception:
        _stderr_warning(f"could not read logging options: {traceback.format_exc()}")

    _sink = EventSink(log_dir, fsync=fsync, tail_bytes=tail_bytes)


def _get_sink() -> Any:
    """Return the module-level sink, or None."""
    return _sink


# ---------------------------------------------------------------------------
# Rate-limited stderr warnings
# ---------------------------------------------------------------------------

_last_stderr_ts: float = 0.0
_STDERR_INTERVAL_SECS = 60.0


def _stderr_warning(msg: str) -> None:
    """Print a warning to stderr, rate-limited to one per 60 seconds."""
    global _last_stderr_ts
    now = time.monotonic()
    if now - _last_stderr_ts < _STDERR_INTERVAL_SECS:
        return
    _last_stderr_ts = now
    try:
        print(f"[bomgrid] {msg}", file=sys.stderr)
    except Exception:
        pass


# ---------------------------------------------------------------------------
# Safe emit helpers
# ---------------------------------------------------------------------------


def emit(event: GridEvent) -> None:
    """Write an event to the event log.

    **Never raises.**  On failure, prints a rate-limited warning to stderr.

    Applies secret redaction and attribution validation before writing.
    """
    try:
        sink = _get_sink()
        if sink is None:
            return
        event = event.model_copy(update={"context": redact_context(event.context)})
        event = _validate_attribution(event)
        sink.write(event)
    except Exception:
        _stderr_warning(f"logging failed: {traceback.format_exc()}")


def emit_info(
    event_type: EventType,
    message: str,
    context: dict[str, Any] | None = None,
) -> None:
    """Convenience: emit an info-level event."""
    emit(
        GridEvent(
            level=EventLevel.info,
            event_type=event_type,
            message=message,
            context=context or {},
        )
    )


def emit_warning(
    event_type: EventType,
    message: str,
    context: dict[str, Any] | None = None,
    *,
    error_code: str | None = None,
) -> None:
    """Convenience: emit a warning-level event."""
    emit(
        GridEvent(
            level=EventLevel.warning,
            event_type=event_type,
            message=message,
            context=context or {},
            error_code=error_code,
        )
    )


def emit_error(
    event_type: EventType,
    message: str,
    context: dict[str, Any] | None = None,
    *,
    error_code: str | None = None,
) -> None:
    """Convenience: emit an error-level event."""
    emit(
        GridEvent(
            level=EventLevel.error,
            event_type=event_type,
            message=message,
            context=context or {},
            error_code=error_code,
        )
    )
