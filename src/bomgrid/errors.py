"""Error taxonomy for the grid engine.

Every error here is local and recoverable.  The mutation service turns
them into no-op snapshots plus warning events; they never escape to the
presentation layer as crashes.  Formula errors, including
``CircularDependency``, live in ``bomgrid.formulas.errors``.
"""

from __future__ import annotations

from typing import Any


class GridError(Exception):
    """Base class for all grid engine errors."""

    code = "grid_error"


class InvalidReference(GridError):
    """A mutation named a row id (or column) that does not exist or is not writable.

    Attributes:
        row_id: The unresolved row id.
        column: The column, when the reference was to a cell.
    """

    code = "invalid_reference"

    def __init__(self, row_id: Any, column: str | None = None, reason: str | None = None) -> None:
        self.row_id = row_id
        self.column = column
        if column is None:
            msg = f"Unknown row id: {row_id!r}"
        else:
            msg = f"Invalid cell reference: row {row_id!r}, column {column!r}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class NonNumericInput(GridError):
    """A numeric column received a value that cannot be coerced to a number.

    Attributes:
        value: The offending raw value.
    """

    code = "non_numeric_input"

    def __init__(self, value: Any, column: str | None = None) -> None:
        self.value = value
        self.column = column
        msg = f"Non-numeric input: {value!r}"
        if column is not None:
            msg += f" in column {column!r}"
        super().__init__(msg)


class StructuralViolation(GridError):
    """A move or delete would split a subtree or break the hierarchy."""

    code = "structural_violation"

