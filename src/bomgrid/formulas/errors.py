"""Error types for formula parsing and evaluation."""

from __future__ import annotations

from bomgrid.errors import GridError


class FormulaError(GridError):
    """Base class for all formula-related errors."""

    code = "formula_error"
    marker = "#ERR!"


class FormulaParseError(FormulaError):
    """Syntax error in a formula expression.

    Attributes:
        position: Character position where the error was detected.
    """

    code = "parse_error"

    def __init__(self, message: str, position: int | None = None) -> None:
        self.position = position
        full = f"Formula parse error: {message}"
        if position is not None:
            full += f" (at position {position})"
        super().__init__(full)


class FormulaRefError(FormulaError):
    """Reference to an unknown row or field.

    Attributes:
        ref_name: The unresolved reference.
    """

    code = "ref_error"
    marker = "#REF!"

    def __init__(self, ref_name: str, available: list[str] | None = None) -> None:
        self.ref_name = ref_name
        self.available = available or []
        msg = f"Unknown reference: {ref_name!r}"
        if self.available:
            msg += f". Available: {self.available}"
        super().__init__(msg)


class FormulaFunctionError(FormulaError):
    """Unknown function or wrong number of arguments.

    Attributes:
        func_name: The function that caused the error.
    """

    code = "function_error"

    def __init__(self, func_name: str, message: str | None = None) -> None:
        self.func_name = func_name
        msg = message or f"Unknown function: {func_name!r}"
        super().__init__(msg)


class FormulaDivisionError(FormulaError):
    """Division by zero inside a formula."""

    code = "div_zero"
    marker = "#DIV/0!"


class CellValueError(FormulaError):
    """A formula read a cell that itself holds an error marker.

    Attributes:
        cell: The ``(row_id, column)`` that was read.
        upstream_marker: The marker found in that cell.
    """

    code = "upstream_error"

    def __init__(self, cell: tuple[int, str], upstream_marker: str) -> None:
        self.cell = cell
        self.upstream_marker = upstream_marker
        self.marker = upstream_marker
        super().__init__(f"Cell #{cell[0]}!{cell[1]} holds {upstream_marker}")


class CircularDependency(FormulaError):
    """Formula cells reference each other cyclically.

    Attributes:
        cycle: The ``(row_id, column)`` cells that form the cycle.
    """

    code = "circular_dependency"
    marker = "#CIRC!"

    def __init__(self, cycle: list[tuple[int, str]]) -> None:
        self.cycle = cycle
        parts = [f"#{r}!{c}" for r, c in cycle]
        super().__init__(f"Circular cell reference: {' -> '.join(parts)}")


ERROR_MARKERS = frozenset({"#ERR!", "#REF!", "#DIV/0!", "#CIRC!"})

ENGINE_ERRORS = (FormulaError, ZeroDivisionError, ValueError, KeyError, TypeError)
