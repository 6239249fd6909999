"""Tree-walking evaluator for parsed cell formulas.

Numeric coercion is explicit and uniform: every arithmetic operand and
every aggregate item goes through ``bomgrid.numeric.coerce_number``, so
blank or non-numeric cells count as ``0`` no matter which formula reads
them.  Comparisons compare text with text and coerce everything else.
"""

from __future__ import annotations

from typing import Any, Protocol

from lark import Token, Tree

from bomgrid.formulas.errors import (
    ENGINE_ERRORS,
    FormulaDivisionError,
    FormulaError,
    FormulaFunctionError,
)
from bomgrid.formulas.parser import STRUCTURAL_FUNCTIONS, parse_row_ref, structural_field
from bomgrid.numeric import coerce_number


# ---------------------------------------------------------------------------
# Resolver protocol
# ---------------------------------------------------------------------------


class CellResolver(Protocol):
    """Protocol for resolving cell values while a formula is evaluated."""

    def resolve_field(self, row_id: int, column: str) -> Any:
        """Resolve one cell value (may trigger recursive evaluation)."""
        ...

    def resolve_structural(self, row_id: int, func: str, column: str) -> list[Any]:
        """Resolve ``column`` over the children/descendants of *row_id*."""
        ...


def evaluate_formula(tree: Tree, row_id: int, resolver: CellResolver) -> Any:
    """Evaluate a parsed formula owned by row *row_id*.

    Args:
        tree: Parse tree from ``parse_formula()``.
        row_id: Row that owns the formula; bare field names resolve here.
        resolver: Supplies cell values and structural expansions.

    Returns:
        The computed value.
    """
    return _eval(tree, row_id, resolver)


def _eval(node: Tree | Token, rid: int, resolver: CellResolver) -> Any:
    if isinstance(node, Token):
        return _eval_token(node)

    rule = node.data

    if rule == "start":
        return _eval(node.children[0], rid, resolver)

    # Arithmetic
    if rule in _BINARY_ARITH:
        left = coerce_number(_eval(node.children[0], rid, resolver))
        right = coerce_number(_eval(node.children[1], rid, resolver))
        return _BINARY_ARITH[rule](left, right)
    if rule == "neg":
        return -coerce_number(_eval(node.children[0], rid, resolver))
    if rule == "pos":
        return coerce_number(_eval(node.children[0], rid, resolver))
    if rule == "percent":
        return coerce_number(_eval(node.children[0], rid, resolver)) / 100

    # Comparison
    if rule in _COMPARISONS:
        left, right = _comparable(
            _eval(node.children[0], rid, resolver),
            _eval(node.children[1], rid, resolver),
        )
        return _COMPARISONS[rule](left, right)

    # Literals
    if rule == "number":
        return _parse_number(node.children[0])
    if rule == "boolean":
        return str(node.children[0]) == "TRUE"
    if rule == "string":
        return _unquote(str(node.children[0]))

    # References
    if rule in ("ref_bare", "ref_dollar"):
        return resolver.resolve_field(rid, str(node.children[0]))
    if rule == "row_ref":
        target, column = parse_row_ref(str(node.children[0]))
        return resolver.resolve_field(target, column)

    if rule == "func_call":
        return _eval_func(node, rid, resolver)

    if rule == "args":
        return [_eval(child, rid, resolver) for child in node.children]

    raise FormulaError(f"Unknown node type: {rule}")


def _eval_token(token: Token) -> Any:
    """Evaluate a bare token (shouldn't normally happen at top level)."""
    if token.type == "NUMBER":
        return _parse_number(token)
    if token.type == "BOOL":
        return str(token) == "TRUE"
    if token.type == "ESCAPED_STRING":
        return _unquote(str(token))
    return str(token)


def _unquote(raw: str) -> str:
    return raw[1:-1].replace('\\"', '"').replace("\\\\", "\\")


def _parse_number(token: Token) -> int | float:
    """Parse a NUMBER token to int or float."""
    s = str(token)
    if "." in s or "e" in s.lower():
        return float(s)
    return int(s)


def _div(left: float, right: float) -> float:
    if right == 0:
        raise FormulaDivisionError("Division by zero in formula")
    return left / right


_BINARY_ARITH: dict[str, Any] = {
    "add": lambda a, b: a + b,
    "sub": lambda a, b: a - b,
    "mul": lambda a, b: a * b,
    "div": _div,
    "pow": lambda a, b: a ** b,
}

_COMPARISONS: dict[str, Any] = {
    "gt": lambda a, b: a > b,
    "lt": lambda a, b: a < b,
    "gte": lambda a, b: a >= b,
    "lte": lambda a, b: a <= b,
    "eq": lambda a, b: a == b,
    "neq": lambda a, b: a != b,
}


def _comparable(left: Any, right: Any) -> tuple[Any, Any]:
    if isinstance(left, str) and isinstance(right, str):
        return left, right
    return coerce_number(left), coerce_number(right)


# ---------- Function dispatch ----------

_LAZY_FUNCTIONS = {"IF", "IFERROR"}
_AGGREGATE_FUNCTIONS = {"SUM", "AVERAGE", "MIN", "MAX", "COUNT", "PRODUCT"}


def _resolve_func_arg(
    arg_node: Tree | Token, rid: int, resolver: CellResolver, allow_range: bool = False
) -> Any:
    """Evaluate a function argument, expanding CHILDREN/DESCENDANTS when allowed."""
    if (
        allow_range
        and isinstance(arg_node, Tree)
        and arg_node.data == "func_call"
        and str(arg_node.children[0]).upper() in STRUCTURAL_FUNCTIONS
    ):
        func_name = str(arg_node.children[0]).upper()
        return resolver.resolve_structural(rid, func_name, structural_field(arg_node))
    return _eval(arg_node, rid, resolver)


def _flatten_args(args: list) -> list:
    """Flatten one level of lists in argument list."""
    result = []
    for a in args:
        if isinstance(a, list):
            result.extend(a)
        else:
            result.append(a)
    return result


def _eval_func(node: Tree, rid: int, resolver: CellResolver) -> Any:
    """Evaluate a function call node."""
    func_name = str(node.children[0]).upper()
    args_node = node.children[1]
    raw_args = args_node.children if args_node.children else []

    if func_name in STRUCTURAL_FUNCTIONS:
        raise FormulaFunctionError(
            func_name, f"{func_name} can only be used inside SUM, AVERAGE, MIN, MAX, COUNT or PRODUCT"
        )

    # Lazy functions receive unevaluated AST nodes
    if func_name in _LAZY_FUNCTIONS:
        return _FUNC_TABLE[func_name](raw_args, rid, resolver)

    if func_name in _AGGREGATE_FUNCTIONS:
        evaluated_args = [
            _resolve_func_arg(arg, rid, resolver, allow_range=True) for arg in raw_args
        ]
        return _FUNC_TABLE[func_name](_flatten_args(evaluated_args))

    if func_name not in _FUNC_TABLE:
        raise FormulaFunctionError(func_name)
    evaluated_args = [_eval(arg, rid, resolver) for arg in raw_args]
    return _FUNC_TABLE[func_name](evaluated_args)


def _numbers(args: list) -> list[float]:
    return [coerce_number(a) for a in args]


def _fn_sum(args: list) -> float:
    return sum(_numbers(args))


def _fn_product(args: list) -> float:
    if len(args) < 1:
        raise FormulaFunctionError("PRODUCT", "PRODUCT requires at least 1 argument")
    result: float = 1
    for value in _numbers(args):
        result *= value
    return result


def _fn_average(args: list) -> float:
    if len(args) < 1:
        raise FormulaDivisionError("AVERAGE of an empty list")
    return sum(_numbers(args)) / len(args)


def _fn_min(args: list) -> Any:
    return min(_numbers(args)) if args else 0


def _fn_max(args: list) -> Any:
    return max(_numbers(args)) if args else 0


def _fn_count(args: list) -> int:
    """COUNT counts numeric items only (blanks and text are skipped)."""
    return sum(
        1 for a in args if isinstance(a, (int, float)) and not isinstance(a, bool)
    )


def _fn_abs(args: list) -> float:
    if len(args) != 1:
        raise FormulaFunctionError("ABS", "ABS requires exactly 1 argument")
    return abs(coerce_number(args[0]))


def _fn_round(args: list) -> float:
    if len(args) < 1 or len(args) > 2:
        raise FormulaFunctionError("ROUND", "ROUND requires 1-2 arguments")
    digits = int(coerce_number(args[1])) if len(args) == 2 else 0
    return round(coerce_number(args[0]), digits)


def _fn_if(raw_args: list, rid: int, resolver: CellResolver) -> Any:
    """IF(condition, then_value [, else_value]), evaluated lazily."""
    if len(raw_args) < 2 or len(raw_args) > 3:
        raise FormulaFunctionError("IF", "IF requires 2-3 arguments")
    condition = _eval(raw_args[0], rid, resolver)
    if condition:
        return _eval(raw_args[1], rid, resolver)
    if len(raw_args) == 3:
        return _eval(raw_args[2], rid, resolver)
    return False


def _fn_iferror(raw_args: list, rid: int, resolver: CellResolver) -> Any:
    """IFERROR(value, fallback): catches errors in the first argument."""
    if len(raw_args) != 2:
        raise FormulaFunctionError("IFERROR", "IFERROR requires exactly 2 arguments")
    try:
        return _eval(raw_args[0], rid, resolver)
    except ENGINE_ERRORS:
        return _eval(raw_args[1], rid, resolver)


_FUNC_TABLE: dict[str, Any] = {
    "SUM": _fn_sum,
    "PRODUCT": _fn_product,
    "AVERAGE": _fn_average,
    "MIN": _fn_min,
    "MAX": _fn_max,
    "COUNT": _fn_count,
    "ABS": _fn_abs,
    "ROUND": _fn_round,
    "IF": _fn_if,
    "IFERROR": _fn_iferror,
}
