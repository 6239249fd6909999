"""Excel-like cell formula parsing and evaluation.

Public API::

    from bomgrid.formulas import parse_formula, extract_all_refs, evaluate_formula
"""

from bomgrid.formulas.errors import (
    ENGINE_ERRORS,
    ERROR_MARKERS,
    CellValueError,
    CircularDependency,
    FormulaDivisionError,
    FormulaError,
    FormulaFunctionError,
    FormulaParseError,
    FormulaRefError,
)
from bomgrid.formulas.evaluator import evaluate_formula
from bomgrid.formulas.parser import (
    STRUCTURAL_FUNCTIONS,
    extract_all_refs,
    extract_refs,
    is_formula,
    parse_formula,
    parse_row_ref,
)

__all__ = [
    "ENGINE_ERRORS",
    "ERROR_MARKERS",
    "STRUCTURAL_FUNCTIONS",
    "CellValueError",
    "CircularDependency",
    "FormulaDivisionError",
    "FormulaError",
    "FormulaFunctionError",
    "FormulaParseError",
    "FormulaRefError",
    "evaluate_formula",
    "extract_all_refs",
    "extract_refs",
    "is_formula",
    "parse_formula",
    "parse_row_ref",
]
