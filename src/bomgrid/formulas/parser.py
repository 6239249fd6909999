"""Lark-based parser for grid cell formulas.

Supports:
- Same-row field references: ``quantity`` or ``$quantity``
- Row coordinate references: ``#12!quantity`` (row id 12, column ``quantity``)
- Aggregate-of-descendants: ``CHILDREN(field)``, ``DESCENDANTS(field)``
- Standard arithmetic, comparisons, functions, postfix percent (%)

Row coordinates use the stable row id, not the display sequence, so a
formula keeps pointing at the same row when rows are inserted, deleted
or moved around it.
"""

from __future__ import annotations

from lark import Lark, Token, Tree

from bomgrid.formulas.errors import FormulaParseError

# LALR(1) grammar for grid cell formulas.
# Operator precedence (lowest to highest):
#   1. Comparison: > < >= <= = <>
#   2. Addition/subtraction: + -
#   3. Multiplication/division: * /
#   4. Unary plus/minus: + -
#   5. Exponentiation: ^ (right-associative)
#   6. Postfix percent: %  (3% = 0.03)
#   7. Atoms: number, bool, string, function call, reference, parenthesized expr
GRAMMAR = r"""
start: "=" expr

?expr: comparison

?comparison: addition
    | comparison ">" addition   -> gt
    | comparison "<" addition   -> lt
    | comparison ">=" addition  -> gte
    | comparison "<=" addition  -> lte
    | comparison "=" addition   -> eq
    | comparison "<>" addition  -> neq

?addition: multiplication
    | addition "+" multiplication  -> add
    | addition "-" multiplication  -> sub

?multiplication: unary
    | multiplication "*" unary  -> mul
    | multiplication "/" unary  -> div

?unary: exponentiation
    | "-" unary  -> neg
    | "+" unary  -> pos

?exponentiation: postfix
    | postfix "^" unary  -> pow

?postfix: atom
    | postfix "%"  -> percent

?atom: NUMBER                   -> number
    | BOOL                      -> boolean
    | ESCAPED_STRING            -> string
    | NAME "(" args ")"         -> func_call
    | ROW_REF                   -> row_ref
    | "$" NAME                  -> ref_dollar
    | NAME                      -> ref_bare
    | "(" expr ")"

args: expr ("," expr)*
    |

BOOL.2: "TRUE" | "FALSE"

// Row coordinate ref: #<row id>!<column>
ROW_REF.3: /#[0-9]+![A-Za-z_][A-Za-z0-9_]*/

NAME.1: /[A-Za-z_][A-Za-z0-9_]*/

%import common.NUMBER
%import common.ESCAPED_STRING
%import common.WS
%ignore WS
"""

_parser = Lark(GRAMMAR, parser="lalr", start="start")

# Functions whose single argument names a column on related rows.
STRUCTURAL_FUNCTIONS = frozenset({"CHILDREN", "DESCENDANTS"})


def parse_formula(text: str) -> Tree:
    """Parse a formula string (must start with ``=``) into a Lark Tree.

    Args:
        text: The formula text, e.g. ``"=productionCost * quantity"``.

    Returns:
        A Lark parse tree.

    Raises:
        FormulaParseError: If the formula has invalid syntax.
    """
    text = text.strip()
    if not text.startswith("="):
        raise FormulaParseError("Formula must start with '='", position=0)
    try:
        return _parser.parse(text)
    except Exception as exc:
        pos = getattr(exc, "column", None)
        raise FormulaParseError(str(exc), position=pos) from exc


def is_formula(value: object) -> bool:
    """True if a raw cell value is formula text."""
    return isinstance(value, str) and value.strip().startswith("=") and len(value.strip()) > 1


def parse_row_ref(token_str: str) -> tuple[int, str]:
    """Parse a ROW_REF token into ``(row_id, column)``.

    Examples:
        ``"#12!quantity"`` → ``(12, "quantity")``
    """
    s = token_str.strip()
    bang = s.index("!")
    return int(s[1:bang]), s[bang + 1:]


def structural_field(node: Tree) -> str:
    """Return the column named by a ``CHILDREN``/``DESCENDANTS`` call.

    The argument may be a bare name, a ``$`` name, or a string literal.

    Raises:
        FormulaParseError: If the call does not have exactly one such argument.
    """
    func_name = str(node.children[0]).upper()
    args = node.children[1].children if node.children[1].children else []
    if len(args) == 1:
        arg = args[0]
        if isinstance(arg, Tree) and arg.data in ("ref_bare", "ref_dollar"):
            return str(arg.children[0])
        if isinstance(arg, Tree) and arg.data == "string":
            return str(arg.children[0])[1:-1]
    raise FormulaParseError(f"{func_name} takes exactly one column name")


def _collect(
    node: Tree | Token,
    field_refs: set[str],
    row_refs: set[tuple[int, str]],
    structural_refs: set[tuple[str, str]],
) -> None:
    if not isinstance(node, Tree):
        return
    rule = node.data
    if rule in ("ref_bare", "ref_dollar"):
        token = node.children[0]
        if isinstance(token, Token) and token.type != "BOOL":
            field_refs.add(str(token))
        return
    if rule == "row_ref":
        row_refs.add(parse_row_ref(str(node.children[0])))
        return
    if rule == "func_call":
        func_name = str(node.children[0]).upper()
        if func_name in STRUCTURAL_FUNCTIONS:
            structural_refs.add((func_name, structural_field(node)))
            return
        _collect(node.children[1], field_refs, row_refs, structural_refs)
        return
    for child in node.children:
        _collect(child, field_refs, row_refs, structural_refs)


def extract_refs(tree: Tree) -> set[str]:
    """Extract the same-row field names referenced by a parsed formula."""
    field_refs, _, _ = extract_all_refs(tree)
    return field_refs


def extract_all_refs(
    tree: Tree,
) -> tuple[set[str], set[tuple[int, str]], set[tuple[str, str]]]:
    """Extract all references from a parsed formula tree.

    Returns:
        Tuple of ``(field_refs, row_refs, structural_refs)`` where:
        - field_refs: same-row column names
        - row_refs: ``(row_id, column)`` coordinates
        - structural_refs: ``(function, column)`` pairs for
          ``CHILDREN``/``DESCENDANTS`` calls
    """
    field_refs: set[str] = set()
    row_refs: set[tuple[int, str]] = set()
    structural_refs: set[tuple[str, str]] = set()
    _collect(tree, field_refs, row_refs, structural_refs)
    return field_refs, row_refs, structural_refs
