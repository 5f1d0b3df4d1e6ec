"""
Boolean formula trees over literals and weight literals.

A formula is a tagged-variant expression tree:

    Constant(True/False) | Literal | WeightLiteral | Not | And | Or | Sum

`Sum` is the disjoint-sum combinator produced by the normalizer: its
operands are mutually exclusive, so on truth values it behaves like `Or`,
while the calc compiler turns it into plain addition. The empty formula
(no clauses at all) is represented by `None` and stands for universal truth.

Text form (fully parenthesized, readable back with `parse_formula`):

    (match$$fox) || ((match$$eagle) && (match$$crocodile))
    !(term$$cat) && (w$$0$4)

Weight literals encode their boost in the name: integer and fractional
digits separated by `$`, e.g. 0.4 -> `w$$0$4`.
"""

from __future__ import annotations

import itertools
import json
import math
import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from decimal import Decimal
from typing import Union

from lark import Lark
from lark.exceptions import UnexpectedInput, VisitError
from lark.visitors import Transformer_NonRecursive

from cqql_ranking.config import DEFAULT_CONFIG
from cqql_ranking.errors import FormulaSyntaxError, ResourceExhausted

WEIGHT_PREFIX = "w$$"

_WEIGHT_NAME = re.compile(r"w\$\$(\d+)\$(\d+)")
_BARE_NAME = re.compile(r"[A-Za-z_][A-Za-z0-9_$.:\-]*")


# =============================================================================
# Weight encoding
# =============================================================================


def encode_weight(value: float) -> str:
    """
    Encode a boost as a weight literal name.

    The shortest round-tripping decimal representation is split at the
    decimal point: 0.4 -> "w$$0$4", 2.0 -> "w$$2$0", 1e-05 -> "w$$0$00001".
    """
    value = float(value)
    if not math.isfinite(value) or value < 0:
        raise ValueError(f"Weight must be a finite non-negative number, got {value!r}")
    text = format(Decimal(repr(value)), "f")
    int_part, _, frac_part = text.partition(".")
    return f"{WEIGHT_PREFIX}{int_part}${frac_part or '0'}"


def decode_weight(name: str) -> float:
    """Decode a weight literal name back to its float value."""
    match = _WEIGHT_NAME.fullmatch(name)
    if match is None:
        raise ValueError(f"Not a weight literal name: {name!r}")
    return float(f"{match.group(1)}.{match.group(2)}")


def is_weight_name(name: str) -> bool:
    return _WEIGHT_NAME.fullmatch(name) is not None


# =============================================================================
# Tree nodes
# =============================================================================


@dataclass(frozen=True)
class Constant:
    value: bool


@dataclass(frozen=True)
class Literal:
    """A named atomic condition."""

    name: str


@dataclass(frozen=True)
class WeightLiteral:
    """A synthetic literal whose value is a known boost constant."""

    value: float

    @property
    def name(self) -> str:
        return encode_weight(self.value)


@dataclass(frozen=True)
class Not:
    operand: Formula


@dataclass(frozen=True)
class And:
    operands: tuple[Formula, ...]


@dataclass(frozen=True)
class Or:
    operands: tuple[Formula, ...]


@dataclass(frozen=True)
class Sum:
    """Disjunction of mutually exclusive operands."""

    operands: tuple[Formula, ...]


Atom = Union[Literal, WeightLiteral]
Formula = Union[Constant, Literal, WeightLiteral, Not, And, Or, Sum]

TRUE = Constant(True)
FALSE = Constant(False)


def iter_atoms(formula: Formula | None) -> Iterator[Atom]:
    """Yield every atom of the formula (with repetitions) in left-to-right order."""
    if formula is None or isinstance(formula, Constant):
        return
    if isinstance(formula, (Literal, WeightLiteral)):
        yield formula
    elif isinstance(formula, Not):
        yield from iter_atoms(formula.operand)
    else:
        for operand in formula.operands:
            yield from iter_atoms(operand)


def atoms(formula: Formula | None) -> list[Atom]:
    """Distinct atoms of the formula in first-seen order."""
    return list(dict.fromkeys(iter_atoms(formula)))


def formula_depth(formula: Formula | None) -> int:
    """Operator nesting depth (0 for atoms, constants and the empty formula)."""
    if formula is None:
        return 0
    deepest = 0
    stack = [(formula, 0)]
    while stack:
        node, depth = stack.pop()
        deepest = max(deepest, depth)
        if isinstance(node, Not):
            stack.append((node.operand, depth + 1))
        elif isinstance(node, (And, Or, Sum)):
            stack.extend((operand, depth + 1) for operand in node.operands)
    return deepest


def check_depth(formula: Formula | None, limit: int) -> None:
    """
    Reject formulas nested deeper than `limit`.

    Raises:
        ResourceExhausted: If `formula_depth(formula)` exceeds `limit`.
    """
    depth = formula_depth(formula)
    if depth > limit:
        raise ResourceExhausted(
            f"Formula nesting depth {depth} exceeds the limit of {limit}", limit=limit
        )


# =============================================================================
# Rendering
# =============================================================================


def _format_name(name: str) -> str:
    if _BARE_NAME.fullmatch(name) and name not in ("True", "False"):
        return name
    return json.dumps(name, ensure_ascii=False)


def format_formula(formula: Formula | None) -> str:
    """Render a formula as fully parenthesized text ("" for the empty formula)."""
    if formula is None:
        return ""
    if isinstance(formula, Constant):
        return "True" if formula.value else "False"
    if isinstance(formula, Literal):
        return _format_name(formula.name)
    if isinstance(formula, WeightLiteral):
        return formula.name
    if isinstance(formula, Not):
        return f"!({format_formula(formula.operand)})"
    if isinstance(formula, And):
        separator = " && "
    elif isinstance(formula, Or):
        separator = " || "
    elif isinstance(formula, Sum):
        separator = " + "
    else:
        raise TypeError(f"Not a formula node: {formula!r}")
    return separator.join(f"({format_formula(operand)})" for operand in formula.operands)


# =============================================================================
# Parsing
# =============================================================================

FORMULA_GRAMMAR = r"""
?start: sum

?sum: disj ("+" disj)*
?disj: conj ("||" conj)*
?conj: neg ("&&" neg)*

?neg: "!" neg           -> negation
    | atom

?atom: "(" sum ")"
     | "True"           -> true
     | "False"          -> false
     | NAME             -> name
     | ESCAPED_STRING   -> quoted

NAME: /[A-Za-z_][A-Za-z0-9_$.:\-]*/

%import common.ESCAPED_STRING
%import common.WS
%ignore WS
"""


class _FormulaBuilder(Transformer_NonRecursive):
    def sum(self, items):
        return Sum(tuple(items))

    def disj(self, items):
        return Or(tuple(items))

    def conj(self, items):
        return And(tuple(items))

    def negation(self, items):
        return Not(items[0])

    def true(self, _):
        return TRUE

    def false(self, _):
        return FALSE

    def name(self, items):
        name = str(items[0])
        if is_weight_name(name):
            return WeightLiteral(decode_weight(name))
        return Literal(name)

    def quoted(self, items):
        return Literal(json.loads(str(items[0])))


_PARSER = Lark(FORMULA_GRAMMAR, parser="lalr")


def parse_formula(text: str) -> Formula | None:
    """
    Parse formula text into a tree.

    Blank text is the empty formula and returns None.

    Raises:
        FormulaSyntaxError: If the text is not a well-formed formula.
    """
    if not text.strip():
        return None
    try:
        tree = _PARSER.parse(text)
    except UnexpectedInput as e:
        position = getattr(e, "pos_in_stream", None)
        raise FormulaSyntaxError(
            f"Malformed formula at position {position}: {text!r}", text, position
        ) from e
    try:
        return _FormulaBuilder().transform(tree)
    except VisitError as e:
        raise FormulaSyntaxError(f"Malformed formula: {e.orig_exc}", text) from e


# =============================================================================
# Truth evaluation
# =============================================================================


def evaluate_truth(formula: Formula | None, assignment: Mapping[str, bool]) -> bool:
    """
    Evaluate a formula on a truth assignment keyed by atom name.

    `Sum` is evaluated as a disjunction; the empty formula is True.
    """
    if formula is None:
        return True
    if isinstance(formula, Constant):
        return formula.value
    if isinstance(formula, (Literal, WeightLiteral)):
        return bool(assignment[formula.name])
    if isinstance(formula, Not):
        return not evaluate_truth(formula.operand, assignment)
    if isinstance(formula, And):
        return all(evaluate_truth(operand, assignment) for operand in formula.operands)
    return any(evaluate_truth(operand, assignment) for operand in formula.operands)


def equivalent(
    left: Formula | None,
    right: Formula | None,
    max_literals: int = DEFAULT_CONFIG.max_equivalence_literals,
) -> bool:
    """
    Check boolean equivalence by enumerating all truth assignments.

    Raises:
        ResourceExhausted: If the formulas mention more than `max_literals`
            distinct atoms.
    """
    names = list(dict.fromkeys(atom.name for atom in (*atoms(left), *atoms(right))))
    if len(names) > max_literals:
        raise ResourceExhausted(
            f"Equivalence check over {len(names)} literals exceeds the limit of {max_literals}",
            limit=max_literals,
        )
    for values in itertools.product((False, True), repeat=len(names)):
        assignment = dict(zip(names, values))
        if evaluate_truth(left, assignment) != evaluate_truth(right, assignment):
            return False
    return True


__all__ = [
    "Atom",
    "Formula",
    "Constant",
    "Literal",
    "WeightLiteral",
    "Not",
    "And",
    "Or",
    "Sum",
    "TRUE",
    "FALSE",
    "WEIGHT_PREFIX",
    "FORMULA_GRAMMAR",
    "encode_weight",
    "decode_weight",
    "is_weight_name",
    "iter_atoms",
    "atoms",
    "formula_depth",
    "check_depth",
    "format_formula",
    "parse_formula",
    "evaluate_truth",
    "equivalent",
]
