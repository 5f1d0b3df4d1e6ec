"""
Compile normalized formulas into arithmetic over literal scores.

Rewrite rules (probability of independent events):

    x || y  ->  x + y - x*y
    x && y  ->  x * y
    !x      ->  1 - x
    x + y   ->  x + y        (Sum: operands are mutually exclusive)
    True    ->  1
    False   ->  0

Constants are folded while building (0*x = 0, 1*x = x, x + 0 = x, 1 - 1 = 0).
The compiler trusts the normalizer: it does not check that OR operands are
independent or that Sum operands are exclusive.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from typing import Union

from cqql_ranking.config import DEFAULT_CONFIG
from cqql_ranking.errors import ResourceExhausted
from cqql_ranking.formula import (
    And,
    Atom,
    Constant,
    Formula,
    Literal,
    Not,
    Or,
    Sum,
    WeightLiteral,
    format_formula,
)

# Coefficients smaller than this are treated as cancelled during expansion.
EPSILON = 1e-12


# =============================================================================
# Expression nodes
# =============================================================================


@dataclass(frozen=True)
class Number:
    value: float


@dataclass(frozen=True)
class Add:
    operands: tuple[CalcExpression, ...]


@dataclass(frozen=True)
class Subtract:
    left: CalcExpression
    right: CalcExpression


@dataclass(frozen=True)
class Multiply:
    operands: tuple[CalcExpression, ...]


CalcExpression = Union[Number, Literal, WeightLiteral, Add, Subtract, Multiply]

ZERO = Number(0.0)
ONE = Number(1.0)


def _add(*operands: CalcExpression) -> CalcExpression:
    flat: list[CalcExpression] = []
    constant = 0.0
    for operand in operands:
        for item in operand.operands if isinstance(operand, Add) else (operand,):
            if isinstance(item, Number):
                constant += item.value
            else:
                flat.append(item)
    if constant != 0.0:
        flat.append(Number(constant))
    if not flat:
        return ZERO
    if len(flat) == 1:
        return flat[0]
    return Add(tuple(flat))


def _multiply(*operands: CalcExpression) -> CalcExpression:
    flat: list[CalcExpression] = []
    constant = 1.0
    for operand in operands:
        for item in operand.operands if isinstance(operand, Multiply) else (operand,):
            if isinstance(item, Number):
                constant *= item.value
            else:
                flat.append(item)
    if constant == 0.0:
        return ZERO
    if constant != 1.0 or not flat:
        flat.insert(0, Number(constant))
    if len(flat) == 1:
        return flat[0]
    return Multiply(tuple(flat))


def _subtract(left: CalcExpression, right: CalcExpression) -> CalcExpression:
    if right == ZERO:
        return left
    if left == right:
        return ZERO
    if isinstance(left, Number) and isinstance(right, Number):
        return Number(left.value - right.value)
    return Subtract(left, right)


# =============================================================================
# Compilation
# =============================================================================


def compile_formula(formula: Formula | None) -> CalcExpression:
    """
    Compile a (normalized) formula into an arithmetic expression.

    The empty formula compiles to 1.
    """
    if formula is None:
        return ONE
    if isinstance(formula, Constant):
        return ONE if formula.value else ZERO
    if isinstance(formula, (Literal, WeightLiteral)):
        return formula
    if isinstance(formula, Not):
        return _subtract(ONE, compile_formula(formula.operand))

    compiled = [compile_formula(operand) for operand in formula.operands]
    if isinstance(formula, And):
        return _multiply(*compiled)
    if isinstance(formula, Sum):
        return _add(*compiled)
    if isinstance(formula, Or):
        result = compiled[0]
        for operand in compiled[1:]:
            result = _subtract(_add(result, operand), _multiply(result, operand))
        return result
    raise TypeError(f"Not a formula node: {formula!r}")


def iter_calc_atoms(expression: CalcExpression) -> Iterator[Atom]:
    """Yield the atoms of an expression (with repetitions) left to right."""
    if isinstance(expression, (Literal, WeightLiteral)):
        yield expression
    elif isinstance(expression, Subtract):
        yield from iter_calc_atoms(expression.left)
        yield from iter_calc_atoms(expression.right)
    elif isinstance(expression, (Add, Multiply)):
        for operand in expression.operands:
            yield from iter_calc_atoms(operand)


def calc_atoms(expression: CalcExpression) -> list[Atom]:
    """Distinct atoms of an expression in first-seen order."""
    return list(dict.fromkeys(iter_calc_atoms(expression)))


# =============================================================================
# Rendering
# =============================================================================


def _format_number(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def format_expression(expression: CalcExpression) -> str:
    """Render an expression with the minimum parentheses needed."""
    if isinstance(expression, Number):
        return _format_number(expression.value)
    if isinstance(expression, (Literal, WeightLiteral)):
        return format_formula(expression)
    if isinstance(expression, Add):
        return " + ".join(format_expression(operand) for operand in expression.operands)
    if isinstance(expression, Subtract):
        right = format_expression(expression.right)
        if isinstance(expression.right, (Add, Subtract)):
            right = f"({right})"
        return f"{format_expression(expression.left)} - {right}"
    if isinstance(expression, Multiply):
        return "*".join(
            f"({format_expression(operand)})"
            if isinstance(operand, (Add, Subtract))
            else format_expression(operand)
            for operand in expression.operands
        )
    raise TypeError(f"Not a calc expression: {expression!r}")


# =============================================================================
# Polynomial expansion
# =============================================================================

Monomial = tuple[Atom, ...]
Polynomial = dict[Monomial, float]


class _Expander:
    def __init__(self, order: dict[Atom, int], max_terms: int):
        self.order = order
        self.max_terms = max_terms

    def _canonical(self, atoms: tuple[Atom, ...]) -> Monomial:
        return tuple(sorted(atoms, key=self.order.__getitem__))

    def _check(self, polynomial: Polynomial) -> Polynomial:
        if len(polynomial) > self.max_terms:
            raise ResourceExhausted(
                f"Polynomial expansion exceeds {self.max_terms} terms", limit=self.max_terms
            )
        return polynomial

    def expand(self, expression: CalcExpression) -> Polynomial:
        if isinstance(expression, Number):
            return {(): expression.value}
        if isinstance(expression, (Literal, WeightLiteral)):
            return {(expression,): 1.0}
        if isinstance(expression, Add):
            result: Polynomial = {}
            for operand in expression.operands:
                self._accumulate(result, self.expand(operand), 1.0)
            return self._check(result)
        if isinstance(expression, Subtract):
            result = {}
            self._accumulate(result, self.expand(expression.left), 1.0)
            self._accumulate(result, self.expand(expression.right), -1.0)
            return self._check(result)
        if isinstance(expression, Multiply):
            result = {(): 1.0}
            for operand in expression.operands:
                factor = self.expand(operand)
                product: Polynomial = {}
                for left, a in result.items():
                    for right, b in factor.items():
                        key = self._canonical(left + right)
                        product[key] = product.get(key, 0.0) + a * b
                result = self._check(product)
            return result
        raise TypeError(f"Not a calc expression: {expression!r}")

    @staticmethod
    def _accumulate(target: Polynomial, source: Polynomial, sign: float) -> None:
        for monomial, coefficient in source.items():
            target[monomial] = target.get(monomial, 0.0) + sign * coefficient


def expand(expression: CalcExpression, max_terms: int = DEFAULT_CONFIG.max_dnf_terms) -> Polynomial:
    """
    Expand an expression into a polynomial over its atoms.

    Monomials are tuples of atoms in first-appearance order; the result is
    ordered by degree, then by atom position. Cancelled terms are dropped.

    Raises:
        ResourceExhausted: If an intermediate polynomial has more than
            `max_terms` monomials.
    """
    order = {atom: i for i, atom in enumerate(calc_atoms(expression))}
    expander = _Expander(order, max_terms)
    polynomial = expander.expand(expression)
    kept = {m: c for m, c in polynomial.items() if abs(c) > EPSILON}
    return dict(sorted(kept.items(), key=lambda item: (len(item[0]), [order[a] for a in item[0]])))


def format_polynomial(polynomial: Polynomial) -> str:
    """Render an expanded polynomial, e.g. `fox + eagle*crocodile - fox*eagle*crocodile`."""
    if not polynomial:
        return "0"
    parts: list[str] = []
    for monomial, coefficient in polynomial.items():
        magnitude = abs(coefficient)
        factors = [format_formula(atom) for atom in monomial]
        if not factors or magnitude != 1.0:
            factors.insert(0, _format_number(magnitude))
        text = "*".join(factors)
        if not parts:
            parts.append(f"-{text}" if coefficient < 0 else text)
        else:
            parts.append(f"- {text}" if coefficient < 0 else f"+ {text}")
    return " ".join(parts)


__all__ = [
    "CalcExpression",
    "Number",
    "Add",
    "Subtract",
    "Multiply",
    "ZERO",
    "ONE",
    "Monomial",
    "Polynomial",
    "compile_formula",
    "iter_calc_atoms",
    "calc_atoms",
    "format_expression",
    "expand",
    "format_polynomial",
]
