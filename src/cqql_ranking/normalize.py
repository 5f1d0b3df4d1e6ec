"""
Formula normalization: DNF, cleanup, overlap resolution, De Morgan form.

Probabilistic evaluation of `a || b` as `a + b - a*b` is only correct when
`a` and `b` are independent, i.e. share no literal. The normalizer brings a
formula into a shape where this holds everywhere:

1. Convert to disjunctive normal form (a list of terms, each a conjunction of
   signed atoms), pushing negations down and distributing AND over OR.
2. Clean up: drop terms containing `x && !x`, collapse duplicate literals and
   duplicate terms, remove absorbed terms, and turn `x || !x` into True.
3. Factor out overlaps. When an atom `o` occurs in two or more terms, split
   the terms into the Shannon cofactors for `o` and `!o` and normalize each
   one. The result is `(o && pos) + (!o && neg)`: the two branches are
   mutually exclusive, so they are combined with `Sum` (plain addition)
   rather than `Or`. Equal branches collapse to one without `o`.
4. Render overlap-free term lists in De Morgan form,
   `t1 || t2 -> !(!t1 && !t2)`, which compiles to a product of
   independent complements.

Overlap factoring runs on an explicit worklist rather than Python recursion;
its depth and branch count are bounded by `Config`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from cqql_ranking.cancellation import Deadline
from cqql_ranking.config import DEFAULT_CONFIG, Config
from cqql_ranking.errors import RecursionLimitExceeded, ResourceExhausted
from cqql_ranking.formula import (
    FALSE,
    TRUE,
    And,
    Atom,
    Constant,
    Formula,
    Literal,
    Not,
    Sum,
    WeightLiteral,
    check_depth,
    format_formula,
)

logger = logging.getLogger(__name__)

# A signed atom: (atom, True) is `atom`, (atom, False) is `!atom`.
SignedAtom = tuple[Atom, bool]
# A conjunction of signed atoms, each atom at most once, in first-seen order.
Term = tuple[SignedAtom, ...]


# =============================================================================
# DNF conversion and cleanup
# =============================================================================


def _merge(left: Term, right: Term) -> Term | None:
    """Conjunction of two terms, or None if it is contradictory."""
    signs = dict(left)
    for atom, sign in right:
        existing = signs.get(atom)
        if existing is None:
            signs[atom] = sign
        elif existing != sign:
            return None
    return tuple(signs.items())


def simplify_terms(terms: list[Term]) -> list[Term]:
    """
    Idempotence and absorption cleanup of a DNF term list.

    Order of the surviving terms is preserved. Returns `[()]` (a single empty
    term) when the disjunction is a tautology and `[]` when it is False.
    """
    if any(not term for term in terms):
        return [()]

    unique: list[Term] = []
    seen: set[frozenset[SignedAtom]] = set()
    for term in terms:
        key = frozenset(term)
        if key not in seen:
            seen.add(key)
            unique.append(term)

    keys = [frozenset(term) for term in unique]
    kept = [
        term
        for term, key in zip(unique, keys)
        if not any(other < key for other in keys)
    ]

    units = {term[0] for term in kept if len(term) == 1}
    if any((atom, not sign) in units for atom, sign in units):
        return [()]
    return kept


class _DNFBuilder:
    def __init__(self, config: Config, deadline: Deadline):
        self.config = config
        self.deadline = deadline

    def build(self, formula: Formula, positive: bool = True) -> list[Term]:
        if isinstance(formula, Constant):
            return [()] if formula.value == positive else []
        if isinstance(formula, (Literal, WeightLiteral)):
            return [((formula, positive),)]
        if isinstance(formula, Not):
            return self.build(formula.operand, not positive)

        children = [self.build(operand, positive) for operand in formula.operands]
        conjunctive = isinstance(formula, And) == positive
        if conjunctive:
            return self._product(children)
        terms = simplify_terms([term for child in children for term in child])
        self._check_size(len(terms))
        return terms

    def _product(self, children: list[list[Term]]) -> list[Term]:
        terms: list[Term] = [()]
        for child in children:
            self.deadline.check()
            self._check_size(len(terms) * len(child))
            merged = (_merge(left, right) for left in terms for right in child)
            terms = simplify_terms([term for term in merged if term is not None])
            if not terms:
                break
        return terms

    def _check_size(self, size: int) -> None:
        if size > self.config.max_dnf_terms:
            raise ResourceExhausted(
                f"DNF expansion needs {size} terms, exceeding the limit of "
                f"{self.config.max_dnf_terms}",
                limit=self.config.max_dnf_terms,
            )


def to_dnf(
    formula: Formula,
    config: Config | None = None,
    deadline: Deadline | None = None,
) -> list[Term]:
    """
    Convert a formula into a simplified DNF term list.

    `Sum` is read as a disjunction. The result is `[]` for False and `[()]`
    for True.

    Raises:
        ResourceExhausted: If the formula is nested deeper than
            `config.max_formula_depth` or the expansion exceeds
            `config.max_dnf_terms`.
        Cancelled: If the deadline expires during expansion.
    """
    config = config or DEFAULT_CONFIG
    check_depth(formula, config.max_formula_depth)
    builder = _DNFBuilder(config, deadline or Deadline.never())
    return builder.build(formula)


# =============================================================================
# Overlap resolution
# =============================================================================


def find_overlap(terms: list[Term]) -> Atom | None:
    """
    First atom shared by two or more terms, ignoring negation.

    Terms are scanned in order and atoms within a term in order; the first
    atom that also occurs in another term wins.
    """
    counts: dict[Atom, int] = {}
    for term in terms:
        for atom, _ in term:
            counts[atom] = counts.get(atom, 0) + 1
    for term in terms:
        for atom, _ in term:
            if counts[atom] > 1:
                return atom
    return None


def cofactors(terms: list[Term], atom: Atom) -> tuple[list[Term], list[Term]]:
    """Shannon cofactors of the term list for `atom` true and `atom` false."""
    positive: list[Term] = []
    negative: list[Term] = []
    for term in terms:
        signs = dict(term)
        rest = tuple((a, s) for a, s in term if a != atom)
        if signs.get(atom) is not False:
            positive.append(rest)
        if signs.get(atom) is not True:
            negative.append(rest)
    return simplify_terms(positive), simplify_terms(negative)


def _signed(atom: Atom, sign: bool) -> Formula:
    return atom if sign else Not(atom)


def _negate(formula: Formula) -> Formula:
    if isinstance(formula, Not):
        return formula.operand
    return Not(formula)


def _conjunction(term: Term) -> Formula:
    operands = tuple(_signed(atom, sign) for atom, sign in term)
    if len(operands) == 1:
        return operands[0]
    return And(operands)


def _leaf(terms: list[Term]) -> Formula:
    """Render an overlap-free term list."""
    if not terms:
        return FALSE
    if terms == [()]:
        return TRUE
    if len(terms) == 1:
        return _conjunction(terms[0])
    return Not(And(tuple(_negate(_conjunction(term)) for term in terms)))


def _conjoin(condition: Formula, formula: Formula) -> Formula:
    if formula == TRUE:
        return condition
    if isinstance(formula, And):
        return And((condition, *formula.operands))
    return And((condition, formula))


def _assemble(atom: Atom, positive: Formula, negative: Formula) -> Formula:
    # (o && x) + (!o && x) == x
    if positive == negative:
        return positive
    branches = []
    if positive != FALSE:
        branches.append(_conjoin(atom, positive))
    if negative != FALSE:
        branches.append(_conjoin(Not(atom), negative))
    if not branches:
        return FALSE
    if len(branches) == 1:
        return branches[0]
    return Sum(tuple(branches))


@dataclass
class _Branch:
    terms: list[Term]
    depth: int
    overlap: Atom | None = None
    children: tuple[int, int] | None = None
    result: Formula | None = field(default=None, repr=False)


def normalize_terms(
    terms: list[Term],
    config: Config | None = None,
    deadline: Deadline | None = None,
) -> Formula:
    """
    Resolve overlaps in a simplified DNF term list.

    Branches are expanded in creation order, then assembled in reverse, so
    every branch's cofactors are finished before the branch itself.

    Raises:
        RecursionLimitExceeded: If factoring nests deeper than
            `config.max_overlap_depth`.
        ResourceExhausted: If more than `config.max_branches` branches are
            created.
        Cancelled: If the deadline expires.
    """
    config = config or DEFAULT_CONFIG
    deadline = deadline or Deadline.never()

    branches = [_Branch(terms, depth=0)]
    i = 0
    while i < len(branches):
        deadline.check()
        branch = branches[i]
        overlap = find_overlap(branch.terms)
        if overlap is None:
            branch.result = _leaf(branch.terms)
        else:
            depth = branch.depth + 1
            if depth > config.max_overlap_depth:
                raise RecursionLimitExceeded(depth, config.max_overlap_depth)
            if len(branches) + 2 > config.max_branches:
                raise ResourceExhausted(
                    f"Overlap resolution needs more than {config.max_branches} branches",
                    limit=config.max_branches,
                )
            logger.debug("Factoring out %s at depth %d", overlap.name, depth)
            positive, negative = cofactors(branch.terms, overlap)
            branch.overlap = overlap
            branch.children = (len(branches), len(branches) + 1)
            branches.append(_Branch(positive, depth))
            branches.append(_Branch(negative, depth))
        i += 1

    for branch in reversed(branches):
        if branch.children is not None:
            pos, neg = branch.children
            branch.result = _assemble(branch.overlap, branches[pos].result, branches[neg].result)

    logger.debug("Overlap resolution used %d branches", len(branches))
    return branches[0].result


def normalize(
    formula: Formula | None,
    config: Config | None = None,
    deadline: Deadline | None = None,
) -> Formula:
    """
    Normalize a formula into overlap-free form.

    Args:
        formula: The formula to normalize; None (the empty formula) yields True.
        config: Size limits (defaults to `DEFAULT_CONFIG`).
        deadline: Cancellation signal polled at every DNF product and every
            overlap branch.

    Returns:
        An equivalent formula whose `Sum` operands are mutually exclusive and
        whose remaining disjunctions combine literal-disjoint terms.
    """
    if formula is None:
        return TRUE
    config = config or DEFAULT_CONFIG
    deadline = deadline or Deadline.never()
    terms = to_dnf(formula, config, deadline)
    logger.debug("DNF has %d terms", len(terms))
    normalized = normalize_terms(terms, config, deadline)
    logger.debug("Normalized %s -> %s", format_formula(formula), format_formula(normalized))
    return normalized


__all__ = [
    "SignedAtom",
    "Term",
    "simplify_terms",
    "to_dnf",
    "find_overlap",
    "cofactors",
    "normalize_terms",
    "normalize",
]
