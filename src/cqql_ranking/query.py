"""
Executable queries built from occurrence trees.

`to_query` runs the whole pipeline once per query:

    occurrence tree -> formula -> normalized formula -> calc expression

and returns `MatchAllQuery` / `MatchNoneQuery` when the normalized formula
collapses to a constant, or a `CommutingQuantumQuery` otherwise. Scoring is
done by the scorer a query creates for a given index.
"""

from __future__ import annotations

import itertools
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from functools import cached_property
from typing import Any, Union

from cqql_ranking.calc import CalcExpression, compile_formula, format_expression
from cqql_ranking.cancellation import Deadline
from cqql_ranking.config import DEFAULT_BOOST, DEFAULT_CONFIG, Config
from cqql_ranking.errors import ResourceExhausted, ScoreResolutionError
from cqql_ranking.formula import (
    FALSE,
    TRUE,
    Formula,
    Literal,
    atoms,
    equivalent,
    evaluate_truth,
    format_formula,
)
from cqql_ranking.index import SearchIndex
from cqql_ranking.literals import LiteralRegistry
from cqql_ranking.normalize import normalize
from cqql_ranking.occurrence import Atomic, Compound, OccurrenceNode, parse_query
from cqql_ranking.scoring import EXPLAIN_PREFIX, ConstantScorer, ScoringEngine
from cqql_ranking.transcribe import transcribe

logger = logging.getLogger(__name__)

Scorer = Union[ScoringEngine, ConstantScorer]


class Query(ABC):
    """An executable query."""

    boost: float = DEFAULT_BOOST

    @abstractmethod
    def scorer(self, index: SearchIndex, deadline: Deadline | None = None) -> Scorer:
        """Create a scorer for this query over `index`."""

    def search(
        self,
        index: SearchIndex,
        top_k: int | None = None,
        deadline: Deadline | None = None,
    ) -> list[tuple[str, float]]:
        """Ranked (doc_id, score) pairs with positive scores."""
        return self.scorer(index, deadline).rank(top_k)


class MatchAllQuery(Query):
    """Every document matches with score `boost`."""

    def __init__(self, boost: float = DEFAULT_BOOST):
        self.boost = boost

    def scorer(self, index: SearchIndex, deadline: Deadline | None = None) -> ConstantScorer:
        return ConstantScorer(index, self.boost, "match all documents")

    def __eq__(self, other: object) -> bool:
        return isinstance(other, MatchAllQuery) and other.boost == self.boost

    def __hash__(self) -> int:
        return hash((MatchAllQuery, self.boost))

    def __repr__(self) -> str:
        return f"MatchAllQuery(boost={self.boost!r})"


class MatchNoneQuery(Query):
    """No document matches."""

    def scorer(self, index: SearchIndex, deadline: Deadline | None = None) -> ConstantScorer:
        return ConstantScorer(index, 0.0, "match no documents")

    def __eq__(self, other: object) -> bool:
        return isinstance(other, MatchNoneQuery)

    def __hash__(self) -> int:
        return hash(MatchNoneQuery)

    def __repr__(self) -> str:
        return "MatchNoneQuery()"


class CommutingQuantumQuery(Query):
    """
    A normalized CQQL formula with its literals and compiled expression.

    Two queries are equal when their boosts match and their normalized
    formulas are boolean-equivalent.

    Args:
        formula: Normalized formula.
        calc: Expression compiled from `formula`.
        registry: Registry holding every literal of `formula`.
        boost: Multiplier applied to final scores.
        name: Optional query name (`_name` in the DSL).
        config: Limits for equivalence checks.

    Raises:
        ScoreResolutionError: If `formula` mentions an unregistered literal.
    """

    def __init__(
        self,
        formula: Formula,
        calc: CalcExpression,
        registry: LiteralRegistry,
        boost: float = DEFAULT_BOOST,
        name: str | None = None,
        config: Config | None = None,
    ):
        self.formula = formula
        self.calc = calc
        self.registry = registry
        self.boost = boost
        self.name = name
        self.config = config or DEFAULT_CONFIG
        for atom in atoms(formula):
            if isinstance(atom, Literal) and atom not in registry:
                raise ScoreResolutionError(
                    f"Literal {atom.name!r} is not registered for this query", literal=atom.name
                )

    @property
    def literals(self) -> list[Literal]:
        """Literals of the normalized formula, in registry order."""
        used = set(atoms(self.formula))
        return [literal for literal in self.registry.literals if literal in used]

    @property
    def queries(self) -> list[Atomic]:
        return [self.registry.query_for(literal) for literal in self.literals]

    def scorer(self, index: SearchIndex, deadline: Deadline | None = None) -> ScoringEngine:
        return ScoringEngine(self.calc, self.registry, index, self.boost, deadline)

    def explain_formula(self) -> str:
        return EXPLAIN_PREFIX + format_expression(self.calc)

    @cached_property
    def _essential_names(self) -> frozenset[str]:
        # Atoms whose value can change the outcome; equal for equivalent formulas.
        names = list(dict.fromkeys(atom.name for atom in atoms(self.formula)))
        if len(names) > self.config.max_equivalence_literals:
            return frozenset(names)
        essential = set()
        for values in itertools.product((False, True), repeat=len(names)):
            assignment = dict(zip(names, values))
            outcome = evaluate_truth(self.formula, assignment)
            for name in names:
                if name in essential:
                    continue
                flipped = {**assignment, name: not assignment[name]}
                if evaluate_truth(self.formula, flipped) != outcome:
                    essential.add(name)
        return frozenset(essential)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CommutingQuantumQuery):
            return NotImplemented
        if self.boost != other.boost:
            return False
        try:
            return equivalent(
                self.formula, other.formula, self.config.max_equivalence_literals
            )
        except ResourceExhausted:
            return self.formula == other.formula

    def __hash__(self) -> int:
        return hash((CommutingQuantumQuery, self.boost, self._essential_names))

    def __str__(self) -> str:
        return f"commuting_quantum({format_formula(self.formula)})"

    def __repr__(self) -> str:
        return f"CommutingQuantumQuery({format_formula(self.formula)!r}, boost={self.boost!r})"


def to_query(
    tree: OccurrenceNode | Mapping[str, Any] | str,
    config: Config | None = None,
    deadline: Deadline | None = None,
) -> Query:
    """
    Build an executable query from an occurrence tree.

    Args:
        tree: Occurrence tree, or DSL (mapping or JSON text) to parse first.
            Child boosts are consumed; the root boost scales final scores.
        config: Normalization limits.
        deadline: Cancellation signal polled during normalization.

    Returns:
        `MatchAllQuery` if the formula normalizes to True, `MatchNoneQuery`
        if it normalizes to False, `CommutingQuantumQuery` otherwise.

    Raises:
        QueryParsingError, UnsupportedAtomicKind: On invalid input.
        ResourceExhausted, RecursionLimitExceeded: On configured size limits,
            including compound nesting deeper than `config.max_nesting_depth`.
        Cancelled: If the deadline expires during normalization.
    """
    config = config or DEFAULT_CONFIG
    if not isinstance(tree, (Compound, Atomic)):
        tree = parse_query(tree, config.max_nesting_depth)

    registry = LiteralRegistry()
    formula = transcribe(tree, registry, config.max_nesting_depth)
    normalized = normalize(formula, config, deadline)

    if normalized == TRUE:
        logger.info("Query normalizes to match-all")
        return MatchAllQuery(tree.boost)
    if normalized == FALSE:
        logger.info("Query normalizes to match-none")
        return MatchNoneQuery()

    calc = compile_formula(normalized)
    name = tree.name if isinstance(tree, Compound) else None
    query = CommutingQuantumQuery(normalized, calc, registry, tree.boost, name, config)
    logger.info("Built %s over %d literals", query, len(registry))
    return query


__all__ = [
    "Query",
    "Scorer",
    "MatchAllQuery",
    "MatchNoneQuery",
    "CommutingQuantumQuery",
    "to_query",
]
