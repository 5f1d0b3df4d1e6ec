"""
Per-document evaluation of compiled CQQL expressions.

Scoring happens in two steps:

1. `ScoreMatrix.build` asks the index for one condition scorer per registered
   literal and records every literal's score for every document
   (literals x documents, 0 where a condition does not match). The matrix is
   divided by ceil(max entry) so that all values lie in [0, 1], which the
   probability arithmetic requires.
2. `evaluate` computes the compiled expression bottom-up, either for one
   document (floats) or for all documents at once (numpy rows).

`ScoringEngine` ties both together for one query: the matrix is built on the
first score request and reused for every later document.
"""

from __future__ import annotations

import logging
import math
import operator
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from functools import cached_property, reduce
from typing import TYPE_CHECKING, Union

import numpy as np

from cqql_ranking.calc import (
    Add,
    CalcExpression,
    Multiply,
    Number,
    Subtract,
    calc_atoms,
    format_expression,
)
from cqql_ranking.cancellation import Deadline
from cqql_ranking.config import DEFAULT_BOOST
from cqql_ranking.errors import ScoreResolutionError
from cqql_ranking.formula import Literal, WeightLiteral
from cqql_ranking.index import SearchIndex, select_top_k
from cqql_ranking.literals import LiteralRegistry

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

Value = Union[float, "NDArray[np.float64]"]

EXPLAIN_PREFIX = "The calculation formula used for scoring is: "


# =============================================================================
# Expression evaluation
# =============================================================================


def evaluate(
    expression: CalcExpression,
    literal_values: Mapping[str, Value],
    weight_values: Mapping[str, float] | None = None,
) -> Value:
    """
    Evaluate a calc expression.

    Args:
        expression: Compiled expression.
        literal_values: Score per literal name; floats for one document or
            equally shaped arrays for many.
        weight_values: Optional override per weight literal name. Weight
            literals not listed use their encoded boost.

    Returns:
        The combined score (float or array, following the inputs).

    Raises:
        ScoreResolutionError: If a literal has no value.
    """
    if isinstance(expression, Number):
        return expression.value
    if isinstance(expression, WeightLiteral):
        if weight_values is not None and expression.name in weight_values:
            return weight_values[expression.name]
        return expression.value
    if isinstance(expression, Literal):
        try:
            return literal_values[expression.name]
        except KeyError:
            raise ScoreResolutionError(
                f"No score for literal {expression.name!r}", literal=expression.name
            ) from None
    if isinstance(expression, Add):
        return reduce(
            operator.add, (evaluate(o, literal_values, weight_values) for o in expression.operands)
        )
    if isinstance(expression, Multiply):
        return reduce(
            operator.mul, (evaluate(o, literal_values, weight_values) for o in expression.operands)
        )
    if isinstance(expression, Subtract):
        return evaluate(expression.left, literal_values, weight_values) - evaluate(
            expression.right, literal_values, weight_values
        )
    raise TypeError(f"Not a calc expression: {expression!r}")


# =============================================================================
# Score matrix
# =============================================================================


@dataclass(eq=False)
class ScoreMatrix:
    """
    Normalized literal x document scores for one query execution.

    Attributes:
        values: (num_literals, num_documents) array with entries in [0, 1].
        literal_names: Row labels, in registry order.
        doc_ids: Column labels in index order.
        scale: The divisor applied, ceil of the raw maximum (1 if no
            positive score).
    """

    values: NDArray[np.float64]
    literal_names: list[str]
    doc_ids: list[str]
    scale: float = 1.0
    _literal_index: dict[str, int] = field(init=False, repr=False)
    _doc_index: dict[str, int] = field(init=False, repr=False)

    def __post_init__(self):
        self._literal_index = {name: i for i, name in enumerate(self.literal_names)}
        self._doc_index = {doc_id: i for i, doc_id in enumerate(self.doc_ids)}

    @classmethod
    def build(
        cls,
        registry: LiteralRegistry,
        index: SearchIndex,
        deadline: Deadline | None = None,
        literals: Sequence[Literal] | None = None,
    ) -> ScoreMatrix:
        """
        Score registered literals against every document of the index.

        Args:
            registry: Registry mapping literals to their conditions.
            index: Index to score against.
            deadline: Cancellation signal polled per row and document.
            literals: Rows to build, in order (every registered literal when
                None). Each must be registered.

        Raises:
            ScoreResolutionError: If the index lists a document twice or a
                condition scorer returns a document outside the index.
            Cancelled: If the deadline expires.
        """
        deadline = deadline or Deadline.never()
        doc_ids = list(index.list_all_documents())
        doc_index = {doc_id: i for i, doc_id in enumerate(doc_ids)}
        if len(doc_index) != len(doc_ids):
            raise ScoreResolutionError("Index lists duplicate document IDs")

        if literals is None:
            literals = registry.literals
        literal_names = [literal.name for literal in literals]
        queries = [registry.query_for(literal) for literal in literals]
        values = np.zeros((len(literal_names), len(doc_ids)), dtype=np.float64)
        for row, (name, atomic) in enumerate(zip(literal_names, queries)):
            deadline.check()
            scores = index.create_scorer(atomic).score_documents(doc_ids)
            for doc_id, score in scores.items():
                deadline.check()
                column = doc_index.get(doc_id)
                if column is None:
                    raise ScoreResolutionError(
                        f"Condition {name!r} scored unknown document {doc_id!r}",
                        literal=name,
                        doc_id=doc_id,
                    )
                values[row, column] = score

        raw_max = float(values.max()) if values.size else 0.0
        scale = float(math.ceil(raw_max)) if raw_max > 0 else 1.0
        values /= scale
        logger.debug(
            "Built %dx%d score matrix (raw max %.4f, scale %g)",
            len(literal_names),
            len(doc_ids),
            raw_max,
            scale,
        )
        return cls(values, literal_names, doc_ids, scale)

    @property
    def shape(self) -> tuple[int, int]:
        return self.values.shape

    def doc_index(self, doc_id: str) -> int:
        try:
            return self._doc_index[doc_id]
        except KeyError:
            raise ScoreResolutionError(f"Unknown document {doc_id!r}", doc_id=doc_id) from None

    def row(self, literal: Literal | str) -> NDArray[np.float64]:
        """Scores of one literal across all documents."""
        name = literal if isinstance(literal, str) else literal.name
        try:
            return self.values[self._literal_index[name]]
        except KeyError:
            raise ScoreResolutionError(
                f"Literal {name!r} has no row in the score matrix", literal=name
            ) from None

    def rows(self) -> dict[str, NDArray[np.float64]]:
        return {name: self.values[i] for i, name in enumerate(self.literal_names)}

    def column(self, doc_id: str) -> dict[str, float]:
        """Scores of all literals for one document."""
        j = self.doc_index(doc_id)
        return {name: float(self.values[i, j]) for i, name in enumerate(self.literal_names)}


# =============================================================================
# Explanations
# =============================================================================


@dataclass
class Explanation:
    """Score breakdown for one document."""

    value: float
    description: str
    details: list[Explanation] = field(default_factory=list)

    def __str__(self) -> str:
        lines: list[str] = []
        self._render(lines, 0)
        return "\n".join(lines)

    def _render(self, lines: list[str], depth: int) -> None:
        lines.append(f"{'  ' * depth}{self.value:.6g} = {self.description}")
        for detail in self.details:
            detail._render(lines, depth + 1)


# =============================================================================
# Scorers
# =============================================================================


class ScoringEngine:
    """
    Scores documents for one compiled CQQL query.

    Args:
        expression: Compiled calc expression.
        registry: Literal registry the expression was built against.
        index: Search index supplying per-condition scores.
        boost: Multiplier applied to every final score.
        deadline: Cancellation signal for matrix construction.

    Raises:
        ScoreResolutionError: If the expression references a literal the
            registry does not know.
    """

    def __init__(
        self,
        expression: CalcExpression,
        registry: LiteralRegistry,
        index: SearchIndex,
        boost: float = DEFAULT_BOOST,
        deadline: Deadline | None = None,
    ):
        self.expression = expression
        self.registry = registry
        self.index = index
        self.boost = boost
        self.deadline = deadline
        self.max_score = 0.0
        self._atoms = calc_atoms(expression)
        for atom in self._atoms:
            if isinstance(atom, Literal) and atom not in registry:
                raise ScoreResolutionError(
                    f"Literal {atom.name!r} is not registered for this query", literal=atom.name
                )

    @cached_property
    def matrix(self) -> ScoreMatrix:
        # Only literals the expression reads; absorbed ones are never scored.
        used = set(self._atoms)
        literals = [literal for literal in self.registry.literals if literal in used]
        return ScoreMatrix.build(self.registry, self.index, self.deadline, literals)

    @property
    def doc_ids(self) -> list[str]:
        return self.matrix.doc_ids

    def _track(self, score: float) -> float:
        if score > self.max_score:
            self.max_score = score
        return score

    def score(self, doc_id: str) -> float:
        """
        Score one document.

        Raises:
            ScoreResolutionError: If the document is not in the index.
        """
        value = evaluate(self.expression, self.matrix.column(doc_id))
        return self._track(float(value) * self.boost)

    def score_all(self) -> NDArray[np.float64]:
        """Scores for every document, in index order."""
        values = evaluate(self.expression, self.matrix.rows())
        scores = np.broadcast_to(
            np.asarray(values, dtype=np.float64), (len(self.matrix.doc_ids),)
        ) * self.boost
        if scores.size:
            self._track(float(scores.max()))
        return scores

    def rank(self, top_k: int | None = None) -> list[tuple[str, float]]:
        """Documents with a positive score, highest first."""
        indices, scores = select_top_k(self.score_all(), top_k)
        doc_ids = self.matrix.doc_ids
        return [(doc_ids[i], float(s)) for i, s in zip(indices, scores) if s > 0]

    def explain(self, doc_id: str) -> Explanation:
        column = self.matrix.column(doc_id)
        details = []
        for atom in self._atoms:
            if isinstance(atom, WeightLiteral):
                details.append(Explanation(atom.value, f"weight {atom.name}"))
            else:
                details.append(
                    Explanation(column[atom.name], f"{atom.name} (normalized by {self.matrix.scale:g})")
                )
        if self.boost != DEFAULT_BOOST:
            details.append(Explanation(self.boost, "boost"))
        return Explanation(
            self.score(doc_id),
            EXPLAIN_PREFIX + format_expression(self.expression),
            details,
        )


class ConstantScorer:
    """
    Scores every document of the index with the same value.

    Used for queries that normalize to True (value = boost) or False (0).
    """

    def __init__(
        self,
        index: SearchIndex,
        value: float,
        description: str,
    ):
        self.index = index
        self.value = value
        self.description = description
        self.max_score = 0.0

    @cached_property
    def doc_ids(self) -> list[str]:
        return list(self.index.list_all_documents())

    @cached_property
    def _known(self) -> frozenset[str]:
        return frozenset(self.doc_ids)

    def score(self, doc_id: str) -> float:
        if doc_id not in self._known:
            raise ScoreResolutionError(f"Unknown document {doc_id!r}", doc_id=doc_id)
        self.max_score = max(self.max_score, self.value)
        return self.value

    def score_all(self) -> NDArray[np.float64]:
        if self.doc_ids:
            self.max_score = max(self.max_score, self.value)
        return np.full(len(self.doc_ids), self.value, dtype=np.float64)

    def rank(self, top_k: int | None = None) -> list[tuple[str, float]]:
        if self.value <= 0 or (top_k is not None and top_k <= 0):
            return []
        doc_ids: Sequence[str] = self.doc_ids if top_k is None else self.doc_ids[:top_k]
        return [(doc_id, self.value) for doc_id in doc_ids]

    def explain(self, doc_id: str) -> Explanation:
        return Explanation(self.score(doc_id), self.description)


__all__ = [
    "EXPLAIN_PREFIX",
    "evaluate",
    "ScoreMatrix",
    "Explanation",
    "ScoringEngine",
    "ConstantScorer",
]
