"""
Occurrence tree -> boolean formula.

must children are AND-ed, should children OR-ed, must_not children are each
negated and AND-ed; the non-empty parts are AND-ed together. A clause with a
non-neutral boost is combined with a weight literal using its occurrence's
connective (must/must_not: AND, should: OR) and its boost is reset to neutral
so the index does not apply it a second time.
"""

from __future__ import annotations

import logging

from cqql_ranking.config import DEFAULT_BOOST, DEFAULT_CONFIG
from cqql_ranking.formula import FALSE, TRUE, And, Formula, Not, Or, WeightLiteral, format_formula
from cqql_ranking.literals import LiteralRegistry
from cqql_ranking.occurrence import (
    Atomic,
    AtomicKind,
    OccurrenceNode,
    check_nesting,
    nesting_depth,
)

logger = logging.getLogger(__name__)


def _join(operands: list[Formula], combinator: type[And] | type[Or]) -> Formula | None:
    if not operands:
        return None
    if len(operands) == 1:
        return operands[0]
    return combinator(tuple(operands))


class FormulaTranscriber:
    """
    Walks an occurrence tree and emits a formula over registered literals.

    Args:
        registry: Registry to insert literals into. A fresh one is created
            when omitted; it is exposed as `self.registry` either way.
    """

    def __init__(self, registry: LiteralRegistry | None = None):
        self.registry = registry if registry is not None else LiteralRegistry()

    def transcribe(self, node: OccurrenceNode) -> Formula | None:
        """Transcribe a node; returns None for an empty compound."""
        if isinstance(node, Atomic):
            return self._atomic(node)

        must = [f for f in (self._weighted(c, "must") for c in node.must) if f is not None]
        should = [f for f in (self._weighted(c, "should") for c in node.should) if f is not None]
        must_not = [
            Not(f) for f in (self._weighted(c, "must_not") for c in node.must_not) if f is not None
        ]

        parts = [
            part
            for part in (_join(must, And), _join(should, Or), _join(must_not, And))
            if part is not None
        ]
        return _join(parts, And)

    def _atomic(self, atomic: Atomic) -> Formula:
        kind = AtomicKind.parse(atomic.kind)
        if kind is AtomicKind.MATCH_ALL:
            return TRUE
        if kind is AtomicKind.MATCH_NONE:
            return FALSE
        return self.registry.register(atomic)

    def _weighted(self, child: OccurrenceNode, occurrence: str) -> Formula | None:
        formula = self.transcribe(child)
        boost = child.boost
        child.boost = DEFAULT_BOOST
        if formula is None or boost == DEFAULT_BOOST:
            return formula
        weight = WeightLiteral(boost)
        if occurrence == "should":
            return Or((formula, weight))
        return And((formula, weight))


def transcribe(
    node: OccurrenceNode,
    registry: LiteralRegistry | None = None,
    max_depth: int | None = None,
) -> Formula | None:
    """
    Transcribe an occurrence tree into a formula.

    Args:
        node: Root of the occurrence tree. Child boosts are consumed.
        registry: Literal registry to populate (a new one if None).
        max_depth: Maximum compound nesting (defaults to
            `DEFAULT_CONFIG.max_nesting_depth`).

    Returns:
        The formula, or None for the empty formula (no clauses at all).

    Raises:
        UnsupportedAtomicKind: For atomic clauses outside the supported kinds.
        ResourceExhausted: If the tree nests deeper than `max_depth`.
    """
    if max_depth is None:
        max_depth = DEFAULT_CONFIG.max_nesting_depth
    check_nesting(nesting_depth(node), max_depth)
    transcriber = FormulaTranscriber(registry)
    formula = transcriber.transcribe(node)
    logger.debug("Transcribed formula: %s", format_formula(formula))
    return formula


__all__ = ["FormulaTranscriber", "transcribe"]
