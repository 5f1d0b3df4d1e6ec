"""
Per-query literal registry.

Each distinct atomic condition gets one stable literal name; repeated
identical conditions anywhere in the tree map to the same literal and
therefore to one score-matrix row.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator

from cqql_ranking.errors import QueryParsingError, ScoreResolutionError
from cqql_ranking.formula import Literal
from cqql_ranking.occurrence import Atomic, AtomicKind

logger = logging.getLogger(__name__)

SEPARATOR = "$$"


def literal_key(atomic: Atomic) -> tuple[AtomicKind, str | None, str]:
    """Identity of an atomic condition for deduplication (boost excluded)."""
    return (atomic.kind, atomic.field, atomic.value)


def literal_name(atomic: Atomic) -> str:
    """`<kind>$$<value>`, or `<kind>$$<field>:<value>` for field-targeted clauses."""
    if atomic.field is None:
        return f"{atomic.kind.value}{SEPARATOR}{atomic.value}"
    return f"{atomic.kind.value}{SEPARATOR}{atomic.field}:{atomic.value}"


class LiteralRegistry:
    """
    Maps literal names to the atomic clauses that produce their scores.

    Owned by a single query evaluation; iteration order is first-seen order,
    which is also the row order of the score matrix.
    """

    def __init__(self):
        self._by_key: dict[tuple[AtomicKind, str | None, str], Literal] = {}
        self._queries: dict[str, Atomic] = {}

    def register(self, atomic: Atomic) -> Literal:
        """Return the literal for `atomic`, inserting it on first sight."""
        key = literal_key(atomic)
        literal = self._by_key.get(key)
        if literal is not None:
            return literal
        literal = Literal(literal_name(atomic))
        if literal.name in self._queries:
            raise QueryParsingError(
                f"Ambiguous literal {literal.name!r}: field and value both contain ':'"
            )
        self._by_key[key] = literal
        # Stored at the neutral boost; the clause weight lives in the formula.
        self._queries[literal.name] = Atomic(atomic.kind, atomic.value, field=atomic.field)
        logger.debug("Registered literal %s", literal.name)
        return literal

    @property
    def literals(self) -> list[Literal]:
        return list(self._by_key.values())

    @property
    def queries(self) -> list[Atomic]:
        return list(self._queries.values())

    def query_for(self, literal: Literal | str) -> Atomic:
        """
        Atomic clause backing a literal.

        Raises:
            ScoreResolutionError: If the literal was never registered.
        """
        name = literal if isinstance(literal, str) else literal.name
        try:
            return self._queries[name]
        except KeyError:
            raise ScoreResolutionError(
                f"Literal {name!r} is not registered for this query", literal=name
            ) from None

    def index_of(self, literal: Literal | str) -> int:
        name = literal if isinstance(literal, str) else literal.name
        for i, registered in enumerate(self._queries):
            if registered == name:
                return i
        raise ScoreResolutionError(
            f"Literal {name!r} is not registered for this query", literal=name
        )

    def __len__(self) -> int:
        return len(self._queries)

    def __iter__(self) -> Iterator[Literal]:
        return iter(self._by_key.values())

    def __contains__(self, literal: object) -> bool:
        if isinstance(literal, Literal):
            return literal.name in self._queries
        return isinstance(literal, str) and literal in self._queries

    def __repr__(self) -> str:
        return f"LiteralRegistry({list(self._queries)!r})"


__all__ = ["SEPARATOR", "LiteralRegistry", "literal_key", "literal_name"]
