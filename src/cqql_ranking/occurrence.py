"""
Occurrence trees and the `commuting_quantum` query DSL.

An occurrence tree is the input to transcription: a `Compound` node holds
`must`, `should` and `must_not` child lists, each child being another
`Compound` or an `Atomic` match condition.

DSL shape:

    {"commuting_quantum": {
        "must": [<clause>, ...],
        "should": [<clause>, ...],
        "must_not": [<clause>, ...],
        "boost": 1.0,
        "_name": "optional"}}

A nested compound clause may be written with or without the
`commuting_quantum` wrapper: `{"must": [...]}` reads the same as
`{"commuting_quantum": {"must": [...]}}`.

Atomic clauses accept the usual shorthand forms:

    {"match": "fox"}
    {"match": {"query": "fox", "boost": 0.4}}
    {"match": {"title": "fox"}}
    {"match": {"title": {"query": "fox", "boost": 2}}}
    {"term": {"tag": {"value": "x"}}}
    {"match_all": {}}, {"match_none": {}}
"""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from cqql_ranking.config import DEFAULT_BOOST, DEFAULT_CONFIG
from cqql_ranking.errors import QueryParsingError, ResourceExhausted, UnsupportedAtomicKind

QUERY_NAME = "commuting_quantum"

OCCURRENCES = ("must", "should", "must_not")

# Keys of a compound body; a clause made of these is an unwrapped compound
COMPOUND_KEYS = frozenset({*OCCURRENCES, "filter", "boost", "_name"})


class AtomicKind(str, Enum):
    MATCH = "match"
    TERM = "term"
    MATCH_ALL = "match_all"
    MATCH_NONE = "match_none"

    @classmethod
    def parse(cls, kind: str | AtomicKind) -> AtomicKind:
        """Look up a kind by name, raising `UnsupportedAtomicKind` for anything else."""
        try:
            return cls(kind)
        except ValueError:
            raise UnsupportedAtomicKind(str(kind)) from None


def _check_boost(boost: Any) -> float:
    if isinstance(boost, bool) or not isinstance(boost, (int, float)):
        raise QueryParsingError(f"boost must be a number, got {boost!r}")
    boost = float(boost)
    if not math.isfinite(boost) or boost < 0:
        raise QueryParsingError(f"boost must be finite and non-negative, got {boost!r}")
    return boost


@dataclass
class Atomic:
    """
    A single match condition.

    Attributes:
        kind: The atomic query type.
        value: Query text (`match`) or exact token (`term`); empty for
            `match_all` / `match_none`.
        boost: Clause weight. Reset to the neutral boost once transcribed.
        field: Target field, or None to search all fields.
    """

    kind: AtomicKind
    value: str = ""
    boost: float = DEFAULT_BOOST
    field: str | None = None

    def __post_init__(self):
        self.kind = AtomicKind.parse(self.kind)
        self.boost = _check_boost(self.boost)


@dataclass
class Compound:
    """An occurrence node combining child clauses with must/should/must_not."""

    must: list[OccurrenceNode] = field(default_factory=list)
    should: list[OccurrenceNode] = field(default_factory=list)
    must_not: list[OccurrenceNode] = field(default_factory=list)
    boost: float = DEFAULT_BOOST
    name: str | None = None

    def __post_init__(self):
        self.boost = _check_boost(self.boost)

    def is_empty(self) -> bool:
        return not (self.must or self.should or self.must_not)


OccurrenceNode = Union[Compound, Atomic]


def nesting_depth(node: OccurrenceNode) -> int:
    """Compound nesting depth of a tree (1 for a flat compound, 0 for an atomic)."""
    deepest = 0
    stack = [(node, 1)]
    while stack:
        current, depth = stack.pop()
        if isinstance(current, Compound):
            deepest = max(deepest, depth)
            children = (*current.must, *current.should, *current.must_not)
            stack.extend((child, depth + 1) for child in children)
    return deepest


def check_nesting(depth: int, max_depth: int) -> None:
    """
    Raises:
        ResourceExhausted: If `depth` exceeds `max_depth`.
    """
    if depth > max_depth:
        raise ResourceExhausted(
            f"Query nests compound clauses {depth} deep, exceeding the limit of {max_depth}",
            limit=max_depth,
        )


# =============================================================================
# DSL parsing
# =============================================================================


def _scalar(value: Any, what: str) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    raise QueryParsingError(f"{what} must be a string or number, got {value!r}")


def _parse_atomic(kind: AtomicKind, body: Any) -> Atomic:
    if kind in (AtomicKind.MATCH_ALL, AtomicKind.MATCH_NONE):
        if body is None:
            return Atomic(kind)
        if not isinstance(body, Mapping):
            raise QueryParsingError(f"[{kind.value}] expects an object, got {body!r}")
        unknown = set(body) - {"boost"}
        if unknown:
            raise QueryParsingError(f"[{kind.value}] does not support {sorted(unknown)}")
        return Atomic(kind, boost=body.get("boost", DEFAULT_BOOST))

    value_key = "query" if kind is AtomicKind.MATCH else "value"

    if not isinstance(body, Mapping):
        return Atomic(kind, _scalar(body, f"[{kind.value}] value"))

    target: str | None = None
    options: Any = body
    if value_key not in body:
        if len(body) != 1:
            raise QueryParsingError(
                f"[{kind.value}] expects a single field or a '{value_key}' key, got {sorted(body)}"
            )
        ((target, options),) = body.items()
        if not isinstance(options, Mapping):
            return Atomic(kind, _scalar(options, f"[{kind.value}] value"), field=target)
        if value_key not in options:
            raise QueryParsingError(f"[{kind.value}] on field {target!r} is missing '{value_key}'")

    unknown = set(options) - {value_key, "boost"}
    if unknown:
        raise QueryParsingError(f"[{kind.value}] does not support {sorted(unknown)}")
    return Atomic(
        kind,
        _scalar(options[value_key], f"[{kind.value}] {value_key}"),
        boost=options.get("boost", DEFAULT_BOOST),
        field=target,
    )


def _is_compound_body(clause: Mapping[str, Any]) -> bool:
    keys = set(clause)
    return keys <= COMPOUND_KEYS and bool(keys & {*OCCURRENCES, "filter"})


def _parse_clause(clause: Any, depth: int, max_depth: int) -> OccurrenceNode:
    if isinstance(clause, Mapping) and _is_compound_body(clause):
        return _parse_compound(clause, depth, max_depth)
    if not isinstance(clause, Mapping) or len(clause) != 1:
        raise QueryParsingError(f"A clause must be an object with exactly one key, got {clause!r}")
    ((key, body),) = clause.items()
    if key == QUERY_NAME:
        return _parse_compound(body, depth, max_depth)
    return _parse_atomic(AtomicKind.parse(key), body)


def _parse_clause_list(
    occurrence: str, clauses: Any, depth: int, max_depth: int
) -> list[OccurrenceNode]:
    if clauses is None:
        return []
    if isinstance(clauses, Mapping):
        clauses = [clauses]
    if not isinstance(clauses, list):
        raise QueryParsingError(f"[{occurrence}] must be a list of clauses, got {clauses!r}")
    return [_parse_clause(clause, depth + 1, max_depth) for clause in clauses]


def _parse_compound(body: Any, depth: int, max_depth: int) -> Compound:
    check_nesting(depth, max_depth)
    if body is None:
        return Compound()
    if not isinstance(body, Mapping):
        raise QueryParsingError(f"[{QUERY_NAME}] expects an object, got {body!r}")
    if "filter" in body:
        raise QueryParsingError(f"[{QUERY_NAME}] does not support the 'filter' occurrence")
    unknown = set(body) - {*OCCURRENCES, "boost", "_name"}
    if unknown:
        raise QueryParsingError(f"[{QUERY_NAME}] query does not support {sorted(unknown)}")
    name = body.get("_name")
    if name is not None and not isinstance(name, str):
        raise QueryParsingError(f"[{QUERY_NAME}] _name must be a string, got {name!r}")
    return Compound(
        must=_parse_clause_list("must", body.get("must"), depth, max_depth),
        should=_parse_clause_list("should", body.get("should"), depth, max_depth),
        must_not=_parse_clause_list("must_not", body.get("must_not"), depth, max_depth),
        boost=body.get("boost", DEFAULT_BOOST),
        name=name,
    )


def parse_query(dsl: Mapping[str, Any] | str, max_depth: int | None = None) -> Compound:
    """
    Parse a `commuting_quantum` query into an occurrence tree.

    Args:
        dsl: The query as a mapping or JSON text. Either the full
            `{"commuting_quantum": {...}}` object or just its body.
        max_depth: Maximum compound nesting, the root counting as 1
            (defaults to `DEFAULT_CONFIG.max_nesting_depth`).

    Returns:
        The root `Compound` node.

    Raises:
        QueryParsingError: On malformed structure or values.
        UnsupportedAtomicKind: On an atomic clause of an unknown kind.
        ResourceExhausted: If compound clauses nest deeper than `max_depth`.
    """
    if max_depth is None:
        max_depth = DEFAULT_CONFIG.max_nesting_depth
    if isinstance(dsl, str):
        try:
            dsl = json.loads(dsl)
        except json.JSONDecodeError as e:
            raise QueryParsingError(f"Query is not valid JSON: {e}") from e
    if isinstance(dsl, Mapping) and set(dsl) == {QUERY_NAME}:
        return _parse_compound(dsl[QUERY_NAME], 1, max_depth)
    return _parse_compound(dsl, 1, max_depth)


__all__ = [
    "QUERY_NAME",
    "OCCURRENCES",
    "AtomicKind",
    "Atomic",
    "Compound",
    "OccurrenceNode",
    "nesting_depth",
    "check_nesting",
    "parse_query",
]
