"""
Error taxonomy for CQQL query evaluation.

Every error raised by this package derives from `CQQLError`. Transcription,
normalization and scoring errors abort the current query; nothing here is
caught and replaced by a default score.

`Cancelled` is not a subclass of the computation errors: a stopped search
and a broken query are caught separately.
"""

from __future__ import annotations


class CQQLError(Exception):
    """Base class for all errors raised by cqql_ranking."""


class FormulaSyntaxError(CQQLError, ValueError):
    """
    Malformed boolean formula text.

    Args:
        message: Human-readable description.
        text: The formula text that failed to parse.
        position: Character offset of the problem (None if unknown).
    """

    def __init__(self, message: str, text: str = "", position: int | None = None):
        super().__init__(message)
        self.text = text
        self.position = position


class QueryParsingError(CQQLError, ValueError):
    """Malformed commuting_quantum query DSL."""


class UnsupportedAtomicKind(CQQLError, ValueError):
    """An atomic clause whose kind is outside the supported enumeration."""

    def __init__(self, kind: str):
        super().__init__(f"Unsupported atomic query kind: {kind!r}")
        self.kind = kind


class ScoreResolutionError(CQQLError, LookupError):
    """
    A literal or document could not be matched against the score matrix.

    Args:
        message: Human-readable description.
        literal: Name of the offending literal, if any.
        doc_id: Offending document ID, if any.
    """

    def __init__(self, message: str, literal: str | None = None, doc_id: str | None = None):
        super().__init__(message)
        self.literal = literal
        self.doc_id = doc_id


class ResourceExhausted(CQQLError, RuntimeError):
    """A configured size bound was exceeded during normalization or evaluation."""

    def __init__(self, message: str, limit: int | None = None):
        super().__init__(message)
        self.limit = limit


class RecursionLimitExceeded(ResourceExhausted):
    """Overlap resolution went deeper than `Config.max_overlap_depth`."""

    def __init__(self, depth: int, limit: int):
        super().__init__(
            f"Overlap resolution depth {depth} exceeds the limit of {limit}", limit=limit
        )
        self.depth = depth


class Cancelled(CQQLError):
    """The surrounding search was cancelled or ran past its deadline."""

    def __init__(self, reason: str = "cancelled"):
        super().__init__(reason)
        self.reason = reason


__all__ = [
    "CQQLError",
    "FormulaSyntaxError",
    "QueryParsingError",
    "UnsupportedAtomicKind",
    "ScoreResolutionError",
    "ResourceExhausted",
    "RecursionLimitExceeded",
    "Cancelled",
]
