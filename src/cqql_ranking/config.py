"""
Tunable limits for query normalization and evaluation.

Defaults are conservative: overlap resolution is bounded by the number of
distinct overlapping literals, so a depth of 64 already covers queries far
larger than anything written by hand.
"""

from __future__ import annotations

from dataclasses import dataclass, replace

# Boost of a clause that carries no weight. Clauses with this boost do not
# produce a weight literal.
DEFAULT_BOOST = 1.0

# Lucene defaults for the reference index
DEFAULT_K1 = 0.9
DEFAULT_B = 0.4


@dataclass(frozen=True)
class Config:
    """
    Per-query evaluation limits.

    Attributes:
        max_overlap_depth: Maximum nesting of overlap factoring before
            `RecursionLimitExceeded` is raised.
        max_branches: Maximum number of branches the overlap worklist may
            create for one formula.
        max_dnf_terms: Maximum number of disjuncts produced by DNF expansion.
        max_equivalence_literals: Maximum number of distinct literals for a
            truth-table equivalence check (2**n assignments).
        max_nesting_depth: Maximum nesting of compound clauses in a query.
        max_formula_depth: Maximum nesting of formula operators accepted for
            normalization and compilation.
    """

    max_overlap_depth: int = 64
    max_branches: int = 4096
    max_dnf_terms: int = 4096
    max_equivalence_literals: int = 16
    max_nesting_depth: int = 64
    max_formula_depth: int = 320

    def with_overrides(self, **overrides: int) -> "Config":
        """Return a copy with the given fields replaced (None values are ignored)."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


DEFAULT_CONFIG = Config()

__all__ = ["Config", "DEFAULT_CONFIG", "DEFAULT_BOOST", "DEFAULT_K1", "DEFAULT_B"]
