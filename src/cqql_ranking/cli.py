"""
Command line front-end.

Usage:
    cqql transcribe QUERY
    cqql normalize FORMULA
    cqql compile FORMULA [--expand]
    cqql search QUERY --documents FILE [--top-k N] [--timeout S] [--explain]

QUERY is a JSON query (with or without the `commuting_quantum` wrapper) or
`@path` to a file holding one. The documents file is a JSON object mapping
document IDs to text or to `{field: text}` objects.

Examples:
    cqql transcribe '{"should": [{"match": "fox"}, {"match": "eagle"}]}'
    cqql normalize '(a && b) || (a && c)'
    cqql search @query.json --documents docs.json --top-k 5 --explain
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from cqql_ranking.calc import compile_formula, expand, format_expression, format_polynomial
from cqql_ranking.cancellation import Deadline
from cqql_ranking.config import DEFAULT_CONFIG
from cqql_ranking.errors import Cancelled, CQQLError
from cqql_ranking.formula import check_depth, format_formula, parse_formula
from cqql_ranking.index import InMemoryIndex
from cqql_ranking.literals import LiteralRegistry
from cqql_ranking.normalize import normalize
from cqql_ranking.occurrence import parse_query
from cqql_ranking.query import to_query
from cqql_ranking.transcribe import transcribe

logger = logging.getLogger(__name__)

EXIT_ERROR = 2
EXIT_CANCELLED = 3


def _read_argument(value: str) -> str:
    if value.startswith("@"):
        return Path(value[1:]).read_text()
    return value


def _config(args: argparse.Namespace):
    return DEFAULT_CONFIG.with_overrides(
        max_overlap_depth=args.max_depth,
        max_branches=args.max_branches,
        max_dnf_terms=args.max_dnf_terms,
    )


def cmd_transcribe(args: argparse.Namespace) -> int:
    registry = LiteralRegistry()
    formula = transcribe(parse_query(_read_argument(args.query)), registry)
    print(format_formula(formula))
    for literal in registry:
        atomic = registry.query_for(literal)
        target = f" [{atomic.field}]" if atomic.field else ""
        print(f"  {literal.name}: {atomic.kind.value}{target} {atomic.value!r}")
    return 0


def cmd_normalize(args: argparse.Namespace) -> int:
    formula = parse_formula(_read_argument(args.formula))
    print(format_formula(normalize(formula, _config(args))))
    return 0


def cmd_compile(args: argparse.Namespace) -> int:
    formula = parse_formula(_read_argument(args.formula))
    if args.raw:
        check_depth(formula, _config(args).max_formula_depth)
    else:
        formula = normalize(formula, _config(args))
    expression = compile_formula(formula)
    if args.expand:
        print(format_polynomial(expand(expression, _config(args).max_dnf_terms)))
    else:
        print(format_expression(expression))
    return 0


def cmd_search(args: argparse.Namespace) -> int:
    deadline = Deadline(args.timeout)
    documents = json.loads(args.documents.read_text())
    if not isinstance(documents, dict):
        print(f"Error: {args.documents} must hold a JSON object", file=sys.stderr)
        return EXIT_ERROR
    index = InMemoryIndex(documents)

    query = to_query(_read_argument(args.query), _config(args), deadline)
    print(f"Query: {query}", file=sys.stderr)

    scorer = query.scorer(index, deadline)
    results = scorer.rank(args.top_k)
    for rank, (doc_id, score) in enumerate(results, 1):
        print(f"{rank}\t{doc_id}\t{score:.6f}")
        if args.explain:
            for line in str(scorer.explain(doc_id)).splitlines():
                print(f"\t{line}")
    logger.info("Returned %d of %d documents in %.3fs", len(results), len(index), deadline.elapsed())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cqql", description="Commuting quantum query transcription, normalization and scoring"
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (default: WARNING)",
    )
    parser.add_argument("--max-depth", type=int, help="Maximum overlap factoring depth")
    parser.add_argument("--max-branches", type=int, help="Maximum overlap branches")
    parser.add_argument("--max-dnf-terms", type=int, help="Maximum DNF terms")
    subparsers = parser.add_subparsers(dest="command", required=True)

    p = subparsers.add_parser("transcribe", help="Print the formula of a query")
    p.add_argument("query", help="JSON query or @path")
    p.set_defaults(func=cmd_transcribe)

    p = subparsers.add_parser("normalize", help="Normalize a formula")
    p.add_argument("formula", help="Formula text or @path")
    p.set_defaults(func=cmd_normalize)

    p = subparsers.add_parser("compile", help="Compile a formula to arithmetic")
    p.add_argument("formula", help="Formula text or @path")
    p.add_argument("--expand", action="store_true", help="Print the expanded polynomial")
    p.add_argument("--raw", action="store_true", help="Skip normalization")
    p.set_defaults(func=cmd_compile)

    p = subparsers.add_parser("search", help="Rank documents for a query")
    p.add_argument("query", help="JSON query or @path")
    p.add_argument("--documents", type=Path, required=True, help="JSON object of documents")
    p.add_argument("--top-k", type=int, help="Number of results (default: all)")
    p.add_argument("--timeout", type=float, help="Give up after this many seconds")
    p.add_argument("--explain", action="store_true", help="Print score explanations")
    p.set_defaults(func=cmd_search)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return args.func(args)
    except Cancelled as e:
        print(f"Cancelled: {e}", file=sys.stderr)
        return EXIT_CANCELLED
    except CQQLError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR
    except (OSError, json.JSONDecodeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
