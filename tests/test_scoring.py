import threading

import numpy as np
import pytest

from cqql_ranking.calc import compile_formula
from cqql_ranking.cancellation import Deadline
from cqql_ranking.errors import Cancelled, ScoreResolutionError
from cqql_ranking.formula import Literal, WeightLiteral, atoms, parse_formula
from cqql_ranking.literals import LiteralRegistry, literal_name
from cqql_ranking.normalize import normalize
from cqql_ranking.occurrence import Atomic, AtomicKind
from cqql_ranking.scoring import (
    EXPLAIN_PREFIX,
    ConstantScorer,
    ScoreMatrix,
    ScoringEngine,
    evaluate,
)


class FakeScorer:
    def __init__(self, scores):
        self.scores = scores

    def score_documents(self, doc_ids):
        return dict(self.scores)


class FakeIndex:
    """Fixed per-literal scores; counts scorer creation."""

    def __init__(self, doc_ids, scores):
        self.doc_ids = doc_ids
        self.scores = scores
        self.scorers_created = 0

    def list_all_documents(self):
        return list(self.doc_ids)

    def create_scorer(self, atomic):
        self.scorers_created += 1
        return FakeScorer(self.scores.get(literal_name(atomic), {}))


def registry_for(*values):
    registry = LiteralRegistry()
    for value in values:
        registry.register(Atomic(AtomicKind.MATCH, value))
    return registry


def engine_for(text, index, boost=1.0, deadline=None):
    formula = parse_formula(text)
    registry = LiteralRegistry()
    for atom in atoms(formula):
        if isinstance(atom, Literal):
            kind, value = atom.name.split("$$", 1)
            registry.register(Atomic(kind, value))
    expression = compile_formula(normalize(formula))
    return ScoringEngine(expression, registry, index, boost, deadline)


@pytest.fixture
def index():
    return FakeIndex(
        ["d1", "d2", "d3", "d4"],
        {
            "match$$fox": {"d1": 2.5, "d3": 1.0},
            "match$$eagle": {"d2": 2.0, "d3": 2.0},
            "match$$crocodile": {"d2": 1.0, "d3": 0.5},
        },
    )


class TestEvaluate:
    def test_scalar(self):
        expression = compile_formula(parse_formula("a && !b"))
        assert evaluate(expression, {"a": 0.5, "b": 0.25}) == pytest.approx(0.375)

    def test_weight_defaults_to_encoded_value(self):
        expression = compile_formula(parse_formula("a && w$$0$4"))
        assert evaluate(expression, {"a": 0.5}) == pytest.approx(0.2)

    def test_weight_override(self):
        expression = compile_formula(parse_formula("a && w$$0$4"))
        assert evaluate(expression, {"a": 0.5}, {WeightLiteral(0.4).name: 1.0}) == pytest.approx(0.5)

    def test_missing_literal(self):
        expression = compile_formula(parse_formula("a || b"))
        with pytest.raises(ScoreResolutionError) as excinfo:
            evaluate(expression, {"a": 0.5})
        assert excinfo.value.literal == "b"

    def test_vectorized_matches_scalar(self):
        expression = compile_formula(normalize(parse_formula("(a && b) || (a && c) || d")))
        rng = np.random.default_rng(0)
        rows = {name: rng.random(16) for name in "abcd"}
        vectorized = evaluate(expression, rows)
        for j in range(16):
            scalar = evaluate(expression, {name: float(row[j]) for name, row in rows.items()})
            assert vectorized[j] == pytest.approx(scalar)


class TestScoreMatrix:
    def test_normalized_by_ceiling_of_max(self, index):
        matrix = ScoreMatrix.build(registry_for("fox", "eagle"), index)
        assert matrix.shape == (2, 4)
        assert matrix.scale == 3.0
        np.testing.assert_allclose(matrix.row("match$$fox"), [2.5 / 3, 0.0, 1.0 / 3, 0.0])
        np.testing.assert_allclose(matrix.row(Literal("match$$eagle")), [0.0, 2 / 3, 2 / 3, 0.0])

    def test_scores_within_unit_range_are_kept(self):
        index = FakeIndex(["d1", "d2"], {"match$$fox": {"d1": 0.6}})
        matrix = ScoreMatrix.build(registry_for("fox"), index)
        assert matrix.scale == 1.0
        assert matrix.column("d1") == {"match$$fox": pytest.approx(0.6)}

    def test_no_matches(self):
        matrix = ScoreMatrix.build(registry_for("fox"), FakeIndex(["d1"], {}))
        assert matrix.scale == 1.0
        assert matrix.column("d1") == {"match$$fox": 0.0}

    def test_unknown_document_from_scorer(self):
        index = FakeIndex(["d1"], {"match$$fox": {"d9": 1.0}})
        with pytest.raises(ScoreResolutionError) as excinfo:
            ScoreMatrix.build(registry_for("fox"), index)
        assert excinfo.value.doc_id == "d9"
        assert excinfo.value.literal == "match$$fox"

    def test_duplicate_documents(self):
        with pytest.raises(ScoreResolutionError):
            ScoreMatrix.build(registry_for("fox"), FakeIndex(["d1", "d1"], {}))

    def test_unknown_row_and_column(self, index):
        matrix = ScoreMatrix.build(registry_for("fox"), index)
        with pytest.raises(ScoreResolutionError):
            matrix.row("match$$eagle")
        with pytest.raises(ScoreResolutionError):
            matrix.column("d9")

    def test_selected_literals_only(self, index):
        registry = registry_for("fox", "eagle")
        matrix = ScoreMatrix.build(registry, index, literals=[Literal("match$$fox")])
        assert matrix.literal_names == ["match$$fox"]
        assert matrix.scale == 3.0
        assert index.scorers_created == 1

    def test_cancelled(self, index):
        event = threading.Event()
        event.set()
        with pytest.raises(Cancelled):
            ScoreMatrix.build(registry_for("fox"), index, Deadline(event=event))


class TestScoringEngine:
    def test_matrix_built_once(self, index):
        engine = engine_for("match$$fox || match$$eagle", index)
        assert index.scorers_created == 0
        engine.score("d1")
        engine.score("d2")
        engine.score_all()
        assert index.scorers_created == 2

    def test_score_matches_formula(self, index):
        engine = engine_for("match$$fox || (match$$eagle && match$$crocodile)", index)
        f, e, c = 1.0 / 3, 2.0 / 3, 0.5 / 3
        assert engine.score("d3") == pytest.approx(f + e * c - f * e * c)
        assert engine.score("d4") == 0.0

    def test_score_all_matches_score(self, index):
        engine = engine_for("(match$$fox && match$$eagle) || (match$$fox && !match$$crocodile)", index)
        scores = engine.score_all()
        assert scores.shape == (4,)
        for doc_id, value in zip(index.doc_ids, scores):
            assert engine.score(doc_id) == pytest.approx(value)

    def test_constant_expression_broadcasts(self, index):
        engine = ScoringEngine(compile_formula(None), LiteralRegistry(), index)
        np.testing.assert_allclose(engine.score_all(), np.ones(4))

    def test_boost_and_max_score(self, index):
        engine = engine_for("match$$fox", index, boost=2.0)
        assert engine.score("d1") == pytest.approx(2 * 2.5 / 3)
        engine.score("d3")
        assert engine.max_score == pytest.approx(2 * 2.5 / 3)

    def test_rank(self, index):
        engine = engine_for("match$$fox || match$$eagle", index)
        ranking = engine.rank()
        assert [doc_id for doc_id, _ in ranking] == ["d1", "d3", "d2"]
        assert ranking[0][1] > ranking[1][1] > ranking[2][1]
        assert engine.rank(top_k=1) == ranking[:1]

    def test_unknown_document(self, index):
        engine = engine_for("match$$fox", index)
        with pytest.raises(ScoreResolutionError) as excinfo:
            engine.score("d9")
        assert excinfo.value.doc_id == "d9"

    def test_unused_registered_literal_is_not_scored(self, index):
        expression = compile_formula(parse_formula("match$$fox"))
        engine = ScoringEngine(expression, registry_for("fox", "eagle"), index)
        assert engine.matrix.literal_names == ["match$$fox"]
        assert index.scorers_created == 1

    def test_unused_literal_does_not_change_scale(self):
        index = FakeIndex(["d1", "d2"], {"match$$fox": {"d1": 0.6}, "match$$eagle": {"d2": 5.0}})
        engine = ScoringEngine(
            compile_formula(parse_formula("match$$fox")), registry_for("fox", "eagle"), index
        )
        assert engine.score("d1") == pytest.approx(0.6)

    def test_unregistered_literal(self, index):
        expression = compile_formula(parse_formula("match$$fox && match$$eagle"))
        with pytest.raises(ScoreResolutionError):
            ScoringEngine(expression, registry_for("fox"), index)

    def test_explain(self, index):
        engine = engine_for("match$$fox && w$$0$5", index)
        explanation = engine.explain("d1")
        assert explanation.value == pytest.approx(0.5 * 2.5 / 3)
        assert explanation.description == EXPLAIN_PREFIX + "match$$fox*w$$0$5"
        assert [detail.value for detail in explanation.details] == [
            pytest.approx(2.5 / 3),
            0.5,
        ]
        assert str(explanation).startswith(f"{explanation.value:.6g} = {EXPLAIN_PREFIX}")


class TestConstantScorer:
    def test_match_all(self, index):
        scorer = ConstantScorer(index, 1.0, "match all documents")
        assert scorer.score("d2") == 1.0
        assert scorer.rank(top_k=2) == [("d1", 1.0), ("d2", 1.0)]
        np.testing.assert_allclose(scorer.score_all(), np.ones(4))
        assert scorer.explain("d1").description == "match all documents"

    def test_match_none(self, index):
        scorer = ConstantScorer(index, 0.0, "match no documents")
        assert scorer.score("d1") == 0.0
        assert scorer.rank() == []

    @pytest.mark.parametrize("top_k", [0, -1])
    def test_rank_without_room(self, index, top_k):
        scorer = ConstantScorer(index, 1.0, "match all documents")
        assert scorer.rank(top_k=top_k) == []

    def test_unknown_document(self, index):
        with pytest.raises(ScoreResolutionError):
            ConstantScorer(index, 1.0, "match all documents").score("d9")
