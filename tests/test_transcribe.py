import pytest

from cqql_ranking.errors import ResourceExhausted, ScoreResolutionError, UnsupportedAtomicKind
from cqql_ranking.formula import FALSE, TRUE, Literal, Not, WeightLiteral, atoms, format_formula
from cqql_ranking.literals import LiteralRegistry, literal_name
from cqql_ranking.occurrence import Atomic, AtomicKind, Compound, parse_query
from cqql_ranking.transcribe import FormulaTranscriber, transcribe


def match(value, boost=1.0, field=None):
    return Atomic(AtomicKind.MATCH, value, boost, field)


def test_scenario_should_with_nested_must():
    tree = parse_query(
        {"should": [{"match": "fox"}, {"commuting_quantum": {"must": [{"match": "eagle"}, {"match": "crocodile"}]}}]}
    )
    formula = transcribe(tree)
    assert format_formula(formula) == "(match$$fox) || ((match$$eagle) && (match$$crocodile))"


def test_unwrapped_nested_compound_transcribes_the_same():
    wrapped = parse_query(
        {"should": [{"match": "fox"}, {"commuting_quantum": {"must": [{"match": "eagle"}, {"match": "crocodile"}]}}]}
    )
    unwrapped = parse_query(
        {"should": [{"match": "fox"}, {"must": [{"match": "eagle"}, {"match": "crocodile"}]}]}
    )
    assert transcribe(unwrapped) == transcribe(wrapped)


def test_deeply_nested_tree():
    tree = Compound(must=[match("fox")])
    for _ in range(1000):
        tree = Compound(must=[tree])
    with pytest.raises(ResourceExhausted):
        transcribe(tree)


def test_nesting_limit():
    tree = Compound(must=[Compound(must=[match("fox")])])
    with pytest.raises(ResourceExhausted):
        transcribe(tree, max_depth=1)
    assert transcribe(tree, max_depth=2) == Literal("match$$fox")


def test_scenario_must_with_weight():
    tree = Compound(must=[match("fox"), match("crocodile", boost=0.4)])
    formula = transcribe(tree)
    assert format_formula(formula) == "(match$$fox) && ((match$$crocodile) && (w$$0$4))"
    assert WeightLiteral(0.4) in atoms(formula)


def test_boost_is_consumed():
    crocodile = match("crocodile", boost=0.4)
    nested = Compound(must=[match("eagle")], boost=3.0)
    transcribe(Compound(must=[crocodile], should=[nested]))
    assert crocodile.boost == 1.0
    assert nested.boost == 1.0


def test_should_weight_is_disjoined():
    tree = Compound(should=[match("fox", boost=2), match("eagle")])
    assert format_formula(transcribe(tree)) == "((match$$fox) || (w$$2$0)) || (match$$eagle)"


def test_must_not_weight_is_negated_with_clause():
    tree = Compound(must_not=[match("cat", boost=0.5)])
    assert format_formula(transcribe(tree)) == "!((match$$cat) && (w$$0$5))"


def test_all_occurrences():
    tree = Compound(must=[match("a")], should=[match("b"), match("c")], must_not=[match("d")])
    assert format_formula(transcribe(tree)) == (
        "(match$$a) && ((match$$b) || (match$$c)) && (!(match$$d))"
    )


def test_must_not_children_negated_individually():
    tree = Compound(must_not=[match("a"), match("b")])
    assert format_formula(transcribe(tree)) == "(!(match$$a)) && (!(match$$b))"


def test_empty_tree_is_empty_formula():
    assert transcribe(Compound()) is None
    assert format_formula(transcribe(Compound())) == ""


def test_empty_nested_compound_contributes_nothing():
    tree = Compound(must=[Compound(), match("a")], should=[Compound(boost=2.0)])
    assert transcribe(tree) == Literal("match$$a")


def test_match_all_and_match_none_are_constants():
    registry = LiteralRegistry()
    tree = Compound(
        must=[Atomic(AtomicKind.MATCH_ALL)], must_not=[Atomic(AtomicKind.MATCH_NONE)]
    )
    formula = transcribe(tree, registry)
    assert format_formula(formula) == "(True) && (!(False))"
    assert len(registry) == 0


def test_scenario_must_not_match_none():
    formula = transcribe(parse_query({"must_not": [{"match_none": {}}]}))
    assert formula == Not(FALSE)


def test_single_atomic_root():
    assert transcribe(Atomic(AtomicKind.MATCH_ALL)) == TRUE


def test_unsupported_kind():
    node = match("fox")
    node.kind = "fuzzy"
    with pytest.raises(UnsupportedAtomicKind):
        transcribe(Compound(must=[node]))


class TestLiteralRegistry:
    def test_identical_conditions_share_a_literal(self):
        registry = LiteralRegistry()
        tree = Compound(
            should=[match("fox"), Compound(must=[match("fox", boost=0.3), match("eagle")])]
        )
        FormulaTranscriber(registry).transcribe(tree)
        assert [literal.name for literal in registry] == ["match$$fox", "match$$eagle"]
        assert len(registry) == 2

    def test_kind_and_field_distinguish_literals(self):
        registry = LiteralRegistry()
        literals = {
            registry.register(match("fox")),
            registry.register(Atomic(AtomicKind.TERM, "fox")),
            registry.register(match("fox", field="title")),
        }
        assert len(literals) == 3
        assert Literal("match$$title:fox") in registry

    def test_registered_query_has_neutral_boost(self):
        registry = LiteralRegistry()
        literal = registry.register(match("fox", boost=2.0, field="title"))
        assert registry.query_for(literal) == match("fox", field="title")
        assert registry.query_for("match$$title:fox").boost == 1.0

    def test_unknown_literal(self):
        with pytest.raises(ScoreResolutionError) as excinfo:
            LiteralRegistry().query_for(Literal("match$$fox"))
        assert excinfo.value.literal == "match$$fox"

    @pytest.mark.parametrize(
        "atomic, name",
        [
            (Atomic(AtomicKind.MATCH, "quick fox"), "match$$quick fox"),
            (Atomic(AtomicKind.TERM, "x", field="tag"), "term$$tag:x"),
        ],
    )
    def test_literal_name(self, atomic, name):
        assert literal_name(atomic) == name
