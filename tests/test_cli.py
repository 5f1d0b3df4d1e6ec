import json

import pytest

from cqql_ranking.cli import EXIT_CANCELLED, EXIT_ERROR, main


@pytest.fixture
def documents(tmp_path):
    path = tmp_path / "docs.json"
    path.write_text(
        json.dumps(
            {
                "d1": "the quick brown fox",
                "d2": "an eagle watched a crocodile",
                "d3": "nothing to see here",
            }
        )
    )
    return path


def test_normalize(capsys):
    assert main(["normalize", "(a && b) || (a && c)"]) == 0
    assert capsys.readouterr().out.strip() == "(a) && (!((!(b)) && (!(c))))"


def test_compile_expand(capsys):
    assert main(["compile", "--expand", "fox || (eagle && crocodile)"]) == 0
    assert capsys.readouterr().out.strip() == "fox + eagle*crocodile - fox*eagle*crocodile"


def test_compile_raw(capsys):
    assert main(["compile", "--raw", "a || a"]) == 0
    assert capsys.readouterr().out.strip() == "a + a - a*a"


def test_transcribe(capsys):
    query = json.dumps({"should": [{"match": "fox"}, {"term": {"tag": "x"}}]})
    assert main(["transcribe", query]) == 0
    lines = capsys.readouterr().out.splitlines()
    assert lines == [
        "(match$$fox) || (term$$tag:x)",
        "  match$$fox: match 'fox'",
        "  term$$tag:x: term [tag] 'x'",
    ]


def test_formula_from_file(tmp_path, capsys):
    path = tmp_path / "formula.txt"
    path.write_text("a && !a\n")
    assert main(["normalize", f"@{path}"]) == 0
    assert capsys.readouterr().out.strip() == "False"


def test_search(documents, capsys):
    query = json.dumps({"commuting_quantum": {"should": [{"match": "fox"}, {"match": "eagle"}]}})
    assert main(["search", query, "--documents", str(documents)]) == 0
    captured = capsys.readouterr()
    rows = [line.split("\t") for line in captured.out.splitlines()]
    # d1 is shorter than d2, so its single match scores higher
    assert [row[1] for row in rows] == ["d1", "d2"]
    assert [row[0] for row in rows] == ["1", "2"]
    assert "commuting_quantum(" in captured.err


def test_search_explain(documents, capsys):
    query = json.dumps({"must": [{"match": "fox"}]})
    assert main(["search", query, "--documents", str(documents), "--explain", "--top-k", "1"]) == 0
    out = capsys.readouterr().out
    assert out.startswith("1\td1\t")
    assert "The calculation formula used for scoring is: match$$fox" in out


def test_malformed_formula(capsys):
    assert main(["normalize", "a &&"]) == EXIT_ERROR
    assert capsys.readouterr().err.startswith("Error:")


def test_malformed_query(documents, capsys):
    assert main(["search", '{"filter": []}', "--documents", str(documents)]) == EXIT_ERROR
    assert "filter" in capsys.readouterr().err


def test_missing_documents_file(tmp_path):
    assert main(["search", "{}", "--documents", str(tmp_path / "missing.json")]) == EXIT_ERROR


def test_expired_timeout(documents, capsys):
    query = json.dumps({"should": [{"match": "fox"}, {"match": "eagle"}]})
    result = main(["search", query, "--documents", str(documents), "--timeout", "-1"])
    assert result == EXIT_CANCELLED
    assert "timed out" in capsys.readouterr().err


def test_depth_limit(capsys):
    formula = "(a && b) || (a && c) || (b && d) || (c && d)"
    assert main(["--max-depth", "1", "normalize", formula]) == EXIT_ERROR
