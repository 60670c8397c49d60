import math

from medrag.core.parsing import as_text, as_text_list, clamp_unit, extract_json_object


def test_extracts_object_surrounded_by_prose():
    text = 'Sure! Here is the analysis:\n{"a": 1, "b": {"c": [1, 2]}}\nLet me know if you need more.'
    assert extract_json_object(text) == {"a": 1, "b": {"c": [1, 2]}}


def test_extracts_object_from_markdown_fence():
    text = '```json\n{"a": "x",}\n```'
    assert extract_json_object(text) == {"a": "x"}


def test_no_object_returns_none():
    assert extract_json_object("no json here") is None
    assert extract_json_object("") is None
    assert extract_json_object(None) is None
    assert extract_json_object("[1, 2, 3]") is None


def test_broken_json_returns_none():
    assert extract_json_object('{"a": 1, "b": ') is None


def test_clamp_unit():
    assert clamp_unit(1.5) == 1.0
    assert clamp_unit(-0.2) == 0.0
    assert clamp_unit("0.4") == 0.4
    assert clamp_unit("85%") == 0.85
    assert clamp_unit("150%") == 1.0
    assert clamp_unit(None) == 0.0
    assert clamp_unit("high", default=0.5) == 0.5
    assert clamp_unit(math.nan) == 0.0


def test_as_text_and_lists():
    assert as_text(None) == ""
    assert as_text(["a", " b ", None, ""]) == "a; b"
    assert as_text(3) == "3"
    assert as_text_list("single") == ["single"]
    assert as_text_list(["x", None, {"k": 1}, " ", 2]) == ["x", "2"]
    assert as_text_list(42) == []
