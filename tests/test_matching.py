import pytest

from multi_replace import (
    TextDocument, MatchEngine, Rule, Region, RegexCompileError,
    decode_extended, expand_template, parse_columns, mark_color, Match,
    InvalidColumnSelection,
)


def starts(doc, rule, regions=None):
    engine = MatchEngine(doc)
    regions = regions or [Region(0, doc.length())]
    return [m.start for m in engine.find(rule, regions)]


@pytest.mark.parametrize("raw,decoded", [
    ("a\\tb", "a\tb"),
    ("\\r\\n", "\r\n"),
    ("\\x41", "A"),
    ("\\u00e9", "é"),
    ("\\o101", "A"),
    ("\\d065", "A"),
    ("\\b01000001", "A"),
    ("\\\\", "\\"),
    ("\\q", "\\q"),
    ("\\x4", "\\x4"),
    ("\\xZZ", "\\xZZ"),
    ("end\\", "end\\"),
])
def test_decode_extended(raw, decoded):
    assert decode_extended(raw) == decoded


def test_expand_template():
    match = Match(0, 7, "me@host", ("me", "host"), {"user": "me"})
    assert expand_template("$2 at $1", match) == "host at me"
    assert expand_template("\\2/\\0", match) == "host/me@host"
    assert expand_template("${user}$$1", match) == "me$1"
    assert expand_template("$9", match) == ""


def test_parse_columns():
    assert parse_columns("1,3-5") == {1, 3, 4, 5}
    assert parse_columns(" 2 , 2 ") == {2}
    assert parse_columns("") == set()
    with pytest.raises(InvalidColumnSelection):
        parse_columns("x")
    with pytest.raises(InvalidColumnSelection):
        parse_columns("5-3")
    with pytest.raises(InvalidColumnSelection):
        parse_columns("0")


def test_mark_color_is_stable():
    assert mark_color("foo") == mark_color("foo")
    assert mark_color("foo").startswith("#")
    assert len(mark_color("foo")) == 7


def test_literal_case():
    doc = TextDocument("Cat cat CAT")
    assert starts(doc, Rule("cat")) == [0, 4, 8]
    assert starts(doc, Rule("cat", match_case=True)) == [4]


def test_literal_whole_word():
    doc = TextDocument("cat concat cat_ x cat")
    assert starts(doc, Rule("cat", whole_word=True)) == [0, 18]


def test_literal_escapes_regex_metacharacters():
    doc = TextDocument("a.b axb")
    assert starts(doc, Rule("a.b")) == [0]


def test_regex_whole_word():
    doc = TextDocument("12 a34 56")
    assert starts(doc, Rule(r"\d+", mode="regex", whole_word=True)) == [0, 7]


def test_extended_find():
    doc = TextDocument("a\tb ab")
    assert starts(doc, Rule("a\\tb", mode="extended")) == [0]


def test_zero_length_matches_terminate():
    doc = TextDocument("aaa")
    assert starts(doc, Rule("x*", mode="regex")) == [0, 1, 2, 3]


def test_empty_find_text_has_no_matches():
    doc = TextDocument("abc")
    assert starts(doc, Rule("")) == []


def test_matches_stay_inside_regions():
    doc = TextDocument("ab,ab\nab,ab")
    assert starts(doc, Rule("b,a")) == [1, 7]
    columns = [Region(0, 2, 0, 1), Region(3, 5, 0, 2), Region(6, 8, 1, 1), Region(9, 11, 1, 2)]
    assert starts(doc, Rule("b,a"), columns) == []
    assert starts(doc, Rule("ab"), columns) == [0, 3, 6, 9]


def test_match_carries_region_column():
    doc = TextDocument("ab,ab")
    engine = MatchEngine(doc)
    matches = list(engine.find(Rule("b"), [Region(3, 5, 0, 2)]))
    assert [(m.start, m.line, m.column) for m in matches] == [(4, 0, 2)]


def test_match_sequence_is_restartable():
    doc = TextDocument("a a")
    seq = MatchEngine(doc).find(Rule("a"), [Region(0, 3)])
    assert [m.start for m in seq] == [m.start for m in seq] == [0, 2]


def test_regex_groups():
    doc = TextDocument("k=v")
    match = next(iter(MatchEngine(doc).find(Rule(r"(?P<key>\w)=(\w)", mode="regex"), [Region(0, 3)])))
    assert match.groups == ("k", "v")
    assert match.named == {"key": "k"}


def test_regex_compile_error():
    rule = Rule("(", mode="regex")
    with pytest.raises(RegexCompileError) as exc:
        MatchEngine(TextDocument("(")).compile(rule)
    assert exc.value.rule is rule


def test_find_next_wraps():
    doc = TextDocument("x1 x2 x3")
    engine = MatchEngine(doc)
    regions = [Region(0, doc.length())]
    assert engine.find_next(Rule("x"), regions, 1).start == 3
    assert engine.find_next(Rule("x"), regions, 7).start == 0
    assert engine.find_next(Rule("x"), regions, 7, wrap_around=False) is None
    assert engine.find_next(Rule("x"), regions, 3, "up").start == 0
    assert engine.find_next(Rule("x"), regions, 0, "up").start == 6
