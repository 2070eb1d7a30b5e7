import pytest

from multi_replace import (
    TextDocument, ReplaceSession, ReplaceConfig, Rule, Match, MatchCounters,
    ReplacementResolver, ExpressionEvaluator, ScriptError, RegexCompileError,
    InvalidDelimiter, InvalidColumnSelection, SKIP, to_replacement_text,
)


class RecordingDocument(TextDocument):
    def __init__(self, text):
        super().__init__(text)
        self.calls = []

    def replace(self, start, end, text):
        self.calls.append((start, end))
        super().replace(start, end, text)


def make_session(text, *rules, **config):
    doc = TextDocument(text)
    session = ReplaceSession(doc, ReplaceConfig(**config))
    for rule in rules:
        session.add_rule(rule)
    return doc, session


def test_replace_all_literal():
    doc, session = make_session("foo bar foo", Rule("foo", "baz"))
    stats = session.replace_all()
    assert doc.text == "baz bar baz"
    assert stats.find_count == stats.replace_count == 2
    assert stats.status == "completed"


def test_offsets_shift_after_longer_replacements():
    doc = RecordingDocument("a a a")
    session = ReplaceSession(doc)
    session.add_rule(find_text="a", replace_text="xyz")
    session.replace_all()
    assert doc.calls == [(0, 1), (4, 5), (8, 9)]
    assert doc.text == "xyz xyz xyz"


def test_backward_direction_edits_from_the_end():
    doc = RecordingDocument("a a a")
    session = ReplaceSession(doc, ReplaceConfig(direction="backward"))
    session.add_rule(find_text="a", replace_text="xyz")
    session.replace_all()
    assert doc.calls == [(4, 5), (2, 3), (0, 1)]
    assert doc.text == "xyz xyz xyz"


def test_rules_apply_in_list_order():
    doc, session = make_session("a", Rule("a", "b"), Rule("b", "c"))
    session.replace_all()
    assert doc.text == "c"


def test_disabled_rules_are_skipped():
    doc, session = make_session("a", Rule("a", "b", enabled=False), Rule("a", "c"))
    stats = session.replace_all()
    assert doc.text == "c"
    assert len(stats.rule_counts) == 1


def test_single_rule_outside_list():
    doc, session = make_session("a b", Rule("a", "x"))
    session.replace_all(Rule("b", "y"))
    assert doc.text == "a y"


def test_regex_template_and_extended_replacement():
    doc, session = make_session("me@host a,b",
                                Rule(r"(\w+)@(\w+)", "$2 at $1", mode="regex"),
                                Rule(",", "\\t", mode="extended"))
    session.replace_all()
    assert doc.text == "host at me a\tb"


def test_dynamic_counter():
    doc, session = make_session("1 2 3", Rule(r"\d+", "CNT * 10", mode="regex", dynamic=True))
    stats = session.replace_all()
    assert doc.text == "10 20 30"
    assert stats.replace_count == stats.find_count == 3


def test_dynamic_line_variables():
    doc, session = make_session("x x\nx", Rule("x", "str(LINE) + ':' + str(LCNT)", dynamic=True))
    session.replace_all()
    assert doc.text == "1:1 1:2\n2:1"


def test_dynamic_position_variables():
    doc, session = make_session("ab\nab", Rule("b", "str(LPOS) + '/' + str(APOS)", dynamic=True))
    session.replace_all()
    assert doc.text == "a2/2\na2/7"


def test_dynamic_captures():
    doc, session = make_session("1-2 3-4",
                                Rule(r"(\d)-(\d)", "num(CAP1) + num(CAP2)", mode="regex", dynamic=True))
    session.replace_all()
    assert doc.text == "3 7"


def test_dynamic_skip_leaves_match():
    doc, session = make_session("1 2 3", Rule(r"\d", "SKIP if num(MATCH) == 2 else MATCH + '!'",
                                              mode="regex", dynamic=True))
    stats = session.replace_all()
    assert doc.text == "1! 2 3!"
    assert stats.find_count == 3
    assert stats.replace_count == 2


def test_script_error_skips_match():
    doc, session = make_session("1 0 2", Rule(r"\d", "10 / num(MATCH)", mode="regex", dynamic=True))
    stats = session.replace_all()
    assert doc.text == "10 0 5"
    assert stats.skipped == 1
    assert stats.status == "completed_with_errors"


def test_script_error_aborts_rule():
    doc, session = make_session("1 0 2",
                                Rule(r"\d", "10 / num(MATCH)", mode="regex", dynamic=True),
                                Rule("2", "two"),
                                on_script_error="abort_rule")
    stats = session.replace_all()
    assert doc.text == "10 0 two"
    assert stats.failed_rules == 1
    assert session.rules[0].replace_count == 1


def test_bad_pattern_is_skipped():
    doc, session = make_session("a", Rule("(", mode="regex"), Rule("a", "b"))
    stats = session.replace_all()
    assert doc.text == "b"
    assert stats.failed_rules == 1
    assert len(stats.errors) == 1


def test_bad_pattern_aborts_pass():
    doc, session = make_session("a", Rule("(", mode="regex"), Rule("a", "b"), on_rule_error="abort")
    with pytest.raises(RegexCompileError):
        session.replace_all()
    assert doc.text == "a"


def test_cancel_keeps_applied_edits():
    doc, session = make_session("a a a", Rule("a", "b"), chunk_size=1)
    doc.notify_change(lambda event: session.cancel())
    stats = session.replace_all()
    assert stats.cancelled
    assert stats.status == "cancelled"
    assert doc.text == "b a a"
    assert stats.replace_count == 1


def test_mark_and_count_do_not_edit():
    doc, session = make_session("foo bar foo", Rule("foo", "x"))
    stats = session.mark_all()
    assert doc.text == "foo bar foo"
    assert stats.find_count == 2
    assert [(s, e) for s, e, _ in doc.marks()] == [(0, 3), (8, 11)]
    assert session.marked_text() == "foo\nfoo"
    session.clear_marks()
    assert doc.marks() == []

    stats = session.count_all()
    assert stats.find_count == 2
    assert stats.replace_count == 0
    assert doc.text == "foo bar foo"


def test_selection_scope_tracks_growth():
    doc, session = make_session("a a a a", Rule("a", "bb"), Rule("b", "c"), scope="selection")
    doc.set_selection(2, 5)
    session.replace_all()
    assert doc.text == "a cc cc a"


def test_column_scope():
    doc, session = make_session("a,a\na,a", Rule("a", "b"), scope="column", columns="2")
    session.replace_all()
    assert doc.text == "a,b\na,b"


def test_column_scope_follows_line_changes():
    doc, session = make_session("a,a\na,a", Rule("a", "b"), scope="column", columns="2")
    session.replace_all()
    doc.replace(0, 0, "z,z\n")
    session.replace_all(Rule("z", "y"))
    assert doc.text == "z,y\na,b\na,b"


def test_empty_columns_search_whole_document():
    messages = []
    doc = TextDocument("a,a")
    session = ReplaceSession(doc, ReplaceConfig(scope="column", columns=""),
                             log_callback=lambda m, l: messages.append(l))
    session.add_rule(find_text="a", replace_text="b")
    session.replace_all()
    assert doc.text == "b,b"
    assert "warning" in messages


def test_invalid_scope_fails_before_editing():
    doc, session = make_session("a,a", Rule("a", "b"), scope="column", columns="1", delimiter="")
    with pytest.raises(InvalidDelimiter):
        session.replace_all()
    assert doc.text == "a,a"

    session.config.delimiter = ","
    session.config.columns = "x"
    with pytest.raises(InvalidColumnSelection):
        session.replace_all()
    assert doc.text == "a,a"


def test_locate():
    doc, session = make_session("a,b\nc,d", scope="column")
    assert session.locate(6) == (2, 2)
    session.config.scope = "all"
    assert session.locate(6) == (2, 0)


def test_find_next_selects_and_wraps():
    doc, session = make_session("foo x foo", Rule("foo", "bar"))
    assert session.find_next().match.start == 0
    assert doc.selection() == (0, 3)
    assert session.find_next().match.start == 6
    result = session.find_next()
    assert result.match.start == 0
    assert result.wrapped

    session.config.wrap_around = False
    doc.set_selection(6, 9)
    assert session.find_next() is None


def test_find_previous():
    doc, session = make_session("foo x foo", Rule("foo"))
    doc.set_selection(6, 9)
    assert session.find_next("up").match.start == 0


def test_find_next_picks_nearest_rule():
    doc, session = make_session("b a", Rule("a"), Rule("b"))
    result = session.find_next()
    assert result.match.start == 0
    assert result.rule.find_text == "b"


def test_replace_next():
    doc, session = make_session("foo foo", Rule("foo", "bar"))
    assert session.replace_next().match.start == 0
    assert doc.text == "foo foo"
    result = session.replace_next()
    assert doc.text == "bar foo"
    assert result.match.start == 4
    assert doc.selection() == (4, 7)


def test_rule_list_editing():
    session = ReplaceSession(TextDocument(""))
    a = session.add_rule(find_text="a")
    b = session.add_rule(find_text="b")
    assert session.move_rule(b.rule_id, "up")
    assert session.rules == [b, a]
    assert not session.move_rule(b.rule_id, "up")
    session.set_all_enabled(False)
    assert session.active_rules() == []
    assert session.remove_rule(a.rule_id)
    assert not session.remove_rule(a.rule_id)
    assert session.rules == [b]


def test_evaluator_rejects_import():
    resolver = ReplacementResolver(TextDocument("x"), ExpressionEvaluator())
    rule = Rule("x", "__import__('os').getcwd()", dynamic=True)
    with pytest.raises(ScriptError):
        resolver.resolve(rule, Match(0, 1, "x"), MatchCounters(count=1))


def test_skip_sentinel_resolves_to_none():
    resolver = ReplacementResolver(TextDocument("x"), ExpressionEvaluator())
    assert resolver.resolve(Rule("x", "SKIP", dynamic=True), Match(0, 1, "x"), MatchCounters()) is None
    assert SKIP is not None


@pytest.mark.parametrize("value,text", [
    (None, ""),
    (True, "true"),
    (3, "3"),
    (2.0, "2"),
    (2.5, "2.5"),
    ("s", "s"),
])
def test_to_replacement_text(value, text):
    assert to_replacement_text(value) == text


class UpperEvaluator:
    def __init__(self):
        self.envs = []

    def evaluate(self, source, env):
        self.envs.append(env)
        return env["MATCH"].upper() + source


def test_pluggable_evaluator():
    evaluator = UpperEvaluator()
    doc = TextDocument("ab,cd")
    session = ReplaceSession(doc, ReplaceConfig(scope="column", columns="2"), evaluator=evaluator)
    session.add_rule(find_text=r"\w+", replace_text="!", mode="regex", dynamic=True)
    session.replace_all()
    assert doc.text == "ab,CD!"
    assert evaluator.envs[0]["COL"] == 2
    assert evaluator.envs[0]["CNT"] == 1


def test_cancelled_pass_does_not_block_later_operations():
    doc, session = make_session("b,2,x\na,1,x", chunk_size=1)
    cancels = []

    def cancel_once(event):
        if not cancels:
            cancels.append(event)
            session.cancel()

    doc.notify_change(cancel_once)
    stats = session.replace_all(Rule("x", "y"))
    assert stats.cancelled
    assert doc.text == "b,2,y\na,1,x"
    assert not session.cancelled

    session.config.scope = "column"
    assert session.locate(8) == (2, 2)
    session.sort_by_column(2)
    assert doc.text == "a,1,x\nb,2,y"


def test_stray_cancel_outside_pass_is_ignored():
    doc, session = make_session("a,foo\nb,foo", Rule("foo"), scope="column", columns="2")
    session.cancel()
    assert session.find_next().match.start == 2
    session.cancel()
    assert session.column_highlight_ranges()
    session.cancel()
    stats = session.count_all()
    assert stats.find_count == 2
    assert not stats.cancelled


def test_progress_reported_between_match_chunks():
    statuses = []
    doc = TextDocument(" ".join(["a"] * 50))
    session = ReplaceSession(doc, ReplaceConfig(chunk_size=10),
                             progress_callback=lambda value, status: statuses.append((value, status)))
    session.add_rule(find_text="a", replace_text="b")
    session.replace_all()
    reported = [status for _, status in statuses]
    assert "a: 10/50 matches" in reported
    assert "a: 40/50 matches" in reported
    assert all(0 <= value <= 100 for value, _ in statuses)

    statuses.clear()
    session.count_all(Rule("b"))
    assert "Counting b: 40 matches" in [status for _, status in statuses]


def test_cancel_from_progress_callback_stops_rule():
    doc = TextDocument(" ".join(["a"] * 50))
    session = ReplaceSession(doc, ReplaceConfig(chunk_size=10),
                             progress_callback=lambda value, status: "matches" in status and session.cancel())
    session.add_rule(find_text="a", replace_text="b")
    stats = session.replace_all()
    assert stats.cancelled
    assert 0 < stats.replace_count < 50


@pytest.mark.parametrize("source", [
    "().__class__.__base__.__subclasses__()",
    "MATCH.__class__",
    "'{0.__class__}'.format(MATCH)",
    "str.format_map('{x}', {'x': 1})",
    "__builtins__",
])
def test_evaluator_rejects_object_graph_access(source):
    resolver = ReplacementResolver(TextDocument("x"), ExpressionEvaluator())
    with pytest.raises(ScriptError):
        resolver.resolve(Rule("x", source, dynamic=True), Match(0, 1, "x"), MatchCounters(count=1))
