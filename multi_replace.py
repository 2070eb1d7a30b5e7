#!/usr/bin/env python3
"""
Multi Replace
Multi-rule find/replace engine for text editors.
Apply, count or mark an ordered list of rules in one pass, restrict matching to
delimiter-defined columns, compute replacements with expressions, and sort
lines by a column with the option to restore the original order.
"""

import ast
import json
import logging
import math
import re
import zlib
from bisect import bisect_right
from collections import deque
from dataclasses import dataclass, field, asdict, fields
from decimal import Decimal
from functools import lru_cache
from itertools import count
from pathlib import Path
from typing import Callable, Iterator, Protocol

__all__ = [
    "Rule", "ReplaceConfig", "PassStats", "ChangeEvent", "LineInfo", "Region",
    "Match", "SearchResult", "SortPermutation", "MatchCounters",
    "MultiReplaceError", "InvalidDelimiter", "InvalidColumnSelection",
    "RegexCompileError", "ScriptError", "CancelledByUser",
    "decode_extended", "expand_template", "to_replacement_text", "parse_columns",
    "mark_color", "TextDocument", "DelimiterModel", "ColumnIndex", "MatchEngine",
    "MatchSequence", "Evaluator", "ExpressionEvaluator", "SKIP",
    "ReplacementResolver", "EditSequencer", "sort_key", "ColumnSorter", "ReplaceSession",
    "save_rules", "load_rules", "__version__",
]
__version__ = "1.0.0"

logger = logging.getLogger("multi_replace")


# ══════════════════════════════════════════════════════════════════════════════
# CONSTANTS
# ══════════════════════════════════════════════════════════════════════════════

MODES = ("literal", "extended", "regex")
SCOPES = ("all", "selection", "column")
QUOTE_CHARS = ('"', "'")

LOG_LEVELS = {
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def _log_to_logger(message: str, level: str = "info"):
    logger.log(LOG_LEVELS.get(level, logging.INFO), message)


# ══════════════════════════════════════════════════════════════════════════════
# ERRORS
# ══════════════════════════════════════════════════════════════════════════════

class MultiReplaceError(Exception):
    """Base class for engine errors."""


class InvalidDelimiter(MultiReplaceError):
    """Delimiter or quote character cannot be used for column scoping."""


class InvalidColumnSelection(MultiReplaceError):
    """Column list such as "1,3-5" could not be parsed."""


class RegexCompileError(MultiReplaceError):
    """A rule's find pattern does not compile."""

    def __init__(self, rule, message: str):
        super().__init__(f"Invalid pattern {rule.find_text!r}: {message}")
        self.rule = rule


class ScriptError(MultiReplaceError):
    """The dynamic replacement evaluator failed."""

    def __init__(self, source: str, message: str):
        super().__init__(f"Error in {source!r}: {message}")
        self.source = source


class CancelledByUser(MultiReplaceError):
    """Raised at a chunk boundary after cancel(); never escapes a session pass."""


# ══════════════════════════════════════════════════════════════════════════════
# DATA MODELS
# ══════════════════════════════════════════════════════════════════════════════

_rule_ids = count(1)


@dataclass
class Rule:
    """One find/replace row of the list."""
    find_text: str = ""
    replace_text: str = ""
    mode: str = "literal"  # "literal", "extended", "regex"
    whole_word: bool = False
    match_case: bool = False
    dynamic: bool = False
    enabled: bool = True
    rule_id: int = field(default_factory=lambda: next(_rule_ids))

    # Counters, reset at the start of every pass
    find_count: int = field(default=0, compare=False)
    replace_count: int = field(default=0, compare=False)
    error_count: int = field(default=0, compare=False)

    RECORD_FIELDS = ("enabled", "find_text", "replace_text", "mode",
                     "whole_word", "match_case", "dynamic")

    def reset_counters(self):
        self.find_count = 0
        self.replace_count = 0
        self.error_count = 0

    def to_record(self) -> dict:
        return {name: getattr(self, name) for name in self.RECORD_FIELDS}

    @classmethod
    def from_record(cls, record: dict) -> "Rule":
        mode = record.get("mode", "literal")
        if mode not in MODES:
            raise ValueError(f"Unknown mode: {mode!r}")
        return cls(
            find_text=str(record.get("find_text", "")),
            replace_text=str(record.get("replace_text", "")),
            mode=mode,
            whole_word=bool(record.get("whole_word", False)),
            match_case=bool(record.get("match_case", False)),
            dynamic=bool(record.get("dynamic", False)),
            enabled=bool(record.get("enabled", True)),
        )


@dataclass
class ReplaceConfig:
    """Configuration for a replace session."""
    # Scope
    scope: str = "all"  # "all", "selection", "column"
    columns: str = ""  # e.g. "1,3-5"
    delimiter: str = ","  # extended escapes allowed, e.g. "\t"
    quote_char: str = ""  # "", '"', "'"
    header_lines: int = 0

    # Search
    use_list: bool = True
    wrap_around: bool = True
    direction: str = "forward"  # "forward", "backward"

    # Error policy
    on_rule_error: str = "skip"  # "skip", "abort"
    on_script_error: str = "skip"  # "skip", "abort_rule"

    # Matches or lines handled between cancellation checks
    chunk_size: int = 500

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ReplaceConfig":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class PassStats:
    """Statistics from one replace, mark or count pass."""
    operation: str = ""
    find_count: int = 0
    replace_count: int = 0
    skipped: int = 0
    failed_rules: int = 0
    cancelled: bool = False
    rule_counts: dict = field(default_factory=dict)  # {rule_id: (found, replaced)}
    errors: list = field(default_factory=list)

    @property
    def status(self) -> str:
        if self.cancelled:
            return "cancelled"
        if self.failed_rules or self.skipped:
            return "completed_with_errors"
        return "completed"


@dataclass(frozen=True)
class ChangeEvent:
    change_type: str  # "insert", "delete", "modify"
    line: int


@dataclass
class LineInfo:
    start: int = 0
    end: int = 0  # excludes the line break
    positions: list = field(default_factory=list)  # relative to start


@dataclass(frozen=True)
class Region:
    """Part of the document eligible for matching."""
    start: int
    end: int
    line: int = -1
    column: int = 0


@dataclass
class Match:
    start: int
    length: int
    text: str
    groups: tuple = ()
    named: dict = field(default_factory=dict)
    line: int = -1
    column: int = 0

    @property
    def end(self) -> int:
        return self.start + self.length


@dataclass
class SearchResult:
    match: Match
    rule: Rule
    wrapped: bool = False


@dataclass
class SortPermutation:
    order: list  # new row position -> original row index
    header_lines: int = 0

    def inverse(self) -> list:
        inverse = [0] * len(self.order)
        for position, row in enumerate(self.order):
            inverse[row] = position
        return inverse


@dataclass
class MatchCounters:
    """Running per-rule counters exposed to dynamic replacements."""
    count: int = 0
    line_counts: dict = field(default_factory=dict)

    def advance(self, line: int):
        self.count += 1
        self.line_counts[line] = self.line_counts.get(line, 0) + 1

    def line_count(self, line: int) -> int:
        return self.line_counts.get(line, 0)


# ══════════════════════════════════════════════════════════════════════════════
# TEXT HELPERS
# ══════════════════════════════════════════════════════════════════════════════

_SIMPLE_ESCAPES = {"n": "\n", "r": "\r", "t": "\t", "0": "\0", "\\": "\\"}
_NUMERIC_ESCAPES = {  # code: (base, digits)
    "x": (16, 2),
    "u": (16, 4),
    "o": (8, 3),
    "d": (10, 3),
    "b": (2, 8),
}
_DIGITS = {
    2: set("01"),
    8: set("01234567"),
    10: set("0123456789"),
    16: set("0123456789abcdefABCDEF"),
}


def decode_extended(text: str) -> str:
    """Decode extended-mode escapes: \\n \\r \\t \\0 \\\\ \\xHH \\uHHHH \\oOOO \\dDDD \\bBBBBBBBB.

    Unknown or incomplete escapes are kept as typed.
    """
    out = []
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch != "\\" or i + 1 >= n:
            out.append(ch)
            i += 1
            continue

        code = text[i + 1]
        if code in _SIMPLE_ESCAPES:
            out.append(_SIMPLE_ESCAPES[code])
            i += 2
            continue

        if code in _NUMERIC_ESCAPES:
            base, digits = _NUMERIC_ESCAPES[code]
            chunk = text[i + 2:i + 2 + digits]
            if len(chunk) == digits and set(chunk) <= _DIGITS[base]:
                value = int(chunk, base)
                if value <= 0x10FFFF:
                    out.append(chr(value))
                    i += 2 + digits
                    continue

        out.append(ch)
        i += 1
    return "".join(out)


_TEMPLATE_RE = re.compile(r"\$\$|\$\{(\w+)\}|\$(\d)|\\(\d)|\\([nrt\\])")
_TEMPLATE_ESCAPES = {"n": "\n", "r": "\r", "t": "\t", "\\": "\\"}


def expand_template(template: str, match: Match) -> str:
    """Expand $1..$9, \\1..\\9, ${name} and $$ in a regex replacement."""
    groups = (match.text,) + tuple(match.groups)

    def substitute(m):
        if m.group(0) == "$$":
            return "$"
        if m.group(1) is not None:
            name = m.group(1)
            if name.isdigit():
                idx = int(name)
                return groups[idx] if idx < len(groups) else ""
            return match.named.get(name) or ""
        digit = m.group(2) if m.group(2) is not None else m.group(3)
        if digit is not None:
            idx = int(digit)
            return groups[idx] if idx < len(groups) else ""
        return _TEMPLATE_ESCAPES[m.group(4)]

    return _TEMPLATE_RE.sub(substitute, template)


def to_replacement_text(value) -> str:
    """Coerce an evaluator result to replacement text."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer():
            return str(int(value))
        return repr(value)
    return str(value)


def parse_columns(text: str) -> set:
    """Parse a column list such as "1,3-5" into {1, 3, 4, 5}."""
    columns = set()
    for token in (text or "").replace(" ", "").split(","):
        if not token:
            continue
        try:
            if "-" in token:
                low, high = (int(part) for part in token.split("-", 1))
            else:
                low = high = int(token)
        except ValueError:
            raise InvalidColumnSelection(f"Invalid column: {token!r}") from None
        if low < 1 or high < low:
            raise InvalidColumnSelection(f"Invalid column range: {token!r}")
        columns.update(range(low, high + 1))
    return columns


def mark_color(text: str) -> str:
    """Stable light color for marking matches of one find text."""
    digest = zlib.crc32(text.encode("utf-8"))
    r, g, b = ((digest >> shift & 0xFF) // 2 + 0x80 for shift in (16, 8, 0))
    return f"#{r:02x}{g:02x}{b:02x}"


# ══════════════════════════════════════════════════════════════════════════════
# DOCUMENT
# ══════════════════════════════════════════════════════════════════════════════

_LINE_BREAK_RE = re.compile(r"\r\n|\n|\r")


class TextDocument:
    """In-memory document exposing the interface the engine edits through.

    Offsets are character offsets. Every replace() notifies listeners with
    ChangeEvents: one "modify" for the first touched line, then "delete" and
    "insert" events for removed and added lines.
    """

    def __init__(self, text: str = "", eol: str = None, word_chars: str = None):
        self._text = text
        self.eol = eol or ("\r\n" if "\r\n" in text else "\n")
        self.word_chars = word_chars
        self._selection = (0, 0)
        self._marks: list[tuple[int, int, str]] = []
        self._listeners: list[Callable] = []
        self._line_starts, self._line_ends = self._index_lines()

    @property
    def text(self) -> str:
        return self._text

    def _index_lines(self):
        starts, ends = [0], []
        for m in _LINE_BREAK_RE.finditer(self._text):
            ends.append(m.start())
            starts.append(m.end())
        ends.append(len(self._text))
        return starts, ends

    def length(self) -> int:
        return len(self._text)

    def read(self, start: int, end: int) -> str:
        return self._text[start:end]

    def line_count(self) -> int:
        return len(self._line_starts)

    def line_range(self, line: int) -> tuple[int, int]:
        return self._line_starts[line], self._line_ends[line]

    def line_from_position(self, pos: int) -> int:
        return max(bisect_right(self._line_starts, pos) - 1, 0)

    def selection(self) -> tuple[int, int]:
        return self._selection

    def set_selection(self, start: int, end: int):
        self._selection = (min(start, end), max(start, end))

    def is_word_char(self, ch: str) -> bool:
        if self.word_chars is not None:
            return ch in self.word_chars
        return ch.isalnum() or ch == "_"

    def notify_change(self, callback: Callable):
        self._listeners.append(callback)

    def add_mark(self, start: int, end: int, tag: str):
        self._marks.append((start, end, tag))

    def clear_marks(self):
        self._marks.clear()

    def marks(self) -> list[tuple[int, int, str]]:
        return sorted(self._marks)

    def replace(self, start: int, end: int, text: str):
        if not 0 <= start <= end <= len(self._text):
            raise ValueError(f"Range {start}-{end} outside document of length {len(self._text)}")

        first_line = self.line_from_position(start)
        removed = self.line_from_position(end) - first_line
        old_count = self.line_count()

        self._text = self._text[:start] + text + self._text[end:]
        self._line_starts, self._line_ends = self._index_lines()
        self._shift_marks(start, end, len(text) - (end - start))

        added = max(self.line_count() - old_count + removed, 0)
        events = [ChangeEvent("modify", first_line)]
        events += [ChangeEvent("delete", first_line + 1) for _ in range(removed)]
        events += [ChangeEvent("insert", first_line + 1 + i) for i in range(added)]
        for callback in list(self._listeners):
            for event in events:
                callback(event)

    def _shift_marks(self, start: int, end: int, delta: int):
        kept = []
        for m_start, m_end, tag in self._marks:
            if m_end <= start:
                kept.append((m_start, m_end, tag))
            elif m_start >= end:
                kept.append((m_start + delta, m_end + delta, tag))
        self._marks = kept


# ══════════════════════════════════════════════════════════════════════════════
# DELIMITER MODEL
# ══════════════════════════════════════════════════════════════════════════════

class DelimiterModel:
    """Quote-aware delimiter positions for every line of a document."""

    def __init__(self, log: Callable = None, progress: Callable = None, chunk_size: int = 500):
        self.lines: list[LineInfo] = []
        self.delimiter = ""
        self.quote_char = ""
        self.dirty = True  # delimiter or quote changed, full rescan required
        self.log = log or _log_to_logger
        self.progress = progress
        self.chunk_size = max(int(chunk_size), 1)
        self._pending: deque = deque()

    def configure(self, delimiter: str, quote_char: str = ""):
        decoded = decode_extended(delimiter or "")
        if not decoded:
            raise InvalidDelimiter("Delimiter is empty")
        if quote_char and quote_char not in QUOTE_CHARS:
            raise InvalidDelimiter(f"Quote character must be \" or ', got {quote_char!r}")
        if decoded != self.delimiter or quote_char != self.quote_char:
            self.delimiter = decoded
            self.quote_char = quote_char
            self.dirty = True

    def push_change(self, event: ChangeEvent):
        self._pending.append(event)

    @property
    def pending(self) -> int:
        return len(self._pending)

    def scan_text(self, text: str) -> list[int]:
        positions = []
        delimiter, quote = self.delimiter, self.quote_char
        width = len(delimiter)
        in_quote = False
        i = 0
        n = len(text)
        while i < n:
            if quote and text[i] == quote:
                in_quote = not in_quote
                i += 1
            elif not in_quote and text.startswith(delimiter, i):
                positions.append(i)
                i += width
            else:
                i += 1
        return positions

    def _scan_line(self, document, line: int) -> LineInfo:
        start, end = document.line_range(line)
        return LineInfo(start, end, self.scan_text(document.read(start, end)))

    def rescan(self, document, delimiter: str = None, quote_char: str = None,
               cancel_check: Callable = None) -> list[LineInfo]:
        """Scan every line of the document."""
        if delimiter is not None:
            self.configure(delimiter, quote_char or "")
        if not self.delimiter:
            raise InvalidDelimiter("Delimiter is empty")

        total = document.line_count()
        lines = []
        for line in range(total):
            if line % self.chunk_size == 0:
                if cancel_check:
                    cancel_check()
                if self.progress and total > self.chunk_size:
                    self.progress(line / total * 100, f"Scanning delimiters {line:,}/{total:,}")
            lines.append(self._scan_line(document, line))

        self.lines = lines
        self.dirty = False
        self._pending.clear()
        return lines

    def update(self, document, cancel_check: Callable = None) -> list[LineInfo]:
        """Bring the model up to date, rescanning only lines named by pending events."""
        if self.dirty or not self.lines:
            return self.rescan(document, cancel_check=cancel_check)
        if not self._pending:
            return self.lines

        lines = list(self.lines)
        while self._pending:
            event = self._pending.popleft()
            if event.change_type == "insert":
                lines.insert(event.line, None)
            elif event.change_type == "delete":
                if event.line < len(lines):
                    lines.pop(event.line)
            elif event.line < len(lines):
                lines[event.line] = None

        if len(lines) != document.line_count():
            self.log("Line count out of sync, rescanning all delimiters", "warning")
            return self.rescan(document, cancel_check=cancel_check)

        for idx, info in enumerate(lines):
            if info is None:
                lines[idx] = self._scan_line(document, idx)
            else:
                info.start, info.end = document.line_range(idx)
        self.lines = lines
        return lines


# ══════════════════════════════════════════════════════════════════════════════
# COLUMN INDEX
# ══════════════════════════════════════════════════════════════════════════════

class ColumnIndex:
    """Column lookups over a scanned DelimiterModel."""

    def __init__(self, model: DelimiterModel):
        self.model = model
        self.lines = model.lines
        self.width = len(model.delimiter)
        self._starts = [info.start for info in self.lines]

    def column_count(self, line: int) -> int:
        return len(self.lines[line].positions) + 1

    def column_range(self, line: int, column: int):
        info = self.lines[line]
        positions = info.positions
        if column < 1 or column > len(positions) + 1:
            return None
        start = info.start if column == 1 else info.start + positions[column - 2] + self.width
        end = info.start + positions[column - 1] if column <= len(positions) else info.end
        return start, end

    def column_ranges(self, line: int, columns) -> list[tuple[int, int]]:
        ranges = []
        for column in sorted(columns):
            span = self.column_range(line, column)
            if span is None:
                break
            ranges.append(span)
        return ranges

    def regions(self, columns) -> Iterator[Region]:
        ordered = sorted(columns)
        for line in range(len(self.lines)):
            for column in ordered:
                span = self.column_range(line, column)
                if span is None:
                    break
                yield Region(span[0], span[1], line, column)

    def locate(self, offset: int) -> tuple[int, int]:
        """Return the 0-based line and 1-based column containing offset."""
        if not self.lines:
            return 0, 1
        line = max(bisect_right(self._starts, offset) - 1, 0)
        info = self.lines[line]
        column = bisect_right(info.positions, offset - info.start - self.width) + 1
        return line, column

    def cell_value(self, document, line: int, column: int) -> str:
        span = self.column_range(line, column)
        if span is None:
            return ""
        value = document.read(*span)
        quote = self.model.quote_char
        if quote and len(value) >= 2 and value[0] == quote and value[-1] == quote:
            value = value[1:-1]
        return value


# ══════════════════════════════════════════════════════════════════════════════
# MATCH ENGINE
# ══════════════════════════════════════════════════════════════════════════════

class MatchSequence:
    """Lazy matches of one rule; every iteration restarts from the live document."""

    def __init__(self, engine: "MatchEngine", rule: Rule, pattern: re.Pattern, regions):
        self.engine = engine
        self.rule = rule
        self.pattern = pattern
        self.regions = tuple(regions)

    def __iter__(self) -> Iterator[Match]:
        return self.engine._iter_matches(self.rule, self.pattern, self.regions)


class MatchEngine:
    """Finds the matches of a rule inside a set of regions."""

    def __init__(self, document):
        self.document = document

    @staticmethod
    @lru_cache(maxsize=256)
    def _compile(find_text: str, mode: str, whole_word: bool, match_case: bool) -> re.Pattern:
        flags = re.MULTILINE
        if not match_case:
            flags |= re.IGNORECASE
        if mode == "regex":
            pattern = rf"\b(?:{find_text})\b" if whole_word else find_text
        else:
            text = decode_extended(find_text) if mode == "extended" else find_text
            pattern = re.escape(text)
        return re.compile(pattern, flags)

    def compile(self, rule: Rule) -> re.Pattern:
        if rule.mode not in MODES:
            raise RegexCompileError(rule, f"unknown mode {rule.mode!r}")
        try:
            return self._compile(rule.find_text, rule.mode, rule.whole_word, rule.match_case)
        except re.error as exc:
            raise RegexCompileError(rule, str(exc)) from exc

    def find(self, rule: Rule, regions) -> MatchSequence:
        return MatchSequence(self, rule, self.compile(rule), regions)

    def _iter_matches(self, rule: Rule, pattern: re.Pattern, regions) -> Iterator[Match]:
        if not rule.find_text:
            return
        text = self.document.read(0, self.document.length())
        check_words = rule.whole_word and rule.mode != "regex"

        for region in regions:
            pos, end = region.start, region.end
            while pos <= end:
                m = pattern.search(text, pos, end)
                if m is None:
                    break
                start, stop = m.span()
                if check_words and not self._is_whole_word(text, start, stop):
                    pos = start + 1
                    continue
                yield Match(start, stop - start, m.group(0),
                            m.groups(default=""), m.groupdict(default=""),
                            region.line, region.column)
                # Zero-length matches step one character forward
                pos = stop + 1 if stop == start else stop

    def _is_whole_word(self, text: str, start: int, stop: int) -> bool:
        is_word = self.document.is_word_char
        if start > 0 and is_word(text[start - 1]):
            return False
        if stop < len(text) and is_word(text[stop]):
            return False
        return True

    def find_next(self, rule: Rule, regions, cursor: int, direction: str = "down",
                  wrap_around: bool = True):
        """Nearest match after (down) or before (up) the cursor."""
        matches = self.find(rule, regions)
        if direction == "up":
            before = last = None
            for match in matches:
                last = match
                if match.end <= cursor and match.start < cursor:
                    before = match
            return before or (last if wrap_around else None)

        first = None
        for match in matches:
            if first is None:
                first = match
            if match.start > cursor or (match.start == cursor and match.length):
                return match
        return first if wrap_around else None


# ══════════════════════════════════════════════════════════════════════════════
# REPLACEMENT RESOLVER
# ══════════════════════════════════════════════════════════════════════════════

class _Skip:
    def __repr__(self):
        return "SKIP"


SKIP = _Skip()


class Evaluator(Protocol):
    def evaluate(self, source: str, env: dict): ...


_BLOCKED_ATTRIBUTES = {"format", "format_map", "mro"}


@lru_cache(maxsize=256)
def _compile_expression(source: str):
    tree = ast.parse(source, "<replacement>", "eval")
    for node in ast.walk(tree):
        if isinstance(node, ast.Attribute) and (node.attr.startswith("_") or node.attr in _BLOCKED_ATTRIBUTES):
            raise ValueError(f"attribute {node.attr!r} is not allowed")
        if isinstance(node, ast.Name) and node.id.startswith("__"):
            raise ValueError(f"name {node.id!r} is not allowed")
    return compile(tree, "<replacement>", "eval")


def _to_number(value):
    text = str(value).strip()
    try:
        return int(text)
    except ValueError:
        return float(text)


class ExpressionEvaluator:
    """Evaluates dynamic replacements as Python expressions without builtins.

    The match variables (CNT, LINE, LPOS, LCNT, APOS, COL, MATCH, CAP1..CAPn)
    are locals; return SKIP to keep the match unchanged.

    Names and attributes starting with an underscore are rejected before
    compiling, which closes the usual object-graph escapes. This is a guard
    against accidents, not a sandbox: only load rule lists you trust.
    """

    GLOBALS = {
        "abs": abs, "min": min, "max": max, "round": round, "len": len,
        "int": int, "float": float, "str": str, "bool": bool,
        "num": _to_number, "fmt": format,
        "sqrt": math.sqrt, "floor": math.floor, "ceil": math.ceil, "pi": math.pi,
    }

    def __init__(self, extra_globals: dict = None):
        self.globals = {"__builtins__": {}, **self.GLOBALS, **(extra_globals or {})}

    def evaluate(self, source: str, env: dict):
        return eval(_compile_expression(source), dict(self.globals), dict(env))


class ReplacementResolver:
    """Produces the text that replaces one match."""

    def __init__(self, document, evaluator: Evaluator = None):
        self.document = document
        self.evaluator = evaluator

    def resolve(self, rule: Rule, match: Match, counters: MatchCounters, position: int = None):
        """Return the replacement text, or None when the match must be left alone."""
        if rule.dynamic:
            return self._evaluate(rule, match, counters, match.start if position is None else position)
        if rule.mode == "regex":
            return expand_template(rule.replace_text, match)
        if rule.mode == "extended":
            return decode_extended(rule.replace_text)
        return rule.replace_text

    def build_environment(self, match: Match, counters: MatchCounters, position: int) -> dict:
        line = self.document.line_from_position(position)
        line_start, _ = self.document.line_range(line)
        env = {
            "CNT": counters.count,
            "LINE": line + 1,
            "LPOS": position - line_start + 1,
            "LCNT": counters.line_count(line),
            "APOS": position + 1,
            "COL": match.column,
            "MATCH": match.text,
            "SKIP": SKIP,
        }
        for idx, value in enumerate(match.groups, 1):
            env[f"CAP{idx}"] = value
        return env

    def _evaluate(self, rule: Rule, match: Match, counters: MatchCounters, position: int):
        if self.evaluator is None:
            raise ScriptError(rule.replace_text, "no evaluator configured")
        env = self.build_environment(match, counters, position)
        try:
            value = self.evaluator.evaluate(rule.replace_text, env)
        except ScriptError:
            raise
        except Exception as exc:
            raise ScriptError(rule.replace_text, f"{type(exc).__name__}: {exc}") from exc
        if value is SKIP:
            return None
        return to_replacement_text(value)


# ══════════════════════════════════════════════════════════════════════════════
# EDIT SEQUENCER
# ══════════════════════════════════════════════════════════════════════════════

class EditSequencer:
    """Applies a rule's matches to the document, keeping stale offsets valid."""

    def __init__(self, document, resolver: ReplacementResolver, config: ReplaceConfig,
                 cancel_check: Callable = None, log: Callable = None, progress: Callable = None):
        self.document = document
        self.resolver = resolver
        self.config = config
        self.cancel_check = cancel_check
        self.log = log or _log_to_logger
        self.progress = progress

    def apply(self, rule: Rule, matches, counters: MatchCounters = None,
              mark: bool = False) -> tuple[int, int]:
        """Replace (or mark) every match; returns (found, replaced)."""
        counters = counters or MatchCounters()
        backward = self.config.direction == "backward" and not mark
        ordered = list(matches)
        if backward:
            ordered.reverse()

        chunk = max(int(self.config.chunk_size), 1)
        total = len(ordered)
        tag = mark_color(rule.find_text)
        delta = 0
        found = replaced = 0
        try:
            for idx, match in enumerate(ordered):
                if idx % chunk == 0:
                    if self.cancel_check:
                        self.cancel_check()
                    if self.progress and idx:
                        self.progress(idx / total * 100, f"{rule.find_text}: {idx:,}/{total:,} matches")

                found += 1
                if mark:
                    self.document.add_mark(match.start, match.end, tag)
                    continue

                position = match.start + delta
                counters.advance(self.document.line_from_position(position))
                try:
                    replacement = self.resolver.resolve(rule, match, counters, position)
                except ScriptError as exc:
                    rule.error_count += 1
                    if self.config.on_script_error == "abort_rule":
                        raise
                    self.log(f"Skipped match at offset {position}: {exc}", "warning")
                    continue
                if replacement is None:
                    continue

                self.document.replace(position, position + match.length, replacement)
                replaced += 1
                if not backward:
                    delta += len(replacement) - match.length
        finally:
            rule.find_count += found
            rule.replace_count += replaced
        return found, replaced


# ══════════════════════════════════════════════════════════════════════════════
# COLUMN SORTER
# ══════════════════════════════════════════════════════════════════════════════

_NUMBER_RE = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)")


def sort_key(value: str):
    """Numbers compare numerically, everything else by code point."""
    stripped = value.strip()
    if _NUMBER_RE.fullmatch(stripped):
        return (0, Decimal(stripped))
    return (1, value)


class ColumnSorter:
    """Reorders lines by one column's value and restores the original order."""

    def __init__(self, document, log: Callable = None):
        self.document = document
        self.log = log or _log_to_logger
        self.permutation: SortPermutation = None

    @property
    def is_sorted(self) -> bool:
        return self.permutation is not None

    def row_count(self) -> int:
        # A trailing empty line after the last line break is not a row
        rows = self.document.line_count()
        if rows > 1:
            start, end = self.document.line_range(rows - 1)
            if start == end:
                rows -= 1
        return rows

    def _read_lines(self, rows: int) -> list[str]:
        return [self.document.read(*self.document.line_range(i)) for i in range(rows)]

    def _line_breaks(self, rows: int) -> list[str]:
        return [self.document.read(self.document.line_range(i)[1], self.document.line_range(i + 1)[0])
                for i in range(rows - 1)]

    def _write_lines(self, lines: list[str], rows: int):
        # Line breaks stay in place, only row contents move
        breaks = self._line_breaks(rows) + [""]
        end = self.document.line_range(rows - 1)[1]
        self.document.replace(0, end, "".join(line + brk for line, brk in zip(lines, breaks)))

    def sort_by_column(self, index: ColumnIndex, column: int, direction: str = "ascending",
                       header_lines: int = 0) -> SortPermutation:
        rows = self.row_count()
        header = min(max(int(header_lines), 0), rows)
        data = list(range(header, rows))
        values = {row: index.cell_value(self.document, row, column) for row in data}
        data.sort(key=lambda row: sort_key(values[row]), reverse=(direction == "descending"))
        order = list(range(header)) + data

        if order != list(range(rows)):
            lines = self._read_lines(rows)
            self._write_lines([lines[row] for row in order], rows)

        if self.permutation is not None and len(self.permutation.order) == rows:
            previous = self.permutation.order
            order = [previous[row] for row in order]
        self.permutation = SortPermutation(order, header)
        self.log(f"Sorted {len(data):,} rows by column {column} ({direction})", "info")
        return self.permutation

    def restore_original_order(self, permutation: SortPermutation = None) -> bool:
        if self.permutation is None:
            return False
        permutation = permutation or self.permutation
        self.permutation = None

        rows = self.row_count()
        if rows != len(permutation.order):
            self.log("Line count changed since sorting, original order cannot be restored", "warning")
            return False

        current = self._read_lines(rows)
        original = [current[position] for position in permutation.inverse()]
        if original != current:
            self._write_lines(original, rows)
        self.log(f"Restored original order of {rows:,} lines", "info")
        return True


# ══════════════════════════════════════════════════════════════════════════════
# REPLACE SESSION
# ══════════════════════════════════════════════════════════════════════════════

class ReplaceSession:
    """Rule list, configuration and cancellation state for one document."""

    def __init__(self, document, config: ReplaceConfig = None, evaluator: Evaluator = None,
                 progress_callback: Callable = None, log_callback: Callable = None):
        self.document = document
        self.config = config or ReplaceConfig()
        self.evaluator = evaluator if evaluator is not None else ExpressionEvaluator()
        self.progress_callback = progress_callback
        self.log_callback = log_callback
        self.rules: list[Rule] = []
        self.cancelled = False
        self.stats = PassStats()

        self.delimiters = DelimiterModel(log=self.log, progress=self.update_progress,
                                         chunk_size=self.config.chunk_size)
        self.engine = MatchEngine(document)
        self.resolver = ReplacementResolver(document, self.evaluator)
        self.sorter = ColumnSorter(document, log=self.log)
        self._selection_span = None
        document.notify_change(self.delimiters.push_change)

    def log(self, message: str, level: str = "info"):
        _log_to_logger(message, level)
        if self.log_callback:
            self.log_callback(message, level)

    def update_progress(self, value: float, status: str):
        if self.progress_callback:
            self.progress_callback(value, status)

    def cancel(self):
        self.cancelled = True

    def _reset_cancel(self):
        # cancel() only applies to the operation in progress
        self.cancelled = False

    def check_cancelled(self):
        if self.cancelled:
            raise CancelledByUser("Operation cancelled")

    # ── Rule list ────────────────────────────────────────────────────────────

    def add_rule(self, rule: Rule = None, **kwargs) -> Rule:
        rule = rule or Rule(**kwargs)
        self.rules.append(rule)
        return rule

    def remove_rule(self, rule_id: int) -> bool:
        for idx, rule in enumerate(self.rules):
            if rule.rule_id == rule_id:
                del self.rules[idx]
                return True
        return False

    def move_rule(self, rule_id: int, direction: str) -> bool:
        for idx, rule in enumerate(self.rules):
            if rule.rule_id == rule_id:
                target = idx - 1 if direction == "up" else idx + 1
                if 0 <= target < len(self.rules):
                    self.rules[idx], self.rules[target] = self.rules[target], self.rules[idx]
                    return True
                return False
        return False

    def set_all_enabled(self, enabled: bool):
        for rule in self.rules:
            rule.enabled = enabled

    def active_rules(self) -> list[Rule]:
        return [rule for rule in self.rules if rule.enabled]

    # ── Scope ────────────────────────────────────────────────────────────────

    def column_index(self) -> ColumnIndex:
        self.delimiters.configure(self.config.delimiter, self.config.quote_char)
        self.delimiters.update(self.document, cancel_check=self.check_cancelled)
        return ColumnIndex(self.delimiters)

    def validate_scope(self):
        """Raise before any scan or edit if the configured scope is unusable."""
        if self.config.scope not in SCOPES:
            raise MultiReplaceError(f"Unknown scope: {self.config.scope!r}")
        if self.config.scope == "column":
            self.delimiters.configure(self.config.delimiter, self.config.quote_char)
            parse_columns(self.config.columns)

    def regions(self, scope: str = None) -> list[Region]:
        scope = scope or self.config.scope
        if scope == "selection":
            start, end = self._selection_span or self.document.selection()
            if start == end:
                self.log("No text selected", "warning")
                return []
            return [Region(start, end)]

        if scope == "column":
            columns = parse_columns(self.config.columns)
            index = self.column_index()
            if columns:
                return list(index.regions(columns))
            self.log("No columns selected, searching the whole document", "warning")

        return [Region(0, self.document.length())]

    def locate(self, offset: int) -> tuple[int, int]:
        """1-based line and column of an offset (column 0 without column scope)."""
        self._reset_cancel()
        line = self.document.line_from_position(offset)
        if self.config.scope != "column":
            return line + 1, 0
        return line + 1, self.column_index().locate(offset)[1]

    def column_highlight_ranges(self) -> list[Region]:
        self._reset_cancel()
        columns = parse_columns(self.config.columns)
        if not columns:
            return []
        return list(self.column_index().regions(columns))

    # ── List passes ──────────────────────────────────────────────────────────

    def replace_all(self, rule: Rule = None) -> PassStats:
        return self._run_pass("replace", rule)

    def mark_all(self, rule: Rule = None) -> PassStats:
        return self._run_pass("mark", rule)

    def count_all(self, rule: Rule = None) -> PassStats:
        return self._run_pass("count", rule)

    def _run_pass(self, operation: str, rule: Rule = None) -> PassStats:
        rules = [rule] if rule is not None else self.active_rules()
        self.validate_scope()

        self._reset_cancel()
        self.stats = stats = PassStats(operation=operation)
        for r in rules:
            r.reset_counters()
        if not rules:
            self.log("No active rules", "warning")
            return stats

        self._selection_span = self.document.selection() if self.config.scope == "selection" else None
        sequencer = EditSequencer(self.document, self.resolver, self.config,
                                  cancel_check=self.check_cancelled, log=self.log,
                                  progress=self.update_progress)
        total = len(rules)
        try:
            for idx, r in enumerate(rules):
                self.check_cancelled()
                self.update_progress(idx / total * 100, f"Rule {idx + 1}/{total}: {r.find_text}")
                try:
                    self._run_rule(operation, r, sequencer)
                except RegexCompileError as exc:
                    stats.failed_rules += 1
                    stats.errors.append(str(exc))
                    self.log(f"✗ {exc}", "error")
                    if self.config.on_rule_error == "abort":
                        raise
                except ScriptError as exc:
                    stats.failed_rules += 1
                    stats.errors.append(str(exc))
                    self.log(f"✗ Rule {r.find_text!r} aborted: {exc}", "error")
                finally:
                    stats.rule_counts[r.rule_id] = (r.find_count, r.replace_count)
        except CancelledByUser:
            stats.cancelled = True
            self.log("Operation cancelled, applied edits are kept", "warning")
        finally:
            stats.find_count = sum(r.find_count for r in rules)
            stats.replace_count = sum(r.replace_count for r in rules)
            stats.skipped = sum(r.error_count for r in rules)
            self._selection_span = None
            self.cancelled = False

        if not stats.cancelled:
            self.update_progress(100, "Complete!")
            self._log_summary(stats)
        return stats

    def _run_rule(self, operation: str, rule: Rule, sequencer: EditSequencer):
        if not rule.find_text:
            self.log("Skipped rule with empty find text", "warning")
            return

        before = self.document.length()
        matches = self.engine.find(rule, self.regions())
        if operation == "count":
            chunk = max(int(self.config.chunk_size), 1)
            length = max(self.document.length(), 1)
            for idx, match in enumerate(matches):
                if idx % chunk == 0:
                    self.check_cancelled()
                    if idx:
                        self.update_progress(match.start / length * 100,
                                             f"Counting {rule.find_text}: {idx:,} matches")
                rule.find_count += 1
            return

        sequencer.apply(rule, matches, MatchCounters(), mark=(operation == "mark"))
        if self._selection_span is not None:
            start, end = self._selection_span
            self._selection_span = (start, end + self.document.length() - before)

    def _log_summary(self, stats: PassStats):
        if stats.operation == "replace":
            self.log(f"✓ Replaced {stats.replace_count:,} of {stats.find_count:,} matches", "success")
        elif stats.operation == "mark":
            self.log(f"✓ Marked {stats.find_count:,} matches", "success")
        else:
            self.log(f"✓ Found {stats.find_count:,} matches", "success")
        if stats.skipped:
            self.log(f"  {stats.skipped:,} replacements skipped after script errors", "warning")
        if stats.failed_rules:
            self.log(f"  {stats.failed_rules:,} rule(s) failed", "warning")

    # ── Interactive search ───────────────────────────────────────────────────

    def find_next(self, direction: str = "down", rule: Rule = None, cursor: int = None) -> SearchResult:
        """Nearest match of the rule (or of every active rule) from the cursor."""
        self._reset_cancel()
        rules = [rule] if rule is not None else self.active_rules()
        sel_start, sel_end = self.document.selection()
        if cursor is None:
            cursor = sel_start if direction == "up" else sel_end

        scope = "column" if self.config.scope == "column" else "all"
        regions = self.regions(scope)
        result = self._nearest(rules, regions, cursor, direction)
        if result is None and self.config.wrap_around:
            restart = self.document.length() if direction == "up" else -1
            result = self._nearest(rules, regions, restart, direction)
            if result is not None:
                result.wrapped = True

        if result is None:
            self.log("No matches found", "warning")
            return None
        if hasattr(self.document, "set_selection"):
            self.document.set_selection(result.match.start, result.match.end)
        return result

    def _nearest(self, rules: list[Rule], regions, cursor: int, direction: str) -> SearchResult:
        best = None
        for r in rules:
            if not r.find_text:
                continue
            try:
                match = self.engine.find_next(r, regions, cursor, direction, wrap_around=False)
            except RegexCompileError as exc:
                self.log(f"✗ {exc}", "error")
                continue
            if match is None:
                continue
            if best is None or (match.start > best.match.start if direction == "up"
                                else match.start < best.match.start):
                best = SearchResult(match, r)
        return best

    def replace_next(self, rule: Rule = None) -> SearchResult:
        """Replace the selected match (if the selection is one) and find the next."""
        self._reset_cancel()
        rules = [rule] if rule is not None else self.active_rules()
        start, end = self.document.selection()
        sequencer = EditSequencer(self.document, self.resolver, self.config, log=self.log)
        cursor = None

        for r in rules:
            if not r.find_text:
                continue
            try:
                current = next(iter(self.engine.find(r, [Region(start, end)])), None)
            except RegexCompileError as exc:
                self.log(f"✗ {exc}", "error")
                continue
            if current is None or current.start != start or current.end != end:
                continue
            before = self.document.length()
            try:
                sequencer.apply(r, [current])
            except ScriptError as exc:
                self.log(f"✗ {exc}", "error")
            cursor = end + self.document.length() - before
            break

        return self.find_next("down", rule, cursor=cursor)

    # ── Marks ────────────────────────────────────────────────────────────────

    def clear_marks(self):
        self.document.clear_marks()

    def marked_text(self) -> str:
        return self.document.eol.join(self.document.read(start, end)
                                      for start, end, _ in self.document.marks())

    # ── Sorting ──────────────────────────────────────────────────────────────

    def sort_by_column(self, column: int, direction: str = "ascending") -> SortPermutation:
        """Sort lines by a column; returns None when cancelled while scanning delimiters."""
        self._reset_cancel()
        try:
            index = self.column_index()
        except CancelledByUser:
            self.log("Sort cancelled, document unchanged", "warning")
            return None
        finally:
            self.cancelled = False
        return self.sorter.sort_by_column(index, column, direction, self.config.header_lines)

    def restore_original_order(self) -> bool:
        return self.sorter.restore_original_order()


# ══════════════════════════════════════════════════════════════════════════════
# RULE LIST FILES
# ══════════════════════════════════════════════════════════════════════════════

def save_rules(path, rules: list[Rule], config: ReplaceConfig = None):
    """Write the rule list (and optionally the configuration) as JSON."""
    data = {"version": 1, "rules": [rule.to_record() for rule in rules]}
    if config is not None:
        data["config"] = config.to_dict()
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)


def load_rules(path) -> tuple[list[Rule], ReplaceConfig]:
    """Read a rule list written by save_rules; list order is preserved."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, list):
        data = {"rules": data}
    rules = [Rule.from_record(record) for record in data.get("rules", [])]
    config = ReplaceConfig.from_dict(data["config"]) if "config" in data else None
    return rules, config
