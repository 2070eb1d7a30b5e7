#!/usr/bin/env python3
"""
Multi Replace
Editor window for the multi-rule find/replace engine.
Edit a document, build a rule list, then replace, mark, count or sort in one go.
"""

import json
from pathlib import Path
from datetime import datetime
from typing import Callable
from tkinter import filedialog, StringVar, BooleanVar, END
import customtkinter as ctk

from multi_replace import (
    Rule, ReplaceConfig, PassStats, ReplaceSession, TextDocument, MultiReplaceError,
    parse_columns, save_rules, load_rules, __version__,
)

try:
    from tkinterdnd2 import DND_FILES, TkinterDnD
    DND_AVAILABLE = True
except ImportError:
    DND_AVAILABLE = False


# ══════════════════════════════════════════════════════════════════════════════
# THEME CONFIGURATION
# ══════════════════════════════════════════════════════════════════════════════

COLORS = {
    "bg_dark": "#020617",
    "bg_secondary": "#0f172a",
    "bg_tertiary": "#1e293b",
    "bg_hover": "#334155",
    "border": "#334155",
    "text_primary": "#f8fafc",
    "text_secondary": "#94a3b8",
    "text_muted": "#64748b",
    "accent_green": "#22c55e",
    "accent_green_hover": "#16a34a",
    "accent_blue": "#60a5fa",
    "accent_blue_hover": "#3b82f6",
    "accent_purple": "#a78bfa",
    "accent_purple_hover": "#8b5cf6",
    "accent_orange": "#f97316",
    "accent_red": "#ef4444",
}

# Background colors for highlighted columns, cycled by column number
COLUMN_COLORS = ["#3b2f2f", "#1f3347", "#1f3d1f", "#3d2a3d", "#264040",
                 "#3d3d1f", "#40302a", "#1f3d3d", "#3d263d", "#2a3d2a"]

MODE_LABELS = {"literal": "Normal", "extended": "Extended", "regex": "Regex"}

# Session log levels: line marker and text color
LOG_STYLES = {
    "info": ("│", "text_secondary"),
    "success": ("✓", "accent_green"),
    "warning": ("⚠", "accent_orange"),
    "error": ("✗", "accent_red"),
}


def format_log_line(message: str, level: str, timestamp: str) -> str:
    """Format one log line; messages that already carry a marker keep it."""
    prefix = LOG_STYLES.get(level, LOG_STYLES["info"])[0]
    markers = tuple(marker for marker, _ in LOG_STYLES.values())
    if message.startswith(markers):
        return f"[{timestamp}] {message}\n"
    return f"[{timestamp}] {prefix} {message}\n"


# ══════════════════════════════════════════════════════════════════════════════
# EDITOR DOCUMENT
# ══════════════════════════════════════════════════════════════════════════════

class TextboxDocument(TextDocument):
    """TextDocument mirrored into a CTkTextbox.

    Engine edits go through replace(); edits typed by the user are diffed
    against the mirror so the same change events reach the engine.
    """

    def __init__(self, textbox: ctk.CTkTextbox):
        super().__init__(textbox.get("1.0", "end-1c"))
        self.textbox = textbox
        self._mark_tags: set[str] = set()
        textbox.bind("<<Modified>>", self._on_modified, add="+")

    def _index(self, pos: int) -> str:
        line = self.line_from_position(pos)
        return f"{line + 1}.{pos - self._line_starts[line]}"

    def _offset(self, index: str) -> int:
        line, col = (int(part) for part in self.textbox.index(index).split("."))
        return self._line_starts[line - 1] + col

    def load(self, text: str):
        self.textbox.delete("1.0", END)
        self.textbox.insert("1.0", text)
        self.sync_from_widget()

    def replace(self, start: int, end: int, text: str):
        first, last = self._index(start), self._index(end)
        super().replace(start, end, text)
        self.textbox.delete(first, last)
        self.textbox.insert(first, text)

    def sync_from_widget(self):
        new = self.textbox.get("1.0", "end-1c")
        old = self._text
        if new == old:
            return
        prefix = 0
        limit = min(len(old), len(new))
        while prefix < limit and old[prefix] == new[prefix]:
            prefix += 1
        suffix = 0
        while (suffix < limit - prefix
               and old[len(old) - 1 - suffix] == new[len(new) - 1 - suffix]):
            suffix += 1
        super().replace(prefix, len(old) - suffix, new[prefix:len(new) - suffix])

    def _on_modified(self, _event=None):
        self.sync_from_widget()
        self.textbox.edit_modified(False)

    def selection(self) -> tuple[int, int]:
        ranges = self.textbox.tag_ranges("sel")
        if not ranges:
            pos = self._offset("insert")
            return pos, pos
        return self._offset(str(ranges[0])), self._offset(str(ranges[1]))

    def set_selection(self, start: int, end: int):
        super().set_selection(start, end)
        self.textbox.tag_remove("sel", "1.0", END)
        self.textbox.tag_add("sel", self._index(start), self._index(end))
        self.textbox.mark_set("insert", self._index(end))
        self.textbox.see(self._index(start))

    def add_mark(self, start: int, end: int, tag: str):
        super().add_mark(start, end, tag)
        name = f"mark{tag}"
        if name not in self._mark_tags:
            self.textbox.tag_config(name, background=tag, foreground=COLORS["bg_dark"])
            self._mark_tags.add(name)
        self.textbox.tag_add(name, self._index(start), self._index(end))

    def clear_marks(self):
        super().clear_marks()
        for name in self._mark_tags:
            self.textbox.tag_remove(name, "1.0", END)

    def highlight_columns(self, regions):
        self.clear_column_highlight()
        for region in regions:
            name = f"column{region.column}"
            color = COLUMN_COLORS[(region.column - 1) % len(COLUMN_COLORS)]
            self.textbox.tag_config(name, background=color)
            self.textbox.tag_add(name, self._index(region.start), self._index(region.end))

    def clear_column_highlight(self):
        for name in self.textbox.tag_names():
            if name.startswith("column"):
                self.textbox.tag_remove(name, "1.0", END)


# ══════════════════════════════════════════════════════════════════════════════
# GUI COMPONENTS
# ══════════════════════════════════════════════════════════════════════════════

class RulePanel(ctk.CTkFrame):
    """Rule editor and ordered rule list."""

    def __init__(self, master, session: ReplaceSession, on_change: Callable = None, **kwargs):
        if "fg_color" not in kwargs:
            kwargs["fg_color"] = COLORS["bg_secondary"]
        if "corner_radius" not in kwargs:
            kwargs["corner_radius"] = 8
        super().__init__(master, **kwargs)

        self.session = session
        self.on_change = on_change

        self.find_text = StringVar(value="")
        self.replace_text = StringVar(value="")
        self.mode = StringVar(value=MODE_LABELS["literal"])
        self.whole_word = BooleanVar(value=False)
        self.match_case = BooleanVar(value=False)
        self.dynamic = BooleanVar(value=False)
        self.use_list = BooleanVar(value=True)

        # Header
        header = ctk.CTkFrame(self, fg_color="transparent")
        header.pack(fill="x", padx=12, pady=(12, 8))

        ctk.CTkLabel(
            header, text="🔁 Replace Rules",
            font=ctk.CTkFont(size=13, weight="bold"),
            text_color=COLORS["text_primary"]
        ).pack(side="left")

        ctk.CTkSwitch(
            header, text="Use list", variable=self.use_list,
            font=ctk.CTkFont(size=11),
            text_color=COLORS["text_secondary"],
            progress_color=COLORS["accent_green"]
        ).pack(side="right")

        # Find / replace entries
        form = ctk.CTkFrame(self, fg_color="transparent")
        form.pack(fill="x", padx=12, pady=(0, 8))

        for label, var in [("Find:", self.find_text), ("Replace:", self.replace_text)]:
            row = ctk.CTkFrame(form, fg_color="transparent")
            row.pack(fill="x", pady=2)
            ctk.CTkLabel(row, text=label, font=ctk.CTkFont(size=11),
                         text_color=COLORS["text_secondary"], width=60, anchor="w").pack(side="left")
            ctk.CTkEntry(
                row, textvariable=var, font=ctk.CTkFont(family="Consolas", size=11),
                height=30, fg_color=COLORS["bg_dark"],
                border_color=COLORS["border"],
                text_color=COLORS["text_primary"]
            ).pack(side="left", fill="x", expand=True)

        # Options
        opts = ctk.CTkFrame(self, fg_color="transparent")
        opts.pack(fill="x", padx=12, pady=(0, 8))

        ctk.CTkOptionMenu(
            opts, variable=self.mode, values=list(MODE_LABELS.values()),
            font=ctk.CTkFont(size=11), height=28, width=100,
            fg_color=COLORS["bg_dark"],
            button_color=COLORS["bg_tertiary"],
            dropdown_fg_color=COLORS["bg_secondary"]
        ).pack(side="left", padx=(0, 8))

        for text, var in [("Whole word", self.whole_word), ("Match case", self.match_case),
                          ("Expression", self.dynamic)]:
            ctk.CTkCheckBox(
                opts, text=text, variable=var,
                font=ctk.CTkFont(size=11),
                fg_color=COLORS["accent_blue"],
                text_color=COLORS["text_secondary"]
            ).pack(side="left", padx=(0, 8))

        # Rule list
        list_frame = ctk.CTkFrame(self, fg_color=COLORS["bg_dark"], corner_radius=6)
        list_frame.pack(fill="both", expand=True, padx=12, pady=(0, 8))

        self.rules_frame = ctk.CTkScrollableFrame(
            list_frame, fg_color="transparent",
            scrollbar_button_color=COLORS["bg_tertiary"]
        )
        self.rules_frame.pack(fill="both", expand=True, padx=4, pady=4)

        # Buttons
        btn_frame = ctk.CTkFrame(self, fg_color="transparent")
        btn_frame.pack(fill="x", padx=12, pady=(0, 12))

        ctk.CTkButton(
            btn_frame, text="+ Add to List", font=ctk.CTkFont(size=11),
            height=28, fg_color=COLORS["accent_purple"],
            hover_color=COLORS["accent_purple_hover"],
            corner_radius=4, command=self._add_rule
        ).pack(side="left")

        ctk.CTkButton(
            btn_frame, text="Swap", font=ctk.CTkFont(size=11),
            height=28, width=60, fg_color=COLORS["bg_tertiary"],
            hover_color=COLORS["bg_hover"],
            text_color=COLORS["text_secondary"],
            corner_radius=4, command=self._swap
        ).pack(side="left", padx=4)

        ctk.CTkButton(
            btn_frame, text="Clear All", font=ctk.CTkFont(size=11),
            height=28, fg_color=COLORS["bg_tertiary"],
            hover_color=COLORS["accent_red"],
            text_color=COLORS["text_secondary"],
            corner_radius=4, command=self._clear_rules
        ).pack(side="right")

        self.refresh()

    def current_rule(self) -> Rule:
        """Rule built from the entry fields."""
        mode = next(key for key, label in MODE_LABELS.items() if label == self.mode.get())
        return Rule(
            find_text=self.find_text.get(),
            replace_text=self.replace_text.get(),
            mode=mode,
            whole_word=self.whole_word.get(),
            match_case=self.match_case.get(),
            dynamic=self.dynamic.get(),
        )

    def _add_rule(self):
        rule = self.current_rule()
        if not rule.find_text:
            return
        self.session.add_rule(rule)
        self.refresh()

    def _swap(self):
        find, replace = self.find_text.get(), self.replace_text.get()
        self.find_text.set(replace)
        self.replace_text.set(find)

    def _clear_rules(self):
        self.session.rules.clear()
        self.refresh()

    def _copy_back(self, rule: Rule):
        self.find_text.set(rule.find_text)
        self.replace_text.set(rule.replace_text)
        self.mode.set(MODE_LABELS[rule.mode])
        self.whole_word.set(rule.whole_word)
        self.match_case.set(rule.match_case)
        self.dynamic.set(rule.dynamic)

    def _move(self, rule: Rule, direction: str):
        if self.session.move_rule(rule.rule_id, direction):
            self.refresh()

    def _remove(self, rule: Rule):
        if self.session.remove_rule(rule.rule_id):
            self.refresh()

    def _toggle(self, rule: Rule, var: BooleanVar):
        rule.enabled = var.get()
        if self.on_change:
            self.on_change()

    def refresh(self):
        for w in self.rules_frame.winfo_children():
            w.destroy()

        if not self.session.rules:
            ctk.CTkLabel(
                self.rules_frame,
                text="No rules in the list",
                font=ctk.CTkFont(size=11),
                text_color=COLORS["text_muted"]
            ).pack(pady=10)
        else:
            for idx, rule in enumerate(self.session.rules):
                self._create_rule_row(idx, rule)

        if self.on_change:
            self.on_change()

    def _create_rule_row(self, idx: int, rule: Rule):
        bg = COLORS["bg_secondary"] if idx % 2 == 0 else COLORS["bg_tertiary"]
        frame = ctk.CTkFrame(self.rules_frame, fg_color=bg, corner_radius=4, height=32)
        frame.pack(fill="x", pady=1)
        frame.pack_propagate(False)

        var = BooleanVar(value=rule.enabled)
        ctk.CTkCheckBox(
            frame, text="", variable=var, width=24,
            fg_color=COLORS["accent_blue"],
            command=lambda r=rule, v=var: self._toggle(r, v)
        ).pack(side="left", padx=(6, 2))

        flags = MODE_LABELS[rule.mode][0]
        flags += "W" if rule.whole_word else ""
        flags += "C" if rule.match_case else ""
        flags += "E" if rule.dynamic else ""
        counts = f"{rule.find_count}/{rule.replace_count}" if rule.find_count else ""

        ctk.CTkButton(
            frame, text=f"{rule.find_text}  →  {rule.replace_text}",
            font=ctk.CTkFont(family="Consolas", size=11), anchor="w",
            fg_color="transparent", hover_color=COLORS["bg_hover"],
            text_color=COLORS["text_primary"], height=26,
            command=lambda r=rule: self._copy_back(r)
        ).pack(side="left", fill="x", expand=True)

        for text in (counts, flags):
            ctk.CTkLabel(frame, text=text, font=ctk.CTkFont(size=10),
                         text_color=COLORS["text_muted"], width=40).pack(side="left")

        for text, command in [("✕", lambda r=rule: self._remove(r)),
                              ("▼", lambda r=rule: self._move(r, "down")),
                              ("▲", lambda r=rule: self._move(r, "up"))]:
            ctk.CTkButton(
                frame, text=text, font=ctk.CTkFont(size=10),
                width=24, height=24, fg_color="transparent",
                hover_color=COLORS["accent_red"] if text == "✕" else COLORS["bg_hover"],
                text_color=COLORS["text_muted"], corner_radius=4,
                command=command
            ).pack(side="right", padx=1)


class ScopePanel(ctk.CTkFrame):
    """Search scope and column settings."""

    def __init__(self, master, on_highlight: Callable = None, **kwargs):
        if "fg_color" not in kwargs:
            kwargs["fg_color"] = COLORS["bg_secondary"]
        if "corner_radius" not in kwargs:
            kwargs["corner_radius"] = 8
        super().__init__(master, **kwargs)

        self.scope = StringVar(value="all")
        self.columns = StringVar(value="1")
        self.delimiter = StringVar(value=",")
        self.quote_char = StringVar(value="None")
        self.header_lines = StringVar(value="0")
        self.wrap_around = BooleanVar(value=True)

        # Header
        header = ctk.CTkFrame(self, fg_color="transparent")
        header.pack(fill="x", padx=12, pady=(12, 8))

        ctk.CTkLabel(
            header, text="🎯 Scope",
            font=ctk.CTkFont(size=13, weight="bold"),
            text_color=COLORS["text_primary"]
        ).pack(side="left")

        ctk.CTkCheckBox(
            header, text="Wrap around", variable=self.wrap_around,
            font=ctk.CTkFont(size=11),
            fg_color=COLORS["accent_blue"],
            text_color=COLORS["text_secondary"]
        ).pack(side="right")

        # Scope selection
        mode_frame = ctk.CTkFrame(self, fg_color="transparent")
        mode_frame.pack(fill="x", padx=12, pady=(0, 8))

        for scope, text in [("all", "All Text"), ("selection", "Selection"), ("column", "CSV Columns")]:
            ctk.CTkRadioButton(
                mode_frame, text=text, variable=self.scope, value=scope,
                font=ctk.CTkFont(size=11),
                fg_color=COLORS["accent_blue"],
                hover_color=COLORS["accent_blue_hover"],
                text_color=COLORS["text_secondary"]
            ).pack(side="left", padx=(0, 12))

        # Column settings
        row = ctk.CTkFrame(self, fg_color="transparent")
        row.pack(fill="x", padx=12, pady=(0, 8))

        for label, var, width in [("Cols:", self.columns, 80), ("Delim:", self.delimiter, 50),
                                  ("Header:", self.header_lines, 40)]:
            ctk.CTkLabel(row, text=label, font=ctk.CTkFont(size=11),
                         text_color=COLORS["text_secondary"]).pack(side="left", padx=(0, 4))
            ctk.CTkEntry(
                row, textvariable=var, width=width, height=28,
                font=ctk.CTkFont(family="Consolas", size=11),
                fg_color=COLORS["bg_dark"], border_color=COLORS["border"],
                text_color=COLORS["text_primary"]
            ).pack(side="left", padx=(0, 10))

        ctk.CTkLabel(row, text="Quote:", font=ctk.CTkFont(size=11),
                     text_color=COLORS["text_secondary"]).pack(side="left", padx=(0, 4))
        ctk.CTkOptionMenu(
            row, variable=self.quote_char, values=["None", '"', "'"],
            font=ctk.CTkFont(size=11), height=28, width=50,
            fg_color=COLORS["bg_dark"],
            button_color=COLORS["bg_tertiary"],
            dropdown_fg_color=COLORS["bg_secondary"]
        ).pack(side="left")

        ctk.CTkButton(
            self, text="Highlight Columns", font=ctk.CTkFont(size=11),
            height=28, fg_color=COLORS["bg_tertiary"],
            hover_color=COLORS["bg_hover"],
            text_color=COLORS["text_secondary"],
            corner_radius=4, command=on_highlight
        ).pack(anchor="w", padx=12, pady=(0, 12))

    def apply_to(self, config: ReplaceConfig):
        config.scope = self.scope.get()
        config.columns = self.columns.get()
        config.delimiter = self.delimiter.get()
        quote = self.quote_char.get()
        config.quote_char = "" if quote == "None" else quote
        config.wrap_around = self.wrap_around.get()
        try:
            config.header_lines = max(int(self.header_lines.get() or 0), 0)
        except ValueError:
            config.header_lines = 0

    def load_from(self, config: ReplaceConfig):
        self.scope.set(config.scope)
        self.columns.set(config.columns)
        self.delimiter.set(config.delimiter)
        self.quote_char.set(config.quote_char or "None")
        self.header_lines.set(str(config.header_lines))
        self.wrap_around.set(config.wrap_around)


class LogPanel(ctk.CTkFrame):
    """Operation log display, colored by level, with a running problem count."""

    def __init__(self, master, **kwargs):
        if "fg_color" not in kwargs:
            kwargs["fg_color"] = COLORS["bg_secondary"]
        if "corner_radius" not in kwargs:
            kwargs["corner_radius"] = 8
        super().__init__(master, **kwargs)
        self.counts = {level: 0 for level in LOG_STYLES}

        # Header
        header = ctk.CTkFrame(self, fg_color="transparent")
        header.pack(fill="x", padx=12, pady=(12, 8))

        ctk.CTkLabel(
            header, text="📋 Log",
            font=ctk.CTkFont(size=13, weight="bold"),
            text_color=COLORS["text_primary"]
        ).pack(side="left")

        ctk.CTkButton(
            header, text="Clear", font=ctk.CTkFont(size=10),
            height=24, width=50, fg_color=COLORS["bg_tertiary"],
            hover_color=COLORS["bg_hover"],
            text_color=COLORS["text_secondary"],
            corner_radius=4, command=self.clear
        ).pack(side="right")

        self.problems_label = ctk.CTkLabel(
            header, text="", font=ctk.CTkFont(size=10),
            text_color=COLORS["text_muted"]
        )
        self.problems_label.pack(side="right", padx=8)

        # Log text
        self.log_text = ctk.CTkTextbox(
            self, fg_color=COLORS["bg_dark"],
            text_color=COLORS["text_primary"],
            font=ctk.CTkFont(family="Consolas", size=11),
            corner_radius=6
        )
        self.log_text.pack(fill="both", expand=True, padx=12, pady=(0, 12))
        for level, (_, color) in LOG_STYLES.items():
            self.log_text.tag_config(level, foreground=COLORS[color])
        self.log_text.configure(state="disabled")

    def log(self, message: str, level: str = "info"):
        if level not in LOG_STYLES:
            level = "info"
        self.counts[level] += 1
        self.log_text.configure(state="normal")
        line = format_log_line(message, level, datetime.now().strftime("%H:%M:%S"))
        self.log_text.insert(END, line, level)
        self.log_text.see(END)
        self.log_text.configure(state="disabled")
        self._update_problems()

    def _update_problems(self):
        warnings, errors = self.counts["warning"], self.counts["error"]
        if warnings or errors:
            self.problems_label.configure(
                text=f"⚠ {warnings}  ✗ {errors}",
                text_color=COLORS["accent_red"] if errors else COLORS["accent_orange"]
            )
        else:
            self.problems_label.configure(text="", text_color=COLORS["text_muted"])

    def clear(self):
        self.counts = {level: 0 for level in LOG_STYLES}
        self.log_text.configure(state="normal")
        self.log_text.delete("1.0", END)
        self.log_text.configure(state="disabled")
        self._update_problems()


class StatsPanel(ctk.CTkFrame):
    """Pass statistics display."""

    def __init__(self, master, **kwargs):
        if "fg_color" not in kwargs:
            kwargs["fg_color"] = COLORS["bg_secondary"]
        if "corner_radius" not in kwargs:
            kwargs["corner_radius"] = 8
        super().__init__(master, **kwargs)

        self.labels = {}

        stats_config = [
            ("find_count", "Found", COLORS["accent_blue"]),
            ("replace_count", "Replaced", COLORS["accent_green"]),
            ("skipped", "Skipped (errors)", COLORS["accent_orange"]),
            ("failed_rules", "Failed Rules", COLORS["accent_red"]),
            ("status", "Status", COLORS["text_primary"]),
        ]

        for i, (key, label, color) in enumerate(stats_config):
            frame = ctk.CTkFrame(self, fg_color="transparent")
            frame.pack(fill="x", padx=12, pady=(12 if i == 0 else 2, 2 if i < 4 else 12))

            ctk.CTkLabel(
                frame, text=label, font=ctk.CTkFont(size=11),
                text_color=COLORS["text_muted"]
            ).pack(side="left")

            val_label = ctk.CTkLabel(
                frame, text="—", font=ctk.CTkFont(size=12, weight="bold"),
                text_color=color
            )
            val_label.pack(side="right")
            self.labels[key] = val_label

    def update(self, stats: PassStats):
        for key, label in self.labels.items():
            val = getattr(stats, key, 0)
            label.configure(text=f"{val:,}" if isinstance(val, int) else str(val))

    def reset(self):
        for label in self.labels.values():
            label.configure(text="—")


# ══════════════════════════════════════════════════════════════════════════════
# MAIN APPLICATION
# ══════════════════════════════════════════════════════════════════════════════

class MultiReplaceApp:
    """Main application."""

    def __init__(self):
        if DND_AVAILABLE:
            self.root = TkinterDnD.Tk()
        else:
            self.root = ctk.CTk()

        self.root.title("Multi Replace")
        self.root.geometry("1300x850")
        self.root.minsize(1050, 700)

        ctk.set_appearance_mode("dark")
        self.root.configure(bg=COLORS["bg_dark"])

        self.busy = False
        self.current_file: Path = None

        self._build_ui()

        if DND_AVAILABLE:
            self._setup_dnd()

    def _build_ui(self):
        # Main container
        main = ctk.CTkFrame(self.root, fg_color="transparent")
        main.pack(fill="both", expand=True, padx=16, pady=16)

        # Header
        header = ctk.CTkFrame(main, fg_color="transparent")
        header.pack(fill="x", pady=(0, 12))

        title_frame = ctk.CTkFrame(header, fg_color="transparent")
        title_frame.pack(side="left")

        ctk.CTkLabel(
            title_frame, text="Multi Replace",
            font=ctk.CTkFont(size=26, weight="bold"),
            text_color=COLORS["text_primary"]
        ).pack(anchor="w")

        ctk.CTkLabel(
            title_frame, text="Replace • Mark • Count • Sort by Column",
            font=ctk.CTkFont(size=12),
            text_color=COLORS["text_muted"]
        ).pack(anchor="w")

        ver_badge = ctk.CTkFrame(header, fg_color=COLORS["bg_tertiary"], corner_radius=12)
        ver_badge.pack(side="right")
        ctk.CTkLabel(ver_badge, text=f"v{__version__}", font=ctk.CTkFont(size=11),
                     text_color=COLORS["text_muted"]).pack(padx=12, pady=4)

        # Content: 3 columns
        content = ctk.CTkFrame(main, fg_color="transparent")
        content.pack(fill="both", expand=True)

        # Left column: Editor
        left_col = ctk.CTkFrame(content, fg_color=COLORS["bg_secondary"], corner_radius=8)
        left_col.pack(side="left", fill="both", expand=True, padx=(0, 8))

        editor_header = ctk.CTkFrame(left_col, fg_color="transparent")
        editor_header.pack(fill="x", padx=12, pady=(12, 8))

        self.file_label = ctk.CTkLabel(
            editor_header, text="📄 Untitled",
            font=ctk.CTkFont(size=13, weight="bold"),
            text_color=COLORS["text_primary"]
        )
        self.file_label.pack(side="left")

        self.position_label = ctk.CTkLabel(
            editor_header, text="",
            font=ctk.CTkFont(size=11),
            text_color=COLORS["text_muted"]
        )
        self.position_label.pack(side="right")

        for text, command in [("Save", self._save_file), ("Open", self._open_file)]:
            ctk.CTkButton(
                editor_header, text=text, font=ctk.CTkFont(size=11),
                height=24, width=50, fg_color=COLORS["bg_tertiary"],
                hover_color=COLORS["bg_hover"],
                text_color=COLORS["text_secondary"],
                corner_radius=4, command=command
            ).pack(side="right", padx=(0, 8))

        self.editor = ctk.CTkTextbox(
            left_col, fg_color=COLORS["bg_dark"],
            text_color=COLORS["text_primary"],
            font=ctk.CTkFont(family="Consolas", size=12),
            corner_radius=6, wrap="none", undo=True
        )
        self.editor.pack(fill="both", expand=True, padx=12, pady=(0, 12))
        self.editor.bind("<ButtonRelease-1>", self._show_position, add="+")
        self.editor.bind("<KeyRelease>", self._show_position, add="+")

        self.document = TextboxDocument(self.editor)

        # Middle column: Rules and scope
        mid_col = ctk.CTkFrame(content, fg_color="transparent", width=430)
        mid_col.pack(side="left", fill="both", padx=8)
        mid_col.pack_propagate(False)

        # Right column: Log and Stats
        right_col = ctk.CTkFrame(content, fg_color="transparent", width=280)
        right_col.pack(side="right", fill="both", padx=(8, 0))
        right_col.pack_propagate(False)

        self.stats_panel = StatsPanel(right_col)
        self.stats_panel.pack(fill="x", pady=(0, 8))

        self.log_panel = LogPanel(right_col)
        self.log_panel.pack(fill="both", expand=True)

        self.session = ReplaceSession(
            self.document,
            progress_callback=self._update_progress,
            log_callback=self.log_panel.log,
        )

        self.scope_panel = ScopePanel(mid_col, on_highlight=self._highlight_columns)
        self.scope_panel.pack(fill="x", pady=(0, 8))

        self.rule_panel = RulePanel(mid_col, self.session)
        self.rule_panel.pack(fill="both", expand=True)

        # Bottom: Progress and buttons
        bottom = ctk.CTkFrame(main, fg_color="transparent")
        bottom.pack(fill="x", pady=(12, 0))

        progress_frame = ctk.CTkFrame(bottom, fg_color="transparent")
        progress_frame.pack(fill="x", pady=(0, 8))

        self.progress_label = ctk.CTkLabel(
            progress_frame, text="Ready",
            font=ctk.CTkFont(size=11),
            text_color=COLORS["text_muted"]
        )
        self.progress_label.pack(anchor="w", pady=(0, 4))

        self.progress_bar = ctk.CTkProgressBar(
            progress_frame, height=8,
            fg_color=COLORS["bg_tertiary"],
            progress_color=COLORS["accent_green"],
            corner_radius=4
        )
        self.progress_bar.pack(fill="x")
        self.progress_bar.set(0)

        btn_frame = ctk.CTkFrame(bottom, fg_color="transparent")
        btn_frame.pack(fill="x")

        # List file buttons
        preset_frame = ctk.CTkFrame(btn_frame, fg_color="transparent")
        preset_frame.pack(side="left")

        for text, command in [("💾 Save List", self._save_list), ("📂 Load List", self._load_list)]:
            ctk.CTkButton(
                preset_frame, text=text, font=ctk.CTkFont(size=11),
                height=36, fg_color=COLORS["bg_tertiary"],
                hover_color=COLORS["bg_hover"],
                text_color=COLORS["text_secondary"],
                corner_radius=6, command=command
            ).pack(side="left", padx=(0, 4))

        # Action buttons
        action_frame = ctk.CTkFrame(btn_frame, fg_color="transparent")
        action_frame.pack(side="right")

        self.action_buttons = []
        actions = [
            ("▲ Find", lambda: self._find("up")),
            ("Find ▼", lambda: self._find("down")),
            ("Replace", self._replace_next),
            ("Count", lambda: self._run("count")),
            ("Mark All", lambda: self._run("mark")),
            ("Clear Marks", self._clear_marks),
            ("Copy Marked", self._copy_marked),
            ("Sort ↑", lambda: self._sort("ascending")),
            ("Sort ↓", lambda: self._sort("descending")),
            ("Restore Order", self._restore_order),
        ]
        for text, command in actions:
            btn = ctk.CTkButton(
                action_frame, text=text, font=ctk.CTkFont(size=11),
                height=42, width=80, fg_color=COLORS["bg_tertiary"],
                hover_color=COLORS["bg_hover"],
                text_color=COLORS["text_primary"],
                corner_radius=8, command=command
            )
            btn.pack(side="left", padx=(0, 4))
            self.action_buttons.append(btn)

        self.cancel_btn = ctk.CTkButton(
            action_frame, text="Cancel", font=ctk.CTkFont(size=13),
            height=42, width=80, fg_color=COLORS["bg_tertiary"],
            hover_color=COLORS["accent_red"],
            text_color=COLORS["text_primary"],
            corner_radius=8, command=self._cancel,
            state="disabled"
        )
        self.cancel_btn.pack(side="left", padx=(4, 8))

        self.replace_btn = ctk.CTkButton(
            action_frame, text="▶  Replace All",
            font=ctk.CTkFont(size=14, weight="bold"),
            height=42, width=150,
            fg_color=COLORS["accent_green"],
            hover_color=COLORS["accent_green_hover"],
            corner_radius=8, command=lambda: self._run("replace")
        )
        self.replace_btn.pack(side="left")
        self.action_buttons.append(self.replace_btn)

    def _setup_dnd(self):
        def drop(event):
            files = self.root.tk.splitlist(event.data)
            if files:
                self._load_document(Path(files[0]))

        self.root.drop_target_register(DND_FILES)
        self.root.dnd_bind('<<Drop>>', drop)

    # ── Document ─────────────────────────────────────────────────────────────

    def _open_file(self):
        file = filedialog.askopenfilename(
            title="Open Document",
            filetypes=[("Text Files", "*.txt"), ("CSV Files", "*.csv"),
                       ("TSV Files", "*.tsv"), ("All Files", "*.*")]
        )
        if file:
            self._load_document(Path(file))

    def _load_document(self, path: Path):
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            self.log_panel.log(f"Error opening {path.name}: {e}", "error")
            return
        self.document.load(text)
        self.current_file = path
        self.file_label.configure(text=f"📄 {path.name}")
        self.log_panel.log(f"Opened {path.name} ({self.document.line_count():,} lines)", "success")

    def _save_file(self):
        path = self.current_file
        if path is None:
            file = filedialog.asksaveasfilename(
                title="Save Document", defaultextension=".txt",
                filetypes=[("Text Files", "*.txt"), ("All Files", "*.*")]
            )
            if not file:
                return
            path = Path(file)
        try:
            path.write_text(self.document.text, encoding="utf-8")
        except OSError as e:
            self.log_panel.log(f"Error saving {path.name}: {e}", "error")
            return
        self.current_file = path
        self.file_label.configure(text=f"📄 {path.name}")
        self.log_panel.log(f"Saved {path.name}", "success")

    def _show_position(self, _event=None):
        self.document.sync_from_widget()
        start, _ = self.document.selection()
        try:
            line, column = self.session.locate(start)
        except MultiReplaceError:
            line, column = self.document.line_from_position(start) + 1, 0
        text = f"Line {line}" + (f", Column {column}" if column else "")
        self.position_label.configure(text=text)

    # ── Operations ───────────────────────────────────────────────────────────

    def _sync_config(self):
        self.document.sync_from_widget()
        self.scope_panel.apply_to(self.session.config)
        self.session.config.use_list = self.rule_panel.use_list.get()

    def _selected_rule(self) -> Rule:
        """Single ad-hoc rule when the list is not used, else None."""
        if self.session.config.use_list:
            return None
        return self.rule_panel.current_rule()

    def _run(self, operation: str):
        if self.busy:
            return
        self._sync_config()
        rule = self._selected_rule()

        self.busy = True
        self._set_ui_state(True)
        self.stats_panel.reset()
        self.progress_bar.set(0)
        try:
            if operation == "replace":
                stats = self.session.replace_all(rule)
            elif operation == "mark":
                stats = self.session.mark_all(rule)
            else:
                stats = self.session.count_all(rule)
        except MultiReplaceError as e:
            self.log_panel.log(str(e), "error")
            stats = None
        finally:
            self.busy = False
            self._set_ui_state(False)
        if stats is not None:
            self._complete(stats)

    def _find(self, direction: str):
        self._sync_config()
        try:
            result = self.session.find_next(direction, self._selected_rule())
        except MultiReplaceError as e:
            self.log_panel.log(str(e), "error")
            return
        if result is not None:
            self._report_match(result)

    def _replace_next(self):
        self._sync_config()
        try:
            result = self.session.replace_next(self._selected_rule())
        except MultiReplaceError as e:
            self.log_panel.log(str(e), "error")
            return
        self.rule_panel.refresh()
        if result is not None:
            self._report_match(result)

    def _report_match(self, result):
        line, column = self.session.locate(result.match.start)
        where = f"line {line}" + (f", column {column}" if column else "")
        wrapped = " (wrapped)" if result.wrapped else ""
        self.progress_label.configure(text=f"Found {result.match.text!r} at {where}{wrapped}")

    def _clear_marks(self):
        self.session.clear_marks()
        self.log_panel.log("Marks cleared", "info")

    def _copy_marked(self):
        text = self.session.marked_text()
        if not text:
            self.log_panel.log("Nothing marked", "warning")
            return
        self.root.clipboard_clear()
        self.root.clipboard_append(text)
        self.log_panel.log(f"Copied {len(self.document.marks()):,} marked strings", "success")

    def _highlight_columns(self):
        self._sync_config()
        try:
            self.document.highlight_columns(self.session.column_highlight_ranges())
        except MultiReplaceError as e:
            self.log_panel.log(str(e), "error")

    def _sort(self, direction: str):
        self._sync_config()
        columns = sorted(self._parse_sort_column())
        if not columns:
            self.log_panel.log("Enter the column to sort by", "warning")
            return
        try:
            self.session.sort_by_column(columns[0], direction)
        except MultiReplaceError as e:
            self.log_panel.log(str(e), "error")

    def _parse_sort_column(self) -> set:
        try:
            return parse_columns(self.session.config.columns)
        except MultiReplaceError as e:
            self.log_panel.log(str(e), "error")
            return set()

    def _restore_order(self):
        self._sync_config()
        if not self.session.restore_original_order():
            self.log_panel.log("No sorted order to restore", "warning")

    def _update_progress(self, value: float, status: str):
        self.progress_bar.set(value / 100)
        self.progress_label.configure(text=status)
        # Let the cancel button be clicked between chunks
        self.root.update()

    def _cancel(self):
        if self.busy:
            self.session.cancel()
            self.log_panel.log("Cancelling...", "warning")

    def _complete(self, stats: PassStats):
        self.stats_panel.update(stats)
        self.rule_panel.refresh()
        if stats.cancelled:
            self.progress_label.configure(text="Cancelled")
        for error in stats.errors:
            self.log_panel.log(error, "error")

    def _set_ui_state(self, busy: bool):
        state = "disabled" if busy else "normal"
        for btn in self.action_buttons:
            btn.configure(state=state)
        self.cancel_btn.configure(state="normal" if busy else "disabled")

    # ── Rule list files ──────────────────────────────────────────────────────

    def _save_list(self):
        file = filedialog.asksaveasfilename(
            title="Save Rule List",
            defaultextension=".json",
            filetypes=[("JSON Files", "*.json")]
        )
        if file:
            self._sync_config()
            try:
                save_rules(file, self.session.rules, self.session.config)
            except OSError as e:
                self.log_panel.log(f"Error saving list: {e}", "error")
                return
            self.log_panel.log(f"Rule list saved: {Path(file).name}", "success")

    def _load_list(self):
        file = filedialog.askopenfilename(
            title="Load Rule List",
            filetypes=[("JSON Files", "*.json")]
        )
        if file:
            try:
                rules, config = load_rules(file)
            except (OSError, ValueError, json.JSONDecodeError) as e:
                self.log_panel.log(f"Error loading list: {e}", "error")
                return
            self.session.rules[:] = rules
            if config is not None:
                self.session.config = config
                self.scope_panel.load_from(config)
                self.rule_panel.use_list.set(config.use_list)
            self.rule_panel.refresh()
            self.log_panel.log(f"Rule list loaded: {Path(file).name} ({len(rules)} rules)", "success")

    def run(self):
        self.root.mainloop()


# ══════════════════════════════════════════════════════════════════════════════
# ENTRY POINT
# ══════════════════════════════════════════════════════════════════════════════

def main():
    app = MultiReplaceApp()
    app.run()


if __name__ == "__main__":
    main()
