"""
markup_layout.py - inline markup tokenizer + style-aware line breaker
- `**text**` toggles bold, `_text_` toggles italic (relative to the running style)
- `\\n` forces a paragraph break, blank paragraphs keep their vertical slot
- width measurement is injected so the same layout runs against any backend
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("[markup_layout] %(levelname)s %(message)s"))
    logger.addHandler(handler)
logger.setLevel(os.getenv("INKCARD_LOG_LEVEL", "INFO").upper())
logger.propagate = False

MAX_SCAN_STEPS = 1000

_BOLD_RE = re.compile(r"\*\*([^*]+)\*\*")
_ITALIC_RE = re.compile(r"_([^_]+)_")
_MARKER_START_RE = re.compile(r"\*\*|_")
_WHITESPACE_SPLIT_RE = re.compile(r"(\s+)")

STYLE_NAMES = {
    "normal": (False, False),
    "regular": (False, False),
    "bold": (True, False),
    "italic": (False, True),
    "bold-italic": (True, True),
    "bold_italic": (True, True),
    "bolditalic": (True, True),
}


# ---------- Data model ----------

@dataclass(frozen=True)
class StyleFlags:
    bold: bool = False
    italic: bool = False

    @classmethod
    def from_name(cls, name: Optional[str]) -> "StyleFlags":
        """Map a UI style name ("normal", "bold", "italic", "bold-italic") to flags."""
        key = (name or "normal").strip().lower()
        if key not in STYLE_NAMES:
            raise ValueError(f"Unknown text style: {name!r}")
        bold, italic = STYLE_NAMES[key]
        return cls(bold=bold, italic=italic)

    def toggled(self, marker: str) -> "StyleFlags":
        if marker == "bold":
            return StyleFlags(bold=not self.bold, italic=self.italic)
        if marker == "italic":
            return StyleFlags(bold=self.bold, italic=not self.italic)
        raise ValueError(f"Unknown marker: {marker!r}")

    @property
    def name(self) -> str:
        if self.bold and self.italic:
            return "bold-italic"
        if self.bold:
            return "bold"
        if self.italic:
            return "italic"
        return "normal"


@dataclass(frozen=True)
class StyledRun:
    text: str
    style: StyleFlags

    @property
    def is_whitespace(self) -> bool:
        return not self.text.strip()


Line = Tuple[StyledRun, ...]
MeasureFn = Callable[[str, StyleFlags], float]


@dataclass(frozen=True)
class Document:
    lines: Tuple[Line, ...] = field(default_factory=tuple)
    font_size_px: float = 0.0

    def __len__(self) -> int:
        return len(self.lines)

    @property
    def is_empty(self) -> bool:
        return not self.lines


# ---------- Tokenizer ----------

class _MarkupScanner:
    """Left-to-right scanner sharing one step budget across nested markers."""

    def __init__(self, max_steps: int = MAX_SCAN_STEPS):
        self.max_steps = max_steps
        self.steps = 0
        self.exhausted = False

    def scan(self, text: str, style: StyleFlags) -> List[StyledRun]:
        runs: List[StyledRun] = []
        pos = 0
        while pos < len(text):
            if self.steps >= self.max_steps:
                if not self.exhausted:
                    logger.warning("markup scan aborted after %d steps, emitting remainder as plain text", self.steps)
                self.exhausted = True
                _append_run(runs, text[pos:], style)
                break
            self.steps += 1

            bold = _BOLD_RE.match(text, pos)
            if bold:
                for run in self.scan(bold.group(1), style.toggled("bold")):
                    _append_run(runs, run.text, run.style)
                pos = bold.end()
                continue

            italic = _ITALIC_RE.match(text, pos)
            if italic:
                for run in self.scan(italic.group(1), style.toggled("italic")):
                    _append_run(runs, run.text, run.style)
                pos = italic.end()
                continue

            nxt = _MARKER_START_RE.search(text, pos)
            if nxt is None:
                _append_run(runs, text[pos:], style)
                pos = len(text)
            elif nxt.start() == pos:
                # unterminated marker: literal, one char at a time
                _append_run(runs, text[pos], style)
                pos += 1
            else:
                _append_run(runs, text[pos:nxt.start()], style)
                pos = nxt.start()
        return runs


def _append_run(runs: List[StyledRun], text: str, style: StyleFlags) -> None:
    if not text:
        return
    if runs and runs[-1].style == style:
        runs[-1] = StyledRun(runs[-1].text + text, style)
    else:
        runs.append(StyledRun(text, style))


def parse_markup(paragraph: str, base_style: StyleFlags, max_steps: int = MAX_SCAN_STEPS) -> List[StyledRun]:
    """Split one paragraph into styled runs, toggling against the running style."""
    if not paragraph:
        return []
    return _MarkupScanner(max_steps).scan(paragraph, base_style)


def explode_runs(runs: List[StyledRun]) -> List[StyledRun]:
    tokens: List[StyledRun] = []
    for run in runs:
        for piece in _WHITESPACE_SPLIT_RE.split(run.text):
            if piece:
                tokens.append(StyledRun(piece, run.style))
    return tokens


# ---------- Line breaking ----------

def _merge_tokens(tokens: List[StyledRun]) -> Line:
    merged: List[StyledRun] = []
    for tok in tokens:
        _append_run(merged, tok.text, tok.style)
    return tuple(merged)


def break_lines(tokens: List[StyledRun], measure_width: MeasureFn, max_width_px: float) -> List[Line]:
    """
    Greedy wrap. A non-whitespace token that would push the line past
    max_width_px starts a new line, unless the current line is empty; a token
    wider than the budget on its own is placed alone and never split.
    """
    lines: List[Line] = []
    current: List[StyledRun] = []
    current_width = 0.0
    for tok in tokens:
        width = measure_width(tok.text, tok.style)
        if current and not tok.is_whitespace and current_width + width > max_width_px:
            lines.append(_merge_tokens(current))
            current = [tok]
            current_width = width
        else:
            current.append(tok)
            current_width += width
    if current:
        lines.append(_merge_tokens(current))
    return lines


def measure_line(line: Line, measure_width: MeasureFn) -> float:
    return sum(measure_width(run.text, run.style) for run in line)


def layout_document(
    text: str,
    base_style: StyleFlags,
    measure_width: MeasureFn,
    max_width_px: float,
    font_size_px: float,
) -> Document:
    """Turn raw multi-paragraph text into wrapped lines of styled runs."""
    if not text or not text.strip():
        return Document(lines=(), font_size_px=font_size_px)

    lines: List[Line] = []
    for paragraph in text.split("\n"):
        if not paragraph.strip():
            lines.append(())
            continue
        runs = parse_markup(paragraph, base_style)
        lines.extend(break_lines(explode_runs(runs), measure_width, max_width_px))

    logger.debug("layout_document: %d paragraph(s) -> %d line(s) at max_width=%.1f", text.count("\n") + 1, len(lines), max_width_px)
    return Document(lines=tuple(lines), font_size_px=font_size_px)
