"""
Chinese paragraph segmentation for generated prose.

``format_text`` re-segments a whole buffer into one sentence/dialogue per line:
a line ends after a sentence mark (。？！ or an ellipsis run) outside quotes, or
after a closing quote. Dialogue is never split: inside quotes sentence marks do
not break and stray newlines become spaces. A closing quote followed directly
by punctuation (“降维打击”。) stays on the same line, and a sentence mark whose
next non-blank character is a closing quote defers its break to that quote.

``realtime_format`` is the low-latency variant used while text is still
arriving: it breaks after every mark and every closing quote with no lookahead.
The full pass is always re-applied to the complete buffer afterwards.
"""

from typing import List, Optional, Tuple

from core.chapter_craft import collapse_blank_lines

LEFT_QUOTES = "“‘「『"
RIGHT_QUOTES = "”’」』"
END_MARKS = "。？！"
ELLIPSIS = "…"
# A closing quote followed by any of these keeps the line open.
BREAK_SUPPRESSORS = "。？！，、；：…—～·）》】,.;:!?~)" + RIGHT_QUOTES

# (resume position, in_quote, emitted line count)
Checkpoint = Tuple[int, bool, int]


def normalize_newlines(text: str) -> str:
    return (text or "").replace("\r\n", "\n").replace("\r", "\n")


def format_text(text: str) -> str:
    if not text:
        return ""
    lines, tail, _ = _segment(normalize_newlines(text), lookahead=True)
    return _assemble(lines, tail)


def realtime_format(text: str) -> str:
    if not text:
        return ""
    lines, tail, _ = _segment(normalize_newlines(text), lookahead=False)
    return _assemble(lines, tail)


def format_delta(previous_raw: str, delta: str) -> Tuple[str, str]:
    new_raw = (previous_raw or "") + (delta or "")
    return new_raw, format_text(new_raw)


class IncrementalFormatter:
    """Formats a growing buffer without rescanning settled lines.

    The result is always identical to ``format_text(text)``; the formatter
    only remembers the last position where every break decision was already
    final, and resumes there when the new text extends the previous one.
    """

    def __init__(self):
        self._text = ""
        self._lines: List[str] = []
        self._checkpoint: Checkpoint = (0, False, 0)

    def reset(self) -> None:
        self._text = ""
        self._lines = []
        self._checkpoint = (0, False, 0)

    def format(self, text: str) -> str:
        normalized = normalize_newlines(text)
        if not normalized:
            self.reset()
            return ""

        if normalized.startswith(self._text):
            pos, in_quote, line_count = self._checkpoint
        else:
            pos, in_quote, line_count = 0, False, 0

        lines, tail, checkpoint = _segment(
            normalized,
            lookahead=True,
            start=pos,
            in_quote=in_quote,
            lines=self._lines[:line_count],
        )
        self._text = normalized
        self._lines = lines
        self._checkpoint = checkpoint
        return _assemble(lines, tail)


def _segment(
    text: str,
    *,
    lookahead: bool,
    start: int = 0,
    in_quote: bool = False,
    lines: Optional[List[str]] = None,
) -> Tuple[List[str], str, Checkpoint]:
    lines = [] if lines is None else lines
    current: List[str] = []
    checkpoint: Checkpoint = (start, in_quote, len(lines))
    n = len(text)
    i = start

    while i < n:
        ch = text[i]

        if ch in LEFT_QUOTES:
            current.append(ch)
            in_quote = True
            i += 1
            continue

        if ch in RIGHT_QUOTES:
            current.append(ch)
            in_quote = False
            i += 1
            if not lookahead:
                _emit(lines, current)
                checkpoint = (i, in_quote, len(lines))
            elif i >= n:
                # Provisional: the next delta may start with punctuation.
                _emit(lines, current)
            elif text[i] not in BREAK_SUPPRESSORS:
                _emit(lines, current)
                checkpoint = (i, in_quote, len(lines))
            continue

        if ch in END_MARKS or ch == ELLIPSIS:
            end = i + 1
            if ch == ELLIPSIS:
                while end < n and text[end] == ELLIPSIS:
                    end += 1
            current.append(text[i:end])
            if in_quote:
                i = end
                continue

            if not lookahead:
                _emit(lines, current)
                if end < n or ch != ELLIPSIS:
                    checkpoint = (end, in_quote, len(lines))
                i = end
                continue

            j = end
            while j < n and text[j].isspace():
                j += 1
            if j >= n:
                _emit(lines, current)
            elif text[j] in RIGHT_QUOTES:
                # Deferred: the closing quote ends the line instead.
                pass
            else:
                _emit(lines, current)
                checkpoint = (j, in_quote, len(lines))
            i = j
            continue

        if ch == "\n":
            if in_quote:
                if current and not current[-1][-1:].isspace():
                    current.append(" ")
            else:
                if _has_text(current):
                    _emit(lines, current)
                else:
                    current.clear()
                checkpoint = (i + 1, in_quote, len(lines))
            i += 1
            continue

        current.append(ch)
        i += 1

    tail = "".join(current).strip()
    return lines, tail, checkpoint


def _emit(lines: List[str], current: List[str]) -> None:
    line = "".join(current).strip()
    current.clear()
    if line:
        lines.append(line)


def _has_text(current: List[str]) -> bool:
    return any(piece.strip() for piece in current)


def _assemble(lines: List[str], tail: str) -> str:
    parts = lines + [tail] if tail else lines
    return collapse_blank_lines("\n".join(parts))
