import re
from typing import List


_CHAPTER_PREFIX_CN_RE = re.compile(
    r"^\s*(?:#\s*)?(?:第\s*[0-9一二三四五六七八九十百千零〇两IVXLCMivxlcm]+\s*[章节卷部]\s*[：:\-\s]*)"
)
_CHAPTER_PREFIX_EN_RE = re.compile(r"^\s*(?:#\s*)?(?:chapter|ch\.)\s*[0-9ivxlcm]+\s*[：:\-\s]*", re.IGNORECASE)
_MULTI_SPACE_RE = re.compile(r"\s+")
_SENTENCE_SPLIT_RE = re.compile(r"[\n。！？]")
_TITLE_TRIM_CHARS = "，。！？；：:、-—_·. $“”\"'‘’"

FALLBACK_TITLE = "新章节"
FALLBACK_TITLE_MAX_CHARS = 18


def strip_chapter_prefix(value: str) -> str:
    text = (value or "").strip()
    if not text:
        return ""
    text = re.sub(r"^#+\s*", "", text).strip()
    text = _CHAPTER_PREFIX_CN_RE.sub("", text).strip()
    text = _CHAPTER_PREFIX_EN_RE.sub("", text).strip()
    return text


def normalize_stream_title(value: str) -> str:
    """Clean a title announced by the generator (title event or ``$标题$`` marker)."""
    text = _MULTI_SPACE_RE.sub(" ", (value or "").strip())
    text = text.strip(_TITLE_TRIM_CHARS)
    stripped = strip_chapter_prefix(text).strip(_TITLE_TRIM_CHARS)
    # "第三章" alone is still better than an empty title.
    return stripped or text


def strip_leading_chapter_heading(text: str) -> str:
    content = (text or "").strip()
    if not content:
        return ""

    lines = content.splitlines()
    while lines and not lines[0].strip():
        lines.pop(0)
    if not lines:
        return ""

    first = lines[0].strip()
    if first.startswith("#"):
        heading = re.sub(r"^#+\s*", "", first).strip()
        if heading and (heading.startswith("第") or heading.lower().startswith("chapter")):
            lines = lines[1:]
    elif _CHAPTER_PREFIX_CN_RE.match(first) or _CHAPTER_PREFIX_EN_RE.match(first):
        remainder = strip_chapter_prefix(first)
        lines = ([remainder] if remainder else []) + lines[1:]

    return "\n".join(lines).strip()


def derive_fallback_title(text: str, max_chars: int = FALLBACK_TITLE_MAX_CHARS) -> str:
    content = strip_leading_chapter_heading(text)
    for piece in _SENTENCE_SPLIT_RE.split(content):
        candidate = _MULTI_SPACE_RE.sub(" ", piece).strip(_TITLE_TRIM_CHARS)
        if candidate:
            return candidate[:max_chars].rstrip(_TITLE_TRIM_CHARS) or FALLBACK_TITLE
    return FALLBACK_TITLE


def collapse_blank_lines(text: str, max_consecutive_blank: int = 1) -> str:
    content = (text or "").replace("\r\n", "\n").replace("\r", "\n")
    if max_consecutive_blank < 1:
        max_consecutive_blank = 1

    out: List[str] = []
    blank_count = 0
    for line in content.split("\n"):
        if line.strip() == "":
            blank_count += 1
            if blank_count <= max_consecutive_blank:
                out.append("")
        else:
            blank_count = 0
            out.append(line.rstrip())
    return "\n".join(out).strip()
