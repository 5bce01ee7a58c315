"""
Text cleaner utilities for keeping generator status chatter out of the manuscript.

Upstream generators sometimes push status lines ("正在保存章节...", "preparing")
on the same channel as prose. These helpers recognise such lines so the event
interpreter can surface them as progress instead of appending them to content.
"""

import re

# Status phrases emitted by the writing service. Matched anywhere in the payload.
STATUS_PHRASES: tuple[str, ...] = (
    "构建完整上下文",
    "上下文消息",
    "开始增强AI写作",
    "更新记忆管理系统",
    "记忆库已更新",
    "记忆系统更新失败",
    "写作完成",
    "正在装配记忆库",
    "正在分析前置章节",
    "正在进行连贯性预检查",
    "正在构建AI写作提示词",
    "AI开始创作中",
    "正在保存章节",
    "正在生成章节概括",
    "正在更新记忆库",
    "开始写作章节",
    "准备写作环境",
    "开始AI写作",
)

# Generic status openers. Prose uses these words too ("战斗正在进行"), so they
# only count when an unstructured payload starts with them.
STATUS_PREFIXES: tuple[str, ...] = (
    "正在装配",
    "正在分析",
    "正在构建",
    "正在进行",
    "正在保存",
    "正在生成",
    "正在更新",
    "正在创作",
    "开始创作",
    "思考中",
    "生成中",
    "创作中",
)

# English status tokens. Only matched when they make up the whole payload, so a
# line of English prose that happens to contain "complete" is left alone.
STATUS_TOKENS: set[str] = {
    "preparing",
    "writing",
    "saving",
    "processing",
    "progress",
    "complete",
    "completed",
    "context_ready",
    "memory_updated",
    "memory_stats",
    "updating_memory",
    "updating memory",
    "generating_summary",
    "saving_chapter",
    "final_coherence_check",
}

# Emoji markers the service prefixes onto status lines.
STATUS_MARKERS: tuple[str, ...] = ("🧠", "📚", "🔍", "⚡", "🤖", "💾", "📝", "💓")

_TRAILING_DOTS_RE = re.compile(r"[\s.。…:：!！]+$")


def is_status_noise(text: str, raw: bool = True) -> bool:
    """
    Determine whether a payload is generator status chatter rather than prose.

    Args:
        text: A decoded payload (raw text or a JSON-decoded delta).
        raw: True for unstructured fallback text. JSON deltas are prose by
            contract, so the generic openers are not applied to them.

    Returns:
        True if the payload matches a known status phrase, prefix, token or marker.
    """
    candidate = (text or "").strip()
    if not candidate:
        return False

    if candidate.startswith(STATUS_MARKERS):
        return True
    if raw and candidate.startswith(STATUS_PREFIXES):
        return True

    token = _TRAILING_DOTS_RE.sub("", candidate).lower()
    if token in STATUS_TOKENS:
        return True

    return any(phrase in candidate for phrase in STATUS_PHRASES)
