"""Turning agent output into chat-sized HTML messages."""

import re
from typing import List, Optional

from ..status_detector import strip_ansi

MAX_MESSAGE_LENGTH = 4000

_FENCE = re.compile(r"```(\w+)?\n?([\s\S]*?)```")
_INLINE_CODE = re.compile(r"`([^`\n]+)`")


def escape_html(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def _format_plain(text: str) -> str:
    parts = []
    last = 0
    for match in _INLINE_CODE.finditer(text):
        parts.append(escape_html(text[last:match.start()]))
        parts.append(f"<code>{escape_html(match.group(1))}</code>")
        last = match.end()
    parts.append(escape_html(text[last:]))
    return "".join(parts)


def format_output(text: Optional[str]) -> str:
    """Escape agent text for HTML, keeping fenced blocks and inline code as code."""
    if not text or not text.strip():
        return "<i>No output</i>"
    text = strip_ansi(text)
    parts = []
    last = 0
    for match in _FENCE.finditer(text):
        parts.append(_format_plain(text[last:match.start()]))
        language, code = match.group(1), escape_html(match.group(2).rstrip())
        if language:
            parts.append(f'<pre><code class="language-{language}">{code}</code></pre>')
        else:
            parts.append(f"<pre>{code}</pre>")
        last = match.end()
    parts.append(_format_plain(text[last:]))
    return "".join(parts)


def split_message(text: str, max_len: int = MAX_MESSAGE_LENGTH) -> List[str]:
    """
    Split ``text`` into chunks of at most ``max_len`` characters.

    Prefers a paragraph break, then a line break, then a space; a boundary
    is only used when it falls past 30% of the window, otherwise the chunk is
    cut hard at ``max_len``.
    """
    if max_len <= 0:
        raise ValueError(f"max_len must be positive, got {max_len}")
    if len(text) <= max_len:
        return [text]
    chunks = []
    remaining = text
    floor = max_len * 0.3
    while remaining:
        if len(remaining) <= max_len:
            chunks.append(remaining)
            break
        window = remaining[:max_len]
        split_at = -1
        for separator in ("\n\n", "\n", " "):
            split_at = window.rfind(separator)
            if split_at >= floor:
                break
        if split_at < floor:
            split_at = max_len
        chunks.append(remaining[:split_at])
        remaining = remaining[split_at:].lstrip()
    return chunks


def truncate(text: str, max_len: int) -> str:
    return text if len(text) <= max_len else text[:max_len - 3] + "..."


def short_path(path: str) -> str:
    parts = path.split("/")
    if len(parts) <= 3:
        return path
    return ".../" + "/".join(parts[-2:])


def format_duration(ms: float) -> str:
    if ms < 1000:
        return f"{int(ms)}ms"
    seconds = int(ms / 1000 + 0.5)
    if seconds < 60:
        return f"{seconds}s"
    minutes, rest = divmod(seconds, 60)
    return f"{minutes}m{rest}s" if rest else f"{minutes}m"


def format_cost(usd: float) -> str:
    if usd < 0.01:
        return f"${usd:.4f}"
    return f"${usd:.2f}"
