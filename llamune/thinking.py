from typing import List, Optional, Tuple


THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"


def _partial_marker_len(text: str, marker: str) -> int:
    """Length of the longest proper prefix of `marker` that `text` ends with."""
    for size in range(min(len(text), len(marker) - 1), 0, -1):
        if text.endswith(marker[:size]):
            return size
    return 0


def split_thinking(text: str, final: bool = False) -> Tuple[str, str]:
    """Separate `<think>` spans from the visible answer in cumulative text.

    Returns `(content, thinking)`. While the stream is still running a marker
    that has only partly arrived is withheld from both outputs, and an opened
    but unclosed span is reported as thinking in progress. With `final=True`
    a dangling marker prefix is flushed back into the content and an unclosed
    span stays thinking.
    """
    if not text:
        return "", ""
    content_parts: List[str] = []
    thinking_parts: List[str] = []
    found = False
    pos = 0
    while True:
        start = text.find(THINK_OPEN, pos)
        if start == -1:
            tail = text[pos:]
            if not final:
                tail = tail[: len(tail) - _partial_marker_len(tail, THINK_OPEN)]
            content_parts.append(tail)
            break
        found = True
        content_parts.append(text[pos:start])
        inner_start = start + len(THINK_OPEN)
        end = text.find(THINK_CLOSE, inner_start)
        if end == -1:
            inner = text[inner_start:]
            if not final:
                inner = inner[: len(inner) - _partial_marker_len(inner, THINK_CLOSE)]
            thinking_parts.append(inner)
            break
        thinking_parts.append(text[inner_start:end])
        pos = end + len(THINK_CLOSE)
    content = "".join(content_parts)
    if found:
        content = content.lstrip()
    thinking = "\n".join(part.strip() for part in thinking_parts if part.strip())
    return content, thinking


def merge_thinking(*parts: Optional[str]) -> Optional[str]:
    cleaned = [p.strip() for p in parts if p and p.strip()]
    if not cleaned:
        return None
    return "\n".join(cleaned)
