from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

DEFAULT_MAX_CONTENT_ITEMS = 6
DEFAULT_MAX_CHARS_PER_ITEM = 4000

FRESHNESS_HINTS = (
    "verify",
    "confirm",
    "is it true",
    "did it happen",
    "latest",
    "today",
    "current",
    "as of",
    "right now",
    "breaking",
    "this week",
    "this month",
    "this year",
    "up to date",
    "up-to-date",
    "recent",
    "news",
    "price",
    "score",
    "weather",
)


def needs_freshness(question: str) -> Optional[str]:
    q = (question or "").lower()
    for token in FRESHNESS_HINTS:
        if token in q:
            return token
    return None


def get_humanized_date(now: Optional[datetime] = None) -> str:
    return (now or datetime.now()).strftime("%B %d, %Y, %I:%M %p")


def truncate_text(text: str, max_chars: int) -> str:
    """Cut at a paragraph break, else a sentence break, else hard-cut."""
    if not text:
        return ""
    if len(text) <= max_chars:
        return text
    truncated = text[:max_chars]
    paragraph = truncated.rfind("\n\n")
    if paragraph > max_chars * 0.6:
        return f"{truncated[:paragraph].strip()}\n\n..."
    sentence = max(truncated.rfind(". "), truncated.rfind("! "), truncated.rfind("? "))
    if sentence > max_chars * 0.5:
        return f"{truncated[:sentence + 1].strip()}\n\n..."
    return f"{truncated.strip()}..."


def prepare_web_page_content(
    items: Iterable[Dict[str, Any]],
    max_items: int = DEFAULT_MAX_CONTENT_ITEMS,
    max_chars_per_item: int = DEFAULT_MAX_CHARS_PER_ITEM,
) -> List[Dict[str, Any]]:
    kept = []
    for item in items:
        content = (item or {}).get("content") or ""
        if not content.strip():
            continue
        kept.append({**item, "content": truncate_text(content, max_chars_per_item)})
        if len(kept) >= max_items:
            break
    return kept


class ChunkBuffer:
    """Accumulate streamed text and flush it in readable pieces.

    Flushes when the pending text reaches ``threshold`` characters or ends
    with one of the ``break_on`` markers. ``on_flush`` receives the flushed
    chunk and the full text so far.
    """

    def __init__(
        self,
        on_flush: Callable[[str, str], None],
        threshold: int = 200,
        break_on: Sequence[str] = ("\n\n",),
    ):
        self.on_flush = on_flush
        self.threshold = threshold
        self.break_on = tuple(break_on)
        self.buffer = ""
        self.full_text = ""

    def add(self, chunk: str) -> None:
        if not chunk:
            return
        self.buffer += chunk
        self.full_text += chunk
        if len(self.buffer) >= self.threshold or any(self.buffer.endswith(m) for m in self.break_on):
            self.flush()

    def flush(self) -> None:
        if not self.buffer:
            return
        chunk = self.buffer
        self.buffer = ""
        self.on_flush(chunk, self.full_text)

    def end(self) -> None:
        self.flush()
