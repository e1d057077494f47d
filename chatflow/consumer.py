import codecs
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Set

from pydantic import ValidationError

from .schemas import (
    TERMINAL_STATUSES,
    Answer,
    DoneEvent,
    ItemStatus,
    ThreadItem,
    parse_stream_event,
    utc_now,
)

logger = logging.getLogger("uvicorn.error")

DONE_STATUS_MAP: Dict[str, ItemStatus] = {
    "complete": "COMPLETED",
    "error": "ERROR",
    "aborted": "ABORTED",
}
DEFAULT_ERROR_MESSAGE = "Something went wrong. Please try again."
# event name -> ThreadItem field replaced outright
REPLACED_FIELDS = {
    "sources": "sources",
    "suggestions": "suggestions",
    "toolCalls": "tool_calls",
    "toolResults": "tool_results",
    "object": "object",
}


class FrameDecoder:
    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")()
        self._buffer = ""

    def feed(self, chunk: bytes) -> List[Any]:
        self._buffer += self._decoder.decode(chunk).replace("\r\n", "\n")
        events = []
        while "\n\n" in self._buffer:
            raw, self._buffer = self._buffer.split("\n\n", 1)
            event = self._parse(raw)
            if event is not None:
                events.append(event)
        return events

    def close(self) -> List[Any]:
        self._buffer += self._decoder.decode(b"", final=True)
        leftover, self._buffer = self._buffer, ""
        if not leftover.strip():
            return []
        event = self._parse(leftover)
        return [event] if event is not None else []

    def _parse(self, raw: str) -> Optional[Any]:
        if not raw.strip():
            return None
        name = None
        data_lines = []
        for line in raw.split("\n"):
            if line.startswith("event:"):
                name = line[len("event:"):].strip()
            elif line.startswith("data:"):
                data_lines.append(line[len("data:"):].lstrip())
        if not name or not data_lines:
            return None
        try:
            return parse_stream_event(name, _loads("\n".join(data_lines)))
        except (ValueError, ValidationError) as exc:
            logger.warning("Discarding malformed %s frame: %s", name, exc)
            return None


def _loads(raw: str) -> Dict[str, Any]:
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("frame data is not a JSON object")
    return data


def merge_answer(previous: Optional[Answer], incoming: Answer) -> Answer:
    """Fold one ``answer`` payload into the accumulated answer.

    ``text`` becomes the incoming ``finalText``, else the incoming
    ``fullText``, else the previous text with the incoming delta appended.
    ``final_text`` only ever holds an authoritative snapshot, falling back
    to the previous one; readers use ``answer_text`` for display.
    """
    previous = previous or Answer(text="")
    if incoming.final_text and incoming.final_text.strip():
        text = incoming.final_text
    elif incoming.full_text and incoming.full_text.strip():
        text = incoming.full_text
    else:
        text = f"{previous.text or ''}{incoming.text or ''}"
    final_text = (
        (incoming.final_text if incoming.final_text and incoming.final_text.strip() else None)
        or (incoming.full_text if incoming.full_text and incoming.full_text.strip() else None)
        or previous.final_text
    )
    extra = {**(previous.model_extra or {}), **(incoming.model_extra or {})}
    extra.pop("thinkingProcess", None)
    return Answer(
        text=text,
        final_text=final_text,
        full_text=previous.full_text if not incoming.full_text else incoming.full_text,
        status=incoming.status or previous.status,
        **extra,
    )


def answer_text(answer: Optional[Answer]) -> str:
    if answer is None:
        return ""
    return answer.final_text or answer.text or ""


def merge_metrics(item: ThreadItem, metrics: Dict[str, Any]) -> ThreadItem:
    total = metrics.get("totalTokens")
    duration = metrics.get("durationMs")
    return item.model_copy(
        update={
            "tokens_used": int(total) if isinstance(total, (int, float)) else item.tokens_used,
            "generation_duration_ms": float(duration) if isinstance(duration, (int, float)) else item.generation_duration_ms,
        }
    )


def merge_steps(previous: Dict[str, Any], incoming: Dict[str, Any]) -> Dict[str, Any]:
    return {**(previous or {}), **(incoming or {})}


def replace_field(item: ThreadItem, field: str, value: Any) -> ThreadItem:
    return item.model_copy(update={field: value})


def merge_status(current: ItemStatus, incoming: ItemStatus) -> ItemStatus:
    return current if current in TERMINAL_STATUSES else incoming


def _error_message(error: Any) -> Optional[str]:
    if isinstance(error, dict):
        return str(error.get("error") or DEFAULT_ERROR_MESSAGE)
    return str(error) if error else None


def reduce_event(item: ThreadItem, event: Any) -> ThreadItem:
    metadata = dict(item.metadata)
    if event.requested_mode:
        metadata["requestedMode"] = event.requested_mode
    if event.mode_selection_reason:
        metadata["selectionReason"] = event.mode_selection_reason
    item = item.model_copy(
        update={
            "query": event.query or item.query,
            "mode": event.mode or item.mode,
            "parent_id": event.parent_thread_item_id or item.parent_id,
            "branch_root_id": item.branch_root_id or event.parent_thread_item_id or item.id,
            "metadata": metadata,
            "updated_at": utc_now(),
        }
    )

    kind = event.event
    if kind == "answer":
        thinking = (event.answer.model_extra or {}).get("thinkingProcess")
        update: Dict[str, Any] = {"answer": merge_answer(item.answer, event.answer)}
        if isinstance(thinking, str) and thinking.strip():
            update["thinking_process"] = thinking
        if item.status == "QUEUED":
            update["status"] = "PENDING"
        return item.model_copy(update=update)
    if kind == "metrics":
        return merge_metrics(item, event.metrics)
    if kind == "steps":
        return replace_field(item, "steps", merge_steps(item.steps, event.steps))
    if kind == "status":
        return replace_field(item, "status", merge_status(item.status, event.status))
    if kind == "error":
        return replace_field(item, "error", _error_message(event.error))
    if kind == "done":
        status = merge_status(item.status, DONE_STATUS_MAP[event.status])
        error = item.error
        if status == "ERROR":
            error = event.error or item.error or DEFAULT_ERROR_MESSAGE
        return item.model_copy(update={"status": status, "error": error})
    return replace_field(item, REPLACED_FIELDS[kind], getattr(event, REPLACED_FIELDS[kind]))


class ThreadItemReducer:
    """Accumulates streamed events per thread item and hands them to the store.

    Every update reaches the store's in-memory state at once. Durable writes
    are throttled to one per ``interval`` seconds per item; the first and the
    terminal event of an item are always written. The terminal transition
    happens once: repeated ``done`` frames and late ``close_out`` calls are
    ignored.
    """

    def __init__(self, store: Any, interval: float = 1.0, clock: Callable[[], float] = time.monotonic):
        self.store = store
        self.interval = interval
        self.clock = clock
        self._items: Dict[str, ThreadItem] = {}
        self._last_persist: Dict[str, float] = {}
        self._finalized: Set[str] = set()

    def is_finalized(self, item_id: str) -> bool:
        return item_id in self._finalized

    def is_tracking(self, item_id: str) -> bool:
        return item_id in self._items

    def _current(self, event: Any) -> ThreadItem:
        item_id = event.thread_item_id
        existing = self._items.get(item_id) or self.store.get_cached_thread_item(item_id)
        if existing is not None:
            return existing
        return ThreadItem(
            id=item_id,
            thread_id=event.thread_id,
            parent_id=event.parent_thread_item_id,
            query=event.query or "",
            mode=event.mode,
            status="PENDING",
        )

    async def apply(self, event: Any) -> Optional[ThreadItem]:
        item_id = event.thread_item_id
        if item_id in self._finalized:
            return None
        updated = reduce_event(self._current(event), event)
        now = self.clock()
        terminal = isinstance(event, DoneEvent)
        last = self._last_persist.get(item_id)
        persist = terminal or last is None or now - last >= self.interval
        if terminal:
            self._release(item_id)
            self._finalized.add(item_id)
        else:
            self._items[item_id] = updated
            if persist:
                self._last_persist[item_id] = now
        await self.store.update_thread_item(updated, persist=persist, critical=terminal or last is None)
        return updated

    async def close_out(self, item_id: str, status: ItemStatus, error: Optional[str] = None) -> Optional[ThreadItem]:
        if item_id in self._finalized:
            return None
        current = self._items.get(item_id) or self.store.get_cached_thread_item(item_id)
        self._release(item_id)
        self._finalized.add(item_id)
        if current is None:
            return None
        if current.is_terminal:
            status, error = current.status, None
        updated = current.model_copy(
            update={
                "status": status,
                "error": error if error is not None else current.error,
                "updated_at": utc_now(),
            }
        )
        await self.store.update_thread_item(updated, persist=True, critical=True)
        return updated

    def reset(self, item_id: str) -> None:
        self._finalized.discard(item_id)
        self._release(item_id)

    def _release(self, item_id: str) -> None:
        self._items.pop(item_id, None)
        self._last_persist.pop(item_id, None)
