import asyncio
import inspect
import json
import logging
import math
from datetime import date, datetime
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Mapping, Optional

from pydantic import BaseModel

from .modes import ChatMode, ProviderConfigError, resolve_request_mode
from .schemas import CompletionRequest
from .tasks import build_workflow
from .workflow import WorkflowAborted

logger = logging.getLogger("uvicorn.error")

ANSWER_TEXT_KEYS = ("text", "finalText", "fullText")
_DROP = object()


class SinkClosedError(Exception):
    pass


class StreamSink:
    def __init__(self) -> None:
        self._queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        self.closed = False

    def enqueue(self, chunk: str) -> None:
        if self.closed:
            raise SinkClosedError("stream sink is closed")
        self._queue.put_nowait(chunk)

    def finish(self) -> None:
        if not self.closed:
            self._queue.put_nowait(None)

    def close(self) -> None:
        self.closed = True

    async def __aiter__(self) -> AsyncIterator[str]:
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                return
            yield chunk


def normalize_markdown_content(content: Any) -> Any:
    if not isinstance(content, str):
        return content
    return content.replace("\\n", "\n")


def sanitize_payload_for_json(value: Any, _path: Optional[set] = None) -> Any:
    path = _path if _path is not None else set()
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, Enum):
        return sanitize_payload_for_json(value.value, path)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, BaseModel):
        return sanitize_payload_for_json(value.model_dump(by_alias=True, mode="json"), path)
    if inspect.isawaitable(value) or callable(value):
        if inspect.iscoroutine(value):
            value.close()
        return _DROP
    if isinstance(value, (dict, list, tuple, set, frozenset)):
        marker = id(value)
        if marker in path:
            return _DROP
        path.add(marker)
        try:
            if isinstance(value, dict):
                cleaned: Any = {}
                for key, item in value.items():
                    item = sanitize_payload_for_json(item, path)
                    if item is not _DROP:
                        cleaned[str(key)] = item
            else:
                cleaned = [
                    item for item in (sanitize_payload_for_json(v, path) for v in value) if item is not _DROP
                ]
        finally:
            path.discard(marker)
        return cleaned
    return _DROP


def encode_frame(event: str, data: Mapping[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False, allow_nan=False)}\n\n"


def _normalize_answer(payload: Dict[str, Any]) -> Dict[str, Any]:
    answer = payload.get("answer")
    if not isinstance(answer, dict):
        return payload
    normalized = dict(answer)
    for key in ANSWER_TEXT_KEYS:
        if key in normalized:
            normalized[key] = normalize_markdown_content(normalized[key])
    return {**payload, "answer": normalized}


def _fallback_frame(payload: Mapping[str, Any], exc: Exception) -> str:
    return encode_frame(
        "done",
        {
            "type": "done",
            "status": "error",
            "threadId": str(payload.get("threadId") or ""),
            "threadItemId": str(payload.get("threadItemId") or ""),
            "parentThreadItemId": payload.get("parentThreadItemId")
            if isinstance(payload.get("parentThreadItemId"), str)
            else None,
            "error": f"Failed to serialize stream event: {exc}",
        },
    )


def send_message(sink: StreamSink, payload: Dict[str, Any]) -> bool:
    if sink.closed:
        return False
    event = str(payload.get("type") or "message")
    try:
        data = sanitize_payload_for_json(_normalize_answer(payload))
        frame = encode_frame(event, data)
    except (TypeError, ValueError, RecursionError) as exc:
        logger.error("Dropping unserializable %s event for item %s: %s", event, payload.get("threadItemId"), exc)
        frame = _fallback_frame(payload, exc)
    try:
        sink.enqueue(frame)
        sink.enqueue("")
    except SinkClosedError:
        return False
    return True


def _has_image(request: CompletionRequest) -> bool:
    for message in reversed(request.messages):
        if message.get("role") != "user":
            continue
        content = message.get("content")
        if isinstance(content, list):
            return any(isinstance(part, dict) and part.get("type") in ("image", "image_url") for part in content)
        return False
    return False


async def execute_stream(
    sink: StreamSink,
    request: CompletionRequest,
    *,
    api_keys: Mapping[str, Optional[str]],
    llm: Any,
    search: Any = None,
    signal: Optional[asyncio.Event] = None,
    max_iterations_default: int = 3,
    max_steps: int = 25,
    on_finish: Optional[Callable[[Dict[str, Any]], Any]] = None,
    now: Optional[datetime] = None,
) -> str:
    """Run one completion and stream its events into ``sink``.

    Always ends with exactly one ``done`` frame and returns its status.
    """
    signal = signal or asyncio.Event()
    envelope: Dict[str, Any] = {
        "threadId": request.thread_id,
        "threadItemId": request.thread_item_id,
        "parentThreadItemId": request.parent_thread_item_id,
        "query": request.prompt,
        "mode": request.mode.value,
        "requestedMode": (request.requested_mode or request.mode).value,
        "modeSelectionReason": request.mode_selection_reason,
    }

    def forward(event: str, payload: Any) -> None:
        send_message(sink, {"type": event, **envelope, event: payload})

    workflow = None
    error: Optional[str] = None
    try:
        mode, reason = resolve_request_mode(
            request.mode,
            request.prompt,
            _has_image(request),
            api_keys,
            requested_mode=request.requested_mode,
            reason=request.mode_selection_reason,
            now=now,
        )
        envelope.update(mode=mode.value, modeSelectionReason=reason)
        workflow = build_workflow(
            mode=ChatMode(mode),
            question=request.prompt,
            thread_id=request.thread_id,
            thread_item_id=request.thread_item_id,
            messages=request.messages,
            llm=llm,
            search=search,
            custom_instructions=request.custom_instructions,
            web_search=request.web_search,
            show_suggestions=request.show_suggestions,
            max_iterations=request.max_iterations or max_iterations_default,
            signal=signal,
            on_finish=on_finish,
            max_steps=max_steps,
        )
        workflow.on_all(forward)
        await workflow.start("router")
    except WorkflowAborted:
        pass
    except ProviderConfigError as exc:
        error = str(exc)
        logger.warning("Provider configuration error for item %s: %s", request.thread_item_id, error)
    except Exception as exc:
        error = str(exc) or exc.__class__.__name__
        if not signal.is_set():
            logger.exception("Workflow failed for item %s", request.thread_item_id)

    if signal.is_set():
        status, error = "aborted", None
    elif error is not None:
        status = "error"
    else:
        status = "complete"

    done: Dict[str, Any] = {"type": "done", **envelope, "status": status}
    if error:
        done["error"] = error
    send_message(sink, done)
    if workflow is not None:
        logger.info("Workflow timing for %s: %s", request.thread_item_id, workflow.get_timing_summary())
    return status
