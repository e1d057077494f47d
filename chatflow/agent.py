import asyncio
import logging
from contextlib import suppress
from typing import Any, Awaitable, Dict, List, Mapping, Optional, Protocol, Set, Tuple

import httpx

from .branching import resolve_branch_root_id
from .consumer import FrameDecoder, ThreadItemReducer, answer_text
from .modes import (
    CHAT_MODE_OPTIONS,
    PROVIDER_GOOGLE,
    PROVIDER_OPENROUTER,
    ChatMode,
    get_model_selection_reason,
    get_provider_for_mode,
    select_gemini_fallback,
    select_mode_for_query,
    select_openrouter_fallback,
)
from .schemas import CompletionRequest, DoneEvent, ThreadItem, TitleRequest, utc_now
from .store import ConversationStore, new_id

logger = logging.getLogger("uvicorn.error")

QUOTA_SIGNED_IN = "You have reached the daily limit of requests. Please try again tomorrow or Use your own API key."
QUOTA_ANONYMOUS = "You have reached the daily limit of requests. Please sign in to enjoy more requests."
GENERIC_ERROR = "Something went wrong. Please try again."
STREAM_ENDED_ERROR = "The response stream ended before the answer was complete."
TITLE_STAGE_VERSIONS = {"initial": 1, "refine": 2}
# cleared when an item is streamed again
FRESH_ITEM_FIELDS: Dict[str, Any] = {
    "status": "QUEUED",
    "answer": None,
    "thinking_process": None,
    "steps": {},
    "sources": [],
    "suggestions": [],
    "tool_calls": None,
    "tool_results": None,
    "object": None,
    "error": None,
    "tokens_used": None,
    "generation_duration_ms": None,
}
MAX_TITLE_LENGTH = 80


class SignInRequiredError(Exception):
    pass


class StreamReader(Protocol):
    async def read(self) -> bytes:
        ...


class HttpxStreamReader:
    def __init__(self, response: httpx.Response):
        self._chunks = response.aiter_bytes()

    async def read(self) -> bytes:
        async for chunk in self._chunks:
            if chunk:
                return chunk
        return b""


def build_core_messages(
    history: List[ThreadItem],
    query: str,
    image_attachment: Optional[str] = None,
) -> List[Dict[str, Any]]:
    messages: List[Dict[str, Any]] = []
    for item in history:
        if item.query:
            messages.append({"role": "user", "content": item.query})
        answer = answer_text(item.answer)
        if answer:
            messages.append({"role": "assistant", "content": answer})
    if image_attachment:
        messages.append(
            {
                "role": "user",
                "content": [{"type": "text", "text": query}, {"type": "image", "image": image_attachment}],
            }
        )
    else:
        messages.append({"role": "user", "content": query})
    return messages


def provisional_mode(
    query: str,
    has_image: bool,
    api_keys: Mapping[str, Optional[str]],
) -> Tuple[ChatMode, str]:
    mode = select_mode_for_query(query, has_image)
    reason = get_model_selection_reason(query, mode)
    provider = get_provider_for_mode(mode)
    if provider == PROVIDER_GOOGLE and not api_keys.get(PROVIDER_GOOGLE) and api_keys.get(PROVIDER_OPENROUTER):
        mode = select_openrouter_fallback(query)
        reason = f"{get_model_selection_reason(query, mode)} • Using your OpenRouter API key"
    elif provider == PROVIDER_OPENROUTER and not api_keys.get(PROVIDER_OPENROUTER) and api_keys.get(PROVIDER_GOOGLE):
        mode = select_gemini_fallback(query, has_image)
        reason = f"{get_model_selection_reason(query, mode)} • Using your Gemini API key"
    return mode, reason


class AgentRunner:
    def __init__(
        self,
        store: ConversationStore,
        client: httpx.AsyncClient,
        *,
        api_keys: Optional[Mapping[str, Optional[str]]] = None,
        is_signed_in: bool = False,
        persist_interval: float = 1.0,
        read_retry_delay: float = 1.0,
        max_read_retries: int = 3,
        completion_path: str = "/api/completion",
        title_path: str = "/api/title",
    ):
        self.store = store
        self.client = client
        self.api_keys: Dict[str, Optional[str]] = dict(api_keys or {})
        self.is_signed_in = is_signed_in
        self.read_retry_delay = read_retry_delay
        self.max_read_retries = max_read_retries
        self.completion_path = completion_path
        self.title_path = title_path
        self.reducer = ThreadItemReducer(store, interval=persist_interval)
        self._title_tasks: Set[asyncio.Task] = set()
        self._run_finished: Optional[asyncio.Event] = None

    @classmethod
    def from_settings(cls, store: ConversationStore, client: httpx.AsyncClient, settings: Any, **kwargs: Any) -> "AgentRunner":
        return cls(
            store,
            client,
            persist_interval=settings.stream_persist_interval_s,
            read_retry_delay=settings.read_retry_delay_s,
            max_read_retries=settings.max_read_retries,
            **kwargs,
        )

    async def submit(
        self,
        query: str,
        *,
        mode: Optional[str] = None,
        thread_id: Optional[str] = None,
        existing_item_id: Optional[str] = None,
        branch_parent_id: Optional[str] = None,
        image_attachment: Optional[str] = None,
        use_web_search: Optional[bool] = None,
        show_suggestions: Optional[bool] = None,
    ) -> Optional[ThreadItem]:
        """Create the optimistic item for ``query`` and stream its answer.

        ``existing_item_id`` re-runs an item in place (its followups are
        removed); ``branch_parent_id`` adds a new sibling alternative.
        """
        store = self.store
        requested = ChatMode(mode or store.config.chat_mode)
        if not self.is_signed_in and CHAT_MODE_OPTIONS[requested]["is_auth_required"]:
            raise SignInRequiredError(f"Sign in to use {requested.value}.")
        await self._stop_active_run()
        image_attachment = image_attachment if image_attachment and image_attachment.strip() else None

        thread_id = thread_id or store.current_thread_id
        thread = store.get_thread(thread_id) if thread_id else None
        if thread is None:
            thread = await store.create_thread(title=query, thread_id=thread_id)
        else:
            if thread.id != store.current_thread_id:
                await store.switch_thread(thread.id)
            if thread.auto_title_version < 1:
                thread = await store.update_thread(thread.id, title=query) or thread

        existing = store.get_cached_thread_item(existing_item_id) if existing_item_id else None
        source = store.get_cached_thread_item(branch_parent_id) if branch_parent_id else None
        created_at = utc_now()
        if branch_parent_id:
            item_id = new_id()
            parent_id = source.parent_id if source else None
            branch_root_id = resolve_branch_root_id(source) if source else branch_parent_id
            history = store.get_previous_thread_items(branch_parent_id)
        elif existing is not None:
            item_id = existing.id
            parent_id = existing.parent_id
            branch_root_id = resolve_branch_root_id(existing)
            created_at = existing.created_at
            await store.remove_followup_thread_items(existing.id)
            history = store.get_previous_thread_items(existing.id)
        else:
            item_id = existing_item_id or new_id()
            history = store.get_conversation_thread_items(thread.id)
            parent_id = history[-1].id if history else None
            branch_root_id = item_id

        resolved = requested
        reason: Optional[str] = None
        metadata: Dict[str, Any] = {}
        if requested == ChatMode.AUTO:
            resolved, reason = provisional_mode(query, image_attachment is not None, self.api_keys)
            metadata = {"requestedMode": requested.value, "selectionReason": reason}

        item = ThreadItem(
            id=item_id,
            thread_id=thread.id,
            parent_id=parent_id,
            branch_root_id=branch_root_id,
            query=query,
            image_attachment=image_attachment,
            mode=resolved.value,
            status="QUEUED",
            metadata=metadata,
            created_at=created_at,
        )
        await store.create_thread_item(item)
        store.select_branch(branch_root_id, item.id)

        config = store.config
        body = CompletionRequest(
            mode=resolved,
            prompt=query,
            thread_id=thread.id,
            thread_item_id=item.id,
            parent_thread_item_id=parent_id,
            messages=build_core_messages(history, query, image_attachment),
            custom_instructions=config.custom_instructions or None,
            web_search=config.use_web_search if use_web_search is None else use_web_search,
            show_suggestions=config.show_suggestions if show_suggestions is None else show_suggestions,
            requested_mode=requested,
            mode_selection_reason=reason,
        )
        return await self.run_agent(body)

    def abort(self) -> bool:
        return self.store.abort_generation()

    async def _stop_active_run(self) -> None:
        if self.store.is_generating:
            self.store.abort_generation()
        finished = self._run_finished
        if finished is not None:
            await finished.wait()

    async def _rearm(self, item_id: str) -> None:
        current = self.store.get_cached_thread_item(item_id)
        if current is None or not current.is_terminal:
            return
        fresh = current.model_copy(update={**FRESH_ITEM_FIELDS, "updated_at": utc_now()})
        await self.store.update_thread_item(fresh, persist=True, critical=True)

    async def run_agent(self, body: CompletionRequest) -> Optional[ThreadItem]:
        store = self.store
        await self._stop_active_run()
        signal = asyncio.Event()
        finished = asyncio.Event()
        self._run_finished = finished
        store.set_abort_signal(signal)
        store.set_is_generating(True)
        item_id = body.thread_item_id
        self.reducer.reset(item_id)
        try:
            await self._rearm(item_id)
            request = self.client.build_request(
                "POST",
                self.completion_path,
                json=body.model_dump(by_alias=True, mode="json", exclude_none=True),
                headers={"Content-Type": "application/json", "Cache-Control": "no-store"},
            )
            response = await self._until_aborted(self.client.send(request, stream=True), signal)
            if response is None:
                await self.reducer.close_out(item_id, "ABORTED", "Generation aborted")
            else:
                try:
                    if response.status_code >= 400:
                        error_text = (await response.aread()).decode("utf-8", errors="replace")
                        if response.status_code == 429:
                            error_text = QUOTA_SIGNED_IN if self.is_signed_in else QUOTA_ANONYMOUS
                        logger.warning("Completion request failed (%s): %s", response.status_code, error_text)
                        await self.reducer.close_out(item_id, "ERROR", error_text or GENERIC_ERROR)
                    else:
                        await self.consume(HttpxStreamReader(response), item_id, signal)
                finally:
                    await response.aclose()
        except httpx.TransportError as exc:
            if signal.is_set():
                await self.reducer.close_out(item_id, "ABORTED", "Generation aborted")
            else:
                logger.error("Fatal stream error for %s: %s", item_id, exc)
                await self.reducer.close_out(item_id, "ERROR", GENERIC_ERROR)
        finally:
            if store.abort_signal is signal:
                store.set_is_generating(False)
                store.set_abort_signal(None)
            finished.set()
        return store.get_cached_thread_item(item_id)

    async def consume(self, reader: StreamReader, item_id: str, signal: asyncio.Event) -> None:
        decoder = FrameDecoder()
        failures = 0
        while not signal.is_set():
            try:
                chunk = await self._until_aborted(reader.read(), signal)
            except httpx.TransportError as exc:
                failures += 1
                if failures > self.max_read_retries:
                    logger.error("Giving up on stream for %s after %s read errors: %s", item_id, failures - 1, exc)
                    await self.reducer.close_out(item_id, "ERROR", GENERIC_ERROR)
                    return
                logger.warning("Error reading from stream, resuming in %ss: %s", self.read_retry_delay, exc)
                await asyncio.sleep(self.read_retry_delay)
                continue
            if chunk is None:
                break
            events = decoder.feed(chunk) if chunk else decoder.close()
            for event in events:
                await self._handle_event(event)
            if not chunk:
                break

        if signal.is_set():
            await self.reducer.close_out(item_id, "ABORTED", "Generation aborted")
        elif not self.reducer.is_finalized(item_id):
            await self.reducer.close_out(item_id, "ERROR", STREAM_ENDED_ERROR)

    async def _until_aborted(self, awaitable: Awaitable[Any], signal: asyncio.Event) -> Any:
        work = asyncio.ensure_future(awaitable)
        aborted = asyncio.ensure_future(signal.wait())
        try:
            await asyncio.wait({work, aborted}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            aborted.cancel()
            if not work.done():
                work.cancel()
                with suppress(asyncio.CancelledError):
                    await work
        if work.cancelled():
            return None
        return work.result()

    async def _handle_event(self, event: Any) -> None:
        updated = await self.reducer.apply(event)
        if updated is not None and isinstance(event, DoneEvent) and updated.status == "COMPLETED":
            self.request_title(updated.thread_id)

    # Titles

    def _completed_turns(self, thread_id: str) -> List[Tuple[str, str]]:
        items = sorted((i for i in self.store.thread_items if i.thread_id == thread_id), key=lambda i: i.created_at)
        turns = [(i.query.strip(), answer_text(i.answer).strip()) for i in items if i.query]
        return [(user, assistant) for user, assistant in turns if user and assistant]

    def request_title(self, thread_id: str) -> Optional[asyncio.Task]:
        thread = self.store.get_thread(thread_id)
        version = thread.auto_title_version if thread else 0
        turns = self._completed_turns(thread_id)
        if version < 1 and turns:
            stage, selected = "initial", turns[:1]
        elif version < 2 and len(turns) >= 3:
            stage, selected = "refine", turns[:3]
        else:
            return None

        pending = self.store.pending_title_stages.setdefault(thread_id, set())
        if stage in pending:
            return None
        pending.add(stage)
        conversation = []
        for user, assistant in selected:
            conversation.append({"role": "user", "content": user})
            conversation.append({"role": "assistant", "content": assistant})
        task = asyncio.create_task(self._generate_title(thread_id, stage, conversation, selected[0][0]))
        self._title_tasks.add(task)
        task.add_done_callback(self._title_tasks.discard)
        return task

    async def _generate_title(self, thread_id: str, stage: str, conversation: List[Dict[str, str]], fallback: str) -> None:
        request = TitleRequest(thread_id=thread_id, stage=stage, conversation=conversation, fallback_title=fallback)
        title: Optional[str] = None
        try:
            resp = await self.client.post(self.title_path, json=request.model_dump(by_alias=True))
            resp.raise_for_status()
            title = (resp.json() or {}).get("title")
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Title generation failed for %s: %s", thread_id, exc)
        try:
            title = (title or fallback).strip()[:MAX_TITLE_LENGTH]
            if title and self.store.get_thread(thread_id) is not None:
                await self.store.update_thread(
                    thread_id,
                    title=title,
                    auto_title_version=TITLE_STAGE_VERSIONS[stage],
                    auto_title_updated_at=utc_now(),
                )
        finally:
            pending = self.store.pending_title_stages.get(thread_id)
            if pending is not None:
                pending.discard(stage)
                if not pending:
                    self.store.pending_title_stages.pop(thread_id, None)

    async def wait_for_titles(self) -> None:
        if self._title_tasks:
            await asyncio.gather(*list(self._title_tasks))
