"""Conversation store: threads, thread items and branch selections.

One ``ConversationStore`` plays the part of a single open client. It is the
only writer of its in-memory state, persists to SQLite and announces changes
to other instances through a broadcast channel.
"""

import asyncio
import logging
import time
import uuid
from contextlib import suppress
from typing import Any, Dict, List, Optional, Set, Tuple

from .branching import (
    build_conversation_view,
    ensure_branch_root_id,
    prune_branch_selections,
    resolve_branch_root_id,
)
from .branching import select_branch as select_branch_member
from .config import AppSettings
from .db import Database
from .schemas import ChatConfig, SyncMessage, SyncMessageType, Thread, ThreadItem, utc_now
from .sync import BroadcastChannel, HttpRemoteBackend, RemoteSync, SyncHub, create_broadcast_channel

logger = logging.getLogger("uvicorn.error")

CONFIG_KEY = "chat-config"


def new_id() -> str:
    return uuid.uuid4().hex


class BatchUpdateQueue:
    """Coalesces non-critical item writes; the last write per id wins.

    Pending writes are flushed every ``interval`` seconds with one bulk
    write. When the bulk write fails each item is retried on its own.
    """

    def __init__(self, db: Database, interval: float = 0.5):
        self.db = db
        self.interval = interval
        self.lock = asyncio.Lock()
        self._pending: Dict[str, ThreadItem] = {}
        self._task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._pending)

    def pending_ids(self) -> List[str]:
        return list(self._pending)

    def put(self, item: ThreadItem) -> None:
        self._pending[item.id] = item
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._flush_later())

    async def discard(self, item_ids: List[str]) -> None:
        # Waits out an in-flight flush so a delete cannot be overtaken by it.
        async with self.lock:
            for item_id in item_ids:
                self._pending.pop(item_id, None)

    async def _flush_later(self) -> None:
        await asyncio.sleep(self.interval)
        await self.flush()

    async def flush(self) -> List[str]:
        async with self.lock:
            batch = list(self._pending.values())
            self._pending.clear()
            if not batch:
                return []
            try:
                await self.db.bulk_put_thread_items(batch)
                return []
            except Exception as exc:
                logger.warning("Bulk write of %s thread items failed, retrying one by one: %s", len(batch), exc)
            failed = []
            for item in batch:
                try:
                    await self.db.put_thread_item(item)
                except Exception as exc:
                    logger.error("Failed to persist thread item %s: %s", item.id, exc)
                    failed.append(item.id)
            return failed

    async def close(self) -> None:
        await self.flush()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
        self._task = None


class NotifyDebouncer:
    """Posts at most one message per (type, thread) per quiet period."""

    def __init__(self, channel: Optional[BroadcastChannel], delay: float = 0.3):
        self.channel = channel
        self.delay = delay
        self._timers: Dict[Tuple[str, str], asyncio.Task] = {}

    def notify(self, message_type: SyncMessageType, thread_id: str, item_id: Optional[str] = None) -> None:
        if self.channel is None:
            return
        data: Dict[str, Any] = {"threadId": thread_id}
        if item_id:
            data["id"] = item_id
        message = SyncMessage(type=message_type, data=data, timestamp=int(time.time() * 1000))
        key = (message_type, thread_id)
        existing = self._timers.pop(key, None)
        if existing is not None:
            existing.cancel()
        self._timers[key] = asyncio.create_task(self._post_later(key, message))

    async def _post_later(self, key: Tuple[str, str], message: SyncMessage) -> None:
        await asyncio.sleep(self.delay)
        if self._timers.get(key) is asyncio.current_task():
            del self._timers[key]
        try:
            await self.channel.post(message)
        except Exception as exc:
            logger.warning("Failed to broadcast %s: %s", message.type, exc)

    async def flush(self) -> None:
        timers = list(self._timers.values())
        for task in timers:
            with suppress(asyncio.CancelledError):
                await task

    async def close(self) -> None:
        for task in self._timers.values():
            task.cancel()
        for task in list(self._timers.values()):
            with suppress(asyncio.CancelledError):
                await task
        self._timers.clear()


class ConversationStore:
    def __init__(
        self,
        db: Database,
        *,
        channel: Optional[BroadcastChannel] = None,
        remote: Optional[RemoteSync] = None,
        batch_interval: float = 0.5,
        notify_debounce: float = 0.3,
    ):
        self.db = db
        self.channel = channel
        self.remote = remote
        self.queue = BatchUpdateQueue(db, batch_interval)
        self.notifier = NotifyDebouncer(channel, notify_debounce)

        self.threads: List[Thread] = []
        self.thread_items: List[ThreadItem] = []
        self.branch_selections: Dict[str, str] = {}
        self.current_thread_id: Optional[str] = None
        self.current_thread_item_id: Optional[str] = None
        self.config = ChatConfig()

        self.is_generating = False
        self.abort_signal: Optional[asyncio.Event] = None
        # thread id -> title stages currently being generated
        self.pending_title_stages: Dict[str, Set[str]] = {}

    async def init(self) -> None:
        await self.db.init()
        stored = await self.db.get_config(CONFIG_KEY)
        if stored:
            self.config = ChatConfig.model_validate(stored)
        await self.load_threads()
        if self.config.current_thread_id and self.get_thread(self.config.current_thread_id):
            await self.switch_thread(self.config.current_thread_id)
        if self.channel is not None:
            self.channel.subscribe(self.handle_sync_message)
            await self.channel.start()

    async def close(self) -> None:
        await self.queue.close()
        await self.notifier.flush()
        if self.channel is not None:
            await self.channel.close()
        if self.remote is not None:
            await self.remote.close()

    # Threads

    async def load_threads(self) -> List[Thread]:
        self.threads = await self.db.list_threads()
        return self.threads

    def get_thread(self, thread_id: str) -> Optional[Thread]:
        return next((t for t in self.threads if t.id == thread_id), None)

    def _replace_thread(self, thread: Thread) -> None:
        self.threads = [thread] + [t for t in self.threads if t.id != thread.id]
        self.threads.sort(key=lambda t: t.created_at, reverse=True)

    async def create_thread(self, title: Optional[str] = None, thread_id: Optional[str] = None) -> Thread:
        thread = Thread(id=thread_id or new_id(), title=title or "New Thread")
        await self.db.put_thread(thread)
        self._replace_thread(thread)
        self.current_thread_id = thread.id
        self.current_thread_item_id = None
        self.thread_items = []
        self.branch_selections = {}
        await self.update_config(current_thread_id=thread.id)
        self.notifier.notify("thread-update", thread.id)
        if self.remote is not None:
            self.remote.schedule(thread.id, immediate=True)
        return thread

    async def update_thread(self, thread_id: str, **changes: Any) -> Optional[Thread]:
        thread = self.get_thread(thread_id) or await self.db.get_thread(thread_id)
        if thread is None:
            return None
        updated = thread.model_copy(update={**changes, "updated_at": utc_now()})
        await self.db.put_thread(updated)
        self._replace_thread(updated)
        self.notifier.notify("thread-update", thread_id)
        if self.remote is not None:
            self.remote.schedule(thread_id)
        return updated

    async def pin_thread(self, thread_id: str) -> Optional[Thread]:
        return await self.update_thread(thread_id, pinned=True, pinned_at=utc_now())

    async def unpin_thread(self, thread_id: str) -> Optional[Thread]:
        return await self.update_thread(thread_id, pinned=False, pinned_at=None)

    async def list_pinned_threads(self) -> List[Thread]:
        return await self.db.list_pinned_threads()

    async def delete_thread(self, thread_id: str) -> None:
        item_ids = [i.id for i in await self.db.list_thread_items(thread_id)]
        await self.queue.discard(item_ids + [i.id for i in self.thread_items if i.thread_id == thread_id])
        await self.db.delete_thread(thread_id)
        self.threads = [t for t in self.threads if t.id != thread_id]
        self.pending_title_stages.pop(thread_id, None)
        if self.current_thread_id == thread_id:
            self.current_thread_id = None
            self.current_thread_item_id = None
            self.thread_items = []
            self.branch_selections = {}
            await self.update_config(current_thread_id=None)
        self.notifier.notify("thread-delete", thread_id)
        if self.remote is not None:
            self.remote.request_delete(thread_id)

    async def clear_all_threads(self) -> None:
        await self.queue.discard(self.queue.pending_ids())
        for thread in list(self.threads):
            self.notifier.notify("thread-delete", thread.id)
            if self.remote is not None:
                self.remote.request_delete(thread.id)
        await self.db.clear_threads()
        self.threads = []
        self.thread_items = []
        self.branch_selections = {}
        self.current_thread_id = None
        self.current_thread_item_id = None
        self.pending_title_stages.clear()
        await self.update_config(current_thread_id=None)

    async def switch_thread(self, thread_id: str) -> List[ThreadItem]:
        await self.queue.flush()
        self.current_thread_id = thread_id
        self.branch_selections = {}
        await self.update_config(current_thread_id=thread_id)
        items = await self.load_thread_items(thread_id)
        view = build_conversation_view(items, self.branch_selections)
        self.current_thread_item_id = view[-1].id if view else None
        return items

    # Thread items

    async def load_thread_items(self, thread_id: str) -> List[ThreadItem]:
        items = [ensure_branch_root_id(item) for item in await self.db.list_thread_items(thread_id)]
        if thread_id == self.current_thread_id:
            self.thread_items = items
            self._prune()
        return items

    def get_cached_thread_item(self, item_id: str) -> Optional[ThreadItem]:
        return next((i for i in self.thread_items if i.id == item_id), None)

    async def get_thread_item(self, item_id: str) -> Optional[ThreadItem]:
        cached = self.get_cached_thread_item(item_id)
        if cached is not None:
            return cached
        stored = await self.db.get_thread_item(item_id)
        return ensure_branch_root_id(stored) if stored else None

    def _prune(self) -> None:
        self.branch_selections = prune_branch_selections(self.thread_items, self.branch_selections)

    def _upsert_cached(self, item: ThreadItem) -> None:
        if item.thread_id != self.current_thread_id:
            return
        for index, existing in enumerate(self.thread_items):
            if existing.id == item.id:
                self.thread_items[index] = item
                break
        else:
            self.thread_items.append(item)
        self._prune()

    async def create_thread_item(self, item: ThreadItem) -> ThreadItem:
        item = ensure_branch_root_id(item)
        self._upsert_cached(item)
        self.current_thread_item_id = item.id
        await self.queue.discard([item.id])
        await self.db.put_thread_item(item)
        self.notifier.notify("thread-item-update", item.thread_id, item.id)
        if self.remote is not None:
            self.remote.schedule(item.thread_id)
        return item

    async def update_thread_item(self, item: ThreadItem, persist: bool = True, critical: bool = False) -> ThreadItem:
        """Apply ``item`` in memory; ``persist`` queues a durable write, ``critical`` writes it now."""
        item = ensure_branch_root_id(item)
        self._upsert_cached(item)
        if not persist:
            return item
        if critical:
            await self.queue.discard([item.id])
            await self.db.put_thread_item(item)
        else:
            self.queue.put(item)
        self.notifier.notify("thread-item-update", item.thread_id, item.id)
        if self.remote is not None:
            self.remote.schedule(item.thread_id)
        return item

    async def delete_thread_item(self, item_id: str) -> bool:
        """Delete one item. Returns True when the thread went with it."""
        item = await self.get_thread_item(item_id)
        if item is None:
            return False
        await self.queue.discard([item_id])
        await self.db.delete_thread_items([item_id])
        self.thread_items = [i for i in self.thread_items if i.id != item_id]
        if self.current_thread_item_id == item_id:
            self.current_thread_item_id = None
        if await self.db.count_thread_items(item.thread_id) == 0:
            await self.delete_thread(item.thread_id)
            return True
        self._prune()
        self.notifier.notify("thread-item-delete", item.thread_id, item_id)
        if self.remote is not None:
            self.remote.schedule(item.thread_id)
        return False

    async def remove_followup_thread_items(self, item_id: str) -> List[str]:
        """Delete every item of the same thread created after ``item_id``."""
        item = await self.get_thread_item(item_id)
        if item is None:
            return []
        siblings = await self.db.list_thread_items(item.thread_id)
        followups = [i.id for i in siblings if i.created_at > item.created_at]
        if not followups:
            return []
        await self.queue.discard(followups)
        await self.db.delete_thread_items(followups)
        removed = set(followups)
        self.thread_items = [i for i in self.thread_items if i.id not in removed]
        self._prune()
        for removed_id in followups:
            self.notifier.notify("thread-item-delete", item.thread_id, removed_id)
        if self.remote is not None:
            self.remote.schedule(item.thread_id)
        return followups

    # Branches and the conversation view

    def select_branch(self, branch_root_id: str, selected_id: str) -> Dict[str, str]:
        self.branch_selections = select_branch_member(
            self.thread_items, self.branch_selections, branch_root_id, selected_id
        )
        return self.branch_selections

    def get_branch_group(self, item_id: str) -> List[ThreadItem]:
        item = self.get_cached_thread_item(item_id)
        if item is None:
            return []
        root_id = resolve_branch_root_id(item)
        return sorted(
            (i for i in self.thread_items if resolve_branch_root_id(i) == root_id),
            key=lambda i: i.created_at,
        )

    def get_conversation_thread_items(self, thread_id: Optional[str] = None) -> List[ThreadItem]:
        thread_id = thread_id or self.current_thread_id
        items = [i for i in self.thread_items if i.thread_id == thread_id]
        return build_conversation_view(items, self.branch_selections)

    def get_previous_thread_items(self, before_item_id: Optional[str] = None) -> List[ThreadItem]:
        """Conversation view up to, not including, ``before_item_id`` (or the whole view)."""
        view = self.get_conversation_thread_items()
        if before_item_id is None:
            return view
        target = self.get_cached_thread_item(before_item_id)
        if target is None:
            return view
        ids = [i.id for i in view]
        if target.id in ids:
            return view[: ids.index(target.id)]
        # An unselected sibling: everything before its group on the path.
        root_id = resolve_branch_root_id(target)
        previous = []
        for entry in view:
            if resolve_branch_root_id(entry) == root_id:
                break
            previous.append(entry)
        return previous

    def get_current_thread_item(self) -> Optional[ThreadItem]:
        if self.current_thread_item_id:
            item = self.get_cached_thread_item(self.current_thread_item_id)
            if item is not None:
                return item
        view = self.get_conversation_thread_items()
        return view[-1] if view else None

    # Config

    async def update_config(self, **changes: Any) -> ChatConfig:
        stored = await self.db.get_config(CONFIG_KEY) or {}
        current = ChatConfig.model_validate(stored) if stored else self.config
        self.config = current.model_copy(update=changes)
        # Keys this version does not know about survive the write.
        await self.db.save_config(CONFIG_KEY, {**stored, **self.config.model_dump(by_alias=True)})
        return self.config

    async def set_chat_mode(self, chat_mode: str) -> ChatConfig:
        return await self.update_config(chat_mode=chat_mode)

    async def set_model(self, model: Optional[str]) -> ChatConfig:
        return await self.update_config(model=model)

    async def set_use_web_search(self, enabled: bool) -> ChatConfig:
        return await self.update_config(use_web_search=enabled)

    async def set_show_suggestions(self, enabled: bool) -> ChatConfig:
        return await self.update_config(show_suggestions=enabled)

    async def set_custom_instructions(self, text: str) -> ChatConfig:
        return await self.update_config(custom_instructions=text)

    # Generation state

    def set_is_generating(self, value: bool) -> None:
        self.is_generating = value

    def set_abort_signal(self, signal: Optional[asyncio.Event]) -> None:
        self.abort_signal = signal

    def abort_generation(self) -> bool:
        if self.abort_signal is None or self.abort_signal.is_set():
            return False
        self.abort_signal.set()
        return True

    # Changes made by other instances

    async def handle_sync_message(self, message: SyncMessage) -> None:
        thread_id = message.data.get("threadId")
        if not thread_id:
            return
        if message.type == "thread-delete":
            self.threads = [t for t in self.threads if t.id != thread_id]
            if thread_id == self.current_thread_id:
                self.current_thread_id = None
                self.current_thread_item_id = None
                self.thread_items = []
                self.branch_selections = {}
            return
        if message.type == "thread-update":
            thread = await self.db.get_thread(thread_id)
            if thread is not None:
                self._replace_thread(thread)
            return
        if thread_id == self.current_thread_id:
            await self.load_thread_items(thread_id)


async def open_store(
    settings: AppSettings,
    db_path: Optional[str] = None,
    hub: Optional[SyncHub] = None,
) -> ConversationStore:
    """Build a store from settings; remote sync is on when ``remote_sync_url`` is set."""
    db = Database(db_path or settings.client_database_path)
    remote = None
    if settings.remote_sync_url:
        backend = HttpRemoteBackend(
            settings.remote_sync_url,
            settings.remote_sync_token,
            timeout=settings.request_timeout_s,
        )
        remote = RemoteSync(db, backend, debounce=settings.remote_sync_debounce_s)
    store = ConversationStore(
        db,
        channel=create_broadcast_channel(db, hub),
        remote=remote,
        batch_interval=settings.batch_interval_s,
        notify_debounce=settings.notify_debounce_s,
    )
    await store.init()
    if remote is not None:
        if await remote.enable():
            await store.load_threads()
        if remote.last_error:
            logger.warning("Remote sync unavailable: %s", remote.last_error)
    return store
