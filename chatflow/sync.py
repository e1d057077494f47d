import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from contextlib import suppress
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set

import httpx
from pydantic import ValidationError

from .db import Database
from .schemas import SyncMessage, Thread, ThreadItem

logger = logging.getLogger("uvicorn.error")

SyncHandler = Callable[[SyncMessage], Awaitable[None]]

SYNC_AUTH_ERROR = "Authentication with the sync backend expired. Please sign in again to resume syncing."
ENABLE_AUTH_ERROR = "Sign in again to sync chats to the cloud."
DELETE_AUTH_ERROR = "Sign in again to keep syncing chats to the cloud."
SYNC_EVENT_RETENTION_S = 60.0


class BroadcastChannel(ABC):
    name = "base"

    def __init__(self) -> None:
        self._handlers: List[SyncHandler] = []

    def subscribe(self, handler: SyncHandler) -> None:
        self._handlers.append(handler)

    async def _deliver(self, message: SyncMessage) -> None:
        for handler in list(self._handlers):
            try:
                await handler(message)
            except Exception:
                logger.exception("Sync handler failed for %s", message.type)

    @abstractmethod
    async def post(self, message: SyncMessage) -> None:
        ...

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        return None


class SyncHub:
    def __init__(self) -> None:
        self._ports: List["HubChannel"] = []

    def connect(self) -> "HubChannel":
        port = HubChannel(self)
        self._ports.append(port)
        return port

    def disconnect(self, port: "HubChannel") -> None:
        if port in self._ports:
            self._ports.remove(port)

    @property
    def port_count(self) -> int:
        return len(self._ports)

    async def relay(self, sender: "HubChannel", message: SyncMessage) -> None:
        for port in list(self._ports):
            if port is not sender:
                await port._deliver(message)


class HubChannel(BroadcastChannel):
    name = "hub"

    def __init__(self, hub: SyncHub):
        super().__init__()
        self.hub = hub

    async def post(self, message: SyncMessage) -> None:
        await self.hub.relay(self, message)

    async def close(self) -> None:
        self.hub.disconnect(self)


class StorageEventChannel(BroadcastChannel):
    name = "storage"

    def __init__(
        self,
        db: Database,
        origin: Optional[str] = None,
        poll_interval: float = 0.25,
        retention: float = SYNC_EVENT_RETENTION_S,
    ):
        super().__init__()
        self.db = db
        self.origin = origin or uuid.uuid4().hex
        self.poll_interval = poll_interval
        self.retention = retention
        self._cursor = 0
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        self._cursor = await self.db.last_sync_event_id()
        if self._task is None:
            self._task = asyncio.create_task(self._poll_loop())

    async def post(self, message: SyncMessage) -> None:
        await self.db.add_sync_event(self.origin, message.model_dump())
        await self.db.prune_sync_events(datetime.now(timezone.utc) - timedelta(seconds=self.retention))

    async def poll(self) -> int:
        delivered = 0
        for entry in await self.db.list_sync_events(self._cursor):
            self._cursor = entry["id"]
            if entry["origin"] == self.origin:
                continue
            try:
                message = SyncMessage.model_validate(entry["payload"])
            except ValidationError as exc:
                logger.warning("Skipping malformed sync event %s: %s", entry["id"], exc)
                continue
            await self._deliver(message)
            delivered += 1
        return delivered

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                await self.poll()
            except Exception as exc:
                logger.warning("Sync event poll failed: %s", exc)

    async def close(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None


def create_broadcast_channel(
    db: Database,
    hub: Optional[SyncHub] = None,
    origin: Optional[str] = None,
    poll_interval: float = 0.25,
) -> BroadcastChannel:
    if hub is not None:
        return hub.connect()
    return StorageEventChannel(db, origin=origin, poll_interval=poll_interval)


class RemoteUnauthorizedError(Exception):
    pass


class RemoteThreadBackend(Protocol):
    async def list_threads(self) -> List[Dict[str, Any]]:
        ...

    async def push_thread(self, thread: Thread, items: List[ThreadItem]) -> None:
        ...

    async def delete_thread(self, thread_id: str) -> None:
        ...

    async def close(self) -> None:
        ...


class HttpRemoteBackend:
    def __init__(self, base_url: str, token: Optional[str], timeout: float = 30.0, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.client = client or httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=8, max_keepalive_connections=4),
        )

    async def _request(self, method: str, path: str, payload: Optional[dict] = None) -> Any:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        resp = await self.client.request(method, f"{self.base_url}{path}", json=payload, headers=headers)
        if resp.status_code in (401, 403):
            raise RemoteUnauthorizedError(f"remote sync rejected credentials ({resp.status_code})")
        resp.raise_for_status()
        return resp.json() if resp.content else None

    async def list_threads(self) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/threads")
        return data.get("threads", []) if isinstance(data, dict) else list(data or [])

    async def push_thread(self, thread: Thread, items: List[ThreadItem]) -> None:
        await self._request(
            "PUT",
            f"/threads/{thread.id}",
            {
                "thread": thread.model_dump(by_alias=True, mode="json"),
                "items": [item.model_dump(by_alias=True, mode="json") for item in items],
            },
        )

    async def delete_thread(self, thread_id: str) -> None:
        await self._request("DELETE", f"/threads/{thread_id}")

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


class RemoteSync:
    """Eventually-consistent push/pull between SQLite and a remote backend.

    Pushes are debounced per thread. Authorization failures switch back to
    local-only mode and leave a message in ``last_error``.
    """

    def __init__(self, db: Database, backend: RemoteThreadBackend, debounce: float = 0.8):
        self.db = db
        self.backend = backend
        self.debounce = debounce
        self.enabled = False
        self.last_error: Optional[str] = None
        self._timers: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()

    @property
    def pending_threads(self) -> List[str]:
        return list(self._timers)

    def schedule(self, thread_id: str, immediate: bool = False) -> None:
        if not self.enabled:
            return
        existing = self._timers.pop(thread_id, None)
        if existing is not None:
            existing.cancel()
        self._timers[thread_id] = asyncio.create_task(self._push_later(thread_id, 0.0 if immediate else self.debounce))

    async def _push_later(self, thread_id: str, delay: float) -> None:
        if delay:
            await asyncio.sleep(delay)
        if self._timers.get(thread_id) is asyncio.current_task():
            del self._timers[thread_id]
        await self.sync_thread(thread_id)

    async def sync_thread(self, thread_id: str) -> bool:
        if not self.enabled:
            return False
        thread = await self.db.get_thread(thread_id)
        if thread is None:
            return False
        items = await self.db.list_thread_items(thread_id)
        try:
            await self.backend.push_thread(thread, items)
        except RemoteUnauthorizedError:
            self._downgrade(SYNC_AUTH_ERROR)
            return False
        except httpx.HTTPError as exc:
            logger.warning("Remote sync of thread %s failed: %s", thread_id, exc)
            self.last_error = f"Failed to sync chat: {exc}"
            return False
        return True

    async def enable(self) -> int:
        """Pull newer remote threads into SQLite and push local-only ones. Returns the pull count."""
        self.enabled = True
        self.last_error = None
        try:
            remote = await self.backend.list_threads()
        except RemoteUnauthorizedError:
            self._downgrade(ENABLE_AUTH_ERROR)
            return 0
        except httpx.HTTPError as exc:
            logger.warning("Remote thread listing failed: %s", exc)
            self.last_error = f"Failed to load chats from the cloud: {exc}"
            return 0

        pulled = 0
        remote_ids = set()
        for entry in remote:
            try:
                thread = Thread.model_validate(entry["thread"])
                items = [ThreadItem.model_validate(raw) for raw in entry.get("items") or []]
            except (KeyError, ValidationError) as exc:
                logger.warning("Skipping malformed remote thread: %s", exc)
                continue
            remote_ids.add(thread.id)
            local = await self.db.get_thread(thread.id)
            if local is not None and local.updated_at >= thread.updated_at:
                continue
            await self.db.put_thread(thread)
            await self.db.bulk_put_thread_items(items)
            pulled += 1

        for thread in await self.db.list_threads():
            if thread.id not in remote_ids and self.enabled:
                await self.sync_thread(thread.id)
        return pulled

    async def disable(self) -> None:
        self.enabled = False
        await self._cancel_all()

    async def delete_thread(self, thread_id: str) -> None:
        timer = self._timers.pop(thread_id, None)
        if timer is not None:
            timer.cancel()
        if not self.enabled:
            return
        try:
            await self.backend.delete_thread(thread_id)
        except RemoteUnauthorizedError:
            self._downgrade(DELETE_AUTH_ERROR)
        except httpx.HTTPError as exc:
            logger.warning("Remote delete of thread %s failed: %s", thread_id, exc)
            self.last_error = f"Failed to delete chat from the cloud: {exc}"

    def request_delete(self, thread_id: str) -> None:
        """Fire-and-forget delete so local deletes never wait on the network."""
        task = asyncio.create_task(self.delete_thread(thread_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _downgrade(self, message: str) -> None:
        logger.warning("Remote sync disabled: %s", message)
        self.enabled = False
        self.last_error = message
        current = asyncio.current_task()
        for thread_id, timer in list(self._timers.items()):
            if timer is not current:
                timer.cancel()
            self._timers.pop(thread_id, None)

    async def _cancel_all(self) -> None:
        tasks = [*self._timers.values(), *self._background]
        self._timers.clear()
        current = asyncio.current_task()
        tasks = [t for t in tasks if t is not current]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task

    async def close(self) -> None:
        await self._cancel_all()
        await self.backend.close()
