import asyncio
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import respx
from httpx import Response

from chatflow.db import Database
from chatflow.schemas import SyncMessage, Thread, ThreadItem
from chatflow.sync import (
    ENABLE_AUTH_ERROR,
    SYNC_AUTH_ERROR,
    HttpRemoteBackend,
    RemoteSync,
    RemoteUnauthorizedError,
    StorageEventChannel,
    SyncHub,
    create_broadcast_channel,
)
from tests.fakes import FakeRemoteBackend

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


async def _db(tmp_path: Path, name: str = "sync.db") -> Database:
    db = Database(str(tmp_path / name))
    await db.init()
    return db


def _remote_entry(thread_id: str, updated_at: datetime, title: str = "Remote"):
    thread = Thread(id=thread_id, title=title, created_at=T0, updated_at=updated_at)
    item = ThreadItem(id=f"{thread_id}-item", thread_id=thread_id, query="q", status="COMPLETED", created_at=T0)
    return {
        "thread": thread.model_dump(by_alias=True, mode="json"),
        "items": [item.model_dump(by_alias=True, mode="json")],
    }


@pytest.mark.asyncio
async def test_hub_relays_to_other_ports_only():
    hub = SyncHub()
    first, second = hub.connect(), hub.connect()
    seen = {"first": [], "second": []}

    async def on_first(message):
        seen["first"].append(message.type)

    async def on_second(message):
        seen["second"].append(message.type)

    first.subscribe(on_first)
    second.subscribe(on_second)
    await first.post(SyncMessage(type="thread-update", data={"threadId": "t1"}))
    assert seen == {"first": [], "second": ["thread-update"]}


@pytest.mark.asyncio
async def test_failing_handler_does_not_block_others():
    hub = SyncHub()
    sender, receiver = hub.connect(), hub.connect()
    seen = []

    async def broken(message):
        raise RuntimeError("boom")

    async def ok(message):
        seen.append(message.type)

    receiver.subscribe(broken)
    receiver.subscribe(ok)
    await sender.post(SyncMessage(type="thread-delete", data={"threadId": "t1"}))
    assert seen == ["thread-delete"]


@pytest.mark.asyncio
async def test_storage_channel_prunes_expired_events(tmp_path: Path):
    db = await _db(tmp_path)
    await db.execute(
        "INSERT INTO sync_events(origin, payload_json, created_at) VALUES (?,?,?)",
        ("stale", json.dumps({"type": "thread-update", "data": {"threadId": "old"}}), T0.isoformat()),
    )
    channel = StorageEventChannel(db, origin="mine", retention=3600)
    await channel.post(SyncMessage(type="thread-update", data={"threadId": "fresh"}))
    events = await db.list_sync_events(0)
    assert [e["payload"]["data"]["threadId"] for e in events] == ["fresh"]


@pytest.mark.asyncio
async def test_storage_channel_delivers_foreign_events(tmp_path: Path):
    db = await _db(tmp_path)
    await db.add_sync_event("old", {"type": "thread-update", "data": {"threadId": "before-start"}})
    mine = create_broadcast_channel(db, origin="mine", poll_interval=60)
    theirs = create_broadcast_channel(db, origin="theirs", poll_interval=60)
    assert isinstance(mine, StorageEventChannel)
    seen = []

    async def handler(message):
        seen.append(message.data["threadId"])

    mine.subscribe(handler)
    await mine.start()
    try:
        await mine.post(SyncMessage(type="thread-update", data={"threadId": "own"}))
        await theirs.post(SyncMessage(type="thread-update", data={"threadId": "t1"}))
        await db.add_sync_event("theirs", {"type": "nonsense"})
        assert await mine.poll() == 1
        assert seen == ["t1"]
    finally:
        await mine.close()


@pytest.mark.asyncio
async def test_create_broadcast_channel_prefers_hub(tmp_path: Path):
    db = await _db(tmp_path)
    hub = SyncHub()
    channel = create_broadcast_channel(db, hub=hub)
    assert channel.name == "hub"
    assert hub.port_count == 1


@pytest.mark.asyncio
async def test_enable_pulls_newer_and_pushes_local_only(tmp_path: Path):
    db = await _db(tmp_path)
    await db.put_thread(Thread(id="stale", title="Local", created_at=T0, updated_at=T0))
    await db.put_thread(Thread(id="fresh", title="Local fresh", created_at=T0, updated_at=T0 + timedelta(days=2)))
    await db.put_thread(Thread(id="local-only", created_at=T0, updated_at=T0))
    backend = FakeRemoteBackend(
        [
            _remote_entry("stale", T0 + timedelta(days=1)),
            _remote_entry("fresh", T0 + timedelta(days=1)),
            _remote_entry("new", T0),
            {"thread": {"title": "missing id"}},
        ]
    )
    remote = RemoteSync(db, backend, debounce=0.0)

    assert await remote.enable() == 2
    assert (await db.get_thread("stale")).title == "Remote"
    assert (await db.get_thread("fresh")).title == "Local fresh"
    assert await db.get_thread_item("new-item") is not None
    assert [entry["thread"].id for entry in backend.pushed] == ["local-only"]
    await remote.close()


@pytest.mark.asyncio
async def test_schedule_debounces_pushes(tmp_path: Path):
    db = await _db(tmp_path)
    await db.put_thread(Thread(id="t1"))
    backend = FakeRemoteBackend()
    remote = RemoteSync(db, backend, debounce=0.05)
    await remote.enable()

    remote.schedule("t1")
    remote.schedule("t1")
    assert remote.pending_threads == ["t1"]
    await asyncio.sleep(0.2)
    assert [entry["thread"].id for entry in backend.pushed].count("t1") == 2  # enable + one debounced push
    assert remote.pending_threads == []
    await remote.close()


@pytest.mark.asyncio
async def test_schedule_is_ignored_when_disabled(tmp_path: Path):
    db = await _db(tmp_path)
    remote = RemoteSync(db, FakeRemoteBackend())
    remote.schedule("t1")
    assert remote.pending_threads == []


@pytest.mark.asyncio
async def test_unauthorized_push_downgrades_to_local(tmp_path: Path):
    db = await _db(tmp_path)
    await db.put_thread(Thread(id="t1"))
    backend = FakeRemoteBackend()
    remote = RemoteSync(db, backend, debounce=0.0)
    await remote.enable()
    backend.unauthorized = True

    assert await remote.sync_thread("t1") is False
    assert remote.enabled is False
    assert remote.last_error == SYNC_AUTH_ERROR


@pytest.mark.asyncio
async def test_unauthorized_enable(tmp_path: Path):
    db = await _db(tmp_path)
    backend = FakeRemoteBackend()
    backend.unauthorized = True
    remote = RemoteSync(db, backend)
    assert await remote.enable() == 0
    assert remote.enabled is False
    assert remote.last_error == ENABLE_AUTH_ERROR


@pytest.mark.asyncio
async def test_network_failure_keeps_sync_enabled(tmp_path: Path):
    db = await _db(tmp_path)
    await db.put_thread(Thread(id="t1"))
    backend = FakeRemoteBackend()
    remote = RemoteSync(db, backend)
    await remote.enable()
    backend.failing = True
    assert await remote.sync_thread("t1") is False
    assert remote.enabled is True
    assert remote.last_error.startswith("Failed to sync chat")


@pytest.mark.asyncio
async def test_request_delete_runs_in_background(tmp_path: Path):
    db = await _db(tmp_path)
    backend = FakeRemoteBackend()
    remote = RemoteSync(db, backend)
    await remote.enable()
    remote.request_delete("t1")
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert backend.deleted == ["t1"]
    await remote.disable()


@pytest.mark.asyncio
async def test_http_backend_routes_and_auth():
    backend = HttpRemoteBackend("https://sync.test/api/", "token-1")
    thread = Thread(id="t1", created_at=T0, updated_at=T0)
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def on_put(request):
                captured["auth"] = request.headers["Authorization"]
                captured["body"] = json.loads(request.content.decode("utf-8"))
                return Response(204)

            respx_mock.get("https://sync.test/api/threads").mock(
                return_value=Response(200, json={"threads": [_remote_entry("t1", T0)]})
            )
            respx_mock.put("https://sync.test/api/threads/t1").mock(side_effect=on_put)
            respx_mock.delete("https://sync.test/api/threads/t1").mock(return_value=Response(401))

            listed = await backend.list_threads()
            assert listed[0]["thread"]["id"] == "t1"
            await backend.push_thread(thread, [])
            assert captured["auth"] == "Bearer token-1"
            assert captured["body"]["thread"]["autoTitleVersion"] == 0
            with pytest.raises(RemoteUnauthorizedError):
                await backend.delete_thread("t1")
    finally:
        await backend.close()
