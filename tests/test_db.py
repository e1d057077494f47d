import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from chatflow.db import Database
from chatflow.schemas import Answer, Thread, ThreadItem

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_db_init_creates_tables(tmp_path: Path):
    db = Database(str(tmp_path / "schema.db"))
    await db.init()
    rows = await db.fetchall("SELECT name FROM sqlite_master WHERE type='table'")
    tables = {row["name"] for row in rows}
    assert {"threads", "thread_items", "config_blobs", "sync_events"}.issubset(tables)


@pytest.mark.asyncio
async def test_db_migration_adds_missing_columns(tmp_path: Path):
    db_path = tmp_path / "legacy.db"
    conn = sqlite3.connect(db_path)
    conn.executescript(
        """
        CREATE TABLE threads(id TEXT PRIMARY KEY, title TEXT, created_at TEXT, updated_at TEXT,
                             pinned INTEGER DEFAULT 0, payload_json TEXT);
        CREATE TABLE thread_items(id TEXT PRIMARY KEY, thread_id TEXT NOT NULL, parent_id TEXT,
                                  status TEXT, created_at TEXT, updated_at TEXT, payload_json TEXT);
        """
    )
    conn.commit()
    conn.close()

    db = Database(str(db_path))
    await db.init()
    item_cols = {row["name"] for row in await db.fetchall("PRAGMA table_info(thread_items)")}
    thread_cols = {row["name"] for row in await db.fetchall("PRAGMA table_info(threads)")}
    assert "branch_root_id" in item_cols
    assert "pinned_at" in thread_cols


@pytest.mark.asyncio
async def test_thread_item_round_trip_keeps_wire_names(tmp_path: Path):
    db = Database(str(tmp_path / "items.db"))
    await db.init()
    await db.put_thread(Thread(id="t1", title="Chat", created_at=T0, updated_at=T0))
    item = ThreadItem(
        id="i1",
        thread_id="t1",
        query="Hi",
        status="COMPLETED",
        answer=Answer(text="Hello", final_text="Hello"),
        metadata={"requestedMode": "auto"},
        created_at=T0,
    )
    await db.put_thread_item(item)

    stored = await db.get_thread_item("i1")
    assert stored == item
    row = await db.fetchone("SELECT payload_json FROM thread_items WHERE id=?", ("i1",))
    assert '"threadId"' in row["payload_json"]
    assert '"finalText"' in row["payload_json"]


@pytest.mark.asyncio
async def test_list_items_in_creation_order_and_bulk_put(tmp_path: Path):
    db = Database(str(tmp_path / "bulk.db"))
    await db.init()
    items = [
        ThreadItem(id=f"i{n}", thread_id="t1", query=str(n), created_at=T0 + timedelta(minutes=n))
        for n in (2, 0, 1)
    ]
    await db.bulk_put_thread_items(items)
    assert [i.id for i in await db.list_thread_items("t1")] == ["i0", "i1", "i2"]
    assert await db.count_thread_items("t1") == 3

    await db.delete_thread_items(["i0", "i2"])
    assert [i.id for i in await db.list_thread_items("t1")] == ["i1"]


@pytest.mark.asyncio
async def test_delete_thread_removes_items(tmp_path: Path):
    db = Database(str(tmp_path / "delete.db"))
    await db.init()
    await db.put_thread(Thread(id="t1"))
    await db.put_thread_item(ThreadItem(id="i1", thread_id="t1"))
    await db.delete_thread("t1")
    assert await db.get_thread("t1") is None
    assert await db.count_thread_items("t1") == 0


@pytest.mark.asyncio
async def test_pinned_threads_order(tmp_path: Path):
    db = Database(str(tmp_path / "pins.db"))
    await db.init()
    await db.put_thread(Thread(id="a", pinned=True, pinned_at=T0))
    await db.put_thread(Thread(id="b", pinned=True, pinned_at=T0 + timedelta(hours=1)))
    await db.put_thread(Thread(id="c"))
    assert [t.id for t in await db.list_pinned_threads()] == ["b", "a"]


@pytest.mark.asyncio
async def test_config_blobs_and_sync_events(tmp_path: Path):
    db = Database(str(tmp_path / "config.db"))
    await db.init()
    assert await db.get_config("chat-config") is None
    await db.save_config("chat-config", {"chatMode": "auto"})
    await db.save_config("chat-config", {"chatMode": "pro"})
    assert await db.get_config("chat-config") == {"chatMode": "pro"}

    assert await db.last_sync_event_id() == 0
    first = await db.add_sync_event("origin-a", {"type": "thread-update", "data": {"threadId": "t1"}})
    second = await db.add_sync_event("origin-b", {"type": "thread-delete", "data": {"threadId": "t1"}})
    assert await db.last_sync_event_id() == second
    events = await db.list_sync_events(first)
    assert [(e["origin"], e["payload"]["type"]) for e in events] == [("origin-b", "thread-delete")]

    assert await db.prune_sync_events(datetime.now(timezone.utc) + timedelta(seconds=1)) == 2
    assert await db.list_sync_events(0) == []
