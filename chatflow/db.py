import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import aiosqlite

from .schemas import Thread, ThreadItem


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _item_row(item: ThreadItem) -> Tuple[Any, ...]:
    return (
        item.id,
        item.thread_id,
        item.parent_id,
        item.branch_root_id,
        item.status,
        _ts(item.created_at),
        _ts(item.updated_at),
        item.model_dump_json(by_alias=True),
    )


_ITEM_UPSERT = (
    "INSERT INTO thread_items(id, thread_id, parent_id, branch_root_id, status, created_at, updated_at, payload_json) "
    "VALUES (?,?,?,?,?,?,?,?) "
    "ON CONFLICT(id) DO UPDATE SET thread_id=excluded.thread_id, parent_id=excluded.parent_id, "
    "branch_root_id=excluded.branch_root_id, status=excluded.status, updated_at=excluded.updated_at, "
    "payload_json=excluded.payload_json"
)


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS threads(
                    id TEXT PRIMARY KEY,
                    title TEXT,
                    created_at TEXT,
                    updated_at TEXT,
                    pinned INTEGER DEFAULT 0,
                    pinned_at TEXT,
                    payload_json TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_threads_created_at ON threads(created_at);
                CREATE TABLE IF NOT EXISTS thread_items(
                    id TEXT PRIMARY KEY,
                    thread_id TEXT NOT NULL,
                    parent_id TEXT,
                    branch_root_id TEXT,
                    status TEXT,
                    created_at TEXT,
                    updated_at TEXT,
                    payload_json TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_thread_items_thread_id ON thread_items(thread_id);
                CREATE INDEX IF NOT EXISTS idx_thread_items_parent_id ON thread_items(parent_id);
                CREATE INDEX IF NOT EXISTS idx_thread_items_created_at ON thread_items(created_at);
                CREATE TABLE IF NOT EXISTS config_blobs(
                    key TEXT PRIMARY KEY,
                    payload_json TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS sync_events(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    origin TEXT,
                    payload_json TEXT,
                    created_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_sync_events_created_at ON sync_events(created_at);
                """
            )

            async def column_exists(table: str, column: str) -> bool:
                cursor = await db.execute(f"PRAGMA table_info({table})")
                rows = await cursor.fetchall()
                await cursor.close()
                return any(row[1] == column for row in rows)

            async def ensure_column(table: str, column: str, decl: str) -> None:
                if not await column_exists(table, column):
                    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {decl}")

            await ensure_column("thread_items", "branch_root_id", "TEXT")
            await ensure_column("threads", "pinned_at", "TEXT")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_threads_pinned ON threads(pinned, pinned_at)")
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(query, params)
            await db.commit()

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    # Threads

    async def put_thread(self, thread: Thread) -> None:
        await self.execute(
            "INSERT INTO threads(id, title, created_at, updated_at, pinned, pinned_at, payload_json) "
            "VALUES (?,?,?,?,?,?,?) "
            "ON CONFLICT(id) DO UPDATE SET title=excluded.title, updated_at=excluded.updated_at, "
            "pinned=excluded.pinned, pinned_at=excluded.pinned_at, payload_json=excluded.payload_json",
            (
                thread.id,
                thread.title,
                _ts(thread.created_at),
                _ts(thread.updated_at),
                1 if thread.pinned else 0,
                _ts(thread.pinned_at),
                thread.model_dump_json(by_alias=True),
            ),
        )

    async def get_thread(self, thread_id: str) -> Optional[Thread]:
        row = await self.fetchone("SELECT payload_json FROM threads WHERE id=?", (thread_id,))
        return Thread.model_validate_json(row["payload_json"]) if row else None

    async def list_threads(self) -> List[Thread]:
        rows = await self.fetchall("SELECT payload_json FROM threads ORDER BY created_at DESC")
        return [Thread.model_validate_json(row["payload_json"]) for row in rows]

    async def list_pinned_threads(self) -> List[Thread]:
        rows = await self.fetchall(
            "SELECT payload_json FROM threads WHERE pinned=1 ORDER BY pinned_at DESC"
        )
        return [Thread.model_validate_json(row["payload_json"]) for row in rows]

    async def delete_thread(self, thread_id: str) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute("DELETE FROM thread_items WHERE thread_id=?", (thread_id,))
            await db.execute("DELETE FROM threads WHERE id=?", (thread_id,))
            await db.commit()

    async def clear_threads(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute("DELETE FROM thread_items")
            await db.execute("DELETE FROM threads")
            await db.commit()

    # Thread items

    async def put_thread_item(self, item: ThreadItem) -> None:
        await self.execute(_ITEM_UPSERT, _item_row(item))

    async def bulk_put_thread_items(self, items: Iterable[ThreadItem]) -> None:
        rows = [_item_row(item) for item in items]
        if not rows:
            return
        async with aiosqlite.connect(self.path) as db:
            try:
                await db.executemany(_ITEM_UPSERT, rows)
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    async def get_thread_item(self, item_id: str) -> Optional[ThreadItem]:
        row = await self.fetchone("SELECT payload_json FROM thread_items WHERE id=?", (item_id,))
        return ThreadItem.model_validate_json(row["payload_json"]) if row else None

    async def list_thread_items(self, thread_id: str) -> List[ThreadItem]:
        rows = await self.fetchall(
            "SELECT payload_json FROM thread_items WHERE thread_id=? ORDER BY created_at ASC, rowid ASC",
            (thread_id,),
        )
        return [ThreadItem.model_validate_json(row["payload_json"]) for row in rows]

    async def count_thread_items(self, thread_id: str) -> int:
        row = await self.fetchone("SELECT COUNT(*) AS cnt FROM thread_items WHERE thread_id=?", (thread_id,))
        return int(row["cnt"]) if row else 0

    async def delete_thread_items(self, item_ids: Iterable[str]) -> None:
        ids = list(item_ids)
        if not ids:
            return
        placeholders = ",".join("?" for _ in ids)
        await self.execute(f"DELETE FROM thread_items WHERE id IN ({placeholders})", tuple(ids))

    # Config blobs

    async def get_config(self, key: str) -> Optional[Dict[str, Any]]:
        row = await self.fetchone("SELECT payload_json FROM config_blobs WHERE key=?", (key,))
        return json.loads(row["payload_json"]) if row else None

    async def save_config(self, key: str, payload: Dict[str, Any]) -> None:
        await self.execute(
            "INSERT INTO config_blobs(key, payload_json, updated_at) VALUES (?,?,?) "
            "ON CONFLICT(key) DO UPDATE SET payload_json=excluded.payload_json, updated_at=excluded.updated_at",
            (key, json.dumps(payload), utc_now()),
        )

    # Cross-instance change log (storage-event fallback)

    async def add_sync_event(self, origin: str, payload: Dict[str, Any]) -> int:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                "INSERT INTO sync_events(origin, payload_json, created_at) VALUES (?,?,?)",
                (origin, json.dumps(payload), utc_now()),
            )
            event_id = cursor.lastrowid
            await cursor.close()
            await db.commit()
        return int(event_id)

    async def list_sync_events(self, after_id: int) -> List[dict]:
        rows = await self.fetchall(
            "SELECT id, origin, payload_json FROM sync_events WHERE id>? ORDER BY id ASC",
            (after_id,),
        )
        return [
            {"id": row["id"], "origin": row["origin"], "payload": json.loads(row["payload_json"])}
            for row in rows
        ]

    async def last_sync_event_id(self) -> int:
        row = await self.fetchone("SELECT MAX(id) AS max_id FROM sync_events")
        return int(row["max_id"] or 0) if row else 0

    async def prune_sync_events(self, before: datetime) -> int:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute("DELETE FROM sync_events WHERE created_at<?", (before.isoformat(),))
            removed = cursor.rowcount
            await cursor.close()
            await db.commit()
        return int(removed or 0)
