import asyncio
import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite


DEFAULT_TITLE = "New chat"
MESSAGE_COLUMNS = ("id", "conversation_id", "sender", "content", "timestamp", "response_time")
CONVERSATION_FIELDS = ("title", "icon", "model")


def utc_now() -> str:
    return datetime.utcnow().isoformat() + "Z"


def _split_message(message: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    columns = {k: v for k, v in message.items() if k in MESSAGE_COLUMNS}
    state = {k: v for k, v in message.items() if k not in MESSAGE_COLUMNS}
    return columns, state


def _message_from_row(row: aiosqlite.Row) -> dict:
    data = json.loads(row["state_json"] or "{}")
    data.update(
        {
            "id": row["id"],
            "conversation_id": row["conversation_id"],
            "sender": row["sender"],
            "content": row["content"] or "",
            "timestamp": row["created_at"],
            "response_time": row["response_time"],
        }
    )
    return data


class Database:
    def __init__(self, path: str):
        self.path = path
        self._message_lock = asyncio.Lock()

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS conversations(
                    id TEXT PRIMARY KEY,
                    created_at TEXT,
                    updated_at TEXT,
                    title TEXT,
                    icon TEXT,
                    model TEXT
                );
                CREATE TABLE IF NOT EXISTS messages(
                    id TEXT PRIMARY KEY,
                    conversation_id TEXT,
                    position INTEGER,
                    sender TEXT,
                    content TEXT,
                    created_at TEXT,
                    response_time REAL,
                    state_json TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, position);
                CREATE TABLE IF NOT EXISTS pages(
                    id TEXT PRIMARY KEY,
                    conversation_id TEXT,
                    message_id TEXT,
                    title TEXT,
                    content TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS files(
                    id TEXT PRIMARY KEY,
                    message_id TEXT,
                    name TEXT,
                    mime TEXT,
                    content TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS events(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    stream_id TEXT,
                    seq INTEGER,
                    event_type TEXT,
                    payload_json TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS configs(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    created_at TEXT,
                    payload_json TEXT
                );
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

            await ensure_column("conversations", "icon", "TEXT")
            await ensure_column("messages", "response_time", "REAL")
            await ensure_column("messages", "state_json", "TEXT")
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

    # Conversations

    async def touch_conversation(self, conversation_id: Optional[str], updated_at: Optional[str] = None) -> Optional[str]:
        if not conversation_id:
            return None
        stamp = updated_at or utc_now()
        await self.execute("UPDATE conversations SET updated_at=? WHERE id=?", (stamp, conversation_id))
        return stamp

    async def create_conversation(self, title: Optional[str] = None, model: Optional[str] = None) -> dict:
        convo_id = uuid.uuid4().hex
        created_at = utc_now()
        await self.execute(
            "INSERT INTO conversations(id, created_at, updated_at, title, icon, model) VALUES (?,?,?,?,?,?)",
            (convo_id, created_at, created_at, title or DEFAULT_TITLE, None, model),
        )
        return {
            "id": convo_id,
            "created_at": created_at,
            "updated_at": created_at,
            "title": title or DEFAULT_TITLE,
            "icon": None,
            "model": model,
        }

    async def get_conversation(self, conversation_id: str) -> Optional[dict]:
        row = await self.fetchone(
            "SELECT id, created_at, updated_at, title, icon, model FROM conversations WHERE id=?",
            (conversation_id,),
        )
        return dict(row) if row else None

    async def list_conversations(self, limit: int = 200) -> List[dict]:
        rows = await self.fetchall(
            "SELECT id, created_at, updated_at, title, icon, model, "
            "(SELECT content FROM messages WHERE conversation_id=conversations.id ORDER BY position DESC LIMIT 1) AS latest_message, "
            "(SELECT COUNT(*) FROM messages WHERE conversation_id=conversations.id) AS message_count "
            "FROM conversations ORDER BY updated_at DESC, created_at DESC LIMIT ?",
            (limit,),
        )
        return [dict(r) for r in rows]

    async def update_conversation(self, conversation_id: str, partial: Dict[str, Any]) -> Optional[dict]:
        current = await self.get_conversation(conversation_id)
        if not current:
            return None
        changes = {k: v for k, v in partial.items() if k in CONVERSATION_FIELDS and v is not None}
        merged = {**current, **changes}
        await self.execute(
            "UPDATE conversations SET title=?, icon=?, model=?, updated_at=? WHERE id=?",
            (merged["title"], merged["icon"], merged["model"], utc_now(), conversation_id),
        )
        return await self.get_conversation(conversation_id)

    async def ensure_conversation_title(self, conversation_id: str, title: str, icon: Optional[str] = None) -> bool:
        row = await self.fetchone("SELECT title FROM conversations WHERE id=?", (conversation_id,))
        if not row:
            return False
        current = (row["title"] or "").strip()
        if current and current.lower() != DEFAULT_TITLE.lower():
            return False
        await self.update_conversation(conversation_id, {"title": title, "icon": icon})
        return True

    async def delete_conversation(self, conversation_id: str) -> None:
        await self.execute(
            "DELETE FROM files WHERE message_id IN (SELECT id FROM messages WHERE conversation_id=?)",
            (conversation_id,),
        )
        await self.execute("DELETE FROM pages WHERE conversation_id=?", (conversation_id,))
        await self.execute("DELETE FROM messages WHERE conversation_id=?", (conversation_id,))
        await self.execute("DELETE FROM events WHERE stream_id=?", (conversation_id,))
        await self.execute("DELETE FROM conversations WHERE id=?", (conversation_id,))

    # Messages

    async def add_message_to_conversation(self, conversation_id: str, message: Dict[str, Any]) -> dict:
        columns, state = _split_message(message)
        message_id = columns.get("id") or uuid.uuid4().hex
        created_at = columns.get("timestamp") or utc_now()
        async with self._message_lock:
            row = await self.fetchone(
                "SELECT COALESCE(MAX(position), 0) AS max_pos FROM messages WHERE conversation_id=?",
                (conversation_id,),
            )
            position = int(row["max_pos"]) + 1 if row else 1
            await self.execute(
                "INSERT INTO messages(id, conversation_id, position, sender, content, created_at, response_time, state_json) "
                "VALUES (?,?,?,?,?,?,?,?)",
                (
                    message_id,
                    conversation_id,
                    position,
                    columns.get("sender", "assistant"),
                    columns.get("content", ""),
                    created_at,
                    columns.get("response_time"),
                    json.dumps(state),
                ),
            )
        await self.touch_conversation(conversation_id, updated_at=created_at)
        return {**message, "id": message_id, "conversation_id": conversation_id, "timestamp": created_at}

    async def get_message(self, conversation_id: str, message_id: str) -> Optional[dict]:
        row = await self.fetchone(
            "SELECT id, conversation_id, sender, content, created_at, response_time, state_json "
            "FROM messages WHERE conversation_id=? AND id=?",
            (conversation_id, message_id),
        )
        return _message_from_row(row) if row else None

    async def update_message_in_conversation(
        self, conversation_id: str, message_id: str, partial: Dict[str, Any]
    ) -> Optional[dict]:
        """Merge a partial update into a stored message. Unknown ids are ignored."""
        async with self._message_lock:
            row = await self.fetchone(
                "SELECT content, response_time, state_json FROM messages WHERE conversation_id=? AND id=?",
                (conversation_id, message_id),
            )
            if not row:
                return None
            columns, state = _split_message(partial)
            merged_state = json.loads(row["state_json"] or "{}")
            merged_state.update(state)
            content = columns.get("content", row["content"])
            response_time = columns.get("response_time", row["response_time"])
            await self.execute(
                "UPDATE messages SET content=?, response_time=?, state_json=? WHERE conversation_id=? AND id=?",
                (content, response_time, json.dumps(merged_state), conversation_id, message_id),
            )
        return await self.get_message(conversation_id, message_id)

    async def list_messages(self, conversation_id: str, limit: int = 500) -> List[dict]:
        rows = await self.fetchall(
            "SELECT id, conversation_id, sender, content, created_at, response_time, state_json "
            "FROM messages WHERE conversation_id=? ORDER BY position ASC LIMIT ?",
            (conversation_id, limit),
        )
        return [_message_from_row(r) for r in rows]

    # Pages and files

    async def create_page(self, conversation_id: str, message_id: str, title: str, content: str) -> dict:
        page_id = uuid.uuid4().hex
        created_at = utc_now()
        await self.execute(
            "INSERT INTO pages(id, conversation_id, message_id, title, content, created_at) VALUES (?,?,?,?,?,?)",
            (page_id, conversation_id, message_id, title, content, created_at),
        )
        return {
            "id": page_id,
            "conversation_id": conversation_id,
            "message_id": message_id,
            "title": title,
            "content": content,
            "created_at": created_at,
        }

    async def get_page(self, page_id: str) -> Optional[dict]:
        row = await self.fetchone(
            "SELECT id, conversation_id, message_id, title, content, created_at FROM pages WHERE id=?",
            (page_id,),
        )
        return dict(row) if row else None

    async def add_file(self, message_id: str, name: str, content: str, mime: str = "text/plain") -> dict:
        file_id = uuid.uuid4().hex
        created_at = utc_now()
        await self.execute(
            "INSERT INTO files(id, message_id, name, mime, content, created_at) VALUES (?,?,?,?,?,?)",
            (file_id, message_id, name, mime, content, created_at),
        )
        return {
            "id": file_id,
            "message_id": message_id,
            "name": name,
            "mime": mime,
            "size": len(content.encode("utf-8")),
            "created_at": created_at,
        }

    async def get_file(self, file_id: str) -> Optional[dict]:
        row = await self.fetchone(
            "SELECT id, message_id, name, mime, content, created_at FROM files WHERE id=?",
            (file_id,),
        )
        return dict(row) if row else None

    # Events and configs

    async def next_event_seq(self, stream_id: str) -> int:
        row = await self.fetchone("SELECT MAX(seq) as max_seq FROM events WHERE stream_id=?", (stream_id,))
        max_seq = row["max_seq"] if row and row["max_seq"] is not None else 0
        return int(max_seq) + 1

    async def add_event(self, stream_id: str, event_type: str, payload: dict, seq: Optional[int] = None) -> dict:
        if seq is None:
            seq = await self.next_event_seq(stream_id)
        created_at = utc_now()
        await self.execute(
            "INSERT INTO events(stream_id, seq, event_type, payload_json, created_at) VALUES (?,?,?,?,?)",
            (stream_id, seq, event_type, json.dumps(payload), created_at),
        )
        return {"stream_id": stream_id, "seq": seq, "event_type": event_type, "payload": payload, "created_at": created_at}

    async def list_events(self, stream_id: str, after_seq: int = 0) -> List[dict]:
        rows = await self.fetchall(
            "SELECT seq, event_type, payload_json, created_at FROM events WHERE stream_id=? AND seq>? ORDER BY seq ASC",
            (stream_id, after_seq),
        )
        return [
            {
                "seq": row["seq"],
                "event_type": row["event_type"],
                "payload": json.loads(row["payload_json"] or "{}"),
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    async def save_config(self, payload: dict) -> None:
        await self.execute(
            "INSERT INTO configs(created_at, payload_json) VALUES (?,?)", (utc_now(), json.dumps(payload))
        )
