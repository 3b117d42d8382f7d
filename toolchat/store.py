import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import aiosqlite

from .schemas import DEFAULT_TITLE, Attachments, Conversation, Message, ToolCall, now_ms


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


MESSAGE_COLUMNS = (
    "id, conversation_id, role, content, timestamp, kind, turn_id, tool_call_id, tool_calls_json, attachments_json"
)


def _row_to_message(row: aiosqlite.Row) -> Message:
    tool_calls = json.loads(row["tool_calls_json"]) if row["tool_calls_json"] else None
    attachments = json.loads(row["attachments_json"]) if row["attachments_json"] else None
    return Message(
        id=row["id"],
        role=row["role"],
        content=row["content"],
        timestamp=row["timestamp"],
        kind=row["kind"] or "final",
        turn_id=row["turn_id"],
        tool_call_id=row["tool_call_id"],
        tool_calls=[ToolCall(**call) for call in tool_calls] if tool_calls else None,
        attachments=Attachments(**attachments) if attachments else None,
    )


def _row_to_conversation(row: aiosqlite.Row, messages: Optional[List[Message]] = None) -> Conversation:
    return Conversation(
        id=row["id"],
        title=row["title"] or DEFAULT_TITLE,
        title_source=row["title_source"] or "default",
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        messages=messages or [],
    )


class ConversationStore:
    """SQLite-backed conversations, messages, uploads and turn events.

    Every operation opens its own connection and commits before returning, so
    state is durable as soon as a call completes.
    """

    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS conversations(
                    id INTEGER PRIMARY KEY,
                    title TEXT,
                    title_source TEXT,
                    created_at INTEGER,
                    updated_at INTEGER
                );
                CREATE TABLE IF NOT EXISTS messages(
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT UNIQUE,
                    conversation_id INTEGER,
                    role TEXT,
                    content TEXT,
                    timestamp INTEGER,
                    kind TEXT,
                    turn_id TEXT,
                    tool_call_id TEXT,
                    tool_calls_json TEXT,
                    attachments_json TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, seq);
                CREATE TABLE IF NOT EXISTS conversation_state(
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    current_conversation_id INTEGER
                );
                INSERT OR IGNORE INTO conversation_state(id, current_conversation_id) VALUES (1, NULL);
                CREATE TABLE IF NOT EXISTS uploads(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    conversation_id INTEGER,
                    filename TEXT,
                    original_name TEXT,
                    mime TEXT,
                    size_bytes INTEGER,
                    storage_path TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS events(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    turn_id TEXT,
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

            # Databases created before title tracking existed.
            await ensure_column("conversations", "title_source", "TEXT DEFAULT 'default'")
            await ensure_column("messages", "kind", "TEXT DEFAULT 'final'")
            await db.commit()
        await self.ensure_conversation()

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

    async def ensure_conversation(self) -> Optional[Conversation]:
        """Keep at least one conversation and a valid current pointer; returns one if created."""
        created: Optional[Conversation] = None
        row = await self.fetchone("SELECT id FROM conversations ORDER BY created_at DESC, id DESC LIMIT 1")
        if not row:
            created = await self.create_conversation()
            await self.set_current_conversation_id(created.id)
            return created
        current = await self.fetchone(
            "SELECT c.id FROM conversation_state s JOIN conversations c ON c.id = s.current_conversation_id WHERE s.id=1"
        )
        if not current:
            await self.set_current_conversation_id(row["id"])
        return created

    async def _unique_conversation_id(self) -> int:
        candidate = now_ms()
        while await self.fetchone("SELECT id FROM conversations WHERE id=?", (candidate,)):
            candidate += 1
        return candidate

    async def create_conversation(self, title: Optional[str] = None) -> Conversation:
        convo_id = await self._unique_conversation_id()
        stamp = now_ms()
        title_source = "user" if title else "default"
        await self.execute(
            "INSERT INTO conversations(id, title, title_source, created_at, updated_at) VALUES (?,?,?,?,?)",
            (convo_id, title or DEFAULT_TITLE, title_source, stamp, stamp),
        )
        return Conversation(
            id=convo_id,
            title=title or DEFAULT_TITLE,
            title_source=title_source,
            created_at=stamp,
            updated_at=stamp,
        )

    async def get_conversation(self, conversation_id: int, include_messages: bool = True) -> Optional[Conversation]:
        row = await self.fetchone(
            "SELECT id, title, title_source, created_at, updated_at FROM conversations WHERE id=?",
            (conversation_id,),
        )
        if not row:
            return None
        messages = await self.list_messages(conversation_id) if include_messages else None
        return _row_to_conversation(row, messages)

    async def list_conversations(self) -> List[Conversation]:
        rows = await self.fetchall(
            "SELECT id, title, title_source, created_at, updated_at FROM conversations "
            "ORDER BY created_at DESC, id DESC"
        )
        return [_row_to_conversation(row) for row in rows]

    async def set_title(self, conversation_id: int, title: str, title_source: str) -> Optional[Conversation]:
        row = await self.fetchone("SELECT id FROM conversations WHERE id=?", (conversation_id,))
        if not row:
            return None
        await self.execute(
            "UPDATE conversations SET title=?, title_source=?, updated_at=? WHERE id=?",
            (title, title_source, now_ms(), conversation_id),
        )
        return await self.get_conversation(conversation_id, include_messages=False)

    async def touch_conversation(self, conversation_id: int) -> None:
        await self.execute("UPDATE conversations SET updated_at=? WHERE id=?", (now_ms(), conversation_id))

    async def delete_conversation(self, conversation_id: int) -> Optional[Conversation]:
        """Delete a conversation; returns the replacement when the last one was removed."""
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                "DELETE FROM events WHERE turn_id IN (SELECT DISTINCT turn_id FROM messages WHERE conversation_id=?)",
                (conversation_id,),
            )
            await db.execute("DELETE FROM messages WHERE conversation_id=?", (conversation_id,))
            await db.execute("UPDATE uploads SET conversation_id=NULL WHERE conversation_id=?", (conversation_id,))
            await db.execute("DELETE FROM conversations WHERE id=?", (conversation_id,))
            await db.commit()
        return await self.ensure_conversation()

    async def get_current_conversation_id(self) -> int:
        row = await self.fetchone("SELECT current_conversation_id FROM conversation_state WHERE id=1")
        if row and row["current_conversation_id"] is not None:
            return int(row["current_conversation_id"])
        await self.ensure_conversation()
        row = await self.fetchone("SELECT current_conversation_id FROM conversation_state WHERE id=1")
        return int(row["current_conversation_id"])

    async def set_current_conversation_id(self, conversation_id: int) -> None:
        await self.execute(
            "UPDATE conversation_state SET current_conversation_id=? WHERE id=1",
            (conversation_id,),
        )

    # Messages

    async def append_message(self, conversation_id: int, message: Message) -> Message:
        tool_calls_json = (
            json.dumps([call.model_dump() for call in message.tool_calls]) if message.tool_calls else None
        )
        attachments_json = (
            message.attachments.model_dump_json()
            if message.attachments is not None and not message.attachments.is_empty()
            else None
        )
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                f"INSERT INTO messages({MESSAGE_COLUMNS}) VALUES (?,?,?,?,?,?,?,?,?,?)",
                (
                    message.id,
                    conversation_id,
                    message.role,
                    message.content,
                    message.timestamp,
                    message.kind,
                    message.turn_id,
                    message.tool_call_id,
                    tool_calls_json,
                    attachments_json,
                ),
            )
            await db.execute("UPDATE conversations SET updated_at=? WHERE id=?", (now_ms(), conversation_id))
            await db.commit()
        return message

    async def list_messages(
        self, conversation_id: int, include_status: bool = True, limit: Optional[int] = None
    ) -> List[Message]:
        query = f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE conversation_id=?"
        if not include_status:
            query += " AND kind != 'status'"
        query += " ORDER BY seq ASC"
        params: Tuple[Any, ...] = (conversation_id,)
        if limit is not None:
            query += " LIMIT ?"
            params = (conversation_id, limit)
        rows = await self.fetchall(query, params)
        return [_row_to_message(row) for row in rows]

    async def remove_messages(self, conversation_id: int, message_ids: Iterable[str]) -> List[str]:
        """Delete the given messages from one conversation; returns the ids actually removed."""
        ids = list(message_ids)
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        rows = await self.fetchall(
            f"SELECT id FROM messages WHERE conversation_id=? AND id IN ({placeholders})",
            (conversation_id, *ids),
        )
        found = [row["id"] for row in rows]
        if found:
            await self.execute(
                f"DELETE FROM messages WHERE conversation_id=? AND id IN ({placeholders})",
                (conversation_id, *ids),
            )
        return found

    # Uploads

    async def add_upload(
        self,
        conversation_id: Optional[int],
        filename: str,
        original_name: str,
        mime: str,
        size_bytes: int,
        storage_path: str,
    ) -> int:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                "INSERT INTO uploads(conversation_id, filename, original_name, mime, size_bytes, storage_path, created_at) "
                "VALUES (?,?,?,?,?,?,?)",
                (conversation_id, filename, original_name, mime, size_bytes, storage_path, utc_now()),
            )
            await db.commit()
            return cursor.lastrowid

    async def get_upload(self, upload_id: int) -> Optional[dict]:
        row = await self.fetchone(
            "SELECT id, conversation_id, filename, original_name, mime, size_bytes, storage_path, created_at "
            "FROM uploads WHERE id=?",
            (upload_id,),
        )
        return dict(row) if row else None

    async def assign_upload(self, upload_id: int, conversation_id: int) -> None:
        await self.execute("UPDATE uploads SET conversation_id=? WHERE id=?", (conversation_id, upload_id))

    # Events and settings snapshots

    async def next_event_seq(self, turn_id: str) -> int:
        row = await self.fetchone("SELECT MAX(seq) as max_seq FROM events WHERE turn_id=?", (turn_id,))
        max_seq = row["max_seq"] if row and row["max_seq"] is not None else 0
        return int(max_seq) + 1

    async def add_event(self, turn_id: str, event_type: str, payload: dict) -> dict:
        seq = await self.next_event_seq(turn_id)
        created_at = utc_now()
        await self.execute(
            "INSERT INTO events(turn_id, seq, event_type, payload_json, created_at) VALUES (?,?,?,?,?)",
            (turn_id, seq, event_type, json.dumps(payload), created_at),
        )
        return {"turn_id": turn_id, "seq": seq, "event_type": event_type, "payload": payload, "created_at": created_at}

    async def list_events(self, turn_id: str, after_seq: int = 0) -> List[dict]:
        rows = await self.fetchall(
            "SELECT seq, event_type, payload_json, created_at FROM events WHERE turn_id=? AND seq>? ORDER BY seq ASC",
            (turn_id, after_seq),
        )
        return [
            {
                "turn_id": turn_id,
                "seq": row["seq"],
                "event_type": row["event_type"],
                "payload": json.loads(row["payload_json"] or "{}"),
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    async def save_config(self, payload: Dict[str, Any]) -> None:
        await self.execute(
            "INSERT INTO configs(created_at, payload_json) VALUES (?,?)", (utc_now(), json.dumps(payload))
        )
