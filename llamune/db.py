from datetime import datetime, timezone
from typing import Any, List, Optional, Protocol, Tuple

import aiosqlite

from .schemas import Message, Session


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class MessageLog(Protocol):
    """The part of the store the chat core is allowed to touch."""

    async def append_message(self, session_id: int, message: Message) -> int:
        ...

    async def list_messages(self, session_id: int) -> List[Message]:
        ...

    async def delete_message(self, message_id: int) -> bool:
        ...

    async def set_message_adopted(self, message_id: int, adopted: bool) -> bool:
        ...


def _row_to_message(row: aiosqlite.Row) -> Message:
    return Message(
        id=row["id"],
        role=row["role"],
        content=row["content"] or "",
        model=row["model"],
        thinking=row["thinking"],
        is_adopted=bool(row["is_adopted"]),
        created_at=row["created_at"],
    )


def _row_to_session(row: aiosqlite.Row) -> Session:
    return Session(
        id=row["id"],
        title=row["title"],
        model=row["model"],
        system_prompt=row["system_prompt"],
        workspace_root=row["workspace_root"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS sessions(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    title TEXT,
                    model TEXT NOT NULL,
                    system_prompt TEXT,
                    workspace_root TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS messages(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id INTEGER NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    model TEXT,
                    thinking TEXT,
                    is_adopted INTEGER DEFAULT 1,
                    created_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id, id);
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

            await ensure_column("sessions", "workspace_root", "TEXT")
            await ensure_column("messages", "thinking", "TEXT")
            await ensure_column("messages", "is_adopted", "INTEGER DEFAULT 1")
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> int:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor.rowcount

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

    async def create_session(
        self,
        model: str,
        title: Optional[str] = None,
        system_prompt: Optional[str] = None,
        workspace_root: Optional[str] = None,
    ) -> Session:
        created_at = utc_now()
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                "INSERT INTO sessions(title, model, system_prompt, workspace_root, created_at, updated_at) VALUES (?,?,?,?,?,?)",
                (title, model, system_prompt, workspace_root, created_at, created_at),
            )
            await db.commit()
            session_id = cursor.lastrowid
        return Session(
            id=session_id,
            title=title,
            model=model,
            system_prompt=system_prompt,
            workspace_root=workspace_root,
            created_at=created_at,
            updated_at=created_at,
        )

    async def get_session(self, session_id: int) -> Optional[Session]:
        row = await self.fetchone(
            "SELECT id, title, model, system_prompt, workspace_root, created_at, updated_at FROM sessions WHERE id=?",
            (session_id,),
        )
        if not row:
            return None
        return _row_to_session(row)

    async def list_sessions(self, limit: int = 200) -> List[dict]:
        rows = await self.fetchall(
            "SELECT id, title, model, workspace_root, created_at, updated_at, "
            "(SELECT COUNT(*) FROM messages WHERE session_id=sessions.id) AS message_count, "
            "(SELECT content FROM messages WHERE session_id=sessions.id AND role='user' ORDER BY id ASC LIMIT 1) AS preview "
            "FROM sessions ORDER BY created_at DESC, id DESC LIMIT ?",
            (limit,),
        )
        return [
            {
                "id": r["id"],
                "title": r["title"],
                "model": r["model"],
                "workspace_root": r["workspace_root"],
                "created_at": r["created_at"],
                "updated_at": r["updated_at"],
                "message_count": r["message_count"],
                "preview": r["preview"],
            }
            for r in rows
        ]

    async def update_session(
        self,
        session_id: int,
        title: Optional[str] = None,
        model: Optional[str] = None,
        system_prompt: Optional[str] = None,
        workspace_root: Optional[str] = None,
    ) -> Optional[Session]:
        current = await self.get_session(session_id)
        if not current:
            return None
        await self.execute(
            "UPDATE sessions SET title=?, model=?, system_prompt=?, workspace_root=?, updated_at=? WHERE id=?",
            (
                title if title is not None else current.title,
                model if model is not None else current.model,
                system_prompt if system_prompt is not None else current.system_prompt,
                workspace_root if workspace_root is not None else current.workspace_root,
                utc_now(),
                session_id,
            ),
        )
        return await self.get_session(session_id)

    async def delete_session(self, session_id: int) -> bool:
        async with aiosqlite.connect(self.path) as db:
            await db.execute("DELETE FROM messages WHERE session_id=?", (session_id,))
            cursor = await db.execute("DELETE FROM sessions WHERE id=?", (session_id,))
            await db.commit()
            return cursor.rowcount > 0

    async def append_message(self, session_id: int, message: Message) -> int:
        created_at = utc_now()
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                "INSERT INTO messages(session_id, role, content, model, thinking, is_adopted, created_at) VALUES (?,?,?,?,?,?,?)",
                (
                    session_id,
                    message.role,
                    message.content,
                    message.model,
                    message.thinking,
                    1 if message.is_adopted else 0,
                    created_at,
                ),
            )
            message_id = cursor.lastrowid
            await db.execute("UPDATE sessions SET updated_at=? WHERE id=?", (created_at, session_id))
            if message.role == "user":
                content = message.content
                title = content[:30] + "..." if len(content) > 30 else content
                await db.execute(
                    "UPDATE sessions SET title=? WHERE id=? AND (title IS NULL OR title='')",
                    (title, session_id),
                )
            await db.commit()
        return message_id

    async def list_messages(self, session_id: int) -> List[Message]:
        rows = await self.fetchall(
            "SELECT id, role, content, model, thinking, is_adopted, created_at FROM messages WHERE session_id=? ORDER BY id ASC",
            (session_id,),
        )
        return [_row_to_message(r) for r in rows]

    async def get_message(self, message_id: int) -> Optional[Message]:
        row = await self.fetchone(
            "SELECT id, role, content, model, thinking, is_adopted, created_at FROM messages WHERE id=?",
            (message_id,),
        )
        return _row_to_message(row) if row else None

    async def delete_message(self, message_id: int) -> bool:
        return await self.execute("DELETE FROM messages WHERE id=?", (message_id,)) > 0

    async def set_message_adopted(self, message_id: int, adopted: bool) -> bool:
        return await self.execute("UPDATE messages SET is_adopted=? WHERE id=?", (1 if adopted else 0, message_id)) > 0

    async def _recent_assistant_ids(self, session_id: int, limit: int) -> List[int]:
        rows = await self.fetchall(
            "SELECT id FROM messages WHERE session_id=? AND role='assistant' ORDER BY id DESC LIMIT ?",
            (session_id, limit),
        )
        return [r["id"] for r in rows]

    async def delete_most_recent_assistant(self, session_id: int) -> bool:
        ids = await self._recent_assistant_ids(session_id, 1)
        if not ids:
            return False
        return await self.delete_message(ids[0])

    async def delete_second_most_recent_assistant(self, session_id: int) -> bool:
        ids = await self._recent_assistant_ids(session_id, 2)
        if len(ids) < 2:
            return False
        return await self.delete_message(ids[1])
