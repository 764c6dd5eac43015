import json
from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple

import aiosqlite

from .schemas import CodeSnippet, Conversation, UserProfile


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class Database:
    def __init__(self, path: str):
        self.path = path

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
                    is_pinned INTEGER DEFAULT 0,
                    messages_json TEXT,
                    summaries_json TEXT
                );
                CREATE TABLE IF NOT EXISTS memory_state(
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    facts_json TEXT,
                    profile_json TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS code_snippets(
                    id TEXT PRIMARY KEY,
                    created_at TEXT,
                    description TEXT,
                    language TEXT,
                    code TEXT
                );
                CREATE TABLE IF NOT EXISTS events(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    conversation_id TEXT,
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
            await db.execute(
                "INSERT OR IGNORE INTO memory_state(id, facts_json, profile_json, updated_at) VALUES (1, '[]', '{}', ?)",
                (utc_now(),),
            )
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

    async def save_conversation(self, conversation: Conversation) -> None:
        messages = [m.model_dump(mode="json", exclude_none=True) for m in conversation.messages]
        summaries = [s.model_dump(mode="json") for s in conversation.summaries]
        await self.execute(
            "INSERT INTO conversations(id, created_at, updated_at, title, is_pinned, messages_json, summaries_json) "
            "VALUES (?,?,?,?,?,?,?) "
            "ON CONFLICT(id) DO UPDATE SET updated_at=excluded.updated_at, title=excluded.title, "
            "is_pinned=excluded.is_pinned, messages_json=excluded.messages_json, summaries_json=excluded.summaries_json",
            (
                conversation.id,
                conversation.created_at,
                utc_now(),
                conversation.title,
                1 if conversation.is_pinned else 0,
                json.dumps(messages),
                json.dumps(summaries),
            ),
        )

    async def load_conversations(self) -> List[Conversation]:
        rows = await self.fetchall(
            "SELECT id, created_at, title, is_pinned, messages_json, summaries_json FROM conversations "
            "ORDER BY created_at ASC"
        )
        return [
            Conversation(
                id=r["id"],
                created_at=r["created_at"],
                title=r["title"],
                is_pinned=bool(r["is_pinned"]),
                messages=json.loads(r["messages_json"] or "[]"),
                summaries=json.loads(r["summaries_json"] or "[]"),
            )
            for r in rows
        ]

    async def delete_conversation(self, conversation_id: str) -> None:
        await self.execute("DELETE FROM events WHERE conversation_id=?", (conversation_id,))
        await self.execute("DELETE FROM conversations WHERE id=?", (conversation_id,))

    async def get_memory_state(self) -> Tuple[List[str], UserProfile]:
        row = await self.fetchone("SELECT facts_json, profile_json FROM memory_state WHERE id=1")
        if not row:
            return [], UserProfile()
        facts = [str(f) for f in json.loads(row["facts_json"] or "[]")]
        return facts, UserProfile(**json.loads(row["profile_json"] or "{}"))

    async def save_memory_state(self, facts: List[str], profile: UserProfile) -> None:
        await self.execute(
            "UPDATE memory_state SET facts_json=?, profile_json=?, updated_at=? WHERE id=1",
            (json.dumps(facts), profile.model_dump_json(exclude_none=True), utc_now()),
        )

    async def add_code_snippet(self, snippet: CodeSnippet) -> None:
        await self.execute(
            "INSERT OR REPLACE INTO code_snippets(id, created_at, description, language, code) VALUES (?,?,?,?,?)",
            (snippet.id, utc_now(), snippet.description, snippet.language, snippet.code),
        )

    async def list_code_snippets(self) -> List[CodeSnippet]:
        rows = await self.fetchall(
            "SELECT id, description, language, code FROM code_snippets ORDER BY created_at ASC"
        )
        return [
            CodeSnippet(id=r["id"], description=r["description"], language=r["language"], code=r["code"])
            for r in rows
        ]

    async def next_event_seq(self, conversation_id: str) -> int:
        row = await self.fetchone(
            "SELECT MAX(seq) as max_seq FROM events WHERE conversation_id=?", (conversation_id,)
        )
        max_seq = row["max_seq"] if row and row["max_seq"] is not None else 0
        return int(max_seq) + 1

    async def add_event(self, conversation_id: str, event_type: str, payload: dict) -> dict:
        seq = await self.next_event_seq(conversation_id)
        created_at = utc_now()
        await self.execute(
            "INSERT INTO events(conversation_id, seq, event_type, payload_json, created_at) VALUES (?,?,?,?,?)",
            (conversation_id, seq, event_type, json.dumps(payload), created_at),
        )
        return {
            "conversation_id": conversation_id,
            "seq": seq,
            "event_type": event_type,
            "payload": payload,
            "created_at": created_at,
        }

    async def list_events(self, conversation_id: str, after_seq: int = 0) -> List[dict]:
        rows = await self.fetchall(
            "SELECT seq, event_type, payload_json, created_at FROM events "
            "WHERE conversation_id=? AND seq>? ORDER BY seq ASC",
            (conversation_id, after_seq),
        )
        return [
            {
                "conversation_id": conversation_id,
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
