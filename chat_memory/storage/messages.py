from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional, Set

from ..types import ChatMessage, from_epoch, to_epoch
from .utils import _sqlite_connection, message_from_row

# Fixed per-row cost added to the variable-width text columns when estimating a chat's footprint.
_SQLITE_ROW_OVERHEAD_BYTES = 96

_MESSAGE_COLUMNS = (
    "chat_id",
    "message_id",
    "user_id",
    "username",
    "first_name",
    "last_name",
    "is_bot",
    "message_ts",
    "text",
    "caption",
    "reply_to_message_id",
    "has_media",
    "is_voice",
    "is_forward",
    "forwarded_from_user_id",
    "forwarded_from_chat_id",
    "forwarded_from_message_id",
    "forwarded_at",
)


_UPSERT_SQL = "INSERT INTO chat_messages ({columns}) VALUES ({placeholders}) ON CONFLICT(chat_id, message_id) DO UPDATE SET {updates}".format(
    columns=", ".join(_MESSAGE_COLUMNS),
    placeholders=", ".join("?" for _ in _MESSAGE_COLUMNS),
    updates=", ".join(
        f"{column} = excluded.{column}" for column in _MESSAGE_COLUMNS if column not in {"chat_id", "message_id"}
    ),
)


def _message_params(message: ChatMessage) -> tuple:
    return (
        int(message.chat_id),
        int(message.message_id),
        int(message.user_id),
        message.username,
        message.first_name,
        message.last_name,
        int(message.is_bot),
        to_epoch(message.timestamp),
        message.text,
        message.caption,
        int(message.reply_to_message_id),
        int(message.has_media),
        int(message.is_voice),
        int(message.is_forward),
        int(message.forwarded_from_user_id),
        int(message.forwarded_from_chat_id),
        int(message.forwarded_from_message_id),
        to_epoch(message.forwarded_at) if message.forwarded_at is not None else None,
    )


class SqliteMessagesMixin:
    async def upsert_message(self, message: ChatMessage) -> None:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute(_UPSERT_SQL, _message_params(message))
            await db.commit()

    async def upsert_messages(self, messages: Iterable[ChatMessage]) -> None:
        params = [_message_params(message) for message in messages]
        if not params:
            return
        async with _sqlite_connection(self.db_path) as db:
            await db.executemany(_UPSERT_SQL, params)
            await db.commit()

    async def get_message(self, chat_id: int, message_id: int) -> Optional[ChatMessage]:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                "SELECT * FROM chat_messages WHERE chat_id = ? AND message_id = ?",
                (int(chat_id), int(message_id)),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return message_from_row(row)

    async def get_recent_messages(self, chat_id: int, limit: int) -> List[ChatMessage]:
        if limit <= 0:
            return []
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                """
                SELECT *
                FROM chat_messages
                WHERE chat_id = ?
                ORDER BY message_ts DESC, message_id DESC
                LIMIT ?
                """,
                (int(chat_id), int(limit)),
            ) as cursor:
                rows = await cursor.fetchall()
        return [message_from_row(row) for row in reversed(rows)]

    async def get_messages_since(
        self,
        chat_id: int,
        since: datetime,
        *,
        user_id: int = 0,
        limit: int = 0,
    ) -> List[ChatMessage]:
        sql = "SELECT * FROM chat_messages WHERE chat_id = ? AND message_ts >= ?"
        params: list = [int(chat_id), to_epoch(since)]
        if user_id:
            sql += " AND user_id = ?"
            params.append(int(user_id))
        if limit > 0:
            sql += " ORDER BY message_ts DESC, message_id DESC LIMIT ?"
            params.append(int(limit))
        else:
            sql += " ORDER BY message_ts ASC, message_id ASC"

        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(sql, params) as cursor:
                rows = await cursor.fetchall()
        if limit > 0:
            rows = list(reversed(rows))
        return [message_from_row(row) for row in rows]

    async def delete_chat_messages(self, chat_id: int) -> int:
        async with _sqlite_connection(self.db_path) as db:
            cursor = await db.execute("DELETE FROM chat_messages WHERE chat_id = ?", (int(chat_id),))
            await db.commit()
            return max(0, int(cursor.rowcount or 0))

    async def list_chat_ids(self) -> Set[int]:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute("SELECT DISTINCT chat_id FROM chat_messages") as cursor:
                rows = await cursor.fetchall()
        return {int(row[0]) for row in rows}

    async def count_messages(self, chat_id: int | None = None) -> int:
        async with _sqlite_connection(self.db_path) as db:
            if chat_id is None:
                query = db.execute("SELECT COUNT(*) FROM chat_messages")
            else:
                query = db.execute("SELECT COUNT(*) FROM chat_messages WHERE chat_id = ?", (int(chat_id),))
            async with query as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def get_chat_storage_size(self, chat_id: int) -> int:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                f"""
                SELECT COALESCE(SUM(
                    LENGTH(CAST(text AS BLOB))
                    + LENGTH(CAST(caption AS BLOB))
                    + LENGTH(CAST(username AS BLOB))
                    + LENGTH(CAST(first_name AS BLOB))
                    + LENGTH(CAST(last_name AS BLOB))
                    + {_SQLITE_ROW_OVERHEAD_BYTES}
                ), 0)
                FROM chat_messages
                WHERE chat_id = ?
                """,
                (int(chat_id),),
            ) as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def get_oldest_message_timestamp(self, chat_id: int) -> Optional[datetime]:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                "SELECT MIN(message_ts) FROM chat_messages WHERE chat_id = ?",
                (int(chat_id),),
            ) as cursor:
                row = await cursor.fetchone()
        if not row or row[0] is None:
            return None
        return from_epoch(row[0])

    async def delete_messages_before(self, chat_id: int, threshold: datetime) -> int:
        async with _sqlite_connection(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM chat_messages WHERE chat_id = ? AND message_ts < ?",
                (int(chat_id), to_epoch(threshold)),
            )
            await db.commit()
            return max(0, int(cursor.rowcount or 0))
