from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Iterable, List, Optional, Set

try:
    import asyncpg
except Exception:  # pragma: no cover - optional dependency at runtime
    asyncpg = None  # type: ignore[assignment]

from ..types import (
    ChatMessage,
    ChatSettingsRecord,
    SettingsField,
    UserProfile,
    ensure_utc,
    settings_record_from_mapping,
)
from .base import StorageBackend
from .utils import message_from_row, profile_from_row


logger = logging.getLogger("chat_memory")

_SETTINGS_COLUMNS = tuple(item.value for item in SettingsField)


def _affected_rows(status: str) -> int:
    # asyncpg returns the command tag, e.g. "DELETE 12" or "UPDATE 3".
    try:
        return int(str(status).rsplit(" ", 1)[-1])
    except ValueError:
        return 0


def _aware(value: datetime | None) -> datetime | None:
    return ensure_utc(value) if value is not None else None


_UPSERT_MESSAGE_SQL = """
    INSERT INTO chat_messages (
        chat_id, message_id, user_id, username, first_name, last_name, is_bot,
        message_ts, text, caption, reply_to_message_id, has_media, is_voice,
        is_forward, forwarded_from_user_id, forwarded_from_chat_id,
        forwarded_from_message_id, forwarded_at
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17, $18)
    ON CONFLICT(chat_id, message_id) DO UPDATE SET
        user_id = EXCLUDED.user_id,
        username = EXCLUDED.username,
        first_name = EXCLUDED.first_name,
        last_name = EXCLUDED.last_name,
        is_bot = EXCLUDED.is_bot,
        message_ts = EXCLUDED.message_ts,
        text = EXCLUDED.text,
        caption = EXCLUDED.caption,
        reply_to_message_id = EXCLUDED.reply_to_message_id,
        has_media = EXCLUDED.has_media,
        is_voice = EXCLUDED.is_voice,
        is_forward = EXCLUDED.is_forward,
        forwarded_from_user_id = EXCLUDED.forwarded_from_user_id,
        forwarded_from_chat_id = EXCLUDED.forwarded_from_chat_id,
        forwarded_from_message_id = EXCLUDED.forwarded_from_message_id,
        forwarded_at = EXCLUDED.forwarded_at
"""


def _message_args(message: ChatMessage) -> tuple:
    return (
        int(message.chat_id),
        int(message.message_id),
        int(message.user_id),
        message.username,
        message.first_name,
        message.last_name,
        bool(message.is_bot),
        ensure_utc(message.timestamp),
        message.text,
        message.caption,
        int(message.reply_to_message_id),
        bool(message.has_media),
        bool(message.is_voice),
        bool(message.is_forward),
        int(message.forwarded_from_user_id),
        int(message.forwarded_from_chat_id),
        int(message.forwarded_from_message_id),
        _aware(message.forwarded_at),
    )


class PostgresStorage(StorageBackend):
    """Postgres-backed store implementing the same contract as SqliteStorage."""

    SCHEMA_VERSION = 1
    backend_name = "postgres"
    supports_vectors = False

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 6) -> None:
        self.dsn = dsn.strip()
        if not self.dsn:
            raise ValueError("POSTGRES_DSN cannot be empty")
        self.min_size = min_size
        self.max_size = max_size
        self._pool: "asyncpg.Pool | None" = None
        self._init_lock = asyncio.Lock()
        self._initialized = False

    async def _ensure_pool(self) -> "asyncpg.Pool":
        if asyncpg is None:
            raise RuntimeError(
                "Postgres storage backend requires asyncpg. Install with: pip install asyncpg"
            )
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                dsn=self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=30.0,
            )
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
        self._initialized = False

    async def ping(self) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute("SELECT 1")

    async def init(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return
            pool = await self._ensure_pool()
            async with pool.acquire() as conn:
                async with conn.transaction():
                    version = await self._get_schema_version(conn)
                    if version > self.SCHEMA_VERSION:
                        raise RuntimeError(
                            f"Postgres schema version {version} is newer than supported {self.SCHEMA_VERSION}. "
                            "Upgrade chat-memory before starting."
                        )
                    await self._create_schema(conn)
                    if version != self.SCHEMA_VERSION:
                        await self._set_schema_version(conn, self.SCHEMA_VERSION)
            self._initialized = True
            logger.info("[storage.init] backend=postgres schema_version=%s", self.SCHEMA_VERSION)

    async def _get_schema_version(self, conn: "asyncpg.Connection") -> int:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS chat_memory_meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """
        )
        row = await conn.fetchrow("SELECT value FROM chat_memory_meta WHERE key = 'schema_version'")
        if row is None:
            return 0
        try:
            return int(str(row["value"]))
        except ValueError:
            return 0

    async def _set_schema_version(self, conn: "asyncpg.Connection", version: int) -> None:
        await conn.execute(
            """
            INSERT INTO chat_memory_meta (key, value, updated_at)
            VALUES ('schema_version', $1, NOW())
            ON CONFLICT(key) DO UPDATE SET
                value = EXCLUDED.value,
                updated_at = NOW()
            """,
            str(int(version)),
        )

    async def _create_schema(self, conn: "asyncpg.Connection") -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS chat_messages (
                chat_id BIGINT NOT NULL,
                message_id BIGINT NOT NULL,
                user_id BIGINT NOT NULL DEFAULT 0,
                username TEXT NOT NULL DEFAULT '',
                first_name TEXT NOT NULL DEFAULT '',
                last_name TEXT NOT NULL DEFAULT '',
                is_bot BOOLEAN NOT NULL DEFAULT FALSE,
                message_ts TIMESTAMPTZ NOT NULL,
                text TEXT NOT NULL DEFAULT '',
                caption TEXT NOT NULL DEFAULT '',
                reply_to_message_id BIGINT NOT NULL DEFAULT 0,
                has_media BOOLEAN NOT NULL DEFAULT FALSE,
                is_voice BOOLEAN NOT NULL DEFAULT FALSE,
                is_forward BOOLEAN NOT NULL DEFAULT FALSE,
                forwarded_from_user_id BIGINT NOT NULL DEFAULT 0,
                forwarded_from_chat_id BIGINT NOT NULL DEFAULT 0,
                forwarded_from_message_id BIGINT NOT NULL DEFAULT 0,
                forwarded_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                PRIMARY KEY (chat_id, message_id)
            );

            CREATE INDEX IF NOT EXISTS idx_chat_messages_chat_ts
            ON chat_messages(chat_id, message_ts DESC, message_id DESC);

            CREATE INDEX IF NOT EXISTS idx_chat_messages_chat_user_ts
            ON chat_messages(chat_id, user_id, message_ts);

            CREATE TABLE IF NOT EXISTS user_profiles (
                chat_id BIGINT NOT NULL,
                user_id BIGINT NOT NULL,
                username TEXT NOT NULL DEFAULT '',
                alias TEXT NOT NULL DEFAULT '',
                gender TEXT NOT NULL DEFAULT '',
                real_name TEXT NOT NULL DEFAULT '',
                bio TEXT NOT NULL DEFAULT '',
                auto_bio TEXT NOT NULL DEFAULT '',
                last_auto_bio_update TIMESTAMPTZ,
                last_seen TIMESTAMPTZ,
                created_at TIMESTAMPTZ,
                updated_at TIMESTAMPTZ,
                PRIMARY KEY (chat_id, user_id)
            );

            CREATE TABLE IF NOT EXISTS chat_settings (
                chat_id BIGINT PRIMARY KEY,
                conversation_style TEXT,
                temperature DOUBLE PRECISION,
                model TEXT,
                safety_threshold TEXT,
                voice_transcription_enabled BOOLEAN,
                direct_reply_limit_enabled BOOLEAN,
                direct_reply_limit_count INTEGER,
                direct_reply_limit_duration_minutes INTEGER,
                srach_analysis_enabled BOOLEAN,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );
            """
        )

    # -- messages ------------------------------------------------------------

    async def upsert_message(self, message: ChatMessage) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute(_UPSERT_MESSAGE_SQL, *_message_args(message))

    async def upsert_messages(self, messages: Iterable[ChatMessage]) -> None:
        args = [_message_args(message) for message in messages]
        if not args:
            return
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.executemany(_UPSERT_MESSAGE_SQL, args)

    async def get_message(self, chat_id: int, message_id: int) -> Optional[ChatMessage]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM chat_messages WHERE chat_id = $1 AND message_id = $2",
                int(chat_id),
                int(message_id),
            )
        if row is None:
            return None
        return message_from_row(row)

    async def get_recent_messages(self, chat_id: int, limit: int) -> List[ChatMessage]:
        if limit <= 0:
            return []
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT *
                FROM chat_messages
                WHERE chat_id = $1
                ORDER BY message_ts DESC, message_id DESC
                LIMIT $2
                """,
                int(chat_id),
                int(limit),
            )
        return [message_from_row(row) for row in reversed(rows)]

    async def get_messages_since(
        self,
        chat_id: int,
        since: datetime,
        *,
        user_id: int = 0,
        limit: int = 0,
    ) -> List[ChatMessage]:
        sql = "SELECT * FROM chat_messages WHERE chat_id = $1 AND message_ts >= $2"
        params: list[Any] = [int(chat_id), ensure_utc(since)]
        if user_id:
            params.append(int(user_id))
            sql += f" AND user_id = ${len(params)}"
        if limit > 0:
            params.append(int(limit))
            sql += f" ORDER BY message_ts DESC, message_id DESC LIMIT ${len(params)}"
        else:
            sql += " ORDER BY message_ts ASC, message_id ASC"

        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(sql, *params)
        if limit > 0:
            rows = list(reversed(rows))
        return [message_from_row(row) for row in rows]

    async def delete_chat_messages(self, chat_id: int) -> int:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            status = await conn.execute("DELETE FROM chat_messages WHERE chat_id = $1", int(chat_id))
        return _affected_rows(status)

    async def list_chat_ids(self) -> Set[int]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch("SELECT DISTINCT chat_id FROM chat_messages")
        return {int(row["chat_id"]) for row in rows}

    async def count_messages(self, chat_id: int | None = None) -> int:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            if chat_id is None:
                value = await conn.fetchval("SELECT COUNT(*) FROM chat_messages")
            else:
                value = await conn.fetchval("SELECT COUNT(*) FROM chat_messages WHERE chat_id = $1", int(chat_id))
        return int(value or 0)

    # -- retention -------------------------------------------------------------

    async def get_chat_storage_size(self, chat_id: int) -> int:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            value = await conn.fetchval(
                "SELECT COALESCE(SUM(pg_column_size(m.*)), 0)::BIGINT FROM chat_messages m WHERE m.chat_id = $1",
                int(chat_id),
            )
        return int(value or 0)

    async def get_oldest_message_timestamp(self, chat_id: int) -> Optional[datetime]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            value = await conn.fetchval("SELECT MIN(message_ts) FROM chat_messages WHERE chat_id = $1", int(chat_id))
        return ensure_utc(value) if value is not None else None

    async def delete_messages_before(self, chat_id: int, threshold: datetime) -> int:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            status = await conn.execute(
                "DELETE FROM chat_messages WHERE chat_id = $1 AND message_ts < $2",
                int(chat_id),
                ensure_utc(threshold),
            )
        return _affected_rows(status)

    # -- profiles --------------------------------------------------------------

    async def get_user_profile(self, chat_id: int, user_id: int) -> Optional[UserProfile]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM user_profiles WHERE chat_id = $1 AND user_id = $2",
                int(chat_id),
                int(user_id),
            )
        if row is None:
            return None
        return profile_from_row(row)

    async def upsert_user_profile(self, profile: UserProfile) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO user_profiles (
                    chat_id, user_id, username, alias, gender, real_name, bio, auto_bio,
                    last_auto_bio_update, last_seen, created_at, updated_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                ON CONFLICT(chat_id, user_id) DO UPDATE SET
                    username = EXCLUDED.username,
                    alias = EXCLUDED.alias,
                    gender = EXCLUDED.gender,
                    real_name = EXCLUDED.real_name,
                    bio = EXCLUDED.bio,
                    auto_bio = EXCLUDED.auto_bio,
                    last_auto_bio_update = EXCLUDED.last_auto_bio_update,
                    last_seen = EXCLUDED.last_seen,
                    updated_at = EXCLUDED.updated_at
                """,
                int(profile.chat_id),
                int(profile.user_id),
                profile.username,
                profile.alias,
                profile.gender,
                profile.real_name,
                profile.bio,
                profile.auto_bio,
                _aware(profile.last_auto_bio_update),
                _aware(profile.last_seen),
                _aware(profile.created_at),
                _aware(profile.updated_at),
            )

    async def list_user_profiles(self, chat_id: int) -> List[UserProfile]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT *
                FROM user_profiles
                WHERE chat_id = $1
                ORDER BY last_seen DESC NULLS LAST, user_id ASC
                """,
                int(chat_id),
            )
        return [profile_from_row(row) for row in rows]

    async def reset_auto_bio_timestamps(self, chat_id: int) -> int:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            status = await conn.execute(
                """
                UPDATE user_profiles
                SET last_auto_bio_update = NULL
                WHERE chat_id = $1 AND last_auto_bio_update IS NOT NULL
                """,
                int(chat_id),
            )
        return _affected_rows(status)

    # -- chat settings ---------------------------------------------------------

    async def get_chat_settings(self, chat_id: int) -> Optional[ChatSettingsRecord]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM chat_settings WHERE chat_id = $1", int(chat_id))
        if row is None:
            return None
        return settings_record_from_mapping(chat_id, dict(row))

    async def upsert_chat_settings(self, record: ChatSettingsRecord, *, only_missing: bool = False) -> None:
        columns = ", ".join(("chat_id", *_SETTINGS_COLUMNS))
        placeholders = ", ".join(f"${index}" for index in range(1, len(_SETTINGS_COLUMNS) + 2))
        if only_missing:
            updates = [f"{col} = COALESCE(chat_settings.{col}, EXCLUDED.{col})" for col in _SETTINGS_COLUMNS]
        else:
            updates = [f"{col} = COALESCE(EXCLUDED.{col}, chat_settings.{col})" for col in _SETTINGS_COLUMNS]
        updates.append("updated_at = NOW()")

        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                f"""
                INSERT INTO chat_settings ({columns})
                VALUES ({placeholders})
                ON CONFLICT(chat_id) DO UPDATE SET {", ".join(updates)}
                """,
                int(record.chat_id),
                *(record.get(item) for item in SettingsField),
            )

    async def set_chat_setting(self, chat_id: int, item: SettingsField, value: Any) -> None:
        column = SettingsField(item).value
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                f"""
                INSERT INTO chat_settings (chat_id, {column})
                VALUES ($1, $2)
                ON CONFLICT(chat_id) DO UPDATE SET
                    {column} = EXCLUDED.{column},
                    updated_at = NOW()
                """,
                int(chat_id),
                value,
            )
