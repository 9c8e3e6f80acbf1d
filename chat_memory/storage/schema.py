from __future__ import annotations

import os
from pathlib import Path

import aiosqlite

from .utils import _sqlite_connection


class SqliteSchemaMixin:
    SCHEMA_VERSION = 2

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _allow_destructive_reset_on_mismatch() -> bool:
        raw = os.getenv("CHAT_MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH", "")
        return raw.strip().lower() in {"1", "true", "yes", "y", "on"}

    async def _has_user_tables(self, db: aiosqlite.Connection) -> bool:
        async with db.execute(
            """
            SELECT 1
            FROM sqlite_master
            WHERE type = 'table'
              AND name NOT LIKE 'sqlite_%'
            LIMIT 1
            """
        ) as cursor:
            row = await cursor.fetchone()
        return bool(row)

    async def init(self) -> None:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            async with db.execute("PRAGMA user_version") as cursor:
                row = await cursor.fetchone()
            version = int(row[0]) if row else 0
            has_tables = await self._has_user_tables(db)

            if version > self.SCHEMA_VERSION:
                if has_tables and self._allow_destructive_reset_on_mismatch():
                    await self._reset_schema(db)
                    await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
                    await db.commit()
                    return
                raise RuntimeError(
                    "SQLite schema version mismatch detected (database is newer than this build). "
                    f"Found user_version={version}, supported={self.SCHEMA_VERSION}. "
                    "Set CHAT_MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH=1 to allow destructive reset."
                )

            await self._create_schema(db)
            if has_tables:
                await self._migrate_schema(db, version)
            if version != self.SCHEMA_VERSION:
                await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
            await db.commit()

    async def _reset_schema(self, db: aiosqlite.Connection) -> None:
        for table in ("chat_messages", "user_profiles", "chat_settings"):
            await db.execute(f"DROP TABLE IF EXISTS {table}")
        await self._create_schema(db)

    async def _table_columns(self, db: aiosqlite.Connection, table_name: str) -> set[str]:
        async with db.execute(f"PRAGMA table_info({table_name})") as cursor:
            rows = await cursor.fetchall()
        return {str(row[1]) for row in rows}

    async def _add_column_if_missing(self, db: aiosqlite.Connection, table_name: str, column_sql: str) -> None:
        column_name = column_sql.split()[0].strip()
        if column_name in await self._table_columns(db, table_name):
            return
        await db.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_sql}")

    async def _migrate_schema(self, db: aiosqlite.Connection, from_version: int) -> None:
        # v2: forwarding provenance on messages.
        if from_version < 2:
            for column_sql in (
                "is_forward INTEGER NOT NULL DEFAULT 0",
                "forwarded_from_user_id INTEGER NOT NULL DEFAULT 0",
                "forwarded_from_chat_id INTEGER NOT NULL DEFAULT 0",
                "forwarded_from_message_id INTEGER NOT NULL DEFAULT 0",
                "forwarded_at REAL",
            ):
                await self._add_column_if_missing(db, "chat_messages", column_sql)

    async def _create_schema(self, db: aiosqlite.Connection) -> None:
        await db.executescript(
            """
            CREATE TABLE IF NOT EXISTS chat_messages (
                chat_id INTEGER NOT NULL,
                message_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL DEFAULT 0,
                username TEXT NOT NULL DEFAULT '',
                first_name TEXT NOT NULL DEFAULT '',
                last_name TEXT NOT NULL DEFAULT '',
                is_bot INTEGER NOT NULL DEFAULT 0,
                message_ts REAL NOT NULL,
                text TEXT NOT NULL DEFAULT '',
                caption TEXT NOT NULL DEFAULT '',
                reply_to_message_id INTEGER NOT NULL DEFAULT 0,
                has_media INTEGER NOT NULL DEFAULT 0,
                is_voice INTEGER NOT NULL DEFAULT 0,
                is_forward INTEGER NOT NULL DEFAULT 0,
                forwarded_from_user_id INTEGER NOT NULL DEFAULT 0,
                forwarded_from_chat_id INTEGER NOT NULL DEFAULT 0,
                forwarded_from_message_id INTEGER NOT NULL DEFAULT 0,
                forwarded_at REAL,
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (chat_id, message_id)
            );

            CREATE INDEX IF NOT EXISTS idx_chat_messages_chat_ts
            ON chat_messages(chat_id, message_ts DESC, message_id DESC);

            CREATE INDEX IF NOT EXISTS idx_chat_messages_chat_user_ts
            ON chat_messages(chat_id, user_id, message_ts);

            CREATE TABLE IF NOT EXISTS user_profiles (
                chat_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                username TEXT NOT NULL DEFAULT '',
                alias TEXT NOT NULL DEFAULT '',
                gender TEXT NOT NULL DEFAULT '',
                real_name TEXT NOT NULL DEFAULT '',
                bio TEXT NOT NULL DEFAULT '',
                auto_bio TEXT NOT NULL DEFAULT '',
                last_auto_bio_update REAL,
                last_seen REAL,
                created_at REAL,
                updated_at REAL,
                PRIMARY KEY (chat_id, user_id)
            );

            CREATE TABLE IF NOT EXISTS chat_settings (
                chat_id INTEGER PRIMARY KEY,
                conversation_style TEXT,
                temperature REAL,
                model TEXT,
                safety_threshold TEXT,
                voice_transcription_enabled INTEGER,
                direct_reply_limit_enabled INTEGER,
                direct_reply_limit_count INTEGER,
                direct_reply_limit_duration_minutes INTEGER,
                srach_analysis_enabled INTEGER,
                updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            );
            """
        )
