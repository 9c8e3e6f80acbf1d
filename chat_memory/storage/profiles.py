from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from ..types import UserProfile, to_epoch
from .utils import _sqlite_connection, profile_from_row


def _epoch_or_none(value: datetime | None) -> float | None:
    return to_epoch(value) if value is not None else None


class SqliteProfilesMixin:
    async def get_user_profile(self, chat_id: int, user_id: int) -> Optional[UserProfile]:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                "SELECT * FROM user_profiles WHERE chat_id = ? AND user_id = ?",
                (int(chat_id), int(user_id)),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return profile_from_row(row)

    async def upsert_user_profile(self, profile: UserProfile) -> None:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO user_profiles (
                    chat_id, user_id, username, alias, gender, real_name, bio, auto_bio,
                    last_auto_bio_update, last_seen, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(chat_id, user_id) DO UPDATE SET
                    username = excluded.username,
                    alias = excluded.alias,
                    gender = excluded.gender,
                    real_name = excluded.real_name,
                    bio = excluded.bio,
                    auto_bio = excluded.auto_bio,
                    last_auto_bio_update = excluded.last_auto_bio_update,
                    last_seen = excluded.last_seen,
                    updated_at = excluded.updated_at
                """,
                (
                    int(profile.chat_id),
                    int(profile.user_id),
                    profile.username,
                    profile.alias,
                    profile.gender,
                    profile.real_name,
                    profile.bio,
                    profile.auto_bio,
                    _epoch_or_none(profile.last_auto_bio_update),
                    _epoch_or_none(profile.last_seen),
                    _epoch_or_none(profile.created_at),
                    _epoch_or_none(profile.updated_at),
                ),
            )
            await db.commit()

    async def list_user_profiles(self, chat_id: int) -> List[UserProfile]:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                """
                SELECT *
                FROM user_profiles
                WHERE chat_id = ?
                ORDER BY COALESCE(last_seen, 0) DESC, user_id ASC
                """,
                (int(chat_id),),
            ) as cursor:
                rows = await cursor.fetchall()
        return [profile_from_row(row) for row in rows]

    async def reset_auto_bio_timestamps(self, chat_id: int) -> int:
        async with _sqlite_connection(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE user_profiles
                SET last_auto_bio_update = NULL
                WHERE chat_id = ? AND last_auto_bio_update IS NOT NULL
                """,
                (int(chat_id),),
            )
            await db.commit()
            return max(0, int(cursor.rowcount or 0))
