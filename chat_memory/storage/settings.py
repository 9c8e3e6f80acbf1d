from __future__ import annotations

from typing import Any, Optional

from ..types import ChatSettingsRecord, SettingsField, settings_record_from_mapping
from .utils import _sqlite_connection

_SETTINGS_COLUMNS = tuple(item.value for item in SettingsField)


def _to_sqlite_value(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    return value


class SqliteSettingsMixin:
    async def get_chat_settings(self, chat_id: int) -> Optional[ChatSettingsRecord]:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                "SELECT * FROM chat_settings WHERE chat_id = ?",
                (int(chat_id),),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return settings_record_from_mapping(chat_id, {key: row[key] for key in row.keys()})

    async def upsert_chat_settings(self, record: ChatSettingsRecord, *, only_missing: bool = False) -> None:
        columns = ", ".join(("chat_id", *_SETTINGS_COLUMNS))
        placeholders = ", ".join("?" for _ in range(len(_SETTINGS_COLUMNS) + 1))
        if only_missing:
            updates = [f"{col} = COALESCE(chat_settings.{col}, excluded.{col})" for col in _SETTINGS_COLUMNS]
        else:
            updates = [f"{col} = COALESCE(excluded.{col}, chat_settings.{col})" for col in _SETTINGS_COLUMNS]
        updates.append("updated_at = CURRENT_TIMESTAMP")
        params = [int(record.chat_id), *(_to_sqlite_value(record.get(item)) for item in SettingsField)]

        async with _sqlite_connection(self.db_path) as db:
            await db.execute(
                f"""
                INSERT INTO chat_settings ({columns})
                VALUES ({placeholders})
                ON CONFLICT(chat_id) DO UPDATE SET {", ".join(updates)}
                """,
                params,
            )
            await db.commit()

    async def set_chat_setting(self, chat_id: int, item: SettingsField, value: Any) -> None:
        column = SettingsField(item).value
        async with _sqlite_connection(self.db_path) as db:
            await db.execute(
                f"""
                INSERT INTO chat_settings (chat_id, {column})
                VALUES (?, ?)
                ON CONFLICT(chat_id) DO UPDATE SET
                    {column} = excluded.{column},
                    updated_at = CURRENT_TIMESTAMP
                """,
                (int(chat_id), _to_sqlite_value(value)),
            )
            await db.commit()
