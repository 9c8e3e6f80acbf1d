from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Tuple

from ..errors import ValidationError
from ..storage.base import StorageBackend
from ..types import (
    ChatSettings,
    ChatSettingsDefaults,
    ChatSettingsRecord,
    SettingsField,
    SettingsPatch,
)
from .calls import CallPolicy


logger = logging.getLogger("chat_memory")


def resolve_chat_settings(
    record: ChatSettingsRecord | None,
    defaults: ChatSettingsDefaults,
    *,
    chat_id: int | None = None,
) -> Tuple[ChatSettings, Tuple[SettingsField, ...]]:
    """Overlay stored values on the default table.

    Returns the fully populated settings and the fields that came from defaults.
    """
    if record is None:
        if chat_id is None:
            raise ValueError("chat_id is required when no stored record exists")
        record = ChatSettingsRecord(chat_id=int(chat_id))
    resolved: Dict[str, Any] = {"chat_id": int(record.chat_id)}
    filled = []
    for item in SettingsField:
        value = record.get(item)
        if value is None:
            value = defaults.value_for(item)
            filled.append(item)
        resolved[item.value] = value
    return ChatSettings(**resolved), tuple(filled)


def default_record(chat_id: int, defaults: ChatSettingsDefaults) -> ChatSettingsRecord:
    record = ChatSettingsRecord(chat_id=int(chat_id))
    for item in SettingsField:
        record.set(item, defaults.value_for(item))
    return record


_TRUE_WORDS = {"1", "true", "yes", "y", "on"}
_FALSE_WORDS = {"0", "false", "no", "n", "off"}


def _as_bool(item: SettingsField, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    raise ValidationError(f"{item.value} must be a boolean")


def _as_int(item: SettingsField, value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{item.value} must be an integer")
    try:
        return int(str(value).strip())
    except ValueError as exc:
        raise ValidationError(f"{item.value} must be an integer") from exc


def _validate_style(value: Any) -> str:
    style = str(value or "").strip()
    if not style:
        raise ValidationError("conversation_style cannot be empty")
    return style


def _validate_temperature(value: Any) -> float:
    if isinstance(value, bool):
        raise ValidationError("temperature must be a number")
    try:
        temperature = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError("temperature must be a number") from exc
    if not 0.0 <= temperature <= 2.0:
        raise ValidationError("temperature must be between 0.0 and 2.0")
    return temperature


def _validate_model(value: Any) -> str:
    # Empty means "use the generation provider's default model".
    return str(value or "").strip()


def _validate_safety(value: Any) -> str:
    threshold = str(value or "").strip().upper()
    if not threshold:
        raise ValidationError("safety_threshold cannot be empty")
    return threshold


def _validate_limit_count(value: Any) -> int:
    count = _as_int(SettingsField.DIRECT_REPLY_LIMIT_COUNT, value)
    if count < 0:
        raise ValidationError("direct_reply_limit_count must be >= 0")
    return count


def _validate_limit_duration(value: Any) -> int:
    minutes = _as_int(SettingsField.DIRECT_REPLY_LIMIT_DURATION_MINUTES, value)
    if minutes < 1:
        raise ValidationError("direct_reply_limit_duration_minutes must be >= 1")
    return minutes


_VALIDATORS: Dict[SettingsField, Callable[[Any], Any]] = {
    SettingsField.CONVERSATION_STYLE: _validate_style,
    SettingsField.TEMPERATURE: _validate_temperature,
    SettingsField.MODEL: _validate_model,
    SettingsField.SAFETY_THRESHOLD: _validate_safety,
    SettingsField.VOICE_TRANSCRIPTION_ENABLED: lambda v: _as_bool(SettingsField.VOICE_TRANSCRIPTION_ENABLED, v),
    SettingsField.DIRECT_REPLY_LIMIT_ENABLED: lambda v: _as_bool(SettingsField.DIRECT_REPLY_LIMIT_ENABLED, v),
    SettingsField.DIRECT_REPLY_LIMIT_COUNT: _validate_limit_count,
    SettingsField.DIRECT_REPLY_LIMIT_DURATION_MINUTES: _validate_limit_duration,
    SettingsField.SRACH_ANALYSIS_ENABLED: lambda v: _as_bool(SettingsField.SRACH_ANALYSIS_ENABLED, v),
}


def validate_patch(patch: SettingsPatch) -> SettingsPatch:
    try:
        item = SettingsField(patch.field)
    except ValueError as exc:
        raise ValidationError(f"unknown chat setting: {patch.field!r}") from exc
    if patch.value is None:
        raise ValidationError(f"{item.value} cannot be null")
    return SettingsPatch(field=item, value=_VALIDATORS[item](patch.value))


class SettingsStore:
    """Per-chat settings with a default overlay.

    The first ``get`` for a chat writes the full default record; later reads that
    find missing fields write those defaults back without touching set fields.
    Both writes complete before ``get`` returns.
    """

    def __init__(
        self,
        backend: StorageBackend,
        defaults: ChatSettingsDefaults,
        *,
        calls: CallPolicy | None = None,
    ) -> None:
        self.backend = backend
        self.defaults = defaults
        self.calls = calls or CallPolicy()

    async def _read(self, chat_id: int) -> ChatSettingsRecord | None:
        return await self.calls.storage(self.backend.get_chat_settings(chat_id), "get_settings", chat_id=chat_id)

    async def _materialize(self, record: ChatSettingsRecord) -> None:
        await self.calls.storage(
            self.backend.upsert_chat_settings(record, only_missing=True),
            "materialize_settings",
            chat_id=record.chat_id,
        )

    async def get(self, chat_id: int) -> ChatSettings:
        record = await self._read(chat_id)
        if record is None:
            await self._materialize(default_record(chat_id, self.defaults))
            logger.info("[settings] materialized defaults chat=%s", chat_id)
            record = await self._read(chat_id)

        resolved, filled = resolve_chat_settings(record, self.defaults, chat_id=chat_id)
        if record is not None and filled:
            patch = ChatSettingsRecord(chat_id=int(chat_id))
            for item in filled:
                patch.set(item, self.defaults.value_for(item))
            await self._materialize(patch)
            logger.info(
                "[settings] filled defaults chat=%s fields=%s",
                chat_id,
                ",".join(item.value for item in filled),
            )
        return resolved

    async def apply(self, chat_id: int, patch: SettingsPatch) -> SettingsPatch:
        checked = validate_patch(patch)
        await self.calls.storage(
            self.backend.set_chat_setting(chat_id, checked.field, checked.value),
            f"patch_settings:{checked.field.value}",
            chat_id=chat_id,
        )
        return checked

    async def patch(self, chat_id: int, item: SettingsField | str, value: Any) -> SettingsPatch:
        return await self.apply(chat_id, SettingsPatch(field=item, value=value))

    async def put(self, record: ChatSettingsRecord) -> None:
        """Whole-record upsert; fields left as ``None`` keep their stored value."""
        checked = ChatSettingsRecord(chat_id=int(record.chat_id))
        for item, value in record.present_values().items():
            checked.set(item, validate_patch(SettingsPatch(field=item, value=value)).value)
        await self.calls.storage(
            self.backend.upsert_chat_settings(checked),
            "put_settings",
            chat_id=record.chat_id,
        )
