from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from chat_memory.errors import ValidationError  # noqa: E402
from chat_memory.memory.chat_settings import (  # noqa: E402
    SettingsStore,
    resolve_chat_settings,
    validate_patch,
)
from chat_memory.storage.file_store import FileStorage  # noqa: E402
from chat_memory.storage.sqlite_store import SqliteStorage  # noqa: E402
from chat_memory.types import (  # noqa: E402
    ChatSettingsDefaults,
    ChatSettingsRecord,
    SettingsField,
    SettingsPatch,
)


DEFAULTS = ChatSettingsDefaults(
    conversation_style="friendly",
    temperature=0.9,
    model="gemini-flash",
    safety_threshold="BLOCK_ONLY_HIGH",
    direct_reply_limit_count=4,
)


def test_resolver_overlays_stored_values_on_defaults() -> None:
    record = ChatSettingsRecord(chat_id=5, temperature=0.1, srach_analysis_enabled=False)
    resolved, filled = resolve_chat_settings(record, DEFAULTS)

    assert resolved.chat_id == 5
    assert resolved.temperature == 0.1
    assert resolved.srach_analysis_enabled is False
    assert resolved.conversation_style == "friendly"
    assert resolved.direct_reply_limit_count == 4
    assert SettingsField.TEMPERATURE not in filled
    assert SettingsField.MODEL in filled
    assert len(filled) == len(SettingsField) - 2


def test_resolver_without_record_is_the_default_table() -> None:
    resolved, filled = resolve_chat_settings(None, DEFAULTS, chat_id=9)
    assert set(filled) == set(SettingsField)
    for item in SettingsField:
        assert getattr(resolved, item.value) == DEFAULTS.value_for(item)

    with pytest.raises(ValueError):
        resolve_chat_settings(None, DEFAULTS)


def test_resolver_keeps_falsy_stored_values() -> None:
    record = ChatSettingsRecord(
        chat_id=1,
        temperature=0.0,
        model="",
        direct_reply_limit_count=0,
        voice_transcription_enabled=False,
    )
    resolved, filled = resolve_chat_settings(record, DEFAULTS)
    assert resolved.temperature == 0.0
    assert resolved.model == ""
    assert resolved.direct_reply_limit_count == 0
    assert resolved.voice_transcription_enabled is False
    assert SettingsField.MODEL not in filled


@pytest.mark.parametrize(
    ("item", "raw", "expected"),
    [
        (SettingsField.TEMPERATURE, "1.5", 1.5),
        (SettingsField.TEMPERATURE, 0, 0.0),
        (SettingsField.SAFETY_THRESHOLD, " block_low_and_above ", "BLOCK_LOW_AND_ABOVE"),
        (SettingsField.VOICE_TRANSCRIPTION_ENABLED, "off", False),
        (SettingsField.SRACH_ANALYSIS_ENABLED, True, True),
        (SettingsField.DIRECT_REPLY_LIMIT_COUNT, "0", 0),
        (SettingsField.DIRECT_REPLY_LIMIT_DURATION_MINUTES, 15, 15),
        (SettingsField.MODEL, "  ", ""),
        ("conversation_style", "sarcastic", "sarcastic"),
    ],
)
def test_validate_patch_normalises_values(item, raw, expected) -> None:
    checked = validate_patch(SettingsPatch(field=item, value=raw))
    assert checked.field == SettingsField(item)
    assert checked.value == expected


@pytest.mark.parametrize(
    ("item", "raw"),
    [
        (SettingsField.TEMPERATURE, 2.5),
        (SettingsField.TEMPERATURE, -0.1),
        (SettingsField.TEMPERATURE, "warm"),
        (SettingsField.TEMPERATURE, True),
        (SettingsField.DIRECT_REPLY_LIMIT_COUNT, -1),
        (SettingsField.DIRECT_REPLY_LIMIT_COUNT, "many"),
        (SettingsField.DIRECT_REPLY_LIMIT_DURATION_MINUTES, 0),
        (SettingsField.CONVERSATION_STYLE, ""),
        (SettingsField.SAFETY_THRESHOLD, None),
        (SettingsField.VOICE_TRANSCRIPTION_ENABLED, "maybe"),
        ("unknown_field", 1),
    ],
)
def test_validate_patch_rejects_bad_values(item, raw) -> None:
    with pytest.raises(ValidationError):
        validate_patch(SettingsPatch(field=item, value=raw))


def test_first_read_materializes_the_full_default_record(tmp_path: Path) -> None:
    async def scenario() -> None:
        backend = SqliteStorage(tmp_path / "memory.db")
        await backend.init()
        store = SettingsStore(backend, DEFAULTS)

        assert await backend.get_chat_settings(42) is None
        resolved = await store.get(42)
        assert resolved.conversation_style == "friendly"
        assert resolved.temperature == pytest.approx(0.9)

        stored = await backend.get_chat_settings(42)
        assert stored is not None
        assert stored.missing_fields() == ()
        assert stored.safety_threshold == "BLOCK_ONLY_HIGH"

    asyncio.run(scenario())


def test_read_fills_only_missing_fields(tmp_path: Path) -> None:
    async def scenario() -> None:
        backend = FileStorage(tmp_path / "chats")
        await backend.init()
        await backend.set_chat_setting(7, SettingsField.TEMPERATURE, 1.7)
        store = SettingsStore(backend, DEFAULTS)

        resolved = await store.get(7)
        assert resolved.temperature == pytest.approx(1.7)
        assert resolved.model == "gemini-flash"

        stored = await backend.get_chat_settings(7)
        assert stored.temperature == pytest.approx(1.7)
        assert stored.missing_fields() == ()

    asyncio.run(scenario())


def test_patch_as_first_write_then_read(tmp_path: Path) -> None:
    async def scenario() -> None:
        backend = SqliteStorage(tmp_path / "memory.db")
        await backend.init()
        store = SettingsStore(backend, DEFAULTS)

        checked = await store.patch(3, "direct_reply_limit_enabled", "no")
        assert checked.value is False

        resolved = await store.get(3)
        assert resolved.direct_reply_limit_enabled is False
        assert resolved.direct_reply_limit_count == 4

        with pytest.raises(ValidationError):
            await store.patch(3, SettingsField.TEMPERATURE, 9)
        assert (await store.get(3)).temperature == pytest.approx(0.9)

    asyncio.run(scenario())


def test_put_validates_every_present_field_and_keeps_the_rest(tmp_path: Path) -> None:
    async def scenario() -> None:
        backend = SqliteStorage(tmp_path / "memory.db")
        await backend.init()
        store = SettingsStore(backend, DEFAULTS)
        await store.get(11)

        await store.put(ChatSettingsRecord(chat_id=11, model="pro", safety_threshold="block_none"))
        resolved = await store.get(11)
        assert resolved.model == "pro"
        assert resolved.safety_threshold == "BLOCK_NONE"
        assert resolved.conversation_style == "friendly"

        with pytest.raises(ValidationError):
            await store.put(ChatSettingsRecord(chat_id=11, model="flash", temperature=3.0))
        assert (await store.get(11)).model == "pro"

    asyncio.run(scenario())


def test_resolved_settings_round_trip_to_a_complete_record() -> None:
    resolved, _ = resolve_chat_settings(None, DEFAULTS, chat_id=1)
    record = resolved.to_record()
    assert record.chat_id == 1
    assert record.missing_fields() == ()


@pytest.mark.parametrize("kind", ["sqlite", "file"])
def test_concurrent_first_reads_and_patch_converge(kind: str, tmp_path: Path) -> None:
    async def scenario() -> None:
        backend = SqliteStorage(tmp_path / "memory.db") if kind == "sqlite" else FileStorage(tmp_path / "chats")
        await backend.init()
        store = SettingsStore(backend, DEFAULTS)

        results = await asyncio.gather(
            store.get(11),
            store.patch(11, SettingsField.TEMPERATURE, 1.5),
            store.get(11),
            store.get(11),
        )
        assert results[1].value == pytest.approx(1.5)

        stored = await backend.get_chat_settings(11)
        assert stored is not None
        assert stored.temperature == pytest.approx(1.5)
        assert stored.missing_fields() == ()
        assert stored.model == "gemini-flash"
        assert (await store.get(11)).temperature == pytest.approx(1.5)

        readers = await asyncio.gather(*(store.get(12) for _ in range(5)))
        assert len({reader.model for reader in readers}) == 1
        assert (await backend.get_chat_settings(12)).missing_fields() == ()

    asyncio.run(scenario())
