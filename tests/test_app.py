from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import List

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from chat_memory.app import _run_maintenance  # noqa: E402
from chat_memory.errors import StorageIOError  # noqa: E402
from chat_memory.memory.facade import StorageFacade  # noqa: E402
from chat_memory.storage.file_store import FileStorage  # noqa: E402


class _ClosingEmbedder:
    def __init__(self) -> None:
        self.closed = False

    async def embed(self, text: str) -> List[float]:
        return [1.0]

    async def close(self) -> None:
        self.closed = True


class _TrackedBackend(FileStorage):
    def __init__(self, *args, fail_init: bool = False, fail_ping: bool = False, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.fail_init = fail_init
        self.fail_ping = fail_ping
        self.closed = False

    async def init(self) -> None:
        if self.fail_init:
            raise ConnectionRefusedError("backend offline")
        await super().init()

    async def ping(self) -> None:
        if self.fail_ping:
            raise ConnectionResetError("backend went away")
        await super().ping()

    async def close(self) -> None:
        self.closed = True
        await super().close()


def _settings(**overrides) -> SimpleNamespace:
    values = dict(retention_enabled=False, backfill_enabled=False)
    values.update(overrides)
    return SimpleNamespace(**values)


def test_failed_init_still_closes_backend_and_embedder(tmp_path: Path) -> None:
    backend = _TrackedBackend(tmp_path / "chats", fail_init=True)
    embedder = _ClosingEmbedder()
    facade = StorageFacade(backend, embedder=embedder, long_term_memory_enabled=True)

    with pytest.raises(StorageIOError):
        asyncio.run(_run_maintenance(_settings(), facade))

    assert backend.closed is True
    assert embedder.closed is True


def test_unreachable_backend_still_closes_resources(tmp_path: Path) -> None:
    backend = _TrackedBackend(tmp_path / "chats", fail_ping=True)
    embedder = _ClosingEmbedder()
    facade = StorageFacade(backend, embedder=embedder, long_term_memory_enabled=True)

    with pytest.raises(RuntimeError, match="unreachable"):
        asyncio.run(_run_maintenance(_settings(), facade))

    assert backend.closed is True
    assert embedder.closed is True


def test_nothing_enabled_returns_after_startup_checks(tmp_path: Path) -> None:
    backend = _TrackedBackend(tmp_path / "chats")
    facade = StorageFacade(backend)

    asyncio.run(_run_maintenance(_settings(), facade))

    assert backend.closed is True
