from __future__ import annotations

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Set

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from chat_memory.errors import ProviderError  # noqa: E402
from chat_memory.jobs.backfill import EmbeddingBackfillWorker  # noqa: E402
from chat_memory.memory.messages import MessageStore  # noqa: E402
from chat_memory.storage.file_store import FileStorage  # noqa: E402
from chat_memory.storage.sqlite_store import SqliteStorage  # noqa: E402
from chat_memory.types import ChatMessage  # noqa: E402


T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class _FakeEmbedder:
    def __init__(self, failing: Set[str] | None = None) -> None:
        self.failing = failing or set()
        self.calls: List[str] = []

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if text in self.failing:
            raise ProviderError(f"cannot embed {text!r}")
        return [float(len(text)), 1.0]


async def _seed(store: MessageStore, chat_id: int, count: int) -> None:
    for message_id in range(1, count + 1):
        await store.add(
            ChatMessage(
                chat_id=chat_id,
                message_id=message_id,
                timestamp=T0 + timedelta(minutes=message_id),
                user_id=100,
                text=f"chat {chat_id} message {message_id}",
            )
        )


def test_backfill_converges_and_embeds_each_message_once(tmp_path: Path) -> None:
    async def scenario() -> None:
        backend = FileStorage(tmp_path / "chats")
        await backend.init()
        store = MessageStore(backend)
        await _seed(store, 1, 5)
        await store.add(ChatMessage(chat_id=1, message_id=6, timestamp=T0, has_media=True))

        embedder = _FakeEmbedder()
        worker = EmbeddingBackfillWorker(store, embedder, batch_size=2, batch_delay=0)
        report = await worker.run_for_chat(1)

        assert report.embedded == 5
        assert report.failed == 0
        assert report.batches == 3
        assert sorted(embedder.calls) == sorted({f"chat 1 message {i}" for i in range(1, 6)})
        assert await store.find_unembedded(1, 100) == []
        assert (await store.get_message(1, 6)).embedding is None

        again = await worker.run_for_chat(1)
        assert again.embedded == 0
        assert again.batches == 0
        assert len(embedder.calls) == 5

    asyncio.run(scenario())


def test_backfill_skips_failing_messages_without_stalling(tmp_path: Path) -> None:
    async def scenario() -> None:
        backend = FileStorage(tmp_path / "chats")
        await backend.init()
        store = MessageStore(backend)
        await _seed(store, 1, 4)

        embedder = _FakeEmbedder(failing={"chat 1 message 2"})
        worker = EmbeddingBackfillWorker(store, embedder, batch_size=1, batch_delay=0)
        report = await worker.run_for_chat(1)

        assert report.embedded == 3
        assert report.failed == 1
        assert report.skipped_ids == {2}
        assert embedder.calls.count("chat 1 message 2") == 1
        pending = await store.find_unembedded(1, 100)
        assert [message.message_id for message in pending] == [2]

        embedder.failing.clear()
        retry = await worker.run_for_chat(1)
        assert retry.embedded == 1
        assert await store.find_unembedded(1, 100) == []

    asyncio.run(scenario())


def test_backfill_reports_unsupported_backends(tmp_path: Path) -> None:
    async def scenario() -> None:
        backend = SqliteStorage(tmp_path / "memory.db")
        await backend.init()
        store = MessageStore(backend)
        await _seed(store, 1, 2)
        embedder = _FakeEmbedder()

        report = await EmbeddingBackfillWorker(store, embedder, batch_delay=0).run_for_chat(1)
        assert report.unsupported is True
        assert report.embedded == 0
        assert embedder.calls == []

    asyncio.run(scenario())


def test_backfill_honours_stop_event_and_covers_all_chats(tmp_path: Path) -> None:
    async def scenario() -> None:
        backend = FileStorage(tmp_path / "chats")
        await backend.init()
        store = MessageStore(backend)
        await _seed(store, 1, 2)
        await _seed(store, 2, 3)

        stop = asyncio.Event()
        stop.set()
        embedder = _FakeEmbedder()
        stopped = EmbeddingBackfillWorker(store, embedder, batch_delay=0, stop_event=stop)
        assert await stopped.run_all() == []
        report = await stopped.run_for_chat(1)
        assert report.stopped is True
        assert embedder.calls == []

        reports = await EmbeddingBackfillWorker(store, embedder, batch_delay=0).run_all()
        assert [(item.chat_id, item.embedded) for item in reports] == [(1, 2), (2, 3)]

    asyncio.run(scenario())


def test_backfill_rejects_empty_batches() -> None:
    with pytest.raises(ValueError):
        EmbeddingBackfillWorker(MessageStore(FileStorage(Path("unused"))), _FakeEmbedder(), batch_size=0)


class _GatedEmbedder(_FakeEmbedder):
    """Blocks on the third call until the test cancels the worker."""

    def __init__(self) -> None:
        super().__init__()
        self.reached = asyncio.Event()

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if len(self.calls) == 3:
            self.reached.set()
            await asyncio.Event().wait()
        return [float(len(text)), 1.0]


def test_cancelled_batch_keeps_written_vectors_and_leaves_the_rest(tmp_path: Path) -> None:
    async def scenario() -> None:
        backend = FileStorage(tmp_path / "chats")
        await backend.init()
        store = MessageStore(backend)
        await _seed(store, 1, 5)

        embedder = _GatedEmbedder()
        worker = EmbeddingBackfillWorker(store, embedder, batch_size=5, batch_delay=0)
        task = asyncio.create_task(worker.run_for_chat(1))
        await asyncio.wait_for(embedder.reached.wait(), timeout=5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert (await store.get_message(1, 1)).embedding is not None
        assert (await store.get_message(1, 2)).embedding is not None
        pending = await store.find_unembedded(1, 100)
        assert [message.message_id for message in pending] == [3, 4, 5]

        restarted = FileStorage(tmp_path / "chats")
        await restarted.init()
        assert [message.message_id for message in await restarted.find_messages_without_embedding(1, 100)] == [3, 4, 5]

    asyncio.run(scenario())
