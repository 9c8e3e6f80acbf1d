from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Iterable, List, Set

from ..errors import ProviderError, StorageIOError, ValidationError
from ..memory.messages import MessageStore
from ..services.embeddings import EmbeddingProvider
from ..types import ChatMessage


logger = logging.getLogger("chat_memory")


@dataclass(slots=True)
class BackfillReport:
    chat_id: int
    embedded: int = 0
    failed: int = 0
    batches: int = 0
    skipped_ids: Set[int] = field(default_factory=set)
    unsupported: bool = False
    stopped: bool = False
    duration_seconds: float = 0.0


class EmbeddingBackfillWorker:
    """Embeds stored messages that have no vector yet, oldest first, in bounded batches.

    Messages whose embedding or update fails go into the run's skip set, so one bad
    message cannot stall the job. A pass that finds no candidates ends the run for
    that chat. Cancelling mid-batch leaves already-written vectors in place and the
    rest unvectored for the next run.
    """

    def __init__(
        self,
        messages: MessageStore,
        embedder: EmbeddingProvider,
        *,
        batch_size: int = 200,
        batch_delay: float = 5.0,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.messages = messages
        self.embedder = embedder
        self.batch_size = int(batch_size)
        self.batch_delay = max(0.0, float(batch_delay))
        self.stop_event = stop_event

    def _stopping(self) -> bool:
        return self.stop_event is not None and self.stop_event.is_set()

    async def run_for_chat(self, chat_id: int, skip_ids: Iterable[int] = ()) -> BackfillReport:
        report = BackfillReport(chat_id=int(chat_id), skipped_ids=set(skip_ids))
        if not self.messages.supports_vectors:
            report.unsupported = True
            logger.info("[backfill] chat=%s skipped: backend has no vector support", chat_id)
            return report

        started = time.monotonic()
        while True:
            if self._stopping():
                report.stopped = True
                break
            batch = await self.messages.find_unembedded(chat_id, self.batch_size, report.skipped_ids)
            if not batch:
                break
            report.batches += 1
            before_embedded, before_failed = report.embedded, report.failed
            for message in batch:
                await self._embed_one(message, report)
            logger.info(
                "[backfill] chat=%s batch=%s size=%s embedded=%s failed=%s",
                chat_id,
                report.batches,
                len(batch),
                report.embedded - before_embedded,
                report.failed - before_failed,
            )
            if self.batch_delay > 0:
                await asyncio.sleep(self.batch_delay)

        report.duration_seconds = time.monotonic() - started
        logger.info(
            "[backfill] chat=%s done embedded=%s failed=%s batches=%s duration=%.1fs",
            chat_id,
            report.embedded,
            report.failed,
            report.batches,
            report.duration_seconds,
        )
        return report

    async def _embed_one(self, message: ChatMessage, report: BackfillReport) -> None:
        try:
            vector = await self.messages.calls.embed(self.embedder, message.embeddable_text)
        except (ProviderError, ValidationError) as exc:
            report.skipped_ids.add(message.message_id)
            report.failed += 1
            logger.warning("[backfill] chat=%s message=%s embed failed: %s", message.chat_id, message.message_id, exc)
            return

        try:
            updated = await self.messages.attach_embedding(message.chat_id, message.message_id, vector)
        except StorageIOError as exc:
            report.skipped_ids.add(message.message_id)
            report.failed += 1
            logger.warning("[backfill] chat=%s message=%s store failed: %s", message.chat_id, message.message_id, exc)
            return

        if not updated:
            report.skipped_ids.add(message.message_id)
            logger.warning(
                "[backfill] chat=%s message=%s vanished before its vector was stored",
                message.chat_id,
                message.message_id,
            )
            return
        report.embedded += 1

    async def run_all(self) -> List[BackfillReport]:
        reports: List[BackfillReport] = []
        for chat_id in sorted(await self.messages.list_chat_ids()):
            if self._stopping():
                break
            try:
                reports.append(await self.run_for_chat(chat_id))
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[backfill] chat=%s run failed", chat_id)
        return reports

    async def run_forever(self, interval_seconds: float) -> None:
        while not self._stopping():
            try:
                await self.run_all()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Embedding backfill worker error")
            await asyncio.sleep(interval_seconds)
