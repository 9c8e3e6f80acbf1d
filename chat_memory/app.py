from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import timedelta
from typing import List

from .config import Settings
from .jobs.backfill import EmbeddingBackfillWorker
from .jobs.retention import RetentionManager
from .memory.facade import StorageFacade
from .services.embeddings import build_embedding_provider
from .storage.factory import build_storage_backend

logger = logging.getLogger("chat_memory")


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("pymongo").setLevel(logging.WARNING)


def build_facade(settings: Settings) -> StorageFacade:
    backend = build_storage_backend(settings)
    embedder = None
    if settings.long_term_memory_enabled or settings.backfill_enabled:
        embedder = build_embedding_provider(settings)
    return StorageFacade.from_settings(settings, backend, embedder)


def _start_jobs(settings: Settings, facade: StorageFacade) -> List[asyncio.Task[None]]:
    tasks: List[asyncio.Task[None]] = []
    embedder = facade.messages.embedder
    if settings.retention_enabled:
        retention = RetentionManager(
            facade.messages,
            size_limit_bytes=settings.retention_size_limit_bytes,
            chunk_duration=timedelta(hours=settings.retention_chunk_duration_hours),
            check_interval=settings.retention_check_interval_minutes * 60.0,
        )
        tasks.append(asyncio.create_task(retention.run_forever(), name="retention"))
    if settings.backfill_enabled and embedder is not None:
        backfill = EmbeddingBackfillWorker(
            facade.messages,
            embedder,
            batch_size=settings.backfill_batch_size,
            batch_delay=settings.backfill_batch_delay_seconds,
        )
        tasks.append(
            asyncio.create_task(
                backfill.run_forever(settings.backfill_interval_minutes * 60.0),
                name="embedding-backfill",
            )
        )
    return tasks


async def _run_maintenance(settings: Settings, facade: StorageFacade | None = None) -> None:
    facade = facade or build_facade(settings)
    embedder = facade.messages.embedder
    tasks: List[asyncio.Task[None]] = []
    try:
        await facade.init()
        status = await facade.status()
        if not status["ok"]:
            raise RuntimeError(f"Storage backend {status['backend']} is unreachable: {status['error']}")
        logger.info(
            "Storage ready backend=%s messages=%s vectors=%s",
            status["backend"],
            status["total_messages"],
            status["supports_vectors"],
        )

        tasks = _start_jobs(settings, facade)
        if tasks:
            await asyncio.gather(*tasks)
        else:
            logger.warning("Neither RETENTION_ENABLED nor BACKFILL_ENABLED is set; nothing to run.")
    finally:
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if embedder is not None:
            with contextlib.suppress(Exception):
                await embedder.close()
        await facade.close()


def main() -> None:
    configure_logging()
    settings = Settings.from_env()
    settings.validate()
    try:
        asyncio.run(_run_maintenance(settings))
    except KeyboardInterrupt:
        logger.info("Shutdown requested, exiting.")
