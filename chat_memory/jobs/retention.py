from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from ..memory.messages import MessageStore


logger = logging.getLogger("chat_memory")


@dataclass(slots=True)
class CleanupReport:
    chat_id: int
    size_bytes: int
    limit_bytes: int
    oldest_timestamp: Optional[datetime] = None
    threshold: Optional[datetime] = None
    deleted: int = 0

    @property
    def over_limit(self) -> bool:
        return self.size_bytes > self.limit_bytes


class RetentionManager:
    """Trims the oldest time chunk of any chat whose footprint exceeds the limit.

    Over the limit, every message older than ``oldest + chunk_duration`` is deleted
    in one pass. A chat at or under the limit is never touched.
    """

    def __init__(
        self,
        messages: MessageStore,
        *,
        size_limit_bytes: int,
        chunk_duration: timedelta,
        check_interval: float = 3600.0,
    ) -> None:
        if size_limit_bytes < 0:
            raise ValueError("size_limit_bytes must be >= 0")
        if chunk_duration <= timedelta(0):
            raise ValueError("chunk_duration must be positive")
        self.messages = messages
        self.size_limit_bytes = int(size_limit_bytes)
        self.chunk_duration = chunk_duration
        self.check_interval = float(check_interval)

    async def check_chat(self, chat_id: int) -> CleanupReport:
        state = await self.messages.measure(chat_id)
        report = CleanupReport(
            chat_id=int(chat_id),
            size_bytes=state.size_bytes,
            limit_bytes=self.size_limit_bytes,
            oldest_timestamp=state.oldest_timestamp,
        )
        if not report.over_limit or state.oldest_timestamp is None:
            return report

        report.threshold = state.oldest_timestamp + self.chunk_duration
        report.deleted = await self.messages.delete_older_than(chat_id, report.threshold)
        logger.info(
            "[retention] chat=%s size=%s limit=%s deleted=%s before=%s",
            chat_id,
            report.size_bytes,
            report.limit_bytes,
            report.deleted,
            report.threshold.isoformat(),
        )
        return report

    async def run_once(self) -> List[CleanupReport]:
        reports: List[CleanupReport] = []
        for chat_id in sorted(await self.messages.list_chat_ids()):
            try:
                reports.append(await self.check_chat(chat_id))
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[retention] chat=%s check failed", chat_id)
        return reports

    async def run_forever(self) -> None:
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Retention worker error")
            await asyncio.sleep(self.check_interval)
