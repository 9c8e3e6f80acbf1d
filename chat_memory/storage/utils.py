from __future__ import annotations

import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, List, Sequence

import aiosqlite
import numpy as np

from ..types import ChatMessage, UserProfile, parse_optional_datetime


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _sqlite_busy_timeout_ms() -> int:
    raw = os.getenv("CHAT_MEMORY_SQLITE_BUSY_TIMEOUT_MS", "5000").strip()
    try:
        timeout = int(raw)
    except ValueError:
        timeout = 5000
    return int(_clamp(timeout, 0, 60000))


@asynccontextmanager
async def _sqlite_connection(db_path: str | Path) -> AsyncIterator[aiosqlite.Connection]:
    async with aiosqlite.connect(db_path) as db:
        timeout_ms = _sqlite_busy_timeout_ms()
        if timeout_ms > 0:
            await db.execute(f"PRAGMA busy_timeout={timeout_ms}")
        db.row_factory = aiosqlite.Row
        yield db


def message_from_row(row: Any) -> ChatMessage:
    """Build a message from a ``chat_messages`` row (SQLite ``Row`` or asyncpg ``Record``)."""
    return ChatMessage(
        chat_id=int(row["chat_id"]),
        message_id=int(row["message_id"]),
        timestamp=parse_optional_datetime(row["message_ts"]),
        user_id=int(row["user_id"] or 0),
        username=str(row["username"] or ""),
        first_name=str(row["first_name"] or ""),
        last_name=str(row["last_name"] or ""),
        is_bot=bool(row["is_bot"]),
        text=str(row["text"] or ""),
        caption=str(row["caption"] or ""),
        reply_to_message_id=int(row["reply_to_message_id"] or 0),
        has_media=bool(row["has_media"]),
        is_voice=bool(row["is_voice"]),
        is_forward=bool(row["is_forward"]),
        forwarded_from_user_id=int(row["forwarded_from_user_id"] or 0),
        forwarded_from_chat_id=int(row["forwarded_from_chat_id"] or 0),
        forwarded_from_message_id=int(row["forwarded_from_message_id"] or 0),
        forwarded_at=parse_optional_datetime(row["forwarded_at"]),
    )


def profile_from_row(row: Any) -> UserProfile:
    return UserProfile(
        chat_id=int(row["chat_id"]),
        user_id=int(row["user_id"]),
        username=str(row["username"] or ""),
        alias=str(row["alias"] or ""),
        gender=str(row["gender"] or ""),
        real_name=str(row["real_name"] or ""),
        bio=str(row["bio"] or ""),
        auto_bio=str(row["auto_bio"] or ""),
        last_auto_bio_update=parse_optional_datetime(row["last_auto_bio_update"]),
        last_seen=parse_optional_datetime(row["last_seen"]),
        created_at=parse_optional_datetime(row["created_at"]),
        updated_at=parse_optional_datetime(row["updated_at"]),
    )


def sort_chronologically(messages: Iterable[ChatMessage]) -> List[ChatMessage]:
    return sorted(messages, key=lambda item: (item.timestamp, item.message_id))


def cosine_scores(query: Sequence[float], vectors: Sequence[Sequence[float]]) -> List[float]:
    """Cosine similarity of ``query`` against each row of ``vectors``.

    Rows whose length differs from the query or whose norm is zero score 0.0.
    """
    if not vectors:
        return []
    query_vec = np.asarray(query, dtype=np.float64)
    query_norm = float(np.linalg.norm(query_vec))
    scores: List[float] = []
    for vector in vectors:
        candidate = np.asarray(vector, dtype=np.float64)
        if candidate.shape != query_vec.shape:
            scores.append(0.0)
            continue
        denom = query_norm * float(np.linalg.norm(candidate))
        if denom == 0.0:
            scores.append(0.0)
            continue
        scores.append(float(np.dot(query_vec, candidate) / denom))
    return scores
