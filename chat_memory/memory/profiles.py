from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import List, Optional

from ..storage.base import StorageBackend
from ..types import UserProfile, ensure_utc, utc_now
from .calls import CallPolicy


logger = logging.getLogger("chat_memory")


def _next_updated_at(previous: datetime | None, now: datetime) -> datetime:
    if previous is None:
        return now
    previous = ensure_utc(previous)
    if now > previous:
        return now
    return previous + timedelta(microseconds=1)


class ProfileStore:
    def __init__(self, backend: StorageBackend, *, calls: CallPolicy | None = None) -> None:
        self.backend = backend
        self.calls = calls or CallPolicy()

    async def get(self, chat_id: int, user_id: int) -> Optional[UserProfile]:
        return await self.calls.storage(self.backend.get_user_profile(chat_id, user_id), "get_profile", chat_id=chat_id)

    async def upsert(self, profile: UserProfile) -> UserProfile:
        """Store ``profile`` as the complete desired state and return what was written.

        ``created_at`` is kept from the existing row; ``updated_at`` always moves forward.
        """
        existing = await self.get(profile.chat_id, profile.user_id)
        now = utc_now()
        stored = replace(
            profile,
            created_at=(existing.created_at if existing and existing.created_at else profile.created_at or now),
            updated_at=_next_updated_at(existing.updated_at if existing else None, now),
        )
        await self.calls.storage(self.backend.upsert_user_profile(stored), "upsert_profile", chat_id=profile.chat_id)
        return stored

    async def record_activity(
        self,
        chat_id: int,
        user_id: int,
        *,
        username: str = "",
        seen_at: datetime | None = None,
    ) -> UserProfile:
        """Create the profile on first sight of a user, otherwise bump ``last_seen``."""
        current = await self.get(chat_id, user_id) or UserProfile(chat_id=int(chat_id), user_id=int(user_id))
        updated = replace(current, last_seen=ensure_utc(seen_at) if seen_at else utc_now())
        if username:
            updated.username = username
        return await self.upsert(updated)

    async def list_all(self, chat_id: int) -> List[UserProfile]:
        return await self.calls.storage(self.backend.list_user_profiles(chat_id), "list_profiles", chat_id=chat_id)

    async def reset_auto_bio_timestamps(self, chat_id: int) -> int:
        changed = await self.calls.storage(
            self.backend.reset_auto_bio_timestamps(chat_id),
            "reset_auto_bio_timestamps",
            chat_id=chat_id,
        )
        logger.info("[profiles.auto_bio] chat=%s reset=%s", chat_id, changed)
        return changed
