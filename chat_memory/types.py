from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_epoch(value: datetime) -> float:
    return ensure_utc(value).timestamp()


def from_epoch(value: float) -> datetime:
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


def parse_optional_datetime(raw: Any) -> datetime | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return ensure_utc(raw)
    if isinstance(raw, (int, float)):
        return from_epoch(raw)
    return ensure_utc(datetime.fromisoformat(str(raw)))


@dataclass(slots=True)
class ChatMessage:
    chat_id: int
    message_id: int
    timestamp: datetime
    user_id: int = 0
    username: str = ""
    first_name: str = ""
    last_name: str = ""
    is_bot: bool = False
    text: str = ""
    caption: str = ""
    reply_to_message_id: int = 0
    has_media: bool = False
    is_voice: bool = False
    is_forward: bool = False
    forwarded_from_user_id: int = 0
    forwarded_from_chat_id: int = 0
    forwarded_from_message_id: int = 0
    forwarded_at: Optional[datetime] = None
    embedding: Optional[List[float]] = None

    def __post_init__(self) -> None:
        self.timestamp = ensure_utc(self.timestamp)
        if self.forwarded_at is not None:
            self.forwarded_at = ensure_utc(self.forwarded_at)

    @property
    def embeddable_text(self) -> str:
        text = (self.text or "").strip()
        if text:
            return text
        return (self.caption or "").strip()

    @property
    def is_embeddable(self) -> bool:
        return bool(self.embeddable_text)

    @property
    def needs_embedding(self) -> bool:
        return self.embedding is None and self.is_embeddable

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chat_id": self.chat_id,
            "message_id": self.message_id,
            "timestamp": self.timestamp.isoformat(),
            "user_id": self.user_id,
            "username": self.username,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "is_bot": self.is_bot,
            "text": self.text,
            "caption": self.caption,
            "reply_to_message_id": self.reply_to_message_id,
            "has_media": self.has_media,
            "is_voice": self.is_voice,
            "is_forward": self.is_forward,
            "forwarded_from_user_id": self.forwarded_from_user_id,
            "forwarded_from_chat_id": self.forwarded_from_chat_id,
            "forwarded_from_message_id": self.forwarded_from_message_id,
            "forwarded_at": self.forwarded_at.isoformat() if self.forwarded_at else None,
            "embedding": list(self.embedding) if self.embedding is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        vector = data.get("embedding")
        return cls(
            chat_id=int(data["chat_id"]),
            message_id=int(data["message_id"]),
            timestamp=parse_optional_datetime(data.get("timestamp")) or utc_now(),
            user_id=int(data.get("user_id") or 0),
            username=str(data.get("username") or ""),
            first_name=str(data.get("first_name") or ""),
            last_name=str(data.get("last_name") or ""),
            is_bot=bool(data.get("is_bot")),
            text=str(data.get("text") or ""),
            caption=str(data.get("caption") or ""),
            reply_to_message_id=int(data.get("reply_to_message_id") or 0),
            has_media=bool(data.get("has_media")),
            is_voice=bool(data.get("is_voice")),
            is_forward=bool(data.get("is_forward")),
            forwarded_from_user_id=int(data.get("forwarded_from_user_id") or 0),
            forwarded_from_chat_id=int(data.get("forwarded_from_chat_id") or 0),
            forwarded_from_message_id=int(data.get("forwarded_from_message_id") or 0),
            forwarded_at=parse_optional_datetime(data.get("forwarded_at")),
            embedding=[float(x) for x in vector] if vector else None,
        )


@dataclass(slots=True)
class ScoredMessage:
    message: ChatMessage
    score: float


@dataclass(slots=True)
class UserProfile:
    chat_id: int
    user_id: int
    username: str = ""
    alias: str = ""
    gender: str = ""
    real_name: str = ""
    bio: str = ""
    auto_bio: str = ""
    last_auto_bio_update: Optional[datetime] = None
    last_seen: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        def _iso(value: datetime | None) -> str | None:
            return value.isoformat() if value is not None else None

        return {
            "chat_id": self.chat_id,
            "user_id": self.user_id,
            "username": self.username,
            "alias": self.alias,
            "gender": self.gender,
            "real_name": self.real_name,
            "bio": self.bio,
            "auto_bio": self.auto_bio,
            "last_auto_bio_update": _iso(self.last_auto_bio_update),
            "last_seen": _iso(self.last_seen),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserProfile":
        return cls(
            chat_id=int(data["chat_id"]),
            user_id=int(data["user_id"]),
            username=str(data.get("username") or ""),
            alias=str(data.get("alias") or ""),
            gender=str(data.get("gender") or ""),
            real_name=str(data.get("real_name") or ""),
            bio=str(data.get("bio") or ""),
            auto_bio=str(data.get("auto_bio") or ""),
            last_auto_bio_update=parse_optional_datetime(data.get("last_auto_bio_update")),
            last_seen=parse_optional_datetime(data.get("last_seen")),
            created_at=parse_optional_datetime(data.get("created_at")),
            updated_at=parse_optional_datetime(data.get("updated_at")),
        )


class SettingsField(str, Enum):
    CONVERSATION_STYLE = "conversation_style"
    TEMPERATURE = "temperature"
    MODEL = "model"
    SAFETY_THRESHOLD = "safety_threshold"
    VOICE_TRANSCRIPTION_ENABLED = "voice_transcription_enabled"
    DIRECT_REPLY_LIMIT_ENABLED = "direct_reply_limit_enabled"
    DIRECT_REPLY_LIMIT_COUNT = "direct_reply_limit_count"
    DIRECT_REPLY_LIMIT_DURATION_MINUTES = "direct_reply_limit_duration_minutes"
    SRACH_ANALYSIS_ENABLED = "srach_analysis_enabled"


@dataclass(slots=True)
class ChatSettingsRecord:
    """Stored form of a chat's settings. ``None`` means "not set, use the default"."""

    chat_id: int
    conversation_style: Optional[str] = None
    temperature: Optional[float] = None
    model: Optional[str] = None
    safety_threshold: Optional[str] = None
    voice_transcription_enabled: Optional[bool] = None
    direct_reply_limit_enabled: Optional[bool] = None
    direct_reply_limit_count: Optional[int] = None
    direct_reply_limit_duration_minutes: Optional[int] = None
    srach_analysis_enabled: Optional[bool] = None

    def get(self, item: SettingsField) -> Any:
        return getattr(self, item.value)

    def set(self, item: SettingsField, value: Any) -> None:
        setattr(self, item.value, value)

    def values(self) -> Dict[SettingsField, Any]:
        return {item: self.get(item) for item in SettingsField}

    def present_values(self) -> Dict[SettingsField, Any]:
        return {item: value for item, value in self.values().items() if value is not None}

    def missing_fields(self) -> tuple[SettingsField, ...]:
        return tuple(item for item, value in self.values().items() if value is None)


@dataclass(frozen=True, slots=True)
class ChatSettingsDefaults:
    conversation_style: str = "default"
    temperature: float = 0.7
    model: str = ""
    safety_threshold: str = "BLOCK_NONE"
    voice_transcription_enabled: bool = True
    direct_reply_limit_enabled: bool = True
    direct_reply_limit_count: int = 2
    direct_reply_limit_duration_minutes: int = 10
    srach_analysis_enabled: bool = True

    def value_for(self, item: SettingsField) -> Any:
        return getattr(self, item.value)


@dataclass(frozen=True, slots=True)
class ChatSettings:
    chat_id: int
    conversation_style: str
    temperature: float
    model: str
    safety_threshold: str
    voice_transcription_enabled: bool
    direct_reply_limit_enabled: bool
    direct_reply_limit_count: int
    direct_reply_limit_duration_minutes: int
    srach_analysis_enabled: bool

    def to_record(self) -> ChatSettingsRecord:
        return ChatSettingsRecord(**{f.name: getattr(self, f.name) for f in fields(self)})


@dataclass(frozen=True, slots=True)
class SettingsPatch:
    field: SettingsField
    value: Any


@dataclass(slots=True)
class RetentionState:
    chat_id: int
    size_bytes: int
    oldest_timestamp: Optional[datetime] = None
    checked_at: datetime = field(default_factory=utc_now)


SETTINGS_FIELD_TYPES: Dict[SettingsField, type] = {
    SettingsField.CONVERSATION_STYLE: str,
    SettingsField.TEMPERATURE: float,
    SettingsField.MODEL: str,
    SettingsField.SAFETY_THRESHOLD: str,
    SettingsField.VOICE_TRANSCRIPTION_ENABLED: bool,
    SettingsField.DIRECT_REPLY_LIMIT_ENABLED: bool,
    SettingsField.DIRECT_REPLY_LIMIT_COUNT: int,
    SettingsField.DIRECT_REPLY_LIMIT_DURATION_MINUTES: int,
    SettingsField.SRACH_ANALYSIS_ENABLED: bool,
}


def coerce_stored_setting(item: SettingsField, raw: Any) -> Any:
    """Convert a raw column/document value back into the field's Python type."""
    if raw is None:
        return None
    kind = SETTINGS_FIELD_TYPES[item]
    if kind is bool:
        return bool(raw)
    return kind(raw)


def settings_record_from_mapping(chat_id: int, data: Dict[str, Any]) -> ChatSettingsRecord:
    record = ChatSettingsRecord(chat_id=int(chat_id))
    for item in SettingsField:
        record.set(item, coerce_stored_setting(item, data.get(item.value)))
    return record
