from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from .types import ChatSettingsDefaults


load_dotenv()


STORAGE_BACKENDS = ("sqlite", "postgres", "mongo", "file")
EMBEDDING_PROVIDERS = ("gemini", "ollama")


def _env_lookup(name: str, aliases: tuple[str, ...] = ()) -> str | None:
    for key in (name, *aliases):
        # Be tolerant to UTF-8 BOM accidentally saved in .env key names.
        for candidate in (key, f"\ufeff{key}"):
            raw = os.getenv(candidate)
            if raw is not None:
                return raw
    return None


def _env_bool(name: str, default: bool, aliases: tuple[str, ...] = ()) -> bool:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int, aliases: tuple[str, ...] = ()) -> int:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float, aliases: tuple[str, ...] = ()) -> float:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str, aliases: tuple[str, ...] = ()) -> str:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    value = raw.strip()
    return value if value else default


@dataclass(slots=True)
class Settings:
    storage_backend: str
    sqlite_path: Path
    postgres_dsn: str
    mongodb_uri: str
    mongodb_dbname: str
    mongo_vector_index_name: str
    embedding_dimensions: int
    file_storage_dir: Path
    file_cache_max_messages: int

    context_window: int
    storage_timeout_seconds: float
    embedding_timeout_seconds: float

    long_term_memory_enabled: bool
    long_term_memory_fetch_k: int

    embedding_provider: str
    gemini_api_key: str
    gemini_base_url: str
    gemini_embedding_model: str
    ollama_base_url: str
    ollama_embedding_model: str

    backfill_enabled: bool
    backfill_batch_size: int
    backfill_batch_delay_seconds: float
    backfill_interval_minutes: int

    retention_enabled: bool
    retention_size_limit_mb: int
    retention_check_interval_minutes: int
    retention_chunk_duration_hours: int

    default_conversation_style: str
    default_temperature: float
    default_model: str
    default_safety_threshold: str
    voice_transcription_enabled_default: bool
    direct_reply_limit_enabled_default: bool
    direct_reply_limit_count_default: int
    direct_reply_limit_duration_minutes_default: int
    srach_analysis_enabled_default: bool

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            storage_backend=_env_str("STORAGE_BACKEND", "sqlite", aliases=("STORAGE_TYPE",)).lower(),
            sqlite_path=Path(_env_str("SQLITE_PATH", "data/chat_memory.db")),
            postgres_dsn=_env_str("POSTGRES_DSN", ""),
            mongodb_uri=_env_str("MONGODB_URI", ""),
            mongodb_dbname=_env_str("MONGODB_DBNAME", "chat_memory"),
            mongo_vector_index_name=_env_str("MONGO_VECTOR_INDEX_NAME", "vector_index_messages"),
            embedding_dimensions=_env_int("EMBEDDING_DIMENSIONS", 768),
            file_storage_dir=Path(_env_str("FILE_STORAGE_DIR", "data/chats")),
            file_cache_max_messages=_env_int("FILE_CACHE_MAX_MESSAGES", 0),
            context_window=_env_int("CONTEXT_WINDOW", 1000),
            storage_timeout_seconds=_env_float("STORAGE_TIMEOUT_SECONDS", 10.0),
            embedding_timeout_seconds=_env_float("EMBEDDING_TIMEOUT_SECONDS", 30.0),
            long_term_memory_enabled=_env_bool("LONG_TERM_MEMORY_ENABLED", False),
            long_term_memory_fetch_k=_env_int("LONG_TERM_MEMORY_FETCH_K", 3),
            embedding_provider=_env_str("EMBEDDING_PROVIDER", "gemini").lower(),
            gemini_api_key=_env_str("GEMINI_API_KEY", ""),
            gemini_base_url=_env_str("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com"),
            gemini_embedding_model=_env_str(
                "GEMINI_EMBEDDING_MODEL",
                "text-embedding-004",
                aliases=("GEMINI_EMBEDDING_MODEL_NAME",),
            ),
            ollama_base_url=_env_str("OLLAMA_BASE_URL", "http://127.0.0.1:11434"),
            ollama_embedding_model=_env_str("OLLAMA_EMBEDDING_MODEL", "nomic-embed-text"),
            backfill_enabled=_env_bool("BACKFILL_ENABLED", False),
            backfill_batch_size=_env_int("BACKFILL_BATCH_SIZE", 200),
            backfill_batch_delay_seconds=_env_float("BACKFILL_BATCH_DELAY_SECONDS", 5.0),
            backfill_interval_minutes=_env_int("BACKFILL_INTERVAL_MINUTES", 60),
            retention_enabled=_env_bool("RETENTION_ENABLED", False, aliases=("MONGO_CLEANUP_ENABLED",)),
            retention_size_limit_mb=_env_int(
                "RETENTION_SIZE_LIMIT_MB", 500, aliases=("MONGO_CLEANUP_SIZE_LIMIT_MB",)
            ),
            retention_check_interval_minutes=_env_int(
                "RETENTION_CHECK_INTERVAL_MINUTES", 60, aliases=("MONGO_CLEANUP_INTERVAL_MINUTES",)
            ),
            retention_chunk_duration_hours=_env_int(
                "RETENTION_CHUNK_DURATION_HOURS", 24, aliases=("MONGO_CLEANUP_CHUNK_DURATION_HOURS",)
            ),
            default_conversation_style=_env_str("DEFAULT_CONVERSATION_STYLE", "default"),
            default_temperature=_env_float("DEFAULT_TEMPERATURE", 0.7),
            default_model=(_env_lookup("DEFAULT_MODEL") or "").strip(),
            default_safety_threshold=_env_str("DEFAULT_SAFETY_THRESHOLD", "BLOCK_NONE"),
            voice_transcription_enabled_default=_env_bool("VOICE_TRANSCRIPTION_ENABLED_DEFAULT", True),
            direct_reply_limit_enabled_default=_env_bool("DIRECT_REPLY_LIMIT_ENABLED_DEFAULT", True),
            direct_reply_limit_count_default=_env_int("DIRECT_REPLY_LIMIT_COUNT_DEFAULT", 2),
            direct_reply_limit_duration_minutes_default=_env_int(
                "DIRECT_REPLY_LIMIT_DURATION_MINUTES_DEFAULT", 10
            ),
            srach_analysis_enabled_default=_env_bool("SRACH_ANALYSIS_ENABLED", True),
        )

    def chat_settings_defaults(self) -> ChatSettingsDefaults:
        return ChatSettingsDefaults(
            conversation_style=self.default_conversation_style,
            temperature=self.default_temperature,
            model=self.default_model,
            safety_threshold=self.default_safety_threshold,
            voice_transcription_enabled=self.voice_transcription_enabled_default,
            direct_reply_limit_enabled=self.direct_reply_limit_enabled_default,
            direct_reply_limit_count=self.direct_reply_limit_count_default,
            direct_reply_limit_duration_minutes=self.direct_reply_limit_duration_minutes_default,
            srach_analysis_enabled=self.srach_analysis_enabled_default,
        )

    @property
    def retention_size_limit_bytes(self) -> int:
        return self.retention_size_limit_mb * 1024 * 1024

    def validate(self) -> None:
        if self.storage_backend not in STORAGE_BACKENDS:
            raise ValueError("STORAGE_BACKEND must be one of: " + ", ".join(STORAGE_BACKENDS))
        if self.storage_backend == "postgres" and not self.postgres_dsn:
            raise ValueError("POSTGRES_DSN is required when STORAGE_BACKEND=postgres")
        if self.storage_backend == "mongo":
            if not self.mongodb_uri:
                raise ValueError("MONGODB_URI is required when STORAGE_BACKEND=mongo")
            if not self.mongo_vector_index_name:
                raise ValueError("MONGO_VECTOR_INDEX_NAME cannot be empty")
        if self.embedding_dimensions < 1:
            raise ValueError("EMBEDDING_DIMENSIONS must be >= 1")
        if self.file_cache_max_messages < 0:
            raise ValueError("FILE_CACHE_MAX_MESSAGES must be >= 0 (0 disables the cap)")

        if self.context_window < 1:
            raise ValueError("CONTEXT_WINDOW must be >= 1")
        if self.storage_timeout_seconds <= 0:
            raise ValueError("STORAGE_TIMEOUT_SECONDS must be > 0")
        if self.embedding_timeout_seconds <= 0:
            raise ValueError("EMBEDDING_TIMEOUT_SECONDS must be > 0")
        if self.long_term_memory_fetch_k < 1:
            raise ValueError("LONG_TERM_MEMORY_FETCH_K must be >= 1")

        if self.embedding_provider not in EMBEDDING_PROVIDERS:
            raise ValueError("EMBEDDING_PROVIDER must be 'gemini' or 'ollama'")
        needs_provider = self.long_term_memory_enabled or self.backfill_enabled
        if needs_provider and self.embedding_provider == "gemini" and not self.gemini_api_key:
            raise ValueError("GEMINI_API_KEY is required for Gemini embeddings")

        if self.backfill_batch_size < 1:
            raise ValueError("BACKFILL_BATCH_SIZE must be >= 1")
        if self.backfill_batch_delay_seconds < 0:
            raise ValueError("BACKFILL_BATCH_DELAY_SECONDS must be >= 0")
        if self.backfill_interval_minutes < 1:
            raise ValueError("BACKFILL_INTERVAL_MINUTES must be >= 1")

        if self.retention_size_limit_mb < 1:
            raise ValueError("RETENTION_SIZE_LIMIT_MB must be >= 1")
        if self.retention_check_interval_minutes < 1:
            raise ValueError("RETENTION_CHECK_INTERVAL_MINUTES must be >= 1")
        if self.retention_chunk_duration_hours < 1:
            raise ValueError("RETENTION_CHUNK_DURATION_HOURS must be >= 1")

        if not 0.0 <= self.default_temperature <= 2.0:
            raise ValueError("DEFAULT_TEMPERATURE must be between 0.0 and 2.0")
        if self.direct_reply_limit_count_default < 0:
            raise ValueError("DIRECT_REPLY_LIMIT_COUNT_DEFAULT must be >= 0")
        if self.direct_reply_limit_duration_minutes_default < 1:
            raise ValueError("DIRECT_REPLY_LIMIT_DURATION_MINUTES_DEFAULT must be >= 1")
