from __future__ import annotations

import asyncio
import json
import random
from typing import Any, Dict, List, Protocol

import aiohttp

from ..errors import ProviderError, ValidationError


_RETRIABLE_STATUSES = {408, 409, 429, 500, 502, 503, 504}


class EmbeddingProvider(Protocol):
    async def embed(self, text: str) -> List[float]: ...


def _require_text(text: str) -> str:
    cleaned = (text or "").strip()
    if not cleaned:
        raise ValidationError("embedding input cannot be empty")
    return cleaned


def _as_vector(raw: Any, provider: str) -> List[float]:
    if not isinstance(raw, list) or not raw:
        raise ProviderError(f"{provider} returned no embedding values")
    try:
        return [float(value) for value in raw]
    except (TypeError, ValueError) as exc:
        raise ProviderError(f"{provider} returned a malformed embedding: {exc}") from exc


class _HttpEmbeddingClient:
    provider_name = "http"

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout = aiohttp.ClientTimeout(total=max(1.0, float(timeout_seconds)))
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    def _endpoint(self) -> str:
        raise NotImplementedError

    async def _request(self, payload: Dict[str, Any], retries: int = 3) -> Dict[str, Any]:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        url = self._endpoint()
        last_error: Exception | None = None

        for attempt in range(1, retries + 1):
            try:
                async with self._session.post(url, json=payload) as response:
                    text = await response.text()
                    if response.status == 200:
                        return json.loads(text)

                    if response.status not in _RETRIABLE_STATUSES:
                        raise ProviderError(f"{self.provider_name} embedding error {response.status}: {text[:300]}")
                    last_error = ProviderError(
                        f"{self.provider_name} retriable embedding error {response.status}: {text[:300]}"
                    )
            except asyncio.CancelledError:
                raise
            except ProviderError:
                raise
            except Exception as exc:
                last_error = exc

            if attempt < retries:
                await asyncio.sleep(min(4.0, 0.35 * attempt + random.random() * 0.2))

        if last_error is not None:
            raise ProviderError(f"{self.provider_name} embedding request failed after retries: {last_error}")
        raise ProviderError(f"{self.provider_name} embedding request failed without explicit error")


class GeminiEmbeddingClient(_HttpEmbeddingClient):
    provider_name = "gemini"

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-004",
        timeout_seconds: float = 30.0,
        base_url: str = "https://generativelanguage.googleapis.com",
    ) -> None:
        super().__init__(timeout_seconds)
        self.api_key = api_key
        self.model = model.removeprefix("models/")
        self.base_url = base_url.rstrip("/")

    def _endpoint(self) -> str:
        return f"{self.base_url}/v1beta/models/{self.model}:embedContent?key={self.api_key}"

    async def embed(self, text: str) -> List[float]:
        cleaned = _require_text(text)
        data = await self._request(
            {
                "model": f"models/{self.model}",
                "content": {"parts": [{"text": cleaned}]},
            }
        )
        embedding = data.get("embedding") or {}
        return _as_vector(embedding.get("values"), self.provider_name)


class OllamaEmbeddingClient(_HttpEmbeddingClient):
    provider_name = "ollama"

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        timeout_seconds: float = 30.0,
    ) -> None:
        super().__init__(timeout_seconds)
        self.base_url = (base_url or "http://127.0.0.1:11434").strip().rstrip("/")
        self.model = (model or "").strip()
        if not self.model:
            raise ValueError("Ollama embedding model cannot be empty")

    def _endpoint(self) -> str:
        return f"{self.base_url}/api/embeddings"

    async def embed(self, text: str) -> List[float]:
        cleaned = _require_text(text)
        data = await self._request({"model": self.model, "prompt": cleaned})
        return _as_vector(data.get("embedding"), self.provider_name)


def build_embedding_provider(settings: Any) -> GeminiEmbeddingClient | OllamaEmbeddingClient:
    if settings.embedding_provider == "ollama":
        return OllamaEmbeddingClient(
            base_url=settings.ollama_base_url,
            model=settings.ollama_embedding_model,
            timeout_seconds=settings.embedding_timeout_seconds,
        )
    return GeminiEmbeddingClient(
        api_key=settings.gemini_api_key,
        model=settings.gemini_embedding_model,
        timeout_seconds=settings.embedding_timeout_seconds,
        base_url=settings.gemini_base_url,
    )
