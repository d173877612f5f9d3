"""OpenAI-backed embedding client."""

from __future__ import annotations

import logging
from typing import Optional

from openai import AsyncOpenAI, OpenAIError

from .config import Settings, get_settings

logger = logging.getLogger(__name__)

MAX_EMBED_CHARS = 8000


class EmbeddingError(RuntimeError):
    pass


class OpenAIEmbedder:
    def __init__(self, settings: Optional[Settings] = None, client: Optional[AsyncOpenAI] = None) -> None:
        self._settings = settings or get_settings()
        self._client = client

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self._settings.openai_api_key:
                raise EmbeddingError("OPENAI_API_KEY is not configured")
            self._client = AsyncOpenAI(
                api_key=self._settings.openai_api_key,
                base_url=self._settings.openai_base_url,
                timeout=self._settings.embedding_timeout_seconds,
                max_retries=1,
            )
        return self._client

    async def embed(self, text: str) -> list[float]:
        client = self._get_client()
        try:
            response = await client.embeddings.create(
                model=self._settings.embedding_model,
                input=text[:MAX_EMBED_CHARS],
            )
        except OpenAIError as exc:
            raise EmbeddingError(f"Embedding request failed: {exc}") from exc
        if not response.data:
            raise EmbeddingError("Embedding response was empty")
        return list(response.data[0].embedding)


__all__ = ["EmbeddingError", "MAX_EMBED_CHARS", "OpenAIEmbedder"]
