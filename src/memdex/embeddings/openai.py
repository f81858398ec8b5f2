"""OpenAI-compatible embeddings over HTTP (aiohttp)."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass

import aiohttp

from memdex.embeddings.base import finish_vectors
from memdex.errors import ProviderRateLimited, ProviderUnavailable

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "text-embedding-3-small"
KNOWN_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


@dataclass
class OpenAIEmbeddingProvider:
    """``POST {base_url}/embeddings`` against any OpenAI-compatible server."""

    model_name: str = DEFAULT_MODEL
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    dimensions: int | None = None
    timeout: int = 60

    def __post_init__(self) -> None:
        self.base_url = self.base_url.rstrip("/")
        if self.dimensions is None:
            self.dimensions = KNOWN_DIMENSIONS.get(self.model_name)
        if not self.dimensions:
            raise ValueError(
                f"Unknown dimension for embedding model {self.model_name!r}; "
                "set provider.dimensions"
            )

    @property
    def name(self) -> str:
        return "openai"

    @property
    def model(self) -> str:
        return self.model_name

    @property
    def key(self) -> str:
        return f"{self.name}:{self.model}"

    def dimension(self) -> int:
        return int(self.dimensions)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def embed(self, texts: Sequence[str]) -> list[tuple[float, ...]]:
        if not texts:
            return []
        payload: dict = {"model": self.model_name, "input": list(texts)}
        if self.model_name.startswith("text-embedding-3"):
            payload["dimensions"] = self.dimension()
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(
                    f"{self.base_url}/embeddings", json=payload, headers=self._headers()
                ) as resp:
                    if resp.status == 429:
                        raise ProviderRateLimited(
                            f"{self.key} rate limited",
                            retry_after=_retry_after(resp.headers.get("Retry-After")),
                        )
                    if resp.status >= 400:
                        body = await resp.text()
                        raise ProviderUnavailable(f"{self.key} HTTP {resp.status}: {body[:200]}")
                    data = await resp.json()
        except aiohttp.ClientError as e:
            raise ProviderUnavailable(f"{self.key} transport error: {e}") from e
        except asyncio.TimeoutError as e:
            raise ProviderUnavailable(f"{self.key} timed out after {self.timeout}s") from e

        rows = data.get("data") if isinstance(data, dict) else None
        if not isinstance(rows, list):
            raise ProviderUnavailable(f"{self.key} response missing 'data'")
        rows = sorted(rows, key=lambda row: row.get("index", 0))
        return finish_vectors(
            [row.get("embedding") or [] for row in rows], len(texts), self.dimension()
        )

    async def health_check(self) -> bool:
        try:
            await self.embed(["ping"])
            return True
        except Exception as e:
            logger.debug("Embedding health check failed: %s", e)
            return False


def _retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None
