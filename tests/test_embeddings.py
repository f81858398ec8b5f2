"""Tests for embedding providers."""

from __future__ import annotations

import math
from unittest.mock import patch

import aiohttp
import pytest

from memdex.config import ProviderConfig
from memdex.embeddings import EmbeddingProvider, HashEmbeddingProvider, build_provider
from memdex.embeddings.base import finish_vectors
from memdex.embeddings.openai import OpenAIEmbeddingProvider
from memdex.errors import ProviderDimensionMismatch, ProviderRateLimited, ProviderUnavailable


class _FakeResponse:
    def __init__(self, status: int, payload=None, headers=None, body: str = "") -> None:
        self.status = status
        self._payload = payload
        self.headers = headers or {}
        self._body = body

    async def json(self):
        return self._payload

    async def text(self):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class _FakeSession:
    """Stands in for aiohttp.ClientSession; records the last request."""

    response: _FakeResponse | None = None
    error: Exception | None = None
    requests: list[dict] = []

    def __init__(self, *args, **kwargs) -> None:
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def post(self, url: str, json=None, headers=None):
        type(self).requests.append({"url": url, "json": json, "headers": headers})
        if type(self).error is not None:
            raise type(self).error
        return type(self).response


@pytest.fixture
def fake_session():
    _FakeSession.response = None
    _FakeSession.error = None
    _FakeSession.requests = []
    with patch("memdex.embeddings.openai.aiohttp.ClientSession", _FakeSession):
        yield _FakeSession


def _provider(**kwargs) -> OpenAIEmbeddingProvider:
    kwargs.setdefault("model_name", "text-embedding-3-small")
    kwargs.setdefault("dimensions", 3)
    kwargs.setdefault("api_key", "sk-test")
    kwargs.setdefault("base_url", "http://embeddings.local/v1/")
    return OpenAIEmbeddingProvider(**kwargs)


class TestHashProvider:
    @pytest.mark.asyncio
    async def test_deterministic_and_normalised(self):
        provider = HashEmbeddingProvider(dimensions=64)
        first, second = await provider.embed(["dark mode editor", "dark mode editor"])
        assert first == second
        assert len(first) == 64
        assert math.isclose(math.sqrt(sum(v * v for v in first)), 1.0, rel_tol=1e-9)

    @pytest.mark.asyncio
    async def test_overlap_scores_higher(self):
        provider = HashEmbeddingProvider(dimensions=256)
        query, near, far = await provider.embed(
            ["dark mode", "the user prefers dark mode", "postgres replication lag"]
        )
        near_score = sum(a * b for a, b in zip(query, near))
        far_score = sum(a * b for a, b in zip(query, far))
        assert near_score > far_score

    def test_key_and_minimum_dimension(self):
        provider = HashEmbeddingProvider(dimensions=8)
        assert provider.dimension() == 64
        assert provider.key == "local:sha1-bow-64"
        assert isinstance(provider, EmbeddingProvider)


class TestFinishVectors:
    def test_count_mismatch(self):
        with pytest.raises(ProviderUnavailable):
            finish_vectors([[1.0, 0.0]], 2, 2)

    def test_dimension_mismatch(self):
        with pytest.raises(ProviderDimensionMismatch) as exc_info:
            finish_vectors([[1.0, 0.0, 0.0]], 1, 2)
        assert (exc_info.value.expected, exc_info.value.actual) == (2, 3)


class TestOpenAIProvider:
    @pytest.mark.asyncio
    async def test_success_sorted_by_index(self, fake_session):
        fake_session.response = _FakeResponse(
            200,
            {"data": [
                {"index": 1, "embedding": [0.0, 2.0, 0.0]},
                {"index": 0, "embedding": [3.0, 0.0, 4.0]},
            ]},
        )
        vectors = await _provider().embed(["first", "second"])
        assert vectors[0] == pytest.approx((0.6, 0.0, 0.8))
        assert vectors[1] == pytest.approx((0.0, 1.0, 0.0))
        request = fake_session.requests[0]
        assert request["url"] == "http://embeddings.local/v1/embeddings"
        assert request["json"] == {
            "model": "text-embedding-3-small",
            "input": ["first", "second"],
            "dimensions": 3,
        }
        assert request["headers"]["Authorization"] == "Bearer sk-test"

    @pytest.mark.asyncio
    async def test_empty_batch_makes_no_request(self, fake_session):
        assert await _provider().embed([]) == []
        assert fake_session.requests == []

    @pytest.mark.asyncio
    async def test_rate_limited_carries_retry_after(self, fake_session):
        fake_session.response = _FakeResponse(429, headers={"Retry-After": "12"})
        with pytest.raises(ProviderRateLimited) as exc_info:
            await _provider().embed(["x"])
        assert exc_info.value.retry_after == 12.0

    @pytest.mark.asyncio
    async def test_server_error_is_unavailable(self, fake_session):
        fake_session.response = _FakeResponse(500, body="boom")
        with pytest.raises(ProviderUnavailable, match="HTTP 500"):
            await _provider().embed(["x"])

    @pytest.mark.asyncio
    async def test_transport_error_is_unavailable(self, fake_session):
        fake_session.error = aiohttp.ClientConnectionError("refused")
        with pytest.raises(ProviderUnavailable, match="transport"):
            await _provider().embed(["x"])

    @pytest.mark.asyncio
    async def test_wrong_dimension(self, fake_session):
        fake_session.response = _FakeResponse(200, {"data": [{"index": 0, "embedding": [1.0]}]})
        with pytest.raises(ProviderDimensionMismatch):
            await _provider().embed(["x"])

    @pytest.mark.asyncio
    async def test_health_check(self, fake_session):
        fake_session.response = _FakeResponse(500, body="down")
        assert await _provider().health_check() is False

    def test_known_and_unknown_models(self):
        assert OpenAIEmbeddingProvider(model_name="text-embedding-3-large").dimension() == 3072
        with pytest.raises(ValueError):
            OpenAIEmbeddingProvider(model_name="mystery-model")


class TestBuildProvider:
    def test_none(self):
        assert build_provider(ProviderConfig(name="none")) is None

    def test_local(self):
        provider = build_provider(ProviderConfig(name="local", dimensions=128))
        assert isinstance(provider, HashEmbeddingProvider)
        assert provider.dimension() == 128

    def test_openai(self):
        provider = build_provider(ProviderConfig(name="openai", api_key="sk"))
        assert provider.key == "openai:text-embedding-3-small"

    def test_unknown(self):
        with pytest.raises(ValueError):
            build_provider(ProviderConfig(name="magic"))
