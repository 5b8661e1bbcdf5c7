"""
Unit Tests — EmbeddingBatcher
═════════════════════════════
The OpenAI client is replaced through `client_factory`; provider errors are
real openai exception classes built around httpx responses so the retry
policy sees the same headers it would in production.

Coverage targets:
  ✅ Vectors returned in input order whatever order the provider uses
  ✅ Batching: ceil(n / batch_size) sequential calls
  ✅ Rate limit honours retry-after, then succeeds
  ✅ Retries exhausted → EmbeddingError with completed/total
  ✅ Auth errors are not retried; other provider errors (409) are
  ✅ Deadline exhausted before a batch → EmbeddingError
  ✅ Vector count mismatch → EmbeddingError
"""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import httpx
import openai
import pytest

from app.core.errors import EmbeddingError
from app.core.retry import RetryPolicy
from app.processing.chunking import chunk_text
from app.processing.embeddings import EmbeddingBatcher, build_batcher

EMBEDDINGS_URL = "https://api.openai.com/v1/embeddings"


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _response(vectors: list[list[float]], order: list[int] | None = None, tokens: int = 0):
    order = order if order is not None else list(range(len(vectors)))
    return SimpleNamespace(
        data=[SimpleNamespace(index=i, embedding=vectors[i]) for i in order],
        usage=SimpleNamespace(total_tokens=tokens),
    )


def _echo_create(**kwargs):
    """Vector [len(text), batch position] for each input."""
    texts = kwargs["input"]
    return _response([[float(len(t)), float(i)] for i, t in enumerate(texts)], tokens=len(texts))


def _provider_error(cls, status: int, headers: dict | None = None):
    response = httpx.Response(
        status,
        headers=headers or {},
        request=httpx.Request("POST", EMBEDDINGS_URL),
    )
    return cls("provider error", response=response, body=None)


def _batcher(create: AsyncMock, **kwargs) -> EmbeddingBatcher:
    client = SimpleNamespace(embeddings=SimpleNamespace(create=create))
    kwargs.setdefault("batch_pause", 0)
    return EmbeddingBatcher(api_key="sk-test", client_factory=lambda: client, **kwargs)


# ─────────────────────────────────────────────────────────────────────────────
# Tests
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestEmbed:

    async def test_sorts_by_provider_index(self):
        create = AsyncMock(return_value=_response([[0.0], [1.0], [2.0]], order=[2, 0, 1]))
        vectors = await _batcher(create).embed(["a", "b", "c"], deadline_seconds=30)

        assert vectors == [[0.0], [1.0], [2.0]]
        kwargs = create.await_args.kwargs
        assert kwargs["model"] == "text-embedding-3-large"
        assert kwargs["dimensions"] == 3072
        assert kwargs["input"] == ["a", "b", "c"]

    async def test_batches_sequentially(self):
        create = AsyncMock(side_effect=_echo_create)
        texts = ["a", "bb", "ccc", "dddd", "eeeee"]

        vectors = await _batcher(create, batch_size=2).embed(texts, deadline_seconds=30)

        assert create.await_count == 3
        assert [c.kwargs["input"] for c in create.await_args_list] == [
            ["a", "bb"], ["ccc", "dddd"], ["eeeee"],
        ]
        assert [v[0] for v in vectors] == [1.0, 2.0, 3.0, 4.0, 5.0]

    async def test_empty_input_makes_no_call(self):
        create = AsyncMock()
        assert await _batcher(create).embed([], deadline_seconds=30) == []
        create.assert_not_awaited()

    async def test_rate_limit_waits_retry_after_then_succeeds(self):
        create = AsyncMock(side_effect=[
            _provider_error(openai.RateLimitError, 429, {"retry-after": "2"}),
            _response([[0.5, 0.5]]),
        ])
        with patch("app.core.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
            vectors = await _batcher(create).embed(["only chunk"], deadline_seconds=30)

        assert vectors == [[0.5, 0.5]]
        sleep.assert_awaited_once_with(2.0)
        assert create.await_count == 2

    async def test_server_errors_exhaust_retries(self):
        create = AsyncMock(side_effect=_provider_error(openai.InternalServerError, 500))
        batcher = _batcher(create, retry_policy=RetryPolicy(max_retries=2, base_delay=1.0))

        with patch("app.core.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
            with pytest.raises(EmbeddingError) as exc_info:
                await batcher.embed(["a", "b"], deadline_seconds=30)

        assert create.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]
        assert exc_info.value.completed == 0
        assert exc_info.value.total == 2

    async def test_conflict_error_is_retried(self):
        create = AsyncMock(side_effect=[
            _provider_error(openai.ConflictError, 409),
            _response([[0.25, 0.75]]),
        ])
        with patch("app.core.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
            vectors = await _batcher(create).embed(["only chunk"], deadline_seconds=30)

        assert vectors == [[0.25, 0.75]]
        sleep.assert_awaited_once_with(1.0)
        assert create.await_count == 2

    async def test_authentication_error_is_not_retried(self):
        create = AsyncMock(side_effect=_provider_error(openai.AuthenticationError, 401))
        with patch("app.core.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
            with pytest.raises(EmbeddingError) as exc_info:
                await _batcher(create).embed(["a"], deadline_seconds=30)

        assert create.await_count == 1
        sleep.assert_not_awaited()
        assert isinstance(exc_info.value.__cause__, openai.AuthenticationError)

    async def test_failure_in_later_batch_reports_progress(self):
        create = AsyncMock(side_effect=[
            _response([[1.0], [2.0]]),
            _provider_error(openai.BadRequestError, 400),
        ])
        with pytest.raises(EmbeddingError) as exc_info:
            await _batcher(create, batch_size=2).embed(["a", "b", "c", "d"], deadline_seconds=30)

        assert exc_info.value.completed == 2
        assert exc_info.value.total == 4

    async def test_spent_deadline_stops_before_first_batch(self):
        create = AsyncMock()
        with pytest.raises(EmbeddingError, match="deadline"):
            await _batcher(create).embed(["a"], deadline_seconds=0)
        create.assert_not_awaited()

    async def test_retry_wait_past_deadline_fails(self):
        create = AsyncMock(side_effect=_provider_error(openai.RateLimitError, 429, {"retry-after": "20"}))
        with patch("app.core.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
            with pytest.raises(EmbeddingError):
                await _batcher(create).embed(["a"], deadline_seconds=5)
        sleep.assert_not_awaited()

    async def test_call_timeout_capped_at_deadline(self):
        create = AsyncMock(return_value=_response([[1.0]]))
        timeouts: list[float] = []
        real_wait_for = asyncio.wait_for

        async def _recording_wait_for(awaitable, timeout):
            timeouts.append(timeout)
            return await real_wait_for(awaitable, timeout)

        with patch("app.processing.embeddings.asyncio.wait_for", new=_recording_wait_for):
            await _batcher(create, batch_timeout=30.0).embed(["a"], deadline_seconds=5)

        assert len(timeouts) == 1
        assert 0 < timeouts[0] <= 5

    async def test_vector_count_mismatch_is_retried_then_reported(self):
        create = AsyncMock(return_value=_response([[1.0]]))
        batcher = _batcher(create, retry_policy=RetryPolicy(max_retries=1, base_delay=1.0))

        with patch("app.core.retry.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(EmbeddingError, match="returned 1 vectors for 2 inputs"):
                await batcher.embed(["a", "b"], deadline_seconds=30)
        assert create.await_count == 2


@pytest.mark.unit
class TestEmbedChunks:

    async def test_reports_usage(self):
        create = AsyncMock(side_effect=_echo_create)
        chunks = chunk_text("x" * 5000, target_size=2000, overlap=150)

        result = await _batcher(create).embed_chunks(chunks, deadline_seconds=30)

        assert result.total_chunks == 3
        assert len(result.vectors) == 3
        assert result.total_tokens == 3
        assert result.model == "text-embedding-3-large"


@pytest.mark.unit
def test_build_batcher_from_settings(settings):
    batcher = build_batcher(settings)
    assert batcher.model == settings.embedding_model
