"""Tests for the async embedding service.

Covers:
- Lazy initialisation and readiness
- Request/response correlation under concurrency
- Load failure stickiness and retry via initialize()
- Per-request timeouts
- Worker crash and release rejecting pending requests
- Idle release and transparent restart
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import numpy as np
import pytest

from memplane.config.models import EmbeddingConfig
from memplane.core.errors import (
    ModelUnavailableError,
    RequestTimeoutError,
    WorkerTerminatedError,
)
from memplane.semantic._internal.service import EmbeddingService


class _WorkerCrash(BaseException):
    """Escapes the worker's per-request error handling."""


def _make_service(backend_factory: Any, **overrides: Any) -> EmbeddingService:
    values: dict[str, Any] = {
        "dimension": 32,
        "request_timeout_sec": 2.0,
        "init_timeout_sec": 2.0,
        "idle_timeout_sec": 60.0,
    }
    values.update(overrides)
    return EmbeddingService(EmbeddingConfig(**values), backend_factory=backend_factory)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_given_new_service_when_embedding_then_loads_lazily(
        self,
        service: EmbeddingService,
        backend_factory: Any,
        hash_embed: Callable[[str], np.ndarray],
    ) -> None:
        # Given
        assert service.ready is False
        assert backend_factory.backends == []

        # When
        vector = await service.generate_embedding("retry flaky uploads")

        # Then
        assert service.ready is True
        assert len(backend_factory.backends) == 1
        np.testing.assert_allclose(vector, hash_embed("retry flaky uploads"), atol=1e-6)
        await service.release()

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(
        self, service: EmbeddingService, backend_factory: Any
    ) -> None:
        await asyncio.gather(service.initialize(), service.initialize())
        await service.initialize()

        assert service.ready is True
        assert len(backend_factory.backends) == 1
        await service.release()

    @pytest.mark.asyncio
    async def test_initialize_async_returns_before_ready(
        self, service: EmbeddingService, backend_factory: Any
    ) -> None:
        await service.initialize_async()
        assert service.loading is True

        await service.initialize()

        assert service.ready is True
        assert service.get_status().error is None
        assert len(backend_factory.backends) == 1
        await service.release()

    @pytest.mark.asyncio
    async def test_release_resets_state(
        self, service: EmbeddingService, backend_factory: Any
    ) -> None:
        await service.generate_embedding("x")

        await service.release()

        assert service.ready is False
        assert service.get_status().worker_active is False
        assert backend_factory.latest.closed is True

    @pytest.mark.asyncio
    async def test_release_without_worker_is_noop(self, service: EmbeddingService) -> None:
        await service.release()
        assert service.ready is False

    @pytest.mark.asyncio
    async def test_status_snapshot(self, service: EmbeddingService) -> None:
        before = service.get_status().to_dict()
        await service.generate_embedding("x")
        after = service.get_status()

        assert before == {
            "ready": False,
            "loading": False,
            "error": None,
            "worker_active": False,
            "last_used_at": None,
        }
        assert after.ready is True
        assert after.worker_active is True
        assert after.last_used_at is not None
        await service.release()


class TestGeneration:
    @pytest.mark.asyncio
    async def test_empty_batch_does_not_start_worker(
        self, service: EmbeddingService, backend_factory: Any
    ) -> None:
        assert await service.generate_embeddings([]) == []
        assert backend_factory.backends == []
        assert service.ready is False

    @pytest.mark.asyncio
    async def test_batch_preserves_order(
        self,
        service: EmbeddingService,
        hash_embed: Callable[[str], np.ndarray],
    ) -> None:
        texts = ["alpha beta", "gamma", "delta epsilon zeta"]

        vectors = await service.generate_embeddings(texts)

        assert len(vectors) == 3
        for text, vector in zip(texts, vectors, strict=True):
            np.testing.assert_allclose(vector, hash_embed(text), atol=1e-6)
        await service.release()

    @pytest.mark.asyncio
    async def test_concurrent_requests_resolve_to_their_own_vectors(
        self,
        service: EmbeddingService,
        hash_embed: Callable[[str], np.ndarray],
    ) -> None:
        texts = [f"memory number{i} about topic{i}" for i in range(20)]

        vectors = await asyncio.gather(*(service.generate_embedding(t) for t in texts))

        for text, vector in zip(texts, vectors, strict=True):
            np.testing.assert_allclose(vector, hash_embed(text), atol=1e-6)
        assert service.pending_count == 0
        await service.release()

    @pytest.mark.asyncio
    async def test_long_text_truncated_before_embedding(self, backend_factory: Any) -> None:
        service = _make_service(backend_factory, max_text_chars=5)

        await service.generate_embedding("abcdefghij")

        assert backend_factory.latest.calls[-1] == ["abcde"]
        await service.release()

    @pytest.mark.asyncio
    async def test_vectors_are_unit_length(self, service: EmbeddingService) -> None:
        vector = await service.generate_embedding("several words of text")
        assert float(np.linalg.norm(vector)) == pytest.approx(1.0, abs=1e-5)
        await service.release()


class TestLoadFailure:
    @pytest.mark.asyncio
    async def test_given_load_failure_when_called_again_then_fails_fast(
        self, service: EmbeddingService, backend_factory: Any
    ) -> None:
        # Given
        backend_factory.fail_with = RuntimeError("model files missing")
        with pytest.raises(ModelUnavailableError):
            await service.generate_embedding("x")

        # When - the model would load now, but the failure is remembered
        backend_factory.fail_with = None
        with pytest.raises(ModelUnavailableError) as exc_info:
            await service.generate_embedding("x")

        # Then
        assert "model files missing" in exc_info.value.message
        assert backend_factory.backends == []
        assert service.get_status().error is not None

    @pytest.mark.asyncio
    async def test_given_load_failure_when_initialize_then_retries(
        self, service: EmbeddingService, backend_factory: Any
    ) -> None:
        backend_factory.fail_with = RuntimeError("offline")
        with pytest.raises(ModelUnavailableError):
            await service.initialize()

        backend_factory.fail_with = None
        await service.initialize()
        vector = await service.generate_embedding("x")

        assert service.ready is True
        assert vector.shape == (32,)
        await service.release()

    @pytest.mark.asyncio
    async def test_release_clears_load_failure(
        self, service: EmbeddingService, backend_factory: Any
    ) -> None:
        backend_factory.fail_with = RuntimeError("offline")
        with pytest.raises(ModelUnavailableError):
            await service.generate_embedding("x")

        await service.release()
        backend_factory.fail_with = None

        assert (await service.generate_embedding("x")).shape == (32,)
        await service.release()


class TestTimeoutsAndTermination:
    @pytest.mark.asyncio
    async def test_given_stuck_worker_when_request_times_out_then_raises(
        self, backend_factory: Any
    ) -> None:
        # Given
        service = _make_service(backend_factory, request_timeout_sec=0.1)
        await service.initialize()
        backend_factory.latest.block.clear()

        # When / Then
        with pytest.raises(RequestTimeoutError) as exc_info:
            await service.generate_embedding("x")
        assert exc_info.value.details["kind"] == "embed"
        assert service.pending_count == 0

        # The late answer is dropped and the service keeps working
        backend_factory.latest.block.set()
        assert (await service.generate_embedding("y")).shape == (32,)
        await service.release()

    @pytest.mark.asyncio
    async def test_given_pending_request_when_released_then_rejected(
        self, service: EmbeddingService, backend_factory: Any
    ) -> None:
        # Given
        await service.initialize()
        backend = backend_factory.latest
        backend.block.clear()
        task = asyncio.create_task(service.generate_embedding("x"))
        await asyncio.sleep(0.05)
        assert service.pending_count == 1

        # When
        asyncio.get_running_loop().call_later(0.05, backend.block.set)
        await service.release()

        # Then
        with pytest.raises(WorkerTerminatedError):
            await task
        assert service.pending_count == 0

    @pytest.mark.asyncio
    async def test_given_worker_crash_when_pending_then_rejected_and_restartable(
        self, service: EmbeddingService, backend_factory: Any
    ) -> None:
        # Given
        await service.initialize()

        def _crash(texts: Any) -> Any:
            raise _WorkerCrash()

        backend_factory.latest.embed = _crash

        # When
        with pytest.raises(WorkerTerminatedError) as exc_info:
            await service.generate_embedding("x")

        # Then
        assert exc_info.value.details == {"exit_code": 1}
        assert service.ready is False
        vector = await service.generate_embedding("x")
        assert vector.shape == (32,)
        assert len(backend_factory.backends) == 2
        await service.release()


class TestIdleRelease:
    @pytest.mark.asyncio
    async def test_given_idle_worker_when_timeout_elapses_then_released(
        self, backend_factory: Any
    ) -> None:
        # Given
        service = _make_service(backend_factory, idle_timeout_sec=0.1)
        await service.generate_embedding("x")
        assert service.ready is True

        # When
        for _ in range(50):
            await asyncio.sleep(0.05)
            if not service.ready and backend_factory.latest.closed:
                break

        # Then
        assert service.ready is False
        assert backend_factory.latest.closed is True

        # Next request starts a new worker transparently
        assert (await service.generate_embedding("y")).shape == (32,)
        assert len(backend_factory.backends) == 2
        await service.release()

    @pytest.mark.asyncio
    async def test_activity_postpones_idle_release(self, backend_factory: Any) -> None:
        service = _make_service(backend_factory, idle_timeout_sec=0.3)

        for _ in range(5):
            await service.generate_embedding("keep alive")
            await asyncio.sleep(0.1)

        assert service.ready is True
        assert len(backend_factory.backends) == 1
        await service.release()
