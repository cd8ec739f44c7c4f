"""Embedding generation service.

Async front end for the embedding worker thread. Each request gets a
monotonic correlation id and an independent timeout; responses are matched
by id, so completion order does not matter. The worker is started lazily,
released after an idle period and restarted transparently on the next
request. A crashed worker rejects everything in flight and leaves the
service not-ready so the next call re-initialises.
"""

from __future__ import annotations

import asyncio
import itertools
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime

import numpy as np
import structlog

from memplane.config.models import EmbeddingConfig
from memplane.core.errors import (
    EmbeddingError,
    ErrorCode,
    MemplaneError,
    ModelUnavailableError,
    RequestTimeoutError,
    WorkerTerminatedError,
    error_from_code,
)
from memplane.semantic._internal.backends import BackendFactory, fastembed_backend
from memplane.semantic._internal.worker import (
    EmbeddingWorker,
    RequestKind,
    WorkerRequest,
    WorkerResponse,
)
from memplane.semantic.models import EmbeddingServiceStatus

log = structlog.get_logger()

_JOIN_TIMEOUT_SEC = 5.0


@dataclass(slots=True)
class _PendingRequest:
    future: asyncio.Future[list[np.ndarray]]
    timeout_handle: asyncio.TimerHandle
    kind: RequestKind
    timeout_sec: float


class EmbeddingService:
    """Loads the model on demand and turns text into unit-length vectors.

    Example::

        service = EmbeddingService(config.embedding)
        vector = await service.generate_embedding("retry flaky uploads")
        await service.release()
    """

    def __init__(
        self,
        config: EmbeddingConfig | None = None,
        *,
        backend_factory: BackendFactory | None = None,
    ) -> None:
        self._config = config or EmbeddingConfig()
        self._backend_factory = backend_factory or fastembed_backend
        self._worker: EmbeddingWorker | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._pending: dict[int, _PendingRequest] = {}
        self._ids = itertools.count(1)
        self._ready = False
        self._init_task: asyncio.Task[None] | None = None
        self._load_failed = False
        self._last_error: str | None = None
        self._last_used: float | None = None
        self._last_used_at: datetime | None = None
        self._idle_handle: asyncio.TimerHandle | None = None
        self._release_task: asyncio.Task[None] | None = None
        # Bumped by release() so an init interrupted by it is not a load failure
        self._generation = 0

    @property
    def config(self) -> EmbeddingConfig:
        return self._config

    @property
    def model_name(self) -> str:
        return self._config.model_name

    @property
    def dimension(self) -> int:
        return self._config.dimension

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def loading(self) -> bool:
        return self._init_task is not None and not self._init_task.done()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # --- Lifecycle ---

    async def initialize(self) -> None:
        """Load the model, or wait for a load already in progress.

        Raises:
            ModelUnavailableError: If the model fails to load. A later call
                tries again.
        """
        self._bind_loop()
        if self._ready:
            return
        if self._init_task is None or self._init_task.done():
            self._load_failed = False
            self._init_task = asyncio.get_running_loop().create_task(self._start_worker())
            self._init_task.add_done_callback(self._on_init_done)
        await asyncio.shield(self._init_task)

    async def initialize_async(self) -> None:
        """Start loading in the background and return immediately.

        A failure is recorded in :meth:`get_status` rather than raised.
        """
        self._bind_loop()
        if self._ready or self.loading:
            return
        self._load_failed = False
        self._init_task = asyncio.get_running_loop().create_task(self._start_worker())
        self._init_task.add_done_callback(self._on_init_done)

    async def release(self) -> None:
        """Stop the worker and free the model. Pending requests fail."""
        self._generation += 1
        self._cancel_idle_timer()
        worker, self._worker = self._worker, None
        self._ready = False
        self._load_failed = False
        self._last_error = None
        self._init_task = None
        self._reject_pending(WorkerTerminatedError.released())
        if worker is None:
            return

        worker.stop()
        await asyncio.get_running_loop().run_in_executor(None, worker.join, _JOIN_TIMEOUT_SEC)
        if worker.is_alive():
            log.warning("embedding.worker_join_timeout", timeout_sec=_JOIN_TIMEOUT_SEC)
        log.info("embedding.released", model=self.model_name)

    def get_status(self) -> EmbeddingServiceStatus:
        return EmbeddingServiceStatus(
            ready=self._ready,
            loading=self.loading,
            error=self._last_error,
            worker_active=self._worker is not None and self._worker.is_alive(),
            last_used_at=self._last_used_at,
        )

    # --- Embedding ---

    async def generate_embedding(self, text: str) -> np.ndarray:
        """Embed one text, initialising the model on first use.

        Raises:
            ModelUnavailableError: If an earlier load failed and neither
                ``initialize()`` nor ``release()`` has been called since.
            RequestTimeoutError: If the worker does not answer in time.
            WorkerTerminatedError: If the worker stops while this is pending.
        """
        vectors = await self._embed([text], "embed")
        return vectors[0]

    async def generate_embeddings(self, texts: Sequence[str]) -> list[np.ndarray]:
        """Embed several texts in one worker round trip, preserving order."""
        if not texts:
            return []
        return await self._embed(list(texts), "embed_batch")

    async def _embed(self, texts: list[str], kind: RequestKind) -> list[np.ndarray]:
        self._bind_loop()
        if self._load_failed:
            raise ModelUnavailableError.load_failed(
                self.model_name, self._last_error or "previous load failed"
            )
        if not self._ready:
            await self.initialize()

        limit = self._config.max_text_chars
        truncated = [t[:limit] for t in texts]
        self._touch()
        try:
            return await self._send(kind, truncated, self._config.request_timeout_sec)
        finally:
            self._touch()

    # --- Worker plumbing ---

    async def _start_worker(self) -> None:
        generation = self._generation
        started = time.perf_counter()
        worker = EmbeddingWorker(
            self._config,
            self._backend_factory,
            on_response=self._on_worker_response,
            on_exit=self._on_worker_exit,
        )
        self._worker = worker
        worker.start()
        log.debug("embedding.worker_started", model=self.model_name)

        try:
            await self._send("init", [], self._config.init_timeout_sec)
        except MemplaneError as e:
            if generation != self._generation:
                # release() ran while loading
                raise
            self._load_failed = True
            self._last_error = e.message
            if self._worker is worker:
                self._worker = None
                worker.stop()
            log.error("embedding.model_load_failed", model=self.model_name, error=e.message)
            raise ModelUnavailableError.load_failed(self.model_name, e.message) from e

        if generation != self._generation:
            raise WorkerTerminatedError.released()
        self._ready = True
        self._last_error = None
        self._touch()
        log.info(
            "embedding.ready",
            model=self.model_name,
            elapsed_ms=round((time.perf_counter() - started) * 1000, 1),
        )

    async def _send(
        self,
        kind: RequestKind,
        texts: Sequence[str],
        timeout_sec: float,
    ) -> list[np.ndarray]:
        worker = self._worker
        if worker is None or not worker.is_alive():
            raise WorkerTerminatedError.not_running()

        loop = asyncio.get_running_loop()
        request_id = next(self._ids)
        future: asyncio.Future[list[np.ndarray]] = loop.create_future()
        handle = loop.call_later(timeout_sec, self._expire, request_id)
        self._pending[request_id] = _PendingRequest(future, handle, kind, timeout_sec)
        try:
            worker.submit(WorkerRequest(request_id, kind, tuple(texts)))
        except EmbeddingError:
            handle.cancel()
            self._pending.pop(request_id, None)
            raise
        return await future

    def _on_worker_response(self, response: WorkerResponse) -> None:
        # Worker thread
        self._call_in_loop(self._resolve, response)

    def _on_worker_exit(self, worker: EmbeddingWorker, exit_code: int) -> None:
        # Worker thread
        self._call_in_loop(self._handle_exit, worker, exit_code)

    def _call_in_loop(self, fn: Callable[..., None], *args: object) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(fn, *args)
        except RuntimeError:
            # Loop closed between the check and the call
            log.debug("embedding.loop_closed", callback=getattr(fn, "__name__", str(fn)))

    def _resolve(self, response: WorkerResponse) -> None:
        pending = self._pending.pop(response.request_id, None)
        if pending is None:
            # Already timed out or rejected
            log.debug("embedding.late_response", request_id=response.request_id)
            return
        pending.timeout_handle.cancel()
        if pending.future.done():
            return
        if response.ok:
            pending.future.set_result(list(response.vectors))
        else:
            code = response.error_code or ErrorCode.EMBEDDING_FAILED
            pending.future.set_exception(
                error_from_code(
                    code,
                    response.error or "embedding failed",
                    details={"request_id": response.request_id, "kind": pending.kind},
                )
            )

    def _expire(self, request_id: int) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return
        log.warning(
            "embedding.request_timeout",
            request_id=request_id,
            kind=pending.kind,
            timeout_sec=pending.timeout_sec,
        )
        if not pending.future.done():
            pending.future.set_exception(
                RequestTimeoutError.after(pending.kind, pending.timeout_sec, request_id)
            )

    def _handle_exit(self, worker: EmbeddingWorker, exit_code: int) -> None:
        if worker is not self._worker or exit_code == 0:
            return
        log.error("embedding.worker_exited", exit_code=exit_code, pending=len(self._pending))
        self._worker = None
        self._ready = False
        self._cancel_idle_timer()
        self._reject_pending(WorkerTerminatedError.exited(exit_code))

    def _reject_pending(self, error: MemplaneError) -> None:
        pending, self._pending = self._pending, {}
        for request in pending.values():
            request.timeout_handle.cancel()
            if not request.future.done():
                request.future.set_exception(error)

    def _bind_loop(self) -> None:
        """Attach to the running loop, dropping a worker left on a dead one."""
        loop = asyncio.get_running_loop()
        if self._loop is loop:
            return
        if self._loop is not None and self._worker is not None:
            log.debug("embedding.loop_changed")
            self._worker.stop()
        self._loop = loop
        self._worker = None
        self._ready = False
        self._init_task = None
        self._idle_handle = None
        self._pending = {}

    def _on_init_done(self, task: asyncio.Task[None]) -> None:
        # Marks the exception retrieved when no caller is left awaiting it
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.debug("embedding.init_failed", error=str(exc))

    # --- Idle release ---

    def _touch(self) -> None:
        self._last_used = time.monotonic()
        self._last_used_at = datetime.now(UTC)
        self._cancel_idle_timer()
        if self._loop is not None:
            self._idle_handle = self._loop.call_later(
                self._config.idle_timeout_sec, self._on_idle
            )

    def _cancel_idle_timer(self) -> None:
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None

    def _on_idle(self) -> None:
        self._idle_handle = None
        if self._worker is None or self._loop is None:
            return
        idle_for = time.monotonic() - (self._last_used or 0.0)
        timeout = self._config.idle_timeout_sec
        if self._pending or idle_for < timeout:
            delay = timeout if self._pending else timeout - idle_for
            self._idle_handle = self._loop.call_later(delay, self._on_idle)
            return
        log.info("embedding.idle_release", idle_sec=round(idle_for, 1))
        self._release_task = self._loop.create_task(self.release())
