"""Dedicated embedding worker thread.

The model lives entirely inside this thread: it is loaded, used and
released here, so inference never blocks the event loop. Requests arrive
on a bounded queue and are served one at a time; every request produces
exactly one response carrying the same ``request_id``.
"""

from __future__ import annotations

import queue
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal

import numpy as np
import structlog

from memplane.config.models import EmbeddingConfig
from memplane.core.errors import EmbeddingError, ErrorCode, MemplaneError
from memplane.semantic._internal.backends import BackendFactory, EmbeddingBackend
from memplane.semantic._internal.similarity import normalize, validate_dimension

log = structlog.get_logger()

RequestKind = Literal["init", "embed", "embed_batch"]

WORKER_THREAD_NAME = "memplane-embedder"

_STOP = object()


@dataclass(frozen=True, slots=True)
class WorkerRequest:
    request_id: int
    kind: RequestKind
    texts: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class WorkerResponse:
    request_id: int
    ok: bool
    vectors: tuple[np.ndarray, ...] = ()
    error_code: ErrorCode | None = None
    error: str | None = None
    duration_ms: float = 0.0


class EmbeddingWorker(threading.Thread):
    """Owns one embedding backend and serves requests from a queue.

    ``on_response`` is called from this thread for every request.
    ``on_exit(worker, exit_code)`` is called once when the thread ends:
    0 after :meth:`stop`, 1 when something escaped the request loop.
    """

    def __init__(
        self,
        config: EmbeddingConfig,
        backend_factory: BackendFactory,
        *,
        on_response: Callable[[WorkerResponse], None],
        on_exit: Callable[[EmbeddingWorker, int], None],
    ) -> None:
        super().__init__(name=WORKER_THREAD_NAME, daemon=True)
        self._config = config
        self._backend_factory = backend_factory
        self._on_response = on_response
        self._on_exit = on_exit
        self._queue: queue.Queue[object] = queue.Queue(maxsize=config.queue_size)
        self._stopping = threading.Event()
        self._backend: EmbeddingBackend | None = None
        self.exit_code: int | None = None

    def submit(self, request: WorkerRequest) -> None:
        """Queue a request without blocking.

        Raises:
            EmbeddingError: If the queue is full or the worker is stopping.
        """
        if self._stopping.is_set():
            raise EmbeddingError.failed("worker is stopping", request_id=request.request_id)
        try:
            self._queue.put_nowait(request)
        except queue.Full as e:
            raise EmbeddingError.failed(
                "worker queue is full",
                request_id=request.request_id,
                queue_size=self._config.queue_size,
            ) from e

    def stop(self) -> None:
        """Ask the thread to exit after the request it is serving."""
        self._stopping.set()
        try:
            self._queue.put_nowait(_STOP)
        except queue.Full:
            # Queued requests keep get() from blocking; the flag ends the loop
            pass

    def run(self) -> None:
        exit_code = 0
        try:
            while True:
                item = self._queue.get()
                if item is _STOP or self._stopping.is_set():
                    break
                assert isinstance(item, WorkerRequest)
                self._on_response(self._handle(item))
        except BaseException as e:  # noqa: BLE001
            exit_code = 1
            log.error("embedding.worker_died", error=repr(e))
        finally:
            self._close_backend()
            self.exit_code = exit_code
            self._on_exit(self, exit_code)

    def _ensure_backend(self) -> EmbeddingBackend:
        if self._backend is None:
            self._backend = self._backend_factory(self._config)
        return self._backend

    def _close_backend(self) -> None:
        backend, self._backend = self._backend, None
        if backend is None:
            return
        try:
            backend.close()
        except Exception as e:  # noqa: BLE001
            log.warning("embedding.backend_close_failed", error=str(e))

    def _handle(self, request: WorkerRequest) -> WorkerResponse:
        start = time.perf_counter()
        try:
            backend = self._ensure_backend()
            vectors: tuple[np.ndarray, ...] = ()
            if request.kind != "init":
                vectors = tuple(self._finish(v) for v in backend.embed(list(request.texts)))
                if len(vectors) != len(request.texts):
                    raise EmbeddingError.failed(
                        f"backend returned {len(vectors)} vectors for {len(request.texts)} texts"
                    )
        except MemplaneError as e:
            return self._failure(request, e.code, e.message, start)
        except Exception as e:  # noqa: BLE001
            return self._failure(request, ErrorCode.EMBEDDING_FAILED, f"{type(e).__name__}: {e}", start)

        return WorkerResponse(
            request_id=request.request_id,
            ok=True,
            vectors=vectors,
            duration_ms=(time.perf_counter() - start) * 1000,
        )

    def _finish(self, raw: object) -> np.ndarray:
        vector = normalize(np.asarray(raw, dtype=np.float32))
        validate_dimension(vector, self._config.dimension)
        return vector

    @staticmethod
    def _failure(
        request: WorkerRequest,
        code: ErrorCode,
        message: str,
        start: float,
    ) -> WorkerResponse:
        log.debug(
            "embedding.request_failed",
            request_id=request.request_id,
            kind=request.kind,
            error=message,
        )
        return WorkerResponse(
            request_id=request.request_id,
            ok=False,
            error_code=code,
            error=message,
            duration_ms=(time.perf_counter() - start) * 1000,
        )
