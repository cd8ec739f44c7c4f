"""Embedding model backends.

A backend turns a batch of texts into raw vectors. It is constructed and
used only from the embedding worker thread, never from the event loop.
"""

from __future__ import annotations

import gc
import os
from collections.abc import Callable, Iterable, Sequence
from pathlib import Path
from typing import Protocol

import numpy as np
import structlog

from memplane.config.models import EmbeddingConfig

log = structlog.get_logger()

DEFAULT_CACHE_DIR = Path("~/.memplane/models").expanduser()


class EmbeddingBackend(Protocol):
    """Anything that maps texts to vectors."""

    def embed(self, texts: Sequence[str]) -> Iterable[Sequence[float]]: ...

    def close(self) -> None: ...


BackendFactory = Callable[[EmbeddingConfig], EmbeddingBackend]


def _detect_providers() -> list[str]:
    """Detect ONNX Runtime execution providers (GPU-aware)."""
    try:
        import onnxruntime as ort

        available = ort.get_available_providers()
        if "CUDAExecutionProvider" in available:
            return ["CUDAExecutionProvider", "CPUExecutionProvider"]
    except ImportError:
        pass
    return ["CPUExecutionProvider"]


class FastEmbedBackend:
    """fastembed ``TextEmbedding`` (ONNX) loaded on construction."""

    def __init__(self, config: EmbeddingConfig) -> None:
        from fastembed import TextEmbedding

        # Free memory before loading the ONNX model
        gc.collect()

        providers = _detect_providers()
        threads = config.threads or max(1, (os.cpu_count() or 2) // 2)
        cache_dir = Path(config.cache_dir).expanduser() if config.cache_dir else DEFAULT_CACHE_DIR

        self.model_name = config.model_name
        self._model: TextEmbedding | None = TextEmbedding(
            model_name=config.model_name,
            cache_dir=str(cache_dir),
            providers=providers,
            threads=threads,
        )
        log.info(
            "embedding.model_loaded",
            model=config.model_name,
            providers=providers,
            threads=threads,
        )

    def embed(self, texts: Sequence[str]) -> list[np.ndarray]:
        if self._model is None:
            raise RuntimeError("backend is closed")
        return list(self._model.embed(list(texts), batch_size=max(1, len(texts))))

    def close(self) -> None:
        self._model = None
        gc.collect()


def fastembed_backend(config: EmbeddingConfig) -> EmbeddingBackend:
    return FastEmbedBackend(config)
