"""Root conftest.py for test configuration.

Ensures local src/ directory takes priority over any installed packages,
and provides a deterministic embedding backend so tests never load the
ONNX model.
"""

import hashlib
import sys
import threading
from collections.abc import Callable, Generator, Sequence
from pathlib import Path

import numpy as np
import pytest

# Insert local src directory at the beginning of sys.path
# This ensures that the local memplane package is used, not any installed one
_src_dir = Path(__file__).parent.parent / "src"
if str(_src_dir) not in sys.path:
    sys.path.insert(0, str(_src_dir))

from memplane.config.models import EmbeddingConfig, MemplaneConfig  # noqa: E402
from memplane.semantic import ops  # noqa: E402
from memplane.semantic._internal.service import EmbeddingService  # noqa: E402
from memplane.storage.database import Database  # noqa: E402

TEST_DIMENSION = 32


class HashingBackend:
    """Bag-of-words vectors: each word adds 1 to a hashed bucket.

    Texts sharing words get a positive cosine similarity; identical texts
    get identical vectors. ``block`` holds every embed call until set.
    """

    def __init__(self, dimension: int) -> None:
        self.dimension = dimension
        self.calls: list[list[str]] = []
        self.closed = False
        self.block = threading.Event()
        self.block.set()

    def embed(self, texts: Sequence[str]) -> list[np.ndarray]:
        self.block.wait()
        self.calls.append(list(texts))
        return [hash_vector(t, self.dimension) for t in texts]

    def close(self) -> None:
        self.closed = True


def hash_vector(text: str, dimension: int = TEST_DIMENSION) -> np.ndarray:
    vector = np.zeros(dimension, dtype=np.float32)
    for word in text.lower().split():
        bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % dimension
        vector[bucket] += 1.0
    return vector


class BackendRecorder:
    """Backend factory that remembers every backend it built."""

    def __init__(self, dimension: int = TEST_DIMENSION) -> None:
        self.dimension = dimension
        self.backends: list[HashingBackend] = []
        self.fail_with: Exception | None = None

    def __call__(self, config: EmbeddingConfig) -> HashingBackend:
        if self.fail_with is not None:
            raise self.fail_with
        backend = HashingBackend(self.dimension)
        self.backends.append(backend)
        return backend

    @property
    def latest(self) -> HashingBackend:
        return self.backends[-1]


def _stop_worker(service: EmbeddingService) -> None:
    worker = service._worker
    if worker is not None:
        worker.stop()
        worker.join(timeout=2.0)


@pytest.fixture
def backend_factory() -> BackendRecorder:
    return BackendRecorder()


@pytest.fixture
def hash_embed() -> Callable[[str], np.ndarray]:
    """Unit vector the test backend produces for a text."""

    def _embed(text: str) -> np.ndarray:
        v = hash_vector(text)
        norm = float(np.linalg.norm(v))
        return v / norm if norm > 0 else v

    return _embed


@pytest.fixture
def embedding_config() -> EmbeddingConfig:
    return EmbeddingConfig(
        dimension=TEST_DIMENSION,
        request_timeout_sec=2.0,
        init_timeout_sec=2.0,
        idle_timeout_sec=60.0,
    )


@pytest.fixture
def memplane_config(embedding_config: EmbeddingConfig) -> MemplaneConfig:
    return MemplaneConfig.model_validate(
        {
            "embedding": embedding_config.model_dump(),
            "storage": {"vector_index": False},
        }
    )


@pytest.fixture
def service(
    embedding_config: EmbeddingConfig, backend_factory: BackendRecorder
) -> Generator[EmbeddingService, None, None]:
    svc = EmbeddingService(embedding_config, backend_factory=backend_factory)
    yield svc
    _stop_worker(svc)


@pytest.fixture
def db(tmp_path: Path) -> Generator[Database, None, None]:
    """Fresh database without the vector extension."""
    database = Database(tmp_path / "memplane.db", load_vector_extension=False)
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture(autouse=True)
def _reset_semantic_singletons() -> Generator[None, None, None]:
    yield
    if ops._service is not None:
        _stop_worker(ops._service)
    ops._service = None
    ops.reset_indexes()
