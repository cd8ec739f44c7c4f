"""Vector math and the on-disk float32 codec.

Vectors are stored as little-endian float32 blobs. Similarity is computed
in float64 so that stored and freshly generated vectors compare the same
way regardless of the buffer they came from.
"""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np

from memplane.config.constants import VECTOR_DTYPE, VECTOR_ITEM_SIZE
from memplane.core.errors import DimensionMismatchError

VectorLike = np.ndarray | Sequence[float]


def _as_array(v: VectorLike) -> np.ndarray:
    return np.asarray(v, dtype=np.float64).reshape(-1)


def cosine_similarity(a: VectorLike, b: VectorLike) -> float:
    """Cosine of the angle between ``a`` and ``b``, clipped to [-1, 1].

    Returns 0.0 when either vector has zero norm.

    Raises:
        DimensionMismatchError: If the vectors differ in length.
    """
    va = _as_array(a)
    vb = _as_array(b)
    if va.shape[0] != vb.shape[0]:
        raise DimensionMismatchError.between(va.shape[0], vb.shape[0])

    norm_a = float(np.linalg.norm(va))
    norm_b = float(np.linalg.norm(vb))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    sim = float(np.dot(va, vb)) / (norm_a * norm_b)
    return max(-1.0, min(1.0, sim))


def cosine_similarities(query: VectorLike, matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of ``query`` against every row of ``matrix``.

    Rows with zero norm score 0.0.
    """
    q = _as_array(query)
    if matrix.size == 0:
        return np.zeros(0, dtype=np.float64)
    m = np.asarray(matrix, dtype=np.float64)
    if m.shape[1] != q.shape[0]:
        raise DimensionMismatchError.between(q.shape[0], m.shape[1])

    q_norm = float(np.linalg.norm(q))
    if q_norm == 0.0:
        return np.zeros(m.shape[0], dtype=np.float64)
    row_norms = np.linalg.norm(m, axis=1)
    denom = row_norms * q_norm
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(denom > 0, (m @ q) / np.where(denom > 0, denom, 1.0), 0.0)
    return np.clip(sims, -1.0, 1.0)


def normalize(v: VectorLike) -> np.ndarray:
    """L2-normalise to float32. Zero vectors come back unchanged."""
    arr = np.asarray(v, dtype=np.float32).reshape(-1)
    norm = float(np.linalg.norm(arr))
    if norm > 0:
        arr = arr / norm
    return arr.astype(np.float32, copy=False)


def validate_dimension(v: VectorLike, dimension: int) -> None:
    """Raise DimensionMismatchError unless ``v`` has ``dimension`` components."""
    actual = len(v)
    if actual != dimension:
        raise DimensionMismatchError.between(dimension, actual)


def vector_to_bytes(v: VectorLike) -> bytes:
    """Encode as little-endian float32."""
    return np.asarray(v, dtype=VECTOR_DTYPE).reshape(-1).tobytes()


def bytes_to_vector(buf: bytes | bytearray | memoryview) -> np.ndarray:
    """Decode a little-endian float32 blob.

    Accepts memoryview slices starting at any byte offset; the result is
    always a fresh, aligned array.

    Raises:
        DimensionMismatchError: If the length is not a multiple of 4.
    """
    raw = bytes(buf) if isinstance(buf, memoryview) else buf
    if len(raw) % VECTOR_ITEM_SIZE != 0:
        raise DimensionMismatchError.bad_buffer(len(raw))
    return np.frombuffer(raw, dtype=VECTOR_DTYPE).astype(np.float32)
