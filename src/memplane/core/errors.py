"""memplane error types with typed error codes.

Error code ranges:
- 2xxx: Config
- 3xxx: Embedding (model, worker, vectors)
- 4xxx: Storage
- 9xxx: Internal
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any


class ErrorCode(IntEnum):
    """Typed error codes for programmatic handling."""

    # Config (2xxx)
    CONFIG_PARSE_ERROR = 2001
    CONFIG_INVALID_VALUE = 2002
    CONFIG_FILE_NOT_FOUND = 2004

    # Embedding (3xxx)
    EMBEDDING_DIMENSION_MISMATCH = 3001
    EMBEDDING_MODEL_UNAVAILABLE = 3002
    EMBEDDING_REQUEST_TIMEOUT = 3003
    EMBEDDING_WORKER_TERMINATED = 3004
    EMBEDDING_FAILED = 3005

    # Storage (4xxx)
    STORAGE_WRITE_FAILED = 4001
    VECTOR_INDEX_ERROR = 4002

    # Internal (9xxx)
    INTERNAL_ERROR = 9001
    INTERNAL_TIMEOUT = 9002


@dataclass(frozen=True, slots=True)
class MemplaneError(Exception):
    """Base error with structured context for CLI and log output."""

    code: ErrorCode
    message: str
    retryable: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def error_name(self) -> str:
        """String identifier for logging (e.g., 'CONFIG_PARSE_ERROR')."""
        return self.code.name

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON output."""
        return {
            "code": self.code.value,
            "error": self.error_name,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.error_name}: {self.message}"


class ConfigError(MemplaneError):
    """Configuration-related errors."""

    @classmethod
    def parse_error(cls, path: str, reason: str) -> "ConfigError":
        return cls(
            code=ErrorCode.CONFIG_PARSE_ERROR,
            message=f"Failed to parse config at {path}: {reason}",
            details={"path": path, "reason": reason},
        )

    @classmethod
    def invalid_value(cls, field: str, value: Any, reason: str) -> "ConfigError":
        return cls(
            code=ErrorCode.CONFIG_INVALID_VALUE,
            message=f"Invalid value for '{field}': {reason}",
            details={"field": field, "value": str(value), "reason": reason},
        )

    @classmethod
    def file_not_found(cls, path: str) -> "ConfigError":
        return cls(
            code=ErrorCode.CONFIG_FILE_NOT_FOUND,
            message=f"Config file not found: {path}",
            details={"path": path},
        )


class EmbeddingError(MemplaneError):
    """Embedding generation errors.

    Raised from the embedding service; callers on the write path turn these
    into a ``False`` return and callers on the read path into keyword-only
    results.
    """

    @classmethod
    def failed(cls, reason: str, **details: Any) -> "EmbeddingError":
        return cls(
            code=ErrorCode.EMBEDDING_FAILED,
            message=f"Embedding failed: {reason}",
            details=details,
        )


class DimensionMismatchError(EmbeddingError):
    """Vectors of differing or unexpected length."""

    @classmethod
    def between(cls, expected: int, actual: int) -> "DimensionMismatchError":
        return cls(
            code=ErrorCode.EMBEDDING_DIMENSION_MISMATCH,
            message=f"Vector dimension mismatch: expected {expected}, got {actual}",
            details={"expected": expected, "actual": actual},
        )

    @classmethod
    def bad_buffer(cls, byte_length: int) -> "DimensionMismatchError":
        return cls(
            code=ErrorCode.EMBEDDING_DIMENSION_MISMATCH,
            message=f"Buffer of {byte_length} bytes is not a whole number of float32 values",
            details={"byte_length": byte_length},
        )


class ModelUnavailableError(EmbeddingError):
    """The embedding model never loaded successfully."""

    @classmethod
    def load_failed(cls, model: str, reason: str) -> "ModelUnavailableError":
        return cls(
            code=ErrorCode.EMBEDDING_MODEL_UNAVAILABLE,
            message=f"Embedding model '{model}' is unavailable: {reason}",
            retryable=True,
            details={"model": model, "reason": reason},
        )


class RequestTimeoutError(EmbeddingError):
    """A worker request did not complete within its timeout."""

    @classmethod
    def after(cls, kind: str, timeout_sec: float, request_id: int) -> "RequestTimeoutError":
        return cls(
            code=ErrorCode.EMBEDDING_REQUEST_TIMEOUT,
            message=f"Worker request timeout ({kind}) after {timeout_sec:g}s",
            retryable=True,
            details={"kind": kind, "timeout_sec": timeout_sec, "request_id": request_id},
        )


class WorkerTerminatedError(EmbeddingError):
    """The embedding worker stopped while requests were pending."""

    @classmethod
    def exited(cls, exit_code: int) -> "WorkerTerminatedError":
        return cls(
            code=ErrorCode.EMBEDDING_WORKER_TERMINATED,
            message=f"Embedding worker exited with code {exit_code}",
            retryable=True,
            details={"exit_code": exit_code},
        )

    @classmethod
    def released(cls) -> "WorkerTerminatedError":
        return cls(
            code=ErrorCode.EMBEDDING_WORKER_TERMINATED,
            message="Embedding worker was released",
            retryable=True,
        )

    @classmethod
    def not_running(cls) -> "WorkerTerminatedError":
        return cls(
            code=ErrorCode.EMBEDDING_WORKER_TERMINATED,
            message="Embedding worker is not running",
            retryable=True,
        )


class StorageError(MemplaneError):
    """Embedding persistence errors."""


class StorageWriteFailedError(StorageError):
    """An embedding could not be written."""

    @classmethod
    def for_entity(cls, entity_type: str, entity_id: Any, reason: str) -> "StorageWriteFailedError":
        return cls(
            code=ErrorCode.STORAGE_WRITE_FAILED,
            message=f"Failed to store {entity_type} embedding for {entity_id}: {reason}",
            details={"entity_type": entity_type, "entity_id": str(entity_id), "reason": reason},
        )


class VectorIndexError(StorageError):
    """The accelerated vector index rejected an operation."""

    @classmethod
    def query_failed(cls, table: str, reason: str) -> "VectorIndexError":
        return cls(
            code=ErrorCode.VECTOR_INDEX_ERROR,
            message=f"Vector index query on {table} failed: {reason}",
            details={"table": table, "reason": reason},
        )


class InternalError(MemplaneError):
    """Internal/unexpected errors."""

    @classmethod
    def unexpected(cls, reason: str, **details: Any) -> "InternalError":
        return cls(
            code=ErrorCode.INTERNAL_ERROR,
            message=f"Internal error: {reason}",
            details=details,
        )


_ERRORS_BY_CODE: dict[ErrorCode, type[MemplaneError]] = {
    ErrorCode.EMBEDDING_DIMENSION_MISMATCH: DimensionMismatchError,
    ErrorCode.EMBEDDING_MODEL_UNAVAILABLE: ModelUnavailableError,
    ErrorCode.EMBEDDING_REQUEST_TIMEOUT: RequestTimeoutError,
    ErrorCode.EMBEDDING_WORKER_TERMINATED: WorkerTerminatedError,
    ErrorCode.EMBEDDING_FAILED: EmbeddingError,
}


def error_from_code(
    code: ErrorCode,
    message: str,
    *,
    retryable: bool = False,
    details: dict[str, Any] | None = None,
) -> MemplaneError:
    """Rebuild a typed error from its code (used for worker responses)."""
    error_cls = _ERRORS_BY_CODE.get(code, InternalError)
    return error_cls(code=code, message=message, retryable=retryable, details=details or {})
