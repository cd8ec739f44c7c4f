"""Core module exports."""

from memplane.core.errors import (
    ConfigError,
    DimensionMismatchError,
    EmbeddingError,
    ErrorCode,
    InternalError,
    MemplaneError,
    ModelUnavailableError,
    RequestTimeoutError,
    StorageError,
    StorageWriteFailedError,
    VectorIndexError,
    WorkerTerminatedError,
)
from memplane.core.logging import configure_logging, get_logger
from memplane.core.progress import migration_progress, pluralize, status

__all__ = [
    # Errors
    "MemplaneError",
    "ConfigError",
    "DimensionMismatchError",
    "EmbeddingError",
    "ErrorCode",
    "InternalError",
    "ModelUnavailableError",
    "RequestTimeoutError",
    "StorageError",
    "StorageWriteFailedError",
    "VectorIndexError",
    "WorkerTerminatedError",
    # Logging
    "configure_logging",
    "get_logger",
    # Progress
    "migration_progress",
    "pluralize",
    "status",
]
