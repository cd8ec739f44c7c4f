"""Config module exports."""

from memplane.config.loader import MemplaneSettings, get_db_path, load_config
from memplane.config.models import (
    EmbeddingConfig,
    LoggingConfig,
    MemplaneConfig,
    MigrationConfig,
    SearchConfig,
    StorageConfig,
)

__all__ = [
    "load_config",
    "get_db_path",
    "MemplaneConfig",
    "MemplaneSettings",
    "EmbeddingConfig",
    "LoggingConfig",
    "MigrationConfig",
    "SearchConfig",
    "StorageConfig",
]
