"""Pydantic configuration models with env var support.

Configuration Hierarchy (highest to lowest precedence):
1. Direct kwargs to load_config()
2. Environment variables (MEMPLANE__SECTION__KEY)
3. Repo YAML (.memplane/config.yaml)
4. Global YAML (~/.config/memplane/config.yaml)
5. Built-in defaults (this file)

Environment Variable Format:
    MEMPLANE__<SECTION>__<KEY>=<VALUE>

Examples:
    MEMPLANE__LOGGING__LEVEL=DEBUG
    MEMPLANE__EMBEDDING__IDLE_TIMEOUT_SEC=60
    MEMPLANE__SEARCH__SEMANTIC_WEIGHT=0.6
    MEMPLANE__STORAGE__VECTOR_INDEX=false
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from memplane.config.constants import SEARCH_MAX_LIMIT

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class LogOutputConfig(BaseModel):
    """Single logging output configuration.

    Env vars: Not directly configurable via env (use YAML for multi-output).
    """

    format: Literal["json", "console"] = "console"
    destination: str = "stderr"  # stderr, stdout, or absolute file path
    level: LogLevel | None = None  # Inherits from parent if None

    @field_validator("destination")
    @classmethod
    def validate_destination(cls, v: str) -> str:
        if v in ("stderr", "stdout"):
            return v
        path = Path(v).expanduser()
        if not path.is_absolute():
            raise ValueError(f"File destination must be absolute path: {v}")
        return str(path)


class LoggingConfig(BaseModel):
    """Logging configuration.

    Env vars:
        MEMPLANE__LOGGING__LEVEL: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    level: LogLevel = Field(
        default="INFO",
        description="Root log level. DEBUG is verbose and may impact performance.",
    )
    outputs: list[LogOutputConfig] = Field(default_factory=lambda: [LogOutputConfig()])


class EmbeddingConfig(BaseModel):
    """Embedding model and worker configuration.

    Env vars:
        MEMPLANE__EMBEDDING__MODEL_NAME: fastembed model identifier
        MEMPLANE__EMBEDDING__DIMENSION: Vector length produced by the model
        MEMPLANE__EMBEDDING__REQUEST_TIMEOUT_SEC: Per-request worker timeout
        MEMPLANE__EMBEDDING__IDLE_TIMEOUT_SEC: Release the model after this long unused
        MEMPLANE__EMBEDDING__PRELOAD: Start loading the model at process start
    """

    model_name: str = Field(
        default="BAAI/bge-small-en-v1.5",
        description="fastembed model name. Changing it requires re-embedding every entity.",
    )
    dimension: int = Field(
        default=384,
        description="Vector dimension produced by the model. Fixed per deployment.",
    )
    max_text_chars: int = Field(
        default=512,
        description="Input text is truncated to this many characters before embedding.",
    )
    request_timeout_sec: float = Field(
        default=30.0,
        description="Timeout for a single embed request to the worker.",
    )
    init_timeout_sec: float = Field(
        default=60.0,
        description="Timeout for the model load (includes a first-run download).",
    )
    idle_timeout_sec: float = Field(
        default=300.0,
        description="Release the worker and model after this long without requests.",
    )
    queue_size: int = Field(
        default=256,
        description="Maximum requests queued for the worker before new ones are refused.",
    )
    cache_dir: str | None = Field(
        default=None,
        description="Model cache directory. Default: ~/.memplane/models.",
    )
    threads: int | None = Field(
        default=None,
        description="ONNX runtime threads. Default: half the CPU count.",
    )
    preload: bool = Field(
        default=False,
        description="Start loading the model in the background at process start.",
    )

    @field_validator("dimension", "max_text_chars", "queue_size")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"Must be positive, got {v}")
        return v

    @field_validator("request_timeout_sec", "init_timeout_sec", "idle_timeout_sec")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"Timeout must be positive, got {v}")
        return v


class SearchConfig(BaseModel):
    """Hybrid search defaults.

    Env vars:
        MEMPLANE__SEARCH__BM25_WEIGHT: Weight of the normalised keyword score
        MEMPLANE__SEARCH__SEMANTIC_WEIGHT: Weight of the cosine similarity
        MEMPLANE__SEARCH__MIN_SIMILARITY: Semantic matches below this are dropped
        MEMPLANE__SEARCH__DEFAULT_LIMIT: Results returned when no limit is given
    """

    bm25_weight: float = Field(default=0.5, ge=0.0, le=1.0)
    semantic_weight: float = Field(default=0.5, ge=0.0, le=1.0)
    min_similarity: float = Field(
        default=0.3,
        ge=0.0,
        le=1.0,
        description="TRADEOFF: Lower values add recall but surface loosely related entities.",
    )
    default_limit: int = Field(default=10, ge=1, le=SEARCH_MAX_LIMIT)

    @model_validator(mode="after")
    def validate_weights(self) -> "SearchConfig":
        if self.bm25_weight == 0 and self.semantic_weight == 0:
            raise ValueError("bm25_weight and semantic_weight cannot both be 0")
        return self


class MigrationConfig(BaseModel):
    """Embedding backfill configuration.

    Env vars:
        MEMPLANE__MIGRATION__BATCH_SIZE: Entities fetched per backfill round
        MEMPLANE__MIGRATION__AUTO_MIGRATE: Backfill lazily on first search
    """

    batch_size: int = Field(default=50, ge=1, le=1000)
    auto_migrate: bool = Field(
        default=True,
        description="Start a background backfill the first time an entity type is searched.",
    )


class StorageConfig(BaseModel):
    """Embedded database location and acceleration.

    Env vars:
        MEMPLANE__STORAGE__DB_PATH: Override the database location
        MEMPLANE__STORAGE__VECTOR_INDEX: Use sqlite-vec when it can be loaded
    """

    db_path: str | None = Field(
        default=None,
        description="Database file. Default: .memplane/memplane.db in the project root.",
    )
    vector_index: bool = Field(
        default=True,
        description="Mirror embeddings into a sqlite-vec index when the extension loads. "
        "Search falls back to an exact scan otherwise.",
    )


class DatabaseConfig(BaseModel):
    """Database connection configuration.

    Env vars:
        MEMPLANE__DATABASE__BUSY_TIMEOUT_MS: SQLite busy timeout
        MEMPLANE__DATABASE__MAX_RETRIES: Max retry attempts for locked DB
    """

    busy_timeout_ms: int = Field(
        default=30000,
        description="SQLite busy timeout (ms). How long to wait for locks. "
        "RISK: Too low causes failures under contention; too high delays errors.",
    )
    max_retries: int = Field(
        default=3,
        description="Max retry attempts for locked database errors.",
    )
    retry_base_delay_sec: float = Field(
        default=0.1,
        description="Base delay between retries (exponential backoff).",
    )


class MemplaneConfig(BaseModel):
    """Root configuration for memplane.

    All settings can be configured via:
    1. Environment variables: MEMPLANE__SECTION__KEY
    2. YAML config files (repo or global)
    3. Direct kwargs to load_config()
    """

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    migration: MigrationConfig = Field(default_factory=MigrationConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
