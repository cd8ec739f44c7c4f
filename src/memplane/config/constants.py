"""Configuration constants.

This module contains truly constant values that should NOT be user-configurable.
These are storage-format constraints and implementation details.

For configurable values, see models.py (EmbeddingConfig, SearchConfig, etc.).
"""

# =============================================================================
# Search Maximums
# =============================================================================

SEARCH_MAX_LIMIT = 100
"""Maximum results for a single semantic or hybrid search."""

KNN_OVERFETCH = 2
"""Candidates fetched per requested result from the k-NN index before
similarity and scope filtering."""

HYBRID_OVERFETCH = 2
"""Semantic candidates fetched per requested hybrid result."""

# =============================================================================
# Storage Format
# =============================================================================

VECTOR_DTYPE = "<f4"
"""On-disk vector encoding: little-endian float32."""

VECTOR_ITEM_SIZE = 4
"""Bytes per stored vector component."""

ENTITY_TYPE_PATTERN = r"^[a-z][a-z0-9_]{0,47}$"
"""Entity type names become table name prefixes."""

MEMPLANE_DIR = ".memplane"
"""Per-project state directory."""

DB_FILENAME = "memplane.db"
"""Default database file inside MEMPLANE_DIR."""
