"""Tests for config/loader.py module.

Covers:
- _load_yaml() function
- _deep_merge() function
- load_config() precedence: kwargs > env > repo yaml > global yaml
- get_db_path() function
"""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from memplane.config.loader import _deep_merge, _load_yaml, get_db_path, load_config
from memplane.config.models import MemplaneConfig
from memplane.core.errors import ConfigError, ErrorCode


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the global config at an empty location and clear MEMPLANE__ env vars."""
    for key in list(os.environ):
        if key.upper().startswith("MEMPLANE__"):
            monkeypatch.delenv(key)
    global_path = tmp_path / "global" / "config.yaml"
    monkeypatch.setattr("memplane.config.loader.GLOBAL_CONFIG_PATH", global_path)
    return global_path


def _write_repo_config(repo: Path, content: str) -> None:
    (repo / ".memplane").mkdir(parents=True, exist_ok=True)
    (repo / ".memplane" / "config.yaml").write_text(content)


class TestLoadYaml:
    """Tests for _load_yaml function."""

    def test_returns_empty_dict_for_missing_file(self, tmp_path: Path) -> None:
        assert _load_yaml(tmp_path / "nonexistent.yaml") == {}

    def test_loads_valid_yaml(self, tmp_path: Path) -> None:
        yaml_file = tmp_path / "config.yaml"
        yaml_file.write_text("search:\n  min_similarity: 0.4\n")
        assert _load_yaml(yaml_file) == {"search": {"min_similarity": 0.4}}

    def test_returns_empty_for_empty_file(self, tmp_path: Path) -> None:
        yaml_file = tmp_path / "empty.yaml"
        yaml_file.write_text("")
        assert _load_yaml(yaml_file) == {}

    def test_raises_config_error_for_invalid_yaml(self, tmp_path: Path) -> None:
        yaml_file = tmp_path / "invalid.yaml"
        yaml_file.write_text("logging:\n  level:\n    - invalid: [unclosed")

        with pytest.raises(ConfigError) as exc_info:
            _load_yaml(yaml_file)
        assert exc_info.value.code == ErrorCode.CONFIG_PARSE_ERROR

    def test_raises_config_error_for_non_mapping(self, tmp_path: Path) -> None:
        yaml_file = tmp_path / "list.yaml"
        yaml_file.write_text("- a\n- b\n")

        with pytest.raises(ConfigError, match="mapping"):
            _load_yaml(yaml_file)


class TestDeepMerge:
    """Tests for _deep_merge function."""

    def test_override_wins(self) -> None:
        assert _deep_merge({"a": 1, "b": 2}, {"b": 3}) == {"a": 1, "b": 3}

    def test_nested_dicts_merge(self) -> None:
        base = {"search": {"bm25_weight": 0.5, "semantic_weight": 0.5}}
        override = {"search": {"semantic_weight": 0.7}}
        assert _deep_merge(base, override) == {
            "search": {"bm25_weight": 0.5, "semantic_weight": 0.7}
        }

    def test_base_not_mutated(self) -> None:
        base = {"a": {"x": 1}}
        _deep_merge(base, {"a": {"x": 2}})
        assert base == {"a": {"x": 1}}


class TestLoadConfig:
    """Tests for load_config precedence and validation."""

    def test_defaults_without_files(self, tmp_path: Path) -> None:
        config = load_config(tmp_path)

        assert isinstance(config, MemplaneConfig)
        assert config.embedding.model_name == "BAAI/bge-small-en-v1.5"
        assert config.embedding.dimension == 384
        assert config.search.min_similarity == 0.3
        assert config.migration.batch_size == 50

    def test_repo_yaml_applied(self, tmp_path: Path) -> None:
        _write_repo_config(tmp_path, "embedding:\n  idle_timeout_sec: 60\n")
        assert load_config(tmp_path).embedding.idle_timeout_sec == 60.0

    def test_repo_yaml_overrides_global(self, tmp_path: Path, _isolated_config: Path) -> None:
        _isolated_config.parent.mkdir(parents=True)
        _isolated_config.write_text("search:\n  default_limit: 20\n  min_similarity: 0.5\n")
        _write_repo_config(tmp_path, "search:\n  default_limit: 5\n")

        config = load_config(tmp_path)

        assert config.search.default_limit == 5
        assert config.search.min_similarity == 0.5

    def test_env_overrides_yaml(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        _write_repo_config(tmp_path, "search:\n  semantic_weight: 0.2\n")
        monkeypatch.setenv("MEMPLANE__SEARCH__SEMANTIC_WEIGHT", "0.8")

        assert load_config(tmp_path).search.semantic_weight == 0.8

    def test_env_bool(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MEMPLANE__STORAGE__VECTOR_INDEX", "false")
        assert load_config(tmp_path).storage.vector_index is False

    def test_kwargs_override_env(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MEMPLANE__MIGRATION__BATCH_SIZE", "10")
        config = load_config(tmp_path, migration={"batch_size": 25})
        assert config.migration.batch_size == 25

    def test_invalid_value_raises_config_error(self, tmp_path: Path) -> None:
        _write_repo_config(tmp_path, "embedding:\n  dimension: 0\n")

        with pytest.raises(ConfigError) as exc_info:
            load_config(tmp_path)

        assert exc_info.value.code == ErrorCode.CONFIG_INVALID_VALUE
        assert "embedding" in exc_info.value.details["field"]

    def test_both_weights_zero_rejected(self, tmp_path: Path) -> None:
        _write_repo_config(tmp_path, "search:\n  bm25_weight: 0\n  semantic_weight: 0\n")

        with pytest.raises(ConfigError):
            load_config(tmp_path)


class TestGetDbPath:
    def test_default_location(self, tmp_path: Path) -> None:
        assert get_db_path(tmp_path) == tmp_path / ".memplane" / "memplane.db"

    def test_relative_override_resolved_against_root(self, tmp_path: Path) -> None:
        config = MemplaneConfig.model_validate({"storage": {"db_path": "data/x.db"}})
        assert get_db_path(tmp_path, config) == tmp_path / "data" / "x.db"

    def test_absolute_override_kept(self, tmp_path: Path) -> None:
        target = tmp_path / "elsewhere.db"
        config = MemplaneConfig.model_validate({"storage": {"db_path": str(target)}})
        assert get_db_path(tmp_path / "repo", config) == target
