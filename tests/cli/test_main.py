"""Tests for the memplane CLI commands."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from memplane.cli.main import cli
from memplane.storage.database import Database
from memplane.storage.models import Memory

runner = CliRunner()


def _json_payload(output: str) -> Any:
    """Last JSON document in the output (log lines may precede it)."""
    for line in reversed(output.strip().splitlines()):
        if line.startswith(("{", "[")):
            return json.loads(line)
    raise AssertionError(f"no JSON in output: {output!r}")


@pytest.fixture
def project(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, backend_factory: Any) -> Path:
    """Project root with a small-dimension config and the test backend."""
    for key in list(os.environ):
        if key.upper().startswith("MEMPLANE__"):
            monkeypatch.delenv(key)
    monkeypatch.setattr(
        "memplane.config.loader.GLOBAL_CONFIG_PATH", tmp_path / "global" / "config.yaml"
    )
    monkeypatch.setattr(
        "memplane.semantic._internal.service.fastembed_backend", backend_factory
    )

    root = tmp_path / "repo"
    (root / ".memplane").mkdir(parents=True)
    (root / ".memplane" / "config.yaml").write_text(
        "embedding:\n  dimension: 32\nstorage:\n  vector_index: false\n"
    )
    return root


def _add_memories(root: Path, *memories: Memory) -> None:
    db = Database(root / ".memplane" / "memplane.db", load_vector_extension=False)
    try:
        db.create_all()
        with db.session() as session:
            session.add_all(memories)
            session.commit()
    finally:
        db.dispose()


class TestCliGroup:
    def test_version(self) -> None:
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "memplane" in result.output
        assert "0.1.0" in result.output

    def test_help_lists_commands(self) -> None:
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        for name in ("status", "backfill", "skills"):
            assert name in result.output


class TestStatusCommand:
    def test_json_reports_missing_embeddings(self, project: Path) -> None:
        _add_memories(project, Memory(title="t", description="d", project="p"))

        result = runner.invoke(cli, ["status", str(project), "--json"])

        assert result.exit_code == 0, result.output
        payload = _json_payload(result.output)
        assert payload["dimension"] == 32
        assert payload["vector_index"] is False
        assert payload["entities"]["memory"] == {"embedded": 0, "missing": 1}
        assert payload["entities"]["doc"] == {"embedded": 0, "missing": 0}
        assert payload["service"]["ready"] is False

    def test_text_output(self, project: Path) -> None:
        result = runner.invoke(cli, ["status", str(project)])

        assert result.exit_code == 0, result.output
        assert "Vector index: exact scan" in result.output
        assert "memory: 0 embedded" in result.output

    def test_invalid_config_is_a_click_error(self, project: Path) -> None:
        (project / ".memplane" / "config.yaml").write_text("embedding:\n  dimension: -1\n")

        result = runner.invoke(cli, ["status", str(project)])

        assert result.exit_code == 1
        assert "CONFIG_INVALID_VALUE" in result.output


class TestBackfillCommand:
    def test_backfill_then_status_complete(self, project: Path, backend_factory: Any) -> None:
        _add_memories(
            project,
            *(Memory(title=f"note {i}", description="body", project="p") for i in range(3)),
        )

        result = runner.invoke(cli, ["backfill", str(project), "--entity", "memory"])

        assert result.exit_code == 0, result.output
        assert "3 embeddings created" in result.output
        status = _json_payload(runner.invoke(cli, ["status", str(project), "--json"]).output)
        assert status["entities"]["memory"] == {"embedded": 3, "missing": 0}

    def test_nothing_to_do(self, project: Path) -> None:
        result = runner.invoke(cli, ["backfill", str(project)])

        assert result.exit_code == 0, result.output
        for entity_type in ("memory", "doc", "agent"):
            assert f"{entity_type}: up to date" in result.output

    def test_model_failure_exits_nonzero(self, project: Path, backend_factory: Any) -> None:
        backend_factory.fail_with = RuntimeError("offline")

        result = runner.invoke(cli, ["backfill", str(project)])

        assert result.exit_code == 1
        assert "unavailable" in result.output

    def test_rejects_unknown_entity(self, project: Path) -> None:
        result = runner.invoke(cli, ["backfill", str(project), "--entity", "task"])
        assert result.exit_code == 2


class TestSkillsCommand:
    def test_reports_repeated_memories(self, project: Path) -> None:
        repeated = [
            Memory(title="retry flaky uploads", description="wrap calls with backoff", project="api")
            for _ in range(5)
        ]
        _add_memories(
            project,
            *repeated,
            Memory(title="rename billing module", description="split invoices", project="api"),
            Memory(title="retry flaky uploads", description="wrap calls with backoff", project="web"),
        )

        result = runner.invoke(
            cli, ["skills", str(project), "--project", "api", "--min-size", "5", "--json"]
        )

        assert result.exit_code == 0, result.output
        (cluster,) = _json_payload(result.output)
        assert cluster["label"] == "retry flaky uploads"
        assert cluster["size"] == 5
        assert cluster["member_ids"] == [1, 2, 3, 4, 5]

    def test_no_candidates_message(self, project: Path) -> None:
        _add_memories(project, Memory(title="one off", description="nothing else", project="p"))

        result = runner.invoke(cli, ["skills", str(project)])

        assert result.exit_code == 0, result.output
        assert "No clusters of 5+ among 1 memory" in result.output

    def test_threshold_validated(self, project: Path) -> None:
        result = runner.invoke(cli, ["skills", str(project), "--threshold", "1.5"])
        assert result.exit_code == 2
