"""Tests for host entity tables."""

import json

from memplane.semantic.models import Embeddable
from memplane.storage.models import Agent, DocSection, Importance, Memory, MemoryType


class TestMemory:
    def test_defaults(self) -> None:
        memory = Memory(title="Retry uploads", description="Use backoff", project="api")
        assert memory.type == MemoryType.OBSERVATION.value
        assert memory.importance == Importance.MEDIUM.value
        assert memory.get_tags() == []

    def test_tags_parsed(self) -> None:
        memory = Memory(title="t", description="d", project="p", tags=json.dumps(["a", "b"]))
        assert memory.get_tags() == ["a", "b"]

    def test_embedding_text_joins_title_and_description(self) -> None:
        memory = Memory(id=3, title="Retry uploads", description="Use backoff", project="api")
        assert memory.embedding_text() == "Retry uploads Use backoff"
        assert memory.entity_id == 3

    def test_satisfies_protocols(self) -> None:
        memory = Memory(title="t", description="d", project="p")
        assert isinstance(memory, Embeddable)


class TestDocSection:
    def test_embedding_text(self) -> None:
        section = DocSection(id=1, library_id="/lib/x", title="Install", content="pip install x")
        assert section.embedding_text() == "Install pip install x"
        assert section.entity_id == 1


class TestAgent:
    def test_embedding_text(self) -> None:
        agent = Agent(id=2, name="reviewer", description="Reviews diffs", content="Be strict")
        assert agent.embedding_text() == "reviewer Reviews diffs Be strict"
        assert agent.category == "general"
