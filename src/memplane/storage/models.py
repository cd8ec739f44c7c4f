"""Host entity tables whose records get embeddings.

Only the columns the retrieval layer reads are modelled here; the CLI's
own CRUD owns the rest of the schema.
"""

import json
import time
from enum import Enum

from sqlmodel import Field, SQLModel


class MemoryType(str, Enum):
    OBSERVATION = "observation"
    DECISION = "decision"
    PATTERN = "pattern"
    BUGFIX = "bugfix"
    FEATURE = "feature"
    LIBRARY = "library"
    SNIPPET = "snippet"
    ANTI_PATTERN = "anti-pattern"


class Importance(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Memory(SQLModel, table=True):
    """A recorded observation, decision or pattern."""

    __tablename__ = "memories"

    id: int | None = Field(default=None, primary_key=True)
    type: str = Field(default=MemoryType.OBSERVATION.value, index=True)
    title: str
    description: str
    importance: str = Field(default=Importance.MEDIUM.value)
    project: str = Field(index=True)
    tags: str = Field(default="[]")  # JSON list
    created_at_epoch: float = Field(default_factory=time.time, index=True)

    @property
    def entity_id(self) -> int | None:
        return self.id

    def embedding_text(self) -> str:
        return f"{self.title} {self.description}"

    def get_tags(self) -> list[str]:
        """Parse tags JSON to list."""
        return json.loads(self.tags) if self.tags else []


class DocSection(SQLModel, table=True):
    """One section of cached library documentation."""

    __tablename__ = "doc_sections"

    id: int | None = Field(default=None, primary_key=True)
    library_id: str = Field(index=True)
    topic: str | None = Field(default=None, index=True)
    title: str
    content: str

    @property
    def entity_id(self) -> int | None:
        return self.id

    def embedding_text(self) -> str:
        return f"{self.title} {self.content}"


class Agent(SQLModel, table=True):
    """An agent or skill definition synced from disk."""

    __tablename__ = "agent_agents"

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(unique=True, index=True)
    description: str
    content: str = ""
    category: str = Field(default="general", index=True)

    @property
    def entity_id(self) -> int | None:
        return self.id

    def embedding_text(self) -> str:
        return f"{self.name} {self.description} {self.content}"
