"""Pydantic models for aumai-toolrouter."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "ToolDescriptor",
    "IndexedEntry",
    "IndexingStats",
    "IndexingStatus",
    "ModelStatus",
    "ModelProgress",
    "McpStatus",
    "MatchResult",
    "RouteResult",
    "MessageType",
    "ChatMessage",
]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ModelStatus(str, Enum):
    """Lifecycle of the embedding model inside the worker."""

    NOT_INITIALIZED = "not-initialized"
    INITIALIZING = "initializing"
    DOWNLOADING = "downloading"
    LOADING = "loading"
    READY = "ready"
    FALLBACK = "fallback"
    ERROR = "error"


class IndexingStatus(str, Enum):
    IDLE = "idle"
    INDEXING = "indexing"
    COMPLETED = "completed"


class McpStatus(str, Enum):
    """Connection state of the external tool provider."""

    DISCONNECTED = "disconnected"
    STARTING = "starting"
    INSTALLING_DEPENDENCIES = "installing-dependencies"
    READY = "ready"
    ERROR = "error"


class MessageType(str, Enum):
    USER = "user"
    TOOL = "tool"
    SYSTEM = "system"


class ToolDescriptor(BaseModel):
    """A callable tool advertised by a tool server."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="Unique tool name, used as the index key")
    description: str = Field(default="", description="Natural-language description of what the tool does")
    server_id: str = Field(..., description="Identifier of the server that provides the tool")
    input_schema: dict[str, Any] | None = Field(
        default=None, description="JSON schema of the tool arguments, if the server publishes one"
    )


class IndexedEntry(BaseModel):
    """A tool together with the embedding of its description."""

    model_config = ConfigDict(frozen=True)

    tool_name: str = Field(..., description="Name of the indexed tool")
    server_id: str = Field(default="unknown", description="Server that provides the tool")
    description_text: str = Field(..., description="Exact text that was embedded")
    vector: list[float] = Field(..., min_length=1, description="Embedding of description_text")
    model_id: str | None = Field(default=None, description="Model that produced the vector")
    indexed_at: datetime = Field(default_factory=_utcnow)


class IndexingStats(BaseModel):
    """Counters for a single indexing pass."""

    indexed_count: int = 0
    failed_count: int = 0
    total_count: int = 0
    indexed: list[str] = Field(default_factory=list, description="Names of tools that were indexed")
    failed: list[str] = Field(default_factory=list, description="Names of tools whose embedding failed")

    @property
    def is_complete(self) -> bool:
        return self.indexed_count + self.failed_count == self.total_count


class ModelProgress(BaseModel):
    """Model status as reported to the presentation layer."""

    status: ModelStatus = ModelStatus.NOT_INITIALIZED
    progress: float | None = Field(default=None, ge=0.0, le=1.0)
    message: str | None = None
    model_id: str | None = None

    @property
    def is_usable(self) -> bool:
        return self.status in (ModelStatus.READY, ModelStatus.FALLBACK)


class MatchResult(BaseModel):
    """A tool that matched a query, with its cosine similarity."""

    tool_name: str
    similarity: float = Field(..., ge=-1.0, le=1.0)
    server_id: str = "unknown"
    description: str = ""


class RouteResult(BaseModel):
    """Outcome of routing one piece of user text."""

    query: str
    matches: list[MatchResult] = Field(default_factory=list)
    error: str | None = Field(default=None, description="Set when the query could not be embedded")


class ChatMessage(BaseModel):
    """One entry of the append-only chat transcript."""

    model_config = ConfigDict(frozen=True)

    id: str
    type: MessageType
    content: str
    tool_name: str | None = None
    tool_result: Any = None
    timestamp: datetime = Field(default_factory=_utcnow)
