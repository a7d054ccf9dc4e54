"""AumAI Toolrouter: semantic routing of free-text requests to MCP tools."""

from aumai_toolrouter.client import EmbeddingClient
from aumai_toolrouter.config import RouterSettings, load_settings
from aumai_toolrouter.core import CosineSimilarity, ToolIndex, build_tool_text
from aumai_toolrouter.indexer import Indexer
from aumai_toolrouter.models import (
    ChatMessage,
    IndexedEntry,
    IndexingStats,
    IndexingStatus,
    MatchResult,
    McpStatus,
    ModelProgress,
    ModelStatus,
    RouteResult,
    ToolDescriptor,
)
from aumai_toolrouter.router import Router
from aumai_toolrouter.session import SessionController, SessionSnapshot
from aumai_toolrouter.worker import EmbeddingWorker

__version__ = "0.1.0"

__all__ = [
    "ChatMessage",
    "CosineSimilarity",
    "EmbeddingClient",
    "EmbeddingWorker",
    "IndexedEntry",
    "Indexer",
    "IndexingStats",
    "IndexingStatus",
    "MatchResult",
    "McpStatus",
    "ModelProgress",
    "ModelStatus",
    "RouteResult",
    "Router",
    "RouterSettings",
    "SessionController",
    "SessionSnapshot",
    "ToolDescriptor",
    "ToolIndex",
    "build_tool_text",
    "load_settings",
]
