"""Session controller: the state the presentation layer renders.

:class:`SessionController` wires the embedding client, the indexer and the
router together, mirrors their status, reacts to catalog changes and keeps
the append-only chat transcript.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import json
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Any, Union

import structlog
from pydantic import BaseModel, Field

from aumai_toolrouter.client import EmbeddingClient
from aumai_toolrouter.config import RouterSettings
from aumai_toolrouter.core import ToolIndex
from aumai_toolrouter.errors import CatalogError, StateTransitionError
from aumai_toolrouter.indexer import Indexer
from aumai_toolrouter.models import (
    ChatMessage,
    IndexingStats,
    IndexingStatus,
    MatchResult,
    McpStatus,
    MessageType,
    ModelProgress,
    ModelStatus,
    ToolDescriptor,
)
from aumai_toolrouter.router import Router
from aumai_toolrouter.worker import EmbeddingWorker, PipelineLoader

__all__ = [
    "Catalog",
    "InvokeTool",
    "SessionController",
    "SessionSnapshot",
    "flatten_catalog",
]

logger = structlog.get_logger()

Catalog = Mapping[str, Sequence[Union[ToolDescriptor, Mapping[str, Any]]]]
InvokeTool = Callable[[str, str, dict[str, Any]], Union[Awaitable[Any], Any]]
SessionListener = Callable[["SessionSnapshot"], None]

_MCP_ORDER = [
    McpStatus.DISCONNECTED,
    McpStatus.STARTING,
    McpStatus.INSTALLING_DEPENDENCIES,
    McpStatus.READY,
]


def _mcp_transition_allowed(current: McpStatus, target: McpStatus) -> bool:
    if target is current or target is McpStatus.DISCONNECTED:
        return True
    if current is McpStatus.ERROR:
        return target is McpStatus.STARTING
    if target is McpStatus.ERROR:
        return current is not McpStatus.READY
    return _MCP_ORDER.index(target) > _MCP_ORDER.index(current)


def flatten_catalog(catalog: Catalog) -> list[ToolDescriptor]:
    """Flatten ``{server_id: [tool, ...]}`` into descriptors.

    Tools may be given as :class:`ToolDescriptor` or as plain mappings with
    ``name``, ``description`` and an optional ``input_schema`` (or the MCP
    spelling ``inputSchema``). When two servers publish the same tool name
    the first one wins.
    """
    tools: dict[str, ToolDescriptor] = {}
    for server_id, entries in catalog.items():
        for raw in entries:
            if isinstance(raw, ToolDescriptor):
                tool = raw if raw.server_id == server_id else raw.model_copy(update={"server_id": server_id})
            else:
                if not raw.get("name"):
                    raise CatalogError(f"A tool of server '{server_id}' has no name")
                tool = ToolDescriptor(
                    name=raw["name"],
                    description=raw.get("description") or "",
                    server_id=server_id,
                    input_schema=raw.get("input_schema", raw.get("inputSchema")),
                )
            if tool.name in tools:
                logger.warning(
                    "duplicate_tool_ignored",
                    tool=tool.name,
                    server=server_id,
                    kept_server=tools[tool.name].server_id,
                )
                continue
            tools[tool.name] = tool
    return list(tools.values())


class SessionSnapshot(BaseModel):
    """Everything the presentation layer needs to render one frame."""

    mcp_status: McpStatus
    model_status: ModelProgress
    indexing_status: IndexingStatus
    indexing_stats: IndexingStats
    tools: list[ToolDescriptor] = Field(default_factory=list)
    matching_tools: list[MatchResult] = Field(default_factory=list)
    messages: list[ChatMessage] = Field(default_factory=list)
    is_generating_preview: bool = False
    is_processing: bool = False
    user_input: str = ""


class SessionController:
    """Orchestrates model, indexing and tool-server status plus the transcript."""

    def __init__(
        self,
        client: EmbeddingClient,
        *,
        index: ToolIndex | None = None,
        settings: RouterSettings | None = None,
        invoke: InvokeTool | None = None,
    ) -> None:
        self._settings = settings or RouterSettings()
        self._client = client
        self._index = index if index is not None else ToolIndex()
        self._indexer = Indexer(client, self._index, max_concurrency=self._settings.max_concurrency)
        self._router = Router(
            client,
            self._index,
            top_k=self._settings.top_k,
            similarity_threshold=self._settings.similarity_threshold,
        )
        self._invoke = invoke

        self._mcp_status = McpStatus.DISCONNECTED
        self._tools: list[ToolDescriptor] = []
        self._matching_tools: list[MatchResult] = []
        self._messages: list[ChatMessage] = []
        self._message_ids = itertools.count(1)
        self._processing = 0
        self._listeners: list[SessionListener] = []
        self._reindex_tasks: set[asyncio.Task[IndexingStats]] = set()
        self.user_input = ""

        self._unsubscribe = [
            self._client.subscribe(self._on_model_status),
            self._indexer.subscribe(lambda _status, _stats: self._notify()),
            self._router.on_preview(lambda _active: self._notify()),
        ]

    @classmethod
    def from_settings(
        cls,
        settings: RouterSettings,
        *,
        loader: PipelineLoader | None = None,
        invoke: InvokeTool | None = None,
    ) -> SessionController:
        """Build a session with its own worker, client and index."""

        def make_worker() -> EmbeddingWorker:
            return EmbeddingWorker(
                loader,
                primary_model=settings.primary_model,
                fallback_model=settings.fallback_model,
            )

        client = EmbeddingClient(
            make_worker,
            request_timeout=settings.request_timeout,
            load_timeout=settings.load_timeout,
        )
        return cls(client, settings=settings, invoke=invoke)

    async def __aenter__(self) -> SessionController:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Exposed state
    # ------------------------------------------------------------------

    @property
    def mcp_status(self) -> McpStatus:
        return self._mcp_status

    @property
    def model_status(self) -> ModelProgress:
        return self._client.status

    @property
    def indexing_status(self) -> IndexingStatus:
        return self._indexer.status

    @property
    def indexing_stats(self) -> IndexingStats:
        return self._indexer.stats

    @property
    def tools(self) -> list[ToolDescriptor]:
        return list(self._tools)

    @property
    def matching_tools(self) -> list[MatchResult]:
        return list(self._matching_tools)

    @property
    def messages(self) -> list[ChatMessage]:
        return list(self._messages)

    @property
    def is_generating_preview(self) -> bool:
        return self._router.is_generating_preview

    @property
    def is_processing(self) -> bool:
        return self._processing > 0

    @property
    def index(self) -> ToolIndex:
        return self._index

    @property
    def router(self) -> Router:
        return self._router

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            mcp_status=self._mcp_status,
            model_status=self.model_status,
            indexing_status=self.indexing_status,
            indexing_stats=self.indexing_stats.model_copy(deep=True),
            tools=self.tools,
            matching_tools=self.matching_tools,
            messages=self.messages,
            is_generating_preview=self.is_generating_preview,
            is_processing=self.is_processing,
            user_input=self.user_input,
        )

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Call *listener* with a fresh snapshot after every state change."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            listener(snapshot)

    # ------------------------------------------------------------------
    # Tool provider and model events
    # ------------------------------------------------------------------

    def set_mcp_status(self, status: McpStatus | str) -> None:
        """Move the tool-server connection state.

        Raises:
            StateTransitionError: For a transition the state machine forbids.
        """
        target = McpStatus(status)
        if not _mcp_transition_allowed(self._mcp_status, target):
            raise StateTransitionError(
                f"Cannot move tool server status from {self._mcp_status.value} to {target.value}"
            )
        if target is not self._mcp_status:
            logger.info("mcp_status", previous=self._mcp_status.value, status=target.value)
            self._mcp_status = target
            self._notify()

    async def update_catalog(self, catalog: Catalog) -> IndexingStats:
        """Replace the tool catalog and re-index it.

        A pass that is still running for an older catalog is superseded:
        its remaining results are discarded.
        """
        self._tools = flatten_catalog(catalog)
        self._matching_tools = []
        logger.info("catalog_updated", servers=len(catalog), tools=len(self._tools))
        return await self._indexer.index_tools(self._tools)

    def _on_model_status(self, progress: ModelProgress) -> None:
        if (
            progress.is_usable
            and self._index.model_id is not None
            and progress.model_id != self._index.model_id
        ):
            logger.info("model_changed_reindexing", previous=self._index.model_id, current=progress.model_id)
            self._index.clear()
            task = asyncio.get_running_loop().create_task(self._indexer.index_tools(self._tools))
            self._reindex_tasks.add(task)
            task.add_done_callback(self._reindex_done)
        self._notify()

    def _reindex_done(self, task: asyncio.Task[IndexingStats]) -> None:
        self._reindex_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("reindex_failed", error=str(exc), exc_info=exc)

    async def retry_model(self) -> None:
        """Retry loading the model after a load failure, then re-index."""
        if self._client.status.status is not ModelStatus.ERROR:
            return
        self._client.retry()
        await self._indexer.index_tools(self._tools)

    # ------------------------------------------------------------------
    # Transcript
    # ------------------------------------------------------------------

    def _append(
        self,
        message_type: MessageType,
        content: str,
        *,
        tool_name: str | None = None,
        tool_result: Any = None,
    ) -> ChatMessage:
        message = ChatMessage(
            id=f"{message_type.value}-{next(self._message_ids)}",
            type=message_type,
            content=content,
            tool_name=tool_name,
            tool_result=tool_result,
        )
        self._messages.append(message)
        self._notify()
        return message

    async def handle_submit(self, text: str | None = None) -> list[ChatMessage]:
        """Route one user submission and record the outcome in the transcript.

        Args:
            text: The submitted text. Defaults to :attr:`user_input`.

        Returns:
            The messages appended for this submission.
        """
        submitted = self.user_input if text is None else text
        query = submitted.strip()
        if not query:
            return []

        start = len(self._messages)
        self._append(MessageType.USER, submitted)
        if self.user_input == submitted:
            self.user_input = ""

        self._processing += 1
        self._notify()
        try:
            await self._process(query)
        finally:
            self._processing -= 1
            self._notify()
        return self._messages[start:]

    async def _process(self, query: str) -> None:
        if self._mcp_status is not McpStatus.READY:
            self._append(
                MessageType.SYSTEM,
                f"Tool servers are not ready (status: {self._mcp_status.value}); "
                "your message was not routed.",
            )
            return

        result = await self._router.route(query)
        self._matching_tools = result.matches

        if result.error is not None:
            self._append(MessageType.SYSTEM, f"Error finding matching tools: {result.error}")
            return
        if not result.matches:
            if self._client.status.status is ModelStatus.ERROR:
                self._append(
                    MessageType.SYSTEM,
                    f"Semantic tool matching is unavailable: {self._client.status.message}",
                )
            else:
                self._append(MessageType.SYSTEM, "No relevant tool was found for your request.")
            return

        self._append(MessageType.SYSTEM, self._describe_matches(result.matches))
        if self._settings.auto_invoke and self._invoke is not None:
            await self.execute_tool(result.matches[0].tool_name, {})

    def _describe_matches(self, matches: list[MatchResult]) -> str:
        descriptions = {tool.name: tool.description for tool in self._tools}
        lines = [f"Found {len(matches)} matching tool{'s' if len(matches) != 1 else ''}:"]
        for match in matches:
            description = descriptions.get(match.tool_name) or "No description"
            lines.append(f"- {match.tool_name} ({round(match.similarity * 100)}% confidence): {description}")
        return "\n".join(lines)

    async def execute_tool(self, tool_name: str, args: dict[str, Any] | None = None) -> ChatMessage:
        """Invoke *tool_name* through the external capability.

        The outcome, result or error, is appended as a tool message; this
        method does not raise for invocation failures.
        """
        tool = next((candidate for candidate in self._tools if candidate.name == tool_name), None)
        if self._invoke is None:
            return self._append(
                MessageType.TOOL, "Error: no tool invocation capability is configured", tool_name=tool_name
            )
        if tool is None:
            return self._append(MessageType.TOOL, f"Error: unknown tool '{tool_name}'", tool_name=tool_name)

        try:
            outcome = self._invoke(tool.server_id, tool.name, dict(args or {}))
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except Exception as exc:  # noqa: BLE001
            logger.warning("tool_invocation_failed", tool=tool.name, server=tool.server_id, error=str(exc))
            return self._append(MessageType.TOOL, f"Error: {exc}", tool_name=tool.name)

        logger.info("tool_invoked", tool=tool.name, server=tool.server_id)
        return self._append(MessageType.TOOL, _format_result(outcome), tool_name=tool.name, tool_result=outcome)

    async def close(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []
        for task in list(self._reindex_tasks):
            task.cancel()
        await self._client.close()


def _format_result(result: Any) -> str:
    if isinstance(result, str):
        return result
    try:
        return json.dumps(result, indent=2, default=str)
    except (TypeError, ValueError):
        return repr(result)
