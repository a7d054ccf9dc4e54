"""Bulk indexing of a tool catalog into a :class:`~aumai_toolrouter.core.ToolIndex`."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence

import structlog

from aumai_toolrouter.client import EmbeddingClient
from aumai_toolrouter.core import ToolIndex, build_tool_text
from aumai_toolrouter.models import IndexedEntry, IndexingStats, IndexingStatus, ToolDescriptor

__all__ = ["Indexer", "IndexingListener"]

logger = structlog.get_logger()

IndexingListener = Callable[[IndexingStatus, IndexingStats], None]


class Indexer:
    """Embeds every tool of a catalog and upserts the successes into the index.

    A failed embedding is counted and logged; it never stops the pass. Each
    call to :meth:`index_tools` starts a new pass that supersedes the previous
    one: the index is cleared first and late results of the old pass are
    discarded.
    """

    def __init__(
        self,
        client: EmbeddingClient,
        index: ToolIndex,
        *,
        max_concurrency: int = 4,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._client = client
        self._index = index
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._generation = 0
        self._status = IndexingStatus.IDLE
        self._stats = IndexingStats()
        self._listeners: list[IndexingListener] = []

    @property
    def status(self) -> IndexingStatus:
        return self._status

    @property
    def stats(self) -> IndexingStats:
        return self._stats

    def subscribe(self, listener: IndexingListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self._status, self._stats)

    async def index_tools(self, tools: Sequence[ToolDescriptor]) -> IndexingStats:
        """Run one indexing pass over *tools*.

        Returns:
            The counters of this pass. If a newer pass started meanwhile the
            returned stats belong to this (superseded) pass only.
        """
        self._generation += 1
        generation = self._generation
        stats = IndexingStats(total_count=len(tools))

        self._index.clear()
        self._stats = stats
        self._status = IndexingStatus.INDEXING
        logger.info("tool_indexing_started", tools=len(tools), generation=generation)
        self._notify()

        async def index_one(tool: ToolDescriptor) -> None:
            text = build_tool_text(tool)
            async with self._semaphore:
                if generation != self._generation:
                    return
                try:
                    vector = await self._client.embed(text)
                    if generation != self._generation:
                        return
                    self._index.upsert(
                        IndexedEntry(
                            tool_name=tool.name,
                            server_id=tool.server_id,
                            description_text=text,
                            vector=vector,
                            model_id=self._client.model_id,
                        )
                    )
                except Exception as exc:  # noqa: BLE001
                    if generation != self._generation:
                        return
                    stats.failed_count += 1
                    stats.failed.append(tool.name)
                    logger.warning("tool_indexing_failed", tool=tool.name, error=str(exc))
                else:
                    stats.indexed_count += 1
                    stats.indexed.append(tool.name)
            if generation == self._generation:
                self._notify()

        await asyncio.gather(*(index_one(tool) for tool in tools))

        if generation == self._generation and stats.is_complete:
            self._status = IndexingStatus.COMPLETED
            logger.info(
                "tool_indexing_completed",
                indexed=stats.indexed_count,
                failed=stats.failed_count,
                generation=generation,
            )
            self._notify()
        return stats
