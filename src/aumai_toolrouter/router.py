"""Match free-text input against the tool index."""

from __future__ import annotations

from collections.abc import Callable

import structlog

from aumai_toolrouter.client import EmbeddingClient
from aumai_toolrouter.core import ToolIndex
from aumai_toolrouter.errors import ModelLoadError, ToolRouterError
from aumai_toolrouter.models import MatchResult, RouteResult

__all__ = ["Router", "PreviewListener"]

logger = structlog.get_logger()

PreviewListener = Callable[[bool], None]


class Router:
    """Ranks indexed tools by cosine similarity to the embedding of the user's text.

    Calls are independent of each other and may overlap. While at least one
    call is in flight the preview listeners have been told ``True``; they
    are told ``False`` once the last call settles, however it ends.
    """

    def __init__(
        self,
        client: EmbeddingClient,
        index: ToolIndex,
        *,
        top_k: int = 5,
        similarity_threshold: float = 0.5,
    ) -> None:
        self._client = client
        self._index = index
        self.top_k = top_k
        self.similarity_threshold = similarity_threshold
        self._in_flight = 0
        self._preview_listeners: list[PreviewListener] = []

    @property
    def is_generating_preview(self) -> bool:
        return self._in_flight > 0

    def on_preview(self, listener: PreviewListener) -> Callable[[], None]:
        self._preview_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._preview_listeners:
                self._preview_listeners.remove(listener)

        return unsubscribe

    def _notify_preview(self, active: bool) -> None:
        for listener in list(self._preview_listeners):
            listener(active)

    async def match(
        self,
        text: str,
        *,
        top_k: int | None = None,
        similarity_threshold: float | None = None,
    ) -> list[MatchResult]:
        """Return ranked matches for *text*; never raises for embedding failures."""
        result = await self.route(text, top_k=top_k, similarity_threshold=similarity_threshold)
        return result.matches

    async def route(
        self,
        text: str,
        *,
        top_k: int | None = None,
        similarity_threshold: float | None = None,
    ) -> RouteResult:
        """Embed *text* and query the index.

        An empty index, a model that is not ready, or a model that failed to
        load all give an empty result. Any other embedding failure is
        reported in :attr:`RouteResult.error`.
        """
        limit = self.top_k if top_k is None else top_k
        threshold = self.similarity_threshold if similarity_threshold is None else similarity_threshold

        if len(self._index) == 0:
            return RouteResult(query=text)
        if not self._client.status.is_usable:
            logger.debug("route_skipped_model_unavailable", status=self._client.status.status.value)
            return RouteResult(query=text)

        self._in_flight += 1
        if self._in_flight == 1:
            self._notify_preview(True)
        try:
            return await self._route(text, limit, threshold)
        finally:
            self._in_flight -= 1
            if self._in_flight == 0:
                self._notify_preview(False)

    async def _route(self, text: str, limit: int, threshold: float) -> RouteResult:
        try:
            vector = await self._client.embed(text)
        except ModelLoadError as exc:
            logger.warning("route_model_unavailable", error=exc.message)
            return RouteResult(query=text)
        except ToolRouterError as exc:
            logger.warning("route_embedding_failed", error=exc.message)
            return RouteResult(query=text, error=exc.message)

        if self._index.model_id != self._client.model_id:
            logger.warning(
                "route_index_stale",
                index_model=self._index.model_id,
                client_model=self._client.model_id,
            )
            return RouteResult(query=text)

        try:
            ranked = self._index.query_top_k(vector, limit, threshold)
        except ValueError as exc:
            logger.warning("route_query_failed", error=str(exc))
            return RouteResult(query=text, error=str(exc))

        matches = [
            MatchResult(
                tool_name=entry.tool_name,
                similarity=score,
                server_id=entry.server_id,
                description=entry.description_text,
            )
            for entry, score in ranked
        ]
        logger.debug("route_completed", query=text, matches=len(matches))
        return RouteResult(query=text, matches=matches)
