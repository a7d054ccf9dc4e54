"""Foreground proxy for the embedding worker.

:class:`EmbeddingClient` turns the worker's message stream into awaitable
``embed`` calls. Each request gets a correlation id and its own future, so
many calls can be in flight at once and each resolves to the vector for its
own text. Worker messages are handed to the event loop with
``call_soon_threadsafe``; all client state is touched only from the loop.
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Callable

import structlog

from aumai_toolrouter.errors import (
    EmbeddingError,
    EmbeddingTimeoutError,
    ModelLoadError,
    WorkerClosedError,
)
from aumai_toolrouter.models import ModelProgress, ModelStatus
from aumai_toolrouter.protocol import (
    CompleteMessage,
    EmbedRequest,
    ErrorMessage,
    ProgressMessage,
    ReadyMessage,
    ResetRequest,
)
from aumai_toolrouter.worker import EmbeddingWorker

__all__ = ["EmbeddingClient", "StatusListener"]

logger = structlog.get_logger()

StatusListener = Callable[[ModelProgress], None]

_STATUS_RANK = {
    ModelStatus.NOT_INITIALIZED: 0,
    ModelStatus.INITIALIZING: 1,
    ModelStatus.DOWNLOADING: 2,
    ModelStatus.LOADING: 3,
    ModelStatus.READY: 4,
    ModelStatus.FALLBACK: 4,
    ModelStatus.ERROR: 5,
}


class EmbeddingClient:
    """Correlates ``embed`` calls with worker replies and tracks model status.

    Args:
        worker_factory: Builds the worker on first use.
        request_timeout: Seconds to wait for an embedding once the model has
            settled (loaded or failed).
        load_timeout: Seconds to wait for the model to settle.
    """

    def __init__(
        self,
        worker_factory: Callable[[], EmbeddingWorker] | None = None,
        *,
        request_timeout: float | None = 15.0,
        load_timeout: float | None = 300.0,
    ) -> None:
        self._worker_factory = worker_factory or EmbeddingWorker
        self._request_timeout = request_timeout
        self._load_timeout = load_timeout
        self._worker: EmbeddingWorker | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._pending: dict[str, asyncio.Future[list[float]]] = {}
        self._ids = itertools.count(1)
        self._status = ModelProgress()
        self._listeners: list[StatusListener] = []
        self._settled: asyncio.Event | None = None
        self._load_attempt = 0
        self._closed = False

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def status(self) -> ModelProgress:
        return self._status

    @property
    def model_id(self) -> str | None:
        """Model that produced the vectors, once one has loaded."""
        return self._status.model_id if self._status.is_usable else None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register *listener* and replay the current status to it.

        Returns:
            A callable that removes the listener.
        """
        self._listeners.append(listener)
        listener(self._status)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_status(self, progress: ModelProgress) -> None:
        current = self._status.status
        retrying = current is ModelStatus.ERROR and progress.status is ModelStatus.INITIALIZING
        if _STATUS_RANK[progress.status] < _STATUS_RANK[current] and not retrying:
            logger.debug("model_status_ignored", current=current.value, received=progress.status.value)
            return
        self._status = progress
        logger.debug(
            "model_status",
            status=progress.status.value,
            progress=progress.progress,
            message=progress.message,
        )
        for listener in list(self._listeners):
            listener(progress)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def embed(self, text: str) -> list[float]:
        """Embed *text* in the worker and return its vector.

        Raises:
            ModelLoadError: When neither model could be loaded.
            EmbeddingTimeoutError: When the worker does not answer in time.
            EmbeddingError: When inference fails for this text.
            WorkerClosedError: When the client was closed.
        """
        self._ensure_worker()
        assert self._worker is not None and self._loop is not None and self._settled is not None

        request_id = f"embed-{next(self._ids)}"
        future: asyncio.Future[list[float]] = self._loop.create_future()
        self._pending[request_id] = future
        try:
            self._worker.post(EmbedRequest(request_id=request_id, text=text))
            if not self._settled.is_set():
                settled_wait = asyncio.ensure_future(self._settled.wait())
                try:
                    done, _ = await asyncio.wait(
                        {settled_wait, future},
                        timeout=self._load_timeout,
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                finally:
                    settled_wait.cancel()
                if not done:
                    raise EmbeddingTimeoutError(
                        f"Embedding model did not load within {self._load_timeout}s", text=text
                    )
            try:
                return await asyncio.wait_for(future, self._request_timeout)
            except asyncio.TimeoutError as exc:
                raise EmbeddingTimeoutError(
                    f"Embedding generation timed out after {self._request_timeout}s", text=text
                ) from exc
        finally:
            self._pending.pop(request_id, None)

    def retry(self) -> None:
        """Ask the worker to forget a failed model load; the next request reloads."""
        if self._worker is None or self._status.status is not ModelStatus.ERROR:
            return
        assert self._settled is not None
        self._worker.post(ResetRequest())
        self._load_attempt += 1
        self._settled.clear()
        self._set_status(ModelProgress(status=ModelStatus.INITIALIZING, message="Retrying model load"))

    async def close(self) -> None:
        """Terminate the worker and fail every pending request."""
        if self._closed:
            return
        self._closed = True
        worker, self._worker = self._worker, None
        if worker is not None:
            await asyncio.to_thread(worker.terminate)
        for request_id, future in list(self._pending.items()):
            if not future.done():
                future.set_exception(WorkerClosedError(f"Embedding worker closed before {request_id} finished"))
        self._pending.clear()

    def _ensure_worker(self) -> None:
        if self._closed:
            raise WorkerClosedError("Embedding client is closed")
        if self._worker is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._settled = asyncio.Event()
        self._worker = self._worker_factory()
        self._set_status(ModelProgress(status=ModelStatus.INITIALIZING, message="Starting embedding worker"))
        self._worker.start(self._receive)

    # ------------------------------------------------------------------
    # Worker messages
    # ------------------------------------------------------------------

    def _receive(self, message: ProgressMessage | ReadyMessage | CompleteMessage | ErrorMessage) -> None:
        """Called on the worker thread; hops onto the event loop."""
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.debug("worker_message_dropped", kind=message.kind)
            return
        try:
            loop.call_soon_threadsafe(self._dispatch, message)
        except RuntimeError:
            logger.debug("worker_message_dropped", kind=message.kind)

    def _dispatch(self, message: ProgressMessage | ReadyMessage | CompleteMessage | ErrorMessage) -> None:
        if isinstance(message, ProgressMessage):
            self._set_status(
                ModelProgress(status=message.status, progress=message.progress, message=message.message)
            )
        elif isinstance(message, ReadyMessage):
            self._set_status(
                ModelProgress(status=message.status, message=message.message, model_id=message.model_id)
            )
            if self._settled is not None:
                self._settled.set()
        elif isinstance(message, CompleteMessage):
            future = self._pending.get(message.request_id)
            if future is None or future.done():
                logger.debug("late_embedding_dropped", request_id=message.request_id)
                return
            future.set_result(message.embedding)
        else:
            self._on_error(message)

    def _on_error(self, message: ErrorMessage) -> None:
        error: EmbeddingError
        if message.fatal:
            error = ModelLoadError(
                message.primary_error or message.message,
                message.fallback_error or message.message,
            )
            # requests queued ahead of a reset fail with the previous load's error
            if message.load_attempt < self._load_attempt:
                logger.debug("stale_load_error", request_id=message.request_id, attempt=message.load_attempt)
            else:
                if self._status.status is not ModelStatus.ERROR:
                    logger.error("embedding_model_unavailable", error=message.message)
                    self._set_status(ModelProgress(status=ModelStatus.ERROR, message=message.message))
                if self._settled is not None:
                    self._settled.set()
        else:
            error = EmbeddingError(message.message, text=message.text)

        future = self._pending.get(message.request_id) if message.request_id else None
        if future is None or future.done():
            logger.debug("late_error_dropped", request_id=message.request_id, error=message.message)
            return
        future.set_exception(error)
