"""Embedding worker: an isolated thread that owns the feature-extraction model.

The foreground never touches the model. It posts :class:`EmbedRequest`
messages to the worker inbox and receives progress, ready, complete and
error messages through the callback handed to :meth:`EmbeddingWorker.start`.
Requests are served one at a time in arrival order.
"""

from __future__ import annotations

import queue
import threading
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

import numpy as np
import structlog

from aumai_toolrouter.config import DEFAULT_FALLBACK_MODEL, DEFAULT_PRIMARY_MODEL
from aumai_toolrouter.errors import ModelLoadError, WorkerClosedError
from aumai_toolrouter.models import ModelStatus
from aumai_toolrouter.protocol import (
    CompleteMessage,
    EmbedRequest,
    ErrorMessage,
    ProgressMessage,
    ReadyMessage,
    ResetRequest,
)

__all__ = [
    "EmbeddingWorker",
    "LoadedModel",
    "LoadState",
    "ModelHolder",
    "Pipeline",
    "PipelineLoader",
    "ProgressReporter",
    "load_sentence_transformer",
]

logger = structlog.get_logger()

ProgressReporter = Callable[[ModelStatus, Union[float, None], Union[str, None]], None]
Pipeline = Callable[[str], Any]
PipelineLoader = Callable[[str, ProgressReporter], Pipeline]
PostMessage = Callable[[Union[ProgressMessage, ReadyMessage, CompleteMessage, ErrorMessage]], None]


class LoadState(Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    LOADED = "loaded"
    FAILED = "failed"


@dataclass(frozen=True)
class LoadedModel:
    model_id: str
    pipeline: Pipeline
    is_fallback: bool = False


class ModelHolder:
    """Constructs the pipeline at most once and shares it with every caller.

    Callers that arrive while a load is in flight block on the same future
    instead of starting a second load. A failed load stays failed until
    :meth:`reset` is called.
    """

    def __init__(self, loader: PipelineLoader, primary_model: str, fallback_model: str) -> None:
        self._loader = loader
        self._primary_model = primary_model
        self._fallback_model = fallback_model
        self._lock = threading.Lock()
        self._state = LoadState.UNINITIALIZED
        self._future: Future[LoadedModel] | None = None

    @property
    def state(self) -> LoadState:
        return self._state

    def get(self, report: ProgressReporter) -> LoadedModel:
        """Return the loaded model, loading it first if nobody has yet.

        Raises:
            ModelLoadError: When both the primary and the fallback model fail.
        """
        with self._lock:
            owner = self._state is LoadState.UNINITIALIZED
            if owner:
                self._future = Future()
                self._state = LoadState.LOADING
            future = self._future
        assert future is not None

        if owner:
            try:
                model = self._load(report)
            except ModelLoadError as exc:
                with self._lock:
                    self._state = LoadState.FAILED
                future.set_exception(exc)
            else:
                with self._lock:
                    self._state = LoadState.LOADED
                future.set_result(model)
        return future.result()

    def reset(self) -> bool:
        """Forget a failed load. Returns True if there was one to forget."""
        with self._lock:
            if self._state is not LoadState.FAILED:
                return False
            self._state = LoadState.UNINITIALIZED
            self._future = None
            return True

    def _load(self, report: ProgressReporter) -> LoadedModel:
        try:
            pipeline = self._loader(self._primary_model, report)
        except Exception as exc:  # noqa: BLE001
            primary_error = _describe(exc)
            logger.warning("primary_model_failed", model=self._primary_model, error=primary_error)
        else:
            return LoadedModel(model_id=self._primary_model, pipeline=pipeline)

        report(
            ModelStatus.LOADING,
            None,
            f"Primary model failed ({primary_error}); trying fallback {self._fallback_model}",
        )
        try:
            pipeline = self._loader(self._fallback_model, report)
        except Exception as exc:  # noqa: BLE001
            fallback_error = _describe(exc)
            logger.error("fallback_model_failed", model=self._fallback_model, error=fallback_error)
            raise ModelLoadError(primary_error, fallback_error) from exc
        return LoadedModel(model_id=self._fallback_model, pipeline=pipeline, is_fallback=True)


class EmbeddingWorker:
    """Thread-hosted embedding worker speaking the :mod:`aumai_toolrouter.protocol` messages."""

    def __init__(
        self,
        loader: PipelineLoader | None = None,
        *,
        primary_model: str = DEFAULT_PRIMARY_MODEL,
        fallback_model: str = DEFAULT_FALLBACK_MODEL,
        name: str = "aumai-embedding-worker",
    ) -> None:
        self._holder = ModelHolder(loader or load_sentence_transformer, primary_model, fallback_model)
        self._inbox: queue.Queue[EmbedRequest | ResetRequest | None] = queue.Queue()
        self._post: PostMessage | None = None
        self._thread: threading.Thread | None = None
        self._closed = False
        self._name = name
        self._announced = False
        self._load_attempt = 0

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def load_state(self) -> LoadState:
        return self._holder.state

    def start(self, post: PostMessage) -> None:
        """Start the worker thread; every outbound message is passed to *post*."""
        if self._thread is not None:
            raise RuntimeError("Embedding worker already started")
        self._post = post
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()
        logger.debug("embedding_worker_started", name=self._name)

    def post(self, request: EmbedRequest | ResetRequest) -> None:
        if self._thread is None or self._closed:
            raise WorkerClosedError("Embedding worker is not running")
        self._inbox.put(request)

    def terminate(self, timeout: float | None = 5.0) -> None:
        """Stop the worker after the request it is currently serving."""
        if self._thread is None or self._closed:
            return
        self._closed = True
        self._inbox.put(None)
        self._thread.join(timeout)

    def _run(self) -> None:
        while True:
            request = self._inbox.get()
            if request is None:
                break
            if isinstance(request, ResetRequest):
                self._load_attempt += 1
                if self._holder.reset():
                    self._announced = False
                    logger.info("embedding_model_reset")
                continue
            self._handle_embed(request)
        logger.debug("embedding_worker_stopped", name=self._name)

    def _emit(self, message: ProgressMessage | ReadyMessage | CompleteMessage | ErrorMessage) -> None:
        assert self._post is not None
        self._post(message)

    def _report(self, status: ModelStatus, progress: float | None, message: str | None) -> None:
        if progress is not None:
            progress = max(0.0, min(1.0, progress))
        self._emit(ProgressMessage(status=status, progress=progress, message=message))

    def _ensure_model(self) -> LoadedModel:
        if self._holder.state is LoadState.UNINITIALIZED:
            self._report(ModelStatus.INITIALIZING, None, "Initializing embedding model")
        model = self._holder.get(self._report)
        if not self._announced:
            self._announced = True
            if model.is_fallback:
                status, text = ModelStatus.FALLBACK, f"Using fallback model {model.model_id}"
            else:
                status, text = ModelStatus.READY, f"Model {model.model_id} loaded and ready"
            logger.info("embedding_model_ready", model=model.model_id, fallback=model.is_fallback)
            self._emit(ReadyMessage(status=status, model_id=model.model_id, message=text))
        return model

    def _handle_embed(self, request: EmbedRequest) -> None:
        try:
            model = self._ensure_model()
        except ModelLoadError as exc:
            self._emit(
                ErrorMessage(
                    request_id=request.request_id,
                    text=request.text,
                    message=exc.message,
                    fatal=True,
                    primary_error=exc.primary_error,
                    fallback_error=exc.fallback_error,
                    load_attempt=self._load_attempt,
                )
            )
            return

        try:
            embedding = _to_vector(model.pipeline(request.text))
        except Exception as exc:  # noqa: BLE001
            logger.warning("embedding_inference_failed", request_id=request.request_id, error=_describe(exc))
            self._emit(
                ErrorMessage(request_id=request.request_id, text=request.text, message=_describe(exc))
            )
            return
        self._emit(CompleteMessage(request_id=request.request_id, embedding=embedding))


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


def _to_vector(output: Any) -> list[float]:
    """Flatten pipeline output to a list of floats, rejecting anything malformed."""
    array = np.asarray(output, dtype=np.float64)
    if array.ndim == 2 and array.shape[0] == 1:
        array = array[0]
    if array.ndim != 1 or array.size == 0:
        raise ValueError(f"Expected a non-empty 1-D embedding, got shape {array.shape}")
    if not np.all(np.isfinite(array)):
        raise ValueError("Embedding contains non-finite values")
    return array.tolist()


def _download_progress(model_id: str, report: ProgressReporter) -> type:
    from tqdm.auto import tqdm

    class _ReportingTqdm(tqdm):  # type: ignore[misc]
        def update(self, n: float | None = 1) -> bool | None:
            displayed = super().update(n)
            if self.total:
                fraction = min(self.n / self.total, 1.0)
                report(
                    ModelStatus.DOWNLOADING,
                    fraction,
                    f"Downloading model {model_id}: {round(fraction * 100)}%",
                )
            return displayed

    return _ReportingTqdm


def load_sentence_transformer(model_id: str, report: ProgressReporter) -> Pipeline:
    """Download and load *model_id* with sentence-transformers.

    The returned pipeline mean-pools token embeddings (the pooling head both
    default models ship with) and L2-normalises the result.
    """
    from huggingface_hub import snapshot_download
    from sentence_transformers import SentenceTransformer

    report(ModelStatus.DOWNLOADING, 0.0, f"Downloading model {model_id}")
    local_path = snapshot_download(model_id, tqdm_class=_download_progress(model_id, report))
    report(ModelStatus.LOADING, None, f"Loading model {model_id}")
    model = SentenceTransformer(local_path)

    def extract(text: str) -> Any:
        return model.encode(
            text,
            convert_to_numpy=True,
            normalize_embeddings=True,
            show_progress_bar=False,
        )

    return extract
