"""Shared test fixtures for aumai-toolrouter."""
from __future__ import annotations

import math
import re
import time
from collections.abc import AsyncIterator, Callable, Iterable

import pytest
import pytest_asyncio

from aumai_toolrouter.client import EmbeddingClient
from aumai_toolrouter.config import RouterSettings
from aumai_toolrouter.models import ModelStatus, ToolDescriptor
from aumai_toolrouter.session import SessionController
from aumai_toolrouter.worker import EmbeddingWorker, Pipeline, ProgressReporter


# ---------------------------------------------------------------------------
# Deterministic keyword embedding
# ---------------------------------------------------------------------------

# Each dimension is a concept; words that belong to the same concept land on
# the same axis, so related strings end up close to each other.
CONCEPTS: list[set[str]] = [
    {"save", "store", "write", "writefile", "persist"},
    {"read", "readfile", "recall", "retrieve", "fetch", "load"},
    {"memory", "remember", "knowledge"},
    {"file", "files", "filesystem", "path", "disk"},
    {"data", "information", "content", "contents"},
    {"email", "mail", "send", "message"},
]
_BIAS = 0.1


def keyword_vector(text: str) -> list[float]:
    """Unit-length concept histogram of *text* with a small constant bias axis."""
    tokens = re.findall(r"[a-z0-9]+", text.lower())
    vector = [float(sum(token in concept for token in tokens)) for concept in CONCEPTS]
    vector.append(_BIAS)
    magnitude = math.sqrt(sum(v * v for v in vector))
    return [v / magnitude for v in vector]


class StubLoader:
    """Pipeline loader that fakes download progress and embeds by keyword."""

    def __init__(
        self,
        *,
        failing_models: Iterable[str] = (),
        failing_texts: Iterable[str] = (),
        load_delay: float = 0.0,
        infer_delay: float = 0.0,
    ) -> None:
        self.failing_models = set(failing_models)
        self.failing_texts = set(failing_texts)
        self.load_delay = load_delay
        self.infer_delay = infer_delay
        self.calls: list[str] = []
        self.inferences: list[str] = []

    def __call__(self, model_id: str, report: ProgressReporter) -> Pipeline:
        self.calls.append(model_id)
        report(ModelStatus.DOWNLOADING, 0.5, f"Downloading {model_id}")
        report(ModelStatus.DOWNLOADING, 1.0, f"Downloading {model_id}")
        report(ModelStatus.LOADING, None, f"Loading {model_id}")
        if self.load_delay:
            time.sleep(self.load_delay)
        if model_id in self.failing_models:
            raise OSError(f"cannot load {model_id}")

        def pipeline(text: str) -> list[float]:
            self.inferences.append(text)
            if self.infer_delay:
                time.sleep(self.infer_delay)
            for marker in self.failing_texts:
                if marker in text:
                    raise RuntimeError(f"inference failed for {marker}")
            return keyword_vector(text)

        return pipeline


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def stub_loader() -> StubLoader:
    return StubLoader()


@pytest.fixture()
def loader_factory() -> type[StubLoader]:
    return StubLoader


@pytest.fixture()
def embed() -> Callable[[str], list[float]]:
    return keyword_vector


@pytest.fixture()
def settings() -> RouterSettings:
    return RouterSettings(
        primary_model="stub/primary",
        fallback_model="stub/fallback",
        top_k=5,
        similarity_threshold=0.5,
        max_concurrency=2,
        request_timeout=5.0,
        load_timeout=10.0,
    )


@pytest.fixture()
def make_client(settings: RouterSettings) -> Callable[..., EmbeddingClient]:
    """Build an EmbeddingClient backed by a thread worker using *loader*."""

    def factory(loader: StubLoader, **kwargs: float) -> EmbeddingClient:
        def make_worker() -> EmbeddingWorker:
            return EmbeddingWorker(
                loader,
                primary_model=settings.primary_model,
                fallback_model=settings.fallback_model,
            )

        options = {"request_timeout": settings.request_timeout, "load_timeout": settings.load_timeout}
        options.update(kwargs)
        return EmbeddingClient(make_worker, **options)

    return factory


@pytest_asyncio.fixture()
async def client(
    make_client: Callable[..., EmbeddingClient], stub_loader: StubLoader
) -> AsyncIterator[EmbeddingClient]:
    embedding_client = make_client(stub_loader)
    yield embedding_client
    await embedding_client.close()


@pytest_asyncio.fixture()
async def session(settings: RouterSettings, stub_loader: StubLoader) -> AsyncIterator[SessionController]:
    controller = SessionController.from_settings(settings, loader=stub_loader)
    yield controller
    await controller.close()


@pytest.fixture()
def sample_catalog() -> dict[str, list[dict[str, str]]]:
    return {
        "memory": [
            {"name": "store", "description": "Store a piece of information in memory"},
            {"name": "recall", "description": "Recall information from memory"},
        ],
        "filesystem": [
            {"name": "readFile", "description": "Read the contents of a file"},
            {"name": "writeFile", "description": "Write data to a file"},
        ],
    }


@pytest.fixture()
def sample_tools() -> list[ToolDescriptor]:
    return [
        ToolDescriptor(name="store", description="Store a piece of information in memory", server_id="memory"),
        ToolDescriptor(name="recall", description="Recall information from memory", server_id="memory"),
        ToolDescriptor(name="readFile", description="Read the contents of a file", server_id="filesystem"),
        ToolDescriptor(name="writeFile", description="Write data to a file", server_id="filesystem"),
    ]
