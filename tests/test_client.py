"""Tests for the foreground embedding client."""
from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

from aumai_toolrouter.client import EmbeddingClient
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


class FakeWorker:
    """Worker double that records requests and answers only when told to."""

    def __init__(self) -> None:
        self.requests: list[EmbedRequest | ResetRequest] = []
        self.terminated = False
        self._post: Callable[[object], None] | None = None

    def start(self, post: Callable[[object], None]) -> None:
        self._post = post

    def post(self, request: EmbedRequest | ResetRequest) -> None:
        self.requests.append(request)

    def terminate(self, timeout: float | None = 5.0) -> None:
        self.terminated = True

    def reply(self, message: object) -> None:
        assert self._post is not None
        self._post(message)

    @property
    def embed_requests(self) -> list[EmbedRequest]:
        return [r for r in self.requests if isinstance(r, EmbedRequest)]


async def _until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met")
        await asyncio.sleep(0.001)


@pytest.fixture()
def fake_worker() -> FakeWorker:
    return FakeWorker()


def _fake_client(worker: FakeWorker, **kwargs: float) -> EmbeddingClient:
    options = {"request_timeout": 2.0, "load_timeout": 2.0}
    options.update(kwargs)
    return EmbeddingClient(lambda: worker, **options)  # type: ignore[arg-type,return-value]


# ---------------------------------------------------------------------------
# Correlation
# ---------------------------------------------------------------------------


class TestCorrelation:
    @pytest.mark.asyncio
    async def test_out_of_order_replies_reach_their_callers(self, fake_worker: FakeWorker) -> None:
        client = _fake_client(fake_worker)
        tasks = [asyncio.create_task(client.embed(text)) for text in ("a", "b", "c")]
        await _until(lambda: len(fake_worker.embed_requests) == 3)

        fake_worker.reply(ReadyMessage(status=ModelStatus.READY, model_id="fake"))
        for request in reversed(fake_worker.embed_requests):
            fake_worker.reply(CompleteMessage(request_id=request.request_id, embedding=[float(ord(request.text))]))

        assert await asyncio.gather(*tasks) == [[97.0], [98.0], [99.0]]
        assert client.pending_count == 0
        await client.close()

    @pytest.mark.asyncio
    async def test_request_ids_are_unique(self, fake_worker: FakeWorker) -> None:
        client = _fake_client(fake_worker)
        tasks = [asyncio.create_task(client.embed("same")) for _ in range(4)]
        await _until(lambda: len(fake_worker.embed_requests) == 4)
        ids = [request.request_id for request in fake_worker.embed_requests]
        assert len(set(ids)) == 4
        assert all(request_id.startswith("embed-") for request_id in ids)

        fake_worker.reply(ReadyMessage(status=ModelStatus.READY, model_id="fake"))
        for index, request in enumerate(fake_worker.embed_requests):
            fake_worker.reply(CompleteMessage(request_id=request.request_id, embedding=[float(index)]))
        assert await asyncio.gather(*tasks) == [[0.0], [1.0], [2.0], [3.0]]
        await client.close()

    @pytest.mark.asyncio
    async def test_concurrent_calls_with_real_worker(self, client: EmbeddingClient, embed) -> None:
        texts = ["save this data", "read a file", "send an email", "recall memory"]
        vectors = await asyncio.gather(*(client.embed(text) for text in texts))
        for text, vector in zip(texts, vectors):
            assert vector == pytest.approx(embed(text))


# ---------------------------------------------------------------------------
# Timeouts and late replies
# ---------------------------------------------------------------------------


class TestTimeouts:
    @pytest.mark.asyncio
    async def test_model_that_never_loads_times_out(self, fake_worker: FakeWorker) -> None:
        client = _fake_client(fake_worker, load_timeout=0.05)
        with pytest.raises(EmbeddingTimeoutError, match="did not load"):
            await client.embed("hello")
        assert client.pending_count == 0
        await client.close()

    @pytest.mark.asyncio
    async def test_request_times_out_after_model_settles(self, fake_worker: FakeWorker) -> None:
        client = _fake_client(fake_worker, request_timeout=0.05)
        task = asyncio.create_task(client.embed("hello"))
        await _until(lambda: len(fake_worker.embed_requests) == 1)
        fake_worker.reply(ReadyMessage(status=ModelStatus.READY, model_id="fake"))

        with pytest.raises(EmbeddingTimeoutError, match="timed out") as excinfo:
            await task
        assert excinfo.value.text == "hello"
        assert excinfo.value.retryable
        assert client.pending_count == 0

        # a reply that arrives after the timeout is dropped quietly
        fake_worker.reply(CompleteMessage(request_id=fake_worker.embed_requests[0].request_id, embedding=[1.0]))
        await asyncio.sleep(0.01)
        await client.close()

    @pytest.mark.asyncio
    async def test_slow_load_within_load_timeout_succeeds(self, make_client, loader_factory) -> None:
        loader = loader_factory(load_delay=0.2)
        client = make_client(loader, request_timeout=0.1, load_timeout=5.0)
        try:
            vector = await client.embed("store data")
            assert len(vector) == 7
        finally:
            await client.close()


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


class TestStatus:
    @pytest.mark.asyncio
    async def test_subscribe_replays_current_status(self, client: EmbeddingClient) -> None:
        seen: list[ModelProgress] = []
        client.subscribe(seen.append)
        assert [p.status for p in seen] == [ModelStatus.NOT_INITIALIZED]

    @pytest.mark.asyncio
    async def test_status_sequence_for_successful_load(self, client: EmbeddingClient) -> None:
        seen: list[ModelStatus] = []
        client.subscribe(lambda progress: seen.append(progress.status))
        await client.embed("hello")

        assert seen[0] is ModelStatus.NOT_INITIALIZED
        assert seen[1] is ModelStatus.INITIALIZING
        assert ModelStatus.DOWNLOADING in seen
        assert seen[-1] is ModelStatus.READY
        assert client.model_id == "stub/primary"
        assert client.status.is_usable

    @pytest.mark.asyncio
    async def test_fallback_status(self, make_client, loader_factory) -> None:
        client = make_client(loader_factory(failing_models={"stub/primary"}))
        try:
            await client.embed("hello")
            assert client.status.status is ModelStatus.FALLBACK
            assert client.model_id == "stub/fallback"
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_backward_transitions_are_ignored(self, fake_worker: FakeWorker) -> None:
        client = _fake_client(fake_worker)
        task = asyncio.create_task(client.embed("hello"))
        await _until(lambda: len(fake_worker.embed_requests) == 1)
        fake_worker.reply(ReadyMessage(status=ModelStatus.READY, model_id="fake"))
        fake_worker.reply(ProgressMessage(status=ModelStatus.DOWNLOADING, progress=0.3))
        fake_worker.reply(CompleteMessage(request_id=fake_worker.embed_requests[0].request_id, embedding=[1.0]))
        await task

        assert client.status.status is ModelStatus.READY
        assert client.model_id == "fake"
        await client.close()

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_notifications(self, client: EmbeddingClient) -> None:
        seen: list[ModelProgress] = []
        unsubscribe = client.subscribe(seen.append)
        unsubscribe()
        await client.embed("hello")
        assert len(seen) == 1


# ---------------------------------------------------------------------------
# Errors and recovery
# ---------------------------------------------------------------------------


class TestErrors:
    @pytest.mark.asyncio
    async def test_both_models_failing_is_fatal(self, make_client, loader_factory) -> None:
        client = make_client(loader_factory(failing_models={"stub/primary", "stub/fallback"}))
        try:
            with pytest.raises(ModelLoadError) as excinfo:
                await client.embed("hello")
            assert "cannot load stub/primary" in excinfo.value.primary_error
            assert "cannot load stub/fallback" in excinfo.value.fallback_error
            assert client.status.status is ModelStatus.ERROR
            assert client.model_id is None

            # later requests fail the same way without waiting for a load
            with pytest.raises(ModelLoadError):
                await client.embed("again")
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_retry_recovers_after_fatal_error(self, make_client, loader_factory) -> None:
        loader = loader_factory(failing_models={"stub/primary", "stub/fallback"})
        client = make_client(loader)
        try:
            with pytest.raises(ModelLoadError):
                await client.embed("hello")
            loader.failing_models.clear()

            client.retry()
            assert client.status.status is ModelStatus.INITIALIZING

            vector = await client.embed("hello")
            assert vector
            assert client.status.status is ModelStatus.READY
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_retry_without_error_is_noop(self, client: EmbeddingClient) -> None:
        client.retry()
        assert client.status.status is ModelStatus.NOT_INITIALIZED
        await client.embed("hello")
        client.retry()
        assert client.status.status is ModelStatus.READY

    @pytest.mark.asyncio
    async def test_inference_error_is_per_request(self, make_client, loader_factory) -> None:
        client = make_client(loader_factory(failing_texts={"boom"}))
        try:
            results = await asyncio.gather(
                client.embed("boom goes the tool"), client.embed("fine"), return_exceptions=True
            )
            assert isinstance(results[0], EmbeddingError)
            assert not isinstance(results[0], ModelLoadError)
            assert results[0].text == "boom goes the tool"
            assert isinstance(results[1], list)
            assert client.status.status is ModelStatus.READY
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_fatal_error_message_from_worker(self, fake_worker: FakeWorker) -> None:
        client = _fake_client(fake_worker)
        task = asyncio.create_task(client.embed("hello"))
        await _until(lambda: len(fake_worker.embed_requests) == 1)
        fake_worker.reply(
            ErrorMessage(
                request_id=fake_worker.embed_requests[0].request_id,
                text="hello",
                message="both failed",
                fatal=True,
                primary_error="p",
                fallback_error="f",
            )
        )
        with pytest.raises(ModelLoadError, match="Primary model failed: p; fallback model failed: f"):
            await task
        assert client.status.message == "both failed"
        await client.close()

    @pytest.mark.asyncio
    async def test_error_queued_before_retry_does_not_undo_it(self, fake_worker: FakeWorker) -> None:
        client = _fake_client(fake_worker, request_timeout=0.2, load_timeout=2.0)
        first = asyncio.create_task(client.embed("first"))
        second = asyncio.create_task(client.embed("second"))
        await _until(lambda: len(fake_worker.embed_requests) == 2)
        first_id, second_id = (request.request_id for request in fake_worker.embed_requests)

        fake_worker.reply(ErrorMessage(request_id=first_id, message="both failed", fatal=True))
        with pytest.raises(ModelLoadError):
            await first

        client.retry()
        assert isinstance(fake_worker.requests[-1], ResetRequest)
        fake_worker.reply(ErrorMessage(request_id=second_id, message="both failed", fatal=True))
        with pytest.raises(ModelLoadError):
            await second
        assert client.status.status is ModelStatus.INITIALIZING

        # the new request still waits on the load, not the shorter request timeout
        third = asyncio.create_task(client.embed("third"))
        await _until(lambda: len(fake_worker.embed_requests) == 3)
        await asyncio.sleep(0.4)
        assert not third.done()

        fake_worker.reply(ReadyMessage(status=ModelStatus.READY, model_id="fake"))
        fake_worker.reply(CompleteMessage(request_id=fake_worker.embed_requests[-1].request_id, embedding=[1.0]))
        assert await third == [1.0]
        assert client.status.status is ModelStatus.READY
        await client.close()

    @pytest.mark.asyncio
    async def test_failure_of_the_retried_load_is_reported(self, fake_worker: FakeWorker) -> None:
        client = _fake_client(fake_worker)
        first = asyncio.create_task(client.embed("first"))
        await _until(lambda: len(fake_worker.embed_requests) == 1)
        fake_worker.reply(ErrorMessage(request_id=fake_worker.embed_requests[0].request_id, message="x", fatal=True))
        with pytest.raises(ModelLoadError):
            await first

        client.retry()
        again = asyncio.create_task(client.embed("again"))
        await _until(lambda: len(fake_worker.embed_requests) == 2)
        fake_worker.reply(
            ErrorMessage(
                request_id=fake_worker.embed_requests[1].request_id,
                message="still failing",
                fatal=True,
                load_attempt=1,
            )
        )
        with pytest.raises(ModelLoadError):
            await again
        assert client.status.status is ModelStatus.ERROR
        assert client.status.message == "still failing"
        await client.close()


# ---------------------------------------------------------------------------
# Shutdown
# ---------------------------------------------------------------------------


class TestClose:
    @pytest.mark.asyncio
    async def test_close_fails_pending_requests(self, fake_worker: FakeWorker) -> None:
        client = _fake_client(fake_worker)
        task = asyncio.create_task(client.embed("hello"))
        await _until(lambda: len(fake_worker.embed_requests) == 1)

        await client.close()
        with pytest.raises(WorkerClosedError):
            await task
        assert fake_worker.terminated
        assert client.pending_count == 0

    @pytest.mark.asyncio
    async def test_embed_after_close_raises(self, fake_worker: FakeWorker) -> None:
        client = _fake_client(fake_worker)
        await client.close()
        await client.close()
        with pytest.raises(WorkerClosedError):
            await client.embed("hello")

    @pytest.mark.asyncio
    async def test_worker_created_lazily(self) -> None:
        created: list[FakeWorker] = []

        def factory() -> FakeWorker:
            created.append(FakeWorker())
            return created[-1]

        client = EmbeddingClient(factory)  # type: ignore[arg-type]
        assert created == []
        assert client.status.status is ModelStatus.NOT_INITIALIZED
        await client.close()
        assert created == []
