"""Typed messages exchanged between the foreground and the embedding worker.

The worker never shares state with the foreground. Requests go in through
the worker inbox and every answer comes back as one of the messages below.
``request_id`` correlates a ``complete`` or ``error`` message with the
request that caused it; status broadcasts carry ``None``.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from aumai_toolrouter.models import ModelStatus

__all__ = [
    "EmbedRequest",
    "ResetRequest",
    "ProgressMessage",
    "ReadyMessage",
    "CompleteMessage",
    "ErrorMessage",
    "WorkerMessage",
    "parse_message",
]


class _Message(BaseModel):
    model_config = ConfigDict(frozen=True)


class EmbedRequest(_Message):
    kind: Literal["embed"] = "embed"
    request_id: str
    text: str


class ResetRequest(_Message):
    """Forget a failed model load so the next request retries it."""

    kind: Literal["reset"] = "reset"


class ProgressMessage(_Message):
    kind: Literal["progress"] = "progress"
    request_id: str | None = None
    status: ModelStatus
    progress: float | None = Field(default=None, ge=0.0, le=1.0)
    message: str | None = None


class ReadyMessage(_Message):
    kind: Literal["ready"] = "ready"
    request_id: str | None = None
    status: Literal[ModelStatus.READY, ModelStatus.FALLBACK]
    model_id: str
    message: str | None = None


class CompleteMessage(_Message):
    kind: Literal["complete"] = "complete"
    request_id: str
    embedding: list[float]


class ErrorMessage(_Message):
    """A failed request.

    ``fatal`` marks a model load failure: the embedding capability is gone
    until the worker is reset. ``load_attempt`` counts the resets the worker
    had processed when the load failed.
    """

    kind: Literal["error"] = "error"
    request_id: str | None = None
    text: str | None = None
    message: str
    fatal: bool = False
    primary_error: str | None = None
    fallback_error: str | None = None
    load_attempt: int = 0


WorkerMessage = Annotated[
    Union[ProgressMessage, ReadyMessage, CompleteMessage, ErrorMessage],
    Field(discriminator="kind"),
]

_worker_message_adapter: TypeAdapter[Any] = TypeAdapter(WorkerMessage)


def parse_message(data: dict[str, Any]) -> ProgressMessage | ReadyMessage | CompleteMessage | ErrorMessage:
    """Validate a raw dict into the matching worker message type."""
    return _worker_message_adapter.validate_python(data)  # type: ignore[no-any-return]
