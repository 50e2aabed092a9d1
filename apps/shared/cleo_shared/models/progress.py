"""Progress events streamed to the caller of a publish operation.

Wire format is a JSON object with a ``type`` discriminant. Every stream ends
with exactly one ``complete`` or ``error`` event; thread streams forward the
member events (tagged with ``post_id`` / ``position``) and close with a
thread-level terminal event tagged with ``thread_id`` / ``status``.
"""

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


class PublishStatus(str, Enum):
    PENDING = "pending"
    POSTING = "posting"
    POSTED = "posted"
    FAILED = "failed"


class ThreadStatus(str, Enum):
    DRAFT = "draft"
    POSTING = "posting"
    POSTED = "posted"
    PARTIAL_FAILED = "partial_failed"


class _Event(BaseModel):
    post_id: int | None = None
    position: int | None = None
    thread_id: int | None = None
    status: str | None = None

    @property
    def terminal(self) -> bool:
        return False

    def tagged(self, **tags) -> "_Event":
        return self.model_copy(update=tags)

    def to_wire(self) -> dict:
        return self.model_dump(exclude_none=True)


class Uploading(_Event):
    type: Literal["uploading"] = "uploading"
    segment: int
    total: int
    percent: int


class Processing(_Event):
    type: Literal["processing"] = "processing"


class Posting(_Event):
    type: Literal["posting"] = "posting"


class Complete(_Event):
    type: Literal["complete"] = "complete"
    tweet_id: str
    text: str = ""

    @property
    def terminal(self) -> bool:
        return True


class Error(_Event):
    type: Literal["error"] = "error"
    message: str
    code: str = "failed"

    @property
    def terminal(self) -> bool:
        return True


ProgressEvent = Annotated[
    Union[Uploading, Processing, Posting, Complete, Error],
    Field(discriminator="type"),
]

progress_event_adapter: TypeAdapter[ProgressEvent] = TypeAdapter(ProgressEvent)


def parse_event(data: dict) -> ProgressEvent:
    """Decode a wire dict back into its event class."""
    return progress_event_adapter.validate_python(data)
