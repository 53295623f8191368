"""Wire format for generation streams.

Every event is a JSON object with a ``type`` field, framed as a Server-Sent
Events record (``data: {...}\\n\\n``). Decoders accept bare JSON lines as well
and ignore event types they do not know about.
"""
import json
import logging
from typing import Annotated, Iterable, Iterator, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from ..schemas import MessageOut

logger = logging.getLogger(__name__)

MEDIA_TYPE = "text/event-stream"


class UserMessageEvent(BaseModel):
    type: Literal["user_message"] = "user_message"
    message: MessageOut


class GenerationStartedEvent(BaseModel):
    type: Literal["generation_started"] = "generation_started"
    handle_id: UUID
    message_id: UUID


class ChunkEvent(BaseModel):
    type: Literal["chunk"] = "chunk"
    part: Literal["text", "reasoning"]
    delta: str


class CompleteEvent(BaseModel):
    type: Literal["complete"] = "complete"
    message: MessageOut


class NoOutputEvent(BaseModel):
    type: Literal["no_output"] = "no_output"
    message_id: UUID


class AbortedEvent(BaseModel):
    type: Literal["aborted"] = "aborted"
    message_id: UUID
    message: Optional[MessageOut] = None


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    error: str
    message: Optional[MessageOut] = None


StreamEvent = Annotated[
    Union[
        UserMessageEvent,
        GenerationStartedEvent,
        ChunkEvent,
        CompleteEvent,
        NoOutputEvent,
        AbortedEvent,
        ErrorEvent,
    ],
    Field(discriminator="type"),
]

TERMINAL_TYPES = frozenset({"complete", "no_output", "aborted", "error"})
KNOWN_TYPES = frozenset({"user_message", "generation_started", "chunk"}) | TERMINAL_TYPES

_EVENT_ADAPTER = TypeAdapter(StreamEvent)


def encode_event(event: BaseModel) -> bytes:
    return f"data: {event.model_dump_json()}\n\n".encode("utf-8")


def decode_line(line: Union[str, bytes]) -> Optional[BaseModel]:
    """Decode one line of a stream; returns None for anything that is not a known event."""
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    line = line.strip()
    if not line or line.startswith(":"):
        return None
    if line.startswith("data:"):
        line = line[len("data:"):].strip()
    try:
        payload = json.loads(line)
    except ValueError:
        logger.debug("Skipping malformed stream line: %.100s", line)
        return None
    if not isinstance(payload, dict):
        return None
    if payload.get("type") not in KNOWN_TYPES:
        return None
    try:
        return _EVENT_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        logger.warning("Skipping invalid %s event: %s", payload.get("type"), exc)
        return None


def iter_events(lines: Iterable[Union[str, bytes]]) -> Iterator[BaseModel]:
    for line in lines:
        event = decode_line(line)
        if event is not None:
            yield event


def iter_events_from_chunks(chunks: Iterable[bytes]) -> Iterator[BaseModel]:
    """Decode a raw byte stream whose chunk boundaries do not line up with records."""
    buffer = b""
    for chunk in chunks:
        buffer += chunk
        *lines, buffer = buffer.split(b"\n")
        yield from iter_events(lines)
    if buffer:
        yield from iter_events([buffer])
