"""Lifecycle of streamed assistant replies.

A generation is keyed by the id of the user message that triggered it. The
``GenerationRegistry`` owns every live handle; callers register, look up,
abort and release through it and nowhere else.

Handle states::

    idle -> started -> streaming -> completed | errored | aborted

The first terminal transition wins, so a completion racing an abort resolves
to exactly one outcome and the handle leaves the registry exactly once.

Partial replies: when a generation is aborted or fails after producing some
text or reasoning, the accumulated buffers are stored as an assistant message
flagged ``partial=True`` and attached to the terminal event. When nothing was
produced, nothing is stored.
"""
import enum
import logging
import threading
import uuid
from typing import Dict, Iterable, Iterator, List, Optional
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy.orm import Session

from .. import crud, models
from ..errors import BranchChatError, GenerationConflict, ProviderFailure
from ..schemas import MessageOut
from .protocol import (
    AbortedEvent,
    ChunkEvent,
    CompleteEvent,
    ErrorEvent,
    GenerationStartedEvent,
    NoOutputEvent,
)

logger = logging.getLogger(__name__)


class GenerationState(str, enum.Enum):
    IDLE = "idle"
    STARTED = "started"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERRORED = "errored"
    ABORTED = "aborted"


TERMINAL_STATES = frozenset({GenerationState.COMPLETED, GenerationState.ERRORED, GenerationState.ABORTED})


class GenerationHandle:
    def __init__(self, key: UUID, aliases: Iterable[UUID] = ()):
        self.id = uuid.uuid4()
        self.key = key
        self.aliases = tuple(a for a in aliases if a != key)
        self.cancel_event = threading.Event()
        self.released = False
        self._state = GenerationState.IDLE
        self._lock = threading.Lock()

    @property
    def keys(self):
        return (self.key, *self.aliases)

    @property
    def state(self) -> GenerationState:
        return self._state

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def done(self) -> bool:
        return self._state in TERMINAL_STATES

    def _transition(self, source: GenerationState, target: GenerationState) -> bool:
        with self._lock:
            if self._state != source:
                return False
            self._state = target
            return True

    def mark_streaming(self) -> bool:
        return self._transition(GenerationState.STARTED, GenerationState.STREAMING)

    def finish(self, state: GenerationState) -> bool:
        if state not in TERMINAL_STATES:
            raise ValueError(f"{state} is not a terminal state")
        with self._lock:
            if self._state in TERMINAL_STATES:
                return False
            self._state = state
            return True

    def __repr__(self) -> str:
        return f"<GenerationHandle {self.id} key={self.key} state={self._state.value}>"


class GenerationRegistry:
    """Concurrent map of live generation handles.

    A second ``start`` for a key (or alias) that is still registered is rejected
    with ``GenerationConflict``. Handles leave only through ``release``.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._handles: Dict[UUID, GenerationHandle] = {}

    def start(self, key: UUID, aliases: Iterable[UUID] = ()) -> GenerationHandle:
        handle = GenerationHandle(key, aliases)
        with self._lock:
            for k in handle.keys:
                if k in self._handles:
                    raise GenerationConflict(k)
            for k in handle.keys:
                self._handles[k] = handle
            handle._transition(GenerationState.IDLE, GenerationState.STARTED)
        logger.info("Generation %s started for message %s", handle.id, key)
        return handle

    def get(self, key: UUID) -> Optional[GenerationHandle]:
        with self._lock:
            return self._handles.get(key)

    def is_active(self, key: UUID) -> bool:
        return self.get(key) is not None

    def active_keys(self) -> List[UUID]:
        with self._lock:
            return [k for k, h in self._handles.items() if k == h.key]

    def _remove(self, handle: GenerationHandle) -> bool:
        # caller holds self._lock
        if handle.released:
            return False
        for k in handle.keys:
            if self._handles.get(k) is handle:
                del self._handles[k]
        handle.released = True
        return True

    def release(self, handle: GenerationHandle) -> bool:
        with self._lock:
            removed = self._remove(handle)
        if removed:
            logger.debug("Generation %s released (%s)", handle.id, handle.state.value)
        return removed

    def abort(self, key: UUID) -> bool:
        """Cancel the live generation for ``key``.

        Returns False when there is nothing to cancel, including a generation
        that already reached a terminal state. The key stays reserved until the
        stream winds down and calls ``release``.
        """
        with self._lock:
            handle = self._handles.get(key)
            if handle is None or not handle.finish(GenerationState.ABORTED):
                return False
            handle.cancel_event.set()
        logger.info("Generation %s aborted for message %s", handle.id, handle.key)
        return True


class GenerationController:
    def __init__(self, registry: GenerationRegistry, provider):
        self.registry = registry
        self.provider = provider

    def open(self, key: UUID, aliases: Iterable[UUID] = ()) -> GenerationHandle:
        return self.registry.start(key, aliases)

    def _persist(
        self,
        db: Session,
        conversation_id: UUID,
        user_message_id: UUID,
        text: str,
        reasoning: str,
        model_name: Optional[str],
        partial: bool,
    ) -> models.Message:
        return crud.append_message(
            db,
            conversation_id=conversation_id,
            parent_id=user_message_id,
            role="assistant",
            content=text,
            reasoning=reasoning or None,
            model_name=model_name,
            partial=partial,
        )

    def _persist_partial(self, db, conversation_id, user_message_id, text, reasoning, model_name) -> Optional[MessageOut]:
        if not text and not reasoning:
            return None
        try:
            msg = self._persist(db, conversation_id, user_message_id, text, reasoning, model_name, partial=True)
        except BranchChatError as exc:
            logger.error("Dropping partial reply for %s: %s", user_message_id, exc)
            return None
        logger.info("Stored partial reply %s (%d chars)", msg.id, len(text))
        return MessageOut.model_validate(msg)

    def stream(
        self,
        db: Session,
        handle: GenerationHandle,
        conversation_id: UUID,
        user_message_id: UUID,
        provider_messages: List[Dict],
        model_name: Optional[str] = None,
    ) -> Iterator[BaseModel]:
        text_parts: List[str] = []
        reasoning_parts: List[str] = []
        failure: Optional[str] = None

        try:
            yield GenerationStartedEvent(handle_id=handle.id, message_id=user_message_id)

            try:
                for delta in self.provider.stream(provider_messages, model=model_name, cancel_event=handle.cancel_event):
                    if handle.cancelled:
                        break
                    if not delta.text:
                        continue
                    handle.mark_streaming()
                    if delta.part == "reasoning":
                        reasoning_parts.append(delta.text)
                    else:
                        text_parts.append(delta.text)
                    yield ChunkEvent(part=delta.part, delta=delta.text)
            except GeneratorExit:
                raise
            except ProviderFailure as exc:
                logger.error("Provider failed for message %s: %s", user_message_id, exc)
                failure = str(exc) or "Provider failure"
            except Exception as exc:
                logger.exception("Generation for message %s failed", user_message_id)
                failure = str(exc) or exc.__class__.__name__

            text = "".join(text_parts)
            reasoning = "".join(reasoning_parts)

            if failure is not None and handle.finish(GenerationState.ERRORED):
                partial = self._persist_partial(db, conversation_id, user_message_id, text, reasoning, model_name)
                yield ErrorEvent(error=failure, message=partial)
                return

            if failure is None and handle.finish(GenerationState.COMPLETED):
                text = text.strip()
                if not text and not reasoning:
                    yield NoOutputEvent(message_id=user_message_id)
                    return
                try:
                    msg = self._persist(db, conversation_id, user_message_id, text, reasoning, model_name, partial=False)
                except BranchChatError as exc:
                    logger.error("Could not store reply for %s: %s", user_message_id, exc)
                    yield ErrorEvent(error=str(exc))
                    return
                yield CompleteEvent(message=MessageOut.model_validate(msg))
                return

            # cancelled, either before the provider finished or racing its completion
            partial = self._persist_partial(db, conversation_id, user_message_id, text, reasoning, model_name)
            yield AbortedEvent(message_id=user_message_id, message=partial)
        except GeneratorExit:
            # client went away mid-stream
            if handle.finish(GenerationState.ABORTED):
                handle.cancel_event.set()
                self._persist_partial(
                    db, conversation_id, user_message_id, "".join(text_parts), "".join(reasoning_parts), model_name
                )
            raise
        finally:
            self.registry.release(handle)
