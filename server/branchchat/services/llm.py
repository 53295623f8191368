import base64
import logging
import os
import threading
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, Iterator, List, Optional, Sequence
from uuid import UUID

from openai import OpenAI, OpenAIError

from .. import models
from ..errors import AttachmentReadFailure, ProviderFailure
from . import attachments as attachment_service

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL") or None
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
OPENAI_TIMEOUT = float(os.getenv("OPENAI_TIMEOUT", "60"))
SYSTEM_PROMPT = os.getenv("SYSTEM_PROMPT", "You are a helpful assistant.")

MOCK_REPLY = (
    "[MOCK RESPONSE] I understood your request and this is a placeholder reply because "
    "OPENAI_API_KEY is not set."
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderDelta:
    part: str  # 'text' | 'reasoning'
    text: str


@lru_cache(maxsize=32)
def make_client(api_key: str) -> Optional[OpenAI]:
    if not api_key:
        return None
    return OpenAI(api_key=api_key, base_url=OPENAI_BASE_URL, timeout=OPENAI_TIMEOUT)


def _image_part(record: models.Attachment) -> Dict:
    if record.storage == "url":
        url = record.url
    else:
        data = attachment_service.read_attachment_bytes(record)
        url = f"data:{record.mime_type};base64,{base64.b64encode(data).decode('ascii')}"
    return {"type": "image_url", "image_url": {"url": url}}


def build_messages(
    path_msgs: Sequence[models.Message],
    attachments: Optional[Dict[UUID, List[models.Attachment]]] = None,
    system_prompt: Optional[str] = None,
) -> List[Dict]:
    """Turn an ancestor chain into chat-completions messages.

    Attachments whose bytes cannot be read are skipped; the rest of the
    request goes ahead without them. A message with no text and no usable
    image is left out.
    """
    messages: List[Dict] = [{"role": "system", "content": system_prompt or SYSTEM_PROMPT}]
    attachments = attachments or {}
    for m in path_msgs:
        has_text = bool(m.content and m.content.strip())
        images = []
        if m.role == "user":
            for record in attachments.get(m.id, []):
                try:
                    images.append(_image_part(record))
                except AttachmentReadFailure as exc:
                    logger.warning("Skipping attachment %s for message %s: %s", record.id, m.id, exc)
        if images:
            text_part = [{"type": "text", "text": m.content}] if has_text else []
            messages.append({"role": m.role, "content": text_part + images})
        elif has_text:
            messages.append({"role": m.role, "content": m.content})
    return messages


class OpenAIProvider:
    """Streams chat completions as text/reasoning deltas.

    Without a client the provider plays back a canned reply so the server is
    usable in development without credentials.
    """

    def __init__(self, client: Optional[OpenAI], default_model: str = OPENAI_MODEL):
        self.client = client
        self.default_model = default_model

    def stream(
        self,
        messages: List[Dict],
        model: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Iterator[ProviderDelta]:
        if not self.client:
            for token in MOCK_REPLY.split(" "):
                if cancel_event is not None and cancel_event.is_set():
                    return
                yield ProviderDelta("text", token + " ")
            return

        try:
            stream = self.client.chat.completions.create(
                model=model or self.default_model,
                messages=messages,
                stream=True,
            )
        except OpenAIError as exc:
            raise ProviderFailure(str(exc)) from exc

        try:
            for chunk in stream:
                if cancel_event is not None and cancel_event.is_set():
                    break
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                # OpenAI-compatible servers disagree on the reasoning field name
                reasoning = getattr(delta, "reasoning_content", None) or getattr(delta, "reasoning", None)
                if reasoning:
                    yield ProviderDelta("reasoning", reasoning)
                if delta.content:
                    yield ProviderDelta("text", delta.content)
        except OpenAIError as exc:
            raise ProviderFailure(str(exc)) from exc
        finally:
            stream.close()
