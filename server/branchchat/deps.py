from typing import Optional

from fastapi import Request

from .services import llm
from .services.generation import GenerationRegistry

# checked in order; the first non-empty value wins
KEY_HEADERS = ("x-openai-key", "x-openai-api-key")


def get_generation_registry(request: Request) -> GenerationRegistry:
    return request.app.state.generations


def request_api_key(request: Request) -> Optional[str]:
    """Per-request provider key from ``X-OpenAI-Key`` or ``Authorization: Bearer``."""
    for name in KEY_HEADERS:
        key = (request.headers.get(name) or "").strip()
        if key:
            return key
    scheme, _, credentials = (request.headers.get("authorization") or "").strip().partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return None


def get_provider(request: Request) -> llm.OpenAIProvider:
    api_key = request_api_key(request) or llm.OPENAI_API_KEY
    return llm.OpenAIProvider(llm.make_client(api_key))
