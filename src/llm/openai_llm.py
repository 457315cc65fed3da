from __future__ import annotations

"""OpenAI Chat Completions and Embeddings client wrappers."""
import os
from typing import List, Optional

from openai import OpenAI

from .base import LLM, Embedder, Message


def _make_client(api_key: Optional[str], **kwargs) -> OpenAI:
    key = api_key or os.getenv("OPENAI_API_KEY")
    if not key:
        raise RuntimeError("OPENAI_API_KEY must be set for the OpenAI clients")
    return OpenAI(api_key=key, **kwargs)


class OpenAILLM(LLM):
    """
    Minimal wrapper for OpenAI chat models (defaults to gpt-4o-mini).

    Expects OPENAI_API_KEY to be set in the environment, or an api_key provided.
    The per-call ``timeout`` is forwarded to the request so each retry attempt
    gets its own deadline.
    """

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        api_key: Optional[str] = None,
        max_tokens: int = 2048,
        **kwargs,
    ) -> None:
        self.model = model
        self.max_tokens = max_tokens
        self.client = _make_client(api_key, **kwargs)

    def chat(self, messages: List[Message], timeout: Optional[float] = None) -> str:
        completion = self.client.chat.completions.create(
            model=self.model,
            messages=[m.to_dict() for m in messages],
            max_tokens=self.max_tokens,
            temperature=0,
            timeout=timeout,
        )
        return completion.choices[0].message.content or ""


class OpenAIEmbedder(Embedder):
    def __init__(
        self,
        model: str = "text-embedding-3-small",
        api_key: Optional[str] = None,
        **kwargs,
    ) -> None:
        self.model = model
        self.client = _make_client(api_key, **kwargs)

    def embed_single(self, text: str) -> List[float]:
        response = self.client.embeddings.create(model=self.model, input=text)
        return list(response.data[0].embedding)
