from __future__ import annotations

"""Abstract interfaces for LLM and embedding clients."""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

ROLE_SYSTEM = "system"
ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"


@dataclass
class Message:
    role: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


class LLM(ABC):
    """Base contract for chat models.

    ``chat`` may raise on transport errors or timeouts and may return an empty
    string; callers go through ``llm.continuation`` to cope with both.
    """

    @abstractmethod
    def chat(self, messages: List[Message], timeout: Optional[float] = None) -> str:
        """Return the assistant reply for the given conversation."""
        raise NotImplementedError

    def generate(
        self,
        prompt: str,
        timeout: Optional[float] = None,
        stop: Optional[Iterable[str]] = None,
    ) -> str:
        """Single-prompt completion, cut at the first stop token."""
        completion = self.chat([Message(ROLE_USER, prompt)], timeout=timeout)
        if stop:
            for token in stop:
                idx = completion.find(token)
                if idx != -1:
                    completion = completion[:idx]
                    break
        return completion.strip()


class Embedder(ABC):
    @abstractmethod
    def embed_single(self, text: str) -> List[float]:
        raise NotImplementedError
