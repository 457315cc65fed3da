"""Shared fakes and fixtures."""

from __future__ import annotations

import itertools
import re
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

import pytest

from community.prompts import COMMUNITY_NAME_SYSTEM, SUMMARIZE_PAIR_SYSTEM
from graph import Edge, EdgeType, InMemoryGraphStore, Node, NodeType
from llm import LLM, Embedder, Message

PAIR_RE = re.compile(r"Summary 1: (.*)\n\nSummary 2: (.*)\n\nProvide", re.DOTALL)
NAME_RE = re.compile(r"\(1-5 words\):\n\n(.*)\n\nName:", re.DOTALL)


class ScriptedLLM(LLM):
    """Replays queued replies; queued exceptions are raised instead of returned."""

    def __init__(self, replies: Iterable[object] = (), default: object = None) -> None:
        self._replies = list(replies)
        self.default = default
        self.calls: List[List[Message]] = []
        self.timeouts: List[Optional[float]] = []
        self._lock = threading.Lock()

    def chat(self, messages: List[Message], timeout: Optional[float] = None) -> str:
        with self._lock:
            self.calls.append(list(messages))
            self.timeouts.append(timeout)
            reply = self._replies.pop(0) if self._replies else self.default
        if isinstance(reply, Exception):
            raise reply
        if reply is None:
            raise AssertionError("unexpected LLM call")
        return reply


class SummaryLLM(LLM):
    """
    Deterministic stand-in for the summarizer.

    Pair prompts come back as ``(left+right)``, name prompts as
    ``Group of N`` where N is the number of merged summaries. Any prompt that
    mentions a ``poison`` token raises.
    """

    def __init__(self, delay: float = 0.0, poison: str = "poison") -> None:
        self.delay = delay
        self.poison = poison
        self.pair_calls: List[tuple] = []
        self.name_calls: List[str] = []
        self.in_flight = 0
        self.peak_in_flight = 0
        self._lock = threading.Lock()

    def chat(self, messages: List[Message], timeout: Optional[float] = None) -> str:
        system, user = messages[0].content, messages[-1].content
        with self._lock:
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            if self.poison and self.poison in user:
                raise RuntimeError("model refused")
            if system == SUMMARIZE_PAIR_SYSTEM:
                left, right = PAIR_RE.search(user).groups()
                with self._lock:
                    self.pair_calls.append((left, right))
                return f"({left}+{right})"
            if system == COMMUNITY_NAME_SYSTEM:
                summary = NAME_RE.search(user).group(1)
                with self._lock:
                    self.name_calls.append(summary)
                return f' "Group of {summary.count("+") + 1}" '
            raise AssertionError(f"unexpected prompt: {system!r}")
        finally:
            with self._lock:
                self.in_flight -= 1

    @property
    def call_count(self) -> int:
        return len(self.pair_calls) + len(self.name_calls)


class FakeEmbedder(Embedder):
    def __init__(self) -> None:
        self.texts: List[str] = []
        self._lock = threading.Lock()

    def embed_single(self, text: str) -> List[float]:
        with self._lock:
            self.texts.append(text)
        return [float(len(text)), 1.0]


def add_entity(store: InMemoryGraphStore, node_uuid: str, group_id: str = "g1", summary: Optional[str] = None) -> Node:
    node = Node(
        uuid=node_uuid,
        name=node_uuid.upper(),
        node_type=NodeType.ENTITY,
        group_id=group_id,
        summary=summary if summary is not None else node_uuid,
    )
    store.upsert_node(node)
    return node


def relate(store: InMemoryGraphStore, src: str, dst: str, group_id: str = "g1", count: int = 1) -> None:
    for idx in range(count):
        store.upsert_edge(
            Edge(
                uuid=f"{src}-{dst}-{idx}",
                source_uuid=src,
                target_uuid=dst,
                group_id=group_id,
                relation_type="RELATES_TO",
                edge_type=EdgeType.ENTITY,
            )
        )


@pytest.fixture
def store() -> InMemoryGraphStore:
    return InMemoryGraphStore()


@pytest.fixture
def uuid_factory():
    counter = itertools.count(1)
    lock = threading.Lock()

    def next_uuid() -> str:
        with lock:
            return f"uuid-{next(counter)}"

    return next_uuid


@pytest.fixture
def clock():
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    ticks = itertools.count()
    lock = threading.Lock()

    def now() -> datetime:
        with lock:
            return start + timedelta(seconds=next(ticks))

    return now


@pytest.fixture
def summary_llm() -> SummaryLLM:
    return SummaryLLM()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()
