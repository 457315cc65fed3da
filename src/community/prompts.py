from __future__ import annotations

from typing import List

from llm.base import ROLE_SYSTEM, ROLE_USER, Message

SUMMARIZE_PAIR_SYSTEM = (
    "You are an expert at synthesizing information. Given two entity summaries, "
    "create a single comprehensive summary that captures the key information from both. "
    "The summary should be concise (under 250 words) and maintain the most important details."
)

COMMUNITY_NAME_SYSTEM = (
    "You are an expert at creating concise, descriptive names. Given a summary, create a "
    "brief descriptive name (1-5 words) that captures the essence of the content."
)


def summarize_pair_messages(left: str, right: str) -> List[Message]:
    return [
        Message(ROLE_SYSTEM, SUMMARIZE_PAIR_SYSTEM),
        Message(
            ROLE_USER,
            "Please summarize these two entity summaries into one comprehensive summary:\n\n"
            f"Summary 1: {left}\n\n"
            f"Summary 2: {right}\n\n"
            "Provide a single summary that captures the essential information from both:",
        ),
    ]


def community_name_messages(summary: str) -> List[Message]:
    return [
        Message(ROLE_SYSTEM, COMMUNITY_NAME_SYSTEM),
        Message(
            ROLE_USER,
            "Based on this summary, provide a brief descriptive name (1-5 words):\n\n"
            f"{summary}\n\n"
            "Name:",
        ),
    ]
