"""Retry / continuation / repair loop that turns unreliable chat output into documents.

Every call runs up to ``max_retries + 1`` attempts. Each attempt gets a
progressively longer timeout. Transport errors and empty replies are retried.
Partial JSON is kept and the model is asked to finish it, and new text is
merged with overlap detection so echoed prefixes are not duplicated. A reply
that adds nothing new ends the loop early. When the budget runs out the
buffer goes through ``json_repair`` and is handed back on the raised error.
"""

from __future__ import annotations

import json
import logging
import random
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence, TypeVar

from json_repair import repair_json

from .base import LLM, ROLE_ASSISTANT, ROLE_SYSTEM, ROLE_USER, Message
from .config import DEFAULT_CONFIG, ContinuationConfig
from .errors import (
    CsvExtractionError,
    ExtractionCancelled,
    ExtractionError,
    RetriesExhaustedError,
    StagnationError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

THINK_TAG_RE = re.compile(r"<think>.*?</think>", flags=re.DOTALL)
HTML_TAG_RE = re.compile(r"<[^>]*>")
CONTINUATION_INSTRUCTION = "\nFinish your work:\n"
JSON_CONTINUE_PROMPT = (
    "The JSON response was incomplete or invalid. "
    "Please continue from where you left off and complete the JSON:"
)

CSV_RETRY_PROMPT = "The previous response failed. Please try again with valid CSV/TSV format:"
CSV_EMPTY_PROMPT = "No response received. Please provide the CSV/TSV data:"
CSV_INVALID_PROMPT = (
    "The CSV/TSV format was invalid: {error}. "
    "Please provide valid TSV data with tab-separated values:"
)


@dataclass
class JsonResponse:
    text: str
    value: Any
    attempts: int


@dataclass
class BadCsvResponse:
    """Everything needed to diagnose or replay a failed tabular extraction."""

    messages: List[Message]
    response: str
    error: Optional[Exception]
    errors: List[Exception] = field(default_factory=list)


# ---------------------------------------------------------------------- #
# Text helpers
# ---------------------------------------------------------------------- #
def remove_think_tags(text: str) -> str:
    return THINK_TAG_RE.sub("", text)


def strip_html_tags(text: str) -> str:
    return HTML_TAG_RE.sub("", text)


def append_overlap(s1: str, s2: str) -> str:
    """Append ``s2`` to ``s1`` without repeating the longest suffix/prefix overlap."""
    for size in range(min(len(s1), len(s2)), 0, -1):
        if s1[-size:] == s2[:size]:
            return s1 + s2[size:]
    return s1 + s2


def truncate_to_last_close_brace(text: str) -> str:
    idx = text.rfind("}")
    if idx == -1:
        return ""
    return text[: idx + 1]


def extract_json_from_response(text: str) -> str:
    """Pull a JSON payload out of fenced or chatty model output."""
    text = text.strip()
    fence_match = re.search(r"```(?:json)?(.*?)```", text, flags=re.DOTALL | re.IGNORECASE)
    if fence_match:
        return fence_match.group(1).strip()
    for opener, closer in (("{", "}"), ("[", "]")):
        start = text.find(opener)
        end = text.rfind(closer)
        if start != -1 and end > start:
            return text[start : end + 1]
    return text


def progressive_timeout(
    attempt: int,
    config: Optional[ContinuationConfig] = None,
    rng: Optional[random.Random] = None,
) -> float:
    """Seconds allowed for ``attempt`` (0-based)."""
    cfg = config or DEFAULT_CONFIG
    base = cfg.base_timeout + attempt * cfg.timeout_step
    spread = base * cfg.jitter
    jitter = (rng or random).uniform(-spread, spread)
    return max(cfg.min_timeout, base + jitter)


# ---------------------------------------------------------------------- #
# Shared attempt plumbing
# ---------------------------------------------------------------------- #
def _resolve_retries(max_retries: Optional[int], cfg: ContinuationConfig) -> int:
    if max_retries is None or max_retries <= 0:
        return cfg.max_retries
    return max_retries


def _check_cancelled(
    cancel_event: Optional[threading.Event], attempt: int, partial: str, errors: List[Exception]
) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise ExtractionCancelled(
            f"cancelled before attempt {attempt + 1}", partial=partial, errors=errors
        )


def _chat_once(
    llm: LLM,
    messages: List[Message],
    attempt: int,
    cfg: ContinuationConfig,
    rng: Optional[random.Random],
) -> str:
    timeout = progressive_timeout(attempt, cfg, rng)
    logger.debug("LLM attempt %d (timeout=%.1fs, messages=%d)", attempt + 1, timeout, len(messages))
    return llm.chat(messages, timeout=timeout)


def _last_user_index(messages: Sequence[Message]) -> Optional[int]:
    for idx in range(len(messages) - 1, -1, -1):
        if messages[idx].role == ROLE_USER:
            return idx
    return None


# ---------------------------------------------------------------------- #
# JSON
# ---------------------------------------------------------------------- #
def generate_json_response(
    llm: LLM,
    system_prompt: str,
    user_prompt: str,
    target: Optional[Callable[[Any], Any]] = None,
    max_retries: Optional[int] = None,
    config: Optional[ContinuationConfig] = None,
    cancel_event: Optional[threading.Event] = None,
    rng: Optional[random.Random] = None,
) -> JsonResponse:
    messages = [Message(ROLE_SYSTEM, system_prompt), Message(ROLE_USER, user_prompt)]
    return generate_json_response_messages(
        llm,
        messages,
        target=target,
        max_retries=max_retries,
        config=config,
        cancel_event=cancel_event,
        rng=rng,
    )


def generate_json_response_messages(
    llm: LLM,
    messages: Sequence[Message],
    target: Optional[Callable[[Any], Any]] = None,
    max_retries: Optional[int] = None,
    config: Optional[ContinuationConfig] = None,
    cancel_event: Optional[threading.Event] = None,
    rng: Optional[random.Random] = None,
) -> JsonResponse:
    """
    Call ``llm`` until the accumulated reply parses as JSON.

    Returns a ``JsonResponse`` only on a strict parse. Every other exit raises
    an ``ExtractionError`` subclass whose ``partial`` is best-effort text that
    must not be treated as validated.

    ``target`` is applied to the parsed document (a dataclass, a pydantic
    model, a plain function); if it rejects the document the call fails
    without retrying.
    """
    cfg = config or DEFAULT_CONFIG
    retries = _resolve_retries(max_retries, cfg)
    original = list(messages)
    working = list(messages)
    prompt_idx = _last_user_index(original)

    accumulated = ""
    errors: List[Exception] = []
    last_call_error: Optional[Exception] = None

    for attempt in range(retries + 1):
        _check_cancelled(cancel_event, attempt, remove_think_tags(accumulated), errors)

        if attempt > 0 and accumulated and prompt_idx is not None:
            base_msg = original[prompt_idx]
            working[prompt_idx] = Message(
                base_msg.role, base_msg.content + CONTINUATION_INSTRUCTION + accumulated.strip()
            )

        try:
            text = _chat_once(llm, working, attempt, cfg, rng)
        except Exception as exc:  # provider failures are retried
            logger.warning("LLM call failed on attempt %d: %s", attempt + 1, exc)
            last_call_error = exc
            errors.append(exc)
            continue

        if not text or not text.strip():
            errors.append(ValueError(f"empty response from LLM on attempt {attempt + 1}"))
            continue

        before = len(accumulated)
        accumulated = append_overlap(accumulated.strip(), text.strip())
        added = len(accumulated) - before

        cleaned = remove_think_tags(accumulated).strip()
        try:
            parsed = json.loads(cleaned)
        except ValueError as exc:
            validation_error = exc
        else:
            logger.debug("Valid JSON after %d attempt(s) (%d chars)", attempt + 1, len(cleaned))
            return _build_json_response(cleaned, parsed, target, attempt + 1, errors)

        errors.append(validation_error)
        if attempt >= 1 and added == 0:
            partial = truncate_to_last_close_brace(remove_think_tags(accumulated))
            logger.warning(
                "LLM repeated itself on attempt %d; stopping with %d chars of partial JSON",
                attempt + 1,
                len(partial),
            )
            raise StagnationError(
                f"no progress on attempt {attempt + 1}: {validation_error}",
                partial=partial,
                validation_error=validation_error,
                last_call_error=last_call_error,
                errors=errors,
            )
        logger.debug(
            "Incomplete JSON on attempt %d (%d chars): %s", attempt + 1, len(cleaned), validation_error
        )

    truncated = truncate_to_last_close_brace(remove_think_tags(accumulated))
    repaired = repair_json(truncated) if truncated else ""
    last = errors[-1] if errors else "no valid JSON produced"
    logger.warning("Giving up on JSON after %d attempts; returning repaired buffer", retries + 1)
    raise RetriesExhaustedError(
        f"failed after {retries + 1} attempts: {last}", partial=repaired, errors=errors
    )


def _build_json_response(
    text: str,
    parsed: Any,
    target: Optional[Callable[[Any], Any]],
    attempts: int,
    errors: List[Exception],
) -> JsonResponse:
    if target is None:
        return JsonResponse(text=text, value=parsed, attempts=attempts)
    try:
        value = target(parsed)
    except (TypeError, ValueError, KeyError) as exc:
        raise ExtractionError(
            f"valid JSON did not fit the target: {exc}", partial=text, errors=errors + [exc]
        ) from exc
    return JsonResponse(text=text, value=value, attempts=attempts)


def generate_json_with_repair(
    llm: LLM,
    system_prompt: str,
    user_prompt: str,
    max_retries: Optional[int] = None,
    config: Optional[ContinuationConfig] = None,
    cancel_event: Optional[threading.Event] = None,
    rng: Optional[random.Random] = None,
) -> str:
    """
    Lenient variant: repair the buffer after every reply and accept the first
    object or array that comes out of it.

    An unusable reply is echoed back as an assistant turn followed by a request
    to continue, so the conversation grows with each attempt. The result is
    repaired JSON text, not a strictly parsed document.
    """
    cfg = config or DEFAULT_CONFIG
    retries = _resolve_retries(max_retries, cfg)
    working = [Message(ROLE_SYSTEM, system_prompt), Message(ROLE_USER, user_prompt)]
    accumulated = ""
    errors: List[Exception] = []

    for attempt in range(retries + 1):
        _check_cancelled(cancel_event, attempt, accumulated, errors)
        try:
            text = _chat_once(llm, working, attempt, cfg, rng)
        except Exception as exc:  # provider failures are retried
            logger.warning("LLM call failed on attempt %d: %s", attempt + 1, exc)
            errors.append(exc)
            continue

        if not text or not text.strip():
            errors.append(ValueError(f"empty response from LLM on attempt {attempt + 1}"))
            continue

        accumulated += remove_think_tags(text).strip()
        repaired = repair_json(accumulated)
        try:
            parsed = json.loads(repaired) if repaired else None
        except ValueError as exc:
            parsed, error = None, exc
        else:
            error = ValueError(f"repair produced no object or array on attempt {attempt + 1}")
        if isinstance(parsed, (dict, list)):
            logger.debug("Repaired JSON accepted on attempt %d (%d chars)", attempt + 1, len(repaired))
            return repaired

        errors.append(error)
        if attempt < retries:
            working += [Message(ROLE_ASSISTANT, accumulated), Message(ROLE_USER, JSON_CONTINUE_PROMPT)]

    logger.warning("Giving up on repaired JSON after %d attempts", retries + 1)
    raise RetriesExhaustedError(
        f"failed after {retries + 1} attempts: {errors[-1]}", partial=accumulated, errors=errors
    )


# ---------------------------------------------------------------------- #
# Free text
# ---------------------------------------------------------------------- #
def generate_text_response(
    llm: LLM,
    messages: Sequence[Message],
    max_retries: Optional[int] = None,
    config: Optional[ContinuationConfig] = None,
    cancel_event: Optional[threading.Event] = None,
    rng: Optional[random.Random] = None,
    postprocess: Optional[Callable[[str], str]] = None,
) -> str:
    """
    Plain-text call with the same retry and timeout schedule as the JSON path.

    ``postprocess`` runs on the cleaned reply before the emptiness check, so a
    reply it reduces to nothing is retried.
    """
    cfg = config or DEFAULT_CONFIG
    retries = _resolve_retries(max_retries, cfg)
    working = list(messages)
    errors: List[Exception] = []

    for attempt in range(retries + 1):
        _check_cancelled(cancel_event, attempt, "", errors)
        try:
            text = _chat_once(llm, working, attempt, cfg, rng)
        except Exception as exc:  # provider failures are retried
            logger.warning("LLM call failed on attempt %d: %s", attempt + 1, exc)
            errors.append(exc)
            continue
        cleaned = remove_think_tags(text or "").strip()
        if postprocess is not None:
            cleaned = postprocess(cleaned).strip()
        if cleaned:
            return cleaned
        errors.append(ValueError(f"empty response from LLM on attempt {attempt + 1}"))

    raise RetriesExhaustedError(
        f"failed after {retries + 1} attempts: {errors[-1]}", partial="", errors=errors
    )


# ---------------------------------------------------------------------- #
# CSV / TSV
# ---------------------------------------------------------------------- #
def generate_csv_response(
    llm: LLM,
    messages: Sequence[Message],
    parser: Callable[[str], Sequence[Optional[T]]],
    max_retries: Optional[int] = None,
    config: Optional[ContinuationConfig] = None,
    cancel_event: Optional[threading.Event] = None,
    rng: Optional[random.Random] = None,
) -> List[T]:
    """
    Ask for tabular output and validate it with ``parser``.

    The parser raises on malformed input; its message is fed back to the model
    in the next prompt. On exhaustion a ``CsvExtractionError`` carries the
    whole conversation and the last raw reply.
    """
    cfg = config or DEFAULT_CONFIG
    retries = _resolve_retries(max_retries, cfg)
    working = list(messages)
    errors: List[Exception] = []
    last_response = ""

    for attempt in range(retries + 1):
        _check_cancelled(cancel_event, attempt, last_response, errors)
        can_retry = attempt < retries

        try:
            text = _chat_once(llm, working, attempt, cfg, rng)
        except Exception as exc:  # provider failures are retried
            logger.warning("LLM call failed on attempt %d: %s", attempt + 1, exc)
            errors.append(exc)
            last_response = ""
            if can_retry:
                working += [Message(ROLE_ASSISTANT, ""), Message(ROLE_USER, CSV_RETRY_PROMPT)]
            continue

        if not text:
            errors.append(ValueError(f"empty response from LLM on attempt {attempt + 1}"))
            last_response = ""
            if can_retry:
                working += [Message(ROLE_ASSISTANT, ""), Message(ROLE_USER, CSV_EMPTY_PROMPT)]
            continue

        last_response = text
        logger.debug("LLM CSV response received (attempt=%d, length=%d)", attempt + 1, len(text))

        cleaned = strip_html_tags(remove_think_tags(text))
        if cleaned.endswith("\n"):
            cleaned = cleaned[:-1]

        try:
            records = parser(cleaned)
        except Exception as exc:  # parser is caller-supplied; any failure means invalid rows
            logger.debug("CSV parsing failed on attempt %d: %s", attempt + 1, exc)
            errors.append(exc)
            if can_retry:
                working += [
                    Message(ROLE_ASSISTANT, text),
                    Message(ROLE_USER, CSV_INVALID_PROMPT.format(error=exc)),
                ]
            continue

        results = [r for r in records if r is not None]
        logger.debug("CSV parsing succeeded on attempt %d (%d records)", attempt + 1, len(results))
        return results

    report = BadCsvResponse(
        messages=list(working),
        response=last_response,
        error=errors[-1] if errors else None,
        errors=errors,
    )
    logger.error("CSV generation failed after %d attempts: %s", retries + 1, report.error)
    raise CsvExtractionError(f"failed after {retries + 1} attempts: {report.error}", report)
