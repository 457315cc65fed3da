from __future__ import annotations

import json
import random
import threading
from dataclasses import dataclass

import pytest

from conftest import ScriptedLLM
from llm import (
    ROLE_ASSISTANT,
    ROLE_SYSTEM,
    ROLE_USER,
    ContinuationConfig,
    CsvExtractionError,
    ExtractionCancelled,
    ExtractionError,
    Message,
    RetriesExhaustedError,
    StagnationError,
    append_overlap,
    extract_json_from_response,
    generate_csv_response,
    generate_json_response,
    generate_json_response_messages,
    generate_json_with_repair,
    generate_text_response,
    make_tsv_parser,
    progressive_timeout,
    remove_think_tags,
    strip_html_tags,
    truncate_to_last_close_brace,
)
from llm.continuation import JSON_CONTINUE_PROMPT

MESSAGES = [Message(ROLE_SYSTEM, "Return JSON only."), Message(ROLE_USER, "Describe the item.")]


@dataclass
class Item:
    name: str
    value: int


@dataclass
class Row:
    name: str
    kind: str


# ---------------------------------------------------------------------- #
# Helpers
# ---------------------------------------------------------------------- #
@pytest.mark.parametrize(
    "left,right,expected",
    [
        ("hello wor", "world!", "hello world!"),
        ("abc", "def", "abcdef"),
        ("abc", "abc", "abc"),
        ("", "abc", "abc"),
        ("abc", "", "abc"),
        ('{"a": [1, 2', "[1, 2, 3]}", '{"a": [1, 2, 3]}'),
    ],
)
def test_append_overlap(left, right, expected):
    assert append_overlap(left, right) == expected


def test_remove_think_tags_spans_lines():
    text = "<think>first\nsecond</think>{\"a\": 1}<think>again</think>"
    assert remove_think_tags(text) == '{"a": 1}'


def test_strip_html_tags():
    assert strip_html_tags("<b>name</b>\t<i>kind</i>") == "name\tkind"


def test_truncate_to_last_close_brace():
    assert truncate_to_last_close_brace('{"a": {"b": 1}, "c": [') == '{"a": {"b": 1}'
    assert truncate_to_last_close_brace("no braces") == ""


def test_extract_json_from_response():
    assert extract_json_from_response('Sure!\n```json\n{"a": 1}\n```') == '{"a": 1}'
    assert extract_json_from_response('Here you go: {"a": {"b": 2}} thanks') == '{"a": {"b": 2}}'
    assert extract_json_from_response("result: [1, 2] done") == "[1, 2]"
    assert extract_json_from_response("  nothing  ") == "nothing"


def test_progressive_timeout_grows_within_jitter_band():
    rng = random.Random(7)
    for attempt in range(9):
        base = 90 + 45 * attempt
        timeout = progressive_timeout(attempt, rng=rng)
        assert 0.8 * base <= timeout <= 1.2 * base


def test_progressive_timeout_has_floor():
    cfg = ContinuationConfig(base_timeout=5.0, timeout_step=0.0)
    assert progressive_timeout(0, cfg) == 30.0


def test_config_rejects_bad_jitter():
    with pytest.raises(ValueError):
        ContinuationConfig(jitter=1.5)


# ---------------------------------------------------------------------- #
# JSON protocol
# ---------------------------------------------------------------------- #
def test_valid_first_reply_returns_immediately():
    llm = ScriptedLLM(['{"name":"Test","value":123}'])

    response = generate_json_response_messages(llm, MESSAGES)

    assert response.text == '{"name":"Test","value":123}'
    assert response.value == {"name": "Test", "value": 123}
    assert response.attempts == 1
    assert len(llm.calls) == 1


def test_fragments_are_merged_across_continuations():
    llm = ScriptedLLM(['{"name":"Test","items":[', '"item1","item2"]}'])

    response = generate_json_response_messages(llm, MESSAGES)

    assert json.loads(response.text) == {"name": "Test", "items": ["item1", "item2"]}
    assert response.text.count("item1") == 1
    assert response.attempts == 2
    continuation = llm.calls[1][1].content
    assert continuation.startswith("Describe the item.\nFinish your work:\n")
    assert continuation.endswith('{"name":"Test","items":[')
    # The caller's messages are left alone.
    assert MESSAGES[1].content == "Describe the item."


def test_echoed_prefix_is_not_duplicated():
    llm = ScriptedLLM(['{"tags": ["a", "b"', '"b", "c"]}'])

    response = generate_json_response_messages(llm, MESSAGES)

    assert response.value == {"tags": ["a", "b", "c"]}


def test_think_tags_are_ignored():
    llm = ScriptedLLM(['<think>let me see</think>\n{"ok": true}'])

    response = generate_json_response_messages(llm, MESSAGES)

    assert response.text == '{"ok": true}'
    assert response.value == {"ok": True}


def test_errors_and_empty_replies_are_retried():
    llm = ScriptedLLM([RuntimeError("rate limited"), "   ", '{"a": 1}'])

    response = generate_json_response_messages(llm, MESSAGES)

    assert response.value == {"a": 1}
    assert response.attempts == 3
    # Nothing was accumulated, so no continuation was requested.
    assert llm.calls[2][1].content == "Describe the item."


def test_each_attempt_gets_a_longer_timeout():
    cfg = ContinuationConfig(jitter=0.0)
    llm = ScriptedLLM([RuntimeError("timeout"), RuntimeError("timeout"), '{"a": 1}'])

    generate_json_response_messages(llm, MESSAGES, config=cfg)

    assert llm.timeouts == [90.0, 135.0, 180.0]


def test_repeated_output_stops_early():
    llm = ScriptedLLM(default="I cannot answer that.")

    with pytest.raises(StagnationError) as info:
        generate_json_response_messages(llm, MESSAGES, max_retries=8)

    assert len(llm.calls) == 2
    err = info.value
    assert err.partial == ""
    assert isinstance(err.validation_error, ValueError)
    assert err.last_call_error is None


def test_stagnation_keeps_call_error_separate():
    boom = RuntimeError("upstream timeout")
    llm = ScriptedLLM([boom, '{"a": {"b": 1}, "c"', '{"a": {"b": 1}, "c"'])

    with pytest.raises(StagnationError) as info:
        generate_json_response_messages(llm, MESSAGES)

    err = info.value
    assert err.partial == '{"a": {"b": 1}'
    assert err.last_call_error is boom
    assert isinstance(err.validation_error, ValueError)
    assert len(llm.calls) == 3


def test_exhaustion_returns_repaired_buffer_with_error():
    llm = ScriptedLLM(['{"a": 1, "b": {"c": 2}'], default=RuntimeError("service down"))

    with pytest.raises(RetriesExhaustedError) as info:
        generate_json_response_messages(llm, MESSAGES, max_retries=3)

    err = info.value
    assert len(llm.calls) == 4
    assert json.loads(err.partial) == {"a": 1, "b": {"c": 2}}
    assert len(err.errors) == 4
    assert str(err.last_error) == "service down"


def test_target_factory_is_applied():
    llm = ScriptedLLM(['{"name": "Test", "value": 123}'])

    response = generate_json_response(
        llm, "Return JSON only.", "Describe the item.", target=lambda data: Item(**data)
    )

    assert response.value == Item(name="Test", value=123)
    assert [m.role for m in llm.calls[0]] == [ROLE_SYSTEM, ROLE_USER]


def test_target_mismatch_fails_without_retry():
    llm = ScriptedLLM(['{"unexpected": true}'])

    with pytest.raises(ExtractionError) as info:
        generate_json_response_messages(llm, MESSAGES, target=lambda data: Item(**data))

    assert not isinstance(info.value, RetriesExhaustedError)
    assert info.value.partial == '{"unexpected": true}'
    assert len(llm.calls) == 1


def test_cancelled_before_first_attempt():
    cancel = threading.Event()
    cancel.set()
    llm = ScriptedLLM(['{"a": 1}'])

    with pytest.raises(ExtractionCancelled):
        generate_json_response_messages(llm, MESSAGES, cancel_event=cancel)

    assert llm.calls == []


# ---------------------------------------------------------------------- #
# Text protocol
# ---------------------------------------------------------------------- #
def test_text_response_strips_and_retries():
    llm = ScriptedLLM([RuntimeError("boom"), "<think>hmm</think>   ", "  A short summary.  "])

    assert generate_text_response(llm, MESSAGES) == "A short summary."
    assert len(llm.calls) == 3


def test_text_response_exhaustion():
    llm = ScriptedLLM(default=RuntimeError("down"))

    with pytest.raises(RetriesExhaustedError):
        generate_text_response(llm, MESSAGES, max_retries=2)

    assert len(llm.calls) == 3


# ---------------------------------------------------------------------- #
# Tabular protocol
# ---------------------------------------------------------------------- #
def test_csv_response_parses_rows():
    llm = ScriptedLLM(["<b>name</b>\tkind\nAlice\tperson\nAcme\torg\n"])

    rows = generate_csv_response(llm, MESSAGES, make_tsv_parser(Row))

    assert rows == [Row("Alice", "person"), Row("Acme", "org")]


def test_csv_parse_error_is_fed_back():
    bad = "name\tkind\nAlice"
    llm = ScriptedLLM([bad, "name\tkind\nAlice\tperson"])

    rows = generate_csv_response(llm, MESSAGES, make_tsv_parser(Row))

    assert rows == [Row("Alice", "person")]
    retry_messages = llm.calls[1]
    assert retry_messages[-2] == Message(ROLE_ASSISTANT, bad)
    assert "The CSV/TSV format was invalid" in retry_messages[-1].content
    assert "fewer than 2 fields" in retry_messages[-1].content


def test_csv_failure_report_has_history():
    def parser(text):
        raise ValueError("bad row")

    llm = ScriptedLLM([RuntimeError("timeout"), "", "garbage"])

    with pytest.raises(CsvExtractionError) as info:
        generate_csv_response(llm, MESSAGES, parser, max_retries=2)

    report = info.value.report
    assert report.response == "garbage"
    assert str(report.error) == "bad row"
    assert len(report.errors) == 3
    # Two retry exchanges were added before the last attempt.
    assert len(report.messages) == len(MESSAGES) + 4
    assert report.messages[3].content.startswith("The previous response failed")
    assert report.messages[5].content.startswith("No response received")


def test_generate_cuts_at_stop_token():
    llm = ScriptedLLM(["  answer\nObservation: ignored"])

    assert llm.generate("question", stop=["Observation:"]) == "answer"
    assert llm.calls[0] == [Message(ROLE_USER, "question")]


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("KG_LLM_MAX_RETRIES", "3")
    monkeypatch.setenv("KG_LLM_BASE_TIMEOUT", "10")
    monkeypatch.setenv("KG_LLM_TIMEOUT_JITTER", "0")

    cfg = ContinuationConfig.from_env()

    assert (cfg.max_retries, cfg.base_timeout, cfg.jitter) == (3, 10.0, 0.0)
    assert cfg.timeout_step == 45.0


def test_text_response_postprocess_empty_is_retried():
    llm = ScriptedLLM(['""', '"Acme"'])

    text = generate_text_response(llm, MESSAGES, postprocess=lambda t: t.strip('"'))

    assert text == "Acme"
    assert len(llm.calls) == 2


# ---------------------------------------------------------------------- #
# Lenient JSON
# ---------------------------------------------------------------------- #
def test_repair_variant_accepts_repaired_fragment():
    llm = ScriptedLLM([RuntimeError("timeout"), '{"items": [1, 2'])

    text = generate_json_with_repair(llm, "Return JSON only.", "List the items.")

    assert json.loads(text) == {"items": [1, 2]}
    assert len(llm.calls) == 2
    assert len(llm.calls[1]) == 2


def test_repair_variant_asks_to_continue_and_gives_up():
    llm = ScriptedLLM(["42"], default=RuntimeError("down"))

    with pytest.raises(RetriesExhaustedError) as info:
        generate_json_with_repair(llm, "Return JSON only.", "List the items.", max_retries=2)

    follow_up = llm.calls[1]
    assert follow_up[-2] == Message(ROLE_ASSISTANT, "42")
    assert follow_up[-1] == Message(ROLE_USER, JSON_CONTINUE_PROMPT)
    assert info.value.partial == "42"
    assert len(info.value.errors) == 3
