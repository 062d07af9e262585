"""Unit tests for JSON extraction from noisy agent stdout."""

from __future__ import annotations

import json

import pytest

from relais.agents.parsing import excerpt, extract_json_object
from relais.agents.transport import (
    MAX_RAW_ERROR_LENGTH,
    detect_stall,
    transport_stall,
)

pytestmark = pytest.mark.unit


def test_direct_json_object() -> None:
    result = extract_json_object('{"a": 1}')
    assert result.ok
    assert result.payload == {"a": 1}
    assert result.method == "direct"


def test_fenced_json_block_inside_prose() -> None:
    text = 'Here is the task:\n```json\n{"task_id": "T-1"}\n```\nGood luck.'
    result = extract_json_object(text)
    assert result.payload == {"task_id": "T-1"}
    assert result.method == "fence"


def test_non_json_fences_are_skipped() -> None:
    text = '```python\nprint("hi")\n```\nthen {"ok": true} trailing'
    result = extract_json_object(text)
    assert result.payload == {"ok": True}
    assert result.method == "search"


def test_first_balanced_object_is_found_by_brace_search() -> None:
    result = extract_json_object('noise {"outer": {"inner": [1, 2]}} more {"second": 1}')
    assert result.payload == {"outer": {"inner": [1, 2]}}


def test_string_result_envelope_is_unwrapped() -> None:
    inner = json.dumps({"decision": "proceed"})
    envelope = json.dumps(
        {"type": "result", "session_id": "s1", "result": f"```json\n{inner}\n```"}
    )
    result = extract_json_object(envelope)
    assert result.payload == {"decision": "proceed"}
    assert result.method == "envelope+fence"


def test_mapping_result_envelope_is_unwrapped() -> None:
    result = extract_json_object(json.dumps({"result": {"decision": "proceed"}}))
    assert result.payload == {"decision": "proceed"}
    assert result.method == "envelope+direct"


def test_result_key_alongside_domain_fields_is_not_an_envelope() -> None:
    payload = {"result": "PASS", "notes": "kept"}
    result = extract_json_object(json.dumps(payload))
    assert result.payload == payload
    assert result.method == "direct"


def test_envelope_without_json_reports_failure() -> None:
    result = extract_json_object(json.dumps({"result": "I could not finish."}))
    assert not result.ok
    assert result.method == "envelope"
    assert "did not contain JSON" in (result.error or "")


@pytest.mark.parametrize("text", ["", "   ", "no braces here", "[1, 2, 3]"])
def test_no_object_is_a_value_not_an_exception(text: str) -> None:
    result = extract_json_object(text)
    assert not result.ok
    assert result.payload is None
    assert result.error


def test_excerpt_truncates_long_text() -> None:
    assert excerpt("short") == "short"
    assert excerpt("x" * 10, limit=4) == "xxxx..."


def test_stall_detection_finds_pattern_and_request_id() -> None:
    detection = detect_stall("error: Connection stalled (request_id: req_abc-123)")
    assert detection.stalled
    assert detection.matched_pattern == "Connection stalled"
    assert detection.request_id == "req_abc-123"
    assert not detect_stall("").stalled
    assert not detect_stall("ordinary failure").stalled


def test_transport_stall_truncates_raw_error() -> None:
    stall = transport_stall("BUILD", "ECONNRESET " + "x" * 1000)
    diagnostics = stall.to_diagnostics()
    assert diagnostics["kind"] == "transport_stalled"
    assert diagnostics["stage"] == "BUILD"
    raw_error = diagnostics["raw_error"]
    assert isinstance(raw_error, str)
    assert len(raw_error) == MAX_RAW_ERROR_LENGTH + 3
