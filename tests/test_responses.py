# tests/test_responses.py
from types import SimpleNamespace

import pytest
from langchain_core.messages import AIMessage

from sandbox_analyst.responses import Envelope, classify, extract_text


@pytest.mark.parametrize("node, expected", [
    ("plain", Envelope.DIRECT_TEXT),
    ({"output_text": "hi"}, Envelope.DIRECT_TEXT),
    ({"type": "text", "text": "hi"}, Envelope.DIRECT_TEXT),
    ({"text": {"value": "hi"}}, Envelope.TEXT_VALUE),
    ([{"text": "a"}], Envelope.CONTENT_LIST),
    ({"content": [{"text": "a"}]}, Envelope.CONTENT_LIST),
    ({"output": [{"content": []}]}, Envelope.CONTENT_LIST),
    ({"type": "mcp_call", "output": "raw tool output"}, Envelope.UNRECOGNIZED),
    (42, Envelope.UNRECOGNIZED),
    (None, Envelope.UNRECOGNIZED),
])
def test_classify(node, expected):
    assert classify(node) == expected


def test_direct_string_and_ai_message():
    assert extract_text("  The answer.  ") == "The answer."
    assert extract_text(AIMessage(content="Final report")) == "Final report"


def test_content_blocks_from_responses_api():
    msg = AIMessage(content=[
        {"type": "mcp_list_tools", "tools": [{"name": "search"}]},
        {"type": "mcp_call", "name": "search", "output": "{\"results\": []}"},
        {"type": "text", "text": "## Context", "annotations": []},
        {"type": "text", "text": "- churn benchmark: 5%"},
    ])
    assert extract_text(msg) == "## Context\n- churn benchmark: 5%"


def test_raw_responses_payload_with_nested_output():
    payload = {
        "id": "resp_1",
        "output": [
            {"type": "reasoning", "summary": []},
            {"type": "message", "content": [
                {"type": "output_text", "text": "first"},
                {"type": "output_text", "text": {"value": "second"}},
            ]},
        ],
    }
    assert extract_text(payload) == "first\nsecond"


def test_output_text_shortcut_wins():
    assert extract_text({"output_text": "summary", "output": [{"text": "ignored"}]}) == "summary"


def test_sdk_object_with_output_text_attribute():
    assert extract_text(SimpleNamespace(output_text="from attribute")) == "from attribute"


@pytest.mark.parametrize("weird", [
    None,
    123,
    {"unexpected": True},
    [None, 5, {"foo": "bar"}],
    {"text": {"value": 3}},
    object(),
])
def test_unrecognized_shapes_yield_empty_string(weird):
    assert extract_text(weird) == ""


def test_deep_nesting_does_not_blow_up():
    node = "deep"
    for _ in range(100):
        node = [node]
    assert extract_text(node) == ""
