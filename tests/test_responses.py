from __future__ import annotations

import json

import pytest

from open_llm_gateway.config import Dialect
from open_llm_gateway.responses import (
    buffered_success_response,
    extract_text,
    sanitize_generated_text,
)


@pytest.mark.parametrize(
    ("body", "expected"),
    [
        ([{"generated_text": "one"}], "one"),
        ({"generated_text": "two"}, "two"),
        ({"output_text": "three"}, "three"),
        ({"choices": [{"message": {"content": "four"}}]}, "four"),
        ({"choices": [{"text": "five"}]}, "five"),
        (["six"], "six"),
        ("seven", "seven"),
        ({"unexpected": True}, None),
        ([], None),
    ],
)
def test_raw_extraction_order(body: object, expected: str | None) -> None:
    assert extract_text(body, Dialect.RAW_TEMPLATE) == expected


def test_chat_extraction_is_not_sanitized() -> None:
    body = {"choices": [{"message": {"content": "# Title\n</s>"}}]}

    assert extract_text(body, Dialect.CHAT_JSON) == "# Title\n</s>"
    assert extract_text({"generated_text": "x"}, Dialect.CHAT_JSON) is None


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("<|im_start|>assistant\nHello<|im_end|>", "Hello"),
        ("<|im_start|>system\nrules<|im_end|>\n<|im_start|>assistant\nHi", "rules\nHi"),
        ("## Answer\nBody text</s>", "Answer\nBody text"),
        ("[INST] ignored [/INST] reply", "ignored  reply"),
        ("  # ## Nested heading  ", "Nested heading"),
        ("<|im_<|im_end|>end|>done", "done"),
        ("#hashtag stays", "#hashtag stays"),
    ],
)
def test_sanitize_strips_control_tokens(raw: str, expected: str) -> None:
    assert sanitize_generated_text(raw) == expected


@pytest.mark.parametrize(
    "raw",
    [
        "<|im_start|>assistant\n### Hi<|im_end|>",
        "# \n# \n#  text",
        "<<SYS>>x<</SYS>> <s>[INST]y[/INST]</s>",
        "<|im_<|im_end|>end|>",
    ],
)
def test_sanitize_is_idempotent(raw: str) -> None:
    once = sanitize_generated_text(raw)

    assert sanitize_generated_text(once) == once


def test_buffered_response_degrades_to_raw_body() -> None:
    response = buffered_success_response(
        body={"unexpected": True}, dialect=Dialect.CHAT_JSON, headers={"x-a": "1"}
    )

    payload = json.loads(response.body)
    assert payload == {"response": {"unexpected": True}, "raw": {"unexpected": True}}
    assert response.headers["x-a"] == "1"
