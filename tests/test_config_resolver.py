from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
import yaml

from open_llm_gateway.config import (
    Dialect,
    GatewayConfig,
    GatewayConfigurationError,
    load_gateway_config,
)
from open_llm_gateway.resolver import ModelResolver

from tests.client_test_utils import TEST_MODEL_PROFILES_PATH


def _resolver() -> ModelResolver:
    return ModelResolver.from_config(load_gateway_config(TEST_MODEL_PROFILES_PATH))


def test_fixture_profiles_are_classified() -> None:
    profiles = _resolver().profiles

    assert profiles["chat-default"].dialect is Dialect.CHAT_JSON
    assert profiles["private"].dialect is Dialect.RAW_TEMPLATE
    assert profiles["private"].endpoint_for("acme/tiny-lm") == (
        "http://upstream.test/models/acme/tiny-lm"
    )
    assert profiles["open-endpoint"].requires_auth_header is False
    assert profiles["with-fallbacks"].candidate_ids == [
        "org/missing-model",
        "org/also-missing",
        "org/chat-model",
    ]


def test_explicit_dialect_overrides_prefix_rule() -> None:
    config = GatewayConfig.model_validate(
        {
            "default_model": "a",
            "private_model_prefixes": ["Acme/"],
            "models": {
                "a": {"upstream_id": "acme/model", "dialect": "chat_json"},
                "b": {"upstream_id": "gpt2", "dialect": "raw_template"},
                "c": "ACME/other",
            },
        }
    )
    profiles = config.build_profiles()

    assert profiles["a"].dialect is Dialect.CHAT_JSON
    assert profiles["b"].dialect is Dialect.RAW_TEMPLATE
    assert profiles["c"].dialect is Dialect.RAW_TEMPLATE


def test_shorthand_entries_and_duplicate_fallbacks() -> None:
    config = GatewayConfig.model_validate(
        {
            "default_model": "org/self",
            "models": {
                "org/self": None,
                "dup": {"upstream_id": "x/y", "fallback_ids": ["x/y", "x/z", "x/z"]},
            },
        }
    )
    profiles = config.build_profiles()

    assert profiles["org/self"].upstream_id == "org/self"
    assert profiles["dup"].candidate_ids == ["x/y", "x/z"]
    assert profiles["dup"].system_prompt == "You are a helpful assistant."


def test_per_model_system_prompt_wins() -> None:
    config = GatewayConfig.model_validate(
        {
            "default_model": "bot",
            "default_system_prompt": "Default voice.",
            "models": {
                "bot": {"upstream_id": "org/bot", "system_prompt": "Support voice."},
                "plain": "org/plain",
            },
        }
    )
    profiles = config.build_profiles()

    assert profiles["bot"].system_prompt == "Support voice."
    assert profiles["plain"].system_prompt == "Default voice."


def test_resolver_falls_back_to_default() -> None:
    resolver = _resolver()

    assert resolver.resolve("private").model_key == "private"
    assert resolver.resolve("unknown").model_key == "chat-default"
    assert resolver.resolve(None).model_key == "chat-default"
    assert resolver.is_known("private") is True
    assert resolver.is_known("unknown") is False


def test_resolver_table_is_read_only() -> None:
    resolver = _resolver()

    with pytest.raises(TypeError):
        resolver.profiles["new"] = resolver.default_profile  # type: ignore[index]


def test_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(GatewayConfigurationError, match="not found"):
        load_gateway_config(tmp_path / "absent.yaml")


@pytest.mark.parametrize(
    "payload",
    [
        {"default_model": "missing", "models": {"a": "org/a"}},
        {"default_model": "a", "models": {"a": {"upstream_id": "  "}}},
        {"default_model": "a", "models": ["org/a"]},
    ],
)
def test_invalid_tables_raise(tmp_path: Path, payload: dict[str, Any]) -> None:
    path = tmp_path / "gateway.models.yaml"
    path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")

    with pytest.raises(GatewayConfigurationError, match="Invalid model profile table"):
        load_gateway_config(path)


def test_non_mapping_document_raises(tmp_path: Path) -> None:
    path = tmp_path / "gateway.models.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(GatewayConfigurationError, match="Expected YAML object"):
        load_gateway_config(path)
