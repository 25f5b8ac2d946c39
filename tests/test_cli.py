from __future__ import annotations

from typing import Any

import pytest

from open_llm_gateway.cli import main
from open_llm_gateway.gateway.auth import TokenVerifier
from open_llm_gateway.settings import get_settings

from tests.client_test_utils import TEST_MODEL_PROFILES_PATH


def test_mint_token_prints_verifiable_token(monkeypatch: Any, capsys: Any) -> None:
    monkeypatch.setenv("GATEWAY_SHARED_SECRET", "cli-secret")
    get_settings.cache_clear()

    exit_code = main(["mint-token", "--ttl", "120", "--claim", "sub=client-7"])

    token = capsys.readouterr().out.strip()
    assert exit_code == 0
    verified = TokenVerifier("cli-secret").verify(token)
    assert verified is not None
    assert verified.claims["sub"] == "client-7"


def test_mint_token_requires_secret(monkeypatch: Any, capsys: Any) -> None:
    monkeypatch.setenv("GATEWAY_SHARED_SECRET", "")
    get_settings.cache_clear()

    exit_code = main(["mint-token"])

    assert exit_code == 1
    assert "GATEWAY_SHARED_SECRET" in capsys.readouterr().err


def test_mint_token_rejects_exp_claim(monkeypatch: Any) -> None:
    monkeypatch.setenv("GATEWAY_SHARED_SECRET", "cli-secret")
    get_settings.cache_clear()

    with pytest.raises(SystemExit):
        main(["mint-token", "--claim", "exp=1"])


def test_models_lists_profiles_with_default_marker(capsys: Any) -> None:
    exit_code = main(["models", "--path", str(TEST_MODEL_PROFILES_PATH)])

    lines = capsys.readouterr().out.splitlines()
    assert exit_code == 0
    assert lines[0].startswith("* chat-default\tchat_json\torg/chat-model\t")
    private = next(line for line in lines if "private" in line)
    assert "\traw_template\tacme/tiny-lm\t" in private
    fallbacks = next(line for line in lines if "with-fallbacks" in line)
    assert "org/missing-model,org/also-missing,org/chat-model" in fallbacks


def test_models_reports_missing_table(tmp_path: Any, capsys: Any) -> None:
    exit_code = main(["models", "--path", str(tmp_path / "absent.yaml")])

    assert exit_code == 1
    assert "not found" in capsys.readouterr().err
