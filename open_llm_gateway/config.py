from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."
DEFAULT_CHAT_ENDPOINT = "https://router.huggingface.co/v1/chat/completions"
DEFAULT_RAW_ENDPOINT = "https://router.huggingface.co/hf-inference/models/{upstream_id}"
DEFAULT_COMPLETION_ENDPOINT = "https://router.huggingface.co/v1/completions"


class GatewayConfigurationError(RuntimeError):
    """Raised when the gateway cannot start with the provided configuration."""


class Dialect(str, Enum):
    CHAT_JSON = "chat_json"
    RAW_TEMPLATE = "raw_template"


class ModelEntry(BaseModel):
    upstream_id: str
    dialect: Dialect | None = None
    endpoint_template: str | None = None
    requires_auth_header: bool = True
    fallback_ids: list[str] = Field(default_factory=list)
    system_prompt: str | None = None

    @field_validator("upstream_id")
    @classmethod
    def _strip_upstream_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("upstream_id must not be empty.")
        return normalized

    @field_validator("fallback_ids", mode="before")
    @classmethod
    def _coerce_fallback_ids(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list):
            raise ValueError("fallback_ids must be a string or a list of strings.")
        return [str(item).strip() for item in value if str(item).strip()]


class ModelProfile(BaseModel):
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model_key: str
    upstream_id: str
    dialect: Dialect
    endpoint_template: str
    requires_auth_header: bool = True
    fallback_ids: tuple[str, ...] = ()
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    @property
    def candidate_ids(self) -> list[str]:
        candidates: list[str] = []
        for candidate in (self.upstream_id, *self.fallback_ids):
            if candidate not in candidates:
                candidates.append(candidate)
        return candidates

    def endpoint_for(self, upstream_id: str) -> str:
        return self.endpoint_template.format(
            upstream_id=upstream_id,
            model_key=self.model_key,
        )


class GatewayConfig(BaseModel):
    default_model: str
    default_system_prompt: str = DEFAULT_SYSTEM_PROMPT
    chat_endpoint_template: str = DEFAULT_CHAT_ENDPOINT
    raw_endpoint_template: str = DEFAULT_RAW_ENDPOINT
    completion_endpoint_template: str = DEFAULT_COMPLETION_ENDPOINT
    private_model_prefixes: list[str] = Field(default_factory=list)
    models: dict[str, ModelEntry] = Field(default_factory=dict)

    @field_validator("models", mode="before")
    @classmethod
    def _coerce_models(cls, value: Any) -> dict[str, Any]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValueError("Expected 'models' to be a mapping of model key to entry.")
        coerced: dict[str, Any] = {}
        for raw_key, raw_entry in value.items():
            model_key = str(raw_key).strip()
            if not model_key:
                continue
            if isinstance(raw_entry, str):
                raw_entry = {"upstream_id": raw_entry}
            elif raw_entry is None:
                raw_entry = {"upstream_id": model_key}
            coerced[model_key] = raw_entry
        return coerced

    @model_validator(mode="after")
    def _check_default_model(self) -> GatewayConfig:
        if self.default_model not in self.models:
            raise ValueError(
                f"default_model '{self.default_model}' is not a configured model."
            )
        return self

    def classify_dialect(self, entry: ModelEntry) -> Dialect:
        if entry.dialect is not None:
            return entry.dialect
        upstream_id = entry.upstream_id.lower()
        for prefix in self.private_model_prefixes:
            normalized = prefix.strip().lower()
            if normalized and upstream_id.startswith(normalized):
                return Dialect.RAW_TEMPLATE
        return Dialect.CHAT_JSON

    def build_profiles(self) -> dict[str, ModelProfile]:
        profiles: dict[str, ModelProfile] = {}
        for model_key, entry in self.models.items():
            dialect = self.classify_dialect(entry)
            endpoint_template = entry.endpoint_template or (
                self.raw_endpoint_template
                if dialect is Dialect.RAW_TEMPLATE
                else self.chat_endpoint_template
            )
            profiles[model_key] = ModelProfile(
                model_key=model_key,
                upstream_id=entry.upstream_id,
                dialect=dialect,
                endpoint_template=endpoint_template,
                requires_auth_header=entry.requires_auth_header,
                fallback_ids=tuple(entry.fallback_ids),
                system_prompt=entry.system_prompt or self.default_system_prompt,
            )
        return profiles


def load_gateway_config(config_path: str | Path) -> GatewayConfig:
    path = Path(config_path)
    if not path.exists():
        raise GatewayConfigurationError(
            f"Model profile table not found at '{config_path}'. "
            "Create it or set MODEL_PROFILES_PATH."
        )

    with path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    if not isinstance(raw, dict):
        raise GatewayConfigurationError(f"Expected YAML object in '{config_path}'.")

    try:
        return GatewayConfig.model_validate(raw)
    except ValueError as exc:
        raise GatewayConfigurationError(
            f"Invalid model profile table '{config_path}': {exc}"
        ) from exc
