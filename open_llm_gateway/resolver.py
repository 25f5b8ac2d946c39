from __future__ import annotations

import logging
from collections.abc import Mapping
from types import MappingProxyType

from open_llm_gateway.config import GatewayConfig, ModelProfile

logger = logging.getLogger("uvicorn.error")


class ModelResolver:
    """Read-only lookup from logical model key to upstream profile.

    Unknown keys degrade to the configured default profile instead of failing.
    """

    def __init__(self, profiles: Mapping[str, ModelProfile], default_model: str):
        if default_model not in profiles:
            raise KeyError(default_model)
        self._profiles = MappingProxyType(dict(profiles))
        self.default_model = default_model

    @classmethod
    def from_config(cls, config: GatewayConfig) -> ModelResolver:
        return cls(config.build_profiles(), config.default_model)

    @property
    def profiles(self) -> Mapping[str, ModelProfile]:
        return self._profiles

    @property
    def default_profile(self) -> ModelProfile:
        return self._profiles[self.default_model]

    def is_known(self, model_key: str | None) -> bool:
        return bool(model_key) and model_key in self._profiles

    def resolve(self, model_key: str | None) -> ModelProfile:
        if model_key and model_key in self._profiles:
            return self._profiles[model_key]
        if model_key:
            logger.info(
                "model_key_unrecognized requested=%s resolved=%s",
                model_key,
                self.default_model,
            )
        return self.default_profile
