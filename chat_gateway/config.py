from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator


class ProviderConfigError(ValueError):
    """Raised when providers.yaml is present but does not describe valid providers."""


class UpstreamAuthConfig(BaseModel):
    header: str | None = "Authorization"
    scheme: str | None = "Bearer"
    api_key: str | None = None
    api_key_env: str | None = None
    query_param: str | None = None
    forward_client_key: bool = True

    def resolved_api_key(self) -> str | None:
        if self.api_key_env:
            value = os.getenv(self.api_key_env, "").strip()
            if value:
                return value
        if self.api_key and self.api_key.strip():
            return self.api_key.strip()
        return None


class ClientKeyPolicyConfig(BaseModel):
    api_keys: list[str] = Field(default_factory=list)
    api_keys_env: str | None = None
    api_key_pattern: str | None = None

    @field_validator("api_key_pattern")
    @classmethod
    def _check_pattern(cls, value: str | None) -> str | None:
        if value is None:
            return None
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"Invalid api_key_pattern: {exc}") from exc
        return value

    def resolved_api_keys(self) -> list[str]:
        keys = [key.strip() for key in self.api_keys if key.strip()]
        if self.api_keys_env:
            raw = os.getenv(self.api_keys_env, "")
            keys.extend(item.strip() for item in raw.split(",") if item.strip())
        return keys


class PathRewriteConfig(BaseModel):
    strip_prefix: str | None = None
    ensure_prefix: str | None = None
    prefix: str | None = None
    allowed_paths: list[str] = Field(default_factory=list)
    query: dict[str, str] = Field(default_factory=dict)


class HeaderTransformConfig(BaseModel):
    set: dict[str, str] = Field(default_factory=dict)
    strip: list[str] = Field(default_factory=list)


class ModelRuleConfig(BaseModel):
    allow: list[str] = Field(default_factory=list)
    deny: list[str] = Field(default_factory=list)


class ProviderConfig(BaseModel):
    base_url: str
    upstream_auth: UpstreamAuthConfig = Field(default_factory=UpstreamAuthConfig)
    client_keys: ClientKeyPolicyConfig | None = None
    path: PathRewriteConfig = Field(default_factory=PathRewriteConfig)
    headers: HeaderTransformConfig = Field(default_factory=HeaderTransformConfig)
    models: ModelRuleConfig = Field(default_factory=ModelRuleConfig)

    @field_validator("base_url")
    @classmethod
    def _normalize_base_url(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("base_url must not be empty")
        if not normalized.startswith(("http://", "https://")):
            normalized = f"https://{normalized}"
        return normalized.rstrip("/")


class GatewayConfig(BaseModel):
    providers: dict[str, ProviderConfig] = Field(default_factory=dict)

    @field_validator("providers")
    @classmethod
    def _normalize_provider_ids(
        cls, value: dict[str, ProviderConfig]
    ) -> dict[str, ProviderConfig]:
        normalized: dict[str, ProviderConfig] = {}
        for provider_id, provider in value.items():
            key = provider_id.strip().lower()
            if not key:
                raise ValueError("provider ids must not be empty")
            if key in normalized:
                raise ValueError(f"duplicate provider id '{key}'")
            normalized[key] = provider
        return normalized


def load_gateway_config(config_path: str | Path) -> GatewayConfig:
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(
            f"Provider config not found at '{config_path}'. "
            "Create it or set PROVIDER_CONFIG_PATH."
        )

    with path.open("r", encoding="utf-8") as handle:
        raw: Any = yaml.safe_load(handle) or {}

    if not isinstance(raw, dict):
        raise ProviderConfigError(f"Expected YAML object in '{config_path}'.")

    try:
        return GatewayConfig.model_validate(raw)
    except ValidationError as exc:
        raise ProviderConfigError(
            f"Invalid provider config in '{config_path}': {exc}"
        ) from exc
