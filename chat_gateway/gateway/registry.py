from __future__ import annotations

import re
import secrets
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping

from chat_gateway.config import GatewayConfig, ProviderConfig

REQUEST_HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
        "host",
        "content-length",
    }
)
CLIENT_CREDENTIAL_HEADERS = frozenset(
    {
        "x-user-info",
        "authorization",
        "api-key",
        "x-api-key",
        "x-goog-api-key",
        "cookie",
    }
)


@dataclass(frozen=True, slots=True)
class PathRewriteRule:
    strip_prefix: str | None = None
    ensure_prefix: str | None = None
    prefix: str | None = None
    allowed_paths: frozenset[str] = frozenset()
    query: tuple[tuple[str, str], ...] = ()

    def apply(self, subpath: str) -> str | None:
        """Map an inbound subpath to the upstream path, or None if not routable."""
        path = "/" + subpath.lstrip("/")
        if self.allowed_paths and path not in self.allowed_paths:
            return None
        if self.strip_prefix:
            strip = "/" + self.strip_prefix.strip("/")
            if path == strip or path.startswith(strip + "/"):
                path = path[len(strip):] or "/"
        if self.ensure_prefix:
            ensure = "/" + self.ensure_prefix.strip("/")
            if not (path == ensure or path.startswith(ensure + "/")):
                path = ensure + path
        if self.prefix:
            path = "/" + self.prefix.strip("/") + path
        return re.sub(r"/{2,}", "/", path)


@dataclass(frozen=True, slots=True)
class HeaderTransforms:
    auth_header: str | None = "Authorization"
    auth_scheme: str | None = "Bearer"
    server_api_key: str | None = field(default=None, repr=False)
    auth_query_param: str | None = None
    forward_client_key: bool = True
    set_headers: tuple[tuple[str, str], ...] = ()
    strip_headers: frozenset[str] = frozenset()

    def upstream_key(self, client_api_key: str | None) -> str | None:
        if self.forward_client_key and client_api_key:
            return client_api_key
        return self.server_api_key

    def build_headers(
        self,
        incoming: Mapping[str, str] | Iterable[tuple[str, str]],
        *,
        client_api_key: str | None = None,
        has_body: bool = False,
    ) -> list[tuple[str, str]]:
        """Return upstream header pairs, keeping repeated inbound headers."""
        pairs = list(incoming.items() if isinstance(incoming, Mapping) else incoming)
        # Headers listed in Connection are hop-by-hop for this request only.
        connection_tokens = {
            token.strip().lower()
            for name, value in pairs
            if name.lower() == "connection"
            for token in value.split(",")
            if token.strip()
        }

        overrides: dict[str, str] = {}
        key = self.upstream_key(client_api_key)
        if key and self.auth_header:
            overrides[self.auth_header.lower()] = (
                f"{self.auth_scheme} {key}" if self.auth_scheme else key
            )
        for name, value in self.set_headers:
            overrides[name.lower()] = value

        headers: list[tuple[str, str]] = []
        for name, value in pairs:
            lowered = name.lower()
            if (
                lowered in REQUEST_HOP_BY_HOP_HEADERS
                or lowered.startswith("proxy-")
                or lowered in connection_tokens
                or lowered in CLIENT_CREDENTIAL_HEADERS
                or lowered in self.strip_headers
                or lowered in overrides
            ):
                continue
            headers.append((lowered, value))
        headers.extend(overrides.items())

        if has_body and not any(name == "content-type" for name, _ in headers):
            headers.append(("content-type", "application/json"))
        return headers

    def auth_query(self, client_api_key: str | None = None) -> dict[str, str]:
        key = self.upstream_key(client_api_key)
        if not self.auth_query_param or not key:
            return {}
        return {self.auth_query_param: key}


@dataclass(frozen=True, slots=True)
class ClientKeyPolicy:
    pattern: re.Pattern[str] | None = None
    allowed_keys: frozenset[str] = field(default=frozenset(), repr=False)

    @property
    def accepts_any(self) -> bool:
        return self.pattern is not None or bool(self.allowed_keys)

    def matches(self, raw_key: str) -> bool:
        if self.pattern is not None and self.pattern.fullmatch(raw_key) is None:
            return False
        if self.allowed_keys:
            encoded = raw_key.encode("utf-8")
            return any(
                secrets.compare_digest(encoded, allowed.encode("utf-8"))
                for allowed in self.allowed_keys
            )
        return True


@dataclass(frozen=True, slots=True)
class ModelRule:
    allow: frozenset[str] = frozenset()
    deny: frozenset[str] = frozenset()

    @property
    def is_open(self) -> bool:
        return not self.allow and not self.deny

    def permits(self, model: str) -> bool:
        name = model.strip().lower()
        if name in self.deny:
            return False
        return not self.allow or name in self.allow


@dataclass(frozen=True, slots=True)
class ProviderTarget:
    provider_id: str
    base_url: str
    path_rewrite: PathRewriteRule
    header_transforms: HeaderTransforms
    client_keys: ClientKeyPolicy | None = None
    model_rule: ModelRule = field(default_factory=ModelRule)


def _build_target(provider_id: str, provider: ProviderConfig) -> ProviderTarget:
    auth = provider.upstream_auth
    client_keys: ClientKeyPolicy | None = None
    if provider.client_keys is not None:
        pattern = provider.client_keys.api_key_pattern
        client_keys = ClientKeyPolicy(
            pattern=re.compile(pattern) if pattern else None,
            allowed_keys=frozenset(provider.client_keys.resolved_api_keys()),
        )
    return ProviderTarget(
        provider_id=provider_id,
        base_url=provider.base_url,
        path_rewrite=PathRewriteRule(
            strip_prefix=provider.path.strip_prefix,
            ensure_prefix=provider.path.ensure_prefix,
            prefix=provider.path.prefix,
            allowed_paths=frozenset(
                "/" + item.strip().lstrip("/") for item in provider.path.allowed_paths
            ),
            query=tuple(provider.path.query.items()),
        ),
        header_transforms=HeaderTransforms(
            auth_header=auth.header,
            auth_scheme=auth.scheme,
            server_api_key=auth.resolved_api_key(),
            auth_query_param=auth.query_param,
            forward_client_key=auth.forward_client_key,
            set_headers=tuple(provider.headers.set.items()),
            strip_headers=frozenset(name.lower() for name in provider.headers.strip),
        ),
        client_keys=client_keys,
        model_rule=ModelRule(
            allow=frozenset(model.strip().lower() for model in provider.models.allow),
            deny=frozenset(model.strip().lower() for model in provider.models.deny),
        ),
    )


class ProviderRegistry:
    """Read-only provider lookup built once at startup."""

    def __init__(self, targets: Mapping[str, ProviderTarget]) -> None:
        self._targets: Mapping[str, ProviderTarget] = MappingProxyType(
            {key.strip().lower(): target for key, target in targets.items()}
        )

    @classmethod
    def from_config(cls, config: GatewayConfig) -> "ProviderRegistry":
        return cls(
            {
                provider_id: _build_target(provider_id, provider)
                for provider_id, provider in config.providers.items()
            }
        )

    @property
    def targets(self) -> Mapping[str, ProviderTarget]:
        return self._targets

    def resolve(self, provider_id: str) -> ProviderTarget | None:
        return self._targets.get(provider_id.strip().lower())
