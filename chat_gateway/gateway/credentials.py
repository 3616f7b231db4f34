from __future__ import annotations

import asyncio
import json
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Mapping, Union

from chat_gateway.gateway.errors import RejectionReason
from chat_gateway.gateway.registry import ProviderRegistry
from chat_gateway.store import UserStore

USER_INFO_HEADER = "x-user-info"
# Header names clients use to present a provider key, in lookup order.
API_KEY_HEADERS = ("authorization", "api-key", "x-api-key", "x-goog-api-key")
# Upper bound of the Account.user_id integer column.
MAX_USER_ID = 2**63 - 1

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True, slots=True)
class SessionCredential:
    user_id: int
    token: str


@dataclass(frozen=True, slots=True)
class ApiKeyCredential:
    raw_key: str
    provider: str

    def __repr__(self) -> str:
        return f"ApiKeyCredential(raw_key='***', provider={self.provider!r})"


Credential = Union[SessionCredential, ApiKeyCredential]


@dataclass(frozen=True, slots=True)
class Identity:
    method: str
    principal: str
    user_id: int | None = None
    username: str | None = None
    role: str | None = None
    api_key: str | None = None


@dataclass(frozen=True, slots=True)
class Authorized:
    identity: Identity


@dataclass(frozen=True, slots=True)
class Rejected:
    reason: RejectionReason


AuthDecision = Union[Authorized, Rejected]


def parse_user_id(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        # str.isdigit() also accepts characters such as "²" that int() rejects.
        if not (value.isascii() and value.isdigit()):
            return None
        value = int(value)
    if not isinstance(value, int) or not 1 <= value <= MAX_USER_ID:
        return None
    return value


def _token_bytes(token: str) -> bytes | None:
    try:
        return token.encode("utf-8")
    except UnicodeEncodeError:
        return None


def credential_from_payload(payload: Any) -> SessionCredential | Rejected:
    """Build a session credential from a ``{userId, sessionToken}`` mapping."""
    if not isinstance(payload, dict):
        return Rejected(RejectionReason.MALFORMED_INPUT)
    raw_user_id = payload.get("userId")
    token = payload.get("sessionToken")
    if raw_user_id is None or token is None:
        return Rejected(RejectionReason.CREDENTIAL_MISSING)
    user_id = parse_user_id(raw_user_id)
    if user_id is None or not isinstance(token, str) or not token:
        return Rejected(RejectionReason.MALFORMED_INPUT)
    if _token_bytes(token) is None:
        return Rejected(RejectionReason.MALFORMED_INPUT)
    return SessionCredential(user_id=user_id, token=token)


def _api_key_from_headers(headers: Mapping[str, str]) -> str | None:
    for name in API_KEY_HEADERS:
        value = (headers.get(name) or "").strip()
        if not value:
            continue
        if name == "authorization":
            scheme, _, token = value.partition(" ")
            if scheme.lower() != "bearer" or not token.strip():
                continue
            value = token.strip()
        return value
    return None


def extract_credential(
    headers: Mapping[str, str], provider_id: str
) -> Credential | Rejected:
    """Pick the single credential a proxied request carries.

    A session in ``X-User-Info`` wins over any provider key header.
    """
    user_info = headers.get(USER_INFO_HEADER)
    if user_info is not None:
        try:
            payload = json.loads(user_info)
        except ValueError:
            return Rejected(RejectionReason.MALFORMED_INPUT)
        return credential_from_payload(payload)

    api_key = _api_key_from_headers(headers)
    if api_key is None:
        return Rejected(RejectionReason.CREDENTIAL_MISSING)
    return ApiKeyCredential(raw_key=api_key, provider=provider_id.strip().lower())


class CredentialValidator:
    def __init__(self, store: UserStore, registry: ProviderRegistry) -> None:
        self._store = store
        self._registry = registry

    async def validate(self, credential: Credential) -> AuthDecision:
        if isinstance(credential, SessionCredential):
            return await self._validate_session(credential)
        if isinstance(credential, ApiKeyCredential):
            return self._validate_api_key(credential)
        return Rejected(RejectionReason.MALFORMED_INPUT)

    async def authenticate(
        self, headers: Mapping[str, str], provider_id: str
    ) -> AuthDecision:
        credential = extract_credential(headers, provider_id)
        if isinstance(credential, Rejected):
            return credential
        return await self.validate(credential)

    async def _validate_session(self, credential: SessionCredential) -> AuthDecision:
        # Checked before the lookup so known and unknown users fail the same way.
        supplied = _token_bytes(credential.token)
        if supplied is None or parse_user_id(credential.user_id) is None:
            logger.info("credential_rejected method=session reason=malformed_input")
            return Rejected(RejectionReason.MALFORMED_INPUT)
        record = await asyncio.to_thread(self._store.get_session, credential.user_id)
        if record is None:
            logger.info("credential_rejected method=session reason=unknown_user")
            return Rejected(RejectionReason.CREDENTIAL_INVALID)
        stored = record.session_token
        if not stored or not secrets.compare_digest(stored.encode("utf-8"), supplied):
            logger.info(
                "credential_rejected method=session reason=token_mismatch user_id=%s",
                record.user_id,
            )
            return Rejected(RejectionReason.CREDENTIAL_INVALID)
        return Authorized(
            Identity(
                method="session",
                principal=f"user:{record.user_id}",
                user_id=record.user_id,
                username=record.username,
                role=record.role,
            )
        )

    def _validate_api_key(self, credential: ApiKeyCredential) -> AuthDecision:
        target = self._registry.resolve(credential.provider)
        policy = target.client_keys if target is not None else None
        if policy is None or not policy.accepts_any:
            logger.info(
                "credential_rejected method=api_key reason=no_key_policy provider=%s",
                credential.provider,
            )
            return Rejected(RejectionReason.CREDENTIAL_INVALID)
        if not policy.matches(credential.raw_key):
            logger.info(
                "credential_rejected method=api_key reason=key_not_allowed provider=%s",
                credential.provider,
            )
            return Rejected(RejectionReason.CREDENTIAL_INVALID)
        return Authorized(
            Identity(
                method="api_key",
                principal=f"api-key:{credential.provider}",
                api_key=credential.raw_key,
            )
        )
