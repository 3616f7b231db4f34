from __future__ import annotations

import logging
from uuid import uuid4

from fastapi import Request, status
from fastapi.responses import JSONResponse, Response, StreamingResponse

from chat_gateway.gateway.credentials import Authorized, CredentialValidator
from chat_gateway.gateway.errors import (
    PROVIDER_NOT_FOUND,
    FailureKind,
    error_response,
    internal_error_response,
    unauthorized_response,
)
from chat_gateway.gateway.forwarder import (
    InboundRequest,
    ProxyFailure,
    RequestForwarder,
)
from chat_gateway.gateway.registry import ProviderRegistry

logger = logging.getLogger("uvicorn.error")


def failure_status(failure: ProxyFailure) -> int:
    upstream_status = failure.upstream_status
    if failure.kind == FailureKind.UNAUTHORIZED:
        if upstream_status in {401, 403}:
            return upstream_status
        return status.HTTP_401_UNAUTHORIZED
    if failure.kind == FailureKind.NOT_FOUND:
        return status.HTTP_404_NOT_FOUND
    if failure.kind == FailureKind.MODEL_NOT_ALLOWED:
        return status.HTTP_403_FORBIDDEN
    if failure.kind in {FailureKind.UPSTREAM_ERROR, FailureKind.UPSTREAM_INTERRUPTED}:
        if upstream_status is not None and 400 <= upstream_status <= 599:
            return upstream_status
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def failure_response(failure: ProxyFailure) -> JSONResponse:
    return error_response(
        failure_status(failure),
        error_type=failure.kind.value,
        message=failure.message,
        upstream_status=failure.upstream_status,
    )


class RouteDispatcher:
    def __init__(
        self,
        validator: CredentialValidator,
        registry: ProviderRegistry,
        forwarder: RequestForwarder,
    ) -> None:
        self.validator = validator
        self.registry = registry
        self.forwarder = forwarder

    async def handle(self, request: Request, provider_id: str, subpath: str) -> Response:
        if request.method.upper() == "OPTIONS":
            return JSONResponse({"body": "OK"})

        request_id = request.headers.get("x-request-id") or uuid4().hex[:12]
        try:
            return await self._dispatch(request, provider_id, subpath, request_id)
        except Exception:
            logger.exception(
                "proxy_dispatch_failed request_id=%s provider=%s path=%s",
                request_id,
                provider_id,
                subpath,
            )
            return internal_error_response()

    async def _dispatch(
        self, request: Request, provider_id: str, subpath: str, request_id: str
    ) -> Response:
        decision = await self.validator.authenticate(request.headers, provider_id)
        if not isinstance(decision, Authorized):
            logger.info(
                "auth_rejected request_id=%s provider=%s reason=%s",
                request_id,
                provider_id,
                decision.reason.value,
            )
            return unauthorized_response()

        target = self.registry.resolve(provider_id)
        if target is None:
            logger.info(
                "proxy_provider_unknown request_id=%s provider=%s",
                request_id,
                provider_id,
            )
            return error_response(
                status.HTTP_404_NOT_FOUND,
                error_type=PROVIDER_NOT_FOUND,
                message=f"Provider '{provider_id}' is not configured.",
            )

        inbound = InboundRequest(
            method=request.method,
            subpath=subpath,
            headers=list(request.headers.items()),
            query_params=list(request.query_params.multi_items()),
            body=await request.body(),
            client_api_key=decision.identity.api_key,
            request_id=request_id,
        )
        outcome = await self.forwarder.forward(target, inbound)
        if isinstance(outcome, ProxyFailure):
            return failure_response(outcome)

        return StreamingResponse(
            content=outcome.body_stream,
            status_code=outcome.status,
            headers=outcome.headers,
        )
