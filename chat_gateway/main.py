from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.exc import SQLAlchemyError

from chat_gateway.config import load_gateway_config
from chat_gateway.gateway.credentials import (
    Authorized,
    CredentialValidator,
    Rejected,
    SessionCredential,
    credential_from_payload,
    parse_user_id,
)
from chat_gateway.gateway.dispatcher import RouteDispatcher
from chat_gateway.gateway.forwarder import RequestForwarder
from chat_gateway.gateway.registry import ProviderRegistry
from chat_gateway.settings import get_settings
from chat_gateway.store import UserStore, create_db_engine

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"]

app = FastAPI(
    title="Chat Gateway",
    description="Session-aware backend that proxies chat requests to model providers.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")


def _message(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"message": message})


def _user_info(request: Request) -> dict[str, Any] | None:
    """Decode the ``X-User-Info`` header; raises ValueError when it is not a JSON object."""
    raw = request.headers.get("x-user-info")
    if raw is None:
        return None
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise ValueError("X-User-Info must be a JSON object")
    return payload


def _username_from(payload: dict[str, Any] | None) -> str | None:
    username = (payload or {}).get("username")
    if not isinstance(username, str) or not username.strip():
        return None
    try:
        username.encode("utf-8")
    except UnicodeEncodeError:
        return None
    return username.strip()


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        return None


async def _validate_session_payload(payload: Any) -> SessionCredential | None:
    credential = credential_from_payload(payload)
    if isinstance(credential, Rejected):
        logger.info("session_check_rejected reason=%s", credential.reason.value)
        return None
    validator: CredentialValidator = app.state.validator
    decision = await validator.validate(credential)
    if not isinstance(decision, Authorized):
        return None
    return credential


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    gateway_config = load_gateway_config(settings.provider_config_path)
    registry = ProviderRegistry.from_config(gateway_config)

    store = UserStore(
        create_db_engine(settings.database_url, pool_size=settings.database_pool_size)
    )
    if settings.is_sqlite:
        await asyncio.to_thread(store.create_schema)

    forwarder = RequestForwarder(
        settings.upstream_timeout_seconds,
        connect_timeout_seconds=settings.upstream_connect_timeout_seconds,
        read_timeout_seconds=settings.upstream_read_timeout_seconds,
        write_timeout_seconds=settings.upstream_write_timeout_seconds,
        pool_timeout_seconds=settings.upstream_pool_timeout_seconds,
        stream_buffer_chunks=settings.stream_buffer_chunks,
    )
    validator = CredentialValidator(store, registry)

    app.state.settings = settings
    app.state.user_store = store
    app.state.registry = registry
    app.state.validator = validator
    app.state.forwarder = forwarder
    app.state.dispatcher = RouteDispatcher(validator, registry, forwarder)
    logger.info(
        "gateway_started providers=%s database=%s",
        ",".join(sorted(registry.targets)) or "-",
        "sqlite" if settings.is_sqlite else "external",
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    forwarder: RequestForwarder | None = getattr(app.state, "forwarder", None)
    if forwarder is not None:
        await forwarder.close()
    store: UserStore | None = getattr(app.state, "user_store", None)
    if store is not None:
        await asyncio.to_thread(store.close)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/admin/current-user")
async def current_user(request: Request) -> Any:
    try:
        username = _username_from(_user_info(request))
    except ValueError:
        username = None
    if username is None:
        return _message(status.HTTP_401_UNAUTHORIZED, "未找到用戶信息")

    store: UserStore = app.state.user_store
    try:
        user = await asyncio.to_thread(store.get_user_by_username, username)
    except SQLAlchemyError:
        logger.exception("current_user_lookup_failed username=%s", username)
        return _message(status.HTTP_500_INTERNAL_SERVER_ERROR, "獲取當前用戶失敗")
    if user is None:
        return _message(status.HTTP_404_NOT_FOUND, "未找到用戶")
    return user


@app.post("/auth/check")
async def auth_check(request: Request) -> JSONResponse:
    payload = await _read_json(request)
    try:
        credential = await _validate_session_payload(payload)
    except SQLAlchemyError:
        logger.exception("session_check_failed")
        return _message(status.HTTP_500_INTERNAL_SERVER_ERROR, "服務器錯誤")
    if credential is None:
        return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"valid": False})
    return JSONResponse(content={"valid": True})


@app.delete("/auth")
async def logout(request: Request) -> JSONResponse:
    payload = await _read_json(request)
    store: UserStore = app.state.user_store
    try:
        credential = await _validate_session_payload(payload)
        if credential is None:
            return _message(status.HTTP_401_UNAUTHORIZED, "無效的 session")
        await asyncio.to_thread(store.clear_session_token, credential.user_id)
    except SQLAlchemyError:
        logger.exception("logout_failed")
        return _message(status.HTTP_500_INTERNAL_SERVER_ERROR, "服務器錯誤")
    logger.info("session_cleared user_id=%s", credential.user_id)
    return _message(status.HTTP_200_OK, "登出成功")


@app.get("/notifications")
async def list_notifications(request: Request) -> Any:
    try:
        payload = _user_info(request)
    except ValueError:
        return _message(status.HTTP_400_BAD_REQUEST, "用戶信息格式錯誤")
    if payload is None:
        return _message(status.HTTP_401_UNAUTHORIZED, "未找到用戶信息")
    username = _username_from(payload)
    if username is None:
        return _message(status.HTTP_400_BAD_REQUEST, "用戶信息格式錯誤")

    store: UserStore = app.state.user_store
    try:
        user = await asyncio.to_thread(store.get_user_by_username, username)
        if user is None:
            return _message(status.HTTP_404_NOT_FOUND, "用戶不存在")
        listing = await asyncio.to_thread(store.list_notifications, user["user_id"])
    except SQLAlchemyError:
        logger.exception("notifications_lookup_failed username=%s", username)
        return _message(status.HTTP_500_INTERNAL_SERVER_ERROR, "獲取通知列表失敗")
    return {"notifications": listing.notifications}


@app.get("/debug/notifications")
async def debug_notifications(userId: str | None = None) -> Any:
    recipient_id: int | str | None = userId
    if userId is not None:
        recipient_id = parse_user_id(userId) or userId

    store: UserStore = app.state.user_store
    try:
        listing = await asyncio.to_thread(store.list_notifications, recipient_id)
        users = await asyncio.to_thread(store.list_users)
    except SQLAlchemyError:
        logger.exception("debug_notifications_failed user_id=%s", userId)
        return _message(status.HTTP_500_INTERNAL_SERVER_ERROR, "獲取通知列表失敗")
    return {
        "notifications": listing.notifications,
        "users": users,
        "query": listing.query,
        "params": listing.params,
    }


@app.get("/providers")
async def list_providers() -> dict[str, Any]:
    registry: ProviderRegistry = app.state.registry
    return {
        "object": "list",
        "data": [
            {"id": provider_id, "base_url": target.base_url}
            for provider_id, target in sorted(registry.targets.items())
        ],
    }


@app.api_route("/providers/{provider_id}/{subpath:path}", methods=PROXY_METHODS)
async def proxy_provider(request: Request, provider_id: str, subpath: str) -> Response:
    dispatcher: RouteDispatcher = app.state.dispatcher
    return await dispatcher.handle(request, provider_id, subpath)


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "chat_gateway.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    run()
