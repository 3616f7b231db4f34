from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Union

import httpx

from chat_gateway.gateway.errors import FailureKind
from chat_gateway.gateway.registry import ProviderTarget

HOP_BY_HOP_RESPONSE_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "content-length",
}
MAX_ERROR_MESSAGE_CHARS = 500
MAX_ERROR_BODY_BYTES = 64 * 1024
_END_OF_STREAM = object()

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class InboundRequest:
    method: str
    subpath: str
    headers: list[tuple[str, str]] = field(default_factory=list)
    query_params: list[tuple[str, str]] = field(default_factory=list)
    body: bytes = b""
    client_api_key: str | None = field(default=None, repr=False)
    request_id: str = "-"


@dataclass(frozen=True, slots=True)
class ProxyFailure:
    kind: FailureKind
    message: str
    upstream_status: int | None = None


class UpstreamRelay:
    """Relays an upstream body through a bounded queue.

    A producer task reads raw chunks from the upstream response while the
    consumer side is iterated by the outgoing response. Closing the consumer,
    including on client disconnect, cancels the producer and closes upstream.
    """

    def __init__(
        self,
        upstream: httpx.Response,
        *,
        buffer_chunks: int,
        provider_id: str = "-",
        request_id: str = "-",
    ) -> None:
        self._upstream = upstream
        self._buffer_chunks = max(1, buffer_chunks)
        self._provider_id = provider_id
        self._request_id = request_id
        self._started = False
        self.bytes_relayed = 0
        self.failure: ProxyFailure | None = None

    async def _produce(self, queue: asyncio.Queue) -> None:
        try:
            async for chunk in self._upstream.aiter_raw():
                if chunk:
                    await queue.put(chunk)
        except httpx.HTTPError as exc:
            self.failure = ProxyFailure(
                kind=FailureKind.UPSTREAM_INTERRUPTED,
                message="The upstream stream ended unexpectedly.",
                upstream_status=self._upstream.status_code,
            )
            logger.warning(
                "proxy_stream_interrupted request_id=%s provider=%s bytes=%d error_type=%s error=%s",
                self._request_id,
                self._provider_id,
                self.bytes_relayed,
                type(exc).__name__,
                str(exc),
            )
        except Exception:
            self.failure = ProxyFailure(
                kind=FailureKind.INTERNAL,
                message="The upstream stream could not be relayed.",
            )
            logger.exception(
                "proxy_stream_failed request_id=%s provider=%s",
                self._request_id,
                self._provider_id,
            )
        await queue.put(_END_OF_STREAM)

    async def __aiter__(self) -> AsyncIterator[bytes]:
        if self._started:
            raise RuntimeError("UpstreamRelay can only be iterated once.")
        self._started = True
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._buffer_chunks)
        producer = asyncio.create_task(self._produce(queue))
        completed = False
        try:
            while True:
                chunk = await queue.get()
                if chunk is _END_OF_STREAM:
                    completed = True
                    break
                self.bytes_relayed += len(chunk)
                yield chunk
        finally:
            producer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await producer
            await self._upstream.aclose()
            logger.info(
                "proxy_stream_closed request_id=%s provider=%s bytes=%d completed=%s failure=%s",
                self._request_id,
                self._provider_id,
                self.bytes_relayed,
                completed and self.failure is None,
                self.failure.kind.value if self.failure else "-",
            )

    async def aclose(self) -> None:
        await self._upstream.aclose()


@dataclass(slots=True)
class ProxySuccess:
    status: int
    headers: dict[str, str]
    body_stream: UpstreamRelay


ProxyOutcome = Union[ProxySuccess, ProxyFailure]


def _filter_response_headers(headers: httpx.Headers) -> dict[str, str]:
    filtered: dict[str, str] = {}
    for name, value in headers.items():
        lowered = name.lower()
        if lowered in HOP_BY_HOP_RESPONSE_HEADERS or lowered == "www-authenticate":
            continue
        filtered[name] = value
    filtered["X-Accel-Buffering"] = "no"
    return filtered


def _upstream_error_message(body: bytes, status_code: int) -> str:
    try:
        payload = json.loads(body) if body else None
    except (ValueError, RecursionError):
        payload = None

    message: str | None = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            message = error["message"]
        elif isinstance(error, str):
            message = error
        elif isinstance(payload.get("message"), str):
            message = payload["message"]

    if message and message.strip():
        message = message.strip()
        if len(message) > MAX_ERROR_MESSAGE_CHARS:
            message = message[:MAX_ERROR_MESSAGE_CHARS] + "..."
        return message
    return f"Upstream provider returned HTTP {status_code}."


async def _read_error_body(upstream: httpx.Response) -> bytes:
    body = bytearray()
    async for chunk in upstream.aiter_bytes():
        body.extend(chunk)
        if len(body) >= MAX_ERROR_BODY_BYTES:
            break
    return bytes(body[:MAX_ERROR_BODY_BYTES])


def _requested_model(body: bytes) -> str | None:
    if not body:
        return None
    try:
        payload = json.loads(body)
    except (ValueError, RecursionError):
        return None
    model = payload.get("model") if isinstance(payload, dict) else None
    if not isinstance(model, str) or not model.strip():
        return None
    return model.strip()


def _failure_for_status(status_code: int, message: str) -> ProxyFailure:
    if status_code in {401, 403}:
        kind = FailureKind.UNAUTHORIZED
    elif status_code == 404:
        kind = FailureKind.NOT_FOUND
    else:
        kind = FailureKind.UPSTREAM_ERROR
    return ProxyFailure(kind=kind, message=message, upstream_status=status_code)


class RequestForwarder:
    def __init__(
        self,
        timeout_seconds: float,
        *,
        connect_timeout_seconds: float | None = None,
        read_timeout_seconds: float | None = None,
        write_timeout_seconds: float | None = None,
        pool_timeout_seconds: float | None = None,
        stream_buffer_chunks: int = 16,
    ) -> None:
        connect_timeout = (
            max(0.1, float(connect_timeout_seconds))
            if connect_timeout_seconds is not None
            else max(0.1, min(10.0, timeout_seconds))
        )
        read_timeout = max(0.1, float(read_timeout_seconds or timeout_seconds))
        write_timeout = max(0.1, float(write_timeout_seconds or timeout_seconds))
        pool_timeout = (
            max(0.1, float(pool_timeout_seconds))
            if pool_timeout_seconds is not None
            else connect_timeout
        )
        self.stream_buffer_chunks = max(1, stream_buffer_chunks)
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                timeout=None,
                connect=connect_timeout,
                read=read_timeout,
                write=write_timeout,
                pool=pool_timeout,
            ),
            limits=httpx.Limits(max_connections=512, max_keepalive_connections=128),
        )

    async def close(self) -> None:
        await self.client.aclose()

    def _build_request(
        self, target: ProviderTarget, inbound: InboundRequest, upstream_path: str
    ) -> httpx.Request:
        transforms = target.header_transforms
        overrides = dict(target.path_rewrite.query)
        overrides.update(transforms.auth_query(inbound.client_api_key))
        params = [
            (name, value)
            for name, value in inbound.query_params
            if name not in overrides
        ]
        params.extend(overrides.items())
        headers = transforms.build_headers(
            inbound.headers,
            client_api_key=inbound.client_api_key,
            has_body=bool(inbound.body),
        )
        return self.client.build_request(
            method=inbound.method.upper(),
            url=f"{target.base_url}{upstream_path}",
            params=params,
            headers=headers,
            content=inbound.body or None,
        )

    async def forward(
        self, target: ProviderTarget, inbound: InboundRequest
    ) -> ProxyOutcome:
        upstream_path = target.path_rewrite.apply(inbound.subpath)
        if upstream_path is None:
            logger.info(
                "proxy_path_rejected request_id=%s provider=%s path=%s",
                inbound.request_id,
                target.provider_id,
                inbound.subpath,
            )
            return ProxyFailure(
                kind=FailureKind.NOT_FOUND,
                message="This path is not available for the provider.",
            )

        if not target.model_rule.is_open:
            model = _requested_model(inbound.body)
            if model is not None and not target.model_rule.permits(model):
                logger.info(
                    "proxy_model_rejected request_id=%s provider=%s model=%s",
                    inbound.request_id,
                    target.provider_id,
                    model,
                )
                return ProxyFailure(
                    kind=FailureKind.MODEL_NOT_ALLOWED,
                    message=f"you are not allowed to use {model} model",
                )

        request = self._build_request(target, inbound, upstream_path)
        started = time.perf_counter()
        try:
            upstream = await self.client.send(request, stream=True)
        except httpx.RequestError as exc:
            logger.warning(
                "proxy_request_error request_id=%s provider=%s path=%s error_type=%s error=%s",
                inbound.request_id,
                target.provider_id,
                upstream_path,
                type(exc).__name__,
                str(exc),
            )
            return ProxyFailure(
                kind=FailureKind.UPSTREAM_ERROR,
                message="The upstream provider could not be reached.",
            )

        logger.info(
            "proxy_upstream_connected request_id=%s provider=%s method=%s path=%s status=%s connect_ms=%.1f",
            inbound.request_id,
            target.provider_id,
            request.method,
            upstream_path,
            upstream.status_code,
            (time.perf_counter() - started) * 1000.0,
        )

        if not 200 <= upstream.status_code < 300:
            try:
                body = await _read_error_body(upstream)
            except httpx.HTTPError:
                body = b""
            finally:
                await upstream.aclose()
            failure = _failure_for_status(
                upstream.status_code,
                _upstream_error_message(body, upstream.status_code),
            )
            logger.warning(
                "proxy_upstream_failure request_id=%s provider=%s status=%s kind=%s",
                inbound.request_id,
                target.provider_id,
                upstream.status_code,
                failure.kind.value,
            )
            return failure

        return ProxySuccess(
            status=upstream.status_code,
            headers=_filter_response_headers(upstream.headers),
            body_stream=UpstreamRelay(
                upstream,
                buffer_chunks=self.stream_buffer_chunks,
                provider_id=target.provider_id,
                request_id=inbound.request_id,
            ),
        )
