from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import httpx
import pytest

from chat_gateway.config import ProviderConfigError
from chat_gateway.main import app
from tests.client_test_utils import (
    ChunkStream,
    build_test_client,
    install_upstream,
    seed_account,
)


def _session_headers(user_id: int, token: str) -> dict[str, str]:
    return {"X-User-Info": json.dumps({"userId": user_id, "sessionToken": token})}


class _Recorder:
    def __init__(self, response: httpx.Response | None = None) -> None:
        self.requests: list[httpx.Request] = []
        self.response = response

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.response is not None:
            return self.response
        return httpx.Response(
            200,
            headers={"content-type": request.headers.get("content-type", "text/plain")},
            content=request.content,
        )


def test_options_short_circuits_before_auth_and_routing(monkeypatch: Any, tmp_path: Path) -> None:
    with build_test_client(monkeypatch, tmp_path) as client:
        recorder = _Recorder()
        install_upstream(recorder)

        for provider in ("echo", "foo"):
            response = client.options(f"/providers/{provider}/chat/completions")
            assert response.status_code == 200
            assert response.json() == {"body": "OK"}

    assert recorder.requests == []


def test_unknown_provider_returns_404_without_upstream_call(
    monkeypatch: Any, tmp_path: Path
) -> None:
    with build_test_client(monkeypatch, tmp_path) as client:
        user_id = seed_account(app.state.user_store, "alice", session_token="tok")
        recorder = _Recorder()
        install_upstream(recorder)

        response = client.post(
            "/providers/foo/v1/chat/completions",
            headers=_session_headers(user_id, "tok"),
            json={"messages": []},
        )

    assert response.status_code == 404
    assert response.json()["error"]["type"] == "provider_not_found"
    assert recorder.requests == []


def test_rejections_share_one_response_body(monkeypatch: Any, tmp_path: Path) -> None:
    with build_test_client(monkeypatch, tmp_path) as client:
        user_id = seed_account(app.state.user_store, "alice", session_token="tok")
        recorder = _Recorder()
        install_upstream(recorder)

        attempts = [
            {},
            _session_headers(user_id, "wrong"),
            _session_headers(user_id + 100, "tok"),
            {"X-User-Info": "{broken"},
            {"X-User-Info": json.dumps({"userId": user_id})},
            {"Authorization": "Bearer not-allowed"},
        ]
        responses = [
            client.post("/providers/echo/chat", headers=headers, content=b"{}")
            for headers in attempts
        ]

    assert {response.status_code for response in responses} == {401}
    bodies = {response.text for response in responses}
    assert len(bodies) == 1
    assert responses[0].json()["error"]["type"] == "unauthorized"
    assert responses[0].headers["www-authenticate"] == "Bearer"
    assert recorder.requests == []


def test_session_request_is_echoed_byte_for_byte(monkeypatch: Any, tmp_path: Path) -> None:
    payload = b'{"model":"gpt-4o","messages":[{"role":"user","content":"\xe4\xbd\xa0\xe5\xa5\xbd"}]}'
    with build_test_client(monkeypatch, tmp_path) as client:
        user_id = seed_account(app.state.user_store, "alice", session_token="tok")
        recorder = _Recorder()
        install_upstream(recorder)

        response = client.post(
            "/providers/echo/v1/chat/completions?stream=true",
            headers={**_session_headers(user_id, "tok"), "Content-Type": "application/json"},
            content=payload,
        )

    assert response.status_code == 200
    assert response.content == payload
    assert response.headers["x-accel-buffering"] == "no"
    upstream = recorder.requests[0]
    assert str(upstream.url) == "http://upstream.test/v1/chat/completions?stream=true"
    assert upstream.headers["authorization"] == "Bearer server-key"
    assert "x-user-info" not in upstream.headers


def test_multi_chunk_stream_reaches_client(monkeypatch: Any, tmp_path: Path) -> None:
    chunks = [b"data: one\n\n", b"data: two\n\n", b"data: [DONE]\n\n"]
    with build_test_client(monkeypatch, tmp_path) as client:
        user_id = seed_account(app.state.user_store, "alice", session_token="tok")
        install_upstream(
            lambda request: httpx.Response(
                200,
                headers={"content-type": "text/event-stream"},
                stream=ChunkStream(chunks),
            )
        )

        response = client.post(
            "/providers/echo/chat", headers=_session_headers(user_id, "tok"), content=b"{}"
        )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.content == b"".join(chunks)


def test_api_key_request_forwards_client_key_when_enabled(
    monkeypatch: Any, tmp_path: Path
) -> None:
    with build_test_client(monkeypatch, tmp_path) as client:
        recorder = _Recorder()
        install_upstream(recorder)

        response = client.post(
            "/providers/OpenAI/chat/completions",
            headers={"Authorization": "Bearer sk-abcdef123"},
            content=b"{}",
        )

    assert response.status_code == 200
    upstream = recorder.requests[0]
    assert upstream.url.path == "/v1/chat/completions"
    assert upstream.headers["authorization"] == "Bearer sk-abcdef123"


def test_api_key_request_uses_server_key_when_forwarding_disabled(
    monkeypatch: Any, tmp_path: Path
) -> None:
    with build_test_client(monkeypatch, tmp_path) as client:
        recorder = _Recorder()
        install_upstream(recorder)

        response = client.get("/providers/echo/models", headers={"x-api-key": "client-key-1"})

    assert response.status_code == 200
    assert recorder.requests[0].headers["authorization"] == "Bearer server-key"
    assert "x-api-key" not in recorder.requests[0].headers


@pytest.mark.parametrize(
    ("upstream_status", "expected_status", "expected_type"),
    [
        (401, 401, "unauthorized"),
        (403, 403, "unauthorized"),
        (404, 404, "not_found"),
        (429, 429, "upstream_error"),
        (503, 503, "upstream_error"),
    ],
)
def test_upstream_failures_are_mapped(
    monkeypatch: Any,
    tmp_path: Path,
    upstream_status: int,
    expected_status: int,
    expected_type: str,
) -> None:
    with build_test_client(monkeypatch, tmp_path) as client:
        user_id = seed_account(app.state.user_store, "alice", session_token="tok")
        install_upstream(
            lambda request: httpx.Response(
                upstream_status,
                headers={"www-authenticate": "Basic realm=upstream"},
                json={"error": {"message": "upstream said no"}},
            )
        )

        response = client.post(
            "/providers/echo/chat", headers=_session_headers(user_id, "tok"), content=b"{}"
        )

    assert response.status_code == expected_status
    body = response.json()
    assert body["error"]["type"] == expected_type
    assert body["error"]["message"] == "upstream said no"
    assert body["error"]["upstream_status"] == upstream_status
    assert "basic" not in response.headers.get("www-authenticate", "").lower()


def test_unreachable_upstream_is_bad_gateway(monkeypatch: Any, tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    with build_test_client(monkeypatch, tmp_path) as client:
        user_id = seed_account(app.state.user_store, "alice", session_token="tok")
        install_upstream(handler)

        response = client.post(
            "/providers/echo/chat", headers=_session_headers(user_id, "tok"), content=b"{}"
        )

    assert response.status_code == 502
    assert response.json()["error"]["type"] == "upstream_error"
    assert "upstream_status" not in response.json()["error"]


def test_disallowed_provider_path_is_not_found(monkeypatch: Any, tmp_path: Path) -> None:
    with build_test_client(monkeypatch, tmp_path) as client:
        user_id = seed_account(app.state.user_store, "alice", session_token="tok")
        recorder = _Recorder()
        install_upstream(recorder)

        response = client.post(
            "/providers/anthropic/v1/complete",
            headers=_session_headers(user_id, "tok"),
            content=b"{}",
        )

    assert response.status_code == 404
    assert response.json()["error"]["type"] == "not_found"
    assert recorder.requests == []


def test_unexpected_errors_become_generic_500(monkeypatch: Any, tmp_path: Path) -> None:
    async def _explode(*_: Any, **__: Any) -> Any:
        raise RuntimeError("secret detail")

    with build_test_client(monkeypatch, tmp_path) as client:
        user_id = seed_account(app.state.user_store, "alice", session_token="tok")
        monkeypatch.setattr(app.state.forwarder, "forward", _explode)

        response = client.post(
            "/providers/echo/chat", headers=_session_headers(user_id, "tok"), content=b"{}"
        )

    assert response.status_code == 500
    assert response.json()["error"]["type"] == "internal"
    assert "secret detail" not in response.text


def test_providers_listing_hides_secrets(monkeypatch: Any, tmp_path: Path) -> None:
    with build_test_client(monkeypatch, tmp_path) as client:
        response = client.get("/providers")

    assert response.status_code == 200
    ids = [item["id"] for item in response.json()["data"]]
    assert ids == ["anthropic", "azure", "echo", "openai"]
    assert "server-key" not in response.text


def test_startup_fails_without_provider_config(monkeypatch: Any, tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        with build_test_client(
            monkeypatch, tmp_path, PROVIDER_CONFIG_PATH=str(tmp_path / "missing.yaml")
        ):
            pass


def test_startup_fails_with_invalid_provider_config(monkeypatch: Any, tmp_path: Path) -> None:
    config_path = tmp_path / "providers.yaml"
    config_path.write_text("- not\n- a mapping\n", encoding="utf-8")

    with pytest.raises(ProviderConfigError):
        with build_test_client(monkeypatch, tmp_path, PROVIDER_CONFIG_PATH=str(config_path)):
            pass


def test_unencodable_session_token_is_rejected_alike_for_known_and_unknown_users(
    monkeypatch: Any, tmp_path: Path
) -> None:
    with build_test_client(monkeypatch, tmp_path) as client:
        user_id = seed_account(app.state.user_store, "alice", session_token="tok")
        recorder = _Recorder()
        install_upstream(recorder)

        responses = [
            client.post(
                "/providers/echo/chat",
                headers={"X-User-Info": f'{{"userId": {candidate}, "sessionToken": "\\ud800"}}'},
                content=b"{}",
            )
            for candidate in (user_id, 999)
        ]
        responses.append(
            client.post(
                "/providers/echo/chat",
                headers={"X-User-Info": '{"userId": "\\u00b2", "sessionToken": "tok"}'},
                content=b"{}",
            )
        )

    assert {response.status_code for response in responses} == {401}
    assert len({response.text for response in responses}) == 1
    assert recorder.requests == []


def test_disallowed_model_is_forbidden_without_upstream_call(
    monkeypatch: Any, tmp_path: Path
) -> None:
    with build_test_client(monkeypatch, tmp_path) as client:
        user_id = seed_account(app.state.user_store, "alice", session_token="tok")
        recorder = _Recorder()
        install_upstream(recorder)

        denied = client.post(
            "/providers/anthropic/v1/messages",
            headers=_session_headers(user_id, "tok"),
            json={"model": "claude-2", "messages": []},
        )
        allowed = client.post(
            "/providers/anthropic/v1/messages",
            headers=_session_headers(user_id, "tok"),
            json={"model": "claude-3-5-sonnet", "messages": []},
        )

    assert denied.status_code == 403
    error = denied.json()["error"]
    assert error["type"] == "model_not_allowed"
    assert error["message"] == "you are not allowed to use claude-2 model"
    assert allowed.status_code == 200
    assert len(recorder.requests) == 1
    assert recorder.requests[0].headers["x-api-key"] == "anthropic-server-key"


def test_repeated_request_headers_reach_upstream(monkeypatch: Any, tmp_path: Path) -> None:
    with build_test_client(monkeypatch, tmp_path) as client:
        user_id = seed_account(app.state.user_store, "alice", session_token="tok")
        recorder = _Recorder()
        install_upstream(recorder)

        response = client.get(
            "/providers/echo/models",
            headers=[
                *_session_headers(user_id, "tok").items(),
                ("X-Tag", "a"),
                ("X-Tag", "b"),
                ("Connection", "keep-alive, X-Internal"),
                ("X-Internal", "secret"),
            ],
        )

    assert response.status_code == 200
    upstream = recorder.requests[0]
    assert upstream.headers.get_list("x-tag") == ["a", "b"]
    assert "x-internal" not in upstream.headers
    assert "content-type" not in upstream.headers
