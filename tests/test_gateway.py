"""Tests for the request gateway: envelopes, errors and the refresh protocol."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest
from httpx import ASGITransport

from opsboard.api import BoardApi
from opsboard.constants import GENERIC_FAILURE_MESSAGE
from opsboard.credentials import CredentialPair, CredentialStore
from opsboard.devserver import DevBackend
from opsboard.errors import ApiError, AuthenticationError, TransportError
from opsboard.gateway import RequestGateway, error_message, unwrap_envelope


def _gateway(handler, pair: CredentialPair = CredentialPair("access", "refresh")) -> RequestGateway:
    credentials = CredentialStore(None)
    credentials.set(pair)
    return RequestGateway(credentials, "http://test", transport=httpx.MockTransport(handler))


async def _signed_in(transport: ASGITransport, username: str = "alice") -> tuple[RequestGateway, BoardApi]:
    credentials = CredentialStore(None)
    gateway = RequestGateway(credentials, "http://test", transport=transport)
    api = BoardApi(gateway)
    credentials.set(CredentialPair.from_payload(await api.login(username, username)))
    return gateway, api


class TestPayloadHelpers:
    def test_unwrap_envelope(self) -> None:
        assert unwrap_envelope({"data": {"id": 1}}) == {"id": 1}
        assert unwrap_envelope({"data": None}) is None
        assert unwrap_envelope({"id": 1}) == {"id": 1}
        assert unwrap_envelope([1, 2]) == [1, 2]

    def test_error_message_priority(self) -> None:
        body = {"error": {"message": "nested"}, "message": "top", "reason": "x"}
        assert error_message(body, "Bad Request") == "nested"
        assert error_message({"message": "top", "error": "flat"}, "Bad Request") == "top"
        assert error_message({"error": "flat"}, "Bad Request") == "flat"
        assert error_message({"error": {"code": "x"}}, "Bad Request") == "Bad Request"
        assert error_message(None, "") == GENERIC_FAILURE_MESSAGE


@pytest.mark.anyio
class TestCall:
    async def test_returns_unwrapped_data(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"data": {"ok": True}})

        async with _gateway(handler) as gateway:
            assert await gateway.call("/users/me") == {"ok": True}
        assert seen[0].url.path == "/api/v1/users/me"
        assert seen[0].headers["Authorization"] == "Bearer access"

    async def test_unenveloped_body_returned_as_is(self) -> None:
        async with _gateway(lambda r: httpx.Response(200, json=[1, 2, 3])) as gateway:
            assert await gateway.call("/tasks") == [1, 2, 3]

    async def test_empty_body_is_none(self) -> None:
        async with _gateway(lambda r: httpx.Response(204)) as gateway:
            assert await gateway.call("/tasks/1", "DELETE") is None

    async def test_error_status_uses_nested_message(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(409, json={"error": {"code": "conflict", "message": "Task is not available"}})

        async with _gateway(handler) as gateway:
            with pytest.raises(ApiError) as info:
                await gateway.call("/tasks/1/claim", "POST")
        assert info.value.status == 409
        assert info.value.message == "Task is not available"

    async def test_error_status_with_garbage_body_uses_reason(self) -> None:
        async with _gateway(lambda r: httpx.Response(502, content=b"<html>")) as gateway:
            with pytest.raises(ApiError) as info:
                await gateway.call("/tasks")
        assert info.value.status == 502
        assert info.value.message == "Bad Gateway"

    async def test_success_with_garbage_body_is_transport_error(self) -> None:
        async with _gateway(lambda r: httpx.Response(200, content=b"not json")) as gateway:
            with pytest.raises(TransportError) as info:
                await gateway.call("/tasks")
        assert info.value.status == 0

    async def test_network_failure_is_transport_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with _gateway(handler) as gateway:
            with pytest.raises(TransportError) as info:
                await gateway.call("/tasks")
        assert info.value.message == GENERIC_FAILURE_MESSAGE

    async def test_json_body_and_params(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"data": None})

        async with _gateway(handler) as gateway:
            await gateway.call("/tasks", "POST", {"title": "x"}, params={"keyword": "", "page": 2, "sort": None})
        request = seen[0]
        assert request.headers["Content-Type"] == "application/json"
        assert json.loads(request.content) == {"title": "x"}
        assert dict(request.url.params) == {"page": "2"}

    async def test_string_body_sent_untouched(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"data": None})

        async with _gateway(handler) as gateway:
            await gateway.call("/upload", "POST", "raw text", headers={"Content-Type": "text/plain"})
        assert seen[0].content == b"raw text"
        assert seen[0].headers["Content-Type"] == "text/plain"

    async def test_unauthenticated_call_sends_no_token(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"data": {}})

        async with _gateway(handler) as gateway:
            await gateway.call("/auth/login", "POST", {}, requires_auth=False)
        assert "Authorization" not in seen[0].headers


@pytest.mark.anyio
class TestUnauthorized:
    async def test_without_refresh_token_clears_and_raises(self) -> None:
        async with _gateway(lambda r: httpx.Response(401), CredentialPair()) as gateway:
            with pytest.raises(AuthenticationError):
                await gateway.call("/users/me")
            assert not gateway.credentials.is_authenticated()

    async def test_caller_authorization_header_is_not_refreshed(self) -> None:
        paths: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            return httpx.Response(401, json={"message": "nope"})

        async with _gateway(handler) as gateway:
            with pytest.raises(ApiError) as info:
                await gateway.call("/users/me", headers={"Authorization": "Bearer custom"})
            assert not isinstance(info.value, AuthenticationError)
            assert gateway.credentials.is_authenticated()
        assert paths == ["/api/v1/users/me"]

    async def test_second_401_after_refresh_clears(self) -> None:
        paths: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            if request.url.path.endswith("/auth/refresh"):
                return httpx.Response(200, json={"data": {"accessToken": "a2", "refreshToken": "r2"}})
            return httpx.Response(401)

        async with _gateway(handler) as gateway:
            with pytest.raises(AuthenticationError):
                await gateway.call("/users/me")
            assert not gateway.credentials.is_authenticated()
        assert paths == ["/api/v1/users/me", "/api/v1/auth/refresh", "/api/v1/users/me"]

    async def test_refresh_then_retry_once(self, backend: DevBackend, transport: ASGITransport) -> None:
        gateway, api = await _signed_in(transport)
        before = gateway.credentials.get()
        backend.expire_access_tokens()

        user = await api.fetch_current_user()

        assert user["username"] == "alice"
        assert backend.refresh_calls == 1
        after = gateway.credentials.get()
        assert after.complete
        assert after.access_token != before.access_token
        assert after.refresh_token != before.refresh_token
        await gateway.aclose()

    async def test_concurrent_401s_share_one_refresh(self, backend: DevBackend, transport: ASGITransport) -> None:
        gateway, api = await _signed_in(transport)
        backend.expire_access_tokens()
        backend.refresh_delay = 0.05

        users = await asyncio.gather(*(api.fetch_current_user() for _ in range(5)))

        assert [u["username"] for u in users] == ["alice"] * 5
        assert backend.refresh_calls == 1
        assert not gateway.refresh_pending
        await gateway.aclose()

    async def test_failed_refresh_fails_every_waiter(self, backend: DevBackend, transport: ASGITransport) -> None:
        gateway, api = await _signed_in(transport)
        backend.expire_access_tokens()
        backend.fail_refresh = True
        backend.refresh_delay = 0.05

        results = await asyncio.gather(*(api.fetch_current_user() for _ in range(4)), return_exceptions=True)

        assert all(isinstance(r, AuthenticationError) for r in results)
        assert backend.refresh_calls == 1
        assert not gateway.credentials.is_authenticated()
        await gateway.aclose()

    async def test_cancelled_waiter_does_not_cancel_refresh(
        self, backend: DevBackend, transport: ASGITransport
    ) -> None:
        gateway, api = await _signed_in(transport)
        backend.expire_access_tokens()
        backend.refresh_delay = 0.1

        first = asyncio.ensure_future(api.fetch_current_user())
        second = asyncio.ensure_future(api.fetch_current_user())
        await asyncio.sleep(0.03)
        assert gateway.refresh_pending
        first.cancel()

        user = await second
        assert user["username"] == "alice"
        assert backend.refresh_calls == 1
        assert gateway.credentials.is_authenticated()
        await gateway.aclose()

    async def test_unwritable_credentials_fail_refresh_cleanly(
        self, tmp_path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/auth/refresh"):
                return httpx.Response(200, json={"data": {"accessToken": "a2", "refreshToken": "r2"}})
            return httpx.Response(401)

        credentials = CredentialStore(tmp_path)
        credentials.set(CredentialPair("access", "refresh"))

        def read_only(path, data) -> None:
            raise OSError("read-only file system")

        monkeypatch.setattr("opsboard.credentials._atomic_write_json", read_only)
        gateway = RequestGateway(credentials, "http://test", transport=httpx.MockTransport(handler))

        results = await asyncio.gather(*(gateway.call("/users/me") for _ in range(3)), return_exceptions=True)

        assert all(isinstance(r, AuthenticationError) for r in results)
        assert not credentials.is_authenticated()
        assert not gateway.refresh_pending
        await gateway.aclose()
