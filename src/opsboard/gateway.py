"""Authenticated request layer with single-flight token refresh.

Every backend call goes through :class:`RequestGateway`. It attaches the
bearer token, unwraps the ``{data: ...}`` envelope, and recovers from an
expired access token by refreshing once and retrying the original request
exactly once. Concurrent callers that hit a 401 while a refresh is pending
share that refresh instead of issuing their own; two parallel refreshes would
invalidate one of the rotated token pairs.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Mapping, Optional

import httpx
from loguru import logger

from .constants import API_PREFIX, DEFAULT_BASE_URL, DEFAULT_TIMEOUT_SECONDS, GENERIC_FAILURE_MESSAGE
from .credentials import CredentialPair, CredentialStore
from .errors import ApiError, AuthenticationError, TransportError

_NO_BODY = object()


def unwrap_envelope(payload: Any) -> Any:
    """Return ``payload["data"]`` for an enveloped body, else the body itself."""
    if isinstance(payload, dict) and "data" in payload:
        return payload["data"]
    return payload


def error_message(payload: Any, reason: str = "") -> str:
    """Pick the most specific message from an error body.

    Order: ``error.message``, ``message``, ``error`` (string), *reason*.
    """
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict):
            nested = err.get("message")
            if isinstance(nested, str) and nested:
                return nested
        message = payload.get("message")
        if isinstance(message, str) and message:
            return message
        if isinstance(err, str) and err:
            return err
    return reason or GENERIC_FAILURE_MESSAGE


def _decode(response: httpx.Response) -> Any:
    """Decode a JSON body; ``None`` for an empty body, ``_NO_BODY`` if undecodable."""
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return _NO_BODY


class RequestGateway:
    """Wrap outbound calls with credentials, envelope handling and refresh.

    Parameters
    ----------
    credentials:
        Token store consulted for every authenticated call.
    base_url:
        Backend origin, e.g. ``http://127.0.0.1:8080``.
    client:
        Optional pre-built ``httpx.AsyncClient``; the gateway then does not
        close it.
    transport:
        Optional ``httpx`` transport (``ASGITransport`` in tests).
    """

    def __init__(
        self,
        credentials: CredentialStore,
        base_url: str = DEFAULT_BASE_URL,
        *,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        api_prefix: str = API_PREFIX,
    ) -> None:
        self.credentials = credentials
        self.api_prefix = api_prefix.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            transport=transport,
            timeout=timeout,
        )
        self._refreshing: Optional[asyncio.Task[bool]] = None

    async def __aenter__(self) -> "RequestGateway":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @property
    def refresh_pending(self) -> bool:
        return self._refreshing is not None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def call(
        self,
        path: str,
        method: str = "GET",
        body: Any = None,
        *,
        requires_auth: bool = True,
        params: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Any:
        """Issue a request and return the unwrapped response payload.

        Raises:
            ApiError: the backend answered with a non-success status.
            AuthenticationError: the session could not be (re)established.
            TransportError: the backend was unreachable or sent garbage.
        """
        response = await self.send(
            path,
            method,
            body,
            requires_auth=requires_auth,
            params=params,
            headers=headers,
        )
        payload = _decode(response)
        if not response.is_success:
            if payload is _NO_BODY:
                payload = None
            raise ApiError(error_message(payload, response.reason_phrase), response.status_code)
        if payload is _NO_BODY:
            logger.error("{} {} returned an undecodable body", method.upper(), path)
            raise TransportError()
        return unwrap_envelope(payload)

    async def send(
        self,
        path: str,
        method: str = "GET",
        body: Any = None,
        *,
        requires_auth: bool = True,
        params: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> httpx.Response:
        """Issue a request with refresh-and-retry, returning the raw response."""
        method = method.upper()
        url = self._url(path)
        request_headers = dict(headers or {})
        content = self._encode_body(body, request_headers)

        # A caller-supplied Authorization header is not ours to refresh.
        managed_auth = requires_auth and "Authorization" not in request_headers
        sent_token = ""
        if managed_auth and self.credentials.access_token:
            sent_token = self.credentials.access_token
            request_headers["Authorization"] = f"Bearer {sent_token}"

        response = await self._dispatch(method, url, params, request_headers, content)
        if response.status_code != 401 or not managed_auth:
            return response

        if not self.credentials.refresh_token:
            self.credentials.clear()
            raise AuthenticationError(error_message(_safe_payload(response), response.reason_phrase))

        if not await self._ensure_fresh_token(sent_token):
            raise AuthenticationError("Session expired, please sign in again")

        request_headers["Authorization"] = f"Bearer {self.credentials.access_token}"
        response = await self._dispatch(method, url, params, request_headers, content)
        if response.status_code == 401:
            logger.warning("{} {} still unauthorized after refresh; clearing credentials", method, path)
            self.credentials.clear()
            raise AuthenticationError(error_message(_safe_payload(response), response.reason_phrase))
        return response

    # ------------------------------------------------------------------
    # Refresh protocol
    # ------------------------------------------------------------------

    async def _ensure_fresh_token(self, sent_token: str) -> bool:
        """Make sure the stored access token is newer than *sent_token*."""
        current = self.credentials.access_token
        if sent_token and current and current != sent_token:
            # Another caller already rotated the pair after this request left.
            return True
        if self._refreshing is None:
            self._refreshing = asyncio.ensure_future(self._refresh())
        # shield: a cancelled waiter must not cancel the shared refresh.
        return await asyncio.shield(self._refreshing)

    async def _refresh(self) -> bool:
        try:
            refresh_token = self.credentials.refresh_token
            if not refresh_token:
                return False
            logger.debug("Refreshing access token")
            try:
                response = await self._client.post(
                    self._url("/auth/refresh"),
                    json={"refreshToken": refresh_token},
                )
            except httpx.HTTPError as exc:
                logger.warning("Token refresh failed: {}", exc)
                self.credentials.clear()
                return False

            if not response.is_success:
                logger.warning("Token refresh rejected with status {}", response.status_code)
                self.credentials.clear()
                return False

            pair = CredentialPair.from_payload(unwrap_envelope(_safe_payload(response)))
            if not pair.complete:
                logger.warning("Token refresh response did not carry a token pair")
                self.credentials.clear()
                return False

            try:
                self.credentials.set(pair)
            except OSError as exc:
                logger.error("Could not save refreshed credentials: {}", exc)
                self._drop_credentials()
                return False
            logger.debug("Access token refreshed")
            return True
        finally:
            self._refreshing = None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _drop_credentials(self) -> None:
        try:
            self.credentials.clear()
        except OSError as exc:
            logger.error("Could not remove stored credentials: {}", exc)

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://")) or path.startswith(self.api_prefix + "/"):
            return path
        return f"{self.api_prefix}/{path.lstrip('/')}"

    @staticmethod
    def _encode_body(body: Any, headers: dict[str, str]) -> Optional[bytes | str]:
        if body is None:
            return None
        if isinstance(body, (bytes, bytearray, str)):
            return bytes(body) if isinstance(body, bytearray) else body
        if not any(k.lower() == "content-type" for k in headers):
            headers["Content-Type"] = "application/json"
        return json.dumps(body).encode("utf-8")

    async def _dispatch(
        self,
        method: str,
        url: str,
        params: Optional[Mapping[str, Any]],
        headers: dict[str, str],
        content: Optional[bytes | str],
    ) -> httpx.Response:
        try:
            return await self._client.request(
                method,
                url,
                params=_clean_params(params),
                headers=headers,
                content=content,
            )
        except httpx.HTTPError as exc:
            logger.error("{} {} failed: {}", method, url, exc)
            raise TransportError() from exc


def _safe_payload(response: httpx.Response) -> Any:
    payload = _decode(response)
    return None if payload is _NO_BODY else payload


def _clean_params(params: Optional[Mapping[str, Any]]) -> Optional[dict[str, Any]]:
    if not params:
        return None
    return {k: v for k, v in params.items() if v not in (None, "")}
