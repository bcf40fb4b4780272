"""HTTP client for Device Portal REST endpoints."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

import aiohttp

from .certificates import DEFAULT_HANDSHAKE_TIMEOUT
from .csrf import CsrfTokenStore, is_bad_csrf_token
from .errors import (
    CertificateTrustError,
    PortalConnectionError,
    PortalError,
    PortalTimeout,
)
from .protocol import (
    DEVICE_FAMILY_API,
    DOUBLE_ENCODED_APIS,
    build_endpoint,
    parse_error_body,
    read_json,
)

if TYPE_CHECKING:
    from yarl import URL

    from .certificates import CertificateTrust
    from .connection import ConnectionDescriptor

_LOGGER = logging.getLogger(__name__)

USER_AGENT = "WindowsDevicePortalWrapper"

# Verbs retried once after a CSRF token refresh
_CSRF_RETRY_METHODS = frozenset({"PUT", "DELETE"})

_MAX_REASON_LENGTH = 256


class _HandshakeRejected(CertificateTrustError):
    """TLS handshake failed verification against the pinned certificates."""


class PortalHttpClient:
    """REST request pipeline for one Device Portal connection.

    Every request carries basic credentials, the CSRF header for its verb and,
    over https, is only sent once the handshake has verified the peer against
    the connection's CertificateTrust.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        connection: ConnectionDescriptor,
        trust: CertificateTrust,
        csrf: CsrfTokenStore | None = None,
        *,
        timeout: float | None = None,
        user_agent: str = USER_AGENT,
    ) -> None:
        self._session = session
        self._connection = connection
        self._trust = trust
        self._csrf = csrf or CsrfTokenStore()
        self._timeout = timeout
        self._user_agent = user_agent

    @property
    def csrf(self) -> CsrfTokenStore:
        return self._csrf

    async def get(
        self,
        path: str,
        query: Mapping[str, Any] | str | None = None,
        **kwargs: Any,
    ) -> Any:
        return await self.request("GET", path, query, **kwargs)

    async def post(
        self,
        path: str,
        query: Mapping[str, Any] | str | None = None,
        body: Any = None,
        **kwargs: Any,
    ) -> Any:
        return await self.request("POST", path, query, body, **kwargs)

    async def put(
        self,
        path: str,
        query: Mapping[str, Any] | str | None = None,
        body: Any = None,
        **kwargs: Any,
    ) -> Any:
        return await self.request("PUT", path, query, body, **kwargs)

    async def delete(
        self,
        path: str,
        query: Mapping[str, Any] | str | None = None,
        **kwargs: Any,
    ) -> Any:
        return await self.request("DELETE", path, query, **kwargs)

    async def request(
        self,
        method: str,
        path: str,
        query: Mapping[str, Any] | str | None = None,
        body: Any = None,
        *,
        parse: Callable[[Any], Any] | None = None,
        validate_certificate: bool = True,
        authenticate: bool = True,
        allow_retry: bool = True,
    ) -> Any:
        """Issue a request and decode its JSON response.

        Args:
            method: HTTP verb.
            path: API path relative to the device base URI.
            query: Query mapping, or an already encoded query string.
            body: Object serialized as the JSON request body.
            parse: Optional converter applied to the decoded payload.
            validate_certificate: Check the server certificate over https.
            authenticate: Send basic credentials.
            allow_retry: Permit the single retry after a CSRF refresh.

        Returns:
            The decoded (and converted) payload, or None for an empty body.

        Raises:
            PortalError: If the device returns a non-success status.
            PortalTimeout: If the request times out.
            PortalConnectionError: If the request fails in transport.
            CertificateTrustError: If the server certificate is rejected.
            ProtocolFormatError: If the response body is not valid JSON.
        """
        method = method.upper()
        stale_token = self._csrf.token
        try:
            raw = await self._send(
                method,
                path,
                query,
                body,
                validate_certificate=validate_certificate,
                authenticate=authenticate,
            )
        except PortalError as err:
            if not (
                allow_retry
                and method in _CSRF_RETRY_METHODS
                and is_bad_csrf_token(err)
            ):
                raise
            _LOGGER.debug(
                "[%s] %s %s rejected for CSRF token, refreshing",
                self._connection.authority,
                method,
                path,
            )
            await self.refresh_csrf_token(stale_token)
            return await self.request(
                method,
                path,
                query,
                body,
                parse=parse,
                validate_certificate=validate_certificate,
                authenticate=authenticate,
                allow_retry=False,
            )

        payload = read_json(
            raw, unwrap_envelope=path.strip("/") in DOUBLE_ENCODED_APIS
        )
        if payload is None or parse is None:
            return payload
        return parse(payload)

    async def get_bytes(
        self,
        path: str,
        query: Mapping[str, Any] | str | None = None,
        *,
        validate_certificate: bool = True,
        authenticate: bool = True,
    ) -> bytes:
        """GET a resource and return the raw body."""
        return await self._send(
            "GET",
            path,
            query,
            None,
            validate_certificate=validate_certificate,
            authenticate=authenticate,
        )

    async def refresh_csrf_token(self, stale_token: str | None = None) -> None:
        """Fetch a new CSRF token unless another request already replaced it."""
        async with self._csrf.refresh_lock:
            if not await self._csrf.invalidate(stale_token):
                return
            await self._send("GET", DEVICE_FAMILY_API, None, None)

    async def _send(
        self,
        method: str,
        path: str,
        query: Mapping[str, Any] | str | None,
        body: Any,
        *,
        validate_certificate: bool = True,
        authenticate: bool = True,
    ) -> bytes:
        url = build_endpoint(self._connection.base_uri, path, query)
        credentials = self._connection.credentials
        headers = {"User-Agent": self._user_agent}
        headers.update(
            self._csrf.headers_for(
                method,
                bypass=credentials is not None and credentials.bypasses_csrf,
            )
        )
        if authenticate and credentials is not None:
            headers["Authorization"] = credentials.authorization()

        kwargs: dict[str, Any] = {"headers": headers}
        if body is not None:
            kwargs["json"] = body
        if self._timeout is not None:
            kwargs["timeout"] = aiohttp.ClientTimeout(total=self._timeout)

        if url.scheme != "https":
            return await self._exchange(method, path, url, kwargs, check=False)
        if not validate_certificate:
            kwargs["ssl"] = self._trust.unverified_context()
            return await self._exchange(method, path, url, kwargs, check=False)

        # Headers and body are only written after the handshake verified the
        # peer against the pinned certificate
        kwargs["ssl"] = await self._trust.verified_context(url)
        try:
            return await self._exchange(method, path, url, kwargs, check=True)
        except _HandshakeRejected:
            if not self._trust.has_override_handler:
                raise
        await self._trust.approve_peer(url, self._timeout or DEFAULT_HANDSHAKE_TIMEOUT)
        kwargs["ssl"] = self._trust.ssl_context()
        return await self._exchange(method, path, url, kwargs, check=True)

    async def _exchange(
        self,
        method: str,
        path: str,
        url: URL,
        kwargs: dict[str, Any],
        *,
        check: bool,
    ) -> bytes:
        _LOGGER.debug("[%s] %s %s", self._connection.authority, method, url)
        try:
            async with self._session.request(method, url, **kwargs) as resp:
                if check:
                    self._check_certificate(resp, url)
                if method == "GET":
                    await self._csrf.update_from_response(resp)
                data = await resp.read()
                if not 200 <= resp.status < 300:
                    raise _portal_error(resp, data, url)
                return data
        except TimeoutError as err:
            raise PortalTimeout(f"{method} {path} timed out") from err
        except aiohttp.ClientConnectorCertificateError as err:
            raise _HandshakeRejected(
                f"Server certificate for {url} failed verification"
            ) from err
        except aiohttp.ClientError as err:
            raise PortalConnectionError(f"{method} {path} failed: {err}") from err

    def _check_certificate(self, resp: aiohttp.ClientResponse, url: URL) -> None:
        connection = resp.connection
        transport = connection.transport if connection is not None else None
        ssl_object = transport.get_extra_info("ssl_object") if transport else None
        self._trust.check_peer(ssl_object, url)


def _portal_error(resp: aiohttp.ClientResponse, data: bytes, url: URL) -> PortalError:
    hresult, reason = parse_error_body(data)
    if reason is None:
        text = data.decode("utf-8", errors="replace").strip()
        reason = text[:_MAX_REASON_LENGTH] if text else (resp.reason or "")
    return PortalError(resp.status, reason, str(url), hresult=hresult)
