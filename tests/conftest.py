"""Pytest configuration and fixtures for device_portal tests."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from http.cookies import SimpleCookie
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from websockets.exceptions import ConnectionClosedOK
from websockets.frames import Close
from yarl import URL

from device_portal.certificates import DEVICE_PORTAL_CERTIFICATE_ISSUER


@pytest.fixture
def mock_session() -> MagicMock:
    """Create a mock aiohttp ClientSession."""
    return MagicMock(spec=aiohttp.ClientSession)


def create_mock_response(
    status: int = 200,
    json_data: Any = None,
    text_data: str | None = None,
    read_data: bytes | None = None,
    cookies: dict[str, str] | None = None,
    reason: str = "OK",
) -> AsyncMock:
    """Create a configured mock response.

    Args:
        status: HTTP status code
        json_data: Object serialized as the response body
        text_data: Text response body
        read_data: Raw response body
        cookies: Cookies set by the response
        reason: HTTP reason phrase

    Returns:
        Configured AsyncMock response
    """
    response = AsyncMock()
    response.status = status
    response.reason = reason

    if json_data is not None:
        body = json.dumps(json_data).encode()
    elif text_data is not None:
        body = text_data.encode()
    else:
        body = read_data or b""
    response.read.return_value = body

    jar: SimpleCookie = SimpleCookie()
    for name, value in (cookies or {}).items():
        jar[name] = value
    response.cookies = jar
    response.connection = None

    response.__aenter__.return_value = response
    response.__aexit__.return_value = None

    return response


def attach_tls(
    response: AsyncMock, der: bytes, chain: list[bytes] | None = None
) -> None:
    """Make a mock response look like it arrived over TLS with this certificate."""
    ssl_object = MagicMock()
    ssl_object.getpeercert.return_value = der
    ssl_object.get_unverified_chain.return_value = chain or []
    response.connection = MagicMock()
    response.connection.transport.get_extra_info.return_value = ssl_object


def make_router(
    routes: dict[tuple[str, str], AsyncMock | list[AsyncMock]],
) -> Callable[..., AsyncMock]:
    """Side effect for ClientSession.request dispatching on (method, path).

    A list value is consumed one response per call.
    """

    def route(method: str, url: URL | str, **kwargs: Any) -> AsyncMock:
        key = (method, URL(str(url)).path.lstrip("/"))
        if key not in routes:
            return create_mock_response(status=404, reason="Not Found")
        value = routes[key]
        if isinstance(value, list):
            return value.pop(0)
        return value

    return route


def requested(mock_session: MagicMock) -> list[tuple[str, str]]:
    """(method, path) of every request issued on a mock session."""
    return [
        (c.args[0], URL(str(c.args[1])).path.lstrip("/"))
        for c in mock_session.request.call_args_list
    ]


# -----------------------------------------------------------------------------
# Certificates
# -----------------------------------------------------------------------------


def make_certificate(
    common_name: str,
    *,
    issuer: tuple[x509.Certificate, ec.EllipticCurvePrivateKey] | None = None,
    not_before: datetime | None = None,
    not_after: datetime | None = None,
) -> tuple[x509.Certificate, ec.EllipticCurvePrivateKey]:
    """Build a certificate, self-signed unless an issuer is given."""
    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(UTC)
    if issuer is None:
        issuer_name, signing_key = subject, key
    else:
        issuer_name, signing_key = issuer[0].subject, issuer[1]
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer_name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or now - timedelta(days=1))
        .not_valid_after(not_after or now + timedelta(days=365))
        .sign(signing_key, hashes.SHA256())
    )
    return cert, key


def der(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.DER)


@pytest.fixture
def device_root() -> tuple[x509.Certificate, ec.EllipticCurvePrivateKey]:
    """Self-signed root as served by the Device Portal."""
    return make_certificate(DEVICE_PORTAL_CERTIFICATE_ISSUER)


@pytest.fixture
def device_leaf(
    device_root: tuple[x509.Certificate, ec.EllipticCurvePrivateKey],
) -> x509.Certificate:
    """Server certificate issued by the device root."""
    cert, _ = make_certificate("192.168.1.10", issuer=device_root)
    return cert


@pytest.fixture
def foreign_certificate() -> x509.Certificate:
    """Certificate from an unrelated issuer."""
    cert, _ = make_certificate("Somebody Else")
    return cert


# -----------------------------------------------------------------------------
# WebSocket
# -----------------------------------------------------------------------------


class FakeWebSocket:
    """Stand-in for a websockets ClientConnection.

    Each entry of messages is the list of fragments of one message. Once they
    are consumed, end is raised if given; otherwise receiving blocks until
    close() is called.
    """

    def __init__(
        self,
        messages: list[list[str | bytes]] | None = None,
        end: BaseException | None = None,
    ) -> None:
        self._messages = list(messages or [])
        self._end = end
        self._closed = asyncio.Event()
        self.close_calls = 0
        self.sent: list[str] = []
        self.transport = MagicMock()

    def recv_streaming(self):
        return self._stream()

    async def _stream(self):
        if self._messages:
            for fragment in self._messages.pop(0):
                yield fragment
            return
        if self._end is not None:
            raise self._end
        await self._closed.wait()
        raise ConnectionClosedOK(Close(1000, ""), Close(1000, ""), True)

    async def close(self) -> None:
        self.close_calls += 1
        self._closed.set()

    async def send(self, message: str) -> None:
        self.sent.append(message)
