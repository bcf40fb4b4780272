"""WebSocket helpers for Device Portal streams."""

from __future__ import annotations

import asyncio
import ssl as ssl_module
from collections.abc import Mapping
from typing import Any

import websockets
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import (
    InvalidHandshake,
    InvalidURI,
    WebSocketException,
)
from yarl import URL

from .errors import (
    CertificateTrustError,
    PortalConnectionError,
    PortalHandshakeError,
    PortalTimeout,
)


class WebSocketCertificateError(CertificateTrustError):
    """TLS handshake failed verification against the pinned certificates."""


async def connect_websocket(
    uri: URL | str,
    *,
    ssl: ssl_module.SSLContext | None = None,
    origin: str | None = None,
    headers: Mapping[str, str] | None = None,
    ping_interval: float | None = 20,
    timeout: float = 15.0,
) -> ClientConnection:
    """Connect to a WebSocket endpoint.

    Args:
        uri: ws:// or wss:// URI including path and query
        ssl: TLS context for wss
        origin: Origin header value
        headers: Additional handshake headers
        ping_interval: Interval for ping frames
        timeout: Connection timeout
    """
    kwargs: dict[str, Any] = {}
    if ssl is not None:
        kwargs["ssl"] = ssl
    try:
        return await asyncio.wait_for(
            websockets.connect(
                str(uri),
                origin=origin,
                additional_headers=dict(headers or {}),
                ping_interval=ping_interval,
                close_timeout=5,
                max_size=None,
                **kwargs,
            ),
            timeout=timeout,
        )
    except TimeoutError as err:
        raise PortalTimeout("WebSocket connection timed out") from err
    except ssl_module.SSLCertVerificationError as err:
        raise WebSocketCertificateError(
            f"Server certificate for {uri} failed verification"
        ) from err
    except (InvalidHandshake, InvalidURI) as err:
        raise PortalHandshakeError(f"WebSocket handshake failed: {err}") from err
    except (OSError, WebSocketException) as err:
        raise PortalConnectionError("WebSocket connection failed") from err
