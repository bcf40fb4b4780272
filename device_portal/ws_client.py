"""WebSocket subscription channel for Device Portal streams."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

from .errors import CertificateTrustError, PortalConnectionError
from .protocol import build_endpoint, build_origin, read_json
from .ws import WebSocketCertificateError, connect_websocket

if TYPE_CHECKING:
    import ssl

    from yarl import URL

    from .certificates import CertificateTrust
    from .connection import ConnectionDescriptor

_LOGGER = logging.getLogger(__name__)

MessageCallback = Callable[[Any], None]


async def read_message(ws: ClientConnection) -> str | None:
    """Receive one complete message, joining its fragments.

    Returns None for binary messages, which the Portal does not use.
    """
    parts: list[str] = []
    binary = False
    async for fragment in ws.recv_streaming():
        if isinstance(fragment, bytes):
            binary = True
            continue
        parts.append(fragment)
    if binary:
        return None
    return "".join(parts)


class PortalWsChannel:
    """One streaming subscription to a Device Portal WebSocket endpoint.

    Usage:
        channel = PortalWsChannel(connection, trust, parse=SystemPerf.from_dict)
        channel.on_message(handle_perf)
        await channel.connect("api/resourcemanager/systemperf")
        await channel.start_listening()
        ...
        await channel.stop_listening()
    """

    def __init__(
        self,
        connection: ConnectionDescriptor,
        trust: CertificateTrust,
        *,
        parse: Callable[[Any], Any] | None = None,
        unwrap_envelope: bool = False,
        ping_interval: float | None = 20,
        timeout: float = 15.0,
    ) -> None:
        self._connection = connection
        self._trust = trust
        self._parse = parse
        self._unwrap_envelope = unwrap_envelope
        self._ping_interval = ping_interval
        self._timeout = timeout

        self._ws: ClientConnection | None = None
        self._listen_task: asyncio.Task[None] | None = None
        self._listening = False
        self._lock = asyncio.Lock()
        self._callbacks: list[MessageCallback] = []

    @property
    def is_connected(self) -> bool:
        return self._ws is not None

    @property
    def is_listening(self) -> bool:
        return self._listening

    def on_message(self, callback: MessageCallback) -> Callable[[], None]:
        """Register a message listener.

        Returns:
            Callable that removes the listener.
        """
        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    async def connect(
        self,
        path: str,
        query: Mapping[str, Any] | str | None = None,
    ) -> None:
        """Open the WebSocket. Does nothing if already connected."""
        if self._ws is not None:
            return

        uri = build_endpoint(self._connection.web_socket_uri, path, query)
        headers: dict[str, str] = {}
        credentials = self._connection.credentials
        if credentials is not None:
            headers["Authorization"] = credentials.authorization()

        secure = uri.scheme == "wss"
        if not secure:
            ws = await self._open(uri, headers, None)
        else:
            # The Authorization header is only sent after the handshake
            # verified the peer against the pinned certificate
            context = await self._trust.verified_context(uri)
            try:
                ws = await self._open(uri, headers, context)
            except WebSocketCertificateError:
                if not self._trust.has_override_handler:
                    raise
                await self._trust.approve_peer(uri, self._timeout)
                ws = await self._open(uri, headers, self._trust.ssl_context())

        if secure:
            try:
                self._trust.check_peer(ws.transport.get_extra_info("ssl_object"), uri)
            except CertificateTrustError:
                await ws.close()
                raise

        self._ws = ws
        _LOGGER.info("[%s] WebSocket connected: %s", self._connection.authority, path)

    async def _open(
        self,
        uri: URL,
        headers: dict[str, str],
        context: ssl.SSLContext | None,
    ) -> ClientConnection:
        return await connect_websocket(
            uri,
            ssl=context,
            origin=build_origin(self._connection.base_uri),
            headers=headers,
            ping_interval=self._ping_interval,
            timeout=self._timeout,
        )

    async def start_listening(self) -> None:
        """Start the receive loop. Does nothing if already listening."""
        async with self._lock:
            if self._listening:
                return
            if self._ws is None:
                raise PortalConnectionError("WebSocket is not connected")
            self._listening = True
            self._listen_task = asyncio.create_task(self._receive_loop(self._ws))

    async def stop_listening(self) -> None:
        """Close the stream and wait for the receive loop to finish.

        Safe to call repeatedly. Re-raises any error that ended the loop
        other than the connection closing.
        """
        async with self._lock:
            task = self._listen_task
            self._listen_task = None
            ws = self._ws
            if ws is not None and task is not None:
                await ws.close()
                self._ws = None
            if task is None:
                return
            try:
                await task
            finally:
                self._listening = False

    async def close(self) -> None:
        """Stop listening and close the WebSocket."""
        try:
            await self.stop_listening()
        finally:
            if self._ws is not None:
                await self._ws.close()
                self._ws = None

    async def send(self, message: str) -> None:
        """Send a text message on the stream."""
        if self._ws is None:
            raise PortalConnectionError("WebSocket is not connected")
        await self._ws.send(message)

    async def _receive_loop(self, ws: ClientConnection) -> None:
        authority = self._connection.authority
        try:
            while True:
                message = await read_message(ws)
                if message is None:
                    continue
                payload = read_json(message, unwrap_envelope=self._unwrap_envelope)
                if payload is not None and self._parse is not None:
                    payload = self._parse(payload)
                for callback in list(self._callbacks):
                    callback(payload)
        except ConnectionClosedOK:
            _LOGGER.info("[%s] WebSocket closed", authority)
        except ConnectionClosedError as err:
            # Abnormal closure or reset by peer ends the stream like a close
            _LOGGER.debug("[%s] WebSocket closed abnormally: %s", authority, err)
        except Exception:
            _LOGGER.warning("[%s] WebSocket receive loop failed, closing", authority)
            await ws.close()
            raise
        finally:
            self._listening = False
            if self._ws is ws:
                self._ws = None
