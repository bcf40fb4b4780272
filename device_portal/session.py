"""Session manager for Device Portal communication.

This module provides the canonical API for talking to one device. It handles:
- The connect sequence (certificate, OS info, https negotiation, wifi, address)
- Connection status notifications
- REST requests through a shared pipeline
- WebSocket subscriptions, one channel per path

Feature endpoint modules (device_portal.endpoints) take a PortalSession and
call request()/subscribe() on it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

import aiohttp

from .certificates import CertificateTrust, UnvalidatedCertificateHandler
from .connection import (
    ConnectionDescriptor,
    Credentials,
    DevicePlatform,
    is_hololens,
)
from .csrf import CsrfTokenStore
from .endpoints import holographic, networking, os_info
from .errors import (
    CertificateUnavailableError,
    PortalClientError,
    PortalError,
    UnsupportedOperationError,
)
from .events import ConnectionPhase, ConnectionStatus, ConnectionStatusEvent
from .http import USER_AGENT, PortalHttpClient
from .protocol import DOUBLE_ENCODED_APIS
from .ws_client import PortalWsChannel

if TYPE_CHECKING:
    from cryptography import x509

    from .config import PortalConfig

_LOGGER = logging.getLogger(__name__)

StatusCallback = Callable[[ConnectionStatusEvent], None]

# Platforms reachable over USB, whose wifi address uses the default port
_USB_PLATFORMS = frozenset(
    {DevicePlatform.HOLOLENS, DevicePlatform.HOLOLENS2, DevicePlatform.MOBILE}
)


def _innermost_message(err: BaseException) -> str:
    while err.__cause__ is not None:
        err = err.__cause__
    return str(err) or type(err).__name__


class PortalSession:
    """High-level session for one Device Portal target.

    Usage:
        connection = ConnectionDescriptor("192.168.1.20", Credentials("admin", "pw"))
        async with PortalSession(connection) as portal:
            portal.on_connection_status(print)
            if await portal.connect(update_connection=True):
                perf = await performance.get_system_perf(portal)
    """

    def __init__(
        self,
        connection: ConnectionDescriptor,
        *,
        session: aiohttp.ClientSession | None = None,
        request_timeout: float | None = None,
        user_agent: str = USER_AGENT,
        ws_ping_interval: float | None = 20,
        ws_connect_timeout: float = 15.0,
    ) -> None:
        """Initialize session.

        Args:
            connection: Target device descriptor
            session: Shared aiohttp session; one is created and owned if None
            request_timeout: Total timeout for REST calls (seconds)
            user_agent: User-Agent header for REST calls
            ws_ping_interval: WebSocket keepalive interval (seconds)
            ws_connect_timeout: WebSocket handshake timeout (seconds)
        """
        self._connection = connection
        self._session = session
        self._owns_session = session is None
        self._request_timeout = request_timeout
        self._user_agent = user_agent
        self._ws_ping_interval = ws_ping_interval
        self._ws_connect_timeout = ws_connect_timeout

        self._trust = CertificateTrust(connection)
        self._csrf = CsrfTokenStore()
        self._http: PortalHttpClient | None = None
        self._channels: dict[str, PortalWsChannel] = {}

        # Connection status
        self._status = ConnectionStatus.NONE
        self._phase = ConnectionPhase.IDLE
        self._connection_http_status: int | None = None
        self._connection_failed_description = ""
        self._status_callbacks: list[StatusCallback] = []

    @classmethod
    def from_config(
        cls,
        config: PortalConfig,
        *,
        session: aiohttp.ClientSession | None = None,
    ) -> PortalSession:
        """Build a session from a loaded PortalConfig."""
        credentials = None
        if config.username is not None:
            credentials = Credentials(config.username, config.password or "")
        portal = cls(
            ConnectionDescriptor(config.address, credentials),
            session=session,
            request_timeout=config.request_timeout,
            user_agent=config.user_agent or USER_AGENT,
            ws_ping_interval=config.ws_ping_interval,
            ws_connect_timeout=config.ws_connect_timeout,
        )
        manual_certificate = config.load_certificate_file()
        if manual_certificate is not None:
            portal.trust.manual_certificate = manual_certificate
        return portal

    async def __aenter__(self) -> PortalSession:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def connection(self) -> ConnectionDescriptor:
        return self._connection

    @property
    def trust(self) -> CertificateTrust:
        return self._trust

    @property
    def http(self) -> PortalHttpClient:
        if self._http is None:
            if self._session is None:
                self._session = aiohttp.ClientSession()
            self._http = PortalHttpClient(
                self._session,
                self._connection,
                self._trust,
                self._csrf,
                timeout=self._request_timeout,
                user_agent=self._user_agent,
            )
        return self._http

    @property
    def address(self) -> str:
        return self._connection.authority

    @property
    def platform(self) -> DevicePlatform:
        return self._connection.platform

    @property
    def platform_name(self) -> str:
        return self._connection.platform_name

    @property
    def device_family(self) -> str | None:
        return self._connection.device_family

    @property
    def os_version(self) -> str:
        return self._connection.os_version

    @property
    def csrf_token(self) -> str | None:
        return self._csrf.token

    @property
    def connection_status(self) -> ConnectionStatus:
        return self._status

    @property
    def connection_phase(self) -> ConnectionPhase:
        return self._phase

    @property
    def connection_http_status(self) -> int | None:
        """HTTP status of the last connect, None if it failed without one."""
        return self._connection_http_status

    @property
    def connection_failed_description(self) -> str:
        return self._connection_failed_description

    # -------------------------------------------------------------------------
    # Callbacks
    # -------------------------------------------------------------------------

    def on_connection_status(self, callback: StatusCallback) -> Callable[[], None]:
        """Register callback for connection status events.

        Returns:
            Callable that removes the callback.
        """
        self._status_callbacks.append(callback)

        def remove() -> None:
            if callback in self._status_callbacks:
                self._status_callbacks.remove(callback)

        return remove

    def on_unvalidated_certificate(
        self, handler: UnvalidatedCertificateHandler | None
    ) -> None:
        """Register the handler deciding on certificates that fail validation."""
        self._trust.on_unvalidated_certificate(handler)

    # -------------------------------------------------------------------------
    # Connect
    # -------------------------------------------------------------------------

    async def connect(
        self,
        ssid: str | None = None,
        ssid_key: str | None = None,
        update_connection: bool = False,
        manual_certificate: bytes | x509.Certificate | None = None,
    ) -> bool:
        """Connect to the device.

        Progress is reported through on_connection_status(). Device and
        transport errors end the sequence in FAILED rather than raising.

        Args:
            ssid: Wifi network for the device to join
            ssid_key: Key for ssid
            update_connection: Switch to the device's routable address
            manual_certificate: Certificate to trust in place of the one
                the device serves

        Returns:
            True if the device connection was established.
        """
        self._connection_http_status = None
        self._connection_failed_description = ""

        _LOGGER.info("[%s] Connecting", self.address)
        phase_description = "Acquiring device certificate"
        self._send_status(
            ConnectionStatus.CONNECTING,
            ConnectionPhase.ACQUIRING_CERTIFICATE,
            phase_description,
        )
        certificate_acquired = False
        try:
            await self._trust.acquire_root_certificate(self.http)
            certificate_acquired = True
        except CertificateUnavailableError as err:
            _LOGGER.warning(
                "[%s] Device certificate unavailable: %s", self.address, err
            )
        if manual_certificate is not None:
            self._trust.manual_certificate = manual_certificate

        try:
            phase_description = "Requesting operating system information"
            self._send_status(
                ConnectionStatus.CONNECTING,
                ConnectionPhase.REQUESTING_OPERATING_SYSTEM_INFORMATION,
                phase_description,
            )
            self._connection.device_family = await os_info.get_device_family(self)
            self._connection.os_info = (
                await os_info.get_operating_system_information(self)
            )

            phase_description = "Checking secure connection requirements"
            self._send_status(
                ConnectionStatus.CONNECTING,
                ConnectionPhase.DETERMINING_CONNECTION_REQUIREMENTS,
                phase_description,
            )
            requires_https = await self._is_https_required(certificate_acquired)

            if ssid:
                phase_description = f"Connecting to {ssid} network"
                self._send_status(
                    ConnectionStatus.CONNECTING,
                    ConnectionPhase.CONNECTING_TO_TARGET_NETWORK,
                    phase_description,
                )
                wifi = await networking.get_wifi_interfaces(self)
                if not wifi.interfaces:
                    raise UnsupportedOperationError("Device has no wifi interface")
                # Only the first interface is used
                await networking.connect_to_wifi_network(
                    self, wifi.interfaces[0].guid, ssid, ssid_key or ""
                )

            if update_connection:
                phase_description = "Updating device connection"
                self._send_status(
                    ConnectionStatus.CONNECTING,
                    ConnectionPhase.UPDATING_DEVICE_ADDRESS,
                    phase_description,
                )
                ip_config = await networking.get_ip_config(self)
                if not self._connection.update_connection(
                    ip_config,
                    requires_https,
                    preserve_port=self.platform not in _USB_PLATFORMS,
                ):
                    _LOGGER.warning(
                        "[%s] No routable address reported, keeping current address",
                        self.address,
                    )
        except (PortalClientError, KeyError, TypeError, ValueError) as err:
            if isinstance(err, PortalError):
                self._connection_http_status = err.status
            self._connection_failed_description = _innermost_message(err)
            _LOGGER.error(
                "[%s] Connection failed during %s: %s",
                self.address,
                phase_description,
                self._connection_failed_description,
            )
            self._send_status(
                ConnectionStatus.FAILED,
                ConnectionPhase.IDLE,
                f"Device connection failed: {phase_description}, "
                f"{self._connection_failed_description}",
            )
            return False

        self._connection_http_status = 200
        _LOGGER.info("[%s] Connected to %s", self.address, self.platform_name)
        self._send_status(
            ConnectionStatus.CONNECTED,
            ConnectionPhase.IDLE,
            "Device connection established",
        )
        return True

    async def _is_https_required(self, certificate_acquired: bool) -> bool:
        if not is_hololens(self.platform, self.device_family):
            return certificate_acquired
        try:
            return await holographic.get_is_https_required(self)
        except UnsupportedOperationError:
            return False
        except PortalError as err:
            if err.status != 404:
                raise
            _LOGGER.warning(
                "[%s] Https requirement not exposed, assuming not required",
                self.address,
            )
            return False

    def _send_status(
        self,
        status: ConnectionStatus,
        phase: ConnectionPhase,
        message: str,
    ) -> None:
        """Update connection status and notify callbacks."""
        _LOGGER.debug(
            "[%s] %s %s: %s", self.address, status.value, phase.value, message
        )
        self._status = status
        self._phase = phase
        event = ConnectionStatusEvent(status, phase, message)
        for callback in list(self._status_callbacks):
            callback(event)

    # -------------------------------------------------------------------------
    # Platform guards
    # -------------------------------------------------------------------------

    def require_platform(
        self,
        *platforms: DevicePlatform,
        message: str | None = None,
    ) -> None:
        """Raise UnsupportedOperationError unless connected to one of platforms."""
        if self.platform not in platforms:
            raise UnsupportedOperationError(
                message or f"Not supported on {self.platform.value}"
            )

    def require_hololens(self, message: str | None = None) -> None:
        if not is_hololens(self.platform, self.device_family):
            raise UnsupportedOperationError(
                message or f"Not supported on {self.platform.value}"
            )

    # -------------------------------------------------------------------------
    # REST
    # -------------------------------------------------------------------------

    async def request(
        self,
        method: str,
        path: str,
        query: Mapping[str, Any] | str | None = None,
        body: Any = None,
        **kwargs: Any,
    ) -> Any:
        """Issue a REST request; see PortalHttpClient.request()."""
        return await self.http.request(method, path, query, body, **kwargs)

    async def get(
        self,
        path: str,
        query: Mapping[str, Any] | str | None = None,
        **kwargs: Any,
    ) -> Any:
        return await self.http.get(path, query, **kwargs)

    async def post(
        self,
        path: str,
        query: Mapping[str, Any] | str | None = None,
        body: Any = None,
        **kwargs: Any,
    ) -> Any:
        return await self.http.post(path, query, body, **kwargs)

    async def put(
        self,
        path: str,
        query: Mapping[str, Any] | str | None = None,
        body: Any = None,
        **kwargs: Any,
    ) -> Any:
        return await self.http.put(path, query, body, **kwargs)

    async def delete(
        self,
        path: str,
        query: Mapping[str, Any] | str | None = None,
        **kwargs: Any,
    ) -> Any:
        return await self.http.delete(path, query, **kwargs)

    # -------------------------------------------------------------------------
    # WebSocket subscriptions
    # -------------------------------------------------------------------------

    async def subscribe(
        self,
        path: str,
        callback: Callable[[Any], None],
        *,
        parse: Callable[[Any], Any] | None = None,
        query: Mapping[str, Any] | str | None = None,
    ) -> PortalWsChannel:
        """Stream messages from path to callback.

        Subscribing to a path that is already streaming does nothing. A path
        whose stream has ended gets a new channel with this callback and parse.
        """
        channel = self._channels.get(path)
        if channel is not None and channel.is_listening:
            return channel
        if channel is not None:
            await self._discard_channel(path, channel)

        channel = PortalWsChannel(
            self._connection,
            self._trust,
            parse=parse,
            unwrap_envelope=path.strip("/") in DOUBLE_ENCODED_APIS,
            ping_interval=self._ws_ping_interval,
            timeout=self._ws_connect_timeout,
        )
        channel.on_message(callback)
        self._channels[path] = channel

        await channel.connect(path, query)
        await channel.start_listening()
        return channel

    async def _discard_channel(self, path: str, channel: PortalWsChannel) -> None:
        del self._channels[path]
        try:
            await channel.close()
        except PortalClientError as err:
            _LOGGER.warning(
                "[%s] Previous stream on %s ended with error: %s",
                self.address,
                path,
                err,
            )

    async def unsubscribe(self, path: str) -> None:
        """Stop streaming path. Does nothing if it is not subscribed."""
        channel = self._channels.pop(path, None)
        if channel is not None:
            await channel.close()

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        """Close all channels and the owned HTTP session."""
        _LOGGER.debug("[%s] Closing session", self.address)
        channels = list(self._channels.values())
        self._channels.clear()
        try:
            for channel in channels:
                await channel.close()
        finally:
            if self._owns_session and self._session is not None:
                await self._session.close()
                self._session = None
                self._http = None
