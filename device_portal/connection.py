"""Connection descriptor for a Device Portal target."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

import aiohttp
from yarl import URL

if TYPE_CHECKING:
    from .endpoints.networking import IpConfiguration

# Usernames with this prefix ask the device to skip CSRF enforcement.
CSRF_BYPASS_PREFIX = "auto-"

HOLOGRAPHIC_DEVICE_FAMILY = "Windows.Holographic"

_UNROUTABLE_ADDRESSES = ("0.0.0.0",)
_UNROUTABLE_PREFIXES = ("127.", "169.")


class DevicePlatform(Enum):
    """Platforms the Device Portal runs on."""

    UNKNOWN = "Unknown"
    WINDOWS = "Windows"
    MOBILE = "Mobile"
    HOLOLENS = "HoloLens"
    HOLOLENS2 = "HoloLens2"
    XBOX_ONE = "XboxOne"
    IOT_DRAGONBOARD_410C = "IoTDragonboard410c"
    IOT_MINNOWBOARD_MAX = "IoTMinnowboardMax"
    IOT_RASPBERRY_PI2 = "IoTRaspberryPi2"
    IOT_RASPBERRY_PI3 = "IoTRaspberryPi3"
    VIRTUAL_MACHINE = "VirtualMachine"


_PLATFORM_NAMES: dict[str, DevicePlatform] = {
    "SBC": DevicePlatform.IOT_DRAGONBOARD_410C,
    "Raspberry Pi 2": DevicePlatform.IOT_RASPBERRY_PI2,
    "Raspberry Pi 3": DevicePlatform.IOT_RASPBERRY_PI3,
    "Virtual Machine": DevicePlatform.VIRTUAL_MACHINE,
    "HoloLens 2": DevicePlatform.HOLOLENS2,
}

_DESKTOP_EDITIONS = frozenset({"Enterprise", "Home", "Professional"})


def platform_from_name(
    platform_name: str | None, os_edition: str | None
) -> DevicePlatform:
    """Map the device reported platform string to a DevicePlatform.

    Names that are not recognised fall back to the OS edition.
    """
    if platform_name:
        # Model numbers and devkit suffixes vary by firmware
        if "Minnowboard Max" in platform_name:
            return DevicePlatform.IOT_MINNOWBOARD_MAX
        if "Xbox One" in platform_name:
            return DevicePlatform.XBOX_ONE
        if platform_name in _PLATFORM_NAMES:
            return _PLATFORM_NAMES[platform_name]
        try:
            return DevicePlatform(platform_name)
        except ValueError:
            pass

    if os_edition in _DESKTOP_EDITIONS:
        return DevicePlatform.WINDOWS
    if os_edition == "Mobile":
        return DevicePlatform.MOBILE
    return DevicePlatform.UNKNOWN


def is_hololens(platform: DevicePlatform, device_family: str | None = None) -> bool:
    """Return True for platforms that expose the holographic settings API."""
    if platform in (DevicePlatform.HOLOLENS, DevicePlatform.HOLOLENS2):
        return True
    return (
        platform is DevicePlatform.VIRTUAL_MACHINE
        and device_family == HOLOGRAPHIC_DEVICE_FAMILY
    )


@dataclass(frozen=True, slots=True)
class Credentials:
    """Basic network credentials for the device."""

    username: str
    password: str

    @property
    def bypasses_csrf(self) -> bool:
        return self.username.startswith(CSRF_BYPASS_PREFIX)

    def authorization(self) -> str:
        """Authorization header value for basic authentication."""
        return aiohttp.encode_basic_auth(self.username, self.password)


@dataclass(frozen=True, slots=True)
class OsInfo:
    """Operating system information reported by api/os/info.

    Attributes:
        name: Computer name.
        language: OS language tag.
        os_edition: Edition name (e.g., "Professional").
        os_edition_id: Numeric edition identifier.
        os_version: Full OS version string.
        platform_name: Raw platform string from the device.
    """

    name: str = ""
    language: str = ""
    os_edition: str = ""
    os_edition_id: int = 0
    os_version: str = ""
    platform_name: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OsInfo:
        return cls(
            name=data.get("ComputerName", ""),
            language=data.get("Language", ""),
            os_edition=data.get("OsEdition", ""),
            os_edition_id=int(data.get("OsEditionId", 0) or 0),
            os_version=data.get("OsVersion", ""),
            platform_name=data.get("Platform", ""),
        )

    @property
    def platform(self) -> DevicePlatform:
        return platform_from_name(self.platform_name, self.os_edition)


class ConnectionDescriptor:
    """Target address, credentials and negotiated details for one device.

    The WebSocket URI is always derived from the REST base URI so the two
    can never disagree on host, port or security.

    Usage:
        connection = ConnectionDescriptor(
            "https://192.168.1.20:11443",
            Credentials("admin", "secret"),
        )
        connection.web_socket_uri  # URL("wss://192.168.1.20:11443")
    """

    def __init__(
        self,
        address: str | URL,
        credentials: Credentials | None = None,
    ) -> None:
        self._base_uri = _normalize_address(address)
        self.credentials = credentials
        self.device_family: str | None = None
        self.os_info: OsInfo | None = None
        self.root_certificate: bytes | None = None

    def __repr__(self) -> str:
        return f"ConnectionDescriptor({str(self._base_uri)!r})"

    @property
    def base_uri(self) -> URL:
        return self._base_uri

    @property
    def web_socket_uri(self) -> URL:
        scheme = "wss" if self.uses_https else "ws"
        return self._base_uri.with_scheme(scheme)

    @property
    def authority(self) -> str:
        if self._base_uri.explicit_port is not None:
            return f"{self._base_uri.host}:{self._base_uri.port}"
        return self._base_uri.host or ""

    @property
    def uses_https(self) -> bool:
        return self._base_uri.scheme == "https"

    @property
    def platform(self) -> DevicePlatform:
        if self.os_info is None:
            return DevicePlatform.UNKNOWN
        return self.os_info.platform

    @property
    def platform_name(self) -> str:
        if self.os_info is None:
            return "Unknown"
        return self.os_info.platform_name

    @property
    def os_version(self) -> str:
        if self.os_info is None:
            return ""
        return self.os_info.os_version

    def set_https_required(self, required: bool) -> None:
        """Switch the scheme, keeping host and port."""
        self._base_uri = self._base_uri.with_scheme("https" if required else "http")

    def update_connection(
        self,
        ip_config: IpConfiguration,
        requires_https: bool,
        preserve_port: bool = True,
    ) -> bool:
        """Point the descriptor at the first routable address of the device.

        Args:
            ip_config: Device IP configuration.
            requires_https: Whether the new URI must use https.
            preserve_port: Keep the current port; otherwise use the default
                port of the new scheme.

        Returns:
            True if a usable address was found and the URI updated.
        """
        address = _first_routable_address(ip_config)
        if address is None:
            return False

        scheme = "https" if requires_https else "http"
        port = self._base_uri.explicit_port if preserve_port else None
        self._base_uri = URL.build(scheme=scheme, host=address, port=port)
        return True


def _normalize_address(address: str | URL) -> URL:
    if isinstance(address, URL):
        url = address
    else:
        text = address.strip()
        if "://" not in text:
            text = f"http://{text}"
        url = URL(text)
    if url.scheme not in ("http", "https"):
        raise ValueError(f"Unsupported scheme for device address: {url}")
    if not url.host:
        raise ValueError(f"Device address has no host: {url}")
    return URL.build(scheme=url.scheme, host=url.host, port=url.explicit_port)


def _first_routable_address(ip_config: IpConfiguration) -> str | None:
    for adapter in ip_config.adapters:
        for ip in adapter.ip_addresses:
            address = ip.address
            if not address or address in _UNROUTABLE_ADDRESSES:
                continue
            if address.startswith(_UNROUTABLE_PREFIXES):
                continue
            return address
    return None
