"""Networking and wifi endpoints."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ..protocol import (
    IP_CONFIG_API,
    WIFI_INTERFACES_API,
    WIFI_NETWORK_API,
    WIFI_NETWORKS_API,
    hex64_encode,
)

if TYPE_CHECKING:
    from ..session import PortalSession


@dataclass(frozen=True)
class IpAddressInfo:
    address: str
    subnet_mask: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IpAddressInfo:
        return cls(address=data.get("IpAddress", ""), subnet_mask=data.get("Mask", ""))


@dataclass(frozen=True)
class NetworkAdapterInfo:
    """One network adapter from api/networking/ipconfig.

    Attributes:
        description: Adapter description.
        hardware_address: MAC address.
        index: Adapter index.
        name: Adapter identifier.
        type: Adapter type (e.g., "Ethernet").
        ip_addresses: Addresses bound to the adapter, in device order.
        gateways: Default gateways.
    """

    description: str = ""
    hardware_address: str = ""
    index: int = 0
    name: str = ""
    type: str = ""
    ip_addresses: tuple[IpAddressInfo, ...] = ()
    gateways: tuple[IpAddressInfo, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NetworkAdapterInfo:
        return cls(
            description=data.get("Description", ""),
            hardware_address=data.get("HardwareAddress", ""),
            index=int(data.get("Index", 0) or 0),
            name=data.get("Name", ""),
            type=data.get("Type", ""),
            ip_addresses=tuple(
                IpAddressInfo.from_dict(ip) for ip in data.get("IpAddresses") or ()
            ),
            gateways=tuple(
                IpAddressInfo.from_dict(ip) for ip in data.get("Gateways") or ()
            ),
        )


@dataclass(frozen=True)
class IpConfiguration:
    adapters: tuple[NetworkAdapterInfo, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IpConfiguration:
        return cls(
            adapters=tuple(
                NetworkAdapterInfo.from_dict(a) for a in data.get("Adapters") or ()
            )
        )


@dataclass(frozen=True)
class WifiInterface:
    guid: str
    description: str = ""
    index: int = 0
    profiles: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WifiInterface:
        return cls(
            guid=data.get("GUID", ""),
            description=data.get("Description", ""),
            index=int(data.get("Index", 0) or 0),
            profiles=tuple(
                p.get("Name", "") for p in data.get("ProfilesList") or ()
            ),
        )


@dataclass(frozen=True)
class WifiInterfaces:
    interfaces: tuple[WifiInterface, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WifiInterfaces:
        return cls(
            interfaces=tuple(
                WifiInterface.from_dict(i) for i in data.get("Interfaces") or ()
            )
        )


@dataclass(frozen=True)
class WifiNetworkInfo:
    """A network visible to a wifi interface."""

    ssid: str
    bssids: tuple[str, ...] = ()
    channel: int = 0
    signal_quality: int = 0
    security_enabled: bool = False
    already_connected: bool = False
    profile_available: bool = False
    profile_name: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WifiNetworkInfo:
        return cls(
            ssid=data.get("SSID", ""),
            bssids=tuple(data.get("BSSID") or ()),
            channel=int(data.get("Channel", 0) or 0),
            signal_quality=int(data.get("SignalQuality", 0) or 0),
            security_enabled=bool(data.get("SecurityEnabled", False)),
            already_connected=bool(data.get("AlreadyConnected", False)),
            profile_available=bool(data.get("ProfileAvailable", False)),
            profile_name=data.get("ProfileName", ""),
        )


async def get_ip_config(portal: PortalSession) -> IpConfiguration:
    return await portal.get(IP_CONFIG_API, parse=IpConfiguration.from_dict)


async def get_wifi_interfaces(portal: PortalSession) -> WifiInterfaces:
    return await portal.get(WIFI_INTERFACES_API, parse=WifiInterfaces.from_dict)


async def get_wifi_networks(
    portal: PortalSession, interface_guid: str
) -> list[WifiNetworkInfo]:
    data = await portal.get(WIFI_NETWORKS_API, {"interface": interface_guid})
    networks = (data or {}).get("AvailableNetworks") or ()
    return [WifiNetworkInfo.from_dict(n) for n in networks]


async def connect_to_wifi_network(
    portal: PortalSession,
    interface_guid: str,
    ssid: str,
    key: str,
) -> None:
    """Associate the device with a wifi network, creating a profile for it."""
    await portal.post(
        WIFI_NETWORK_API,
        {
            "interface": interface_guid,
            "ssid": hex64_encode(ssid),
            "op": "connect",
            "createprofile": "yes",
            "key": hex64_encode(key),
        },
    )
