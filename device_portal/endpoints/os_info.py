"""Operating system endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING

from ..connection import OsInfo
from ..protocol import DEVICE_FAMILY_API, MACHINE_NAME_API, OS_INFO_API, hex64_encode

if TYPE_CHECKING:
    from ..session import PortalSession


async def get_device_family(portal: PortalSession) -> str:
    """Return the device family, e.g. "Windows.Desktop"."""
    data = await portal.get(DEVICE_FAMILY_API)
    return (data or {}).get("DeviceType", "")


async def get_operating_system_information(portal: PortalSession) -> OsInfo:
    return await portal.get(OS_INFO_API, parse=OsInfo.from_dict)


async def get_device_name(portal: PortalSession) -> str:
    data = await portal.get(MACHINE_NAME_API)
    return (data or {}).get("ComputerName", "")


async def set_device_name(portal: PortalSession, name: str) -> None:
    """Rename the device. Takes effect after the device reboots."""
    await portal.post(MACHINE_NAME_API, {"name": hex64_encode(name)})
