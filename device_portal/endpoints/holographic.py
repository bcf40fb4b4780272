"""HoloLens web management settings."""

from __future__ import annotations

from typing import TYPE_CHECKING

from ..protocol import HOLOGRAPHIC_WEB_MANAGEMENT_HTTPS_SETTINGS_API

if TYPE_CHECKING:
    from ..session import PortalSession

_HOLOLENS_ONLY = "This method is only supported on HoloLens."


async def get_is_https_required(portal: PortalSession) -> bool:
    """Return whether the device only accepts https over wifi.

    Raises:
        UnsupportedOperationError: If the device is not a HoloLens.
    """
    portal.require_hololens(_HOLOLENS_ONLY)
    data = await portal.get(HOLOGRAPHIC_WEB_MANAGEMENT_HTTPS_SETTINGS_API)
    return bool((data or {}).get("httpsRequired", False))


async def set_is_https_required(portal: PortalSession, required: bool) -> None:
    """Change the https requirement and switch the connection scheme to match."""
    portal.require_hololens(_HOLOLENS_ONLY)
    await portal.post(
        HOLOGRAPHIC_WEB_MANAGEMENT_HTTPS_SETTINGS_API,
        {"required": "true" if required else "false"},
    )
    portal.connection.set_https_required(required)
