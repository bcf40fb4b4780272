"""Xbox One Fiddler proxy setup."""

from __future__ import annotations

from typing import TYPE_CHECKING

from ..connection import DevicePlatform
from ..protocol import FIDDLER_API

if TYPE_CHECKING:
    from ..session import PortalSession

_XBOX_ONLY = "This method is only supported on Xbox One."


async def enable_fiddler_tracing(
    portal: PortalSession,
    proxy_address: str,
    proxy_port: int | str,
) -> None:
    """Route console traffic through a Fiddler proxy. Requires a reboot."""
    portal.require_platform(DevicePlatform.XBOX_ONE, message=_XBOX_ONLY)
    await portal.post(
        FIDDLER_API,
        {"proxyAddress": proxy_address, "proxyPort": str(proxy_port)},
    )


async def disable_fiddler_tracing(portal: PortalSession) -> None:
    """Remove the Fiddler proxy. Requires a reboot."""
    portal.require_platform(DevicePlatform.XBOX_ONE, message=_XBOX_ONLY)
    await portal.delete(FIDDLER_API)
