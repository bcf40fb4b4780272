"""CSRF token tracking for Device Portal requests."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from .errors import PortalError

if TYPE_CHECKING:
    import aiohttp

_LOGGER = logging.getLogger(__name__)

CSRF_TOKEN_NAME = "CSRF-Token"
CSRF_FETCH_VALUE = "Fetch"

_MUTATING_HEADER = f"X-{CSRF_TOKEN_NAME}"


def is_bad_csrf_token(error: BaseException) -> bool:
    """Return True if the device rejected a request for a stale CSRF token.

    The Portal answers 403 and names the token in the reason or body.
    """
    if not isinstance(error, PortalError) or error.status != 403:
        return False
    return "csrf" in (error.reason or "").lower()


class CsrfTokenStore:
    """Holds the anti-forgery token issued by the device.

    The token is set from the CSRF-Token cookie of GET responses and sent
    back on every later request. Reads and writes are serialized so concurrent
    requests refreshing the token cannot lose an update.
    """

    def __init__(self) -> None:
        self._token: str | None = None
        self._lock = asyncio.Lock()
        self._refresh_lock = asyncio.Lock()

    @property
    def token(self) -> str | None:
        return self._token

    @property
    def refresh_lock(self) -> asyncio.Lock:
        return self._refresh_lock

    def headers_for(self, method: str, *, bypass: bool = False) -> dict[str, str]:
        """Return the CSRF header(s) for a request using method."""
        token = self._token
        if method.upper() == "GET":
            return {CSRF_TOKEN_NAME: token or CSRF_FETCH_VALUE}
        if bypass or not token:
            return {}
        return {_MUTATING_HEADER: token}

    async def set_token(self, token: str | None) -> None:
        async with self._lock:
            self._token = token

    async def update_from_response(self, resp: aiohttp.ClientResponse) -> bool:
        """Store the token carried by a response cookie, if any.

        Returns:
            True if a token was found.
        """
        morsel = resp.cookies.get(CSRF_TOKEN_NAME)
        if morsel is None or not morsel.value:
            return False
        async with self._lock:
            if self._token != morsel.value:
                _LOGGER.debug("CSRF token updated")
            self._token = morsel.value
        return True

    async def invalidate(self, stale: str | None) -> bool:
        """Drop the token if it is still the one a request was rejected with.

        Returns:
            False if another request already replaced the token.
        """
        async with self._lock:
            if self._token != stale:
                return False
            self._token = None
            return True
