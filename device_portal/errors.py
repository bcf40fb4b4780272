"""Client error types for Device Portal interactions."""

from __future__ import annotations


class PortalClientError(Exception):
    """Base error for Device Portal client failures."""


class PortalTimeout(PortalClientError):
    """Timeout while communicating with the device."""


class PortalConnectionError(PortalClientError):
    """Network connection to the device failed."""


class PortalHandshakeError(PortalConnectionError):
    """WebSocket handshake failed."""


class PortalError(PortalClientError):
    """Non-success HTTP response from the device.

    Attributes:
        status: HTTP status code.
        reason: Device supplied reason, or the HTTP reason phrase.
        uri: Request URI that failed.
        hresult: Device error code, 0 when the body carried none.
    """

    def __init__(
        self,
        status: int,
        reason: str,
        uri: str | None = None,
        *,
        hresult: int = 0,
    ) -> None:
        super().__init__(f"{status} {reason}" if reason else str(status))
        self.status = status
        self.reason = reason
        self.uri = uri
        self.hresult = hresult


class CertificateTrustError(PortalClientError):
    """Server certificate was rejected."""


class CertificateUnavailableError(CertificateTrustError):
    """Device root certificate could not be acquired."""


class UnsupportedOperationError(PortalClientError):
    """Operation is not available on the connected platform."""


class ProtocolFormatError(PortalClientError):
    """Payload could not be decoded."""
