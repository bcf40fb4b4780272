"""Client core for the Windows Device Portal REST and WebSocket API."""

__version__ = "0.1.0"

from .certificates import (
    DEVICE_PORTAL_CERTIFICATE_ISSUER,
    CertificateTrust,
    load_certificate,
)
from .config import ConfigError, PortalConfig, load_config
from .connection import (
    ConnectionDescriptor,
    Credentials,
    DevicePlatform,
    OsInfo,
)
from .csrf import CSRF_TOKEN_NAME, CsrfTokenStore, is_bad_csrf_token
from .errors import (
    CertificateTrustError,
    CertificateUnavailableError,
    PortalClientError,
    PortalConnectionError,
    PortalError,
    PortalHandshakeError,
    PortalTimeout,
    ProtocolFormatError,
    UnsupportedOperationError,
)
from .events import ConnectionPhase, ConnectionStatus, ConnectionStatusEvent
from .http import PortalHttpClient
from .session import PortalSession
from .ws import connect_websocket
from .ws_client import PortalWsChannel

__all__ = [
    "CSRF_TOKEN_NAME",
    "DEVICE_PORTAL_CERTIFICATE_ISSUER",
    "CertificateTrust",
    "CertificateTrustError",
    "CertificateUnavailableError",
    "ConfigError",
    "ConnectionDescriptor",
    "ConnectionPhase",
    "ConnectionStatus",
    "ConnectionStatusEvent",
    "Credentials",
    "CsrfTokenStore",
    "DevicePlatform",
    "OsInfo",
    "PortalClientError",
    "PortalConfig",
    "PortalConnectionError",
    "PortalError",
    "PortalHandshakeError",
    "PortalHttpClient",
    "PortalSession",
    "PortalTimeout",
    "PortalWsChannel",
    "ProtocolFormatError",
    "UnsupportedOperationError",
    "__version__",
    "connect_websocket",
    "is_bad_csrf_token",
    "load_certificate",
    "load_config",
]
