"""Connection status notifications."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ConnectionStatus(Enum):
    """Overall connection outcome."""

    NONE = "none"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


class ConnectionPhase(Enum):
    """Step of the connect sequence currently running."""

    IDLE = "idle"
    ACQUIRING_CERTIFICATE = "acquiring_certificate"
    REQUESTING_OPERATING_SYSTEM_INFORMATION = "requesting_operating_system_information"
    DETERMINING_CONNECTION_REQUIREMENTS = "determining_connection_requirements"
    CONNECTING_TO_TARGET_NETWORK = "connecting_to_target_network"
    UPDATING_DEVICE_ADDRESS = "updating_device_address"


@dataclass(frozen=True, slots=True)
class ConnectionStatusEvent:
    """Status change raised by the connect sequence."""

    status: ConnectionStatus
    phase: ConnectionPhase
    message: str = ""
