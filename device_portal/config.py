"""Connection configuration loaded from YAML.

Example:

    address: https://192.168.1.20:11443
    username: admin
    password: secret
    certificate_file: device.cer
    ssid: LabNetwork
    ssid_key: hunter2
    update_connection: true
    request_timeout: 30
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .errors import PortalClientError


class ConfigError(PortalClientError):
    """Configuration file missing or invalid."""


@dataclass(frozen=True)
class PortalConfig:
    """Settings for connecting to one device.

    Attributes:
        address: Device address, with or without scheme and port.
        username: Basic credential user name.
        password: Basic credential password.
        certificate_file: Optional manual device certificate (DER or PEM),
            resolved relative to the configuration file.
        ssid: Wifi network to join while connecting.
        ssid_key: Key for ssid.
        update_connection: Switch to the device's wifi address once connected.
        request_timeout: Total timeout for REST calls, in seconds.
        ws_ping_interval: WebSocket keepalive interval, in seconds.
        ws_connect_timeout: WebSocket handshake timeout, in seconds.
        user_agent: User-Agent header sent on REST calls.
    """

    address: str
    username: str | None = None
    password: str | None = None
    certificate_file: Path | None = None
    ssid: str | None = None
    ssid_key: str | None = None
    update_connection: bool = False
    request_timeout: float | None = None
    ws_ping_interval: float | None = 20
    ws_connect_timeout: float = 15.0
    user_agent: str | None = None

    def load_certificate_file(self) -> bytes | None:
        """Read the manual certificate, if one is configured."""
        if self.certificate_file is None:
            return None
        if not self.certificate_file.exists():
            raise ConfigError(f"Certificate file not found: {self.certificate_file}")
        return self.certificate_file.read_bytes()


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load YAML file with error handling."""
    if not path.exists():
        raise ConfigError(f"File not found: {path}")
    try:
        with path.open() as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as err:
        raise ConfigError(f"Invalid YAML in {path}: {err}") from err
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a mapping in {path}")
    return data


def _optional_float(
    data: dict[str, Any], key: str, default: float | None
) -> float | None:
    value = data.get(key, default)
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as err:
        raise ConfigError(f"{key} must be a number, got {value!r}") from err


def load_config(path: Path | str) -> PortalConfig:
    """Load a PortalConfig from a YAML file.

    Raises:
        ConfigError: If the file is missing, malformed or has no address.
    """
    path = Path(path)
    data = _load_yaml(path)

    address = data.get("address")
    if not address:
        raise ConfigError(f"Missing 'address' in {path}")

    certificate_file = data.get("certificate_file")
    cert_path: Path | None = None
    if certificate_file:
        cert_path = Path(certificate_file)
        if not cert_path.is_absolute():
            cert_path = path.parent / cert_path

    return PortalConfig(
        address=str(address),
        username=data.get("username"),
        password=data.get("password"),
        certificate_file=cert_path,
        ssid=data.get("ssid"),
        ssid_key=data.get("ssid_key"),
        update_connection=bool(data.get("update_connection", False)),
        request_timeout=_optional_float(data, "request_timeout", None),
        ws_ping_interval=_optional_float(data, "ws_ping_interval", 20),
        ws_connect_timeout=_optional_float(data, "ws_connect_timeout", 15.0) or 15.0,
        user_agent=data.get("user_agent"),
    )
