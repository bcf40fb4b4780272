"""Device Portal wire helpers: endpoint paths, URI building, JSON decoding."""

from __future__ import annotations

import base64
import json
import re
from collections.abc import Mapping
from typing import Any
from urllib.parse import urlencode

from yarl import URL

from .errors import ProtocolFormatError

# Bootstrap
ROOT_CERTIFICATE_API = "config/rootcertificate"

# Operating system
DEVICE_FAMILY_API = "api/os/devicefamily"
OS_INFO_API = "api/os/info"
MACHINE_NAME_API = "api/os/machinename"

# Networking
IP_CONFIG_API = "api/networking/ipconfig"
WIFI_INTERFACES_API = "api/wifi/interfaces"
WIFI_NETWORK_API = "api/wifi/network"
WIFI_NETWORKS_API = "api/wifi/networks"

# Holographic
HOLOGRAPHIC_WEB_MANAGEMENT_HTTPS_SETTINGS_API = (
    "api/holographic/os/webmanagement/settings/https"
)

# Performance
SYSTEM_PERF_API = "api/resourcemanager/systemperf"
RUNNING_PROCESSES_API = "api/resourcemanager/processes"

# Xbox
FIDDLER_API = "ext/fiddler"

# Paths whose payloads may arrive wrapped in a {"Reason": "<escaped json>"}
# envelope.
DOUBLE_ENCODED_APIS = frozenset({SYSTEM_PERF_API})

_DEFAULT_PORTS = {"http": 80, "ws": 80, "https": 443, "wss": 443}

_ENVELOPE_PREFIX = re.compile(r'^\s*\{\s*"Reason"\s*:\s*"(?=\{)')
_ENVELOPE_SUFFIX = re.compile(r'(?<=\})"\s*\}\s*$')


def build_query_string(query: Mapping[str, Any]) -> str:
    """Encode a mapping as key=value pairs joined by '&'."""
    return urlencode({k: str(v) for k, v in query.items()})


def build_endpoint(
    base: URL,
    path: str,
    query: Mapping[str, Any] | str | None = None,
) -> URL:
    """Join a base URI, API path and optional query.

    A string query is treated as already encoded.
    """
    url = base.with_path("/" + path.lstrip("/"))
    if not query:
        return url
    if not isinstance(query, str):
        query = build_query_string(query)
    return URL(f"{url}?{query.lstrip('?')}", encoded=True)


def hex64_encode(value: str) -> str:
    """Base64 encode a UTF-8 string the way the Portal expects for names and keys."""
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def build_origin(uri: URL) -> str:
    """Return the Origin header for a URI (port omitted when it is the default)."""
    origin = f"{uri.scheme}://{uri.host}"
    port = uri.port
    if port is not None and port != _DEFAULT_PORTS.get(uri.scheme):
        origin = f"{origin}:{port}"
    return origin


def unwrap_double_encoded(raw: str) -> str:
    """Undo the {"Reason": "{...}"} wrapping some system perf payloads carry.

    Well-formed payloads are returned as is. If the envelope is detected but
    cannot be unescaped the input is returned untouched so the caller sees the
    normal decode error.
    """
    prefix = _ENVELOPE_PREFIX.match(raw)
    if prefix is None:
        return raw
    suffix = _ENVELOPE_SUFFIX.search(raw, prefix.end())
    if suffix is None:
        return raw

    inner = raw[prefix.end() : suffix.start()]
    try:
        unescaped = json.loads(f'"{inner}"')
    except ValueError:
        return raw
    if not isinstance(unescaped, str):
        return raw
    return unescaped


def read_json(data: bytes | str, *, unwrap_envelope: bool = False) -> Any:
    """Decode a JSON payload.

    Returns None for an empty payload. Raises ProtocolFormatError when the
    payload is not valid JSON.
    """
    try:
        text = data.decode("utf-8-sig") if isinstance(data, bytes) else data
        if not text.strip():
            return None
        if unwrap_envelope:
            text = unwrap_double_encoded(text)
        return json.loads(text)
    except ValueError as err:
        raise ProtocolFormatError(f"Invalid JSON payload: {err}") from err


def parse_error_body(data: bytes | str) -> tuple[int, str | None]:
    """Extract (hresult, reason) from a device error body.

    Unknown or non-JSON bodies give (0, None).
    """
    try:
        payload = read_json(data)
    except ProtocolFormatError:
        return 0, None
    if not isinstance(payload, dict):
        return 0, None

    hresult = payload.get("ErrorCode", payload.get("Code", 0))
    try:
        hresult = int(hresult)
    except (TypeError, ValueError):
        hresult = 0

    reason = payload.get("ErrorMessage") or payload.get("Reason")
    return hresult, str(reason) if reason else None
