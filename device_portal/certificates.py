"""Device certificate acquisition and server certificate validation.

The Portal serves a self-signed root certificate whose issuer is
"Microsoft Windows Web Management". Trust is pinned to that certificate (or
one supplied by the application) instead of the system store. The pinned
certificate is the only trust anchor of the TLS context, so a peer that
cannot chain to it fails the handshake before any request is sent.
"""

from __future__ import annotations

import asyncio
import logging
import ssl
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from yarl import URL

from .errors import (
    CertificateTrustError,
    CertificateUnavailableError,
    PortalClientError,
    PortalConnectionError,
    PortalTimeout,
)
from .protocol import ROOT_CERTIFICATE_API

if TYPE_CHECKING:
    from .connection import ConnectionDescriptor
    from .http import PortalHttpClient

_LOGGER = logging.getLogger(__name__)

DEVICE_PORTAL_CERTIFICATE_ISSUER = "Microsoft Windows Web Management"

DEFAULT_HANDSHAKE_TIMEOUT = 15.0

UnvalidatedCertificateHandler = Callable[
    [x509.Certificate, Sequence[x509.Certificate]], bool
]


def load_certificate(data: bytes | x509.Certificate) -> x509.Certificate:
    """Load a DER or PEM encoded certificate."""
    if isinstance(data, x509.Certificate):
        return data
    try:
        if data.lstrip().startswith(b"-----BEGIN"):
            return x509.load_pem_x509_certificate(data)
        return x509.load_der_x509_certificate(data)
    except ValueError as err:
        raise CertificateTrustError("Certificate data could not be parsed") from err


def thumbprint(cert: x509.Certificate) -> bytes:
    """SHA-1 thumbprint of a certificate."""
    return cert.fingerprint(hashes.SHA1())  # noqa: S303


def _der(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.DER)


def _is_time_valid(cert: x509.Certificate, now: datetime) -> bool:
    return cert.not_valid_before_utc <= now <= cert.not_valid_after_utc


def _issued_by(cert: x509.Certificate, issuer: x509.Certificate) -> bool:
    try:
        cert.verify_directly_issued_by(issuer)
    except Exception:  # noqa: BLE001 - ValueError, TypeError or InvalidSignature
        return False
    return True


def _is_pinned(cert: x509.Certificate, pinned: x509.Certificate) -> bool:
    return cert.issuer == pinned.issuer and thumbprint(cert) == thumbprint(pinned)


def _chains_to(
    leaf: x509.Certificate,
    chain: Sequence[x509.Certificate],
    pinned: x509.Certificate,
    now: datetime,
) -> bool:
    """Return True if a signature path leads from leaf to the pinned certificate.

    Each step must be signed by the next. Certificates in the presented chain
    that are not on that path are ignored, and every certificate on it must be
    within its validity period.
    """
    remaining = [c for c in chain if c != leaf]
    current = leaf
    while True:
        if not _is_time_valid(current, now):
            return False
        if _is_pinned(current, pinned) or _issued_by(current, pinned):
            return True
        parent = next((c for c in remaining if _issued_by(current, c)), None)
        if parent is None:
            return False
        remaining.remove(parent)
        current = parent


class CertificateTrust:
    """Trust decisions for one device connection.

    Usage:
        trust = CertificateTrust(connection)
        trust.on_unvalidated_certificate(lambda cert, chain: prompt_user(cert))
        await trust.acquire_root_certificate(http_client)
        context = await trust.verified_context(connection.base_uri)
    """

    def __init__(self, connection: ConnectionDescriptor) -> None:
        self._connection = connection
        self._manual_certificate: x509.Certificate | None = None
        self._override_handler: UnvalidatedCertificateHandler | None = None
        # Certificates the override handler accepted, as DER
        self._approved: list[bytes] = []
        self._ssl_context: ssl.SSLContext | None = None
        self._context_anchors: tuple[bytes, ...] = ()
        self._unverified_context: ssl.SSLContext | None = None

    @property
    def manual_certificate(self) -> x509.Certificate | None:
        return self._manual_certificate

    @manual_certificate.setter
    def manual_certificate(self, value: bytes | x509.Certificate | None) -> None:
        self._manual_certificate = None if value is None else load_certificate(value)

    @property
    def device_certificate(self) -> x509.Certificate | None:
        """Certificate acquired from the device, if any."""
        if self._connection.root_certificate is None:
            return None
        return load_certificate(self._connection.root_certificate)

    @property
    def pinned_certificate(self) -> x509.Certificate | None:
        """Manual certificate if one was supplied, else the device certificate."""
        return self._manual_certificate or self.device_certificate

    @property
    def has_override_handler(self) -> bool:
        return self._override_handler is not None

    @property
    def has_trust_anchors(self) -> bool:
        return bool(self._trust_anchors())

    def on_unvalidated_certificate(
        self, handler: UnvalidatedCertificateHandler | None
    ) -> None:
        """Register the handler consulted when a certificate fails validation."""
        self._override_handler = handler

    async def acquire_root_certificate(self, http: PortalHttpClient) -> bytes:
        """Download the device root certificate and cache it on the connection.

        The request is unauthenticated and is not itself validated.

        Raises:
            CertificateUnavailableError: If the certificate cannot be
                downloaded or was not issued by the Device Portal.
        """
        try:
            data = await http.get_bytes(
                ROOT_CERTIFICATE_API,
                validate_certificate=False,
                authenticate=False,
            )
        except PortalClientError as err:
            raise CertificateUnavailableError(
                f"Failed to download device certificate: {err}"
            ) from err

        if not data:
            raise CertificateUnavailableError("Device returned an empty certificate")

        try:
            cert = load_certificate(data)
        except CertificateTrustError as err:
            raise CertificateUnavailableError(
                "Device certificate could not be parsed"
            ) from err

        issuer = cert.issuer.rfc4514_string()
        if DEVICE_PORTAL_CERTIFICATE_ISSUER not in issuer:
            raise CertificateUnavailableError(
                f"Unexpected device certificate issuer: {issuer}"
            )

        der = _der(cert)
        self._connection.root_certificate = der
        _LOGGER.debug(
            "[%s] Acquired device certificate %s",
            self._connection.authority,
            thumbprint(cert).hex(),
        )
        return der

    def validate_server_certificate(
        self,
        certificate: x509.Certificate,
        chain: Sequence[x509.Certificate] = (),
    ) -> bool:
        """Decide whether a server certificate is trusted.

        With a pinned certificate the server certificate is accepted when it
        is the pinned certificate, or when a signature path through the
        presented chain leads from it to the pinned certificate. An untrusted
        root is therefore not an error, but any certificate on the path
        outside its validity period is. A pinned certificate that merely
        appears in the chain proves nothing. Anything not accepted is handed
        to the override handler, which defaults to rejecting.
        """
        if _der(certificate) in self._approved:
            return True

        pinned = self.pinned_certificate
        others = [c for c in chain if c != certificate]
        valid = pinned is not None and _chains_to(
            certificate, others, pinned, datetime.now(UTC)
        )

        if not valid and self._override_handler is not None:
            valid = bool(self._override_handler(certificate, others))
            if valid:
                self._approved.append(_der(certificate))

        if not valid:
            _LOGGER.debug(
                "[%s] Rejected server certificate issued by %s",
                self._connection.authority,
                certificate.issuer.rfc4514_string(),
            )
        return valid

    def _trust_anchors(self) -> tuple[bytes, ...]:
        pinned = self.pinned_certificate
        anchors = [] if pinned is None else [_der(pinned)]
        anchors.extend(d for d in self._approved if d not in anchors)
        return tuple(anchors)

    def ssl_context(self) -> ssl.SSLContext:
        """Client context whose only trust anchors are the pinned certificates.

        Host names are not checked; the device is addressed by IP. With no
        anchor every handshake fails.
        """
        anchors = self._trust_anchors()
        if self._ssl_context is None or anchors != self._context_anchors:
            context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
            context.check_hostname = False
            context.verify_mode = ssl.CERT_REQUIRED
            # Anchors need not be self-signed roots
            context.verify_flags |= ssl.VERIFY_X509_PARTIAL_CHAIN
            for der in anchors:
                context.load_verify_locations(cadata=der)
            self._ssl_context = context
            self._context_anchors = anchors
        return self._ssl_context

    def unverified_context(self) -> ssl.SSLContext:
        """Context for requests that carry nothing the peer could misuse."""
        if self._unverified_context is None:
            context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
            self._unverified_context = context
        return self._unverified_context

    async def verified_context(self, uri: URL) -> ssl.SSLContext:
        """Return the pinned context, consulting the override handler first.

        Without a pinned certificate the peer is shown to the override handler
        over a handshake that sends nothing.

        Raises:
            CertificateTrustError: If nothing can be trusted for uri.
        """
        if not self.has_trust_anchors:
            if self._override_handler is None:
                raise CertificateTrustError(f"No trusted certificate for {uri}")
            await self.approve_peer(uri)
        return self.ssl_context()

    async def approve_peer(
        self, uri: URL, timeout: float = DEFAULT_HANDSHAKE_TIMEOUT
    ) -> None:
        """Validate the peer at uri over a bare TLS handshake.

        Raises:
            CertificateTrustError: If the certificate is rejected.
            PortalTimeout: If the handshake times out.
            PortalConnectionError: If the connection fails.
        """
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(
                    uri.host, uri.port, ssl=self.unverified_context()
                ),
                timeout,
            )
        except TimeoutError as err:
            raise PortalTimeout(f"TLS handshake with {uri.host} timed out") from err
        except OSError as err:
            raise PortalConnectionError(
                f"TLS handshake with {uri.host} failed: {err}"
            ) from err

        try:
            self.check_peer(writer.get_extra_info("ssl_object"), uri)
        finally:
            writer.close()
            await writer.wait_closed()

    def check_peer(self, ssl_object: Any, uri: Any = None) -> None:
        """Validate the certificate presented on an established TLS connection.

        Raises:
            CertificateTrustError: If the certificate is missing or rejected.
        """
        if ssl_object is None:
            raise CertificateTrustError(f"No TLS session available for {uri}")

        der = ssl_object.getpeercert(binary_form=True)
        if not der:
            raise CertificateTrustError(f"No server certificate presented by {uri}")
        leaf = load_certificate(der)

        chain: list[x509.Certificate] = []
        get_chain = getattr(ssl_object, "get_unverified_chain", None)
        if get_chain is not None:
            for item in get_chain() or ():
                data = item if isinstance(item, bytes) else item.public_bytes()
                if isinstance(data, str):
                    data = data.encode()
                chain.append(load_certificate(data))

        if not self.validate_server_certificate(leaf, chain):
            raise CertificateTrustError(f"Server certificate for {uri} is not trusted")
