"""TLS server context with SNI-based certificate selection."""

from __future__ import annotations

import ssl
from dataclasses import dataclass
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from sptth import log
from sptth.ca import IssuedCert
from sptth.config import normalize_domain

_CERT_MARKER = b"-----BEGIN CERTIFICATE-----"
_KEY_MARKER = b"PRIVATE KEY-----"


@dataclass
class DomainCertResolver:
    """Picks the server context whose certificate matches the requested name."""

    certs: dict[str, ssl.SSLContext]
    default: ssl.SSLContext

    def resolve(self, server_name: str | None) -> ssl.SSLContext:
        domain = normalize_domain(server_name or "")
        context = self.certs.get(domain)
        if context is not None:
            return context
        if domain:
            log.debug("TLS", f"SNI domain not found, fallback to default cert: {domain}")
        # Falling back keeps the handshake working; HTTP Host routing still
        # decides the upstream afterwards.
        return self.default

    def _sni_callback(self, ssl_object, server_name, _context) -> None:
        ssl_object.context = self.resolve(server_name)


def load_certified_key(cert_path: Path, key_path: Path) -> ssl.SSLContext:
    """Load a certificate chain and private key into a server context."""
    cert_path, key_path = Path(cert_path), Path(key_path)

    try:
        cert_data = cert_path.read_bytes()
    except OSError as exc:
        raise OSError(f"failed to open certificate: {cert_path}") from exc
    if _CERT_MARKER not in cert_data:
        raise ValueError(f"certificate chain is empty: {cert_path}")
    try:
        x509.load_pem_x509_certificates(cert_data)
    except ValueError as exc:
        raise ValueError(f"failed to parse certificate: {cert_path}") from exc

    try:
        key_data = key_path.read_bytes()
    except OSError as exc:
        raise OSError(f"failed to open key: {key_path}") from exc
    if _KEY_MARKER not in key_data:
        raise ValueError(f"private key not found in {key_path}")
    try:
        serialization.load_pem_private_key(key_data, password=None)
    except (ValueError, TypeError) as exc:
        raise ValueError(f"failed to parse key: {key_path}") from exc

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    try:
        context.load_cert_chain(certfile=str(cert_path), keyfile=str(key_path))
    except ssl.SSLError as exc:
        raise ValueError(f"unsupported private key {key_path}: {exc}") from exc
    return context


def build_server_config(certs: dict[str, IssuedCert]) -> ssl.SSLContext:
    """Build a server context that serves each domain's certificate by SNI."""
    if not certs:
        raise ValueError("no certificate available for proxy domains")

    contexts: dict[str, ssl.SSLContext] = {}
    default: ssl.SSLContext | None = None
    default_files: IssuedCert | None = None
    for domain, files in certs.items():
        context = load_certified_key(files.cert_path, files.key_path)
        # The first certificate serves clients that send no SNI.
        if default is None:
            default, default_files = context, files
        contexts[normalize_domain(domain)] = context

    if default is None or default_files is None:
        raise ValueError("missing default certificate")

    resolver = DomainCertResolver(certs=contexts, default=default)
    server = load_certified_key(default_files.cert_path, default_files.key_path)
    server.sni_callback = resolver._sni_callback
    return server