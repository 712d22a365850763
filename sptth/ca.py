"""Local certificate authority: root CA management and per-domain leaf issuance."""

from __future__ import annotations

import hashlib
import ipaddress
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed448, ed25519
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from sptth import log
from sptth.config import ProxyConfig, TlsConfig

ROOT_CA_COMMON_NAME = "sptth local ca"

_CA_NOT_BEFORE = datetime(1975, 1, 1, tzinfo=timezone.utc)
_CA_NOT_AFTER = datetime(4096, 1, 1, tzinfo=timezone.utc)
_SECONDS_PER_DAY = 24 * 60 * 60


@dataclass(frozen=True)
class IssuedCert:
    cert_path: Path
    key_path: Path


@dataclass
class TlsAssets:
    ca_cert_path: Path
    ca_created: bool
    certs: dict[str, IssuedCert] = field(default_factory=dict)


@dataclass
class _CaSigner:
    ca_cert: x509.Certificate
    ca_key: object
    ca_cert_path: Path
    created: bool


def provision_certificates(tls: TlsConfig, proxies: list[ProxyConfig]) -> TlsAssets:
    """Ensure the root CA and one leaf certificate per proxy domain exist."""
    for directory, label in ((tls.ca_dir, "ca_dir"), (tls.cert_dir, "cert_dir")):
        directory = Path(directory)
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise OSError(f"failed to create {label}: {directory}") from exc
        set_dir_permissions(directory)

    signer = load_or_create_ca(tls)
    certs: dict[str, IssuedCert] = {}
    cert_dir = Path(tls.cert_dir)

    for proxy in proxies:
        domain = proxy.domain
        cert_path = cert_dir / f"{domain}.pem"
        key_path = cert_dir / f"{domain}.key"

        # Reissue by file age rather than parsing X.509 on every start.
        if should_reissue(cert_path, tls.valid_days, tls.renew_before_days):
            issue_domain_cert(
                domain, cert_path, key_path, tls.valid_days, signer.ca_cert, signer.ca_key
            )
            log.info("TLS", f"cert issued domain={domain}")
        else:
            log.info("TLS", f"cert reused domain={domain}")

        certs[domain] = IssuedCert(cert_path=cert_path, key_path=key_path)

    return TlsAssets(
        ca_cert_path=signer.ca_cert_path, ca_created=signer.created, certs=certs
    )


def load_or_create_ca(tls: TlsConfig) -> _CaSigner:
    """Load the root CA key (creating it if absent) and build the CA certificate."""
    ca_dir = Path(tls.ca_dir)
    ca_cert_path = ca_dir / "rootCA.pem"
    ca_key_path = ca_dir / "rootCA-key.pem"

    cert_exists = ca_cert_path.exists()
    if ca_key_path.exists():
        try:
            pem = ca_key_path.read_bytes()
        except OSError as exc:
            raise OSError(f"failed to read CA key: {ca_key_path}") from exc
        try:
            ca_key = serialization.load_pem_private_key(pem, password=None)
        except (ValueError, TypeError) as exc:
            raise ValueError(f"failed to parse CA key: {ca_key_path}") from exc
        # A key without its certificate is recovered by regenerating the certificate.
        created = not cert_exists
    else:
        ca_key = _generate_key()
        try:
            write_private_key(ca_key_path, _key_pem(ca_key))
        except OSError as exc:
            raise OSError(f"failed to write CA key: {ca_key_path}") from exc
        created = True

    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, ROOT_CA_COMMON_NAME)])
    public_key = ca_key.public_key()
    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(public_key)
        .serial_number(_serial_for(public_key))
        .not_valid_before(_CA_NOT_BEFORE)
        .not_valid_after(_CA_NOT_AFTER)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False)
    )
    try:
        ca_cert = builder.sign(ca_key, _sign_algorithm(ca_key))
    except (ValueError, TypeError) as exc:
        raise ValueError("failed to create CA certificate") from exc

    if created:
        try:
            ca_cert_path.write_bytes(ca_cert.public_bytes(serialization.Encoding.PEM))
        except OSError as exc:
            raise OSError(f"failed to write CA certificate: {ca_cert_path}") from exc
        log.info("TLS", f"ca created path={ca_cert_path}")
    else:
        log.info("TLS", f"ca reused path={ca_cert_path}")

    return _CaSigner(
        ca_cert=ca_cert, ca_key=ca_key, ca_cert_path=ca_cert_path, created=created
    )


def issue_domain_cert(
    domain: str,
    cert_path: Path,
    key_path: Path,
    valid_days: int,
    ca_cert: x509.Certificate,
    ca_key: object,
) -> None:
    """Issue a server certificate for ``domain`` signed by the CA and write it out."""
    leaf_key = _generate_key()
    public_key = leaf_key.public_key()
    now = datetime.now(timezone.utc)

    try:
        san: x509.GeneralName = x509.IPAddress(ipaddress.ip_address(domain))
    except ValueError:
        san = x509.DNSName(domain)

    builder = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)]))
        .issuer_name(ca_cert.subject)
        .public_key(public_key)
        .serial_number(_serial_for(public_key))
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=valid_days))
        .add_extension(x509.SubjectAlternativeName([san]), critical=False)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()),
            critical=False,
        )
    )
    try:
        cert = builder.sign(ca_key, _sign_algorithm(ca_key))
    except (ValueError, TypeError) as exc:
        raise ValueError(f"failed to issue certificate for domain: {domain}") from exc

    cert_path = Path(cert_path)
    try:
        cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    except OSError as exc:
        raise OSError(f"failed to write certificate: {cert_path}") from exc
    write_private_key(Path(key_path), _key_pem(leaf_key))


def set_dir_permissions(path: Path) -> None:
    """Restrict a directory to its owner (0700) on POSIX systems."""
    if os.name != "posix":
        return
    try:
        os.chmod(path, 0o700)
    except OSError as exc:
        raise OSError(f"failed to set directory permissions: {path}") from exc


def write_private_key(path: Path, pem: str) -> None:
    """Write a private key PEM readable only by its owner (0600 on POSIX)."""
    flags = os.O_WRONLY | os.O_CREAT | os.O_TRUNC
    try:
        fd = os.open(path, flags, 0o600)
    except OSError as exc:
        raise OSError(f"failed to create key file: {path}") from exc
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(pem)
    except OSError as exc:
        raise OSError(f"failed to write key: {path}") from exc


def should_reissue(cert_path: Path, valid_days: int, renew_before_days: int) -> bool:
    """Return whether the certificate file is missing or old enough to renew."""
    cert_path = Path(cert_path)
    if not cert_path.exists():
        return True

    renew_after_days = max(valid_days - renew_before_days, 0)
    if renew_after_days == 0:
        return True

    try:
        modified = cert_path.stat().st_mtime
    except OSError:
        return True

    age = time.time() - modified
    if age < 0:
        return True
    return age >= renew_after_days * _SECONDS_PER_DAY


def _generate_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


def _key_pem(key: object) -> str:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


def _sign_algorithm(key: object) -> hashes.HashAlgorithm | None:
    if isinstance(key, (ed25519.Ed25519PrivateKey, ed448.Ed448PrivateKey)):
        return None
    return hashes.SHA256()


def _serial_for(public_key: object) -> int:
    # Deterministic serial derived from the public key, so a CA certificate
    # regenerated from the same key keeps the same serial.
    der = public_key.public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    digest = bytearray(hashlib.sha256(der).digest()[:20])
    digest[0] &= 0x7F
    return int.from_bytes(digest, "big") or 1