import os
import stat
import time
from pathlib import Path

from cryptography import x509
from cryptography.x509.oid import ExtendedKeyUsageOID

from sptth.ca import (
    ROOT_CA_COMMON_NAME,
    issue_domain_cert,
    load_or_create_ca,
    provision_certificates,
    set_dir_permissions,
    should_reissue,
    write_private_key,
)
from sptth.config import ProxyConfig, TlsConfig


def _tls(tmp_path: Path, valid_days: int = 90, renew_before_days: int = 30) -> TlsConfig:
    return TlsConfig(
        enabled=True,
        ca_dir=tmp_path / "ca",
        cert_dir=tmp_path / "certs",
        valid_days=valid_days,
        renew_before_days=renew_before_days,
    )


def _proxy(domain: str) -> ProxyConfig:
    return ProxyConfig(domain=domain, listen=("127.0.0.1", 443), upstream_host_port="localhost:3000")


def test_reissue_when_file_missing(tmp_path):
    assert should_reissue(tmp_path / "nonexistent.pem", 90, 30) is True


def test_no_reissue_when_file_is_fresh(tmp_path):
    path = tmp_path / "fresh.pem"
    path.write_text("test")
    assert should_reissue(path, 90, 30) is False


def test_reissue_when_renew_window_covers_all(tmp_path):
    path = tmp_path / "cert.pem"
    path.write_text("test")
    assert should_reissue(path, 90, 90) is True


def test_reissue_when_file_is_old(tmp_path):
    path = tmp_path / "old.pem"
    path.write_text("test")
    old = time.time() - 61 * 24 * 60 * 60
    os.utime(path, (old, old))
    assert should_reissue(path, 90, 30) is True


def test_private_key_has_mode_600(tmp_path):
    key_path = tmp_path / "test.key"
    write_private_key(key_path, "fake-pem-data")
    assert stat.S_IMODE(key_path.stat().st_mode) == 0o600
    assert key_path.read_text() == "fake-pem-data"


def test_set_dir_permissions_owner_only(tmp_path):
    directory = tmp_path / "d"
    directory.mkdir(mode=0o755)
    set_dir_permissions(directory)
    assert stat.S_IMODE(directory.stat().st_mode) == 0o700


def test_load_or_create_ca_creates_then_reuses(tmp_path):
    tls = _tls(tmp_path)
    (tmp_path / "ca").mkdir()
    first = load_or_create_ca(tls)
    assert first.created is True
    assert first.ca_cert_path == tmp_path / "ca" / "rootCA.pem"
    assert (tmp_path / "ca" / "rootCA-key.pem").exists()

    second = load_or_create_ca(tls)
    assert second.created is False
    assert second.ca_cert.serial_number == first.ca_cert.serial_number


def test_ca_recreated_when_cert_missing(tmp_path):
    tls = _tls(tmp_path)
    (tmp_path / "ca").mkdir()
    load_or_create_ca(tls)
    (tmp_path / "ca" / "rootCA.pem").unlink()
    again = load_or_create_ca(tls)
    assert again.created is True
    assert (tmp_path / "ca" / "rootCA.pem").exists()


def test_ca_certificate_properties(tmp_path):
    tls = _tls(tmp_path)
    (tmp_path / "ca").mkdir()
    signer = load_or_create_ca(tls)
    cert = x509.load_pem_x509_certificate(signer.ca_cert_path.read_bytes())
    cn = cert.subject.get_attributes_for_oid(x509.oid.NameOID.COMMON_NAME)[0].value
    assert cn == ROOT_CA_COMMON_NAME
    assert cert.extensions.get_extension_for_class(x509.BasicConstraints).value.ca is True
    usage = cert.extensions.get_extension_for_class(x509.KeyUsage).value
    assert usage.key_cert_sign and usage.crl_sign and usage.digital_signature


def test_issue_domain_cert_signed_by_ca(tmp_path):
    tls = _tls(tmp_path)
    (tmp_path / "ca").mkdir()
    signer = load_or_create_ca(tls)
    cert_path = tmp_path / "example.com.pem"
    key_path = tmp_path / "example.com.key"
    issue_domain_cert("example.com", cert_path, key_path, 90, signer.ca_cert, signer.ca_key)

    leaf = x509.load_pem_x509_certificate(cert_path.read_bytes())
    leaf.verify_directly_issued_by(signer.ca_cert)
    san = leaf.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    assert san.get_values_for_type(x509.DNSName) == ["example.com"]
    eku = leaf.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
    assert list(eku) == [ExtendedKeyUsageOID.SERVER_AUTH]
    lifetime = leaf.not_valid_after_utc - leaf.not_valid_before_utc
    assert lifetime.days == 91
    assert stat.S_IMODE(key_path.stat().st_mode) == 0o600


def test_provision_certificates_issues_and_reuses(tmp_path):
    tls = _tls(tmp_path)
    proxies = [_proxy("a.test"), _proxy("b.test")]

    assets = provision_certificates(tls, proxies)
    assert assets.ca_created is True
    assert sorted(assets.certs) == ["a.test", "b.test"]
    assert assets.certs["a.test"].cert_path == tmp_path / "certs" / "a.test.pem"
    assert assets.certs["a.test"].key_path == tmp_path / "certs" / "a.test.key"
    assert stat.S_IMODE((tmp_path / "certs").stat().st_mode) == 0o700

    before = assets.certs["b.test"].cert_path.read_bytes()
    again = provision_certificates(tls, proxies)
    assert again.ca_created is False
    assert again.certs["b.test"].cert_path.read_bytes() == before