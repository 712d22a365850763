"""Installing the root CA certificate into the operating system trust store."""

from __future__ import annotations

import os
import shutil
import subprocess
import sys
from pathlib import Path

from sptth import log

_DEBIAN_TARGET = Path("/usr/local/share/ca-certificates/sptth-rootCA.crt")
_RHEL_TARGET = Path("/etc/pki/ca-trust/source/anchors/sptth-rootCA.crt")
_MACOS_KEYCHAIN = "/Library/Keychains/System.keychain"


def install_ca_cert(ca_cert_path: Path) -> None:
    """Install the CA certificate using the current platform's mechanism."""
    platform = sys.platform
    if platform == "darwin":
        install_macos(ca_cert_path)
    elif platform.startswith("linux"):
        install_linux(ca_cert_path)
    elif platform == "win32":
        install_windows(ca_cert_path)
    else:
        raise RuntimeError(
            "unsupported platform: trust-store auto-install supports only macOS, Linux, and Windows"
        )


def install_linux(ca_cert_path: Path) -> None:
    """Install via update-ca-certificates (Debian style) or update-ca-trust (RHEL style)."""
    if has_command("update-ca-certificates"):
        _copy(ca_cert_path, _DEBIAN_TARGET)
        _run(["update-ca-certificates"], "update-ca-certificates", "update-ca-certificates failed")
        log.info("TLS", "trust install target=linux:update-ca-certificates status=ok")
        return

    if has_command("update-ca-trust"):
        _copy(ca_cert_path, _RHEL_TARGET)
        _run(
            ["update-ca-trust", "extract"],
            "update-ca-trust extract",
            "update-ca-trust extract failed",
        )
        log.info("TLS", "trust install target=linux:update-ca-trust status=ok")
        return

    raise RuntimeError(
        "failed to install CA certificate on Linux: "
        "neither update-ca-certificates nor update-ca-trust is available"
    )


def install_macos(ca_cert_path: Path) -> None:
    """Add the CA to the System keychain as a trusted root."""
    _run(
        [
            "security",
            "add-trusted-cert",
            "-d",
            "-r",
            "trustRoot",
            "-k",
            _MACOS_KEYCHAIN,
            str(ca_cert_path),
        ],
        "security command",
        "failed to install CA certificate to trust store",
    )
    log.info("TLS", "trust install target=system status=ok")


def install_windows(ca_cert_path: Path) -> None:
    """Add the CA to the Windows Root store with certutil."""
    _run(
        ["certutil", "-addstore", "-f", "Root", str(ca_cert_path)],
        "certutil",
        "failed to install CA certificate using certutil",
    )
    log.info("TLS", "trust install target=windows:certutil status=ok")


def has_command(name: str) -> bool:
    """Return whether an executable file named ``name`` is on PATH."""
    path_var = os.environ.get("PATH", "")
    return any((Path(d) / name).is_file() for d in path_var.split(os.pathsep) if d)


def _copy(source: Path, target: Path) -> None:
    try:
        shutil.copyfile(source, target)
    except OSError as exc:
        raise OSError(f"failed to copy CA certificate to {target}") from exc


def _run(command: list[str], label: str, failure: str) -> None:
    try:
        result = subprocess.run(command, capture_output=True, check=False)
    except OSError as exc:
        raise RuntimeError(f"failed to execute {label}") from exc
    if result.returncode != 0:
        stderr = (result.stderr or b"").decode("utf-8", errors="replace")
        raise RuntimeError(f"{failure}: {stderr}")