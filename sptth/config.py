"""Configuration loading and validation."""

from __future__ import annotations

import ipaddress
import os
import string
import tomllib
from dataclasses import dataclass, field
from ipaddress import IPv4Address, IPv6Address
from pathlib import Path
from typing import Any

from sptth.log import LogLevel

SocketAddr = tuple[str, int]

_U32_MAX = 2**32 - 1
_TLS_FIELDS = frozenset({"enabled", "ca_dir", "cert_dir", "valid_days", "renew_before_days"})
_AUTHORITY_CHARS = frozenset(
    string.ascii_letters + string.digits + "-._~!$&'()*+,;=:@[]%"
)
_ASCII_LOWER = str.maketrans(string.ascii_uppercase, string.ascii_lowercase)


class ConfigError(ValueError):
    """Raised when the configuration cannot be read or is invalid."""


@dataclass
class DomainAddrs:
    ipv4: list[IPv4Address] = field(default_factory=list)
    ipv6: list[IPv6Address] = field(default_factory=list)


@dataclass
class DnsConfig:
    listen: SocketAddr
    upstream: list[SocketAddr]
    ttl_seconds: int

    def joined_upstream(self) -> str:
        return ", ".join(_format_socket_addr(addr) for addr in self.upstream)


@dataclass
class TlsConfig:
    enabled: bool
    ca_dir: Path
    cert_dir: Path
    valid_days: int
    renew_before_days: int


@dataclass
class ProxyConfig:
    domain: str
    listen: SocketAddr
    upstream_host_port: str

    def base_url(self) -> str:
        """The upstream as an HTTP base URL."""
        return f"http://{self.upstream_host_port}"


@dataclass
class AppConfig:
    dns: DnsConfig
    tls: TlsConfig
    records: dict[str, DomainAddrs]
    proxies: list[ProxyConfig]
    log_level: LogLevel

    @classmethod
    def from_file(cls, path: str | os.PathLike[str]) -> "AppConfig":
        path = Path(path)
        try:
            raw = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ConfigError(f"failed to read config file: {path}") from exc
        return cls.from_toml_str(raw, str(path))

    @classmethod
    def from_toml_str(cls, raw: str, source: str) -> "AppConfig":
        try:
            parsed = _load_raw(tomllib.loads(raw))
        except (tomllib.TOMLDecodeError, _SchemaError) as exc:
            raise ConfigError(f"failed to parse TOML: {source}") from exc

        dns_listen = _parse_addr_with_context(
            parsed.dns.listen, f"invalid dns.listen address: {parsed.dns.listen}"
        )
        if not parsed.dns.upstream:
            raise ConfigError("dns.upstream must have at least one dns server")
        dns_upstream = [
            _parse_addr_with_context(u, f"invalid dns.upstream address: {u}")
            for u in parsed.dns.upstream
        ]

        tls_raw = parsed.tls
        tls_enabled = True if tls_raw.enabled is None else tls_raw.enabled
        valid_days = 90 if tls_raw.valid_days is None else tls_raw.valid_days
        renew_before = 30 if tls_raw.renew_before_days is None else tls_raw.renew_before_days
        if valid_days == 0:
            raise ConfigError("tls.valid_days must be greater than 0")
        if renew_before >= valid_days:
            raise ConfigError("tls.renew_before_days must be smaller than tls.valid_days")

        # A stable per-user default keeps the same CA regardless of working directory.
        default_base = default_state_base_dir()
        ca_dir = expand_tilde(tls_raw.ca_dir) if tls_raw.ca_dir is not None else default_base / "ca"
        cert_dir = (
            expand_tilde(tls_raw.cert_dir)
            if tls_raw.cert_dir is not None
            else default_base / "certs"
        )

        records = _build_records(parsed.records)
        proxies = _build_proxies(parsed.proxies)

        if parsed.log_level is None:
            log_level = LogLevel.INFO
        else:
            try:
                log_level = LogLevel.parse(parsed.log_level)
            except ValueError as exc:
                raise ConfigError(str(exc)) from exc

        return cls(
            dns=DnsConfig(
                listen=dns_listen,
                upstream=dns_upstream,
                ttl_seconds=1 if parsed.dns.ttl_seconds is None else parsed.dns.ttl_seconds,
            ),
            tls=TlsConfig(
                enabled=tls_enabled,
                ca_dir=ca_dir,
                cert_dir=cert_dir,
                valid_days=valid_days,
                renew_before_days=renew_before,
            ),
            records=records,
            proxies=proxies,
            log_level=log_level,
        )

    def joined_domains(self) -> str:
        return ", ".join(sorted(self.records))

    def joined_proxies(self) -> str:
        return ", ".join(
            f"{p.domain}:{p.listen[1]}->{p.upstream_host_port}" for p in self.proxies
        )


def _build_records(rows: list["_RawRecord"]) -> dict[str, DomainAddrs]:
    if not rows:
        raise ConfigError("at least one [[record]] is required")

    records: dict[str, DomainAddrs] = {}
    for row in rows:
        domain = normalize_domain(row.domain)
        if not domain:
            raise ConfigError("record.domain contains empty value")

        a_values = row.a or []
        aaaa_values = row.aaaa or []
        if not a_values and not aaaa_values:
            raise ConfigError(f"record requires A and/or AAAA values: {domain}")

        addrs = DomainAddrs()
        for value in a_values:
            ip = _parse_ip(value, f"invalid A address in record {domain}: {value}")
            if not isinstance(ip, IPv4Address):
                raise ConfigError(f"A must be IPv4 in record {domain}: {value}")
            addrs.ipv4.append(ip)
        for value in aaaa_values:
            ip = _parse_ip(value, f"invalid AAAA address in record {domain}: {value}")
            if not isinstance(ip, IPv6Address):
                raise ConfigError(f"AAAA must be IPv6 in record {domain}: {value}")
            addrs.ipv6.append(ip)

        if domain in records:
            raise ConfigError(f"duplicate record.domain: {domain}")
        records[domain] = addrs
    return records


def _build_proxies(rows: list["_RawProxy"]) -> list[ProxyConfig]:
    if not rows:
        raise ConfigError("at least one [[proxy]] is required")

    proxies: list[ProxyConfig] = []
    seen_domains: set[str] = set()
    listen_seen: SocketAddr | None = None
    for row in rows:
        domain = normalize_domain(row.domain)
        if not domain:
            raise ConfigError("proxy.domain contains empty value")
        if domain in seen_domains:
            raise ConfigError(f"duplicate proxy.domain: {domain}")
        seen_domains.add(domain)

        listen = _parse_addr_with_context(
            row.listen, f"invalid proxy.listen address: {row.listen}"
        )
        # A single shared listener keeps routing consistent across entries.
        if listen_seen is None:
            listen_seen = listen
        elif listen_seen != listen:
            raise ConfigError(
                "all proxy.listen values must be identical in the current version"
            )

        if "://" in row.upstream:
            raise ConfigError(f"proxy.upstream must be host:port (no scheme): {row.upstream}")
        validate_upstream_host_port(row.upstream)

        proxies.append(ProxyConfig(domain=domain, listen=listen, upstream_host_port=row.upstream))
    return proxies


def normalize_domain(value: str) -> str:
    """Trim whitespace and trailing dots, and lowercase ASCII letters."""
    return value.strip().rstrip(".").translate(_ASCII_LOWER)


def parse_socket_addr(value: str) -> SocketAddr:
    """Parse ``ipv4:port`` or ``[ipv6]:port`` into an ``(ip, port)`` pair."""
    invalid = ConfigError(f"invalid socket address: {value}")
    if value.startswith("["):
        end = value.find("]")
        if end < 0 or value[end + 1 : end + 2] != ":":
            raise invalid
        host, port = value[1:end], value[end + 2 :]
        address_type: type[IPv4Address] | type[IPv6Address] = IPv6Address
    else:
        host, sep, port = value.rpartition(":")
        if not sep:
            raise invalid
        address_type = IPv4Address
    if not (port.isascii() and port.isdigit()) or int(port) > 65535:
        raise invalid
    try:
        ip = address_type(host)
    except ValueError as exc:
        raise invalid from exc
    return (str(ip), int(port))


def _parse_addr_with_context(value: str, message: str) -> SocketAddr:
    try:
        return parse_socket_addr(value)
    except ConfigError as exc:
        raise ConfigError(message) from exc


def _parse_ip(value: str, message: str) -> IPv4Address | IPv6Address:
    try:
        return ipaddress.ip_address(value)
    except ValueError as exc:
        raise ConfigError(message) from exc


def _format_socket_addr(addr: SocketAddr) -> str:
    host, port = addr
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


def validate_upstream_host_port(value: str) -> None:
    """Check that ``value`` is an authority with a non-empty host and a port."""
    invalid = ConfigError(f"invalid proxy.upstream host:port: {value}")
    if not value or any(ch not in _AUTHORITY_CHARS for ch in value):
        raise invalid

    hostport = value.rpartition("@")[2]
    port: str | None
    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0 or "[" in hostport[1:]:
            raise invalid
        host, rest = hostport[: end + 1], hostport[end + 1 :]
        if "]" in rest or (rest and not rest.startswith(":")):
            raise invalid
        port = rest[1:] if rest else None
    else:
        if "[" in hostport or "]" in hostport or hostport.count(":") > 1:
            raise invalid
        host, sep, port_part = hostport.partition(":")
        port = port_part if sep else None

    if port is not None and not (port.isascii() and port.isdigit() and int(port) <= 65535):
        raise invalid
    if not host:
        raise ConfigError(f"proxy.upstream host is empty: {value}")
    if port is None:
        raise ConfigError(f"proxy.upstream must include port: {value}")


def _home_of_user(user: str) -> Path | None:
    try:
        import pwd
    except ImportError:
        return None
    try:
        return Path(pwd.getpwnam(user).pw_dir)
    except KeyError:
        return None


def resolve_home() -> Path | None:
    """Return the invoking user's home, preferring SUDO_USER's when under sudo."""
    sudo_user = os.environ.get("SUDO_USER")
    if sudo_user and sudo_user.strip() and sudo_user != "root":
        home = _home_of_user(sudo_user)
        if home is not None:
            return home

    home_env = os.environ.get("HOME")
    if home_env and home_env.strip():
        return Path(home_env)
    return None


def default_state_base_dir() -> Path:
    home = resolve_home()
    if home is None:
        return Path(".sptth")
    return home / ".config" / "sptth"


def expand_tilde(value: str) -> Path:
    """Expand a leading ``~`` or ``~/`` to the resolved home directory."""
    if value == "~":
        home = resolve_home()
        if home is not None:
            return home
    if value.startswith("~/"):
        home = resolve_home()
        if home is not None:
            return home / value[2:]
    return Path(value)


class _SchemaError(Exception):
    pass


@dataclass
class _RawDns:
    listen: str
    upstream: list[str]
    ttl_seconds: int | None


@dataclass
class _RawTls:
    enabled: bool | None
    ca_dir: str | None
    cert_dir: str | None
    valid_days: int | None
    renew_before_days: int | None


@dataclass
class _RawRecord:
    domain: str
    a: list[str] | None
    aaaa: list[str] | None


@dataclass
class _RawProxy:
    domain: str
    listen: str
    upstream: str


@dataclass
class _RawConfig:
    dns: _RawDns
    tls: _RawTls
    records: list[_RawRecord]
    proxies: list[_RawProxy]
    log_level: str | None


def _field(table: dict[str, Any], key: str, required: bool) -> Any:
    if key not in table:
        if required:
            raise _SchemaError(f"missing field `{key}`")
        return None
    return table[key]


def _get_str(table: dict[str, Any], key: str, required: bool = True) -> str | None:
    value = _field(table, key, required)
    if value is not None and not isinstance(value, str):
        raise _SchemaError(f"`{key}` must be a string")
    return value


def _get_str_list(table: dict[str, Any], key: str, required: bool = True) -> list[str] | None:
    value = _field(table, key, required)
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise _SchemaError(f"`{key}` must be a list of strings")
    return value


def _get_u32(table: dict[str, Any], key: str) -> int | None:
    value = _field(table, key, False)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= _U32_MAX:
        raise _SchemaError(f"`{key}` must be an unsigned 32-bit integer")
    return value


def _get_bool(table: dict[str, Any], key: str) -> bool | None:
    value = _field(table, key, False)
    if value is not None and not isinstance(value, bool):
        raise _SchemaError(f"`{key}` must be a boolean")
    return value


def _get_table(table: dict[str, Any], key: str) -> dict[str, Any]:
    value = _field(table, key, True)
    if not isinstance(value, dict):
        raise _SchemaError(f"`{key}` must be a table")
    return value


def _get_table_list(table: dict[str, Any], key: str) -> list[dict[str, Any]]:
    value = _field(table, key, True)
    if not isinstance(value, list) or not all(isinstance(v, dict) for v in value):
        raise _SchemaError(f"`{key}` must be an array of tables")
    return value


def _load_raw(data: dict[str, Any]) -> _RawConfig:
    dns = _get_table(data, "dns")
    tls = _get_table(data, "tls")
    unknown = set(tls) - _TLS_FIELDS
    if unknown:
        raise _SchemaError(f"unknown field in [tls]: {', '.join(sorted(unknown))}")

    return _RawConfig(
        dns=_RawDns(
            listen=_get_str(dns, "listen"),
            upstream=_get_str_list(dns, "upstream"),
            ttl_seconds=_get_u32(dns, "ttl_seconds"),
        ),
        tls=_RawTls(
            enabled=_get_bool(tls, "enabled"),
            ca_dir=_get_str(tls, "ca_dir", required=False),
            cert_dir=_get_str(tls, "cert_dir", required=False),
            valid_days=_get_u32(tls, "valid_days"),
            renew_before_days=_get_u32(tls, "renew_before_days"),
        ),
        records=[
            _RawRecord(
                domain=_get_str(row, "domain"),
                a=_get_str_list(row, "A", required=False),
                aaaa=_get_str_list(row, "AAAA", required=False),
            )
            for row in _get_table_list(data, "record")
        ],
        proxies=[
            _RawProxy(
                domain=_get_str(row, "domain"),
                listen=_get_str(row, "listen"),
                upstream=_get_str(row, "upstream"),
            )
            for row in _get_table_list(data, "proxy")
        ],
        log_level=_get_str(data, "log_level", required=False),
    )