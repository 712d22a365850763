"""Command-line entry point."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

from sptth import log, server
from sptth.config import AppConfig

_PROG = "sptth"


def parse_cli_args(argv: list[str] | None) -> Path:
    """Return the config path from the arguments after the program name."""
    args = list(sys.argv[1:] if argv is None else argv)
    if len(args) > 1:
        raise ValueError(f"usage: {_PROG} [config.toml]")
    return Path(args[0]) if args else Path("config.toml")


def _fmt_addr(addr: tuple[str, int]) -> str:
    host, port = addr
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


def _report(exc: BaseException) -> None:
    print(f"Error: {exc}", file=sys.stderr)
    causes = []
    cause = exc.__cause__ or exc.__context__
    while cause is not None:
        causes.append(cause)
        cause = cause.__cause__ or cause.__context__
    if causes:
        print("\nCaused by:", file=sys.stderr)
        for item in causes:
            print(f"    {item}", file=sys.stderr)


def main(argv: list[str] | None = None) -> int:
    """Load the configuration and run the service; return the exit status."""
    try:
        config_path = parse_cli_args(argv)
        config = AppConfig.from_file(config_path)
    except (ValueError, OSError) as exc:
        _report(exc)
        return 1

    log.init(config.log_level)

    print("sptth started")
    print(f"  config   : {config_path}")
    print(f"  dns      : {_fmt_addr(config.dns.listen)}")
    print(f"  records  : {config.joined_domains()}")
    print(f"  upstream : {config.dns.joined_upstream()}")
    print(f"  proxies  : {config.joined_proxies()}")
    print(f"  tls      : {'enabled' if config.tls.enabled else 'disabled'}")
    print(f"  log_level: {config.log_level.as_str()}")
    print("press Ctrl+C to stop")
    sys.stdout.flush()

    try:
        asyncio.run(server.run(config))
    except KeyboardInterrupt:
        log.info("SERVER", "received Ctrl+C, shutting down")
        return 0
    except Exception as exc:  # noqa: BLE001 - top-level error report
        _report(exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())