# sptth

`sptth` gives local development domains real HTTPS. It runs two services
side by side:

- a DNS server (UDP) that answers `A` / `AAAA` / `ANY` queries for your
  configured domains from local records and forwards every other query to
  upstream resolvers, trying them in order;
- an HTTPS reverse proxy that terminates TLS with certificates issued by a
  local certificate authority, picks the certificate by SNI, and routes each
  request to an upstream `host:port` by its `Host` header.

The first time the root CA is created, it is installed into the system trust
store (the System keychain via `security` on macOS, `update-ca-certificates`
or `update-ca-trust` on Linux, `certutil` on Windows). Later runs reuse the
CA and skip the trust install. Domain certificates are reissued when their
files are older than `valid_days - renew_before_days` days.

## Installation

```
pip install .
```

## Usage

```
sptth [config.toml]
```

With no argument, `config.toml` in the current directory is read. More than
one argument prints a usage error. On start a summary of the configuration is
printed; errors are reported on standard error with their causes and the
exit status is 1. Binding ports 53 and 443 and changing the trust store
usually needs elevated privileges, so run it with `sudo sptth config.toml`
where needed. Stop it with Ctrl+C.

## Configuration

```toml
log_level = "info"          # error | info | debug

[dns]
listen = "127.0.0.1:53"
upstream = ["1.1.1.1:53", "8.8.8.8:53"]
ttl_seconds = 1

[tls]
enabled = true
ca_dir = "~/.config/sptth/ca"
cert_dir = "~/.config/sptth/certs"
valid_days = 90
renew_before_days = 30

[[record]]
domain = "app.test"
A = ["127.0.0.1"]
AAAA = ["::1"]

[[proxy]]
domain = "app.test"
listen = "127.0.0.1:443"
upstream = "localhost:3000"
```

Defaults: `log_level = "info"`, `ttl_seconds = 1`, `enabled = true`,
`valid_days = 90`, `renew_before_days = 30`. Socket addresses are written
as `ipv4:port` or `[ipv6]:port`. Domains are trimmed, lowercased and lose a
trailing dot.

Rules checked when the file is loaded (a violation raises
`sptth.config.ConfigError`):

- `dns.upstream` needs at least one server.
- `tls.valid_days` must be above 0, and `tls.renew_before_days` below it.
  Unknown keys in `[tls]` are rejected.
- At least one `[[record]]` is required. Each one needs `A` and/or `AAAA`
  values, `A` entries must be IPv4 and `AAAA` entries IPv6, and domains
  must be unique.
- At least one `[[proxy]]` is required. Domains must be unique, every
  `listen` must be the same address, and `upstream` must be `host:port`
  with no scheme.

At start-up `tls.enabled` must be `true`; otherwise the service refuses to run.

When `ca_dir` or `cert_dir` is left out, state goes under
`~/.config/sptth/ca` and `~/.config/sptth/certs` (or `.sptth/` in the
working directory when no home is known). Under `sudo`, the home of
`SUDO_USER` is used, so the same CA is picked up with or without elevated
privileges. A leading `~` in the paths is expanded the same way.

Directories are created with mode `0700` and private keys written with mode
`0600` on POSIX systems.

## Proxy behaviour

- Request bodies over 10 MiB get `413`.
- Upstream responses over 10 MiB get `502`, as do failed upstream requests
  and requests whose `Host` has no configured route.
- Hop-by-hop headers are not forwarded in either direction, and the `Host`
  header is not passed upstream. Redirects from the upstream are returned
  to the client, not followed.
- Upstream connections time out after 5 s and whole upstream requests
  after 30 s.
- The proxy listener uses a backlog of 512; at most 256 DNS requests are
  handled at once, further ones are dropped.

## Using it as a library

- `sptth.config.AppConfig.from_file(path)` / `AppConfig.from_toml_str(raw, source)`
  load and validate a configuration.
- `sptth.ca.provision_certificates(tls, proxies)` creates or reuses the CA
  and the per-domain certificates.
- `sptth.tls.build_server_config(certs)` builds an `ssl.SSLContext` that
  selects certificates by SNI.
- `sptth.server.run(config)` is the coroutine that runs both services.

## What it does not do

- DNS is served over UDP only; there is no DNS over TCP.
- All proxy entries share one listen address.
- No client TLS handshake timeout is enforced beyond what the server
  library applies.
- Certificates are renewed by file age; their contents are not inspected.

## Development

```
pip install -e .[test]
pytest
```