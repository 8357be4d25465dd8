"""Building SSL contexts from TLS settings."""

from __future__ import annotations

import ssl

from .config import ConfigError, TLSConfig


def build_ssl_context(tls_config: TLSConfig | None) -> ssl.SSLContext | None:
    """Return a client SSL context, or None when TLS is not enabled."""
    if tls_config is None or not tls_config.enabled:
        return None
    context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    if tls_config.insecure_skip_verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    if tls_config.cert_file and tls_config.key_file:
        try:
            context.load_cert_chain(tls_config.cert_file, tls_config.key_file)
        except (OSError, ssl.SSLError) as exc:
            raise ConfigError(f"failed to load client certificates: {exc}") from exc
    if tls_config.ca_file:
        try:
            with open(tls_config.ca_file, encoding="ascii", errors="replace") as handle:
                ca_data = handle.read()
        except OSError as exc:
            raise ConfigError(f"failed to read CA file: {exc}") from exc
        try:
            context.load_verify_locations(cadata=ca_data)
        except (ssl.SSLError, ValueError) as exc:
            raise ConfigError("failed to parse CA certificate") from exc
    return context