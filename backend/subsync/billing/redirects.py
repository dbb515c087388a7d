"""Return-URL validation — keeps checkout and portal redirects on our own hosts."""

from urllib.parse import urlsplit

from subsync.config import settings


def validate_redirect_url(raw: object, fallback: str) -> str:
    """Return ``raw`` if it points at an allow-listed host, else ``fallback``.

    Accepts https URLs on ``settings.allowed_redirect_hosts``; plain http is
    only accepted for ``localhost``. Anything unparseable falls back.
    """
    if not isinstance(raw, str) or not raw.strip():
        return fallback

    try:
        parts = urlsplit(raw.strip())
        hostname = parts.hostname
    except ValueError:
        return fallback

    if not hostname:
        return fallback
    if parts.scheme != "https" and not (parts.scheme == "http" and hostname == "localhost"):
        return fallback
    if parts.username or parts.password:
        return fallback

    allowed = {host.lower() for host in settings.allowed_redirect_hosts}
    if hostname.lower() not in allowed:
        return fallback
    return raw.strip()
