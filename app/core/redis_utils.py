"""Helpers for consistent Redis TLS configuration across cache, Celery and slowapi."""
from __future__ import annotations

import ssl
from typing import Any
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

import certifi

from app.core.config import settings

_CERT_REQS = {"none": ssl.CERT_NONE, "optional": ssl.CERT_OPTIONAL, "required": ssl.CERT_REQUIRED}


def _add_query_param(url: str, key: str, value: str) -> str:
    parsed = urlparse(url)
    query = parse_qs(parsed.query, keep_blank_values=True)
    query[key] = [value]
    return urlunparse(parsed._replace(query=urlencode(query, doseq=True)))


def _cert_reqs_name() -> str:
    candidate = (getattr(settings, "REDIS_SSL_CERT_REQS", None) or "required").lower()
    return candidate if candidate in _CERT_REQS else "required"


def prepare_redis_url(url: str | None) -> str | None:
    """Append TLS query params to Redis URL when using rediss."""
    if not url:
        return url
    if url.startswith("rediss://"):
        url = _add_query_param(url, "ssl_cert_reqs", _cert_reqs_name())
        url = _add_query_param(url, "ssl_ca_certs", certifi.where())
    return url


def get_ssl_options() -> dict[str, Any] | None:
    """Return ssl options dict for Celery's broker/backend when using TLS."""
    url = settings.REDIS_URL
    if not url or not url.startswith("rediss://"):
        return None
    return {
        "ssl_cert_reqs": _CERT_REQS[_cert_reqs_name()],
        "ssl_ca_certs": certifi.where(),
    }
