from __future__ import annotations

from typing import Any, Mapping, Optional

# Proxy / CDN headers, most specific first.
CLIENT_IP_HEADERS = (
    "x-client-ip",
    "x-forwarded-for",
    "cf-connecting-ip",
    "fastly-client-ip",
    "true-client-ip",
    "x-real-ip",
    "x-cluster-client-ip",
    "x-forwarded",
    "forwarded-for",
)

UNKNOWN_CLIENT = ""


def _header_get_any(headers: Mapping[str, str], names) -> Optional[str]:
    """Return the first non-empty header value for any name in `names`."""
    for n in names or []:
        v = headers.get(n)
        if v is not None and str(v).strip() != "":
            return str(v)
    return None


def _platform_source_ip(scope: Optional[Mapping[str, Any]]) -> Optional[str]:
    """
    Source IP carried by serverless adapters (API Gateway requestContext),
    which ASGI bridges expose on the scope as "aws.event".
    """
    if not scope:
        return None
    event = scope.get("aws.event") or {}
    try:
        ip = event["requestContext"]["identity"]["sourceIp"]
    except (KeyError, TypeError):
        return None
    return str(ip) if ip else None


def extract_client_ip(
    headers: Mapping[str, str],
    peer_host: Optional[str] = None,
    *,
    custom_header: Optional[str] = None,
    scope: Optional[Mapping[str, Any]] = None,
) -> str:
    """
    Resolve the client identity for a request.

    Order: custom header, well-known proxy headers, transport peer address,
    platform request-context IP. Values are returned as sent (no IPv6
    canonicalization, no splitting of forwarded-for lists). Returns
    UNKNOWN_CLIENT ("") when nothing matches; all such requests share one
    bucket downstream.
    """
    lowered = {str(k).lower(): v for k, v in (headers or {}).items()}

    names = list(CLIENT_IP_HEADERS)
    if custom_header:
        names.insert(0, custom_header.lower())

    found = _header_get_any(lowered, names)
    if found:
        return found

    if peer_host:
        return peer_host

    return _platform_source_ip(scope) or UNKNOWN_CLIENT
