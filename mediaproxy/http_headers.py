"""Shared helpers for building the header dictionaries the proxy forwards."""

from typing import Dict, Mapping, Optional

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)
DEFAULT_REFERER = "https://pan.quark.cn/"

# Inbound request headers copied verbatim to the origin.
FORWARDED_REQUEST_HEADERS = (
    "range",
    "if-range",
    "if-match",
    "if-none-match",
    "if-modified-since",
    "if-unmodified-since",
)

# Origin response headers copied back to the caller. content-length is not
# here: its value depends on whether the body is streamed or rewritten.
FORWARDED_RESPONSE_HEADERS = (
    "content-type",
    "content-range",
    "accept-ranges",
    "cache-control",
    "etag",
    "last-modified",
)

EXPOSED_RESPONSE_HEADERS = ("content-type", "content-length", "content-range", "accept-ranges")


def _lookup(headers: Mapping[str, str], name: str) -> Optional[str]:
    # http.client.HTTPMessage and requests' CaseInsensitiveDict both match
    # case-insensitively; plain dicts in tests may not.
    val = headers.get(name)
    if val is None:
        for k, v in headers.items():
            if k.lower() == name:
                return v
    return val


def upstream_request_headers(
    inbound: Mapping[str, str],
    cookie: Optional[str] = None,
    referer: Optional[str] = None,
    default_user_agent: str = DEFAULT_USER_AGENT,
    default_referer: str = DEFAULT_REFERER,
) -> Dict[str, str]:
    """Build the header set sent to the origin for one proxied GET."""
    headers: Dict[str, str] = {
        "User-Agent": _lookup(inbound, "user-agent") or default_user_agent,
        "Referer": referer or default_referer,
    }
    if cookie is not None:
        headers["Cookie"] = cookie
    for key in FORWARDED_REQUEST_HEADERS:
        val = _lookup(inbound, key)
        if val is not None:
            headers[key] = val
    return headers


def forwarded_response_headers(upstream: Mapping[str, str]) -> Dict[str, str]:
    """Pick the allow-listed origin response headers that are present."""
    headers: Dict[str, str] = {}
    for key in FORWARDED_RESPONSE_HEADERS:
        val = _lookup(upstream, key)
        if val is not None:
            headers[key] = val
    return headers
