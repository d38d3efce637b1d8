"""HLS playlist rewriting.

Every media reference in an m3u8 playlist (segment lines and the first
URI="..." attribute of a tag line) is turned into a proxy-relative URL so the
player fetches nested resources through the same local proxy. The transform is
line-oriented: line count and order never change, and tag lines keep their
text apart from the quoted URI.
"""

from typing import Optional
from urllib.parse import quote, urljoin, urlsplit

PLAYLIST_CONTENT_TYPES = ("application/vnd.apple.mpegurl", "application/x-mpegurl")

# Base used when the playlist's own URL is not absolute.
FALLBACK_BASE_URL = "http://localhost/"

_URI_ATTR = 'URI="'

# Same unreserved set as JavaScript's encodeURIComponent.
_COMPONENT_SAFE = "-_.!~*'()"


def is_playlist_content_type(content_type: Optional[str]) -> bool:
    if not content_type:
        return False
    ct = content_type.lower()
    return any(t in ct for t in PLAYLIST_CONTENT_TYPES)


def _is_absolute(url: str) -> bool:
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return bool(parts.scheme and parts.netloc)


def proxied_reference(target: str, cookie: Optional[str] = None) -> str:
    out = "proxy?url=" + quote(target, safe=_COMPONENT_SAFE)
    if cookie:
        out += "&cookie=" + quote(cookie, safe=_COMPONENT_SAFE)
    return out


def _resolve(base_url: str, ref: str) -> Optional[str]:
    try:
        resolved = urljoin(base_url, ref)
    except ValueError:
        return None
    if not _is_absolute(resolved):
        return None
    return resolved


def _rewrite_tag(line: str, base_url: str, cookie: Optional[str]) -> str:
    start = line.find(_URI_ATTR)
    if start < 0:
        return line
    value_start = start + len(_URI_ATTR)
    value_end = line.find('"', value_start)
    if value_end < 0:
        return line
    resolved = _resolve(base_url, line[value_start:value_end])
    if resolved is None:
        return line
    return line[:value_start] + proxied_reference(resolved, cookie) + line[value_end:]


def rewrite_playlist(body_text: str, base_url: str, cookie: Optional[str] = None) -> str:
    """Rewrite playlist references into proxy?url=... form.

    Lines that cannot be resolved are left as they are; nothing in the body
    makes the rewrite fail as a whole.
    """
    base = base_url if _is_absolute(base_url or "") else FALLBACK_BASE_URL
    out = []
    # Only LF ends a line (strip() drops the CR of CRLF); form feeds and
    # Unicode separators stay inside the line.
    lines = body_text.split("\n")
    if lines[-1] == "":
        lines.pop()
    for raw in lines:
        line = raw.strip()
        if not line:
            out.append("")
        elif line.startswith("#"):
            out.append(_rewrite_tag(line, base, cookie))
        else:
            resolved = _resolve(base, line)
            out.append(proxied_reference(resolved, cookie) if resolved else line)
    text = "\n".join(out)
    if body_text.endswith("\n"):
        text += "\n"
    return text
