from __future__ import annotations

import re
from urllib.parse import parse_qsl, urlencode, urlparse, urlsplit, urlunsplit

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_key(value: str) -> str:
    """Collapse whitespace, trim and lowercase. Used for repeat guards and cache keys."""
    return _WHITESPACE_RE.sub(" ", value).strip().lower()


def collapse_whitespace(value: str) -> str:
    return _WHITESPACE_RE.sub(" ", value).strip()


def clamp_text(value: str, max_length: int) -> str:
    """Cut ``value`` to at most ``max_length`` characters, marking the cut with an ellipsis."""
    if len(value) <= max_length:
        return value
    return value[: max(max_length - 1, 0)].rstrip() + "…"


def canonical_url(url: str) -> str:
    parsed = urlsplit(url.strip())
    scheme = (parsed.scheme or "https").lower()
    netloc = parsed.netloc.lower()
    path = parsed.path or "/"
    query = urlencode(sorted(parse_qsl(parsed.query, keep_blank_values=True)))
    return urlunsplit((scheme, netloc, path, query, ""))


def extract_domain(url: str) -> str:
    """Extract domain from URL for display."""
    try:
        return urlparse(url).netloc or url
    except ValueError:
        return url
