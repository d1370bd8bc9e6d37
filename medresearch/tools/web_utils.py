from __future__ import annotations

import re
from urllib.parse import urlparse, urlunparse

_DOI_PREFIX = re.compile(r"^(?:https?://(?:dx\.)?doi\.org/|doi:\s*)", re.IGNORECASE)


def is_valid_url(url: str) -> bool:
    """Basic URL validation."""
    try:
        result = urlparse(url)
        return all([result.scheme in ("http", "https"), result.netloc])
    except ValueError:
        return False


def extract_domain(url: str) -> str:
    """Extract domain from URL for display."""
    try:
        return urlparse(url).netloc.lower().removeprefix("www.")
    except ValueError:
        return url


def canonical_url(url: str | None) -> str | None:
    """Stable identity for a URL: lower-cased host without ``www.``, no query,
    fragment or trailing slash. Returns None for anything that is not http(s)."""
    if not url or not is_valid_url(url.strip()):
        return None
    parsed = urlparse(url.strip())
    host = parsed.netloc.lower().removeprefix("www.")
    path = parsed.path.rstrip("/")
    return urlunparse(("https", host, path, "", "", ""))


def normalize_doi(doi: str | None) -> str | None:
    if not doi:
        return None
    cleaned = _DOI_PREFIX.sub("", doi.strip()).strip().lower()
    return cleaned or None


def clean_text(text: str, max_length: int = 600) -> str:
    """Collapse whitespace and strip markup tags left in provider snippets."""
    text = re.sub(r"<[^>]+>", " ", text or "")
    text = re.sub(r"\s+", " ", text).strip()
    if len(text) > max_length:
        text = text[:max_length].rstrip() + "..."
    return text
