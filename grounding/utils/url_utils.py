"""
URL utilities for normalizing, validating, and extracting information from URLs.
Used by the link validator, the candidate de-duplication step and the cache
key builder, so that all three agree on what "the same URL" means.
"""

import re
from typing import Iterable, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

# Constants
MAX_URL_LENGTH = 2048

# Tracking parameters to remove for clean URLs
TRACKING_PARAMS = {
    'utm_source', 'utm_medium', 'utm_campaign', 'utm_term', 'utm_content',
    'fbclid', 'gclid', 'dclid', 'msclkid', 'twclid',
    'ref', 'ref_src', 'ref_url', 'referrer',
    '_ga', '_gid', '_gac', '_gl', '_gclid',
    'mc_cid', 'mc_eid', 'mkt_tok',
    'yclid', 'ysclid', 'zanpid', 'kbid', 'pinterest_id', 'pp'
}

_DEFAULT_PORTS = {"http": 80, "https": 443}
_WHITESPACE_RE = re.compile(r"\s+")


def is_valid_url(url: str, max_length: int = MAX_URL_LENGTH) -> bool:
    """
    Check if a URL is well-formed: has a scheme and a host and is not too long.

    Args:
        url: URL string to validate
        max_length: Upper bound on the URL length

    Returns:
        True if URL is valid, False otherwise
    """
    if not url or len(url) > max_length:
        return False
    if _WHITESPACE_RE.search(url.strip()):
        return False

    try:
        p = urlparse(url.strip())
        # Must have both scheme and a hostname; port must parse
        _ = p.port
        return bool(p.scheme and p.hostname)
    except ValueError:
        return False


def extract_domain(url: str) -> str:
    """
    Extract the lower-cased hostname (without port or credentials) from a URL.

    Returns an empty string if extraction fails.
    """
    if not url:
        return ""

    try:
        return (urlparse(url.strip()).hostname or "").lower()
    except ValueError:
        return ""


def domain_matches(domain: str, patterns: Iterable[str]) -> bool:
    """True when *domain* equals or is a subdomain of any pattern."""
    domain = (domain or "").lower().rstrip(".")
    if not domain:
        return False
    for raw in patterns:
        pattern = (raw or "").strip().lower().lstrip(".")
        if not pattern:
            continue
        if domain == pattern or domain.endswith("." + pattern):
            return True
    return False


def clean_url(url: str, remove_tracking: bool = True, remove_fragment: bool = False) -> str:
    """
    Clean a URL by removing tracking parameters and optionally fragments.

    Args:
        url: URL to clean
        remove_tracking: Whether to remove tracking parameters
        remove_fragment: Whether to remove URL fragments (#...)

    Returns:
        Cleaned URL
    """
    if not url:
        return ""

    try:
        p = urlparse(url)
    except ValueError:
        return url

    if remove_tracking and p.query:
        params = parse_qsl(p.query, keep_blank_values=True)
        new_query = urlencode([(k, v) for k, v in params if k.lower() not in TRACKING_PARAMS])
    else:
        new_query = p.query

    return urlunparse((
        p.scheme,
        p.netloc,
        p.path,
        p.params,
        new_query,
        "" if remove_fragment else p.fragment
    ))


def normalize_url(url: str) -> str:
    """
    Normalize a URL for comparison and cache keys.

    Lower-cases scheme and host, drops default ports, tracking parameters,
    the fragment and a trailing slash on non-root paths. Path and query case
    are preserved. Malformed input is returned stripped but otherwise as-is.
    """
    if not url:
        return ""

    url = url.strip()
    if not is_valid_url(url):
        return url

    p = urlparse(clean_url(url, remove_tracking=True, remove_fragment=True))
    scheme = p.scheme.lower()
    host = (p.hostname or "").lower()
    port = p.port
    netloc = host
    if port and _DEFAULT_PORTS.get(scheme) != port:
        netloc = f"{host}:{port}"
    path = p.path or "/"
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/") or "/"

    return urlunparse((scheme, netloc, path, p.params, p.query, ""))


def normalize_query(query: str) -> str:
    """Lower-case a search query and collapse internal whitespace."""
    return _WHITESPACE_RE.sub(" ", (query or "").strip().lower())


def url_origin(url: str) -> Optional[str]:
    """Return ``scheme://netloc`` for *url*, or None when malformed."""
    try:
        p = urlparse(url)
    except ValueError:
        return None
    if not p.scheme or not p.netloc:
        return None
    return f"{p.scheme.lower()}://{p.netloc.lower()}"
