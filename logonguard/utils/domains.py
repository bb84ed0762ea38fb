"""URL, origin and domain normalization utilities."""

from __future__ import annotations

from urllib.parse import parse_qs, unquote, urljoin, urlparse

import tldextract

# Bundled public suffix snapshot only; page analysis must not trigger network I/O.
_extract = tldextract.TLDExtract(suffix_list_urls=())


def url_origin(value: str) -> str:
    """
    Return the lower-cased origin (scheme://host[:port]) of a URL.

    Default ports are dropped. Returns "" for anything that is not an
    absolute http(s) URL.
    """
    raw = (value or "").strip()
    if not raw:
        return ""
    try:
        parsed = urlparse(raw)
        port = parsed.port
    except ValueError:
        return ""
    scheme = (parsed.scheme or "").lower()
    host = (parsed.hostname or "").lower().strip(".")
    if scheme not in ("http", "https") or not host:
        return ""
    if port and not ((scheme == "https" and port == 443) or (scheme == "http" and port == 80)):
        return f"{scheme}://{host}:{port}"
    return f"{scheme}://{host}"


def canonicalize_domain(value: str) -> str:
    """
    Normalize a domain/URL to a canonical host key.

    - Lowercase
    - Strip leading "www."
    - Ignore port/path/query/fragment
    """
    raw = (value or "").strip()
    if not raw:
        return ""

    candidate = raw if "://" in raw else f"https://{raw}"
    try:
        parsed = urlparse(candidate)
        host = parsed.hostname or ""
    except ValueError:
        return ""
    host = host.strip().lower().strip(".")
    if host.startswith("www.") and len(host) > 4:
        host = host[4:]
    return host


def registered_domain(value: str) -> str:
    """Return the registrable domain for a host or URL (best-effort)."""
    host = canonicalize_domain(value)
    if not host:
        return ""
    extracted = _extract(host)
    if extracted.domain and extracted.suffix:
        return f"{extracted.domain}.{extracted.suffix}".lower()
    return host


def resolve_url(action: str, base_url: str) -> str:
    """Resolve a (possibly relative) form action against the page URL."""
    act = (action or "").strip() or base_url
    try:
        return urljoin(base_url, act)
    except ValueError:
        return base_url


def query_param(url: str, name: str) -> str | None:
    """Return the first value of a query parameter, or None."""
    try:
        values = parse_qs(urlparse(url).query).get(name)
    except ValueError:
        return None
    if not values:
        return None
    return values[0].strip() or None


def redirect_hostname(url: str) -> str | None:
    """Hostname of the redirect_uri parameter, truncated raw value if unparseable."""
    redirect_uri = query_param(url, "redirect_uri")
    if not redirect_uri:
        return None
    decoded = unquote(redirect_uri)
    try:
        host = urlparse(decoded).hostname
    except ValueError:
        host = None
    if host:
        return host
    return decoded[:100] + ("..." if len(decoded) > 100 else "")
