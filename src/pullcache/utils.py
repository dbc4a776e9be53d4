"""Utility functions for pullcache."""

from typing import Optional
from urllib.parse import quote, urlsplit

SUPPORTED_SCHEMES = ("http", "https")

# Default name of the directory, below the cache root, holding cached files
DEFAULT_SUBDIR = "pull_cache"


def sanitize_component(value: str, escape_dash: bool = False) -> str:
    """Convert an arbitrary string into a single safe path component.

    Every character other than ASCII letters, digits and ``_.-~`` is
    percent-encoded, including ``%`` itself, so distinct inputs always map
    to distinct components and the encoding can be reversed with
    ``urllib.parse.unquote``. Names consisting only of dots are fully
    encoded so they cannot refer to the current or parent directory.

    Args:
        value: Owner id, alias or version token
        escape_dash: Also encode ``-``, for components that are joined to
            another one with a dash

    Returns:
        Filesystem-safe string with no path separators

    Raises:
        ValueError: If value is empty

    Examples:
        >>> sanitize_component('ca1')
        'ca1'
        >>> sanitize_component('W/"abc/def"')
        'W%2F%22abc%2Fdef%22'
        >>> sanitize_component('..')
        '%2E%2E'
        >>> sanitize_component('icon-v1', escape_dash=True)
        'icon%2Dv1'
    """
    if not value:
        raise ValueError("Cannot sanitize an empty path component")
    if set(value) == {"."}:
        return "%2E" * len(value)
    cleaned = quote(value, safe="")
    if escape_dash:
        cleaned = cleaned.replace("-", "%2D")
    return cleaned


def get_scheme(url: str) -> Optional[str]:
    """Return the lower-cased scheme of a URL, or None if it has none.

    Examples:
        >>> get_scheme('HTTP://example.com/x')
        'http'
        >>> get_scheme('example.com/x') is None
        True
    """
    scheme = urlsplit(url).scheme
    return scheme.lower() if scheme else None


def is_supported_url(url: str) -> bool:
    """Check whether a URL uses one of the supported transfer protocols.

    Examples:
        >>> is_supported_url('https://example.com/icon.png')
        True
        >>> is_supported_url('ftp://example.com/icon.png')
        False
    """
    return get_scheme(url) in SUPPORTED_SCHEMES


def format_size(size_bytes: int) -> str:
    """Format a byte count for display.

    Examples:
        >>> format_size(512)
        '512 B'
        >>> format_size(2048)
        '2.0 KB'
    """
    size = float(size_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            if unit == "B":
                return f"{int(size)} B"
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"
