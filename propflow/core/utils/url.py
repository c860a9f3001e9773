# propflow/core/utils/url.py
"""URL helpers for safe logging and dialect detection."""

from __future__ import annotations

from urllib.parse import urlparse, urlunparse


def mask_database_url(url: str) -> str:
    """Mask the password in a database URL for logging."""
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.netloc.replace(f':{parsed.password}@', ':***@')
            return urlunparse(parsed._replace(netloc=netloc))
        return url
    except ValueError:
        if '@' not in url:
            return url
        pre, post = url.split('@', 1)
        scheme_user = pre.rsplit(':', 1)[0]
        return f'{scheme_user}:***@{post}'


def is_sqlite_url(url: str) -> bool:
    return url.split('://', 1)[0].split('+', 1)[0] == 'sqlite'
