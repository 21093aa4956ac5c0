# taskclock/core/utils/url.py
"""Database URL helpers for logging."""

from __future__ import annotations

from urllib.parse import urlsplit, urlunsplit


def mask_database_url(url: str) -> str:
    """Replace the password in a database URL with ``***``.

    URLs without a password are returned unchanged.
    """
    try:
        parts = urlsplit(url)
        password = parts.password
    except ValueError:
        password = None
        parts = None

    if parts is not None:
        if not password:
            return url
        netloc = parts.netloc.replace(f':{password}@', ':***@', 1)
        return urlunsplit(parts._replace(netloc=netloc))

    # Unparseable (e.g. bad port); mask everything between the last ':' and '@'
    if '@' not in url:
        return url
    credentials, host = url.rsplit('@', 1)
    user_part = credentials.rsplit(':', 1)[0]
    return f'{user_part}:***@{host}'
