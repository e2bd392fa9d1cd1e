"""Content negotiation helpers for object responses."""

import email.utils
import mimetypes
import posixpath
import urllib.parse
from datetime import datetime, timezone

FALLBACK_CONTENT_TYPE = "application/octet-stream"
TEXT_CONTENT_TYPE = "text/plain;charset=utf-8"

# Types a bucket reports when the uploader never declared one.
GENERIC_CONTENT_TYPES = frozenset({FALLBACK_CONTENT_TYPE, "binary/octet-stream"})

# Built-in table only: host mime.types files are not read.
_MIME_TYPES = mimetypes.MimeTypes()


def guess_content_type(key: str) -> str | None:
    """Look up the MIME type registered for the key's extension.

    Args:
        key: A normalized object key.

    Returns:
        The MIME type, or None when the key has no known extension.
    """
    ext = posixpath.splitext(key)[1].lower()
    if not ext:
        return None
    strict, loose = _MIME_TYPES.types_map[True], _MIME_TYPES.types_map[False]
    return strict.get(ext) or loose.get(ext)


def resolve_content_type(declared: str | None, key: str, store_type: str | None) -> str:
    """Work out the ``Content-Type`` to send for an object.

    Args:
        declared: The content type recorded by storage, if any.
        key: The normalized object key.
        store_type: The ``x-store-type`` metadata value, if any.

    Returns:
        A non-empty content type. ``x-store-type: text`` always wins; a
        generic declared type is replaced by the extension lookup.
    """
    if store_type == "text":
        return TEXT_CONTENT_TYPE
    if not declared or declared in GENERIC_CONTENT_TYPES:
        return guess_content_type(key) or FALLBACK_CONTENT_TYPE
    return declared


def http_date(value: datetime) -> str:
    """Format a timestamp as an RFC 7231 HTTP date (``Sat, 01 Jan 2024 00:00:00 GMT``)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return email.utils.format_datetime(value.astimezone(timezone.utc), usegmt=True)


def content_disposition(key: str) -> str:
    """Build an ``inline`` Content-Disposition naming the object key.

    Keys outside latin-1 get an RFC 5987 ``filename*`` parameter as well,
    with a percent-encoded plain ``filename`` kept for older clients.
    """
    escaped = key.replace("\\", "\\\\").replace('"', '\\"')
    try:
        escaped.encode("latin-1")
    except UnicodeEncodeError:
        quoted = urllib.parse.quote(key, safe="")
        return f"inline; filename=\"{quoted}\"; filename*=UTF-8''{quoted}"
    return f'inline; filename="{escaped}"'
