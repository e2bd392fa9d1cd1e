"""Object key normalization.

Turns the raw, still percent-encoded text taken from a request path into the
canonical key used against the bucket. This is the only place in the request
path where percent-decoding happens, so a key that contains an encoded
percent sign (``%2525``) is decoded once and only once.
"""

import urllib.parse

from storeproxy.errors import InvalidKey

_DOT_SEGMENTS = frozenset({".", ".."})


def normalize_key(raw: str) -> str:
    """Normalize a raw request path fragment into an object key.

    Steps:
        1. Percent-decode (UTF-8, strict).
        2. Strip any run of leading slashes.
        3. Strip one trailing slash when the key ends in exactly one slash.

    Args:
        raw: The encoded path fragment, with or without leading slashes.

    Returns:
        The canonical object key.

    Raises:
        InvalidKey: If decoding fails, the key is empty, or the key contains
            a ``.`` or ``..`` path segment.
    """
    try:
        key = urllib.parse.unquote(raw, errors="strict")
    except UnicodeDecodeError:
        raise InvalidKey(raw) from None

    key = key.lstrip("/")
    if key.endswith("/") and not key.endswith("//"):
        key = key[:-1]

    if not key:
        raise InvalidKey(raw)
    if any(segment in _DOT_SEGMENTS for segment in key.split("/")):
        raise InvalidKey(raw)
    return key
