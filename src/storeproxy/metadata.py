"""Object metadata carried in ``x-store-*`` headers."""

from collections.abc import Iterable, Mapping

STORE_PREFIX = "x-store-"

# Reserved fields with behaviour attached on read.
TYPE_KEY = "x-store-type"
VISIBILITY_KEY = "x-store-visibility"

TEXT_TYPE = "text"
PUBLIC_VISIBILITY = "public"


def collect_store_metadata(
    headers: Mapping[str, str] | Iterable[tuple[str, str]],
) -> dict[str, str]:
    """Project the ``x-store-*`` entries of a header collection.

    Header names are matched case-insensitively and stored lowercased, which
    is also how S3 hands user metadata back. Every other header is dropped.
    A header sent more than once keeps every value, joined with ``", "`` in
    arrival order.

    Args:
        headers: A mapping or an iterable of ``(name, value)`` pairs.

    Returns:
        A dict mapping lowercased ``x-store-*`` names to their values.
    """
    items = headers.items() if isinstance(headers, Mapping) else headers
    meta: dict[str, str] = {}
    for name, value in items:
        lower_name = name.lower()
        if not lower_name.startswith(STORE_PREFIX):
            continue
        if lower_name in meta:
            meta[lower_name] = f"{meta[lower_name]}, {value}"
        else:
            meta[lower_name] = value
    return meta
