"""Path routing on the raw (still percent-encoded) request path.

ASGI servers hand the application an already-decoded ``path``, which turns
``/dir%2Ffile.txt`` into ``/dir/file.txt`` before any route sees it. Route
classification and key extraction both work on ``raw_path`` instead, so an
encoded slash never splits a segment and the key is decoded exactly once, by
:func:`storeproxy.keys.normalize_key`.
"""

import urllib.parse
from dataclasses import dataclass

from fastapi import Request

# Single-segment ``/:filename`` route: every object method is served.
FILENAME_ROUTE = "filename"
# Catch-all ``/*path`` route: reads only.
PATH_ROUTE = "path"


@dataclass(frozen=True)
class RouteMatch:
    """Which route a request path selects, and the raw key text it carries."""

    route: str
    raw_key: str


def raw_request_path(request: Request) -> str:
    """Return the request path exactly as the client encoded it.

    Falls back to re-quoting the decoded path when the server does not
    provide ``raw_path``.
    """
    raw = request.scope.get("raw_path")
    if raw is None:
        return urllib.parse.quote(request.scope.get("path", "/"))
    # Some clients (httpx's ASGI transport) include the query string.
    return raw.decode("latin-1").split("?", 1)[0]


def match_route(raw_path: str) -> RouteMatch:
    """Classify a raw request path.

    Leading slashes are dropped. What remains is a filename route when it is
    a single segment (a single trailing slash is allowed) and the catch-all
    path route otherwise.
    """
    raw_key = raw_path.lstrip("/")
    body = raw_key[:-1] if raw_key.endswith("/") else raw_key
    if "/" in body:
        return RouteMatch(route=PATH_ROUTE, raw_key=raw_key)
    return RouteMatch(route=FILENAME_ROUTE, raw_key=raw_key)
