"""Bearer-token authorization and the per-operation access gates.

The credential check itself is a plain predicate, ``authorized(request) ->
bool``. Handlers never compare tokens; they ask one of the two gates below:

    - ``can_read``: public objects are readable by anyone, private ones only
      by authorized callers. A denied read is reported as 404 by the caller.
    - ``require_authorized``: every mutating operation needs the predicate,
      whatever the object's visibility. A denial raises 401.
"""

import hmac
import logging
from collections.abc import Callable

from fastapi import Request

from storeproxy.errors import Unauthorized
from storeproxy.metadata import PUBLIC_VISIBILITY

logger = logging.getLogger(__name__)

Authorizer = Callable[[Request], bool]


class TokenAuthorizer:
    """Compares the ``Authorization`` header against a shared secret token.

    Accepts either ``Authorization: Bearer <token>`` or the bare token. An
    empty configured token denies every request.

    Attributes:
        token: The shared secret.
    """

    def __init__(self, token: str) -> None:
        self.token = token
        if not token:
            logger.warning("No auth token configured; all protected requests will be denied")

    def __call__(self, request: Request) -> bool:
        if not self.token:
            return False
        credential = extract_credential(request.headers.get("authorization", ""))
        if not credential:
            return False
        return hmac.compare_digest(credential.encode("utf-8"), self.token.encode("utf-8"))


def extract_credential(header: str) -> str:
    """Pull the token out of an Authorization header value."""
    scheme, _, rest = header.strip().partition(" ")
    if rest and scheme.lower() == "bearer":
        return rest.strip()
    return header.strip()


def can_read(visibility: str | None, authorized: Authorizer, request: Request) -> bool:
    """Decide whether an object with the given visibility may be read."""
    if visibility == PUBLIC_VISIBILITY:
        return True
    return authorized(request)


def require_authorized(authorized: Authorizer, request: Request) -> None:
    """Gate for mutating operations.

    Raises:
        Unauthorized: If the predicate rejects the request.
    """
    if not authorized(request):
        raise Unauthorized()
