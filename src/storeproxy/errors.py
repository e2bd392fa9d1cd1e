"""HTTP-facing error definitions for storeproxy."""


class StoreError(Exception):
    """An error that maps directly onto an HTTP response.

    Attributes:
        code: Short machine-readable error code (e.g. "NotFound").
        message: Human-readable text sent as the response body.
        http_status: The HTTP status code to return.
    """

    def __init__(self, code: str, message: str, http_status: int = 400) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.http_status = http_status


class NotFound(StoreError):
    """The object does not exist, or the caller may not know that it does."""

    def __init__(self, message: str = "Not found") -> None:
        super().__init__(code="NotFound", message=message, http_status=404)


class InvalidKey(NotFound):
    """The request path does not normalize to a usable object key."""

    def __init__(self, key: str = "") -> None:
        super().__init__()
        self.key = key


class Unauthorized(StoreError):
    """The credential predicate rejected a mutating request."""

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(code="Unauthorized", message=message, http_status=401)


class MethodNotAllowed(StoreError):
    """The HTTP method is not served on this route."""

    def __init__(self, message: str = "Method not allowed") -> None:
        super().__init__(code="MethodNotAllowed", message=message, http_status=405)


class InvalidArgument(StoreError):
    """A query parameter could not be parsed."""

    def __init__(self, message: str = "Invalid argument") -> None:
        super().__init__(code="InvalidArgument", message=message, http_status=400)


class UpstreamFailure(StoreError):
    """The storage service failed to complete a mutating operation."""

    def __init__(
        self,
        message: str = "The storage service failed to complete the request.",
        code: str = "UpstreamFailure",
    ) -> None:
        super().__init__(code=code, message=message, http_status=502)


class NoSuchObject(UpstreamFailure):
    """A metadata update targeted an object that does not exist."""

    def __init__(self, key: str = "") -> None:
        super().__init__(
            message="The object to update does not exist.",
            code="NoSuchKey",
        )
        self.key = key
