from __future__ import annotations


class GatewayError(Exception):
    """A request that ends in a plain-text error response."""

    status_code = 500
    default_message = "Internal Server Error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class BadRequest(GatewayError):
    status_code = 400
    default_message = "Missing parameters"


class NotFound(GatewayError):
    status_code = 404
    default_message = "Not Found"


class MethodNotAllowed(GatewayError):
    status_code = 405
    default_message = "Method Not Allowed"

    def __init__(self, allow: str, message: str | None = None) -> None:
        self.allow = allow
        super().__init__(message)


class RangeNotSatisfiable(GatewayError):
    status_code = 416
    default_message = "Range Not Satisfiable"


class RangeParseError(ValueError):
    """The range header could not be turned into byte ranges."""


class MalformedRange(RangeParseError):
    pass


class UnsatisfiableRange(RangeParseError):
    pass
