"""Error types surfaced to API callers as `{"error": {"code", "description"}}`."""


class PaySettleError(Exception):
    """Base error carrying a stable code, a human description and an HTTP status."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, description: str, code: str | None = None) -> None:
        super().__init__(description)
        self.description = description
        if code is not None:
            self.code = code

    def to_body(self) -> dict:
        return {"error": {"code": self.code, "description": self.description}}


class BadRequestError(PaySettleError):
    code = "BAD_REQUEST_ERROR"
    status_code = 400


class NotFoundError(PaySettleError):
    code = "NOT_FOUND_ERROR"
    status_code = 404


class AuthenticationError(PaySettleError):
    code = "AUTHENTICATION_ERROR"
    status_code = 401
