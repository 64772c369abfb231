"""Service-level exceptions.

Services raise these instead of HTTPException so the same rules apply to
REST handlers, the websocket channel and the webhook receiver. The HTTP
layer renders them in ``casechat.main``.
"""

from __future__ import annotations


class AppError(Exception):
    """Base class for errors surfaced to API callers."""

    kind = "internal_error"
    status_code = 500
    default_message = "Internal error"

    def __init__(self, message: str | None = None, *, detail: str | None = None):
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)

    def to_dict(self, include_detail: bool = False) -> dict:
        body = {"success": False, "kind": self.kind, "message": self.message}
        if include_detail and self.detail:
            body["detail"] = self.detail
        return body


class Unauthenticated(AppError):
    """Caller identity could not be established."""

    kind = "unauthenticated"
    status_code = 401
    default_message = "Not authenticated"


class AccessDenied(AppError):
    """Caller lacks case or conversation membership."""

    kind = "access_denied"
    status_code = 403
    default_message = "Access denied"


class Forbidden(AppError):
    """Caller is a participant but may not perform this action."""

    kind = "forbidden"
    status_code = 403
    default_message = "Forbidden"


class NotFound(AppError):
    """Referenced conversation, message or case does not exist."""

    kind = "not_found"
    status_code = 404
    default_message = "Not found"


class InvalidArgument(AppError):
    """Malformed input."""

    kind = "invalid_argument"
    status_code = 400
    default_message = "Invalid argument"


class GatewayError(AppError):
    """The messaging provider rejected or failed a send.

    ``provider_code`` is the provider's own error code (Twilio numeric codes
    such as 21211 or 21408), kept so callers can tell "invalid number" apart
    from "recipient not opted in".
    """

    kind = "gateway_error"
    status_code = 502
    default_message = "Messaging gateway error"

    def __init__(
        self,
        message: str | None = None,
        *,
        provider_code: int | str | None = None,
        provider_status: int | None = None,
        detail: str | None = None,
    ):
        super().__init__(message, detail=detail)
        self.provider_code = provider_code
        self.provider_status = provider_status

    def to_dict(self, include_detail: bool = False) -> dict:
        body = super().to_dict(include_detail)
        body["provider_code"] = self.provider_code
        return body
