from typing import Optional


class MessagingError(Exception):
    """Base class for failures the API boundary turns into status codes."""

    status_code = 500

    def __init__(self, detail: str, field: Optional[str] = None):
        super().__init__(detail)
        self.detail = detail
        self.field = field

    def to_dict(self) -> dict:
        body = {"detail": self.detail}
        if self.field:
            body["field"] = self.field
        return body


class UnauthorizedError(MessagingError):
    status_code = 401


class ForbiddenError(MessagingError):
    status_code = 403


class NotFoundError(MessagingError):
    status_code = 404


class ValidationError(MessagingError):
    status_code = 400


class ConflictError(MessagingError):
    status_code = 409


class TransientInfrastructureError(MessagingError):
    status_code = 503
