# services/errors.py
"""Domain errors raised by the services and mapped to HTTP statuses in app.py."""


class ChatError(ValueError):
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class InvalidInput(ChatError):
    status_code = 400


class AuthError(ChatError):
    status_code = 401


class PermissionDenied(ChatError):
    status_code = 403


class NotFound(ChatError):
    status_code = 404


class Conflict(ChatError):
    status_code = 409


class PayloadTooLarge(ChatError):
    status_code = 413
