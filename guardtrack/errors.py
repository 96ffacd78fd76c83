"""
Typed service-layer errors.

Services raise these; the REST layer maps them to HTTP status codes through a
single exception handler and the realtime layer turns them into ``error``
frames for the offending socket.
"""


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)
        self.message = message


class NotFoundError(AppError):
    status_code = 404


class ValidationError(AppError):
    status_code = 400


class AuthenticationError(AppError):
    status_code = 401


class UnauthorizedError(AppError):
    """Role or company-scope violation"""
    status_code = 403


class InvalidStateError(AppError):
    """Illegal emergency alert status transition"""
    status_code = 409
