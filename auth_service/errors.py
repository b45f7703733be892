"""Error taxonomy of the auth service.

Every error a flow can raise on purpose derives from :class:`AuthError`
and carries the HTTP status it maps to. The application factory turns
them into ``{"error": message}`` JSON bodies; ``code`` is added when set.
"""


class ConfigurationError(Exception):
    """Raised at startup when mandatory configuration is missing."""


class AuthError(Exception):
    status_code = 500
    message = "Server error"
    code = None

    def __init__(self, message=None, code=None):
        if message is not None:
            self.message = message
        if code is not None:
            self.code = code
        super().__init__(self.message)

    def to_dict(self):
        body = {"error": self.message}
        if self.code:
            body["code"] = self.code
        return body


class ValidationError(AuthError):
    status_code = 400
    message = "Invalid request"


class DuplicateEmail(AuthError):
    status_code = 400
    message = "Email already registered"


class InvalidCredentials(AuthError):
    status_code = 401
    message = "Invalid credentials"


class NotFound(AuthError):
    status_code = 404
    message = "User not found"


class InvalidOrExpiredToken(AuthError):
    status_code = 400
    message = "Invalid or expired token"


class InvalidToken(AuthError):
    status_code = 401
    message = "Invalid token"


class ExpiredToken(AuthError):
    status_code = 401
    message = "Token expired"
    code = "TOKEN_EXPIRED"


class MissingToken(AuthError):
    status_code = 401
    message = "Refresh token required"


class Unauthorized(AuthError):
    status_code = 401
    message = "Unauthorized"


class Forbidden(AuthError):
    status_code = 403
    message = "Admin access required"


class WeakPassword(AuthError):
    status_code = 400
    message = "Password must be at least 6 characters"


class ServerError(AuthError):
    status_code = 500
    message = "Server error"


class NotificationFailed(ServerError):
    message = "Failed to send email"
