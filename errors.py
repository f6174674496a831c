"""
Error taxonomy for the Social API.

Route handlers raise these; the handlers registered in main.py turn them into
the standard ``{"success": false, "error": ...}`` envelope.
"""


class APIError(Exception):
    status_code = 400
    default_message = "Request failed"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidIdError(APIError):
    status_code = 400
    default_message = "Invalid ID format"


class ValidationFailedError(APIError):
    status_code = 400
    default_message = "Validation failed"


class DomainRuleError(APIError):
    status_code = 400
    default_message = "Action not allowed"


class NotFoundError(APIError):
    status_code = 404
    default_message = "Not found"


class ConflictError(APIError):
    status_code = 409
    default_message = "Conflict"


class DatabaseUnavailableError(APIError):
    status_code = 503
    default_message = "Database not available"
