"""Error kinds raised by services and mapped to HTTP responses at the request boundary."""


class ImpactLensError(Exception):
    status_code = 500
    message = "An unexpected error occurred"

    def __init__(self, message=None, details=None):
        super().__init__(message or self.message)
        self.message = message or self.message
        self.details = details

    def to_dict(self):
        body = {"error": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class UnauthorizedError(ImpactLensError):
    status_code = 401
    message = "Unauthorized: invalid or missing bearer token"


class InvalidInputError(ImpactLensError):
    status_code = 400
    message = "Invalid input"


class NotFoundError(ImpactLensError):
    status_code = 404
    message = "Not found"


class ConflictError(ImpactLensError):
    status_code = 409
    message = "Conflict"


class UpstreamError(ImpactLensError):
    """The extraction model call failed."""
    status_code = 500
    message = "Impact extraction failed"


class MalformedResponseError(UpstreamError):
    """The model answered, but not with a usable analysis."""
    message = "Malformed response from extraction model"


class StorageError(ImpactLensError):
    status_code = 500
    message = "Database operation failed"
