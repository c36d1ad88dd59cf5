"""Error taxonomy for the intake API.

Every class carries the HTTP status and the generic text shown to callers.
Internal detail goes to the server log only.
"""


class ConfigurationError(RuntimeError):
    """Invalid or missing configuration, raised while the app is being built."""


class IntakeError(Exception):
    status_code = 500
    public_message = "An error occurred"

    def __init__(self, detail: str | None = None, public_message: str | None = None):
        super().__init__(detail or self.public_message)
        self.detail = detail or self.public_message
        if public_message is not None:
            self.public_message = public_message


class ClientInputError(IntakeError):
    status_code = 400
    public_message = "Invalid request"


class RateLimited(IntakeError):
    status_code = 429
    public_message = "Too many requests. Please try again later."

    def __init__(self, retry_after: int, detail: str | None = None):
        super().__init__(detail)
        self.retry_after = max(0, int(retry_after))


class ScanRejected(IntakeError):
    status_code = 400
    public_message = "File rejected"


class ScanUnavailable(IntakeError):
    status_code = 503
    public_message = "Upload temporarily unavailable"


class TokenInvalidOrExpired(IntakeError):
    status_code = 403
    public_message = "Invalid or expired link"


class PathTraversalAttempt(IntakeError):
    status_code = 400
    public_message = "Invalid file name"


class NotFound(IntakeError):
    status_code = 404
    public_message = "Not found"


class InternalFault(IntakeError):
    status_code = 500
    public_message = "An error occurred"
