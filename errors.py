"""Error types shared by the pipeline, verification, and HTTP layers.

Each error carries the HTTP status and machine-readable code the server
reports in its error envelope. Cross-user access raises NotFoundError so that
the existence of other users' records is never revealed.
"""


class DorfkoenigError(Exception):
    """Base class for errors surfaced to callers."""

    status: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class ValidationError(DorfkoenigError):
    """Request rejected before any external call was made."""

    status = 400
    code = "VALIDATION_ERROR"


class NotFoundError(DorfkoenigError):
    """Record does not exist or belongs to another user."""

    status = 404
    code = "NOT_FOUND"


class ConflictError(DorfkoenigError):
    """Operation collides with one already in flight."""

    status = 409
    code = "CONFLICT"


class CollaboratorError(DorfkoenigError):
    """An external service (LLM, messaging) failed at transport level."""

    status = 502
    code = "UPSTREAM_ERROR"


class AuthenticationError(DorfkoenigError):
    """Request carries no user identity."""

    status = 401
    code = "UNAUTHORIZED"
