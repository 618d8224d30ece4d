"""
Error taxonomy for the session manager.

Each error carries the HTTP status code the API layer answers with, so routes
can simply let them propagate to the app's exception handler.
"""


class SessionManagerError(Exception):
    """Base class for all errors surfaced to callers."""
    status_code = 500


class NotFound(SessionManagerError):
    """Unknown session, user or file."""
    status_code = 404


class Unauthorized(SessionManagerError):
    """Missing or invalid caller credential."""
    status_code = 401


class Forbidden(SessionManagerError):
    """Session not active, or request origin not allow-listed."""
    status_code = 403


class InvalidRequest(SessionManagerError):
    """Unknown command action or malformed payload."""
    status_code = 400


class OrchestrationFailure(SessionManagerError):
    """A Docker call failed or timed out."""
    pass


class StorageFailure(SessionManagerError):
    """Profile materialization or file access failed."""
    pass
