"""Error taxonomy shared by the round engine, the store and the routers.

Each error carries a symbolic code returned to the client as ``error``.
Routers map the class to an HTTP status; services never build HTTP responses.
"""


class RoundError(Exception):
    status_code = 500

    def __init__(self, code: str, message: str | None = None):
        super().__init__(message or code)
        self.code = code


class RoundValidationError(RoundError):
    """Malformed input. Nothing was written."""

    status_code = 400


class RoundAuthorizationError(RoundError):
    """Caller is not the address bound to the session."""

    status_code = 403


class RoundNotFoundError(RoundError):
    status_code = 404


class RoundConflictError(RoundError):
    """Wrong status, already registered/submitted, row already revealed...

    The caller should refetch the session before retrying.
    """

    status_code = 409


class InfrastructureError(RoundError):
    """Store or chain RPC unavailable. Retryable, session left untouched."""

    status_code = 502

    def __init__(self, code: str, message: str | None = None, status_code: int | None = None):
        super().__init__(code, message)
        if status_code is not None:
            self.status_code = status_code
