class PlaygroundError(Exception):
    """Base exception for all errors in the playground gateway."""
    status_code = 500

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InvalidRequestError(PlaygroundError):
    """Raised when a caller supplies a malformed identifier, path or package name."""
    status_code = 400


class InvalidPathError(InvalidRequestError):
    """Raised when a workspace path escapes the workspace root or is malformed."""
    pass


class SessionNotFoundError(PlaygroundError):
    """Raised when no live session (or environment) exists for an identifier."""
    status_code = 404

    def __init__(self, session_id: str, details: dict = None):
        super().__init__(f"Session '{session_id}' not found", details)
        self.session_id = session_id


class EnvironmentGoneError(SessionNotFoundError):
    """Raised by a runtime when the session's environment has vanished underneath it."""
    pass


class SessionConflictError(PlaygroundError):
    """Raised when a new session's short id collides with another live session."""
    status_code = 409


class RuntimeUnavailableError(PlaygroundError):
    """Raised when the container runtime cannot be reached."""
    status_code = 503


class TransientRuntimeError(PlaygroundError):
    """Raised for container runtime failures worth retrying (daemon 5xx)."""
    status_code = 503


class UpstreamNotReadyError(PlaygroundError):
    """Raised when a session's preview port is unknown or not yet accepting connections."""
    status_code = 503


class WorkspaceSyncError(PlaygroundError):
    """Raised when writing or reading a workspace fails part-way.

    Syncs are not transactional: the workspace may be partially written and
    the caller is expected to re-sync.
    """
    status_code = 500


class RateLimitExceededError(PlaygroundError):
    """Raised when a client exceeds the admission window."""
    status_code = 429

    def __init__(self, client_key: str, retry_after: int, limit: int):
        super().__init__(
            "Rate limit exceeded. Please wait before submitting again.",
            {"retry_after": retry_after, "limit": limit},
        )
        self.client_key = client_key
        self.retry_after = retry_after
        self.limit = limit


class ProcessNotFoundError(PlaygroundError):
    """Raised when a background pid is not tracked by the session."""
    status_code = 404

    def __init__(self, session_id: str, pid: int):
        super().__init__(
            f"No background process {pid} in session '{session_id}'",
            {"session_id": session_id, "pid": pid},
        )
        self.pid = pid
