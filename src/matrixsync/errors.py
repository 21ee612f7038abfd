"""Exception hierarchy for matrixsync.

Every error the library raises derives from MatrixSyncError so the CLI can
turn any of them into a message and a non-zero exit status.

Categories:
    - Transient: homeserver hiccups, retried where they happen
    - UserCancelled: the user aborted a prompt, never retried
    - ConfigurationError: fatal at startup (no login method, corrupt or
      revoked session, inconsistent on-disk state)
    - DurabilityError: a checkpoint could not be written, fatal for sync
"""


class MatrixSyncError(Exception):
    """Base class for all matrixsync errors."""


# ── Homeserver ──────────────────────────────────────────

class HomeserverError(MatrixSyncError):
    """The homeserver rejected a request."""

    def __init__(self, message: str, *, status: int | None = None, errcode: str | None = None):
        self.status = status
        self.errcode = errcode
        super().__init__(message)


class TransientHomeserverError(HomeserverError):
    """Network failure, rate limiting or a 5xx. Safe to retry."""


class UnrecoverableSyncError(MatrixSyncError):
    """The long-running sync hit a protocol error it cannot retry."""


# ── Configuration (fatal at startup) ────────────────────

class ConfigurationError(MatrixSyncError):
    """Fatal configuration or session-state problem."""


class InvalidHomeserverUrl(ConfigurationError):
    """The homeserver URL is not an http(s) URL."""


class NoCompatibleLoginMethod(ConfigurationError):
    """The homeserver offers no login flow this client supports."""


class CorruptSession(ConfigurationError):
    """The session file exists but does not hold a complete record."""


class SessionRevoked(ConfigurationError):
    """The stored access token was rejected by the homeserver."""


class InconsistentSessionState(ConfigurationError):
    """The session file and the local storage directory disagree."""


# ── Storage ─────────────────────────────────────────────

class SessionNotFound(MatrixSyncError):
    """No session file yet. Expected on a cold start."""


class SessionIOError(MatrixSyncError):
    """Reading or writing the session file failed."""


class DurabilityError(MatrixSyncError):
    """A sync checkpoint could not be persisted."""


# ── User interaction ────────────────────────────────────

class UserCancelled(MatrixSyncError):
    """The user aborted an interactive prompt."""


class RetryLimitReached(MatrixSyncError):
    """A bounded retry loop gave up (only when max attempts is set)."""

    def __init__(self, operation: str, attempts: int):
        self.operation = operation
        self.attempts = attempts
        super().__init__(f"{operation} gave up after {attempts} attempts")
