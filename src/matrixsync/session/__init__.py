"""Durable session state.

The session file is the only thing that survives a restart. It holds the
connection profile, the server-issued identity and the last sync token.
Cold/warm start lives in matrixsync.session.manager.
"""

from matrixsync.session.models import (
    AuthenticatedIdentity,
    CheckpointToken,
    ConnectionProfile,
    SessionRecord,
)
from matrixsync.session.store import CredentialStore

__all__ = [
    "AuthenticatedIdentity",
    "CheckpointToken",
    "ConnectionProfile",
    "SessionRecord",
    "CredentialStore",
]
