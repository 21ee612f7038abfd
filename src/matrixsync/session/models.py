"""Data types for the persisted session.

The session file holds one SessionRecord encoded as JSON:

    {
        "client_session": {"homeserver": ..., "store_path": ..., "passphrase": ...},
        "user_session": {
            "meta": {"user_id": ..., "device_id": ...},
            "tokens": {"access_token": ..., "refresh_token": ...}
        },
        "sync_token": ...            # omitted until the first sync
    }

from_dict() is strict: a missing or mistyped required field raises
ValueError, never a half-filled record. The constructors apply the same
rule, so anything that can be saved can be loaded back unchanged.
"""

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

# Opaque server-issued cursor (Matrix "next_batch")
CheckpointToken = str


def _require_str(data: dict[str, Any], key: str, where: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ValueError(f"{where}.{key} is missing or not a string")
    return value


def _check_non_empty(obj: Any, *names: str) -> None:
    for name in names:
        value = getattr(obj, name)
        if not isinstance(value, str) or not value:
            raise ValueError(f"{type(obj).__name__}.{name} must be a non-empty string")


def _require_dict(data: Any, key: str, where: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ValueError(f"{where} is not an object")
    value = data.get(key)
    if not isinstance(value, dict):
        raise ValueError(f"{where}.{key} is missing or not an object")
    return value


@dataclass(frozen=True)
class ConnectionProfile:
    """What it takes to rebuild a client without logging in again."""
    homeserver: str
    store_path: Path
    passphrase: str = field(repr=False)

    def __post_init__(self):
        _check_non_empty(self, "homeserver", "passphrase")

    def to_dict(self) -> dict[str, Any]:
        return {
            "homeserver": self.homeserver,
            "store_path": str(self.store_path),
            "passphrase": self.passphrase,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "ConnectionProfile":
        return cls(
            homeserver=_require_str(d, "homeserver", "client_session"),
            store_path=Path(_require_str(d, "store_path", "client_session")),
            passphrase=_require_str(d, "passphrase", "client_session"),
        )


@dataclass(frozen=True)
class AuthenticatedIdentity:
    """Server-issued proof of login. Tokens are kept out of repr()."""
    user_id: str
    device_id: str
    access_token: str = field(repr=False)
    refresh_token: str | None = field(default=None, repr=False)

    def __post_init__(self):
        _check_non_empty(self, "user_id", "device_id", "access_token")
        if self.refresh_token is not None and not isinstance(self.refresh_token, str):
            raise ValueError("refresh_token must be a string")

    def to_dict(self) -> dict[str, Any]:
        tokens: dict[str, Any] = {"access_token": self.access_token}
        if self.refresh_token is not None:
            tokens["refresh_token"] = self.refresh_token
        return {
            "meta": {"user_id": self.user_id, "device_id": self.device_id},
            "tokens": tokens,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "AuthenticatedIdentity":
        meta = _require_dict(d, "meta", "user_session")
        tokens = _require_dict(d, "tokens", "user_session")
        refresh_token = tokens.get("refresh_token")
        if refresh_token is not None and not isinstance(refresh_token, str):
            raise ValueError("user_session.tokens.refresh_token is not a string")
        return cls(
            user_id=_require_str(meta, "user_id", "user_session.meta"),
            device_id=_require_str(meta, "device_id", "user_session.meta"),
            access_token=_require_str(tokens, "access_token", "user_session.tokens"),
            refresh_token=refresh_token,
        )


@dataclass(frozen=True)
class SessionRecord:
    """The sole unit of persistence: profile + identity + checkpoint."""
    profile: ConnectionProfile
    identity: AuthenticatedIdentity
    checkpoint: CheckpointToken | None = None

    def with_checkpoint(self, token: CheckpointToken) -> "SessionRecord":
        return replace(self, checkpoint=token)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "client_session": self.profile.to_dict(),
            "user_session": self.identity.to_dict(),
        }
        if self.checkpoint is not None:
            d["sync_token"] = self.checkpoint
        return d

    @classmethod
    def from_dict(cls, d: Any) -> "SessionRecord":
        profile = ConnectionProfile.from_dict(
            _require_dict(d, "client_session", "session"))
        identity = AuthenticatedIdentity.from_dict(
            _require_dict(d, "user_session", "session"))
        checkpoint = d.get("sync_token")
        if checkpoint is not None and not isinstance(checkpoint, str):
            raise ValueError("session.sync_token is not a string")
        return cls(profile=profile, identity=identity, checkpoint=checkpoint)
