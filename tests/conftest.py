"""Shared fixtures and fakes for the matrixsync tests.

FakeHomeserver and ScriptedPrompter stand in for the network and the
terminal so login, session and sync logic can be driven deterministically.
"""

import asyncio
from pathlib import Path

import pytest

from matrixsync.errors import SessionIOError
from matrixsync.homeserver import LoopControl, SyncBatch
from matrixsync.login.choices import IdentityProvider, LoginKind, ServerLoginType
from matrixsync.session.models import (
    AuthenticatedIdentity,
    ConnectionProfile,
    SessionRecord,
)
from matrixsync.session.store import CredentialStore

HOMESERVER = "https://matrix.example.org"


# ── Fakes ─────────────────────────────────────────────────────

class ScriptedPrompter:
    """Prompter that answers from a list. Exceptions in the list are raised."""

    def __init__(self, answers=()):
        self.answers = list(answers)
        self.prompts: list[tuple[str, str, bool]] = []
        self.notices: list[tuple] = []

    def prompt(self, header: str, body: str, secret: bool = False) -> str:
        self.prompts.append((header, body, secret))
        if not self.answers:
            raise AssertionError(f"Unexpected prompt: {header}")
        answer = self.answers.pop(0)
        if isinstance(answer, BaseException):
            raise answer
        return answer

    def notify(self, kind, header: str, body: str) -> None:
        self.notices.append((kind, header, body))

    @property
    def headers(self) -> list[str]:
        return [header for header, _, _ in self.prompts]


class FakeHomeserver:
    """In-memory HomeserverClient. Results are consumed in order."""

    def __init__(self, homeserver: str = HOMESERVER, login_types=None):
        self.homeserver = homeserver
        self.login_types = login_types if login_types is not None else []
        self.password_results: list = []
        self.password_attempts: list[tuple[str, str]] = []
        self.sso_identity: AuthenticatedIdentity | None = None
        self.sso_error: Exception | None = None
        self.sso_requests: list[str | None] = []
        self.sso_pending = False
        self.sso_finished = False
        self.restore_error: Exception | None = None
        self.restored: AuthenticatedIdentity | None = None
        self.sync_once_results: list = []
        self.sync_once_calls: list[str | None] = []
        self.batches: list[SyncBatch] = []
        self.sync_forever_error: Exception | None = None
        self.sync_forever_calls: list[str | None] = []
        self.delivered = 0
        self.closed = False

    async def get_login_types(self):
        if isinstance(self.login_types, Exception):
            raise self.login_types
        return list(self.login_types)

    async def login_with_password(self, username, password):
        self.password_attempts.append((username, password))
        result = self.password_results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def start_sso(self, provider_id=None):
        self.sso_requests.append(provider_id)

        async def complete():
            try:
                if self.sso_pending:
                    await asyncio.Event().wait()
                if self.sso_error is not None:
                    raise self.sso_error
                return self.sso_identity
            finally:
                self.sso_finished = True

        return f"{self.homeserver}/sso/redirect/{provider_id or ''}", complete()

    async def restore(self, identity):
        if self.restore_error is not None:
            raise self.restore_error
        self.restored = identity

    async def sync_once(self, token=None):
        self.sync_once_calls.append(token)
        result = self.sync_once_results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def sync_forever(self, token, on_batch):
        self.sync_forever_calls.append(token)
        for batch in self.batches:
            self.delivered += 1
            if await on_batch(batch) is LoopControl.STOP:
                return
        if self.sync_forever_error is not None:
            raise self.sync_forever_error

    async def close(self):
        self.closed = True


class RecordingStore(CredentialStore):
    """CredentialStore that remembers every checkpoint it wrote."""

    def __init__(self, path: Path):
        super().__init__(path)
        self.checkpoints: list[str] = []
        self.fail_checkpoint_at: int | None = None

    def save_checkpoint(self, token):
        if self.fail_checkpoint_at is not None and len(self.checkpoints) + 1 >= self.fail_checkpoint_at:
            raise SessionIOError("disk full")
        record = super().save_checkpoint(token)
        self.checkpoints.append(token)
        return record


# ── Fixtures ──────────────────────────────────────────────────

@pytest.fixture
def identity():
    return AuthenticatedIdentity(
        user_id="@alice:example.org",
        device_id="ABCDEFGH",
        access_token="syt_secret_access",
        refresh_token="syr_secret_refresh",
    )


@pytest.fixture
def data_dir(tmp_path):
    """Temporary data directory (avoids touching real ~/.matrixsync)."""
    d = tmp_path / "persist_session"
    d.mkdir()
    return d


@pytest.fixture
def store(data_dir):
    return RecordingStore(data_dir / "session")


@pytest.fixture
def record(data_dir, identity):
    store_path = data_dir / "xK3mQ9vLp2Rt7WnB4yHc8JdF6sGa1ZeU"
    store_path.mkdir()
    profile = ConnectionProfile(
        homeserver=HOMESERVER,
        store_path=store_path,
        passphrase="p" * 32,
    )
    return SessionRecord(profile=profile, identity=identity)


@pytest.fixture
def stored_record(store, record):
    store.save(record)
    return record


def password_type():
    return ServerLoginType(LoginKind.PASSWORD, raw_type=LoginKind.PASSWORD.value)


def sso_type(*providers: IdentityProvider):
    return ServerLoginType(LoginKind.SSO, identity_providers=tuple(providers),
                           raw_type=LoginKind.SSO.value)
