"""Session manager: cold start vs warm start.

On startup the credential store decides which path we take:
    - no session file -> cold start: pick a homeserver, negotiate a login,
      persist a fresh record
    - session file -> warm start: rebuild the client from the stored
      profile and re-adopt the stored identity, no new login

A stored session the server no longer accepts is fatal (SessionRevoked).
There is no silent fallback to a new login: to start over, delete the
session file and the local storage directory (`matrixsync reset`).
"""

import logging
import webbrowser
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from matrixsync.errors import (
    HomeserverError,
    InconsistentSessionState,
    InvalidHomeserverUrl,
    RetryLimitReached,
    SessionNotFound,
)
from matrixsync.login.choices import ServerLoginType
from matrixsync.login.negotiator import LoginNegotiator
from matrixsync.login.prompter import NoticeKind, Prompter
from matrixsync.session.models import CheckpointToken, SessionRecord
from matrixsync.session.store import CredentialStore

if TYPE_CHECKING:
    from matrixsync.homeserver import HomeserverClient

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], "HomeserverClient"]


@dataclass
class ConnectedSession:
    """A logged-in client together with the record it was built from."""
    client: "HomeserverClient"
    record: SessionRecord

    @property
    def user_id(self) -> str:
        return self.record.identity.user_id


class SessionManager:
    """Produce a connected session, logging in only when nothing is stored."""

    def __init__(
        self,
        store: CredentialStore,
        prompter: Prompter,
        client_factory: ClientFactory,
        data_dir: Path,
        *,
        homeserver: str | None = None,
        open_url: Callable[[str], bool] = webbrowser.open,
        max_attempts: int | None = None,
    ):
        self.store = store
        self.prompter = prompter
        self.client_factory = client_factory
        self.data_dir = Path(data_dir)
        self.homeserver = homeserver
        self.open_url = open_url
        self.max_attempts = max_attempts

    async def start(self) -> tuple[ConnectedSession, CheckpointToken | None]:
        """Return the connected session and the last stored checkpoint.

        CorruptSession and SessionIOError from the store propagate as-is.
        """
        try:
            record = self.store.load()
        except SessionNotFound:
            logger.info(f"No session at {self.store.path}, starting a new login")
            return await self._cold_start(), None

        logger.info(f"Previous session found in {self.store.path}")
        return await self._warm_start(record), record.checkpoint

    async def _cold_start(self) -> ConnectedSession:
        client, login_types = await self._connect_homeserver()
        negotiator = LoginNegotiator(
            client,
            self.prompter,
            self.store,
            self.data_dir,
            open_url=self.open_url,
            max_attempts=self.max_attempts,
        )
        try:
            await negotiator.negotiate(login_types)
            record = self.store.load()
        except Exception:
            await client.close()
            raise
        return ConnectedSession(client=client, record=record)

    async def _connect_homeserver(self) -> tuple["HomeserverClient", list[ServerLoginType]]:
        """Build a client and fetch its login types.

        A prompted URL that fails is asked for again. A configured URL that
        fails is fatal, since asking again would not change it.
        """
        attempts = 0
        while True:
            attempts += 1
            url = self.homeserver or self.prompter.prompt(
                "Homeserver URL", "Please Input your homeserver URL here.").strip()

            client = None
            try:
                client = self.client_factory(url)
                logger.info(f"Checking homeserver {client.homeserver}")
                return client, await client.get_login_types()
            except (InvalidHomeserverUrl, HomeserverError) as e:
                if client is not None:
                    await client.close()
                if self.homeserver:
                    raise
                logger.warning(f"Error checking the homeserver {url}: {e}")
                self.prompter.notify(
                    NoticeKind.ERROR,
                    "Error checking the homeserver",
                    f"{e}\n\nPlease try again.",
                )
                if self.max_attempts is not None and attempts >= self.max_attempts:
                    raise RetryLimitReached("Homeserver check", attempts) from e

    async def _warm_start(self, record: SessionRecord) -> ConnectedSession:
        store_path = record.profile.store_path
        if not store_path.is_dir():
            raise InconsistentSessionState(
                f"Local storage {store_path} for the stored session is missing. "
                f"Delete {self.store.path} as well to log in again.")

        logger.info(f"Restoring session for {record.identity.user_id}…")
        client = self.client_factory(record.profile.homeserver)
        try:
            await client.restore(record.identity)
        except Exception:
            await client.close()
            raise
        return ConnectedSession(client=client, record=record)
