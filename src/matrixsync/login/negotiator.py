"""Login negotiation: from advertised login types to a stored session.

Flow:
    1. Map the server's login types to LoginChoices (see choices.py)
    2. None left -> NoCompatibleLoginMethod; one -> use it; several -> ask
    3. Run the chosen method to completion
    4. Create a fresh ConnectionProfile and write the SessionRecord

The password flow keeps asking until the server accepts the credentials, so
a typo does not abort the whole login. SSO is not retried: the browser
redirect cannot be replayed without a new URL.

Loops only end on success or UserCancelled. Tests may pass max_attempts to
bound them.
"""

import asyncio
import logging
import secrets
import string
import webbrowser
from pathlib import Path
from typing import TYPE_CHECKING, Awaitable, Callable, Iterable

from matrixsync.errors import (
    HomeserverError,
    NoCompatibleLoginMethod,
    RetryLimitReached,
    SessionIOError,
)
from matrixsync.login.choices import (
    IdentityProvider,
    LoginChoice,
    LoginMethod,
    ServerLoginType,
    choices_from_login_types,
)
from matrixsync.login.prompter import NoticeKind, Prompter
from matrixsync.session.models import AuthenticatedIdentity, ConnectionProfile, SessionRecord
from matrixsync.session.store import CredentialStore

if TYPE_CHECKING:
    from matrixsync.homeserver import HomeserverClient

logger = logging.getLogger(__name__)

ALPHANUMERIC = string.ascii_letters + string.digits
STORE_DIR_LENGTH = 32
PASSPHRASE_LENGTH = 32


def random_alphanumeric(length: int) -> str:
    return "".join(secrets.choice(ALPHANUMERIC) for _ in range(length))


def parse_choice(text: str, count: int) -> int | None:
    """Parse a 0-based index, or None if it is not a valid choice."""
    text = text.strip()
    if not (text.isascii() and text.isdigit()):
        return None
    index = int(text)
    return index if index < count else None


async def _abandon(completion: Awaitable[AuthenticatedIdentity]) -> None:
    """Start a pending SSO completion and cancel it so its cleanup runs.

    Closing a coroutine that never started skips its finally blocks, which
    would leave the callback listener running.
    """
    task = asyncio.ensure_future(completion)
    await asyncio.sleep(0)
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)


class LoginNegotiator:
    """Pick a login method for the homeserver and carry it out."""

    def __init__(
        self,
        client: "HomeserverClient",
        prompter: Prompter,
        store: CredentialStore,
        data_dir: Path,
        *,
        open_url: Callable[[str], bool] = webbrowser.open,
        max_attempts: int | None = None,
    ):
        self.client = client
        self.prompter = prompter
        self.store = store
        self.data_dir = Path(data_dir)
        self.open_url = open_url
        self.max_attempts = max_attempts

    async def negotiate(self, login_types: Iterable[ServerLoginType]) -> AuthenticatedIdentity:
        """Log in with one of the advertised methods and persist the session.

        Raises:
            NoCompatibleLoginMethod: Nothing advertised is supported.
            UserCancelled: The user aborted a prompt.
        """
        choices = choices_from_login_types(login_types)
        if not choices:
            raise NoCompatibleLoginMethod(
                "Homeserver login types incompatible with this client")

        choice = choices[0] if len(choices) == 1 else self.offer_choices(choices)
        logger.info(f"Logging in to {self.client.homeserver} with {choice}")

        identity = await self.login(choice)
        self.persist_new_session(identity)
        return identity

    def offer_choices(self, choices: list[LoginChoice]) -> LoginChoice:
        """Ask the user to pick one of several choices by 0-based index."""
        lines = ["Several options are available to login with this homeserver:"]
        lines += [f"{idx}) {choice}" for idx, choice in enumerate(choices)]
        body = "\n".join(lines)

        attempts = 0
        while True:
            attempts += 1
            index = parse_choice(self.prompter.prompt("Enter your choice:", body), len(choices))
            if index is not None:
                return choices[index]
            self.prompter.notify(
                NoticeKind.ERROR, "Error", "This is not a valid choice. Try again.")
            self._check_attempts("Login choice", attempts)

    async def login(self, choice: LoginChoice) -> AuthenticatedIdentity:
        if choice.method is LoginMethod.PASSWORD:
            return await self._login_with_password()
        return await self._login_with_sso(choice.provider)

    async def _login_with_password(self) -> AuthenticatedIdentity:
        body = "Logging in with username and password…"

        attempts = 0
        while True:
            attempts += 1
            username = self.prompter.prompt("Username:", body).strip()
            password = self.prompter.prompt("Password:", body, secret=True).strip()

            try:
                identity = await self.client.login_with_password(username, password)
            except HomeserverError as e:
                logger.warning(f"Password login failed for {username}: {e}")
                self.prompter.notify(NoticeKind.ERROR, "Error", "Please try again.")
                self._check_attempts("Password login", attempts)
                continue

            self.prompter.notify(
                NoticeKind.INFO, "Login successful!", f"Logged in as {username}")
            return identity

    async def _login_with_sso(self, provider: IdentityProvider | None) -> AuthenticatedIdentity:
        url, completion = await self.client.start_sso(provider.id if provider else None)

        try:
            try:
                opened = self.open_url(url)
            except webbrowser.Error as e:
                logger.warning(f"Could not open a browser: {e}")
                opened = False
            if not opened:
                logger.warning("No browser was opened for SSO, the URL must be opened by hand")

            self.prompter.notify(
                NoticeKind.INFO,
                "Logging in with SSO…",
                f"Open this URL in your browser: {url}\n\nWaiting for login token…",
            )
        except BaseException:
            await _abandon(completion)
            raise

        identity = await completion
        self.prompter.notify(
            NoticeKind.INFO, "Login successful!", f"Logged in as {identity.user_id}")
        return identity

    def persist_new_session(self, identity: AuthenticatedIdentity) -> SessionRecord:
        """Create a fresh profile for `identity` and write the session record."""
        store_path = self.data_dir / random_alphanumeric(STORE_DIR_LENGTH)
        try:
            store_path.mkdir(parents=True, mode=0o700)
        except OSError as e:
            raise SessionIOError(f"Cannot create local storage {store_path}: {e}") from e

        profile = ConnectionProfile(
            homeserver=self.client.homeserver,
            store_path=store_path,
            passphrase=random_alphanumeric(PASSPHRASE_LENGTH),
        )
        record = SessionRecord(profile=profile, identity=identity)
        self.store.save(record)
        logger.info(f"Session persisted in {self.store.path}")
        return record

    def _check_attempts(self, operation: str, attempts: int) -> None:
        if self.max_attempts is not None and attempts >= self.max_attempts:
            raise RetryLimitReached(operation, attempts)
