"""Homeserver client: the wire side of login and sync.

The session and sync code depend on the HomeserverClient protocol only.
MatrixHomeserver implements it over the Matrix client-server API with httpx:

    GET  /_matrix/client/v3/login                  advertised login flows
    POST /_matrix/client/v3/login                  password / token login
    GET  /_matrix/client/v3/login/sso/redirect     browser SSO entry point
    GET  /_matrix/client/v3/account/whoami         validate a stored token
    GET  /_matrix/client/v3/sync                   incremental sync

SSO needs somewhere for the browser to land after authentication, so
start_sso() runs a short-lived FastAPI app under uvicorn on localhost that
captures the loginToken query parameter.

Error mapping:
    - transport failures, 429 and 5xx -> TransientHomeserverError
    - other 4xx -> HomeserverError (errcode kept)
    - 401 on whoami -> SessionRevoked
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterator, Protocol
from urllib.parse import quote

import httpx
import uvicorn
from fastapi import FastAPI
from fastapi.responses import HTMLResponse

from matrixsync.errors import (
    HomeserverError,
    InvalidHomeserverUrl,
    SessionRevoked,
    TransientHomeserverError,
    UnrecoverableSyncError,
)
from matrixsync.login.choices import ServerLoginType, decode_login_types
from matrixsync.session.models import AuthenticatedIdentity, CheckpointToken

logger = logging.getLogger(__name__)

CLIENT_API = "/_matrix/client/v3"


# ── Sync Types ──────────────────────────────────────────

class LoopControl(str, Enum):
    """What a batch callback tells sync_forever to do next."""
    CONTINUE = "continue"
    STOP = "stop"


@dataclass(frozen=True)
class RoomMessage:
    """A plain-text message in a joined room."""
    room_id: str
    room_name: str
    sender: str
    body: str


def _section_events(room: dict[str, Any], key: str) -> list[dict[str, Any]]:
    """Events of a room's `state` or `timeline` section.

    Raises HomeserverError unless the section is an object holding a list of
    event objects.
    """
    section = room.get(key) or {}
    events = (section.get("events") or []) if isinstance(section, dict) else None
    if not isinstance(events, list) or not all(isinstance(e, dict) for e in events):
        raise HomeserverError(f"Malformed sync response: bad {key} section")
    return events


@dataclass
class SyncBatch:
    """One sync response: the closing token plus joined-room data."""
    next_batch: CheckpointToken
    joined_rooms: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_response(cls, payload: dict[str, Any]) -> "SyncBatch":
        """Validate and wrap a /sync body. Malformed bodies are HomeserverError."""
        next_batch = payload.get("next_batch")
        if not isinstance(next_batch, str) or not next_batch:
            raise HomeserverError("Sync response has no next_batch")

        rooms = payload.get("rooms") or {}
        if not isinstance(rooms, dict):
            raise HomeserverError("Malformed sync response: rooms is not an object")
        joined = rooms.get("join") or {}
        if not isinstance(joined, dict):
            raise HomeserverError("Malformed sync response: rooms.join is not an object")
        for room in joined.values():
            if not isinstance(room, dict):
                raise HomeserverError("Malformed sync response: room is not an object")
            _section_events(room, "state")
            _section_events(room, "timeline")

        return cls(next_batch=next_batch, joined_rooms=joined, raw=payload)

    def room_name(self, room_id: str) -> str:
        """Name from an m.room.name event in this batch, else the room id."""
        room = self.joined_rooms.get(room_id) or {}
        events = _section_events(room, "state") + _section_events(room, "timeline")
        for event in reversed(events):
            content = event.get("content")
            if event.get("type") == "m.room.name" and isinstance(content, dict):
                name = content.get("name")
                if name:
                    return str(name)
        return room_id

    def room_messages(self) -> Iterator[RoomMessage]:
        """Yield text messages from joined rooms, in timeline order."""
        for room_id, room in self.joined_rooms.items():
            for event in _section_events(room, "timeline"):
                if event.get("type") != "m.room.message":
                    continue
                content = event.get("content")
                if not isinstance(content, dict) or content.get("msgtype") != "m.text":
                    continue
                yield RoomMessage(
                    room_id=room_id,
                    room_name=self.room_name(room_id),
                    sender=str(event.get("sender", "")),
                    body=str(content.get("body", "")),
                )


BatchCallback = Callable[[SyncBatch], Awaitable[LoopControl]]


class HomeserverClient(Protocol):
    """What the login, session and sync code need from the server."""

    homeserver: str

    async def get_login_types(self) -> list[ServerLoginType]: ...

    async def login_with_password(self, username: str, password: str) -> AuthenticatedIdentity: ...

    async def start_sso(
        self, provider_id: str | None = None,
    ) -> tuple[str, Awaitable[AuthenticatedIdentity]]: ...

    async def restore(self, identity: AuthenticatedIdentity) -> None: ...

    async def sync_once(self, token: CheckpointToken | None = None) -> SyncBatch: ...

    async def sync_forever(self, token: CheckpointToken | None, on_batch: BatchCallback) -> None: ...

    async def close(self) -> None: ...


def normalize_homeserver_url(url: str) -> str:
    """Validate a homeserver URL; bare hostnames get https://."""
    candidate = url.strip()
    if not candidate:
        raise InvalidHomeserverUrl("Homeserver URL is empty")
    if "://" not in candidate:
        candidate = f"https://{candidate}"
    try:
        parsed = httpx.URL(candidate)
    except httpx.InvalidURL as e:
        raise InvalidHomeserverUrl(f"Invalid homeserver URL {url!r}: {e}") from e
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise InvalidHomeserverUrl(f"Invalid homeserver URL {url!r}")
    return candidate.rstrip("/")


# ── SSO Redirect Listener ───────────────────────────────

class SsoCallbackListener:
    """Local HTTP endpoint the homeserver redirects to after SSO."""

    PATH = "/sso-callback"

    def __init__(self, host: str = "127.0.0.1", port: int = 0):
        self.host = host
        self.port = port
        self._token: asyncio.Future[str] | None = None
        self._server: uvicorn.Server | None = None
        self._task: asyncio.Task | None = None

    def _build_app(self) -> FastAPI:
        app = FastAPI()

        @app.get(self.PATH, response_class=HTMLResponse)
        async def sso_callback(loginToken: str | None = None) -> HTMLResponse:
            if not loginToken:
                return HTMLResponse("<p>Missing loginToken.</p>", status_code=400)
            if self._token is not None and not self._token.done():
                self._token.set_result(loginToken)
            return HTMLResponse("<p>Login complete. You can close this window.</p>")

        return app

    async def start(self) -> str:
        """Start listening and return the redirect URL to hand to the server."""
        self._token = asyncio.get_running_loop().create_future()
        config = uvicorn.Config(
            self._build_app(),
            host=self.host,
            port=self.port,
            log_level="warning",
            lifespan="off",
        )
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve())

        while not self._server.started:
            if self._task.done():
                self._task.result()
                raise HomeserverError("SSO callback listener failed to start")
            await asyncio.sleep(0.05)

        port = self._server.servers[0].sockets[0].getsockname()[1]
        return f"http://{self.host}:{port}{self.PATH}"

    async def wait_for_token(self) -> str:
        if self._token is None or self._task is None:
            raise HomeserverError("SSO listener not started")
        await asyncio.wait({self._token, self._task}, return_when=asyncio.FIRST_COMPLETED)
        if not self._token.done():
            raise HomeserverError("SSO callback listener stopped before login completed")
        return self._token.result()

    async def stop(self) -> None:
        if self._server is not None:
            self._server.should_exit = True
        if self._task is not None:
            await self._task


# ── Matrix Client-Server API ────────────────────────────

class MatrixHomeserver:
    """httpx implementation of HomeserverClient."""

    def __init__(
        self,
        homeserver: str,
        *,
        device_display_name: str = "login client",
        sync_timeout_ms: int = 30_000,
        lazy_load_members: bool = True,
        sso_callback_host: str = "127.0.0.1",
        max_backoff: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.homeserver = normalize_homeserver_url(homeserver)
        self.device_display_name = device_display_name
        self.sync_timeout_ms = sync_timeout_ms
        self.lazy_load_members = lazy_load_members
        self.sso_callback_host = sso_callback_host
        self.max_backoff = max_backoff
        self._transport = transport
        self._identity: AuthenticatedIdentity | None = None
        self._http: httpx.AsyncClient | None = None

    async def _client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                base_url=self.homeserver,
                timeout=30.0,
                transport=self._transport,
            )
        return self._http

    async def _request(
        self,
        method: str,
        path: str,
        *,
        body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        authenticated: bool = True,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        headers: dict[str, str] = {}
        if authenticated:
            if self._identity is None:
                raise HomeserverError("Not logged in")
            headers["Authorization"] = f"Bearer {self._identity.access_token}"

        client = await self._client()
        request_timeout = timeout if timeout is not None else client.timeout
        try:
            resp = await client.request(
                method,
                f"{CLIENT_API}{path}",
                json=body,
                params=params,
                headers=headers,
                timeout=request_timeout,
            )
        except httpx.TransportError as e:
            raise TransientHomeserverError(
                f"{method} {path} failed: {e!r}") from e

        try:
            payload = resp.json() if resp.content else {}
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientHomeserverError(
                f"{method} {path} returned {resp.status_code}",
                status=resp.status_code,
                errcode=payload.get("errcode"),
            )
        if resp.status_code >= 400:
            errcode = payload.get("errcode")
            error = payload.get("error") or resp.reason_phrase
            prefix = f"{errcode}: " if errcode else ""
            raise HomeserverError(
                f"{method} {path} returned {resp.status_code}: {prefix}{error}",
                status=resp.status_code,
                errcode=errcode,
            )
        return payload

    # ── Login ───────────────────────────────────────

    async def get_login_types(self) -> list[ServerLoginType]:
        payload = await self._request("GET", "/login", authenticated=False)
        return decode_login_types(payload)

    async def _login(self, body: dict[str, Any]) -> AuthenticatedIdentity:
        body = {**body, "initial_device_display_name": self.device_display_name}
        payload = await self._request("POST", "/login", body=body, authenticated=False)
        try:
            identity = AuthenticatedIdentity(
                user_id=str(payload["user_id"]),
                device_id=str(payload["device_id"]),
                access_token=str(payload["access_token"]),
                refresh_token=payload.get("refresh_token"),
            )
        except KeyError as e:
            raise HomeserverError(f"Login response is missing {e}") from e
        except ValueError as e:
            raise HomeserverError(f"Login response is invalid: {e}") from e
        self._identity = identity
        logger.info(f"Logged in as {identity.user_id} (device {identity.device_id})")
        return identity

    async def login_with_password(self, username: str, password: str) -> AuthenticatedIdentity:
        return await self._login({
            "type": "m.login.password",
            "identifier": {"type": "m.id.user", "user": username},
            "password": password,
        })

    async def start_sso(
        self, provider_id: str | None = None,
    ) -> tuple[str, Awaitable[AuthenticatedIdentity]]:
        """Begin browser SSO.

        Returns the URL to open and an awaitable that resolves once the
        browser comes back with a login token and that token is exchanged.
        """
        listener = SsoCallbackListener(host=self.sso_callback_host)
        redirect_url = await listener.start()

        path = f"{CLIENT_API}/login/sso/redirect"
        if provider_id:
            path += f"/{quote(provider_id, safe='')}"
        url = str(httpx.URL(f"{self.homeserver}{path}", params={"redirectUrl": redirect_url}))
        return url, self._complete_sso(listener)

    async def _complete_sso(self, listener: SsoCallbackListener) -> AuthenticatedIdentity:
        try:
            login_token = await listener.wait_for_token()
        finally:
            await listener.stop()
        return await self._login({"type": "m.login.token", "token": login_token})

    async def restore(self, identity: AuthenticatedIdentity) -> None:
        """Adopt a stored identity after checking the server still honours it."""
        self._identity = identity
        try:
            whoami = await self._request("GET", "/account/whoami")
        except TransientHomeserverError:
            self._identity = None
            raise
        except HomeserverError as e:
            self._identity = None
            if e.status == 401:
                raise SessionRevoked(
                    f"Stored session for {identity.user_id} was rejected "
                    f"({e.errcode or 'unauthorized'})") from e
            raise

        if whoami.get("user_id") != identity.user_id:
            self._identity = None
            raise SessionRevoked(
                f"Stored token belongs to {whoami.get('user_id')}, not {identity.user_id}")
        logger.info(f"Restored session for {identity.user_id}")

    # ── Sync ────────────────────────────────────────

    def _sync_params(self, token: CheckpointToken | None, timeout_ms: int | None) -> dict[str, Any]:
        params: dict[str, Any] = {}
        if token:
            params["since"] = token
        if timeout_ms is not None:
            params["timeout"] = timeout_ms
        if self.lazy_load_members:
            params["filter"] = json.dumps({"room": {"state": {"lazy_load_members": True}}})
        return params

    async def sync_once(
        self, token: CheckpointToken | None = None, timeout_ms: int | None = None,
    ) -> SyncBatch:
        """One /sync round trip. Without a timeout the server answers at once."""
        http_timeout = None if timeout_ms is None else timeout_ms / 1000 + 10
        payload = await self._request(
            "GET", "/sync",
            params=self._sync_params(token, timeout_ms),
            timeout=http_timeout,
        )
        return SyncBatch.from_response(payload)

    async def sync_forever(self, token: CheckpointToken | None, on_batch: BatchCallback) -> None:
        """Long-poll /sync until on_batch says STOP.

        Transient errors are retried with capped exponential backoff. Any
        other homeserver error ends the loop as UnrecoverableSyncError.
        Exceptions raised by on_batch propagate unchanged.
        """
        since = token
        consecutive_errors = 0
        while True:
            try:
                batch = await self.sync_once(since, timeout_ms=self.sync_timeout_ms)
            except TransientHomeserverError as e:
                consecutive_errors += 1
                backoff = min(2 ** consecutive_errors, self.max_backoff)
                logger.warning(f"Sync error (retry in {backoff}s): {e}")
                await asyncio.sleep(backoff)
                continue
            except HomeserverError as e:
                raise UnrecoverableSyncError(f"Sync failed: {e}") from e

            consecutive_errors = 0
            since = batch.next_batch
            if await on_batch(batch) is LoopControl.STOP:
                return

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
