"""Tests for the httpx homeserver client.

The Matrix endpoints are served by httpx.MockTransport; only the SSO
callback listener binds a real localhost socket.
"""

import asyncio
import json

import httpx
import pytest

from conftest import HOMESERVER


def _server(handler, **kwargs):
    from matrixsync.homeserver import MatrixHomeserver

    kwargs.setdefault("max_backoff", 0)
    return MatrixHomeserver(HOMESERVER, transport=httpx.MockTransport(handler), **kwargs)


LOGIN_OK = {
    "user_id": "@alice:example.org",
    "device_id": "ABCDEFGH",
    "access_token": "syt_secret_access",
}


# ═══════════════════════════════════════════════════════════════
# URL + BATCH PARSING
# ═══════════════════════════════════════════════════════════════

class TestHomeserverUrl:

    @pytest.mark.parametrize("raw,expected", [
        ("matrix.org", "https://matrix.org"),
        ("https://matrix.org/", "https://matrix.org"),
        ("  http://localhost:8008 ", "http://localhost:8008"),
    ])
    def test_normalize(self, raw, expected):
        from matrixsync.homeserver import normalize_homeserver_url

        assert normalize_homeserver_url(raw) == expected

    @pytest.mark.parametrize("raw", ["", "   ", "ftp://matrix.org", "https://"])
    def test_invalid(self, raw):
        from matrixsync.errors import InvalidHomeserverUrl
        from matrixsync.homeserver import normalize_homeserver_url

        with pytest.raises(InvalidHomeserverUrl):
            normalize_homeserver_url(raw)


class TestSyncBatch:

    PAYLOAD = {
        "next_batch": "s2",
        "rooms": {"join": {
            "!abc:example.org": {
                "state": {"events": [
                    {"type": "m.room.name", "content": {"name": "Lobby"}},
                ]},
                "timeline": {"events": [
                    {"type": "m.room.message", "sender": "@bob:example.org",
                     "content": {"msgtype": "m.text", "body": "hello"}},
                    {"type": "m.room.message", "sender": "@bob:example.org",
                     "content": {"msgtype": "m.image", "body": "cat.png"}},
                    {"type": "m.reaction", "sender": "@bob:example.org", "content": {}},
                ]},
            },
            "!nameless:example.org": {
                "timeline": {"events": [
                    {"type": "m.room.message", "sender": "@carol:example.org",
                     "content": {"msgtype": "m.text", "body": "hi"}},
                ]},
            },
        }},
    }

    def test_room_messages(self):
        from matrixsync.homeserver import RoomMessage, SyncBatch

        batch = SyncBatch.from_response(self.PAYLOAD)

        assert batch.next_batch == "s2"
        assert list(batch.room_messages()) == [
            RoomMessage("!abc:example.org", "Lobby", "@bob:example.org", "hello"),
            RoomMessage("!nameless:example.org", "!nameless:example.org",
                        "@carol:example.org", "hi"),
        ]

    def test_missing_next_batch(self):
        from matrixsync.errors import HomeserverError
        from matrixsync.homeserver import SyncBatch

        with pytest.raises(HomeserverError):
            SyncBatch.from_response({"rooms": {}})

    def test_empty_response(self):
        from matrixsync.homeserver import SyncBatch

        batch = SyncBatch.from_response({"next_batch": "s1"})
        assert batch.joined_rooms == {}
        assert list(batch.room_messages()) == []

    @pytest.mark.parametrize("rooms", [
        ["!r:example.org"],
        {"join": ["!r:example.org"]},
        {"join": {"!r:example.org": "joined"}},
        {"join": {"!r:example.org": {"timeline": []}}},
        {"join": {"!r:example.org": {"timeline": {"events": {"0": {}}}}}},
        {"join": {"!r:example.org": {"timeline": {"events": ["m.room.message"]}}}},
        {"join": {"!r:example.org": {"state": {"events": [None]}}}},
    ])
    def test_malformed_rooms_are_homeserver_errors(self, rooms):
        """Wrong shapes under `rooms` are rejected up front, not at read time."""
        from matrixsync.errors import HomeserverError
        from matrixsync.homeserver import SyncBatch

        with pytest.raises(HomeserverError, match="Malformed sync response"):
            SyncBatch.from_response({"next_batch": "s1", "rooms": rooms})

    def test_odd_content_is_skipped(self):
        from matrixsync.homeserver import SyncBatch

        batch = SyncBatch.from_response({"next_batch": "s1", "rooms": {"join": {
            "!r:example.org": {"timeline": {"events": [
                {"type": "m.room.name", "content": "Lobby"},
                {"type": "m.room.message", "sender": "@bob:example.org", "content": ["hi"]},
                {"type": "m.room.message", "sender": "@bob:example.org",
                 "content": {"msgtype": "m.text", "body": "hello"}},
            ]}},
        }}})

        messages = list(batch.room_messages())
        assert [(m.room_name, m.body) for m in messages] == [("!r:example.org", "hello")]


# ═══════════════════════════════════════════════════════════════
# LOGIN
# ═══════════════════════════════════════════════════════════════

class TestLogin:

    def test_get_login_types(self):
        from matrixsync.login.choices import LoginKind

        def handler(request):
            assert request.method == "GET"
            assert request.url.path == "/_matrix/client/v3/login"
            assert "authorization" not in request.headers
            return httpx.Response(200, json={"flows": [
                {"type": "m.login.sso", "identity_providers": [{"id": "oidc", "name": "OIDC"}]},
                {"type": "m.login.password"},
            ]})

        async def go():
            server = _server(handler)
            try:
                return await server.get_login_types()
            finally:
                await server.close()

        types = asyncio.run(go())
        assert [t.kind for t in types] == [LoginKind.SSO, LoginKind.PASSWORD]
        assert types[0].identity_providers[0].id == "oidc"

    def test_password_login(self):
        sent = []

        def handler(request):
            sent.append(json.loads(request.content))
            return httpx.Response(200, json={**LOGIN_OK, "refresh_token": "syr_r"})

        async def go():
            server = _server(handler, device_display_name="login client")
            identity = await server.login_with_password("alice", "hunter2")
            await server.close()
            return server, identity

        server, identity = asyncio.run(go())

        assert sent == [{
            "type": "m.login.password",
            "identifier": {"type": "m.id.user", "user": "alice"},
            "password": "hunter2",
            "initial_device_display_name": "login client",
        }]
        assert identity.user_id == "@alice:example.org"
        assert identity.refresh_token == "syr_r"

    def test_rejected_login(self):
        from matrixsync.errors import HomeserverError, TransientHomeserverError

        def handler(request):
            return httpx.Response(403, json={"errcode": "M_FORBIDDEN", "error": "Invalid password"})

        with pytest.raises(HomeserverError) as exc:
            asyncio.run(_server(handler).login_with_password("alice", "nope"))

        assert not isinstance(exc.value, TransientHomeserverError)
        assert exc.value.status == 403
        assert exc.value.errcode == "M_FORBIDDEN"
        assert "M_FORBIDDEN: Invalid password" in str(exc.value)

    def test_incomplete_login_response(self):
        from matrixsync.errors import HomeserverError

        def handler(request):
            return httpx.Response(200, json={"user_id": "@alice:example.org"})

        with pytest.raises(HomeserverError, match="missing"):
            asyncio.run(_server(handler).login_with_password("alice", "pw"))

    def test_empty_access_token_is_rejected(self):
        from matrixsync.errors import HomeserverError

        def handler(request):
            return httpx.Response(200, json={**LOGIN_OK, "access_token": ""})

        with pytest.raises(HomeserverError, match="invalid"):
            asyncio.run(_server(handler).login_with_password("alice", "pw"))

    def test_listener_must_be_started(self):
        from matrixsync.errors import HomeserverError
        from matrixsync.homeserver import SsoCallbackListener

        with pytest.raises(HomeserverError, match="not started"):
            asyncio.run(SsoCallbackListener().wait_for_token())

    @pytest.mark.parametrize("status", [429, 500, 502])
    def test_retryable_status_is_transient(self, status):
        from matrixsync.errors import TransientHomeserverError

        def handler(request):
            return httpx.Response(status)

        with pytest.raises(TransientHomeserverError):
            asyncio.run(_server(handler).get_login_types())

    def test_connection_error_is_transient(self):
        from matrixsync.errors import TransientHomeserverError

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransientHomeserverError):
            asyncio.run(_server(handler).get_login_types())

    def test_sso_round_trip(self):
        """Browser lands on the local listener; its token is exchanged."""
        sent = []

        def handler(request):
            sent.append(json.loads(request.content))
            return httpx.Response(200, json=LOGIN_OK)

        async def go():
            server = _server(handler)
            url, completion = await server.start_sso("oidc-github")
            redirect = httpx.URL(url).params["redirectUrl"]
            async with httpx.AsyncClient(trust_env=False) as browser:
                resp = await browser.get(redirect, params={"loginToken": "lt_123"})
            identity = await completion
            await server.close()
            return url, resp, identity

        url, resp, identity = asyncio.run(go())

        assert httpx.URL(url).path == "/_matrix/client/v3/login/sso/redirect/oidc-github"
        assert resp.status_code == 200
        assert identity.user_id == "@alice:example.org"
        assert sent[0]["type"] == "m.login.token"
        assert sent[0]["token"] == "lt_123"


# ═══════════════════════════════════════════════════════════════
# RESTORE
# ═══════════════════════════════════════════════════════════════

class TestRestore:

    def test_restore_checks_whoami(self, identity):
        seen = []

        def handler(request):
            seen.append((request.url.path, request.headers["authorization"]))
            return httpx.Response(200, json={"user_id": identity.user_id})

        server = _server(handler)
        asyncio.run(server.restore(identity))

        assert seen == [("/_matrix/client/v3/account/whoami", "Bearer syt_secret_access")]

    def test_unknown_token_is_revoked(self, identity):
        from matrixsync.errors import HomeserverError, SessionRevoked

        def handler(request):
            return httpx.Response(401, json={"errcode": "M_UNKNOWN_TOKEN", "error": "Unknown token"})

        server = _server(handler)
        with pytest.raises(SessionRevoked):
            asyncio.run(server.restore(identity))
        with pytest.raises(HomeserverError, match="Not logged in"):
            asyncio.run(server.sync_once())

    def test_other_user_is_revoked(self, identity):
        from matrixsync.errors import SessionRevoked

        def handler(request):
            return httpx.Response(200, json={"user_id": "@mallory:example.org"})

        with pytest.raises(SessionRevoked):
            asyncio.run(_server(handler).restore(identity))

    def test_server_down_is_not_revoked(self, identity):
        from matrixsync.errors import TransientHomeserverError

        def handler(request):
            return httpx.Response(503)

        with pytest.raises(TransientHomeserverError):
            asyncio.run(_server(handler).restore(identity))


# ═══════════════════════════════════════════════════════════════
# SYNC
# ═══════════════════════════════════════════════════════════════

def _logged_in(handler, identity, **kwargs):
    """Server whose first request (whoami) is answered for `identity`."""
    def wrapped(request):
        if request.url.path.endswith("/account/whoami"):
            return httpx.Response(200, json={"user_id": identity.user_id})
        return handler(request)

    return _server(wrapped, **kwargs)


class TestSync:

    def test_sync_once_params(self, identity):
        seen = []

        def handler(request):
            seen.append(dict(request.url.params))
            return httpx.Response(200, json={"next_batch": "s1"})

        async def go():
            server = _logged_in(handler, identity)
            await server.restore(identity)
            first = await server.sync_once()
            second = await server.sync_once("s1", timeout_ms=30_000)
            return first, second

        first, second = asyncio.run(go())

        assert first.next_batch == "s1"
        assert "since" not in seen[0]
        assert "timeout" not in seen[0]
        assert json.loads(seen[0]["filter"]) == {"room": {"state": {"lazy_load_members": True}}}
        assert seen[1]["since"] == "s1"
        assert seen[1]["timeout"] == "30000"

    def test_no_filter_without_lazy_loading(self, identity):
        seen = []

        def handler(request):
            seen.append(dict(request.url.params))
            return httpx.Response(200, json={"next_batch": "s1"})

        async def go():
            server = _logged_in(handler, identity, lazy_load_members=False)
            await server.restore(identity)
            await server.sync_once()

        asyncio.run(go())
        assert "filter" not in seen[0]

    def test_sync_requires_login(self):
        from matrixsync.errors import HomeserverError

        with pytest.raises(HomeserverError, match="Not logged in"):
            asyncio.run(_server(lambda r: httpx.Response(200)).sync_once())

    def test_sync_forever_chains_tokens_and_retries(self, identity):
        """Transient errors are retried; each request resumes from the last token."""
        from matrixsync.homeserver import LoopControl

        responses = [
            httpx.Response(200, json={"next_batch": "s1"}),
            httpx.Response(502),
            httpx.Response(200, json={"next_batch": "s2"}),
        ]
        since = []

        def handler(request):
            since.append(request.url.params.get("since"))
            return responses.pop(0)

        received = []

        async def on_batch(batch):
            received.append(batch.next_batch)
            return LoopControl.STOP if batch.next_batch == "s2" else LoopControl.CONTINUE

        async def go():
            server = _logged_in(handler, identity, sync_timeout_ms=0)
            await server.restore(identity)
            await server.sync_forever("s0", on_batch)

        asyncio.run(go())

        assert received == ["s1", "s2"]
        assert since == ["s0", "s1", "s1"]

    def test_sync_forever_unrecoverable(self, identity):
        from matrixsync.errors import UnrecoverableSyncError
        from matrixsync.homeserver import LoopControl

        def handler(request):
            return httpx.Response(401, json={"errcode": "M_UNKNOWN_TOKEN", "error": "gone"})

        async def on_batch(batch):
            return LoopControl.CONTINUE

        async def go():
            server = _logged_in(handler, identity)
            await server.restore(identity)
            await server.sync_forever(None, on_batch)

        with pytest.raises(UnrecoverableSyncError, match="M_UNKNOWN_TOKEN"):
            asyncio.run(go())

    def test_sync_forever_malformed_body(self, identity):
        """A body with the wrong shape ends the loop as UnrecoverableSyncError."""
        from matrixsync.errors import UnrecoverableSyncError
        from matrixsync.homeserver import LoopControl

        def handler(request):
            return httpx.Response(200, json={"next_batch": "s1", "rooms": ["!r:example.org"]})

        received = []

        async def on_batch(batch):
            received.append(batch)
            return LoopControl.CONTINUE

        async def go():
            server = _logged_in(handler, identity)
            await server.restore(identity)
            await server.sync_forever("s0", on_batch)

        with pytest.raises(UnrecoverableSyncError, match="Malformed sync response"):
            asyncio.run(go())
        assert received == []

    def test_callback_errors_propagate(self, identity):
        from matrixsync.errors import DurabilityError

        def handler(request):
            return httpx.Response(200, json={"next_batch": "s1"})

        async def on_batch(batch):
            raise DurabilityError("disk full")

        async def go():
            server = _logged_in(handler, identity)
            await server.restore(identity)
            await server.sync_forever(None, on_batch)

        with pytest.raises(DurabilityError):
            asyncio.run(go())
