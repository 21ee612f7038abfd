"""Login types advertised by a homeserver and the choices they turn into.

GET /_matrix/client/v3/login answers with a list of flows:

    {"flows": [
        {"type": "m.login.password"},
        {"type": "m.login.sso", "identity_providers": [{"id": "oidc-github", "name": "GitHub"}]},
        {"type": "m.login.token"},
        {"type": "m.login.application_service"}
    ]}

Each flow is decoded once into a ServerLoginType, then mapped to zero or
more LoginChoice values the user can pick from.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable


class LoginKind(str, Enum):
    PASSWORD = "m.login.password"
    SSO = "m.login.sso"
    TOKEN = "m.login.token"
    APPLICATION_SERVICE = "m.login.application_service"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class IdentityProvider:
    """A named upstream authentication source offered under SSO."""
    id: str
    name: str
    icon: str | None = None
    brand: str | None = None

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "IdentityProvider":
        idp_id = str(d.get("id", ""))
        return cls(
            id=idp_id,
            name=str(d.get("name") or idp_id),
            icon=d.get("icon"),
            brand=d.get("brand"),
        )


@dataclass(frozen=True)
class ServerLoginType:
    """One advertised login flow. SSO carries its identity providers."""
    kind: LoginKind
    identity_providers: tuple[IdentityProvider, ...] = ()
    raw_type: str = ""

    @classmethod
    def from_flow(cls, flow: dict[str, Any]) -> "ServerLoginType":
        raw_type = str(flow.get("type", ""))
        try:
            kind = LoginKind(raw_type)
        except ValueError:
            kind = LoginKind.UNKNOWN

        providers: tuple[IdentityProvider, ...] = ()
        if kind is LoginKind.SSO:
            providers = tuple(
                IdentityProvider.from_dict(p)
                for p in flow.get("identity_providers") or []
                if isinstance(p, dict) and p.get("id")
            )
        return cls(kind=kind, identity_providers=providers, raw_type=raw_type)


def decode_login_types(payload: dict[str, Any]) -> list[ServerLoginType]:
    """Decode the body of GET /login, keeping the server's order."""
    flows = payload.get("flows") or []
    return [ServerLoginType.from_flow(f) for f in flows if isinstance(f, dict)]


class LoginMethod(str, Enum):
    PASSWORD = "password"
    SSO = "sso"


@dataclass(frozen=True)
class LoginChoice:
    """A way of logging in the user can pick. Never persisted."""
    method: LoginMethod
    provider: IdentityProvider | None = field(default=None)

    def __str__(self) -> str:
        if self.method is LoginMethod.PASSWORD:
            return "Username and password"
        if self.provider is None:
            return "SSO"
        return f"SSO via {self.provider.name}"


def choices_from_login_types(login_types: Iterable[ServerLoginType]) -> list[LoginChoice]:
    """Map advertised login types to the choices this client supports.

    - password -> one password choice
    - sso without providers -> plain SSO
    - sso with providers -> one choice per provider
    - token is the second half of SSO, application_service is for bridges,
      unknown types are unsupported: all dropped
    """
    choices: list[LoginChoice] = []
    for login_type in login_types:
        if login_type.kind is LoginKind.PASSWORD:
            choices.append(LoginChoice(LoginMethod.PASSWORD))
        elif login_type.kind is LoginKind.SSO:
            if login_type.identity_providers:
                choices.extend(
                    LoginChoice(LoginMethod.SSO, provider=idp)
                    for idp in login_type.identity_providers
                )
            else:
                choices.append(LoginChoice(LoginMethod.SSO))
    return choices
