"""Login negotiation.

Turns a homeserver's advertised login types into choices, asks the user
through a Prompter when there is more than one, and runs the chosen method.
The negotiator itself lives in matrixsync.login.negotiator.
"""

from matrixsync.login.choices import (
    IdentityProvider,
    LoginChoice,
    LoginKind,
    LoginMethod,
    ServerLoginType,
    choices_from_login_types,
    decode_login_types,
)
from matrixsync.login.prompter import NoticeKind, Prompter, RichPrompter

__all__ = [
    "IdentityProvider",
    "LoginChoice",
    "LoginKind",
    "LoginMethod",
    "ServerLoginType",
    "choices_from_login_types",
    "decode_login_types",
    "NoticeKind",
    "Prompter",
    "RichPrompter",
]
