"""matrixsync - a Matrix client that logs in once and keeps its place.

Modules:
    - login: login-method negotiation (password, SSO, SSO via provider)
    - session: the persisted session record, cold/warm start
    - sync: initial catch-up and the checkpointed sync loop
    - homeserver: httpx client for the Matrix client-server API
    - config: YAML + environment settings
    - cli: the `matrixsync` command
"""

__version__ = "0.1.0"
