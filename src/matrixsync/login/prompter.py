"""Interactive prompts used during login.

The login code only talks to the Prompter protocol, so tests can drive it
with a scripted fake. RichPrompter is the terminal implementation.
"""

from enum import Enum
from typing import Protocol

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt

from matrixsync.errors import UserCancelled


class NoticeKind(str, Enum):
    INFO = "info"
    ERROR = "error"


class Prompter(Protocol):
    """Capability the login flow uses to talk to the user."""

    def prompt(self, header: str, body: str, secret: bool = False) -> str:
        """Ask for one line of input. Raises UserCancelled on abort."""
        ...

    def notify(self, kind: NoticeKind, header: str, body: str) -> None:
        """Show an information or error message."""
        ...


class RichPrompter:
    """Prompter backed by rich. Ctrl-C or Ctrl-D cancels."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def prompt(self, header: str, body: str, secret: bool = False) -> str:
        self.console.print(Panel(body, title=header, border_style="cyan"))
        try:
            return Prompt.ask(
                f"[bold]{header}[/bold]",
                console=self.console,
                password=secret,
            )
        except (KeyboardInterrupt, EOFError) as e:
            self.console.print()
            raise UserCancelled("Exited.") from e

    def notify(self, kind: NoticeKind, header: str, body: str) -> None:
        style = "red" if kind is NoticeKind.ERROR else "green"
        self.console.print(Panel(body, title=header, border_style=style))
