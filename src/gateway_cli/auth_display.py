# src/gateway_cli/auth_display.py

from typing import Any, Dict

from rich.console import Console
from rich.markup import escape as rich_escape
from rich.panel import Panel
from rich.text import Text

from content_gateway.auth_events import (
    AuthEventChannel,
    AuthProgressEvent,
    AuthStatus,
    AuthUriEvent,
)

_STATUS_STYLES = {
    AuthStatus.SUCCESS: "bold green",
    AuthStatus.ERROR: "bold red",
    AuthStatus.TIMEOUT: "bold yellow",
    AuthStatus.RATE_LIMIT: "bold yellow",
}


def skip_fallback_message(device_auth: Dict[str, Any]) -> None:
    """Fallback for the authenticator: render_auth_uri already shows the URL."""


def render_auth_uri(console: Console, event: AuthUriEvent) -> None:
    url = event.verification_uri_complete or event.device_authorization.get(
        "verification_uri", ""
    )
    body = Text.from_markup(
        "1. Visit the URL below to sign in.\n"
        f"2. Confirm the code [bold yellow]{rich_escape(str(event.user_code or ''))}[/bold yellow].\n"
        "3. Come back here; login finishes automatically. Press Ctrl+C to cancel."
    )
    console.print(Panel(body, title="Dingtalk OAuth Login", style="bold blue"))
    console.print(f"[bold]URL:[/bold] [link={url}]{rich_escape(url)}[/link]\n")


async def render_auth_events(channel: AuthEventChannel, console: Console) -> AuthStatus:
    """
    Consume the channel until the attempt resolves. Returns the final status.
    """
    status_spinner = None
    try:
        while True:
            event = await channel.events.get()
            if isinstance(event, AuthUriEvent):
                render_auth_uri(console, event)
                continue
            if not isinstance(event, AuthProgressEvent):
                continue

            if event.status == AuthStatus.POLLING:
                if status_spinner is None:
                    status_spinner = console.status(
                        "[bold green]Waiting for authorization in the browser...[/bold green]",
                        spinner="dots",
                    )
                    status_spinner.start()
                continue

            if status_spinner is not None:
                status_spinner.stop()
                status_spinner = None
            style = _STATUS_STYLES.get(event.status, "bold")
            console.print(f"[{style}]{rich_escape(event.message or event.status.value)}[/{style}]")
            return event.status
    finally:
        if status_spinner is not None:
            status_spinner.stop()
