# src/gateway_cli/main.py

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

import colorlog
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from content_gateway import (
    AuthType,
    GatewayConfig,
    SharedTokenManager,
    create_content_generator_config,
)
from content_gateway.auth_events import AuthEventChannel
from content_gateway.available_models import get_available_models_for_auth_type
from content_gateway.content_generator import create_content_generator
from content_gateway.error_handler import (
    ContentGeneratorError,
    DeviceFlowError,
    TokenManagerError,
)
from content_gateway.providers.dingtalk_models import refresh_available_models
from content_gateway.providers.dingtalk_oauth import (
    DeviceFlowAuthenticator,
    DingtalkOAuth2Client,
    clear_dingtalk_credentials,
    get_dingtalk_oauth_client,
)
from content_gateway.utils.paths import get_default_root, get_logs_dir

from .auth_display import render_auth_events, skip_fallback_message

console = Console()


class GatewayDebugFilter(logging.Filter):
    """Only DEBUG records from the content_gateway library."""

    def filter(self, record):
        return record.levelno == logging.DEBUG and record.name.startswith(
            "content_gateway"
        )


class NoLiteLLMLogFilter(logging.Filter):
    def filter(self, record):
        return not record.name.startswith("LiteLLM")


def setup_logging(log_dir: Path, verbose: bool = False) -> None:
    console_handler = colorlog.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(
        colorlog.ColoredFormatter(
            "%(log_color)s%(message)s",
            log_colors={
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "red,bg_white",
            },
        )
    )
    console_handler.addFilter(NoLiteLLMLogFilter())

    file_format = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    info_file_handler = logging.FileHandler(log_dir / "gateway.log", encoding="utf-8")
    info_file_handler.setLevel(logging.INFO)
    info_file_handler.setFormatter(file_format)

    debug_file_handler = logging.FileHandler(log_dir / "gateway_debug.log", encoding="utf-8")
    debug_file_handler.setLevel(logging.DEBUG)
    debug_file_handler.setFormatter(file_format)
    debug_file_handler.addFilter(GatewayDebugFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(info_file_handler)
    root_logger.addHandler(console_handler)
    root_logger.addHandler(debug_file_handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("LiteLLM").setLevel(logging.WARNING)


@contextlib.contextmanager
def cancel_on_sigint(channel: AuthEventChannel):
    """Ctrl+C cancels the login instead of killing the process."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, channel.cancel)
    except (NotImplementedError, RuntimeError):
        # Windows event loops have no signal handlers; Ctrl+C interrupts as usual
        yield
        return
    try:
        yield
    finally:
        loop.remove_signal_handler(signal.SIGINT)


async def _with_auth_display(channel: AuthEventChannel, coro):
    renderer = asyncio.create_task(render_auth_events(channel, console))
    try:
        with cancel_on_sigint(channel):
            return await coro
    finally:
        # Let the renderer print the terminal event, if one was emitted
        await asyncio.sleep(0)
        if not renderer.done():
            renderer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await renderer


async def cmd_login(config: GatewayConfig, token_manager: SharedTokenManager) -> int:
    channel = AuthEventChannel()
    authenticator = DeviceFlowAuthenticator(
        DingtalkOAuth2Client(token_manager),
        config,
        channel,
        show_fallback=skip_fallback_message,
    )
    result = await _with_auth_display(channel, authenticator.authenticate())
    if not result.success:
        console.print(f"[bold red]Login failed:[/bold red] {result.message or result.reason}")
        return 1
    token_manager.clear_cache()
    console.print(f"Credentials saved to [cyan]{authenticator.credential_path}[/cyan]")
    return 0


def cmd_logout(token_manager: SharedTokenManager) -> int:
    if clear_dingtalk_credentials(token_manager):
        console.print("[green]Logged out.[/green]")
        return 0
    console.print("[red]Could not remove the cached credentials. Check file permissions.[/red]")
    return 1


async def cmd_models(
    config: GatewayConfig, token_manager: SharedTokenManager, refresh: bool
) -> int:
    auth_type = config.get_auth_type() or AuthType.DINGTALK_OAUTH
    if auth_type == AuthType.DINGTALK_OAUTH and refresh:
        client = await get_dingtalk_oauth_client(
            config, token_manager, require_cached_credentials=True
        )
        await refresh_available_models(config, client, token_manager)

    models = get_available_models_for_auth_type(
        auth_type, config.get_available_models_for_auth(auth_type)
    )
    table = Table(title=f"Models for {auth_type.value}")
    table.add_column("ID", style="cyan")
    table.add_column("Description")
    for model in models:
        table.add_row(model.id, model.description or "")
    console.print(table)

    error = config.get_model_fetch_error(auth_type)
    if error:
        console.print(f"[yellow]Model discovery failed ({error.code.value}): {error.message}[/yellow]")
    elif not models:
        console.print("[dim]No models discovered yet. Run with --refresh.[/dim]")
    return 0


async def cmd_ask(
    config: GatewayConfig, token_manager: SharedTokenManager, prompt: str
) -> int:
    auth_type = config.get_auth_type() or AuthType.DINGTALK_OAUTH
    generator_config = create_content_generator_config(config, auth_type)
    channel = AuthEventChannel()
    generator = await _with_auth_display(
        channel,
        create_content_generator(
            generator_config,
            config,
            token_manager,
            channel,
            show_fallback=skip_fallback_message,
        ),
    )

    try:
        stream = await generator.generate_content_stream(
            {"model": generator_config.model, "contents": prompt}
        )
        async for chunk in stream:
            if chunk.get("reasoning_content"):
                console.print(chunk["reasoning_content"], style="dim", end="")
            for candidate in chunk.get("candidates") or []:
                for part in (candidate.get("content") or {}).get("parts") or []:
                    if part.get("text"):
                        console.print(part["text"], end="", markup=False, highlight=False)
    finally:
        await generator.aclose()
    console.print()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="content-gateway", description="Authenticated LLM gateway"
    )
    parser.add_argument("--verbose", action="store_true", help="Log debug output to the console.")
    parser.add_argument("--model", type=str, default=None, help="Model to use.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("login", help="Authenticate with the device flow.")
    subparsers.add_parser("logout", help="Delete cached OAuth credentials.")
    models_parser = subparsers.add_parser("models", help="List available models.")
    models_parser.add_argument(
        "--refresh", action="store_true", help="Query the provider before listing."
    )
    ask_parser = subparsers.add_parser("ask", help="Stream one answer to a prompt.")
    ask_parser.add_argument("prompt", type=str)
    return parser


async def run(args: argparse.Namespace) -> int:
    config = GatewayConfig.from_env()
    if args.model:
        config.set_model(args.model)
    token_manager = SharedTokenManager()

    if args.command == "login":
        return await cmd_login(config, token_manager)
    if args.command == "logout":
        return cmd_logout(token_manager)
    if args.command == "models":
        return await cmd_models(config, token_manager, args.refresh)
    return await cmd_ask(config, token_manager, args.prompt)


def main(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv)

    root_dir = get_default_root()
    load_dotenv(root_dir / ".env")
    setup_logging(get_logs_dir(root_dir), verbose=args.verbose)

    try:
        return asyncio.run(run(args))
    except (ContentGeneratorError, DeviceFlowError, TokenManagerError) as e:
        logging.getLogger("content_gateway").error(f"{type(e).__name__}: {e}")
        console.print(f"[bold red]Error:[/bold red] {e}")
        return 1
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted.[/yellow]")
        return 130


if __name__ == "__main__":
    sys.exit(main())
