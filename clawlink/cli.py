#!/usr/bin/env python3
"""clawlink CLI - headless access to an OpenClaw gateway.

Usage:
    clawlink --message "hello"
    clawlink --chat --file notes/todo.md
    clawlink --pair
    clawlink --history 20

Environment variables (alternative to args):
    CLAWLINK_GATEWAY_URL     Gateway URL (default: persisted setting)
    CLAWLINK_TOKEN           Operator token
    CLAWLINK_AGENT_ID        Agent id (default: main)
    CLAWLINK_STREAMING_MODE  websocket, http-sse or off
"""

import argparse
import asyncio
import contextlib
import dataclasses
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

import httpx
from dotenv import load_dotenv
from rich.console import Console

from .client import GatewayClient, build_context_prefix
from .connection import ConnectionState
from .config import (
    ClawlinkSettings,
    StreamingMode,
    ensure_device_identity,
    get_config_path,
    get_version,
    load_config,
)
from .identity import PairingStatus
from .router import normalize_history
from .rpc import GatewayError

# Setup logging
logging.basicConfig(
    level=logging.WARNING,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger("clawlink")

console = Console()

PAIRING_HINT = (
    "Approve this device on the gateway host with `openclaw devices approve`, "
    "or in the Control UI under Nodes > Devices, then run --pair again."
)


class ReplyPrinter:
    """Prints a streamed reply, cumulative (websocket) or incremental (http-sse)."""

    def __init__(self, out: Console, cumulative: bool):
        self.out = out
        self.cumulative = cumulative
        self.text = ""

    def chunk(self, text: str) -> None:
        if not self.cumulative:
            piece = text
            self.text += text
        elif text.startswith(self.text):
            piece = text[len(self.text):]
            self.text = text
        else:
            # Gateway rewrote earlier text; start the reply over on a new line
            piece = "\n" + text
            self.text = text
        if piece:
            self.out.print(piece, end="", markup=False, highlight=False, soft_wrap=True)


class ClawlinkCLI:
    """Headless client for one-shot and interactive use."""

    def __init__(
        self,
        settings: ClawlinkSettings,
        config_path: Path,
        overrides: Optional[dict] = None,
        active_file: Optional[str] = None,
        selection: Optional[str] = None,
    ):
        self.config_path = config_path
        self.active_file = active_file
        self.selection = selection

        # Overrides apply to this run only; saves write the persisted values back
        overrides = {k: v for k, v in (overrides or {}).items() if v}
        self._persisted = {k: getattr(settings, k) for k in overrides}
        self.settings = dataclasses.replace(settings, **overrides)

        self.client = GatewayClient(lambda: self.settings, on_settings_changed=self._save)
        self.conversation: list[dict] = []
        self._cancel: Optional[asyncio.Event] = None

    def _save(self) -> None:
        dataclasses.replace(self.settings, **self._persisted).save(self.config_path)

    @property
    def streaming(self) -> bool:
        return self.settings.streaming_mode != StreamingMode.OFF

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def status(self) -> int:
        console.print(f"Gateway: [bold]{self.settings.gateway_url}[/bold]")
        console.print(f"Mode:    {self.settings.streaming_mode.value}")
        if self.settings.streaming_mode == StreamingMode.WEBSOCKET:
            self.client.connect_websocket()
            await self.client.wait_for_connection()
            console.print(f"Socket:  {self.client.ws_connection_state.value}")

        healthy = await self.client.health_check()
        if healthy:
            console.print("[green]Gateway is healthy[/green]")
            return 0
        console.print("[red]Gateway is not reachable[/red]")
        return 1

    def identity(self) -> int:
        identity = self.settings.device_identity
        if identity is None:
            console.print("No device identity")
            return 1
        console.print(f"Device ID: [bold]{identity.device_id}[/bold]")
        console.print(f"Pairing:   {self.settings.device_pairing_status.value}")
        token = self.settings.device_auth_token
        if token:
            console.print(f"Token:     issued for {token.role} ({', '.join(token.scopes)})")
        return 0

    async def pair(self) -> int:
        console.print("Connecting to gateway...")
        status = await self.client.pair()
        if status == PairingStatus.PAIRED:
            console.print("[green]Device paired successfully[/green]")
            return 0
        if status == PairingStatus.PENDING:
            console.print("[yellow]Pairing request sent.[/yellow] " + PAIRING_HINT)
            return 0
        console.print(f"Connection attempt finished ({self.client.ws_connection_state.value}). Check --status.")
        return 1

    def unpair(self) -> int:
        self.client.unpair()
        console.print("Device unpaired. Run --pair to pair again.")
        return 0

    def regenerate_identity(self) -> int:
        self.client.regenerate_identity()
        console.print(f"New device identity: {self.settings.device_identity.device_id}")
        console.print("Run --pair to pair it with the gateway.")
        return 0

    def new_session(self) -> int:
        key = self.client.new_session()
        console.print(f"New session: {key}")
        return 0

    async def history(self, limit: int) -> int:
        if not await self._ensure_connected():
            return 1
        result = await self.client.chat_history(limit=limit)
        messages = normalize_history(result)
        if not messages:
            console.print("[dim]No messages in this session[/dim]")
        for message in messages:
            style = "green" if message.role == "user" else "cyan"
            console.print(f"[{style}]{message.role}:[/{style}]")
            console.print(message.content, markup=False, highlight=False)
        return 0

    async def send(self, text: str) -> int:
        return 0 if await self._ask(text) else 1

    async def chat(self) -> int:
        console.print(f"[bold cyan]clawlink {get_version()}[/bold cyan] - agent [bold]{self.settings.agent_id}[/bold]")
        console.print("[dim]Type a message and press Enter. /new starts a new session, /quit exits.[/dim]")
        if self.settings.streaming_mode == StreamingMode.WEBSOCKET:
            self.client.connect_websocket()

        while True:
            try:
                text = (await asyncio.to_thread(console.input, "[bold green]You:[/bold green] ")).strip()
            except (EOFError, KeyboardInterrupt):
                break

            if not text:
                continue
            if text.lower() in ("quit", "exit", "/quit", "/exit"):
                break
            if text == "/new":
                self.conversation.clear()
                self.new_session()
                continue

            await self._ask(text)
        return 0

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _ensure_connected(self) -> bool:
        self.client.connect_websocket()
        if await self.client.wait_for_connection():
            return True
        if self.client.ws_connection_state == ConnectionState.PAIRING_REQUIRED:
            console.print("[yellow]Device is waiting for pairing approval.[/yellow] " + PAIRING_HINT)
        else:
            console.print("[red]Could not connect to the gateway[/red]")
        return False

    def _build_messages(self, text: str) -> list[dict]:
        prefix = build_context_prefix(
            self.settings.share_active_file,
            self.active_file,
            self.settings.share_selection,
            self.selection,
        )
        return self.conversation + [{"role": "user", "content": prefix + text}]

    async def _ask(self, text: str) -> bool:
        """Send one user turn and print the reply. Returns False on error."""
        messages = self._build_messages(text)

        if not self.streaming:
            try:
                reply = await self.client.send_message(messages)
            except (GatewayError, httpx.HTTPError) as e:
                console.print(f"[red]Error:[/red] {e}")
                return False
            console.print(reply, markup=False, highlight=False)
            self._remember(text, reply)
            return True

        printer = ReplyPrinter(console, cumulative=self.settings.streaming_mode == StreamingMode.WEBSOCKET)
        finished = asyncio.Event()
        errors: list[Exception] = []

        def on_error(error: Exception) -> None:
            errors.append(error)
            finished.set()

        self._cancel = asyncio.Event()
        loop = asyncio.get_running_loop()
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signal.SIGINT, self._cancel.set)
        try:
            await self.client.send_message_streaming(
                messages, printer.chunk, finished.set, on_error, cancel=self._cancel,
            )
            await finished.wait()
        finally:
            with contextlib.suppress(NotImplementedError):
                loop.remove_signal_handler(signal.SIGINT)
            self._cancel = None

        console.print()
        if errors:
            console.print(f"[red]Error:[/red] {errors[0]}")
            return False
        self._remember(text, printer.text)
        return True

    def _remember(self, text: str, reply: str) -> None:
        self.conversation.append({"role": "user", "content": text})
        self.conversation.append({"role": "assistant", "content": reply})


def build_parser() -> argparse.ArgumentParser:
    config = load_config()
    parser = argparse.ArgumentParser(
        prog="clawlink",
        description="clawlink - chat with an OpenClaw gateway",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  clawlink                                  # Interactive TUI
  clawlink --message "Summarize my day"
  clawlink --chat --file notes/plan.md      # REPL with file context
  clawlink --pair                           # Request device approval
  clawlink --history 20
        """,
    )

    actions = parser.add_mutually_exclusive_group()
    actions.add_argument("--message", "-m", help="Send one message and print the reply")
    actions.add_argument("--chat", action="store_true", help="Interactive chat in the terminal")
    actions.add_argument(
        "--history", nargs="?", type=int, const=50, metavar="N",
        help="Show the last N messages of the current session (default: 50)",
    )
    actions.add_argument("--pair", action="store_true", help="Pair this device with the gateway")
    actions.add_argument("--unpair", action="store_true", help="Forget the device token")
    actions.add_argument(
        "--regenerate-identity", action="store_true",
        help="Create a new device identity (requires pairing again)",
    )
    actions.add_argument("--identity", action="store_true", help="Show device id and pairing status")
    actions.add_argument("--status", action="store_true", help="Check gateway health")
    actions.add_argument("--new-session", action="store_true", help="Start a new conversation session")

    parser.add_argument(
        "--url",
        default=config["GATEWAY_URL"],
        help="Gateway URL (or set CLAWLINK_GATEWAY_URL env var)",
    )
    parser.add_argument(
        "--token",
        default=config["TOKEN"],
        help="Operator token (or set CLAWLINK_TOKEN env var)",
    )
    parser.add_argument(
        "--agent",
        default=config["AGENT_ID"],
        help="Agent id (or set CLAWLINK_AGENT_ID env var)",
    )
    parser.add_argument(
        "--mode",
        default=config["STREAMING_MODE"] or None,
        choices=[m.value for m in StreamingMode],
        help="Streaming mode (or set CLAWLINK_STREAMING_MODE env var)",
    )
    parser.add_argument("--file", help="Share this file path as context")
    parser.add_argument("--selection", help="Share this text as selected context")
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    return parser


async def run(args: argparse.Namespace) -> int:
    """Dispatch one CLI command. Returns exit code."""
    config_path = get_config_path()
    settings = ClawlinkSettings.load(config_path)
    if ensure_device_identity(settings):
        settings.save(config_path)

    overrides = {
        "gateway_url": args.url,
        "gateway_token": args.token,
        "agent_id": args.agent,
        "streaming_mode": StreamingMode(args.mode) if args.mode else None,
    }
    cli = ClawlinkCLI(
        settings,
        config_path,
        overrides=overrides,
        active_file=args.file,
        selection=args.selection,
    )

    try:
        if args.identity:
            return cli.identity()
        if args.unpair:
            return cli.unpair()
        if args.regenerate_identity:
            return cli.regenerate_identity()
        if args.new_session:
            return cli.new_session()
        if args.status:
            return await cli.status()
        if args.pair:
            return await cli.pair()
        if args.history is not None:
            return await cli.history(args.history)
        if args.message:
            return await cli.send(args.message)
        return await cli.chat()
    finally:
        await cli.client.aclose()


def main():
    """CLI entry point."""
    load_dotenv()
    args = build_parser().parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        log.debug("clawlink %s", get_version())

    try:
        exit_code = asyncio.run(run(args))
    except KeyboardInterrupt:
        exit_code = 130
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
