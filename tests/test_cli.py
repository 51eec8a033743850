"""Tests for the headless CLI."""

import io
import json

import pytest
from rich.console import Console

from clawlink.cli import ClawlinkCLI, ReplyPrinter, build_parser
from clawlink.config import ClawlinkSettings, StreamingMode, load_config
from clawlink.identity import generate_device_identity


def printer(cumulative):
    out = io.StringIO()
    return ReplyPrinter(Console(file=out, width=200), cumulative=cumulative), out


class TestReplyPrinter:
    """Rendering streamed chunks."""

    def test_cumulative_prints_only_new_text(self):
        reply, out = printer(cumulative=True)

        for chunk in ("Hel", "Hello", "Hello!"):
            reply.chunk(chunk)

        assert out.getvalue() == "Hello!"
        assert reply.text == "Hello!"

    def test_cumulative_rewrite_starts_new_line(self):
        reply, out = printer(cumulative=True)

        reply.chunk("Draft")
        reply.chunk("Final")

        assert out.getvalue() == "Draft\nFinal"
        assert reply.text == "Final"

    def test_incremental_appends(self):
        reply, out = printer(cumulative=False)

        reply.chunk("Hel")
        reply.chunk("lo")

        assert out.getvalue() == "Hello"
        assert reply.text == "Hello"

    def test_markup_is_not_interpreted(self):
        reply, out = printer(cumulative=False)
        reply.chunk("[bold]x[/bold]")
        assert out.getvalue() == "[bold]x[/bold]"


class TestParser:
    """Command line parsing."""

    @pytest.fixture(autouse=True)
    def _clean_env(self, monkeypatch):
        for name in ("CLAWLINK_GATEWAY_URL", "CLAWLINK_TOKEN", "CLAWLINK_AGENT_ID", "CLAWLINK_STREAMING_MODE"):
            monkeypatch.delenv(name, raising=False)
        load_config.cache_clear()
        yield
        load_config.cache_clear()

    def test_defaults(self):
        args = build_parser().parse_args([])
        assert args.message is None
        assert args.history is None
        assert args.mode is None
        assert args.url == ""

    def test_history_default_limit(self):
        assert build_parser().parse_args(["--history"]).history == 50
        assert build_parser().parse_args(["--history", "5"]).history == 5

    def test_commands_are_exclusive(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--pair", "--unpair"])

    def test_invalid_mode(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--mode", "telepathy"])

    def test_environment_defaults(self, monkeypatch):
        monkeypatch.setenv("CLAWLINK_TOKEN", "env-token")
        monkeypatch.setenv("CLAWLINK_STREAMING_MODE", "http-sse")

        args = build_parser().parse_args(["-m", "hi"])

        assert args.token == "env-token"
        assert args.mode == "http-sse"
        assert args.message == "hi"


class TestOverrides:
    """Command line overrides apply to one run only."""

    def test_overrides_are_not_persisted(self, tmp_path):
        path = tmp_path / "config.json"
        settings = ClawlinkSettings(gateway_token="saved-token", current_session_key="main:1:a")
        cli = ClawlinkCLI(
            settings,
            path,
            overrides={"gateway_token": "flag-token", "agent_id": "", "streaming_mode": StreamingMode.OFF},
        )

        assert cli.settings.gateway_token == "flag-token"
        assert cli.settings.streaming_mode == StreamingMode.OFF
        assert not cli.streaming

        key = cli.client.new_session()

        stored = json.loads(path.read_text())
        assert stored["gateway_token"] == "saved-token"
        assert stored["streaming_mode"] == "websocket"
        assert stored["current_session_key"] == key

    def test_identity_command(self, tmp_path):
        settings = ClawlinkSettings(device_identity=generate_device_identity())
        assert ClawlinkCLI(settings, tmp_path / "c.json").identity() == 0
        assert ClawlinkCLI(ClawlinkSettings(), tmp_path / "c.json").identity() == 1

    def test_context_prefix_goes_on_new_turn(self, tmp_path):
        cli = ClawlinkCLI(ClawlinkSettings(), tmp_path / "c.json", active_file="a.py", selection="x")
        cli.conversation = [{"role": "user", "content": "earlier"}, {"role": "assistant", "content": "ok"}]

        messages = cli._build_messages("now")

        assert messages[:2] == cli.conversation
        assert messages[2]["content"] == "[Active file: a.py]\n[Selected text:\nx\n]\n\nnow"
