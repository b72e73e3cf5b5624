"""Tests for GeminiBridge tool operations and MCP dispatch."""

import asyncio
from pathlib import Path

import pytest

from gemini_bridge import server as server_module
from gemini_bridge.server import (
    MODE_ONESHOT,
    NO_ONESHOT_RESPONSE,
    NO_RESPONSE,
    Config,
    GeminiBridge,
    activity_state,
    call_tool,
    select_timeout,
)
from gemini_bridge.transport import (
    GeminiProcessError,
    PermissionPolicy,
    SessionInfo,
    TransportError,
)


PERMISSION_PANE = (
    "> latest news\n"
    "╭──────────────────────────╮\n"
    "│ GoogleSearch             │\n"
    "│ Do you want to proceed?  │\n"
    "╰──────────────────────────╯\n"
)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeTmux:
    """Scripted stand-in for TmuxTransport.

    Each capture returns the next scripted pane; the last one repeats.
    """

    def __init__(self, captures=None, active=True):
        self.gemini_bin = Path("/usr/bin/gemini")
        self.session_name = "gemini-ai"
        self.captures = list(captures or ["gemini> "])
        self.active = active
        self.created_in = None
        self.sent: list[str] = []
        self.keys: list[str] = []
        self.killed = False
        self.send_error = None

    async def has_session(self, ctx=None):
        return self.active

    async def create(self, working_dir=None, ctx=None):
        self.created_in = working_dir
        self.active = True

    async def send_text(self, text, ctx=None):
        if self.send_error:
            raise self.send_error
        self.sent.append(text)

    async def send_keys(self, *keys, ctx=None):
        self.keys.extend(keys)

    async def capture(self, ctx=None):
        if len(self.captures) > 1:
            return self.captures.pop(0)
        return self.captures[0]

    async def info(self, ctx=None):
        return SessionInfo(name=self.session_name, active=self.active, attached=False, pane_size="80x24")

    async def kill(self, ctx=None):
        self.killed = True
        self.active = False


class FakeOneShot:
    def __init__(self, reply="Hello from Gemini", error=None, delay=0):
        self.gemini_bin = Path("/usr/bin/gemini")
        self.reply = reply
        self.error = error
        self.delay = delay
        self.calls: list[tuple[str, str]] = []

    async def send(self, message, working_dir=None, ctx=None):
        self.calls.append((message, working_dir))
        await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.reply


def _bridge(tmux=None, oneshot=None, **config) -> GeminiBridge:
    bridge = GeminiBridge(
        config=Config(**config),
        tmux=tmux or FakeTmux(),
        oneshot=oneshot or FakeOneShot(),
    )
    bridge.settle_delay = 0
    bridge.poll_interval = 0
    bridge.clear_delay = 0
    return bridge


def _reply_cycle(message: str, reply: str) -> list[str]:
    """Panes for one exchange: working, then a stable reply."""
    return [
        f"> {message}\n⠋ Thinking... (esc to cancel, 1s)\n",
        f"> {message}\n{reply}\n\ngemini> \n",
    ]


# ---------------------------------------------------------------------------
# Configuration and helpers
# ---------------------------------------------------------------------------

class TestConfig:
    def test_defaults(self, monkeypatch):
        for name in ("GEMINI_BRIDGE_MODE", "GEMINI_BRIDGE_WORKDIR", "GEMINI_BRIDGE_SIMPLE_TIMEOUT",
                     "GEMINI_BRIDGE_SEARCH_TIMEOUT", "GEMINI_BRIDGE_IDLE_TIMEOUT",
                     "GEMINI_BRIDGE_PERMISSION", "GEMINI_BRIDGE_LOG_LEVEL"):
            monkeypatch.delenv(name, raising=False)
        config = Config.load()
        assert config.mode == "tmux"
        assert config.simple_timeout == 10
        assert config.search_timeout == 30
        assert config.idle_timeout == 60
        assert config.permission is PermissionPolicy.ONCE
        assert config.log_level == "INFO"

    def test_environment_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("GEMINI_BRIDGE_MODE", "OneShot")
        monkeypatch.setenv("GEMINI_BRIDGE_WORKDIR", str(tmp_path))
        monkeypatch.setenv("GEMINI_BRIDGE_SIMPLE_TIMEOUT", "5")
        monkeypatch.setenv("GEMINI_BRIDGE_PERMISSION", "always")
        monkeypatch.setenv("GEMINI_BRIDGE_LOG_LEVEL", "debug")
        config = Config.load()
        assert config.mode == MODE_ONESHOT
        assert config.working_dir == str(tmp_path)
        assert config.simple_timeout == 5
        assert config.permission is PermissionPolicy.ALWAYS
        assert config.log_level == "DEBUG"

    def test_invalid_values_fall_back(self, monkeypatch):
        monkeypatch.setenv("GEMINI_BRIDGE_MODE", "carrier-pigeon")
        monkeypatch.setenv("GEMINI_BRIDGE_SEARCH_TIMEOUT", "soon")
        monkeypatch.setenv("GEMINI_BRIDGE_IDLE_TIMEOUT", "-1")
        monkeypatch.setenv("GEMINI_BRIDGE_PERMISSION", "maybe")
        config = Config.load()
        assert config.mode == "tmux"
        assert config.search_timeout == 30
        assert config.idle_timeout == 60
        assert config.permission is PermissionPolicy.ONCE


class TestSelectTimeout:
    @pytest.mark.parametrize("message,expected", [
        ("explain this function", 10),
        ("search for python 3.14 release notes", 30),
        ("FIND the bug", 30),
        ("latest rust version?", 30),
        ("오늘 뉴스 알려줘", 30),
        ("최신 버전", 30),
    ])
    def test_budget(self, message, expected):
        assert select_timeout(message, Config()) == expected


class TestActivityState:
    def test_permission_wins_over_spinner(self):
        assert activity_state("⠋ Thinking\nDo you want to proceed?") == "waiting_permission"

    def test_spinner_is_processing(self):
        assert activity_state("⠙ Thinking... (esc to cancel)") == "processing"

    def test_status_word_is_searching(self):
        assert activity_state("Searching the web") == "searching"

    def test_idle(self):
        assert activity_state("✦ done\ngemini> ") == "idle"


# ---------------------------------------------------------------------------
# gemini_send (tmux)
# ---------------------------------------------------------------------------

class TestSendMessageTmux:
    @pytest.mark.anyio
    async def test_creates_session_and_expands_file_refs(self, tmp_path):
        (tmp_path / "package.json").write_text("{}")
        expanded = f"@{tmp_path / 'package.json'} explain"
        tmux = FakeTmux(_reply_cycle(expanded, "✦ It is an npm manifest."), active=False)
        bridge = _bridge(tmux)

        result = await bridge.send_message("@package.json explain", working_dir=str(tmp_path))

        assert result == "✦ It is an npm manifest."
        assert tmux.created_in == str(tmp_path)
        assert tmux.sent == [expanded]

    @pytest.mark.anyio
    async def test_existing_session_is_reused(self):
        tmux = FakeTmux(_reply_cycle("hi", "✦ Hello!"), active=True)
        bridge = _bridge(tmux)
        assert await bridge.send_message("hi") == "✦ Hello!"
        assert tmux.created_in is None

    @pytest.mark.anyio
    async def test_working_dir_defaults_to_config(self, tmp_path):
        tmux = FakeTmux(_reply_cycle("hi", "✦ Hello!"), active=False)
        bridge = _bridge(tmux, working_dir=str(tmp_path))
        await bridge.send_message("hi")
        assert tmux.created_in == str(tmp_path)

    @pytest.mark.anyio
    async def test_permission_prompt_answered(self):
        working, done = _reply_cycle("latest news", "✦ Here is the news.")
        tmux = FakeTmux([working, PERMISSION_PANE, working, done])
        bridge = _bridge(tmux)

        result = await bridge.send_message("latest news", permission="always")

        assert result == "✦ Here is the news."
        assert tmux.keys == ["Down", "Enter"]

    @pytest.mark.anyio
    async def test_permission_default_from_config(self):
        working, done = _reply_cycle("latest news", "✦ ok")
        tmux = FakeTmux([working, PERMISSION_PANE, working, done])
        bridge = _bridge(tmux, permission=PermissionPolicy.NO)
        await bridge.send_message("latest news")
        assert tmux.keys == ["Escape"]

    @pytest.mark.anyio
    async def test_permission_rounds_are_bounded(self):
        tmux = FakeTmux([PERMISSION_PANE])
        bridge = _bridge(tmux)
        result = await bridge.send_message("latest news")
        assert tmux.keys == ["Enter"] * 3
        assert result.startswith("[Gemini is still waiting at a permission prompt]")

    @pytest.mark.anyio
    async def test_timeout_is_labelled(self):
        tmux = FakeTmux(["> ping\n⠋ Thinking... (esc to cancel, 9s)\n"])
        bridge = _bridge(tmux)
        result = await bridge.send_message("ping", timeout=0.05)
        assert result.startswith("[Timed out after 0.05s, response may be partial]")
        assert result.endswith(NO_RESPONSE)

    @pytest.mark.anyio
    async def test_empty_reply(self):
        tmux = FakeTmux(["> ping\n⠋ Thinking...\n", "> ping\n\ngemini> \n"])
        bridge = _bridge(tmux)
        assert await bridge.send_message("ping") == NO_RESPONSE

    @pytest.mark.anyio
    async def test_debug_output(self):
        tmux = FakeTmux(_reply_cycle("hi", "✦ Hello!"))
        bridge = _bridge(tmux)
        result = await bridge.send_message("hi", debug=True)
        assert result.startswith("Response:\n✦ Hello!\n\n--- Debug Information ---")
        assert "Session existed: True" in result
        assert "Timeout used: 10s" in result
        assert 'Message sent: "hi"' in result
        assert "Extracted response: 8 chars" in result

    @pytest.mark.anyio
    async def test_transport_errors_propagate(self):
        tmux = FakeTmux()
        tmux.send_error = TransportError("tmux send-keys failed (1): no server running")
        bridge = _bridge(tmux)
        with pytest.raises(TransportError):
            await bridge.send_message("hi")


# ---------------------------------------------------------------------------
# gemini_send (one-shot)
# ---------------------------------------------------------------------------

class TestSendMessageOneShot:
    @pytest.mark.anyio
    async def test_uses_oneshot_transport(self, tmp_path):
        tmux = FakeTmux()
        oneshot = FakeOneShot("Hi!")
        bridge = _bridge(tmux, oneshot, mode=MODE_ONESHOT)
        assert await bridge.send_message("hello", working_dir=str(tmp_path)) == "Hi!"
        assert oneshot.calls == [("hello", str(tmp_path))]
        assert tmux.sent == []

    @pytest.mark.anyio
    async def test_empty_reply(self):
        bridge = _bridge(oneshot=FakeOneShot(""), mode=MODE_ONESHOT)
        assert await bridge.send_message("hello") == NO_ONESHOT_RESPONSE

    @pytest.mark.anyio
    async def test_explicit_timeout_caps_the_call(self):
        bridge = _bridge(oneshot=FakeOneShot("late", delay=10), mode=MODE_ONESHOT)
        result = await asyncio.wait_for(bridge.send_message("hello", timeout=0.05), timeout=5)
        assert result == f"[Timed out after 0.05s, response may be partial]\n\n{NO_ONESHOT_RESPONSE}"

    @pytest.mark.anyio
    async def test_without_timeout_waits_for_the_process(self):
        bridge = _bridge(oneshot=FakeOneShot("worth the wait", delay=0.1), mode=MODE_ONESHOT)
        assert await bridge.send_message("hello") == "worth the wait"

    @pytest.mark.anyio
    async def test_process_error_propagates(self):
        bridge = _bridge(oneshot=FakeOneShot(error=GeminiProcessError("boom")), mode=MODE_ONESHOT)
        with pytest.raises(GeminiProcessError):
            await bridge.send_message("hello")

    @pytest.mark.anyio
    async def test_session_tools_report_mode(self):
        bridge = _bridge(mode=MODE_ONESHOT)
        assert (await bridge.session_status()).startswith("One-shot mode")
        assert (await bridge.clear_conversation()).startswith("One-shot mode")
        assert (await bridge.close_session()).startswith("One-shot mode")


# ---------------------------------------------------------------------------
# Session tools
# ---------------------------------------------------------------------------

class TestSessionTools:
    @pytest.mark.anyio
    async def test_status_inactive(self):
        bridge = _bridge(FakeTmux(active=False))
        assert await bridge.session_status() == "No active Gemini session"

    @pytest.mark.anyio
    async def test_status_idle_shows_recent_lines(self):
        pane = "\n".join(f"line {i}" for i in range(30)) + "\ngemini> "
        bridge = _bridge(FakeTmux([pane]))
        result = await bridge.session_status(lines=2)
        assert result.startswith("Session Status: ACTIVE")
        assert "Session Details" not in result
        assert result.endswith("line 29\ngemini> ")
        assert "line 28" not in result

    @pytest.mark.anyio
    async def test_status_busy_shows_details(self):
        bridge = _bridge(FakeTmux(["> q\n⠋ Thinking..."]))
        result = await bridge.session_status()
        assert "- State: processing" in result
        assert "- Pane Size: 80x24" in result
        assert "- Attached: No" in result

    @pytest.mark.anyio
    @pytest.mark.parametrize("lines", [0, -5])
    async def test_status_zero_or_negative_lines_shows_no_output(self, lines):
        bridge = _bridge(FakeTmux(["line a\nline b\ngemini> "]))
        result = await bridge.session_status(lines=lines)
        assert result.endswith(f"Last 0 lines of output:\n{'─' * 50}\n")
        assert "line a" not in result

    @pytest.mark.anyio
    async def test_status_debug_and_full_output(self):
        pane = "gemini> one\n✦ reply\ngemini> "
        bridge = _bridge(FakeTmux([pane]))
        result = await bridge.session_status(full_output=True, debug=True)
        assert "- State: idle" in result
        assert "- Messages: 2" in result
        assert result.endswith(f"Full output:\n{'─' * 50}\n{pane}")

    @pytest.mark.anyio
    async def test_clear(self):
        tmux = FakeTmux(["gemini> a\n✦ x\ngemini> b\n✦ y\ngemini> ", "gemini> "])
        bridge = _bridge(tmux)
        result = await bridge.clear_conversation()
        assert tmux.sent == ["/clear"]
        assert result == "Conversation cleared\n- Messages before: 3\n- Messages after: 1"

    @pytest.mark.anyio
    async def test_clear_debug(self):
        bridge = _bridge(FakeTmux(["gemini> "]))
        result = await bridge.clear_conversation(debug=True)
        assert "- Execution time:" in result
        assert "- State after: idle" in result

    @pytest.mark.anyio
    async def test_clear_without_session(self):
        tmux = FakeTmux(active=False)
        assert await _bridge(tmux).clear_conversation() == "No active session to clear"
        assert tmux.sent == []

    @pytest.mark.anyio
    async def test_close(self):
        tmux = FakeTmux()
        bridge = _bridge(tmux)
        assert await bridge.close_session() == "Gemini session closed"
        assert tmux.killed
        assert await bridge.close_session() == "No active session to close"

    @pytest.mark.anyio
    async def test_cleanup_stale_session(self):
        tmux = FakeTmux(active=True)
        await _bridge(tmux).cleanup_stale_session()
        assert tmux.killed

    @pytest.mark.anyio
    async def test_cleanup_without_session(self):
        tmux = FakeTmux(active=False)
        await _bridge(tmux).cleanup_stale_session()
        assert not tmux.killed


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

class TestHealth:
    def test_health_check(self):
        health = _bridge().health_check()
        assert health["status"] == "ok"
        assert health["mode"] == "tmux"
        assert health["gemini"] == "/usr/bin/gemini"
        assert isinstance(health["uptime"], int)

    def test_health_without_gemini(self, monkeypatch):
        monkeypatch.setattr(server_module, "find_gemini", lambda: None)
        tmux, oneshot = FakeTmux(), FakeOneShot()
        tmux.gemini_bin = oneshot.gemini_bin = None
        health = _bridge(tmux, oneshot).health_check()
        assert health["status"] == "gemini not found"
        assert health["gemini"] == "not found"

    @pytest.mark.anyio
    async def test_probe(self):
        bridge = _bridge(oneshot=FakeOneShot("Hi there"))
        assert await bridge.probe() == "Gemini CLI is working. Test response: Hi there..."

    @pytest.mark.anyio
    async def test_probe_failure(self):
        bridge = _bridge(oneshot=FakeOneShot(error=GeminiProcessError("no auth")))
        assert await bridge.probe() == "Gemini CLI is not responding: no auth"


# ---------------------------------------------------------------------------
# MCP dispatch
# ---------------------------------------------------------------------------

class TestCallTool:
    @pytest.mark.anyio
    async def test_send(self, monkeypatch):
        monkeypatch.setattr(server_module, "bridge", _bridge(FakeTmux(_reply_cycle("hi", "✦ Hello!"))))
        result = await call_tool("gemini_send", {"message": "hi"})
        assert result[0].text == "✦ Hello!"

    @pytest.mark.anyio
    async def test_health(self, monkeypatch):
        monkeypatch.setattr(server_module, "bridge", _bridge())
        result = await call_tool("gemini_health", {})
        assert result[0].text.startswith("Status: ok\nMode: tmux")

    @pytest.mark.anyio
    async def test_unknown_tool(self, monkeypatch):
        monkeypatch.setattr(server_module, "bridge", _bridge())
        result = await call_tool("gemini_dance", {})
        assert result[0].text == "Unknown tool: gemini_dance"

    @pytest.mark.anyio
    async def test_tmux_error_suggests_install(self, monkeypatch):
        tmux = FakeTmux()
        tmux.send_error = TransportError("tmux send-keys failed (127): tmux not found in PATH")
        monkeypatch.setattr(server_module, "bridge", _bridge(tmux))
        result = await call_tool("gemini_send", {"message": "hi"})
        assert result[0].text.startswith("Error: tmux send-keys failed")
        assert "Make sure tmux is installed" in result[0].text

    @pytest.mark.anyio
    async def test_session_error_suggests_close(self, monkeypatch):
        tmux = FakeTmux()
        tmux.send_error = GeminiProcessError("session went away")
        monkeypatch.setattr(server_module, "bridge", _bridge(tmux))
        result = await call_tool("gemini_send", {"message": "hi"})
        assert "gemini_close" in result[0].text
