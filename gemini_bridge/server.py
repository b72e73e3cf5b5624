#!/usr/bin/env python3
"""
Gemini Bridge - MCP server that delegates messages to the Gemini CLI.

Features:
- Persistent Gemini CLI conversation inside a tmux session
- One-shot mode: a fresh gemini process per message, no tmux needed
- @file references expanded to absolute paths
- Automatic answers to Gemini's permission prompts (once, always, no)
- Session status, clear and close tools
- Debug mode with per-request command log and timings

Configuration (environment):
- GEMINI_BRIDGE_MODE: tmux (default) or oneshot
- GEMINI_BIN: Path to the gemini binary (default: PATH lookup)
- GEMINI_BRIDGE_WORKDIR: Default working directory
- GEMINI_BRIDGE_SIMPLE_TIMEOUT / GEMINI_BRIDGE_SEARCH_TIMEOUT: Reply budgets in seconds
- GEMINI_BRIDGE_IDLE_TIMEOUT: One-shot idle window in seconds
- GEMINI_BRIDGE_PERMISSION: Default permission answer
- GEMINI_BRIDGE_LOG_LEVEL: Log level for stderr logging
"""

import os
import sys
import asyncio
import logging
from datetime import datetime
from typing import Optional
from dataclasses import dataclass

from mcp.server import Server, InitializationOptions
from mcp.server.stdio import stdio_server
from mcp.types import Tool, TextContent, ServerCapabilities, ToolsCapability

from gemini_bridge import __version__
from gemini_bridge.debug import RequestContext
from gemini_bridge.detector import POLL_INTERVAL, CompletionStatus, poll_for_reply
from gemini_bridge.extractor import expand_file_references, extract_response
from gemini_bridge.markers import (
    CLEAR_COMMAND,
    count_prompts,
    has_permission_prompt,
    has_spinner,
    has_status_word,
)
from gemini_bridge.transport import (
    IDLE_TIMEOUT,
    OneShotTransport,
    PermissionPolicy,
    TmuxTransport,
    TransportError,
    answer_permission,
    find_gemini,
    find_tmux,
)

logger = logging.getLogger(__name__)

MODE_TMUX = "tmux"
MODE_ONESHOT = "oneshot"

# Reply budgets in seconds
SIMPLE_TIMEOUT = 10
SEARCH_TIMEOUT = 30

# Words that suggest a web search, which takes Gemini longer
SEARCH_KEYWORDS = ("search", "검색", "find", "찾", "news", "뉴스", "latest", "최신")

SETTLE_DELAY = 2.0        # seconds between sending and the first capture
CLEAR_DELAY = 1.0
MAX_PERMISSION_ROUNDS = 3

NO_RESPONSE = "No response captured. Check session status or increase timeout."
NO_ONESHOT_RESPONSE = "No response received from Gemini. Please try again."


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        value = 0
    if value <= 0:
        logger.warning("Ignoring %s=%r, using %s", name, raw, default)
        return default
    return value


@dataclass
class Config:
    mode: str = MODE_TMUX
    working_dir: Optional[str] = None
    simple_timeout: float = SIMPLE_TIMEOUT
    search_timeout: float = SEARCH_TIMEOUT
    idle_timeout: float = IDLE_TIMEOUT
    permission: PermissionPolicy = PermissionPolicy.ONCE
    log_level: str = "INFO"

    @classmethod
    def load(cls) -> "Config":
        config = cls()

        mode = os.environ.get("GEMINI_BRIDGE_MODE", config.mode).strip().lower()
        if mode in (MODE_TMUX, MODE_ONESHOT):
            config.mode = mode
        else:
            logger.warning("Unknown GEMINI_BRIDGE_MODE %r, using %s", mode, config.mode)

        config.working_dir = os.environ.get("GEMINI_BRIDGE_WORKDIR") or config.working_dir
        config.simple_timeout = _env_float("GEMINI_BRIDGE_SIMPLE_TIMEOUT", config.simple_timeout)
        config.search_timeout = _env_float("GEMINI_BRIDGE_SEARCH_TIMEOUT", config.search_timeout)
        config.idle_timeout = _env_float("GEMINI_BRIDGE_IDLE_TIMEOUT", config.idle_timeout)

        permission = os.environ.get("GEMINI_BRIDGE_PERMISSION")
        if permission:
            try:
                config.permission = PermissionPolicy(permission.strip().lower())
            except ValueError:
                logger.warning("Unknown GEMINI_BRIDGE_PERMISSION %r, using %s", permission, config.permission.value)

        config.log_level = os.environ.get("GEMINI_BRIDGE_LOG_LEVEL", config.log_level).upper()
        return config


def select_timeout(message: str, config: Config) -> float:
    """Longer budget for messages that look like web searches."""
    lower = message.lower()
    if any(word in lower for word in SEARCH_KEYWORDS):
        logger.info("Detected search query, using %ss timeout", config.search_timeout)
        return config.search_timeout
    return config.simple_timeout


def activity_state(output: str) -> str:
    if has_permission_prompt(output):
        return "waiting_permission"
    if has_spinner(output):
        return "processing"
    if has_status_word(output):
        return "searching"
    return "idle"


class GeminiBridge:
    """Tool operations over the Gemini CLI, one request at a time."""

    def __init__(
        self,
        config: Optional[Config] = None,
        tmux: Optional[TmuxTransport] = None,
        oneshot: Optional[OneShotTransport] = None,
    ):
        self.start_time = datetime.now()
        self.config = config or Config.load()
        gemini_bin = find_gemini()
        self.tmux = tmux or TmuxTransport(gemini_bin)
        self.oneshot = oneshot or OneShotTransport(gemini_bin, idle_timeout=self.config.idle_timeout)
        self.settle_delay = SETTLE_DELAY
        self.poll_interval = POLL_INTERVAL
        self.clear_delay = CLEAR_DELAY
        # The MCP server runs calls concurrently; the CLI can only take one
        self._lock = asyncio.Lock()

    @property
    def oneshot_mode(self) -> bool:
        return self.config.mode == MODE_ONESHOT

    def _refresh_binary(self):
        # Lazy retry: gemini may have been installed after startup
        for transport in (self.tmux, self.oneshot):
            if not transport.gemini_bin:
                transport.gemini_bin = find_gemini()

    async def send_message(
        self,
        message: str,
        working_dir: Optional[str] = None,
        timeout: Optional[float] = None,
        permission: Optional[str] = None,
        debug: bool = False,
    ) -> str:
        async with self._lock:
            ctx = RequestContext(debug=debug)
            work_dir = working_dir or self.config.working_dir or os.getcwd()
            processed = expand_file_references(message, work_dir)
            if processed != message:
                logger.info("Message preprocessed with file paths")
            budget = timeout or select_timeout(processed, self.config)
            policy = PermissionPolicy(permission) if permission else self.config.permission
            self._refresh_binary()

            if self.oneshot_mode:
                reply, status = await self._send_oneshot(processed, work_dir, timeout, ctx)
                text = reply or NO_ONESHOT_RESPONSE
            else:
                reply, status = await self._send_tmux(processed, work_dir, budget, policy, ctx)
                text = reply or NO_RESPONSE

            ctx.track_timing("total_execution")
            logger.info("Request finished in %.1fs: %s, %d chars", ctx.elapsed(), status.value, len(reply))
            if not reply:
                logger.warning("Empty response detected")

            if status is CompletionStatus.TIMED_OUT:
                text = f"[Timed out after {budget:g}s, response may be partial]\n\n{text}"
            elif status is CompletionStatus.PERMISSION_PROMPT:
                text = f"[Gemini is still waiting at a permission prompt]\n\n{text}"

            if debug:
                return f"Response:\n{text}\n\n{ctx.render(processed, reply)}"
            return text

    async def _send_oneshot(
        self,
        message: str,
        work_dir: str,
        timeout: Optional[float],
        ctx: RequestContext,
    ) -> tuple[str, CompletionStatus]:
        # Only an explicit timeout caps a one-shot call; otherwise the idle window does
        if not timeout:
            return await self.oneshot.send(message, work_dir, ctx), CompletionStatus.COMPLETE
        try:
            reply = await asyncio.wait_for(self.oneshot.send(message, work_dir, ctx), timeout)
        except asyncio.TimeoutError:
            logger.warning("One-shot call exceeded %ss, process killed", timeout)
            return "", CompletionStatus.TIMED_OUT
        return reply, CompletionStatus.COMPLETE

    async def _send_tmux(
        self,
        message: str,
        work_dir: str,
        budget: float,
        policy: PermissionPolicy,
        ctx: RequestContext,
    ) -> tuple[str, CompletionStatus]:
        existed = await self.tmux.has_session(ctx=ctx)
        if not existed:
            logger.info("Creating new session...")
            await self.tmux.create(work_dir, ctx=ctx)
        ctx.session_info.update({
            "Session existed": existed,
            "Working directory": work_dir,
            "Timeout used": f"{budget:g}s",
        })

        logger.info("Sending message: %s", message)
        await self.tmux.send_text(message, ctx=ctx)
        await asyncio.sleep(self.settle_delay)

        async def capture() -> str:
            return await self.tmux.capture(ctx=ctx)

        result = await poll_for_reply(capture, budget, interval=self.poll_interval, ctx=ctx)
        rounds = 0
        while result.status is CompletionStatus.PERMISSION_PROMPT and rounds < MAX_PERMISSION_ROUNDS:
            rounds += 1
            await answer_permission(self.tmux, policy, ctx=ctx)
            await asyncio.sleep(self.settle_delay)
            result = await poll_for_reply(capture, budget, interval=self.poll_interval, ctx=ctx)
        if rounds:
            ctx.session_info["Permission prompts answered"] = f"{rounds} ({policy.value})"

        reply = extract_response(result.snapshot, message, ctx)
        logger.info("Raw response length: %d, extracted: %d", len(result.snapshot), len(reply))
        return reply, result.status

    async def session_status(self, lines: int = 20, full_output: bool = False, debug: bool = False) -> str:
        if self.oneshot_mode:
            return "One-shot mode: no persistent Gemini session (each gemini_send runs a fresh process)"

        async with self._lock:
            info = await self.tmux.info()
            if not info.active:
                return "No active Gemini session"
            output = await self.tmux.capture()

        state = activity_state(output)
        response = "Session Status: ACTIVE\n"
        if debug or state != "idle":
            response += "\nSession Details:\n"
            response += f"- State: {state}\n"
            response += f"- Messages: {count_prompts(output)}\n"
            response += f"- Created: {info.created or 'unknown'}\n"
            response += f"- Pane Size: {info.pane_size}\n"
            response += f"- Attached: {'Yes' if info.attached else 'No'}\n"

        if full_output:
            header, shown = "Full output", output
        else:
            lines = max(lines, 0)
            tail = output.splitlines()[-lines:] if lines else []
            header, shown = f"Last {lines} lines of output", "\n".join(tail)
        response += f"\n{header}:\n{'─' * 50}\n{shown}"
        return response

    async def clear_conversation(self, debug: bool = False) -> str:
        if self.oneshot_mode:
            return "One-shot mode keeps no conversation to clear"

        async with self._lock:
            start = datetime.now()
            if not await self.tmux.has_session():
                return "No active session to clear"

            before = count_prompts(await self.tmux.capture())
            await self.tmux.send_text(CLEAR_COMMAND)
            await asyncio.sleep(self.clear_delay)
            after_output = await self.tmux.capture()

        lines = [
            "Conversation cleared",
            f"- Messages before: {before}",
            f"- Messages after: {count_prompts(after_output)}",
        ]
        if debug:
            elapsed = (datetime.now() - start).total_seconds()
            lines.append(f"- Execution time: {elapsed:.2f}s")
            lines.append(f"- State after: {activity_state(after_output)}")
        return "\n".join(lines)

    async def close_session(self) -> str:
        if self.oneshot_mode:
            return "One-shot mode: no session to close"

        async with self._lock:
            if not await self.tmux.has_session():
                return "No active session to close"
            await self.tmux.kill()
        return "Gemini session closed"

    async def cleanup_stale_session(self):
        """Kill a session left over from a previous server run."""
        if await self.tmux.has_session():
            logger.info("Found existing session, cleaning up...")
            await self.tmux.kill()
            logger.info("Previous session cleaned up")
        else:
            logger.info("No previous session found")

    async def probe(self) -> str:
        """Send a short test message through a one-shot process."""
        self._refresh_binary()
        async with self._lock:
            try:
                response = await self.oneshot.send("Hello")
            except Exception as e:
                return f"Gemini CLI is not responding: {e}"
        return f"Gemini CLI is working. Test response: {response[:100]}..."

    def health_check(self) -> dict:
        """Return server health status."""
        self._refresh_binary()
        uptime_seconds = int((datetime.now() - self.start_time).total_seconds())
        gemini_bin = self.oneshot.gemini_bin or self.tmux.gemini_bin
        tmux_bin = find_tmux()
        return {
            "status": "ok" if gemini_bin else "gemini not found",
            "mode": self.config.mode,
            "gemini": str(gemini_bin) if gemini_bin else "not found",
            "tmux": str(tmux_bin) if tmux_bin else "not found",
            "uptime": uptime_seconds,
        }


# MCP Server setup
bridge = GeminiBridge()
server = Server("gemini-bridge")


@server.list_tools()
async def list_tools():
    return [
        Tool(
            name="gemini_send",
            description="Send a message to Gemini CLI and receive the response. "
                        "Creates the tmux session on first use, waits for the complete reply "
                        "and answers permission prompts (e.g. web searches) automatically. "
                        "Supports @filename references, expanded to absolute paths.",
            inputSchema={
                "type": "object",
                "properties": {
                    "message": {
                        "type": "string",
                        "description": "The message to send to Gemini. Supports @filename references"
                    },
                    "working_directory": {
                        "type": "string",
                        "description": "Working directory for the session and @filename resolution"
                    },
                    "timeout": {
                        "type": "number",
                        "description": "Response timeout in seconds (default: 30 for search queries, 10 otherwise). "
                                       "In one-shot mode only an explicit value applies; "
                                       "without it the call ends after 60s of silence"
                    },
                    "auto_permission": {
                        "type": "string",
                        "enum": ["once", "always", "no"],
                        "description": "How to answer permission requests (default: once)"
                    },
                    "debug": {
                        "type": "boolean",
                        "description": "Append executed commands, timings and raw output to the result"
                    }
                },
                "required": ["message"]
            }
        ),
        Tool(
            name="gemini_session_status",
            description="Check whether the Gemini session is active: state (idle, processing, searching, "
                        "waiting_permission), message count, pane size and recent output",
            inputSchema={
                "type": "object",
                "properties": {
                    "lines": {"type": "integer", "description": "Number of recent output lines to show (default: 20)"},
                    "full_output": {"type": "boolean", "description": "Show the full pane instead of recent lines"},
                    "debug": {"type": "boolean", "description": "Always include session details"}
                }
            }
        ),
        Tool(
            name="gemini_clear",
            description="Clear the Gemini conversation history (sends /clear) while keeping the session running",
            inputSchema={
                "type": "object",
                "properties": {
                    "debug": {"type": "boolean", "description": "Include timing and state after clearing"}
                }
            }
        ),
        Tool(
            name="gemini_close",
            description="Close the Gemini tmux session. A new one is created on the next gemini_send",
            inputSchema={"type": "object", "properties": {}}
        ),
        Tool(
            name="gemini_health",
            description="Health check: transport mode, Gemini CLI and tmux availability, uptime",
            inputSchema={
                "type": "object",
                "properties": {
                    "probe": {
                        "type": "boolean",
                        "description": "Also send a test message through a one-shot Gemini process"
                    }
                }
            }
        ),
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict):
    try:
        if name == "gemini_send":
            timeout = arguments.get("timeout")
            result = await bridge.send_message(
                message=arguments["message"],
                working_dir=arguments.get("working_directory"),
                timeout=float(timeout) if timeout else None,
                permission=arguments.get("auto_permission"),
                debug=arguments.get("debug", False)
            )
        elif name == "gemini_session_status":
            result = await bridge.session_status(
                lines=arguments.get("lines", 20),
                full_output=arguments.get("full_output", False),
                debug=arguments.get("debug", False)
            )
        elif name == "gemini_clear":
            result = await bridge.clear_conversation(debug=arguments.get("debug", False))
        elif name == "gemini_close":
            result = await bridge.close_session()
        elif name == "gemini_health":
            health = bridge.health_check()
            result = (
                f"Status: {health['status']}\nMode: {health['mode']}\nGemini: {health['gemini']}\n"
                f"tmux: {health['tmux']}\nUptime: {health['uptime']}s"
            )
            if arguments.get("probe"):
                result += "\n\n" + await bridge.probe()
        else:
            result = f"Unknown tool: {name}"

        return [TextContent(type="text", text=result)]

    except Exception as e:
        logger.error("Tool %s failed: %s", name, e)
        suggestion = ""
        if isinstance(e, TransportError) or "tmux" in str(e):
            suggestion = "\n\nSuggestion: Make sure tmux is installed (sudo apt install tmux)"
        elif "session" in str(e):
            suggestion = "\n\nSuggestion: Try closing the session with gemini_close and retry"
        return [TextContent(type="text", text=f"Error: {e}{suggestion}")]


def main():
    logging.basicConfig(
        level=getattr(logging, bridge.config.log_level, logging.INFO),
        format="[Gemini MCP] %(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    async def run():
        if not bridge.oneshot_mode:
            await bridge.cleanup_stale_session()
        init_options = InitializationOptions(
            server_name="gemini-bridge",
            server_version=__version__,
            capabilities=ServerCapabilities(tools=ToolsCapability())
        )
        async with stdio_server() as (read_stream, write_stream):
            logger.info("Gemini bridge v%s (%s mode) running on stdio", __version__, bridge.config.mode)
            await server.run(read_stream, write_stream, init_options)

    asyncio.run(run())


if __name__ == "__main__":
    main()
