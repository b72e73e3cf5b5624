"""
Transports to the Gemini CLI.

TmuxTransport keeps one interactive ``gemini`` process alive inside a named
tmux session and talks to it with send-keys / capture-pane. OneShotTransport
spawns ``gemini`` per request, pipes the message in and collects stdout until
the process exits or goes quiet.
"""

import asyncio
import enum
import logging
import os
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from gemini_bridge.debug import RequestContext

logger = logging.getLogger(__name__)

SESSION_NAME = "gemini-ai"
STARTUP_DELAY = 3.0      # seconds for the CLI to initialise in a new session
KEY_DELAY = 0.1          # seconds for tmux to deliver keystrokes
IDLE_TIMEOUT = 60.0      # one-shot: kill after this long without stdout
READ_CHUNK = 4096

CREDENTIALS_BANNER = "Loaded cached credentials."


class GeminiBridgeError(Exception):
    """Base class for bridge failures surfaced to the caller."""


class GeminiNotFoundError(GeminiBridgeError):
    pass


class GeminiProcessError(GeminiBridgeError):
    pass


class TransportError(GeminiBridgeError):
    """A tmux command failed."""


def find_gemini() -> Optional[Path]:
    """Find gemini binary."""
    override = os.environ.get("GEMINI_BIN")
    if override:
        p = Path(override).expanduser()
        return p if p.exists() and os.access(p, os.X_OK) else None
    # Check common locations
    paths = [
        Path.home() / ".npm-global" / "bin" / "gemini",
        Path("/usr/local/bin/gemini"),
        Path("/usr/bin/gemini"),
    ]
    for p in paths:
        if p.exists() and os.access(p, os.X_OK):
            return p
    # Check PATH
    which = shutil.which("gemini")
    if which:
        return Path(which)
    return None


def find_tmux() -> Optional[Path]:
    which = shutil.which("tmux")
    return Path(which) if which else None


class PermissionPolicy(str, enum.Enum):
    ONCE = "once"
    ALWAYS = "always"
    NO = "no"


# tmux key names sent for each answer to "Do you want to proceed?"
PERMISSION_KEYS = {
    PermissionPolicy.ONCE: ["Enter"],
    PermissionPolicy.ALWAYS: ["Down", "Enter"],
    PermissionPolicy.NO: ["Escape"],
}


@dataclass
class SessionInfo:
    name: str
    active: bool = False
    created: Optional[str] = None
    attached: bool = False
    pane_size: str = "unknown"


class TmuxTransport:
    """One interactive Gemini CLI inside the tmux session SESSION_NAME."""

    def __init__(
        self,
        gemini_bin: Optional[Path] = None,
        session_name: str = SESSION_NAME,
        startup_delay: float = STARTUP_DELAY,
        key_delay: float = KEY_DELAY,
    ):
        self.gemini_bin = gemini_bin
        self.session_name = session_name
        self.startup_delay = startup_delay
        self.key_delay = key_delay

    async def _run_tmux(self, *args: str, ctx: Optional[RequestContext] = None) -> tuple[str, int]:
        """Run a tmux command and return (output, returncode)."""
        if ctx:
            ctx.track_command("tmux " + " ".join(args))
        logger.debug("tmux %s", " ".join(args))
        try:
            proc = await asyncio.create_subprocess_exec(
                "tmux", *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await proc.communicate()
        except FileNotFoundError:
            return "tmux not found in PATH", 127
        except OSError as e:
            return f"Error: {e}", 1
        out = stdout.decode(errors="replace")
        if proc.returncode:
            err = stderr.decode(errors="replace").strip()
            return err or out, proc.returncode
        return out, 0

    async def _check(self, *args: str, ctx: Optional[RequestContext] = None) -> str:
        output, code = await self._run_tmux(*args, ctx=ctx)
        if code != 0:
            raise TransportError(f"tmux {args[0]} failed ({code}): {output.strip()}")
        return output

    async def has_session(self, ctx: Optional[RequestContext] = None) -> bool:
        _, code = await self._run_tmux("has-session", "-t", self.session_name, ctx=ctx)
        return code == 0

    async def create(self, working_dir: Optional[str] = None, ctx: Optional[RequestContext] = None):
        """Start gemini in a detached session and wait for it to settle."""
        if not self.gemini_bin:
            raise GeminiNotFoundError("Gemini CLI not found. Please ensure gemini is installed and in PATH")
        cwd = working_dir or os.getcwd()
        await self._check(
            "new-session", "-d", "-s", self.session_name, "-c", cwd, str(self.gemini_bin),
            ctx=ctx,
        )
        logger.info("Created session %s in %s", self.session_name, cwd)
        await asyncio.sleep(self.startup_delay)
        # Clear any startup messages
        await self.send_keys("Enter", ctx=ctx)
        await asyncio.sleep(min(0.5, self.startup_delay))

    async def send_text(self, text: str, ctx: Optional[RequestContext] = None):
        """Type *text* literally, then press Enter."""
        await self._check("send-keys", "-t", self.session_name, "-l", text, ctx=ctx)
        await self._check("send-keys", "-t", self.session_name, "Enter", ctx=ctx)
        await asyncio.sleep(self.key_delay)

    async def send_keys(self, *keys: str, ctx: Optional[RequestContext] = None):
        for key in keys:
            await self._check("send-keys", "-t", self.session_name, key, ctx=ctx)

    async def capture(self, ctx: Optional[RequestContext] = None) -> str:
        """Visible pane text."""
        return await self._check("capture-pane", "-t", self.session_name, "-p", ctx=ctx)

    async def info(self, ctx: Optional[RequestContext] = None) -> SessionInfo:
        info = SessionInfo(name=self.session_name)
        if not await self.has_session(ctx=ctx):
            return info
        info.active = True

        output, code = await self._run_tmux(
            "list-sessions", "-F", "#{session_name}:#{session_created}:#{session_attached}", ctx=ctx,
        )
        if code == 0:
            for line in output.splitlines():
                name, _, rest = line.partition(":")
                if name != self.session_name:
                    continue
                created, _, attached = rest.partition(":")
                if created.isdigit():
                    info.created = datetime.fromtimestamp(int(created)).isoformat()
                info.attached = attached.strip() == "1"

        output, code = await self._run_tmux(
            "list-panes", "-t", self.session_name, "-F", "#{pane_width}x#{pane_height}", ctx=ctx,
        )
        if code == 0 and output.strip():
            info.pane_size = output.strip().splitlines()[0]
        return info

    async def kill(self, ctx: Optional[RequestContext] = None):
        await self._check("kill-session", "-t", self.session_name, ctx=ctx)
        logger.info("Killed session %s", self.session_name)


async def answer_permission(
    transport: TmuxTransport,
    policy: PermissionPolicy = PermissionPolicy.ONCE,
    ctx: Optional[RequestContext] = None,
):
    """Answer a pending permission prompt according to *policy*."""
    policy = PermissionPolicy(policy)
    logger.info("Answering permission prompt: %s", policy.value)
    await transport.send_keys(*PERMISSION_KEYS[policy], ctx=ctx)


def clean_oneshot_output(output: str) -> str:
    """Drop the credentials banner and surrounding blank lines."""
    lines = [line for line in output.splitlines() if CREDENTIALS_BANNER not in line]
    return "\n".join(lines).strip()


async def _feed_stdin(proc: asyncio.subprocess.Process, data: bytes) -> Optional[str]:
    """Write *data* and close stdin. Returns the error text if the pipe broke."""
    try:
        proc.stdin.write(data)
        await proc.stdin.drain()
    except (BrokenPipeError, ConnectionResetError) as e:
        return str(e) or type(e).__name__
    finally:
        proc.stdin.close()
    return None


class OneShotTransport:
    """Run gemini once per message over stdin/stdout."""

    def __init__(self, gemini_bin: Optional[Path] = None, idle_timeout: float = IDLE_TIMEOUT):
        self.gemini_bin = gemini_bin
        self.idle_timeout = idle_timeout

    async def send(
        self,
        message: str,
        working_dir: Optional[str] = None,
        ctx: Optional[RequestContext] = None,
    ) -> str:
        """Send *message* and return the cleaned output.

        If stdout stays silent for ``idle_timeout`` seconds the process is
        killed and whatever arrived so far is returned.
        """
        if not self.gemini_bin:
            raise GeminiNotFoundError("Gemini CLI not found. Please ensure gemini is installed and in PATH")

        cwd = working_dir or os.getcwd()
        if ctx:
            ctx.track_command(f"{self.gemini_bin} (cwd={cwd})")
        logger.info("Sending one-shot message: %s...", message[:50])

        try:
            proc = await asyncio.create_subprocess_exec(
                str(self.gemini_bin),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
            )
        except FileNotFoundError:
            raise GeminiNotFoundError("Gemini CLI not found. Please ensure gemini is installed and in PATH")
        except OSError as e:
            raise GeminiProcessError(f"Failed to start Gemini process: {e}") from e

        # stdin is fed from a task so a child that never reads it still hits the idle window
        writer = asyncio.create_task(_feed_stdin(proc, (message + "\n").encode()))
        stderr_task = asyncio.create_task(proc.stderr.read())
        chunks: list[bytes] = []
        idle_killed = False
        try:
            while True:
                try:
                    chunk = await asyncio.wait_for(proc.stdout.read(READ_CHUNK), timeout=self.idle_timeout)
                except asyncio.TimeoutError:
                    logger.warning("No data received for %.0f seconds, assuming complete", self.idle_timeout)
                    proc.kill()
                    idle_killed = True
                    break
                if not chunk:
                    break
                chunks.append(chunk)

            await proc.wait()
            try:
                # A killed process may leave grandchildren holding stderr open
                err_bytes = await asyncio.wait_for(stderr_task, timeout=1.0 if idle_killed else None)
            except asyncio.TimeoutError:
                err_bytes = b""
            try:
                write_error = await asyncio.wait_for(writer, timeout=1.0)
            except asyncio.TimeoutError:
                write_error = None
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            for task in (writer, stderr_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(writer, stderr_task, return_exceptions=True)

        error = err_bytes.decode(errors="replace").strip()
        output = b"".join(chunks).decode(errors="replace")
        logger.info("Gemini exited with code %s, %d chars of output", proc.returncode, len(output))
        if ctx:
            ctx.track_output(output)
            ctx.session_info["Exit code"] = proc.returncode
            ctx.session_info["Idle timeout hit"] = idle_killed

        if not idle_killed and not output:
            if error:
                raise GeminiProcessError(f"Gemini failed to respond: {error}")
            if write_error:
                raise GeminiProcessError(f"Failed to write to Gemini process: {write_error}")
            if proc.returncode:
                raise GeminiProcessError(f"Gemini process failed (code {proc.returncode}): No output")

        return clean_oneshot_output(output)
