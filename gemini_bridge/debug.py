import time
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class RequestContext:
    """Debug tracking for a single tool call.

    A fresh context is created per request and handed to the transport,
    detector and extractor, so nothing leaks from one request to the next.
    """
    debug: bool = False
    commands: list[str] = field(default_factory=list)
    timings: list[tuple[str, float]] = field(default_factory=list)
    raw_output: str = ""
    session_info: dict = field(default_factory=dict)
    started: float = field(default_factory=time.monotonic)

    def track_command(self, command: str):
        if self.debug:
            self.commands.append(command)

    def track_output(self, output: str):
        if self.debug:
            self.raw_output = output

    def track_timing(self, step: str, since: Optional[float] = None):
        start = self.started if since is None else since
        self.timings.append((step, time.monotonic() - start))

    def elapsed(self) -> float:
        return time.monotonic() - self.started

    def render(self, message: str, reply: str) -> str:
        """Debug block appended to a gemini_send result."""
        lines = [
            "--- Debug Information ---",
            f"Total execution time: {self.elapsed():.2f}s",
        ]
        for key, value in self.session_info.items():
            lines.append(f"{key}: {value}")
        lines.append(f'Message sent: "{message}"')
        if self.timings:
            lines.append("\nTimings:")
            lines.extend(f"  {step}: {duration:.2f}s" for step, duration in self.timings)
        lines.append(f"\nCommands executed ({len(self.commands)}):")
        lines.extend(f"  {i}. {cmd}" for i, cmd in enumerate(self.commands, 1))
        lines.append("\nRaw output sample (last 500 chars):")
        lines.append(self.raw_output[-500:])
        lines.append(f"\nExtracted response: {len(reply)} chars")
        return "\n".join(lines)
