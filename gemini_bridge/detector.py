"""
Completion detection for the tmux transport.

The Gemini CLI gives no signal when a reply is finished, so the pane is
captured once per second and the detector decides from the sequence of
snapshots whether the reply is done, still streaming, blocked on a
permission prompt, or out of time.
"""

import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from gemini_bridge.debug import RequestContext
from gemini_bridge.markers import (
    has_permission_prompt,
    has_processing_indicator,
    has_reply_start,
)
from gemini_bridge.transport import TransportError

logger = logging.getLogger(__name__)

STABLE_THRESHOLD = 3    # consecutive identical captures
POLL_INTERVAL = 1.0     # seconds between captures


class CompletionStatus(str, enum.Enum):
    COMPLETE = "complete"
    PENDING = "pending"
    TIMED_OUT = "timed_out"
    PERMISSION_PROMPT = "permission_prompt"


@dataclass
class Detection:
    status: CompletionStatus
    snapshot: str
    stable_count: int = 0
    elapsed: float = 0.0


class CompletionDetector:
    """Accumulates completion state across the snapshots of one polling phase.

    A reply counts as complete only after the CLI was seen working (spinner or
    status word), the pane then stayed identical for STABLE_THRESHOLD polls,
    and the latest capture shows no live indicator. A pane that never changed
    because the CLI never reacted is not a finished reply.
    """

    def __init__(self, stable_threshold: int = STABLE_THRESHOLD):
        self.stable_threshold = stable_threshold
        self.previous: Optional[str] = None
        self.stable_count = 0
        self.processing_seen = False
        self.reply_seen = False
        self.completed = False

    def check(self, snapshot: str, elapsed: float, budget: float) -> Detection:
        # The CLI is blocked on input, nothing more will arrive until answered
        if has_permission_prompt(snapshot):
            return self._result(CompletionStatus.PERMISSION_PROMPT, snapshot, elapsed)

        live = has_processing_indicator(snapshot)
        if live:
            self.processing_seen = True
        if has_reply_start(snapshot):
            self.reply_seen = True

        if snapshot == self.previous:
            self.stable_count += 1
        else:
            self.stable_count = 0
            self.previous = snapshot

        if self.completed:
            return self._result(CompletionStatus.COMPLETE, snapshot, elapsed)

        if self.stable_count >= self.stable_threshold and self.processing_seen and not live:
            self.completed = True
            return self._result(CompletionStatus.COMPLETE, snapshot, elapsed)

        if elapsed >= budget:
            return self._result(CompletionStatus.TIMED_OUT, snapshot, elapsed)

        return self._result(CompletionStatus.PENDING, snapshot, elapsed)

    def _result(self, status: CompletionStatus, snapshot: str, elapsed: float) -> Detection:
        return Detection(status=status, snapshot=snapshot, stable_count=self.stable_count, elapsed=elapsed)


async def poll_for_reply(
    capture: Callable[[], Awaitable[str]],
    budget: float,
    *,
    detector: Optional[CompletionDetector] = None,
    interval: float = POLL_INTERVAL,
    ctx: Optional[RequestContext] = None,
    clock: Callable[[], float] = time.monotonic,
) -> Detection:
    """Capture repeatedly until the detector reports anything but pending.

    A failed capture is a transient miss: it is logged and polling goes on
    until the budget runs out. On timeout the last good snapshot is returned.
    """
    detector = detector or CompletionDetector()
    start = clock()
    started_at = time.monotonic()
    last = ""

    while True:
        try:
            snapshot = await capture()
        except TransportError as e:
            elapsed = clock() - start
            logger.warning("Capture failed (%.1fs elapsed): %s", elapsed, e)
            if elapsed >= budget:
                return Detection(CompletionStatus.TIMED_OUT, last, detector.stable_count, elapsed)
            await asyncio.sleep(interval)
            continue

        last = snapshot
        if ctx:
            ctx.track_output(snapshot)
        elapsed = clock() - start
        result = detector.check(snapshot, elapsed, budget)
        logger.debug(
            "Poll %.1fs: %s (stable=%d, processing_seen=%s)",
            elapsed, result.status.value, result.stable_count, detector.processing_seen,
        )
        if result.status is not CompletionStatus.PENDING:
            if ctx:
                ctx.track_timing(f"poll_{result.status.value}", started_at)
            return result
        await asyncio.sleep(interval)
