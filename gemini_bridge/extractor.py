"""
Response extraction for the tmux transport.

A captured pane holds the echoed message, spinner lines, the reply and the
next input prompt. ``extract_response`` delimits the reply without
reformatting it: code fences, box drawing and list markers pass through
untouched.
"""

import logging
import os
import re
from typing import Optional

from gemini_bridge.debug import RequestContext
from gemini_bridge.markers import (
    MARKERS,
    has_processing_indicator,
    has_reply_start,
    is_chrome_line,
    is_noise_line,
    is_prompt_line,
    is_region_end,
)

logger = logging.getLogger(__name__)

# Messages longer than this are also matched by their leading characters,
# since the terminal may wrap them across lines
SHORT_MESSAGE_LIMIT = 20

_FILE_REF_RE = re.compile(r"@(\S+)")
# How the CLI echoes a submitted message: "> msg", "You: msg", or inside the input box
_ECHO_RE = re.compile(r"^\s*(?:│\s*)?(?:>|You:)")


def expand_file_references(message: str, working_dir: Optional[str] = None) -> str:
    """Rewrite ``@token`` to ``@/absolute/path`` when the file exists.

    Tokens that are already absolute, or that do not name an existing entry
    under *working_dir*, are left untouched.
    """
    base = working_dir or os.getcwd()

    def _expand(match: re.Match) -> str:
        token = match.group(1)
        if os.path.isabs(token):
            return match.group(0)
        candidate = os.path.abspath(os.path.join(base, token))
        if os.path.exists(candidate):
            logger.info("Expanded %s to %s", match.group(0), candidate)
            return f"@{candidate}"
        logger.warning("File not found for %s (looked in %s)", match.group(0), base)
        return match.group(0)

    return _FILE_REF_RE.sub(_expand, message)


def _is_reply_line(line: str) -> bool:
    return has_reply_start(line) or has_processing_indicator(line)


def _find_message_line(lines: list[str], message: str) -> Optional[int]:
    """Index of the last echo of *message*, never a line of Gemini's own output."""
    needle = message.strip()
    if not needle:
        return None
    candidates = [i for i in range(len(lines) - 1, -1, -1) if not _is_reply_line(lines[i])]
    for i in candidates:
        if needle in lines[i] and _ECHO_RE.match(lines[i]):
            return i
    for i in candidates:
        if needle in lines[i]:
            return i
    if len(needle) > SHORT_MESSAGE_LIMIT:
        partial = needle.splitlines()[0][:SHORT_MESSAGE_LIMIT]
        for i in candidates:
            if partial in lines[i]:
                # Skip the wrapped remainder of the echoed message
                while i + 1 < len(lines) and lines[i + 1].strip() and lines[i + 1].strip() in needle:
                    i += 1
                return i
    return None


def _find_last_indicator(lines: list[str]) -> Optional[int]:
    for i in range(len(lines) - 1, -1, -1):
        if has_processing_indicator(lines[i]) or has_reply_start(lines[i]):
            return i
    return None


def _is_status_only(line: str) -> bool:
    return is_chrome_line(line) or (bool(line.strip()) and is_noise_line(line))


def _prompt_fallback(lines: list[str]) -> Optional[list[str]]:
    """Region around the last prompt token, or None if there is no prompt."""
    prompt_idx = None
    for i in range(len(lines) - 1, -1, -1):
        if is_prompt_line(lines[i]):
            prompt_idx = i
            break
    if prompt_idx is None:
        return None

    after = [line for line in lines[prompt_idx + 1:] if not _is_status_only(line)]
    while after and not after[-1].strip():
        after.pop()
    if after:
        return after

    # Nothing after the prompt: take the block of content right above it
    end = prompt_idx
    while end > 0 and (not lines[end - 1].strip() or _is_status_only(lines[end - 1])):
        end -= 1
    start = end
    while start > 0 and lines[start - 1].strip() and not is_prompt_line(lines[start - 1]):
        start -= 1
    return lines[start:end]


def _delimit(region: list[str]) -> list[str]:
    kept: list[str] = []
    found = False
    in_fence = False
    box_start: Optional[int] = None

    for line in region:
        # Bottom border of the echoed input box is not part of the reply
        if not found and (is_noise_line(line) or MARKERS["box_close"].match(line)):
            continue
        if not in_fence and is_region_end(line):
            # The input prompt sits inside a box; drop its top border too
            if box_start is not None:
                del kept[box_start:]
            break
        found = True
        kept.append(line)
        if MARKERS["code_fence"].match(line):
            in_fence = not in_fence
        elif not in_fence:
            if MARKERS["box_open"].match(line):
                box_start = len(kept) - 1
            elif MARKERS["box_close"].match(line):
                box_start = None

    while kept and (not kept[-1].strip() or is_chrome_line(kept[-1])):
        kept.pop()
    return kept


def extract_response(transcript: str, message: str, ctx: Optional[RequestContext] = None) -> str:
    """Return only Gemini's reply from a captured pane.

    Never raises. Worst case is an empty string.
    """
    lines = transcript.splitlines()

    anchor = _find_message_line(lines, message)
    if anchor is not None:
        region = lines[anchor + 1:]
        how = f"message at line {anchor}"
    else:
        indicator = _find_last_indicator(lines)
        if indicator is not None:
            region = lines[indicator:]
            how = f"indicator at line {indicator}"
        else:
            region = _prompt_fallback(lines)
            how = "prompt fallback"
            if region is None:
                region = lines
                how = "whole transcript"

    kept = _delimit(region)
    logger.debug("Extracted %d of %d lines (%s)", len(kept), len(lines), how)
    if ctx:
        ctx.session_info["Extraction anchor"] = how
    return "\n".join(kept)
