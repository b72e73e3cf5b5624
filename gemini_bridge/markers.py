"""
Marker table for reading the Gemini CLI terminal.

Every pattern the completion detector and the response extractor look for
lives here, grouped by category, so both sides agree on what a spinner, a
reply, a prompt or a box border looks like.
"""

import re

# Braille spinner frames drawn by the Gemini CLI while it works
SPINNER_GLYPHS = "⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏"

# Status words shown next to (or instead of) the spinner
STATUS_WORDS = ("Translating", "Searching", "Processing", "Thinking")

# Glyph the Gemini CLI prefixes its own output with
REPLY_GLYPH = "✦"

PROMPT_TOKEN = "gemini>"
PERMISSION_MARKER = "Do you want to proceed?"
SHELL_MODE_MARKER = "shell mode enabled"
CLEAR_COMMAND = "/clear"

MARKERS = {
    "spinner": re.compile(f"[{SPINNER_GLYPHS}]"),
    # Anchored at line start so reply prose mentioning "processing" is not a status line
    "status": re.compile(
        rf"^\s*(?:[{SPINNER_GLYPHS}]\s*)?(?:{'|'.join(STATUS_WORDS)})\b",
        re.IGNORECASE | re.MULTILINE,
    ),
    "reply_start": re.compile(rf"^\s*{REPLY_GLYPH}", re.MULTILINE),
    "box_open": re.compile(r"^\s*╭"),
    "box_close": re.compile(r"^\s*╰"),
    "code_fence": re.compile(r"^\s*```"),
    "prompt": re.compile(rf"{PROMPT_TOKEN}|Type your message or @path/to/file"),
    # Chrome lines that carry no reply text
    "chrome": re.compile(r"^\s*(?:Using \d+ MCP|\(esc to cancel|accepting edits|YOLO mode)", re.IGNORECASE),
}


def has_spinner(text: str) -> bool:
    return MARKERS["spinner"].search(text) is not None


def has_status_word(text: str) -> bool:
    return MARKERS["status"].search(text) is not None


def has_processing_indicator(text: str) -> bool:
    """True if *text* shows a spinner glyph or a status line."""
    return has_spinner(text) or has_status_word(text)


def has_reply_start(text: str) -> bool:
    return MARKERS["reply_start"].search(text) is not None


def has_permission_prompt(text: str) -> bool:
    return PERMISSION_MARKER in text


def is_prompt_line(line: str) -> bool:
    return MARKERS["prompt"].search(line) is not None


def is_region_end(line: str) -> bool:
    """A prompt line or the shell-mode banner ends a reply."""
    return is_prompt_line(line) or SHELL_MODE_MARKER in line


def is_noise_line(line: str) -> bool:
    """Blank, spinner or status-only line that precedes the real reply."""
    return not line.strip() or has_spinner(line) or has_status_word(line)


def is_chrome_line(line: str) -> bool:
    return MARKERS["chrome"].search(line) is not None


def count_prompts(text: str) -> int:
    """Approximate number of exchanges: one prompt token per turn."""
    return text.count(PROMPT_TOKEN)
