"""Bounded raw output buffers kept per managed process."""

from __future__ import annotations

import re

ANSI_PATTERN = (
    r"\x1b\[[0-?]*[ -/]*[@-~]"  # CSI
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"  # OSC, BEL or ST terminated
    r"|\x1b[@-Z\\-_]"  # two-char escapes
)


def append_to_buffer(buffer: str, data: str, max_chars: int = 100_000) -> str:
    """Append ``data``, keeping only the newest ``max_chars`` characters."""
    combined = buffer + data
    if len(combined) > max_chars:
        return combined[-max_chars:]
    return combined


def strip_ansi(text: str) -> str:
    """Strip terminal control sequences (CSI, OSC, and short escapes)."""
    return re.sub(ANSI_PATTERN, "", text)


def strip_shell_integration(text: str) -> str:
    """Remove shell-integration markers (OSC 133/633/7) and leftover BELs.

    Login shells with prompt integration emit these around every command;
    one-shot command output should never carry them.
    """
    text = re.sub(r"\x1b\](?:133|633|7|1337);[^\x07\x1b]*(?:\x07|\x1b\\)", "", text)
    return text.replace("\x07", "")


def sanitize_binary_output(text: str) -> str:
    """Remove binary garbage from output.

    Keeps printable chars, tabs, newlines, and carriage returns.
    """
    cleaned = []
    for ch in text:
        cp = ord(ch)
        if ch in ("\t", "\n", "\r"):
            cleaned.append(ch)
        elif cp >= 32 and cp not in range(0x7F, 0xA0):
            cleaned.append(ch)
    return "".join(cleaned)
