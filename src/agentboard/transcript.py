"""Recent conversation lines for the dashboard REPL pane."""

from __future__ import annotations

import re
from pathlib import Path

from agentboard.paths import QueuePaths
from agentboard.scanner import read_tail

LOG_TAIL_MAX_BYTES = 64 * 1024
REPL_MAX_ENTRIES = 80

_HISTORY_RE = re.compile(r"User:\n(.*?)\n\nAssistant:\n(.*?)(?:\n\n|$)", re.DOTALL)


def parse_session_history(content: str) -> list[dict[str, str]]:
    """Split a session transcript into alternating user/assistant entries."""
    entries: list[dict[str, str]] = []
    for match in _HISTORY_RE.finditer(content):
        user = match.group(1).strip()
        assistant = match.group(2).strip()
        if user:
            entries.append({"role": "user", "text": user})
        if assistant:
            entries.append({"role": "assistant", "text": assistant})
    return entries


def tail_log_lines(path: Path, max_lines: int = REPL_MAX_ENTRIES) -> list[dict[str, str]]:
    text, truncated = read_tail(path, LOG_TAIL_MAX_BYTES)
    lines = [line for line in text.splitlines() if line]
    if truncated and lines:
        # First line is likely cut mid-way.
        lines = lines[1:]
    return [{"role": "assistant", "text": line} for line in lines[-max_lines:]]


def load_repl_lines(
    paths: QueuePaths, session: str, limit: int = REPL_MAX_ENTRIES
) -> list[dict[str, str]]:
    """Session transcript when one exists, otherwise the worker log tail."""
    session_file = paths.session_file(session)
    try:
        content = session_file.read_text(encoding="utf-8", errors="replace")
    except (OSError, ValueError):
        return tail_log_lines(paths.log_file, limit)
    return parse_session_history(content)[-limit:]
