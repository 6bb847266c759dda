"""Canonical filesystem locations for the watched job queue."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path

WORKSPACE = Path(os.environ.get("WORKSPACE", "/workspace"))

_env_queue = os.environ.get("QUEUE_DIR")
DEFAULT_QUEUE_DIR = Path(_env_queue).expanduser() if _env_queue else WORKSPACE / "queue"

_env_log = os.environ.get("LOG_FILE")
DEFAULT_LOG_FILE = Path(_env_log).expanduser() if _env_log else WORKSPACE / "logs" / "agentd.log"

DEFAULT_SESSION = os.environ.get("UI_SESSION", "webui")

# Status -> directory name under the queue root.
STATUS_DIRS = {
    "queued": "inbox",
    "working": "working",
    "done": "outbox",
    "failed": "failed",
}
STATUSES = tuple(STATUS_DIRS)

_SESSION_KEY_RE = re.compile(r"[^A-Za-z0-9._-]")


def session_key(session: str | None) -> str:
    """Return the filesystem-safe form of a session name."""
    return _SESSION_KEY_RE.sub("_", session or "default")


@dataclass(frozen=True)
class QueuePaths:
    """Every file location derived from a queue root and a log file."""

    queue_dir: Path
    log_file: Path

    @classmethod
    def from_env(cls) -> QueuePaths:
        return cls(queue_dir=DEFAULT_QUEUE_DIR, log_file=DEFAULT_LOG_FILE)

    def status_dir(self, status: str) -> Path:
        return self.queue_dir / STATUS_DIRS[status]

    @property
    def runs_dir(self) -> Path:
        return self.queue_dir / "runs"

    @property
    def chains_dir(self) -> Path:
        return self.queue_dir / "chains"

    def run_dir(self, run_id: str) -> Path:
        return self.runs_dir / run_id

    def alias_file(self, session: str | None) -> Path:
        return self.chains_dir / f"aliases.{session_key(session)}.tsv"

    @property
    def last_output_file(self) -> Path:
        return self.chains_dir / "last_output"

    def session_file(self, session: str) -> Path:
        return self.queue_dir / "sessions" / f"{session}.md"
