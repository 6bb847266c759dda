"""Shared test fixtures: a throwaway queue tree per test."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import pytest

from agentboard.paths import QueuePaths


class FakeQueue:
    """Writes queue files the way the external worker lays them out."""

    def __init__(self, root: Path) -> None:
        self.paths = QueuePaths(queue_dir=root / "queue", log_file=root / "logs" / "agentd.log")

    def write(self, path: Path, text: str, mtime: float | None = None) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text)
        if mtime is not None:
            os.utime(path, (mtime, mtime))
        return path

    def _descriptor(self, task_id: str, fields: dict[str, Any]) -> str:
        return json.dumps({"id": task_id, **fields})

    def enqueue(self, task_id: str, **fields: Any) -> Path:
        """Submit a task: inbox descriptor plus its run directory."""
        text = self._descriptor(task_id, fields)
        self.write(self.paths.run_dir(task_id) / "task.json", text)
        return self.write(self.paths.status_dir("queued") / f"{task_id}.json", text)

    def start(self, task_id: str, status_line: str | None = None) -> Path:
        inbox = self.paths.status_dir("queued") / f"{task_id}.json"
        text = inbox.read_text()
        inbox.unlink()
        if status_line is not None:
            self.write(self.paths.run_dir(task_id) / "status.txt", f"starting\n{status_line}\n")
        return self.write(self.paths.status_dir("working") / f"{task_id}.json", text)

    def finish(
        self,
        task_id: str,
        *,
        failed: bool = False,
        output: str | None = None,
        mtime: float | None = None,
    ) -> Path:
        for status in ("queued", "working"):
            (self.paths.status_dir(status) / f"{task_id}.json").unlink(missing_ok=True)
        if output is not None:
            self.write(self.paths.run_dir(task_id) / "output.txt", output)
        target = self.paths.status_dir("failed" if failed else "done") / f"{task_id}.md"
        return self.write(target, f"# {task_id}\n", mtime=mtime)

    def set_aliases(self, session: str, aliases: dict[str, str]) -> Path:
        lines = "".join(f"{alias}\t{chain_id}\n" for alias, chain_id in aliases.items())
        return self.write(self.paths.alias_file(session), lines)

    def set_last_output(self, value: str) -> Path:
        return self.write(self.paths.last_output_file, f"{value}\n")


@pytest.fixture()
def queue(tmp_path: Path) -> FakeQueue:
    return FakeQueue(tmp_path)


@pytest.fixture()
def paths(queue: FakeQueue) -> QueuePaths:
    return queue.paths
