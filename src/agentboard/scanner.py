"""Read-only scanning of the queue directory tree.

The tree is mutated concurrently by the worker process with no locking, so
every helper here checks existence independently and treats a file that
vanished or is mid-write as absent for this cycle. Nothing in this module
raises to its caller.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from agentboard.errors import MalformedRecordError, TransientReadError
from agentboard.paths import STATUS_DIRS, QueuePaths

log = logging.getLogger(__name__)

STATUS_LINE_MAX_BYTES = 4 * 1024

TaskRecord = dict[str, Any]


# ---------------------------------------------------------------------------
# Primitive reads
# ---------------------------------------------------------------------------


def safe_listdir(path: Path) -> list[str]:
    """Sorted entry names of *path*; a missing or unreadable dir is empty."""
    try:
        return sorted(os.listdir(path))
    except OSError:
        return []


def file_mtime_ms(path: Path) -> int | None:
    try:
        return int(path.stat().st_mtime * 1000)
    except (OSError, ValueError):
        return None


def _load_json(path: Path) -> dict[str, Any]:
    try:
        raw = path.read_text(encoding="utf-8")
    except (OSError, ValueError) as e:
        raise TransientReadError(f"{path}: {e}") from e
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MalformedRecordError(f"{path}: {e}") from e
    if not isinstance(data, dict):
        raise MalformedRecordError(f"{path}: expected a JSON object")
    return data


def read_json(path: Path) -> dict[str, Any] | None:
    """Parse a JSON object file, or ``None`` when it is absent or malformed."""
    try:
        return _load_json(path)
    except TransientReadError as e:
        if path.exists():
            log.debug("Skipping unreadable record: %s", e)
        return None
    except MalformedRecordError as e:
        log.debug("Skipping malformed record: %s", e)
        return None


def read_tail(path: Path, max_bytes: int) -> tuple[str, bool]:
    """Return the last *max_bytes* of *path* as text and whether it was cut.

    Never reads more than *max_bytes*, whatever the file size.
    """
    try:
        with path.open("rb") as fh:
            size = os.fstat(fh.fileno()).st_size
            if not size:
                return "", False
            read_size = min(size, max_bytes)
            fh.seek(size - read_size)
            data = fh.read(read_size)
    except (OSError, ValueError):
        return "", False
    return data.decode("utf-8", errors="replace"), size > read_size


def parse_timestamp_ms(value: object) -> int:
    """ISO-8601 timestamp to epoch milliseconds; ``0`` when unparseable.

    Naive timestamps are taken as UTC.
    """
    if not value or not isinstance(value, str):
        return 0
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return 0
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return int(dt.timestamp() * 1000)


# ---------------------------------------------------------------------------
# Queue-specific reads
# ---------------------------------------------------------------------------


def read_status_line(paths: QueuePaths, task_id: str) -> str:
    """Last non-empty line of the run's ``status.txt``, else ``""``."""
    text, _ = read_tail(paths.run_dir(task_id) / "status.txt", STATUS_LINE_MAX_BYTES)
    for line in reversed(text.splitlines()):
        if line.strip():
            return line.strip()
    return ""


def read_alias_map(paths: QueuePaths, session: str | None) -> dict[str, str]:
    """Load ``chainId -> alias`` from the session's tab-delimited alias file."""
    alias_file = paths.alias_file(session)
    try:
        lines = alias_file.read_text(encoding="utf-8").splitlines()
    except (OSError, UnicodeDecodeError):
        return {}

    chain_to_alias: dict[str, str] = {}
    for line in lines:
        if not line.strip():
            continue
        try:
            alias, chain_id = _parse_alias_line(line)
        except MalformedRecordError as e:
            log.debug("Skipping alias line in %s: %s", alias_file, e)
            continue
        chain_to_alias[chain_id] = alias
    return chain_to_alias


def _parse_alias_line(line: str) -> tuple[str, str]:
    parts = [p.strip() for p in line.split("\t") if p.strip()]
    if len(parts) < 2:
        raise MalformedRecordError(f"expected 'alias<TAB>chainId': {line!r}")
    return parts[0], parts[1]


def _descriptor_task(path: Path, status: str) -> TaskRecord | None:
    data = read_json(path)
    if data is None:
        return None
    updated_at = parse_timestamp_ms(data.get("created")) or file_mtime_ms(path)
    if updated_at is None:
        # Gone between read and stat.
        return None
    return {**data, "status": status, "updatedAt": updated_at}


def _artifact_task(paths: QueuePaths, artifact: Path, status: str) -> TaskRecord | None:
    run_id = artifact.stem
    task_path = paths.run_dir(run_id) / "task.json"
    data = read_json(task_path) or {"id": run_id}
    updated_at = (
        parse_timestamp_ms(data.get("created"))
        or file_mtime_ms(task_path)
        or file_mtime_ms(artifact)
    )
    if updated_at is None:
        return None
    return {**data, "status": status, "updatedAt": updated_at}


def _task_id(value: object) -> str:
    """Task ids name files under ``runs/``; reject ones that cannot."""
    task_id = str(value)
    if "\x00" in task_id or "/" in task_id or task_id in (".", ".."):
        raise MalformedRecordError(f"unusable task id {task_id!r}")
    return task_id


def load_tasks(paths: QueuePaths) -> list[TaskRecord]:
    """Collect every task record across the four status directories.

    ``inbox/`` and ``working/`` hold ``<id>.json`` descriptors; ``outbox/``
    and ``failed/`` hold ``<id>.md`` artifacts whose descriptor lives in
    ``runs/<id>/task.json``.
    """
    tasks: list[TaskRecord] = []
    for status in STATUS_DIRS:
        target_dir = paths.status_dir(status)
        for name in safe_listdir(target_dir):
            path = target_dir / name
            if status in ("queued", "working"):
                if not name.endswith(".json"):
                    continue
                task = _descriptor_task(path, status)
            else:
                if not name.endswith(".md"):
                    continue
                task = _artifact_task(paths, path, status)
            if task is None:
                continue
            try:
                task["id"] = _task_id(task.get("id") or path.stem)
            except MalformedRecordError as e:
                log.debug("Skipping %s: %s", path, e)
                continue
            task["statusLine"] = (
                read_status_line(paths, task["id"]) if status == "working" else ""
            )
            tasks.append(task)
    return tasks
