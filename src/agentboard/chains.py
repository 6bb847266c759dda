"""Chain reconstruction from raw task records.

All functions are pure data transformations except
``load_active_chain_id``, which reads the last-output pointer file.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, TypedDict

from agentboard.paths import QueuePaths

log = logging.getLogger(__name__)

# Highest precedence first; decides what the dashboard calls "active".
STATUS_PRIORITY = ("working", "queued", "failed", "done")
ACTIVE_STATUSES = frozenset({"working", "queued"})

MODE_MANUAL = "manual"
MODE_AUTO = "auto"

UNTITLED = "untitled chain"
MANUAL_KEY_PREFIX = "manual:"


# ---------------------------------------------------------------------------
# Chain keys
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GroupedKey:
    """Tasks sharing an explicit chain reference (autonomous chains)."""

    chain_id: str

    @property
    def mode(self) -> str:
        return MODE_AUTO

    def render(self) -> str:
        return self.chain_id


@dataclass(frozen=True)
class ManualKey:
    """An ungrouped submission, keyed by its own reference.

    ``autonomous`` marks a task started in autonomous mode that never got a
    chain reference; it stays a singleton but reports mode ``auto``.
    """

    ref: str
    autonomous: bool = False

    @property
    def chain_id(self) -> str:
        return self.ref

    @property
    def mode(self) -> str:
        return MODE_AUTO if self.autonomous else MODE_MANUAL

    def render(self) -> str:
        return f"{MANUAL_KEY_PREFIX}{self.ref}"


ChainKey = GroupedKey | ManualKey


def is_autonomous(task: Mapping[str, Any]) -> bool:
    return bool(task.get("chain")) or task.get("mode") == "autonomous"


def chain_key_for(task: Mapping[str, Any]) -> ChainKey:
    """Dashboard grouping key of a live task."""
    task_id = str(task.get("id") or "")
    chain = task.get("chain")
    if chain:
        return GroupedKey(str(chain))
    return ManualKey(task_id, autonomous=is_autonomous(task))


def run_chain_key(task: Mapping[str, Any], run_id: str) -> ChainKey:
    """Statistics grouping key of a run descriptor.

    Runs of one manual conversation share ``manual_chain``; an autonomous
    run without a chain reference is grouped under its own id.
    """
    task_id = str(task.get("id") or run_id)
    if is_autonomous(task):
        return GroupedKey(str(task.get("chain") or task_id))
    manual_ref = task.get("manual_chain") or task.get("manualChain") or task_id
    return ManualKey(str(manual_ref))


def task_title(task: Mapping[str, Any]) -> str:
    for key in ("goal", "prompt", "task"):
        value = task.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def resolve_status(statuses: Iterable[str]) -> str:
    """Collapse member statuses by precedence ``working > queued > failed > done``."""
    seen = set(statuses)
    for status in STATUS_PRIORITY:
        if status in seen:
            return status
    return "done"


def resolve_display_id(chain_id: str, mode: str, alias_map: Mapping[str, str]) -> str:
    """Short human label: zero-padded alias, else a suffix of the chain id."""
    alias = alias_map.get(chain_id)
    if alias:
        return alias.rjust(2, "0")
    if mode == MODE_MANUAL:
        return f"M-{chain_id[-4:]}"
    return chain_id[-4:]


# ---------------------------------------------------------------------------
# Chain building
# ---------------------------------------------------------------------------


class ChainRow(TypedDict):
    id: str
    chainId: str
    displayId: str
    mode: str
    title: str
    status: str
    statusLine: str
    scope: str
    updatedAt: int


@dataclass
class _ChainAccumulator:
    key: ChainKey
    statuses: set[str] = field(default_factory=set)
    updated_at: int = 0
    title: str = ""
    status_line: str = ""
    status_line_at: int = -1

    def add(self, task: Mapping[str, Any]) -> None:
        status = str(task.get("status") or "queued")
        updated_at = int(task.get("updatedAt") or 0)
        self.statuses.add(status)
        self.updated_at = max(self.updated_at, updated_at)
        if not self.title:
            self.title = task_title(task)
        line = task.get("statusLine") or ""
        if status == "working" and line and updated_at >= self.status_line_at:
            self.status_line = str(line)
            self.status_line_at = updated_at


def sort_chains(chains: list[Any]) -> list[Any]:
    """Most recently touched first; ties broken by id for a stable order."""
    chains.sort(key=lambda c: c["id"])
    chains.sort(key=lambda c: c["updatedAt"], reverse=True)
    return chains


def build_chains(
    tasks: Sequence[Mapping[str, Any]], alias_map: Mapping[str, str]
) -> list[ChainRow]:
    """Group tasks into chains with derived status and display identity."""
    groups: dict[ChainKey, _ChainAccumulator] = {}
    for task in tasks:
        key = chain_key_for(task)
        acc = groups.get(key)
        if acc is None:
            acc = groups[key] = _ChainAccumulator(key)
        acc.add(task)

    chains: list[ChainRow] = []
    for key, acc in groups.items():
        status = resolve_status(acc.statuses)
        chains.append(
            {
                "id": key.render(),
                "chainId": key.chain_id,
                "displayId": resolve_display_id(key.chain_id, key.mode, alias_map),
                "mode": key.mode,
                "title": acc.title or UNTITLED,
                "status": status,
                "statusLine": acc.status_line if status == "working" else "",
                "scope": "workspace",
                "updatedAt": acc.updated_at,
            }
        )
    return sort_chains(chains)


def load_active_chain_id(paths: QueuePaths, chains: Sequence[Mapping[str, Any]]) -> str | None:
    """Resolve the last-output pointer to the id of a known chain."""
    try:
        raw = paths.last_output_file.read_text(encoding="utf-8").strip()
    except (OSError, UnicodeDecodeError):
        return None
    if not raw:
        return None
    for chain in chains:
        if chain["chainId"] == raw:
            return chain["id"]
    manual_id = ManualKey(raw).render()
    for chain in chains:
        if chain["id"] == manual_id:
            return chain["id"]
    log.debug("Last-output pointer %r matches no chain", raw)
    return None
