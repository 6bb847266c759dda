"""Run statistics aggregated from the ``runs/`` store.

Recomputed in full on every call: terminal artifacts are the only durable
evidence of historical runs, so there is no incremental state to keep.
Durations of runs that have not finished are measured against "now" and are
live estimates, not history.
"""

from __future__ import annotations

import math
import re
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from agentboard.chains import (
    ACTIVE_STATUSES,
    UNTITLED,
    ChainKey,
    resolve_display_id,
    resolve_status,
    run_chain_key,
    sort_chains,
    task_title,
)
from agentboard.paths import QueuePaths
from agentboard.scanner import (
    file_mtime_ms,
    parse_timestamp_ms,
    read_alias_map,
    read_json,
    read_tail,
    safe_listdir,
)

DEFAULT_MAX_OUTPUT_BYTES = 120 * 1024

_INLINE_TOKENS_RE = re.compile(r"tokens used[:\s]+([0-9][0-9,]*)", re.IGNORECASE)
_NUMBER_RE = re.compile(r"([0-9][0-9,]*)")


# ---------------------------------------------------------------------------
# Per-run facts
# ---------------------------------------------------------------------------


def _parse_count(raw: str) -> int | None:
    try:
        value = int(raw.replace(",", ""))
    except ValueError:
        return None
    return value or None


def extract_tokens(text: str) -> int | None:
    """Find the last "tokens used" count in *text*.

    Matches either ``tokens used: 1,234`` on one line or a ``tokens used``
    line followed by a numeric line. ``None`` when absent or zero.
    """
    if not text:
        return None
    lines = text.splitlines()
    for i in range(len(lines) - 1, -1, -1):
        line = lines[i]
        inline = _INLINE_TOKENS_RE.search(line)
        if inline:
            return _parse_count(inline.group(1))
        if "tokens used" in line.lower() and i + 1 < len(lines):
            match = _NUMBER_RE.search(lines[i + 1])
            if match:
                return _parse_count(match.group(1))
    return None


def run_status(paths: QueuePaths, run_id: str) -> str:
    """Locate a run in the queue; first match wins, default ``done``."""
    if (paths.status_dir("working") / f"{run_id}.json").exists():
        return "working"
    if (paths.status_dir("queued") / f"{run_id}.json").exists():
        return "queued"
    if (paths.status_dir("failed") / f"{run_id}.md").exists():
        return "failed"
    return "done"


def run_finished_at(paths: QueuePaths, run_id: str, status: str) -> int | None:
    """Modification time of the run's terminal artifact, if it has one."""
    if status not in ("done", "failed"):
        return None
    return file_mtime_ms(paths.status_dir(status) / f"{run_id}.md")


def run_duration_ms(created_at: int, finished_at: int | None, now_ms: int) -> int | None:
    if not created_at:
        return None
    duration = (finished_at or now_ms) - created_at
    return duration if duration >= 0 else None


def load_run_output(paths: QueuePaths, run_id: str, max_bytes: int) -> tuple[str, bool]:
    output_path = paths.run_dir(run_id) / "output.txt"
    if output_path.exists():
        text, truncated = read_tail(output_path, max_bytes)
        if text:
            return text, truncated
    return read_tail(paths.status_dir("done") / f"{run_id}.md", max_bytes)


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


@dataclass
class _Tally:
    """Run counts, tokens and durations over a set of runs."""

    counts: dict[str, int] = field(
        default_factory=lambda: {"queued": 0, "working": 0, "done": 0, "failed": 0}
    )
    tokens_total: int = 0
    tokens_runs: int = 0
    duration_total_ms: int = 0
    duration_runs: int = 0
    duration_min_ms: int | None = None
    duration_max_ms: int | None = None

    def add(self, status: str, tokens: int | None, duration_ms: int | None) -> None:
        self.counts[status] = self.counts.get(status, 0) + 1
        if tokens:
            self.tokens_total += tokens
            self.tokens_runs += 1
        if duration_ms is not None:
            self.duration_total_ms += duration_ms
            self.duration_runs += 1
            if self.duration_min_ms is None or duration_ms < self.duration_min_ms:
                self.duration_min_ms = duration_ms
            if self.duration_max_ms is None or duration_ms > self.duration_max_ms:
                self.duration_max_ms = duration_ms

    def as_dict(self) -> dict[str, Any]:
        return {
            "runCount": sum(self.counts.values()),
            "activeRuns": self.counts["queued"] + self.counts["working"],
            "queuedRuns": self.counts["queued"],
            "workingRuns": self.counts["working"],
            "doneRuns": self.counts["done"],
            "failedRuns": self.counts["failed"],
            "tokensTotal": self.tokens_total,
            "tokensAvg": _average(self.tokens_total, self.tokens_runs),
            "tokensRuns": self.tokens_runs,
            "durationTotalMs": self.duration_total_ms,
            "durationAvgMs": _average(self.duration_total_ms, self.duration_runs),
            "durationRuns": self.duration_runs,
            "durationMinMs": self.duration_min_ms,
            "durationMaxMs": self.duration_max_ms,
        }


@dataclass
class _ChainStats:
    key: ChainKey
    title: str = ""
    statuses: set[str] = field(default_factory=set)
    updated_at: int = 0
    tally: _Tally = field(default_factory=_Tally)


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _average(total: int, samples: int) -> int:
    return _round_half_up(total / samples) if samples else 0


def collect_stats(
    paths: QueuePaths,
    session: str | None,
    *,
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
    now_ms: int | None = None,
) -> dict[str, Any]:
    """Aggregate per-chain and global run statistics."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    alias_map = read_alias_map(paths, session)
    totals = _Tally()
    chain_map: dict[ChainKey, _ChainStats] = {}

    for run_id in safe_listdir(paths.runs_dir):
        task_path = paths.run_dir(run_id) / "task.json"
        task = read_json(task_path)
        if task is None:
            continue
        status = run_status(paths, run_id)
        created_at = parse_timestamp_ms(task.get("created"))
        finished_at = run_finished_at(paths, run_id, status)
        duration_ms = run_duration_ms(created_at, finished_at, now_ms)
        output, _ = load_run_output(paths, run_id, max_output_bytes)
        tokens = extract_tokens(output)

        totals.add(status, tokens, duration_ms)

        key = run_chain_key(task, run_id)
        entry = chain_map.get(key)
        if entry is None:
            entry = chain_map[key] = _ChainStats(key)
        entry.title = entry.title or task_title(task)
        entry.statuses.add(status)
        entry.tally.add(status, tokens, duration_ms)
        entry.updated_at = max(
            entry.updated_at, created_at, finished_at or 0, file_mtime_ms(task_path) or 0
        )

    chains = []
    for key, entry in chain_map.items():
        chains.append(
            {
                "id": key.render(),
                "chainId": key.chain_id,
                "displayId": resolve_display_id(key.chain_id, key.mode, alias_map),
                "title": entry.title or UNTITLED,
                "mode": key.mode,
                "status": resolve_status(entry.statuses),
                "updatedAt": entry.updated_at,
                **entry.tally.as_dict(),
            }
        )
    sort_chains(chains)

    return {
        "generatedAt": datetime.now(UTC).isoformat(),
        "totals": {
            "chainCount": len(chains),
            "activeChains": sum(1 for c in chains if c["status"] in ACTIVE_STATUSES),
            **totals.as_dict(),
        },
        "chains": chains,
    }


# ---------------------------------------------------------------------------
# Text rendering
# ---------------------------------------------------------------------------


def format_duration_ms(ms: int | None) -> str:
    if ms is None:
        return "--"
    seconds = _round_half_up(ms / 1000)
    hours = seconds // 3600
    minutes = (seconds % 3600) // 60
    secs = seconds % 60
    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def format_number(value: object) -> str:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return "--"
    return f"{value:,}"


def filter_active_chains(chains: Sequence[Mapping[str, Any]]) -> list[Any]:
    return [c for c in chains if c["status"] in ACTIVE_STATUSES]


def render_stats_text(stats: Mapping[str, Any], active_only: bool = False) -> str:
    totals = stats.get("totals", {})
    chains: Sequence[Mapping[str, Any]] = stats.get("chains", [])
    if active_only:
        chains = filter_active_chains(chains)

    n = format_number
    lines = [
        f"Queue statistics ({stats.get('generatedAt', '')})",
        f"Chains: {n(totals.get('chainCount'))} (active {n(totals.get('activeChains'))})",
        f"Runs: {n(totals.get('runCount'))} (queued {n(totals.get('queuedRuns'))}, "
        f"working {n(totals.get('workingRuns'))}, done {n(totals.get('doneRuns'))}, "
        f"failed {n(totals.get('failedRuns'))})",
        f"Tokens: {n(totals.get('tokensTotal'))} total "
        f"(avg {n(totals.get('tokensAvg'))} over {n(totals.get('tokensRuns'))} runs)",
        f"Duration: total {format_duration_ms(totals.get('durationTotalMs'))} "
        f"(avg {format_duration_ms(totals.get('durationAvgMs'))} "
        f"over {n(totals.get('durationRuns'))} runs)",
        "",
        "Active chains:" if active_only else "Chains:",
    ]
    if not chains:
        lines.append("  (none)")
        return "\n".join(lines)
    for chain in chains:
        lines.append(
            f"- {chain['displayId']} {chain['title']} | {chain['mode']} | {chain['status']}"
            f" | runs {n(chain['runCount'])} (active {n(chain['activeRuns'])})"
            f" | tokens {n(chain['tokensTotal'])}"
            f" | avg {format_duration_ms(chain['durationAvgMs'])}"
        )
    return "\n".join(lines)
