"""Full dashboard state and its canonical serialization.

The state holds no wall-clock values, so two builds over an unchanged queue
serialize to identical bytes and produce identical signatures.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from agentboard.chains import build_chains, load_active_chain_id
from agentboard.paths import STATUSES, QueuePaths
from agentboard.scanner import load_tasks, read_alias_map
from agentboard.transcript import load_repl_lines


def build_state(paths: QueuePaths, session: str) -> dict[str, Any]:
    tasks = load_tasks(paths)
    chains = build_chains(tasks, read_alias_map(paths, session))
    task_counts = dict.fromkeys(STATUSES, 0)
    for task in tasks:
        task_counts[task["status"]] += 1
    return {
        "chains": chains,
        "activeChain": load_active_chain_id(paths, chains),
        "repl": load_repl_lines(paths, session),
        "meta": {
            "session": session,
            "taskCounts": task_counts,
            "chainCount": len(chains),
            "runningChains": sum(1 for c in chains if c["status"] == "working"),
        },
    }


def serialize_state(state: dict[str, Any]) -> str:
    return json.dumps(state, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def state_signature(serialized: str) -> str:
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()
