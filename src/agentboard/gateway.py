"""Command gateway: queue mutations delegated to the ``agentctl`` CLI.

The gateway validates required fields, maps each request to an ``agentctl``
subcommand, and reports the tool's failure as a single message. It never
interprets queue state; after a successful call it awaits ``on_success``
(the broadcaster's forced refresh) so the change shows up without waiting
for the next poll.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable

from agentboard.errors import CommandValidationError, ExternalToolError

log = logging.getLogger(__name__)

AGENTCTL_BIN = os.environ.get("AGENTCTL_BIN", "agentctl")

# Accepted submission modes -> canonical chain mode.
SUBMIT_MODES = {
    "manual": "manual",
    "auto": "auto",
    "autonomous": "auto",
}


def normalize_mode(mode: str | None) -> str:
    """Map a requested submission mode to ``manual`` or ``auto``."""
    canonical = SUBMIT_MODES.get(mode or "manual")
    if canonical is None:
        raise CommandValidationError(f"unknown mode: {mode}")
    return canonical


def _require(value: str | None, name: str) -> str:
    """Return *value*, raising when it is missing or blank."""
    if value is None or not str(value).strip():
        raise CommandValidationError(f"{name} required")
    return str(value)


async def run_agentctl(args: list[str], *, binary: str = AGENTCTL_BIN) -> str:
    """Run ``agentctl`` with *args*; return stripped stdout or raise ``ExternalToolError``."""
    log.info("Running %s %s", binary, args[0] if args else "")
    try:
        proc = await asyncio.create_subprocess_exec(
            binary,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise ExternalToolError(f"{binary}: {e.strerror or e}") from e
    stdout_b, stderr_b = await proc.communicate()
    stdout = stdout_b.decode(errors="replace")
    stderr = stderr_b.decode(errors="replace")
    if proc.returncode != 0:
        message = stderr.strip() or stdout.strip() or f"{binary} exited with {proc.returncode}"
        log.warning("%s %s failed (exit %s): %s", binary, args[0], proc.returncode, message)
        raise ExternalToolError(message, returncode=proc.returncode)
    return stdout.strip()


class CommandGateway:
    """Translates mutation requests into ``agentctl`` invocations."""

    def __init__(
        self,
        session: str,
        on_success: Callable[[], Awaitable[object]] | None = None,
        *,
        binary: str = AGENTCTL_BIN,
    ) -> None:
        self.session = session
        self._on_success = on_success
        self._binary = binary

    async def _run(self, args: list[str]) -> str:
        output = await run_agentctl(args, binary=self._binary)
        if self._on_success is not None:
            # The command already ran; refresh failures are only logged.
            try:
                await self._on_success()
            except Exception:
                log.exception("Refresh after %s failed; next poll will pick it up", args[0])
        return output

    async def submit(self, prompt: str | None) -> str:
        prompt = _require(prompt, "prompt")
        return await self._run(["submit", "--session", self.session, prompt])

    async def start_autonomous(self, prompt: str | None) -> str:
        prompt = _require(prompt, "prompt")
        return await self._run(["start-autonomous", "--session", self.session, prompt])

    async def create_chain(self, prompt: str | None, mode: str | None = "manual") -> str:
        """Submit *prompt* as a manual run or start an autonomous chain."""
        if normalize_mode(mode) == "auto":
            return await self.start_autonomous(prompt)
        return await self.submit(prompt)

    async def stop_current(self) -> str:
        return await self._run(["chain-stop-current"])

    async def stop_all(self) -> str:
        return await self._run(["chain-stop-all"])

    async def stop_chain(self, chain_id: str | None) -> str:
        chain_id = _require(chain_id, "chain id")
        return await self._run(["chain-stop", chain_id])
