"""Error taxonomy.

Scan-time errors (``TransientReadError``, ``MalformedRecordError``) are
caught where they are raised and never abort a scan. Gateway errors are the
only ones surfaced to a caller.
"""

from __future__ import annotations


class AgentboardError(Exception):
    """Base class for all agentboard errors."""


class TransientReadError(AgentboardError):
    """A file vanished or could not be read; the entity is absent this cycle."""


class MalformedRecordError(AgentboardError):
    """A single record (JSON descriptor, alias line) could not be parsed."""


class CommandValidationError(AgentboardError):
    """A mutation request is missing a required field."""


class ExternalToolError(AgentboardError):
    """The delegated command-line tool exited with a failure."""

    def __init__(self, message: str, returncode: int | None = None):
        super().__init__(message)
        self.returncode = returncode


class SubscriberWriteError(AgentboardError):
    """A push to one stream subscriber failed."""
