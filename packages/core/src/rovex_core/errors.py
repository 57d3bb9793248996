"""Error taxonomy for review runs.

Only PreconditionError and RunCanceledError ever abort a whole run.
TransportError is scoped to one provider call; its message is what the
transient-failure classifier inspects, so transports put status codes
and upstream error text into it verbatim.
"""

from __future__ import annotations


class ReviewError(Exception):
    """Base class for every error raised by rovex_core."""


class PreconditionError(ReviewError):
    """Inputs are unusable; raised before any work or slot is claimed."""


class TransportError(ReviewError):
    """A provider call failed. The message carries the upstream detail."""


class RunCanceledError(ReviewError):
    """The run's cancellation flag was observed at a checkpoint."""

    def __init__(self, message: str = "Run canceled."):
        super().__init__(message)


class RunNotFoundError(ReviewError, KeyError):
    """No run with the given id exists in the store."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Run not found."
