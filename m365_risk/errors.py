"""Exception types raised by the triage engine."""

from __future__ import annotations


class TriageError(Exception):
    """Base class for every error raised by m365_risk."""


class ConfigurationError(TriageError):
    """Thresholds or weights are missing or invalid. Raised at startup only."""


class MalformedRecord(TriageError):
    """A single input record could not be normalized.

    Raised inside the normalizer for one record and caught by the batch loop,
    which drops the record and counts it.
    """

    def __init__(self, reason: str, field: str = "") -> None:
        super().__init__(reason)
        self.reason = reason
        self.field = field


class NoInputError(TriageError):
    """Every input source was absent or empty; there is nothing to score."""
