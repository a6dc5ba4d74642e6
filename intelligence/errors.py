"""Exception types raised by the research pipeline and its stores."""

from __future__ import annotations


class IntelligenceError(Exception):
    """Base class for errors surfaced by the intelligence engine."""


class ResearchFailedError(IntelligenceError):
    """Every research agent failed; no report can be produced."""


class ReportParseError(IntelligenceError):
    """Synthesis output could not be parsed, even after structural repair."""


class ReconciliationError(IntelligenceError):
    """Reconciliation exhausted its attempts without a schema-valid report."""


class LeaseLostError(IntelligenceError):
    """The worker no longer holds the job's lease; another worker owns it."""


class JobNotFoundError(IntelligenceError):
    pass


class ReportNotFoundError(IntelligenceError):
    pass


class EntityNotFoundError(IntelligenceError):
    pass


class AccessDeniedError(IntelligenceError):
    """The caller's organisation does not own the requested resource."""


def short_message(exc: BaseException, limit: int = 500) -> str:
    """Single-line, bounded description of an exception for the job status surface."""
    text = str(exc).strip() or exc.__class__.__name__
    text = " ".join(text.split())
    if len(text) > limit:
        text = text[: limit - 3] + "..."
    return text
