"""Error taxonomy for the analysis queue.

A lost claim race is not an error (the claim simply returns ``None``), and a
transcript that is too short is a degenerate success, so neither appears here.
"""

from __future__ import annotations


class AnalysisQueueError(RuntimeError):
    """Base class for analysis queue failures."""


class AdmissionError(AnalysisQueueError):
    """Enqueue failed because of configuration or store problems."""


class ProviderError(AnalysisQueueError):
    """Analysis provider call failed, timed out, or returned unparseable output."""


class PersistenceError(AnalysisQueueError):
    """A store write failed while processing a job."""


class SessionNotFoundError(AnalysisQueueError, LookupError):
    """The referenced training session does not exist."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id
