"""
Exception taxonomy for the scheme finder engine.
"""

from __future__ import annotations

from typing import Optional


class SchemeFinderError(Exception):
    """Base class for every error raised by the engine."""


class OracleUnavailable(SchemeFinderError):
    """The oracle could not be reached, timed out, or is not configured."""


class OracleMalformedResponse(SchemeFinderError):
    """The oracle answered, but the payload could not be parsed into the expected shape."""

    def __init__(self, message: str, raw: Optional[str] = None) -> None:
        super().__init__(message)
        self.raw = raw


class SessionExpired(SchemeFinderError):
    """The session id is unknown or its retention window has elapsed."""

    def __init__(self, session_id: Optional[str]) -> None:
        super().__init__(f"Session {session_id!r} not found or expired; start a new session.")
        self.session_id = session_id


class InvalidAnswer(SchemeFinderError):
    """Answer refers to an unknown or superseded question, or cannot be interpreted."""

    def __init__(self, question_id: str, reason: str) -> None:
        super().__init__(f"Invalid answer for question {question_id!r}: {reason}")
        self.question_id = question_id
        self.reason = reason


class SequenceGap(SchemeFinderError):
    """An offline action sequence number was never received."""

    def __init__(self, missing_seq: int) -> None:
        super().__init__(f"Offline action #{missing_seq} is missing from the queue.")
        self.missing_seq = missing_seq


class SessionBusy(SchemeFinderError):
    """The per-session lease could not be acquired within the allowed wait."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id!r} is busy with another turn.")
        self.session_id = session_id


class PersistenceUnavailable(SchemeFinderError):
    """Writing the session failed; the stored session is unchanged."""


class QueueDrained(SchemeFinderError):
    """The offline queue has already been fully drained and cannot be reused."""
