"""Collaborator failure conditions.

Business denials are never exceptions; they come back as ``Verdict``
values. The classes here mean "we could not tell right now": a backing
store timed out or failed, so callers should answer 503 rather than 403.
"""

from __future__ import annotations


class CollaboratorUnavailable(Exception):
    """A backing store needed for a decision could not be reached."""

    def __init__(self, message: str, *, user_id: str | None = None) -> None:
        super().__init__(message)
        self.user_id = user_id


class LedgerUnavailable(CollaboratorUnavailable):
    """The usage store failed to read or increment a record."""


class MembershipUnavailable(CollaboratorUnavailable):
    """The membership store failed or timed out."""
