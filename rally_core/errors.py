"""Error taxonomy for the match core.

Pure transitions raise ValidationError before touching any state. The
persistence layer raises the remaining classes; MatchSession turns them into a
rollback (PersistenceError) or a silent fallback (CapabilityError).
"""
from __future__ import annotations


class RallyError(Exception):
    """Base class for every match-core failure."""


class ValidationError(RallyError):
    """An operation's precondition is not met; nothing was changed.

    ``kind`` is a short machine-readable code (``set_unconfigured``,
    ``quota_exhausted``, ``undo_empty``...) so callers can branch without
    parsing messages.
    """

    def __init__(self, kind: str, message: str | None = None):
        self.kind = kind
        self.message = message
        super().__init__(message or kind)


class PersistenceError(RallyError):
    """A remote write failed. The local state has been (or must be) rolled back."""


class CapabilityError(RallyError):
    """The primary match_states schema is not provisioned in this backend."""


class RaceConditionError(RallyError):
    """Insert hit an existing key, i.e. another writer created the row first."""

    def __init__(self, match_id: str):
        self.match_id = match_id
        super().__init__(f"match state for {match_id} already exists")
