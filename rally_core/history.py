"""Session-local undo stack of pre-mutation snapshots."""
from __future__ import annotations

import logging
from collections import deque
from copy import deepcopy
from typing import Deque

from .errors import ValidationError
from .types import MatchState

logger = logging.getLogger(__name__)


class UndoHistory:
    """Bounded LIFO of match states; the oldest snapshot is dropped when full."""

    def __init__(self, limit: int = 50):
        if limit < 1:
            raise ValueError("undo history limit must be at least 1")
        self.limit = limit
        self._stack: Deque[MatchState] = deque(maxlen=limit)

    def push(self, state: MatchState) -> None:
        if len(self._stack) == self.limit:
            logger.debug(f"Undo history full ({self.limit}), dropping oldest snapshot")
        self._stack.append(deepcopy(state))

    def pop(self) -> MatchState:
        if not self._stack:
            raise ValidationError("undo_empty", "nothing to undo")
        return self._stack.pop()

    def discard_last(self) -> None:
        """Forget the newest snapshot (its mutation never took effect)."""
        if self._stack:
            self._stack.pop()

    def peek(self) -> MatchState | None:
        return deepcopy(self._stack[-1]) if self._stack else None

    def clear(self) -> None:
        self._stack.clear()

    def __len__(self) -> int:
        return len(self._stack)

    def __bool__(self) -> bool:
        return bool(self._stack)
