from __future__ import annotations

from dataclasses import dataclass


@dataclass
class StallTracker:
    """
    Counts consecutive pagination steps that surfaced nothing new.

    push() returns True once `limit` consecutive steps in a row produced zero new
    items; any step with new items resets the counter.
    """

    limit: int
    _consecutive: int = 0
    _steps: int = 0

    def __post_init__(self) -> None:
        if self.limit <= 0:
            raise ValueError("limit must be positive")

    def push(self, new_items: int) -> bool:
        self._steps += 1
        if int(new_items) > 0:
            self._consecutive = 0
            return False

        self._consecutive += 1
        return self._consecutive >= self.limit

    @property
    def consecutive_empty(self) -> int:
        return self._consecutive

    @property
    def steps(self) -> int:
        return self._steps

    def reset(self) -> None:
        self._consecutive = 0
