"""A state paired with its sequence number and the time it was recorded."""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Generic, TypeVar

S = TypeVar("S")


@dataclass
class TimestampedState(Generic[S]):
    """A numbered state with the timestamp (ms) at which it was sent or received."""

    timestamp: int
    num: int
    state: S

    def copy(self) -> "TimestampedState[S]":
        """Return an independent copy, including a copy of the state."""
        return TimestampedState(self.timestamp, self.num, copy.deepcopy(self.state))