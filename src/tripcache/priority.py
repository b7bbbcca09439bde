"""Priority tiers shared by warmup jobs, realtime channels and broadcasts."""

from __future__ import annotations

from enum import Enum


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Sort rank, lower runs first."""
        return _RANKS[self]

    @classmethod
    def coerce(cls, value: "Priority | str") -> "Priority":
        """Accept either a Priority or its string value ("high", ...)."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(
                f"Unknown priority {value!r}, expected one of "
                f"{[p.value for p in cls]}"
            ) from None


_RANKS = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}
