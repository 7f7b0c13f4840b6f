"""Deferred transitions.

Banners and hold frames are modelled as records ``{fire_at, transition}``
rather than sleeps. The scheduler never reads a clock: callers feed it the
current time, which lets tests run on virtual time.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ScheduledTransition:
    fire_at: float
    transition: str


class TransitionScheduler:
    """Holds at most one pending transition."""

    def __init__(self):
        self._pending: Optional[ScheduledTransition] = None

    @property
    def pending(self) -> Optional[ScheduledTransition]:
        return self._pending

    @property
    def next_fire_at(self) -> Optional[float]:
        return self._pending.fire_at if self._pending else None

    def schedule(self, fire_at: float, transition: str) -> ScheduledTransition:
        if self._pending is not None:
            raise RuntimeError(
                f"Cannot schedule {transition!r}: "
                f"{self._pending.transition!r} is still pending"
            )
        self._pending = ScheduledTransition(fire_at=fire_at, transition=transition)
        return self._pending

    def cancel(self) -> Optional[ScheduledTransition]:
        cancelled, self._pending = self._pending, None
        return cancelled

    def pop_due(self, now: float) -> Optional[ScheduledTransition]:
        if self._pending is None or self._pending.fire_at > now:
            return None
        return self.cancel()
