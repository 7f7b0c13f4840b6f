"""Per-tag error tracking and session history."""

import logging
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from relational_chain.generator import Frame, Instruction, Protocol
from relational_chain.vectors import Direction

logger = logging.getLogger(__name__)

MIN_SESSION_SCORE = 100
MIN_ATTEMPTS_FOR_RANKING = 5

DAY = 24 * 60 * 60
WEEK = 7 * DAY


class Outcome(str, Enum):
    WIN = "win"
    LOSS = "loss"


@dataclass(frozen=True)
class TagKey:
    """Structured analytics key: a protocol, a frame, or protocol + direction."""

    kind: str
    protocol: Optional[Protocol] = None
    frame: Optional[Frame] = None
    direction: Optional[Direction] = None

    @classmethod
    def for_protocol(cls, protocol: Protocol) -> "TagKey":
        return cls(kind="protocol", protocol=Protocol(protocol))

    @classmethod
    def for_frame(cls, frame: Frame) -> "TagKey":
        return cls(kind="frame", frame=Frame(frame))

    @classmethod
    def for_compound(cls, protocol: Protocol, direction: Direction) -> "TagKey":
        return cls(kind="compound", protocol=Protocol(protocol), direction=Direction(direction))

    @classmethod
    def from_label(cls, label: str) -> "TagKey":
        """Parse an old free-form key such as ``"INVERTED FRONT"``."""
        parts = label.split()
        if len(parts) == 2:
            return cls.for_compound(parts[0], parts[1])
        if label in Protocol.__members__:
            return cls.for_protocol(label)
        if label in Frame.__members__:
            return cls.for_frame(label)
        raise ValueError(f"Unrecognised analytics tag: {label!r}")

    @property
    def label(self) -> str:
        if self.kind == "protocol":
            return self.protocol.value
        if self.kind == "frame":
            return self.frame.value
        return f"{self.protocol.value} {self.direction.value}"

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "protocol": self.protocol.value if self.protocol else None,
            "frame": self.frame.value if self.frame else None,
            "direction": self.direction.value if self.direction else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TagKey":
        kind = data["kind"]
        if kind == "protocol":
            return cls.for_protocol(data["protocol"])
        if kind == "frame":
            return cls.for_frame(data["frame"])
        if kind == "compound":
            return cls.for_compound(data["protocol"], data["direction"])
        raise ValueError(f"Unknown tag kind: {kind!r}")


@dataclass
class TagStats:
    attempts: int = 0
    failures: int = 0

    @property
    def failure_rate(self) -> float:
        return self.failures / self.attempts if self.attempts else 0.0


@dataclass(frozen=True)
class SessionEntry:
    timestamp: float
    level_at_end: int
    score: int


class AnalyticsAggregator:
    """Attempt/failure counters per tag plus the list of finished sessions."""

    def __init__(self, tags: Optional[dict] = None, sessions: Optional[Iterable[SessionEntry]] = None):
        self.tags: dict[TagKey, TagStats] = dict(tags or {})
        self.sessions: list[SessionEntry] = list(sessions or [])

    def clear(self) -> None:
        self.tags.clear()
        self.sessions.clear()

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def _bump(self, key: TagKey, failed: bool) -> None:
        stats = self.tags.setdefault(key, TagStats())
        stats.attempts += 1
        if failed:
            stats.failures += 1

    def record_round(self, chain: Iterable[Instruction], outcome: Outcome, practice_mode: bool) -> None:
        # Practice rounds would skew the error rates.
        if practice_mode:
            return
        failed = Outcome(outcome) is Outcome.LOSS
        for step in chain:
            self._bump(TagKey.for_protocol(step.protocol), failed)
            self._bump(TagKey.for_frame(step.frame), failed)
            self._bump(TagKey.for_compound(step.protocol, step.direction), failed)

    def record_session(
        self,
        level: int,
        score: int,
        practice_mode: bool,
        timestamp: Optional[float] = None,
    ) -> bool:
        if practice_mode or score <= MIN_SESSION_SCORE:
            return False
        entry = SessionEntry(
            timestamp=time.time() if timestamp is None else timestamp,
            level_at_end=level,
            score=score,
        )
        self.sessions.append(entry)
        logger.info(f"Session recorded: level {level}, score {score}")
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def top_weaknesses(self, n: int = 3) -> list[tuple[TagKey, float]]:
        ranked = [
            (key, stats.failure_rate)
            for key, stats in self.tags.items()
            if stats.attempts >= MIN_ATTEMPTS_FOR_RANKING
        ]
        ranked.sort(key=lambda item: item[1], reverse=True)
        return ranked[:n]

    def average_score(self, window: float, now: Optional[float] = None) -> int:
        """Floored mean score of the sessions inside the trailing window (seconds)."""
        now = time.time() if now is None else now
        relevant = [s.score for s in self.sessions if now - s.timestamp < window]
        if not relevant:
            return 0
        return math.floor(sum(relevant) / len(relevant))

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict:
        return {
            "tags": [
                {**key.to_dict(), "attempts": stats.attempts, "failures": stats.failures}
                for key, stats in self.tags.items()
            ],
            "sessions": [
                {"timestamp": s.timestamp, "level_at_end": s.level_at_end, "score": s.score}
                for s in self.sessions
            ],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AnalyticsAggregator":
        tags = {
            TagKey.from_dict(item): TagStats(int(item["attempts"]), int(item["failures"]))
            for item in data.get("tags", [])
        }
        sessions = [
            SessionEntry(float(s["timestamp"]), int(s["level_at_end"]), int(s["score"]))
            for s in data.get("sessions", [])
        ]
        return cls(tags, sessions)

    @classmethod
    def from_legacy(cls, data: dict) -> "AnalyticsAggregator":
        """Read the old layout: string tag keys, millisecond timestamps."""
        tags = {}
        for label, stats in data.get("tags", {}).items():
            try:
                key = TagKey.from_label(label)
            except ValueError:
                logger.warning(f"Skipping unknown legacy tag {label!r}")
                continue
            tags[key] = TagStats(int(stats["attempts"]), int(stats["failures"]))
        sessions = [
            SessionEntry(float(s["timestamp"]) / 1000.0, int(s["maxLevel"]), int(s["score"]))
            for s in data.get("sessions", [])
        ]
        return cls(tags, sessions)
