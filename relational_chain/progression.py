"""Round-to-round progression: stability, levels, score and practice mode.

All state lives in one frozen ``GameState`` that is only ever replaced by
the named transitions below, applied one at a time. Time is virtual: the
caller pushes it forward with ``advance_to`` and the machine replays every
countdown tick and deferred transition that fell due in between.
"""

import logging
import math
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

from relational_chain.analytics import DAY, WEEK, AnalyticsAggregator, Outcome
from relational_chain.generator import ABSOLUTE_LEVEL, LevelGenerator, Puzzle, level_params
from relational_chain.persistence import PersistenceGateway, Snapshot, SnapshotCorrupt
from relational_chain.scheduler import TransitionScheduler

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Tuning
# ---------------------------------------------------------------------------

TICK_INTERVAL = 0.05        # seconds between countdown ticks
BASE_DECAY = 0.25           # timer points lost per tick
LEVEL_DECAY_FACTOR = 0.04   # extra points per tick per level
FULL_TIMER = 100.0

SUCCESS_HOLD = 0.4
FAILURE_HOLD = 0.5
BANNER_HOLD = 1.2

DEFAULT_STABILITY = 50.0
MIN_STABILITY = 0.0
MAX_STABILITY = 100.0
STABILITY_GAIN = 15
STABILITY_LOSS = 30
LEVEL_RESET_STABILITY = 50.0
RECOVERY_FLOOR = 20.0

BASE_REWARD = 100
LEVEL_BONUS = 50
MULTIPLIER_STEP = 0.5
MAX_MULTIPLIER = 5.0

MIN_LEVEL = 1
MAX_LEVEL = 99


class GameStatus(str, Enum):
    IDLE = "idle"
    PLAYING = "playing"
    SUCCESS_ANIM = "success_anim"
    LEVEL_UP = "level_up"
    LEVEL_DOWN = "level_down"
    GAMEOVER = "gameover"
    ANALYTICS = "analytics"


TRANSIENT_STATUSES = frozenset(
    {GameStatus.SUCCESS_ANIM, GameStatus.LEVEL_UP, GameStatus.LEVEL_DOWN}
)


class InvalidLevelInput(ValueError):
    """Manual level entry that is not an integer in [MIN_LEVEL, MAX_LEVEL]."""


@dataclass(frozen=True)
class GameState:
    status: GameStatus = GameStatus.IDLE
    level: int = MIN_LEVEL
    max_level: int = MIN_LEVEL
    stability: float = DEFAULT_STABILITY
    score: int = 0
    multiplier: float = 1.0
    streak: int = 0
    practice_mode: bool = False
    timer: float = FULL_TIMER
    session_correct: int = 0
    session_total: int = 0

    @property
    def is_transient(self) -> bool:
        return self.status in TRANSIENT_STATUSES

    @property
    def accuracy(self) -> int:
        if self.session_total == 0:
            return 100
        return round(self.session_correct / self.session_total * 100)


def parse_level(value) -> int:
    """Validate manual level input (an int or a numeric string)."""
    if isinstance(value, bool):
        raise InvalidLevelInput(f"Not a level: {value!r}")
    if isinstance(value, int):
        level = value
    elif isinstance(value, str):
        try:
            level = int(value.strip())
        except ValueError:
            raise InvalidLevelInput(f"Not a number: {value!r}") from None
    else:
        raise InvalidLevelInput(f"Not a level: {value!r}")

    if not MIN_LEVEL <= level <= MAX_LEVEL:
        raise InvalidLevelInput(f"Level {level} outside [{MIN_LEVEL}, {MAX_LEVEL}]")
    return level


class ProgressionStateMachine:
    """Owns GameState, the active Puzzle and the analytics record."""

    def __init__(
        self,
        generator: Optional[LevelGenerator] = None,
        gateway: Optional[PersistenceGateway] = None,
        now: float = 0.0,
        wall_clock=time.time,
    ):
        self.generator = generator or LevelGenerator()
        self.gateway = gateway
        self.wall_clock = wall_clock
        self.scheduler = TransitionScheduler()

        self.now = now
        self.revision = 0
        self.round = 0
        self.puzzle: Optional[Puzzle] = None
        self.feedback: Optional[dict] = None

        self._next_tick: Optional[float] = None
        self._failure_handled = False
        self._analytics_revision = 0
        self._transitions = {
            "level_up": self._enter_level_up,
            "level_down": self._enter_level_down,
            "resume_round": self._resume_round,
        }

        self.state, self.analytics = self._load()
        self._saved_key = self._persist_key()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> tuple[GameState, AnalyticsAggregator]:
        if self.gateway is None:
            return GameState(), AnalyticsAggregator()
        try:
            snapshot = self.gateway.load()
        except SnapshotCorrupt as e:
            logger.warning(f"Discarding save data: {e}")
            snapshot = None
        if snapshot is None:
            return GameState(), AnalyticsAggregator()

        level = max(MIN_LEVEL, snapshot.level)
        state = GameState(
            level=level,
            max_level=max(snapshot.max_level, level),
            stability=min(max(snapshot.stability, MIN_STABILITY), MAX_STABILITY),
            score=max(0, snapshot.score),
        )
        logger.info(f"Loaded progress: level {state.level}, score {state.score}")
        return state, snapshot.analytics

    def snapshot(self) -> Snapshot:
        s = self.state
        return Snapshot(
            level=s.level,
            max_level=s.max_level,
            stability=s.stability,
            score=s.score,
            analytics=self.analytics,
        )

    def _persist_key(self) -> tuple:
        s = self.state
        return (s.level, s.max_level, s.stability, s.score, self._analytics_revision)

    def _save(self) -> None:
        if self.gateway is None:
            return
        try:
            self.gateway.save(self.snapshot())
        except OSError as e:
            logger.error(f"Failed to save progress: {e}", exc_info=True)
            return
        self._saved_key = self._persist_key()

    def _commit(self, **changes) -> None:
        """Replace the state; persist when a saved field changed outside idle."""
        self.state = replace(self.state, **changes)
        self.revision += 1
        if self.state.status is not GameStatus.IDLE and self._persist_key() != self._saved_key:
            self._save()

    # ------------------------------------------------------------------
    # Clock
    # ------------------------------------------------------------------

    def _ticking(self) -> bool:
        return self.state.status is GameStatus.PLAYING and not self.state.practice_mode

    def advance(self, dt: float) -> None:
        self.advance_to(self.now + dt)

    def advance_to(self, now: float) -> None:
        """Run every tick and deferred transition due up to ``now``, in order."""
        while True:
            fire_at = self.scheduler.next_fire_at
            tick_at = self._next_tick if self._ticking() else None

            if fire_at is not None and fire_at <= now and (tick_at is None or fire_at <= tick_at):
                self.now = max(self.now, fire_at)
                due = self.scheduler.pop_due(self.now)
                self._transitions[due.transition]()
            elif tick_at is not None and tick_at <= now:
                self.now = max(self.now, tick_at)
                self._next_tick = tick_at + TICK_INTERVAL
                self._tick()
            else:
                break
        self.now = max(self.now, now)

    def _schedule(self, delay: float, transition: str) -> None:
        self.scheduler.schedule(self.now + delay, transition)

    def _tick(self) -> None:
        s = self.state
        timer = max(0.0, s.timer - (BASE_DECAY + s.level * LEVEL_DECAY_FACTOR))
        self._commit(timer=timer)
        if timer <= 0 and not self._failure_handled:
            logger.debug(f"Timer expired on round {self.round}")
            self._fail()

    # ------------------------------------------------------------------
    # Rounds
    # ------------------------------------------------------------------

    def _new_round(self) -> None:
        self.puzzle = self.generator.generate(self.state.level)
        self.round += 1
        self.feedback = None
        self._failure_handled = False
        self._next_tick = self.now + TICK_INTERVAL

    def _begin_series(self) -> None:
        self._new_round()
        self._commit(
            status=GameStatus.PLAYING,
            timer=FULL_TIMER,
            multiplier=1.0,
            streak=0,
            session_correct=0,
            session_total=0,
        )

    def _record_round(self, outcome: Outcome) -> None:
        if self.state.practice_mode:
            return
        self.analytics.record_round(self.puzzle.chain, outcome, practice_mode=False)
        self._analytics_revision += 1

    def _succeed(self) -> None:
        s = self.state
        self._record_round(Outcome.WIN)

        follow = "resume_round"
        if s.practice_mode:
            self._commit(status=GameStatus.SUCCESS_ANIM, streak=s.streak + 1)
        else:
            reward = (BASE_REWARD + math.floor(s.timer)) * s.multiplier + s.level * LEVEL_BONUS
            stability = s.stability + STABILITY_GAIN
            level = s.level
            if stability >= MAX_STABILITY:
                stability = LEVEL_RESET_STABILITY
                level += 1
                follow = "level_up"
                logger.info(f"Level up: {s.level} -> {level}")

            self._commit(
                status=GameStatus.SUCCESS_ANIM,
                score=math.floor(s.score + reward),
                stability=min(stability, MAX_STABILITY),
                level=level,
                max_level=max(s.max_level, level),
                multiplier=min(s.multiplier + MULTIPLIER_STEP, MAX_MULTIPLIER),
                streak=s.streak + 1,
                session_correct=s.session_correct + 1,
                session_total=s.session_total + 1,
            )

        self._schedule(SUCCESS_HOLD, follow)

    def _fail(self) -> None:
        s = self.state
        self._failure_handled = True
        self._record_round(Outcome.LOSS)

        follow = "resume_round"
        if s.practice_mode:
            self._commit(status=GameStatus.SUCCESS_ANIM, streak=0)
        else:
            stability = s.stability - STABILITY_LOSS
            level = s.level
            if stability <= MIN_STABILITY:
                if level > MIN_LEVEL:
                    level -= 1
                    stability = LEVEL_RESET_STABILITY
                    follow = "level_down"
                    logger.info(f"Level down: {s.level} -> {level}")
                else:
                    stability = RECOVERY_FLOOR

            self._commit(
                status=GameStatus.SUCCESS_ANIM,
                stability=max(stability, MIN_STABILITY),
                level=level,
                multiplier=1.0,
                streak=0,
                session_total=s.session_total + 1,
            )

        self._schedule(FAILURE_HOLD, follow)

    # Deferred transitions ------------------------------------------------

    def _enter_level_up(self) -> None:
        self._commit(status=GameStatus.LEVEL_UP)
        self._schedule(BANNER_HOLD, "resume_round")

    def _enter_level_down(self) -> None:
        self._commit(status=GameStatus.LEVEL_DOWN)
        self._schedule(BANNER_HOLD, "resume_round")

    def _resume_round(self) -> None:
        self._new_round()
        self._commit(status=GameStatus.PLAYING, timer=FULL_TIMER)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self.state.status is not GameStatus.IDLE:
            logger.debug(f"Ignoring start in {self.state.status.value}")
            return
        self._begin_series()

    def resume(self) -> None:
        if self.state.status is not GameStatus.GAMEOVER:
            logger.debug(f"Ignoring resume in {self.state.status.value}")
            return
        self._begin_series()

    def stop(self) -> None:
        s = self.state
        if s.status is not GameStatus.PLAYING and not s.is_transient:
            logger.debug(f"Ignoring stop in {s.status.value}")
            return
        self.scheduler.cancel()
        if self.analytics.record_session(s.level, s.score, s.practice_mode, timestamp=self.wall_clock()):
            self._analytics_revision += 1
        self._commit(status=GameStatus.GAMEOVER)

    def menu(self) -> None:
        if self.state.status in (GameStatus.GAMEOVER, GameStatus.ANALYTICS):
            self._commit(status=GameStatus.IDLE)

    def show_analytics(self) -> None:
        if self.state.status is GameStatus.IDLE:
            self._commit(status=GameStatus.ANALYTICS)

    def toggle_practice(self) -> None:
        s = self.state
        practice = not s.practice_mode
        logger.info(f"Practice mode {'on' if practice else 'off'}")

        if s.status is GameStatus.PLAYING or s.is_transient:
            # The old puzzle must not carry over into the other mode.
            self.scheduler.cancel()
            self._new_round()
            self._commit(practice_mode=practice, status=GameStatus.PLAYING, timer=FULL_TIMER)
        else:
            self._commit(practice_mode=practice)

    def reset_progress(self) -> None:
        self.scheduler.cancel()
        self.analytics.clear()
        self._analytics_revision += 1
        self.puzzle = None
        self.feedback = None
        self._commit(
            status=GameStatus.IDLE,
            level=MIN_LEVEL,
            stability=DEFAULT_STABILITY,
            score=0,
            multiplier=1.0,
            streak=0,
            timer=FULL_TIMER,
            session_correct=0,
            session_total=0,
        )
        self._save()
        logger.info("Progress reset")

    def set_level(self, value) -> None:
        if self.state.status is not GameStatus.IDLE:
            logger.debug(f"Ignoring level change in {self.state.status.value}")
            return
        try:
            level = parse_level(value)
        except InvalidLevelInput as e:
            logger.debug(f"Ignoring level input: {e}")
            return
        self._commit(level=level, max_level=max(self.state.max_level, level), score=0)

    def cell_selected(self, x: int, y: int) -> None:
        if self.state.status is not GameStatus.PLAYING or self.puzzle is None:
            return
        hit = (x, y) == self.puzzle.target
        self.feedback = {"x": x, "y": y, "type": "success" if hit else "fail"}
        if hit:
            self._succeed()
        else:
            self._fail()

    # ------------------------------------------------------------------
    # Read-only projections
    # ------------------------------------------------------------------

    def view(self) -> dict:
        """State for the UI. The target cell is deliberately absent."""
        s = self.state
        params = level_params(s.level)
        hidden = params.blind and s.status is GameStatus.PLAYING

        puzzle = None
        if self.puzzle is not None:
            puzzle = {
                "anchor": None if hidden else list(self.puzzle.anchor),
                "rotation": None if hidden else self.puzzle.rotation,
                "chain": [step.to_dict() for step in self.puzzle.chain],
            }

        return {
            "status": s.status.value,
            "level": s.level,
            "max_level": s.max_level,
            "stability": s.stability,
            "score": s.score,
            "multiplier": s.multiplier,
            "streak": s.streak,
            "practice_mode": s.practice_mode,
            "timer": s.timer,
            "session_correct": s.session_correct,
            "session_total": s.session_total,
            "accuracy": s.accuracy,
            "round": self.round,
            "blind": params.blind,
            "compass": s.level >= ABSOLUTE_LEVEL,
            "puzzle": puzzle,
            "feedback": dict(self.feedback) if self.feedback else None,
        }

    def analytics_summary(self, n: int = 3) -> dict:
        now = self.wall_clock()
        return {
            "weaknesses": [
                {"tag": key.label, "kind": key.kind, "rate": rate}
                for key, rate in self.analytics.top_weaknesses(n)
            ],
            "average_24h": self.analytics.average_score(DAY, now),
            "average_7d": self.analytics.average_score(WEEK, now),
            "sessions": len(self.analytics.sessions),
        }
