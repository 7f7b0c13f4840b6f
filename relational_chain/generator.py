"""Procedural puzzle generator.

A puzzle is an anchor (cell + heading) on a square grid and a chain of
instructions. The player composes the chain mentally and picks the cell it
ends on. Generation is a rejection-sampling search with a hard attempt cap;
when the cap is hit a fixed one-step puzzle is returned instead.
"""

import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from relational_chain.vectors import (
    ABSOLUTE_DIRECTIONS,
    RELATIVE_DIRECTIONS,
    ROTATIONS,
    Direction,
    invert,
    resolve,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

GRID_SIZE = 7
MAX_ATTEMPTS = 500

# Level gates
INVERSION_LEVEL = 4
ABSOLUTE_LEVEL = 7
INTERFERENCE_LEVEL = 12
BLIND_LEVEL = 15

# Sampling thresholds: a feature fires when rng.random() exceeds them.
ABSOLUTE_THRESHOLD = 0.6
INVERSION_THRESHOLD = 0.6
INTERFERENCE_THRESHOLD = 0.5


class Frame(str, Enum):
    RELATIVE = "RELATIVE"
    ABSOLUTE = "ABSOLUTE"


class Protocol(str, Enum):
    DIRECT = "DIRECT"
    INVERTED = "INVERTED"


class GenerationExhausted(RuntimeError):
    """The search hit its attempt cap without an acceptable candidate."""


@dataclass(frozen=True)
class Instruction:
    direction: Direction
    frame: Frame
    protocol: Protocol
    # Colour the instruction is shown in. Cosmetic only.
    display_tag: Protocol

    @property
    def effective_direction(self) -> Direction:
        if self.protocol is Protocol.INVERTED:
            return invert(self.direction)
        return self.direction

    def to_dict(self) -> dict:
        return {
            "direction": self.direction.value,
            "frame": self.frame.value,
            "protocol": self.protocol.value,
            "display_tag": self.display_tag.value,
        }


@dataclass(frozen=True)
class Puzzle:
    anchor: tuple[int, int]
    rotation: int
    chain: tuple[Instruction, ...]
    target: tuple[int, int]

    def path(self) -> list[tuple[int, int]]:
        """Every position visited, anchor first and target last."""
        x, y = self.anchor
        cells = [(x, y)]
        for step in self.chain:
            dx, dy = resolve(self.rotation, step.effective_direction)
            x, y = x + dx, y + dy
            cells.append((x, y))
        return cells


@dataclass(frozen=True)
class LevelParams:
    chain_length: int
    allow_inversion: bool
    allow_absolute: bool
    allow_interference: bool
    blind: bool


def chain_length_for(level: int) -> int:
    if level < 5:
        return 1
    if level < 10:
        return 2
    if level < 15:
        return 3
    return 4


def level_params(level: int) -> LevelParams:
    return LevelParams(
        chain_length=chain_length_for(level),
        allow_inversion=level >= INVERSION_LEVEL,
        allow_absolute=level >= ABSOLUTE_LEVEL,
        allow_interference=level >= INTERFERENCE_LEVEL,
        blind=level >= BLIND_LEVEL,
    )


# ---------------------------------------------------------------------------
# Failsafe
#
# Returned when the search is exhausted: anchor at the centre of the 7x7
# grid facing north, one absolute NORTH step, target one cell above.
# ---------------------------------------------------------------------------

FAILSAFE_PUZZLE = Puzzle(
    anchor=(3, 3),
    rotation=0,
    chain=(
        Instruction(
            direction=Direction.NORTH,
            frame=Frame.ABSOLUTE,
            protocol=Protocol.DIRECT,
            display_tag=Protocol.DIRECT,
        ),
    ),
    target=(3, 2),
)


def _padding_for(chain_length: int, grid_size: int) -> int:
    if chain_length > 3:
        padding = 2
    elif chain_length > 1:
        padding = 1
    else:
        padding = 0
    # Keep at least one candidate anchor cell on tiny grids.
    return min(padding, (grid_size - 1) // 2)


class LevelGenerator:
    """Bounded random search for a valid puzzle at a given level."""

    def __init__(
        self,
        rng: Optional[random.Random] = None,
        grid_size: int = GRID_SIZE,
        max_attempts: int = MAX_ATTEMPTS,
    ):
        self.rng = rng or random.Random()
        self.grid_size = grid_size
        self.max_attempts = max_attempts

    def generate(self, level: int) -> Puzzle:
        try:
            return self._search(level)
        except GenerationExhausted as e:
            logger.warning(f"{e}; using failsafe puzzle")
            return FAILSAFE_PUZZLE

    def _search(self, level: int) -> Puzzle:
        params = level_params(level)
        for attempt in range(1, self.max_attempts + 1):
            puzzle = self._candidate(params)
            if puzzle is not None:
                logger.debug(
                    f"Level {level}: accepted candidate after {attempt} attempt(s)"
                )
                return puzzle
        raise GenerationExhausted(
            f"No valid puzzle for level {level} after {self.max_attempts} attempts"
        )

    def _in_grid(self, x: int, y: int) -> bool:
        return 0 <= x < self.grid_size and 0 <= y < self.grid_size

    def _candidate(self, params: LevelParams) -> Optional[Puzzle]:
        """Sample one candidate; None if it leaves the grid or goes nowhere."""
        rng = self.rng
        padding = _padding_for(params.chain_length, self.grid_size)
        safe_size = self.grid_size - padding * 2

        anchor = (
            rng.randrange(safe_size) + padding,
            rng.randrange(safe_size) + padding,
        )
        rotation = rng.choice(ROTATIONS)

        x, y = anchor
        chain = []
        for _ in range(params.chain_length):
            step = self._sample_instruction(params)
            dx, dy = resolve(rotation, step.effective_direction)
            x, y = x + dx, y + dy
            if not self._in_grid(x, y):
                return None
            chain.append(step)

        if (x, y) == anchor:
            return None

        return Puzzle(anchor=anchor, rotation=rotation, chain=tuple(chain), target=(x, y))

    def _sample_instruction(self, params: LevelParams) -> Instruction:
        rng = self.rng

        is_absolute = params.allow_absolute and rng.random() > ABSOLUTE_THRESHOLD
        frame = Frame.ABSOLUTE if is_absolute else Frame.RELATIVE
        direction = rng.choice(ABSOLUTE_DIRECTIONS if is_absolute else RELATIVE_DIRECTIONS)

        protocol = Protocol.DIRECT
        if params.allow_inversion and rng.random() > INVERSION_THRESHOLD:
            protocol = Protocol.INVERTED

        display_tag = protocol
        if params.allow_interference and rng.random() > INTERFERENCE_THRESHOLD:
            display_tag = rng.choice((Protocol.DIRECT, Protocol.INVERTED))

        return Instruction(
            direction=direction,
            frame=frame,
            protocol=protocol,
            display_tag=display_tag,
        )
