"""Grid geometry for instruction resolution.

Rotations are headings in degrees clockwise from "up" (north). Relative
directions are read against the anchor's heading; absolute directions are
fixed to the grid.
"""

from enum import Enum


class Direction(str, Enum):
    FRONT = "FRONT"
    BACK = "BACK"
    LEFT = "LEFT"
    RIGHT = "RIGHT"
    NORTH = "NORTH"
    SOUTH = "SOUTH"
    EAST = "EAST"
    WEST = "WEST"

    @property
    def is_relative(self) -> bool:
        return self in RELATIVE_DIRECTIONS


RELATIVE_DIRECTIONS = (Direction.FRONT, Direction.BACK, Direction.LEFT, Direction.RIGHT)
ABSOLUTE_DIRECTIONS = (Direction.NORTH, Direction.SOUTH, Direction.EAST, Direction.WEST)

ROTATIONS = (0, 90, 180, 270)

# Screen coordinates: y grows downwards.
_ABSOLUTE_VECTORS = {
    Direction.NORTH: (0, -1),
    Direction.SOUTH: (0, 1),
    Direction.EAST: (1, 0),
    Direction.WEST: (-1, 0),
}

_ANGLE_OFFSETS = {
    Direction.FRONT: 0,
    Direction.RIGHT: 90,
    Direction.BACK: 180,
    Direction.LEFT: 270,
}

_HEADING_VECTORS = {
    0: (0, -1),
    90: (1, 0),
    180: (0, 1),
    270: (-1, 0),
}

_OPPOSITES = {
    Direction.NORTH: Direction.SOUTH,
    Direction.SOUTH: Direction.NORTH,
    Direction.EAST: Direction.WEST,
    Direction.WEST: Direction.EAST,
    Direction.FRONT: Direction.BACK,
    Direction.BACK: Direction.FRONT,
    Direction.LEFT: Direction.RIGHT,
    Direction.RIGHT: Direction.LEFT,
}


def safe_mod(n: int, m: int) -> int:
    """Modulo that never returns a negative value, whatever the sign of n."""
    return ((n % m) + m) % m


def resolve(rotation: int, direction: Direction) -> tuple[int, int]:
    """Map an anchor heading and a direction to a unit grid step (dx, dy)."""
    direction = Direction(direction)
    if direction in _ABSOLUTE_VECTORS:
        return _ABSOLUTE_VECTORS[direction]

    heading = safe_mod(rotation + _ANGLE_OFFSETS[direction], 360)
    return _HEADING_VECTORS.get(heading, (0, 0))


def invert(direction: Direction) -> Direction:
    """Opposite direction within the same frame."""
    return _OPPOSITES[Direction(direction)]
