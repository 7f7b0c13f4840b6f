import pytest

from relational_chain.vectors import (
    ABSOLUTE_DIRECTIONS,
    RELATIVE_DIRECTIONS,
    ROTATIONS,
    Direction,
    invert,
    resolve,
    safe_mod,
)


@pytest.mark.unit
class TestSafeMod:
    def test_negative_operand_wraps_positive(self):
        assert safe_mod(-90, 360) == 270
        assert safe_mod(-450, 360) == 270

    def test_positive_operand_unchanged(self):
        assert safe_mod(450, 360) == 90
        assert safe_mod(0, 360) == 0


@pytest.mark.unit
class TestResolve:
    def test_absolute_directions_ignore_rotation(self):
        expected = {
            Direction.NORTH: (0, -1),
            Direction.SOUTH: (0, 1),
            Direction.EAST: (1, 0),
            Direction.WEST: (-1, 0),
        }
        for rotation in ROTATIONS:
            for direction, vector in expected.items():
                assert resolve(rotation, direction) == vector

    def test_front_follows_heading(self):
        assert resolve(0, Direction.FRONT) == (0, -1)
        assert resolve(90, Direction.FRONT) == (1, 0)
        assert resolve(180, Direction.FRONT) == (0, 1)
        assert resolve(270, Direction.FRONT) == (-1, 0)

    def test_right_when_facing_east_is_south(self):
        assert resolve(90, Direction.RIGHT) == (0, 1)

    def test_left_when_facing_north_is_west(self):
        assert resolve(0, Direction.LEFT) == (-1, 0)

    def test_back_when_facing_west_is_east(self):
        assert resolve(270, Direction.BACK) == (1, 0)

    def test_accepts_string_direction(self):
        assert resolve(0, "FRONT") == (0, -1)

    def test_unknown_heading_is_null_vector(self):
        assert resolve(45, Direction.FRONT) == (0, 0)

    def test_every_result_is_a_unit_step(self):
        for rotation in ROTATIONS:
            for direction in Direction:
                dx, dy = resolve(rotation, direction)
                assert abs(dx) + abs(dy) == 1


@pytest.mark.unit
class TestInvert:
    def test_pairs(self):
        assert invert(Direction.FRONT) is Direction.BACK
        assert invert(Direction.LEFT) is Direction.RIGHT
        assert invert(Direction.NORTH) is Direction.SOUTH
        assert invert(Direction.EAST) is Direction.WEST

    def test_is_an_involution(self):
        for direction in Direction:
            assert invert(invert(direction)) is direction

    def test_stays_in_frame(self):
        for direction in RELATIVE_DIRECTIONS:
            assert invert(direction).is_relative
        for direction in ABSOLUTE_DIRECTIONS:
            assert not invert(direction).is_relative

    def test_inverted_step_cancels_direct_step(self):
        for rotation in ROTATIONS:
            for direction in Direction:
                dx, dy = resolve(rotation, direction)
                ix, iy = resolve(rotation, invert(direction))
                assert (dx + ix, dy + iy) == (0, 0)
