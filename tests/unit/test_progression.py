import json

import pytest

from relational_chain.generator import FAILSAFE_PUZZLE
from relational_chain.persistence import PRIMARY_KEY, JsonFileStore, PersistenceGateway
from relational_chain.progression import (
    BANNER_HOLD,
    FAILURE_HOLD,
    MAX_MULTIPLIER,
    SUCCESS_HOLD,
    GameStatus,
    InvalidLevelInput,
    ProgressionStateMachine,
    parse_level,
)

NOW = 1_700_000_000.0


class FixedGenerator:
    """Always hands out the failsafe puzzle (target (3, 2)) and counts calls."""

    def __init__(self):
        self.calls = []

    def generate(self, level):
        self.calls.append(level)
        return FAILSAFE_PUZZLE


def make_machine(level=None, gateway=None):
    machine = ProgressionStateMachine(
        generator=FixedGenerator(),
        gateway=gateway,
        wall_clock=lambda: NOW,
    )
    if level is not None:
        machine.set_level(level)
    return machine


def make_gateway(tmp_path):
    return PersistenceGateway(JsonFileStore(tmp_path / "save.json"))


def hit(machine):
    machine.cell_selected(*machine.puzzle.target)


def miss(machine):
    machine.cell_selected(0, 0)


def settle(machine):
    """Run through hold frames and banners until play resumes."""
    machine.advance(SUCCESS_HOLD + FAILURE_HOLD + BANNER_HOLD)


@pytest.mark.unit
class TestScoring:
    def test_level_three_hit_with_timer_at_eighty(self):
        machine = make_machine(level=3)
        machine.start()
        # 54 ticks at 0.37 points each.
        machine.advance(2.72)
        assert int(machine.state.timer) == 80

        hit(machine)

        s = machine.state
        assert s.score == 330
        assert s.stability == 65
        assert s.multiplier == 1.5
        assert s.streak == 1
        assert s.status is GameStatus.SUCCESS_ANIM
        assert machine.feedback == {"x": 3, "y": 2, "type": "success"}

    def test_multiplier_capped(self):
        machine = make_machine()
        machine.start()
        for _ in range(20):
            hit(machine)
            settle(machine)
        assert machine.state.multiplier == MAX_MULTIPLIER
        assert 0 <= machine.state.stability <= 100

    def test_score_is_monotonic_outside_reset(self):
        machine = make_machine()
        machine.start()
        scores = []
        for i in range(12):
            if i % 3:
                hit(machine)
            else:
                miss(machine)
            settle(machine)
            scores.append(machine.state.score)
        assert scores == sorted(scores)

    def test_miss_resets_multiplier_and_streak(self):
        machine = make_machine()
        machine.start()
        hit(machine)
        settle(machine)
        miss(machine)

        s = machine.state
        assert (s.multiplier, s.streak) == (1.0, 0)
        assert (s.session_correct, s.session_total) == (1, 2)
        assert s.accuracy == 50
        assert machine.feedback["type"] == "fail"


@pytest.mark.unit
class TestLevels:
    def test_level_up_after_stability_tops_out(self):
        machine = make_machine()
        machine.start()
        for _ in range(3):
            hit(machine)
            machine.advance(SUCCESS_HOLD)
        assert machine.state.stability == 95

        hit(machine)
        assert machine.state.level == 2
        assert machine.state.max_level == 2
        assert machine.state.stability == 50
        assert machine.state.status is GameStatus.SUCCESS_ANIM

        machine.advance(SUCCESS_HOLD)
        assert machine.state.status is GameStatus.LEVEL_UP

        machine.advance(BANNER_HOLD)
        assert machine.state.status is GameStatus.PLAYING
        assert machine.state.timer == 100
        assert machine.generator.calls[-1] == 2

    def test_level_down_after_stability_runs_out(self):
        machine = make_machine(level=2)
        machine.start()
        miss(machine)
        machine.advance(FAILURE_HOLD)
        assert machine.state.stability == 20

        miss(machine)
        assert (machine.state.level, machine.state.stability) == (1, 50)
        assert machine.state.max_level == 2

        machine.advance(FAILURE_HOLD)
        assert machine.state.status is GameStatus.LEVEL_DOWN
        machine.advance(BANNER_HOLD)
        assert machine.state.status is GameStatus.PLAYING

    def test_level_one_floor(self):
        machine = make_machine()
        machine.start()
        miss(machine)
        machine.advance(FAILURE_HOLD)
        assert machine.state.stability == 20

        miss(machine)
        assert (machine.state.level, machine.state.stability) == (1, 20)
        machine.advance(FAILURE_HOLD)
        assert machine.state.status is GameStatus.PLAYING


@pytest.mark.unit
class TestTimer:
    def test_expiry_fails_round_once(self):
        machine = make_machine()
        machine.start()
        # Level 1 drains 0.29 per tick: empty after ~17.25s.
        machine.advance(20.0)

        s = machine.state
        assert s.session_total == 1
        assert s.stability == 20
        assert s.status is GameStatus.PLAYING
        assert s.timer > 0

    def test_timer_frozen_during_practice(self):
        machine = make_machine()
        machine.start()
        machine.toggle_practice()
        machine.advance(30.0)
        assert machine.state.timer == 100
        assert machine.state.session_total == 0

    def test_input_ignored_outside_playing(self):
        machine = make_machine()
        machine.cell_selected(3, 2)
        assert machine.state.status is GameStatus.IDLE

        machine.start()
        hit(machine)
        before = machine.state
        machine.cell_selected(3, 2)
        assert machine.state == before


@pytest.mark.unit
class TestPractice:
    def test_practice_leaves_progress_untouched(self):
        machine = make_machine(level=5)
        machine.start()
        machine.toggle_practice()
        before = machine.state

        hit(machine)
        assert machine.state.streak == 1
        settle(machine)
        hit(machine)
        assert machine.state.streak == 2
        settle(machine)
        miss(machine)
        assert machine.state.streak == 0
        settle(machine)

        s = machine.state
        for field in ("level", "max_level", "stability", "score", "multiplier",
                      "session_correct", "session_total"):
            assert getattr(s, field) == getattr(before, field)
        assert machine.analytics.tags == {}

    def test_toggle_regenerates_puzzle(self):
        machine = make_machine()
        machine.start()
        round_before = machine.round
        calls_before = len(machine.generator.calls)

        machine.toggle_practice()

        assert machine.round == round_before + 1
        assert len(machine.generator.calls) == calls_before + 1
        assert machine.state.practice_mode is True
        assert machine.state.timer == 100

    def test_toggle_during_hold_resumes_immediately(self):
        machine = make_machine()
        machine.start()
        hit(machine)
        assert machine.scheduler.pending is not None

        machine.toggle_practice()

        assert machine.state.status is GameStatus.PLAYING
        assert machine.scheduler.pending is None
        assert machine.feedback is None

    def test_toggle_in_idle_only_flips_flag(self):
        machine = make_machine()
        machine.toggle_practice()
        assert machine.state.practice_mode is True
        assert machine.state.status is GameStatus.IDLE
        assert machine.puzzle is None


@pytest.mark.unit
class TestSessionFlow:
    def test_stop_records_session(self):
        machine = make_machine(level=3)
        machine.start()
        hit(machine)
        machine.advance(SUCCESS_HOLD)
        machine.stop()

        assert machine.state.status is GameStatus.GAMEOVER
        (entry,) = machine.analytics.sessions
        assert (entry.timestamp, entry.level_at_end, entry.score) == (NOW, 3, machine.state.score)

    def test_stop_with_low_score_records_nothing(self):
        machine = make_machine()
        machine.start()
        machine.stop()
        assert machine.analytics.sessions == []

    def test_stop_during_hold_cancels_transition(self):
        machine = make_machine()
        machine.start()
        hit(machine)
        machine.stop()
        machine.advance(5.0)
        assert machine.state.status is GameStatus.GAMEOVER
        assert machine.scheduler.pending is None

    def test_resume_starts_fresh_series(self):
        machine = make_machine()
        machine.start()
        hit(machine)
        settle(machine)
        machine.stop()
        machine.resume()

        s = machine.state
        assert s.status is GameStatus.PLAYING
        assert (s.multiplier, s.streak, s.session_total) == (1.0, 0, 0)
        assert s.score > 0

    def test_menu_and_analytics_screens(self):
        machine = make_machine()
        machine.show_analytics()
        assert machine.state.status is GameStatus.ANALYTICS
        machine.start()
        assert machine.state.status is GameStatus.ANALYTICS
        machine.menu()
        assert machine.state.status is GameStatus.IDLE

    def test_analytics_summary(self):
        machine = make_machine(level=3)
        machine.start()
        for _ in range(5):
            miss(machine)
            settle(machine)
        machine.stop()

        summary = machine.analytics_summary()
        labels = [w["tag"] for w in summary["weaknesses"]]
        assert labels == ["DIRECT", "ABSOLUTE", "DIRECT NORTH"]
        assert all(w["rate"] == 1.0 for w in summary["weaknesses"])
        assert summary["sessions"] == 0
        assert summary["average_24h"] == 0


@pytest.mark.unit
class TestSetLevel:
    @pytest.mark.parametrize("value", ["abc", "", 0, 100, -3, True, 5.5, None])
    def test_invalid_input_ignored(self, value):
        machine = make_machine()
        before = machine.state
        machine.set_level(value)
        assert machine.state == before

    def test_numeric_string(self):
        machine = make_machine()
        machine.set_level(" 12 ")
        assert (machine.state.level, machine.state.max_level) == (12, 12)

    def test_lower_level_keeps_max(self):
        machine = make_machine(level=20)
        machine.set_level(4)
        assert (machine.state.level, machine.state.max_level) == (4, 20)

    def test_ignored_while_playing(self):
        machine = make_machine()
        machine.start()
        machine.set_level(9)
        assert machine.state.level == 1

    def test_parse_level(self):
        assert parse_level("99") == 99
        with pytest.raises(InvalidLevelInput):
            parse_level("100")


@pytest.mark.unit
class TestView:
    def test_target_never_exposed(self):
        machine = make_machine()
        machine.start()
        view = machine.view()
        assert "target" not in view
        assert "target" not in view["puzzle"]
        assert view["puzzle"]["anchor"] == [3, 3]
        assert view["puzzle"]["chain"][0]["direction"] == "NORTH"
        json.dumps(view)

    def test_blind_hides_anchor_only_while_playing(self):
        machine = make_machine(level=15)
        machine.start()
        view = machine.view()
        assert view["blind"] is True
        assert view["puzzle"]["anchor"] is None
        assert view["puzzle"]["rotation"] is None
        assert view["puzzle"]["chain"]

        hit(machine)
        assert machine.view()["puzzle"]["anchor"] == [3, 3]

    def test_compass_from_level_seven(self):
        assert make_machine(level=6).view()["compass"] is False
        assert make_machine(level=7).view()["compass"] is True


@pytest.mark.unit
class TestPersistence:
    def test_idle_changes_not_saved(self, tmp_path):
        machine = make_machine(gateway=make_gateway(tmp_path))
        machine.set_level(5)
        assert not (tmp_path / "save.json").exists()

    def test_progress_saved_during_play(self, tmp_path):
        machine = make_machine(level=3, gateway=make_gateway(tmp_path))
        machine.start()
        hit(machine)

        reloaded = make_machine(gateway=make_gateway(tmp_path))
        s = reloaded.state
        assert (s.level, s.stability, s.score) == (3, 65, 350)
        assert s.status is GameStatus.IDLE
        assert reloaded.analytics.tags

    def test_reset_keeps_max_level_and_saves(self, tmp_path):
        machine = make_machine(level=9, gateway=make_gateway(tmp_path))
        machine.start()
        hit(machine)
        machine.reset_progress()

        s = machine.state
        assert s.status is GameStatus.IDLE
        assert (s.level, s.max_level, s.stability, s.score) == (1, 9, 50, 0)
        assert machine.analytics.tags == {}

        raw = json.loads((tmp_path / "save.json").read_text())[PRIMARY_KEY]
        assert (raw["level"], raw["max_level"], raw["score"]) == (1, 9, 0)

    def test_corrupt_save_falls_back_to_defaults(self, tmp_path):
        (tmp_path / "save.json").write_text("{broken", encoding="utf-8")
        machine = make_machine(gateway=make_gateway(tmp_path))
        assert machine.state.level == 1
        assert machine.state.stability == 50

        machine.start()
        hit(machine)
        assert json.loads((tmp_path / "save.json").read_text())[PRIMARY_KEY]["score"] > 0

    def test_out_of_range_save_values_clamped(self, tmp_path):
        make_gateway(tmp_path).store.set(
            PRIMARY_KEY, {"level": 0, "max_level": 0, "stability": 250, "score": -5}
        )
        s = make_machine(gateway=make_gateway(tmp_path)).state
        assert (s.level, s.max_level, s.stability, s.score) == (1, 1, 100, 0)
