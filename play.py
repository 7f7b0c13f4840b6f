"""
play.py: Run Relational Chain in the terminal.

Usage:
    python play.py                      # Play with a fresh random seed
    python play.py --seed 42            # Reproducible puzzles
    python play.py --level 7            # Start at level 7 (1-99)
    python play.py --agent              # Run the sample agent on virtual time
    python play.py --analytics          # Show the weakness report for a save

Controls (human play):
    x y    select a cell (0-6 each, origin top-left)
    p      toggle practice mode (freezes timer and scoring)
    a      show analytics
    q      stop and show the session result
"""

import argparse
import logging
import random
import sys
import time

from relational_chain.analytics import DAY, WEEK
from relational_chain.generator import GRID_SIZE, LevelGenerator
from relational_chain.persistence import JsonFileStore, PersistenceGateway
from relational_chain.progression import (
    TICK_INTERVAL,
    TRANSIENT_STATUSES,
    GameStatus,
    ProgressionStateMachine,
)
from relational_chain.vectors import Direction, invert, resolve

DEFAULT_SAVE = "relational_chain_save.json"

ARROWS = {0: "^", 90: ">", 180: "v", 270: "<"}

# ANSI colours for the display tag (the decoy colour, not the protocol).
TAG_COLOURS = {"DIRECT": "\033[32m", "INVERTED": "\033[31m"}
RESET = "\033[0m"

BANNERS = {
    GameStatus.LEVEL_UP.value: ">>> LEVEL UP <<<",
    GameStatus.LEVEL_DOWN.value: "<<< LEVEL DOWN >>>",
}


# ---------------------------------------------------------------------------
# Rendering helpers
# ---------------------------------------------------------------------------


def render_board(view: dict) -> str:
    puzzle = view["puzzle"] or {}
    anchor = tuple(puzzle["anchor"]) if puzzle.get("anchor") is not None else None
    rotation = puzzle.get("rotation")

    lines = ["    " + " ".join(str(x) for x in range(GRID_SIZE))]
    for y in range(GRID_SIZE):
        row = []
        for x in range(GRID_SIZE):
            if anchor == (x, y):
                row.append(ARROWS.get(rotation, "@"))
            else:
                row.append(".")
        lines.append(f"  {y} " + " ".join(row))
    return "\n".join(lines)


def render_chain(view: dict) -> str:
    puzzle = view["puzzle"] or {}
    cards = []
    for i, step in enumerate(puzzle.get("chain", []), start=1):
        frame = "GRID" if step["frame"] == "ABSOLUTE" else "BODY"
        word = "VERIFIED" if step["protocol"] == "DIRECT" else "INVERTED"
        colour = TAG_COLOURS[step["display_tag"]]
        cards.append(f"  {i}. [{frame}] {word:<8} {colour}{step['direction']}{RESET}")
    return "\n".join(cards)


def render_hud(view: dict) -> str:
    mode = "PRACTICE" if view["practice_mode"] else f"TIMER {view['timer']:5.1f}"
    flags = []
    if view["blind"]:
        flags.append("BLIND")
    if view["compass"]:
        flags.append("COMPASS N=UP")
    return (
        f"LEVEL {view['level']}  STABILITY {view['stability']:.0f}%  "
        f"SCORE {view['score']}  x{view['multiplier']:.1f}  STREAK {view['streak']}  "
        f"{mode}  {' '.join(flags)}"
    )


def print_analytics(summary: dict) -> None:
    print("-- COGNITIVE BOTTLENECKS --")
    if summary["weaknesses"]:
        for w in summary["weaknesses"]:
            print(f"  {w['tag']:<18} {w['rate'] * 100:3.0f}% FAILURE")
    else:
        print("  Insufficient data (play more rounds)")
    print(f"  24H AVG SCORE: {summary['average_24h']}")
    print(f"  7D AVG SCORE:  {summary['average_7d']}")
    print(f"  SESSIONS:      {summary['sessions']}")


def make_machine(seed, save_path, now=0.0):
    gateway = PersistenceGateway(JsonFileStore(save_path)) if save_path else None
    return ProgressionStateMachine(
        generator=LevelGenerator(random.Random(seed)),
        gateway=gateway,
        now=now,
    )


# ---------------------------------------------------------------------------
# Human play
# ---------------------------------------------------------------------------


def wait_for_round(machine: ProgressionStateMachine) -> None:
    """Sleep through hold frames and banners until the next round is live."""
    shown = None
    while machine.state.status in TRANSIENT_STATUSES:
        banner = BANNERS.get(machine.state.status.value)
        if banner and banner != shown:
            print(f"\n{banner}  (level {machine.state.level})")
            shown = banner
        time.sleep(TICK_INTERVAL)
        machine.advance_to(time.monotonic())


def play_human(seed=None, level=None, save_path=DEFAULT_SAVE, practice=False) -> None:
    machine = make_machine(seed, save_path, now=time.monotonic())
    if level is not None:
        machine.set_level(level)
    if practice:
        machine.toggle_practice()
    machine.start()

    print("=" * 60)
    print("  RELATIONAL CHAIN")
    print("  Compose the chain from the anchor, pick the final cell.")
    print("  BODY = relative to the arrow, GRID = fixed compass.")
    print("  INVERTED = go the opposite way. Ignore the colour.")
    print("=" * 60)

    while machine.state.status is GameStatus.PLAYING:
        view = machine.view()
        print()
        print(render_hud(view))
        print(render_board(view))
        print(render_chain(view))
        shown_round = machine.round

        try:
            cmd = input("> ").strip().lower()
        except (KeyboardInterrupt, EOFError):
            cmd = "q"

        # Time spent thinking counts against the timer. An answer only
        # applies to the puzzle that was on screen when it was typed.
        machine.advance_to(time.monotonic())
        expired = (
            machine.state.status is not GameStatus.PLAYING
            or machine.round != shown_round
        )
        if expired and cmd != "q":
            print("TIME OUT")
            wait_for_round(machine)
            continue

        if cmd == "q":
            machine.stop()
            break
        if cmd == "p":
            machine.toggle_practice()
            continue
        if cmd == "a":
            print_analytics(machine.analytics_summary())
            continue

        parts = cmd.replace(",", " ").split()
        if len(parts) != 2 or not all(p.isdigit() for p in parts):
            print("Enter a cell as 'x y', or p / a / q.")
            continue

        machine.cell_selected(int(parts[0]), int(parts[1]))
        print("CORRECT" if machine.feedback["type"] == "success" else "MISS")
        wait_for_round(machine)

    s = machine.state
    print()
    print(f"Session over: level {s.level}, score {s.score}, precision {s.accuracy}%")


# ---------------------------------------------------------------------------
# Sample agent
# ---------------------------------------------------------------------------


def solve(view: dict):
    """Compose the visible chain. None when the anchor is hidden."""
    puzzle = view["puzzle"]
    if puzzle is None or puzzle["anchor"] is None:
        return None
    x, y = puzzle["anchor"]
    for step in puzzle["chain"]:
        direction = Direction(step["direction"])
        if step["protocol"] == "INVERTED":
            direction = invert(direction)
        dx, dy = resolve(puzzle["rotation"], direction)
        x, y = x + dx, y + dy
    return x, y


def play_agent(seed=0, rounds=50, skill=0.8, save_path=None, level=None) -> ProgressionStateMachine:
    """Agent that solves correctly with probability ``skill``, else guesses."""
    rng = random.Random(seed)
    machine = make_machine(seed, save_path)
    if level is not None:
        machine.set_level(level)
    machine.start()

    print(f"Running agent for {rounds} rounds (seed={seed}, skill={skill})...")
    for _ in range(rounds):
        # Think for a random fraction of a second of virtual time.
        machine.advance(rng.uniform(0.2, 2.0))
        if machine.state.status is GameStatus.PLAYING:
            answer = solve(machine.view())
            if answer is None or rng.random() > skill:
                answer = (rng.randrange(GRID_SIZE), rng.randrange(GRID_SIZE))
            machine.cell_selected(*answer)
        while machine.state.status in TRANSIENT_STATUSES:
            machine.advance(TICK_INTERVAL)

    machine.stop()
    s = machine.state
    print(f"Agent finished: level {s.level} (max {s.max_level}), score {s.score}, "
          f"precision {s.accuracy}%")
    print_analytics(machine.analytics_summary())
    return machine


# ---------------------------------------------------------------------------
# Analytics report
# ---------------------------------------------------------------------------


def show_analytics(save_path=DEFAULT_SAVE) -> None:
    machine = make_machine(None, save_path)
    s = machine.state
    print(f"Level {s.level} (max {s.max_level}), stability {s.stability:.0f}%, score {s.score}")
    print_analytics(machine.analytics_summary())
    sessions = machine.analytics.sessions
    if sessions:
        recent = [x for x in sessions if time.time() - x.timestamp < WEEK]
        print(f"  {len(recent)} session(s) this week, "
              f"{sum(1 for x in recent if time.time() - x.timestamp < DAY)} today")


def main():
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )

    parser = argparse.ArgumentParser(
        description="Play Relational Chain in the terminal"
    )
    parser.add_argument(
        "--seed", type=int, default=None,
        help="Random seed for puzzle generation (default: random)"
    )
    parser.add_argument(
        "--level", type=str, default=None,
        help="Starting level, 1-99 (invalid values are ignored)"
    )
    parser.add_argument(
        "--save", type=str, default=DEFAULT_SAVE,
        help=f"Save file (default: {DEFAULT_SAVE})"
    )
    parser.add_argument(
        "--practice", action="store_true",
        help="Start in practice mode"
    )
    parser.add_argument(
        "--agent", action="store_true",
        help="Run the sample agent instead of human play"
    )
    parser.add_argument(
        "--rounds", type=int, default=50,
        help="Rounds for agent mode (default: 50)"
    )
    parser.add_argument(
        "--analytics", action="store_true",
        help="Print the analytics report for the save file and exit"
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Log progression events"
    )

    args = parser.parse_args()
    if args.verbose:
        logging.getLogger().setLevel(logging.INFO)

    if args.analytics:
        show_analytics(args.save)
    elif args.agent:
        play_agent(seed=args.seed or 0, rounds=args.rounds, save_path=None, level=args.level)
    else:
        play_human(seed=args.seed, level=args.level, save_path=args.save, practice=args.practice)
    return 0


if __name__ == "__main__":
    sys.exit(main())
