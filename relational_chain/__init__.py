"""Relational Chain: a spatial-reasoning trainer on a 7x7 grid."""

from relational_chain.analytics import AnalyticsAggregator, Outcome, TagKey
from relational_chain.generator import (
    FAILSAFE_PUZZLE,
    Frame,
    Instruction,
    LevelGenerator,
    Protocol,
    Puzzle,
)
from relational_chain.persistence import JsonFileStore, PersistenceGateway, Snapshot
from relational_chain.progression import GameState, GameStatus, ProgressionStateMachine
from relational_chain.vectors import Direction, invert, resolve

__all__ = [
    "AnalyticsAggregator",
    "Direction",
    "FAILSAFE_PUZZLE",
    "Frame",
    "GameState",
    "GameStatus",
    "Instruction",
    "JsonFileStore",
    "LevelGenerator",
    "Outcome",
    "PersistenceGateway",
    "ProgressionStateMachine",
    "Protocol",
    "Puzzle",
    "Snapshot",
    "TagKey",
    "invert",
    "resolve",
]
