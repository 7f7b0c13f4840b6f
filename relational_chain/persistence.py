"""Save-file handling.

Progress is kept in a small key/value JSON file. The current payload lives
under PRIMARY_KEY; older builds wrote under other keys with a camelCase
layout, which are migrated on first load.
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from relational_chain.analytics import AnalyticsAggregator

logger = logging.getLogger(__name__)

PRIMARY_KEY = "rft_trainer_universal_save_v4"
LEGACY_KEYS = [
    "rft_trainer_universal_save_v3",
    "rft_trainer_universal_save_v2",
    "rft_trainer_universal_save",
    "vector_frame_persistent_v4",
]


class SnapshotCorrupt(ValueError):
    """Persisted data could not be parsed or is missing required fields."""


@dataclass
class Snapshot:
    level: int
    max_level: int
    stability: float
    score: int
    analytics: AnalyticsAggregator = field(default_factory=AnalyticsAggregator)

    def to_dict(self) -> dict:
        return {
            "level": self.level,
            "max_level": self.max_level,
            "stability": self.stability,
            "score": self.score,
            "analytics": self.analytics.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Snapshot":
        try:
            level = int(data["level"])
            return cls(
                level=level,
                max_level=int(data.get("max_level", level)),
                stability=float(data["stability"]),
                score=int(data["score"]),
                analytics=AnalyticsAggregator.from_dict(data.get("analytics") or {}),
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise SnapshotCorrupt(f"Invalid snapshot: {e!r}") from e

    @classmethod
    def from_legacy(cls, data: dict) -> "Snapshot":
        try:
            level = int(data.get("currentLevel") or 1)
            stability = data.get("stability")
            return cls(
                level=level,
                max_level=int(data.get("maxLevel") or level),
                stability=50.0 if stability is None else float(stability),
                score=int(data.get("score") or 0),
                analytics=AnalyticsAggregator.from_legacy(data.get("analytics") or {}),
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise SnapshotCorrupt(f"Invalid legacy snapshot: {e!r}") from e


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class JsonFileStore:
    """Key/value pairs kept in a single JSON object on disk."""

    def __init__(self, path):
        self.path = Path(path)

    def _read(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            # ValueError covers bad JSON and bad UTF-8.
            raise SnapshotCorrupt(f"Cannot read {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise SnapshotCorrupt(f"{self.path} does not hold a JSON object")
        return data

    def get(self, key: str):
        return self._read().get(key)

    def set(self, key: str, value) -> None:
        try:
            data = self._read()
        except SnapshotCorrupt:
            logger.warning(f"Overwriting unreadable store {self.path}")
            data = {}
        data[key] = value

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp, self.path)
        except BaseException:
            os.unlink(tmp)
            raise


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class PersistenceGateway:
    def __init__(self, store):
        self.store = store

    def load(self) -> Optional[Snapshot]:
        payload = self.store.get(PRIMARY_KEY)
        if payload is not None:
            if not isinstance(payload, dict):
                raise SnapshotCorrupt(f"{PRIMARY_KEY} is not an object")
            return Snapshot.from_dict(payload)

        for key in LEGACY_KEYS:
            legacy = self.store.get(key)
            if legacy is None:
                continue
            if isinstance(legacy, str):
                # Old builds stored the payload as a JSON string.
                try:
                    legacy = json.loads(legacy)
                except json.JSONDecodeError as e:
                    raise SnapshotCorrupt(f"{key} is not valid JSON") from e
            if not isinstance(legacy, dict):
                raise SnapshotCorrupt(f"{key} is not an object")

            snapshot = Snapshot.from_legacy(legacy)
            self.save(snapshot)
            logger.info(f"Migrated save data from {key} to {PRIMARY_KEY}")
            return snapshot

        return None

    def save(self, snapshot: Snapshot) -> None:
        self.store.set(PRIMARY_KEY, snapshot.to_dict())
