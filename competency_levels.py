"""Competency level configuration loader."""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple


class CompetencyLevelConfigError(ValueError):
    """Raised when ``competency_levels.json`` contains invalid data."""


class CompetencyLevel(str, Enum):
    """Ordered competency tiers derived from the overall skill score."""

    FOUNDATION = "foundation"
    DEVELOPING = "developing"
    PROFICIENT = "proficient"
    ADVANCED = "advanced"

    @property
    def rank(self) -> int:
        return _LEVEL_ORDER.index(self)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, CompetencyLevel):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, CompetencyLevel):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, CompetencyLevel):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, CompetencyLevel):
            return NotImplemented
        return self.rank >= other.rank


_LEVEL_ORDER: Tuple[CompetencyLevel, ...] = (
    CompetencyLevel.FOUNDATION,
    CompetencyLevel.DEVELOPING,
    CompetencyLevel.PROFICIENT,
    CompetencyLevel.ADVANCED,
)

_UI_TIERS = ("simplified", "moderate", "full", "expert")


@dataclass(frozen=True)
class LevelDefinition:
    """Immutable representation of a competency level definition."""

    level: CompetencyLevel
    label: str
    description: str
    min_score: float
    ui_complexity: str
    recognition_target: float  # seconds
    completion_target: float  # seconds


class CompetencyLevelRegistry:
    """Load competency breakpoints from ``competency_levels.json``."""

    def __init__(self, path: str | Path | None = None) -> None:
        base_path = Path(__file__).resolve().parent
        self.path = Path(path) if path is not None else base_path / "competency_levels.json"
        self._levels: List[LevelDefinition] = []
        self.reload()

    # ------------------------------------------------------------------
    def reload(self) -> None:
        """Reload level definitions from disk and validate the structure."""

        if not self.path.exists():
            raise FileNotFoundError(f"Competency levels file not found: {self.path}")

        with self.path.open("r", encoding="utf-8") as fh:
            raw = json.load(fh)

        if not isinstance(raw, list):
            raise CompetencyLevelConfigError("Competency levels file must contain a JSON list")

        levels: List[LevelDefinition] = []
        seen: set[str] = set()
        for idx, entry in enumerate(raw, start=1):
            if not isinstance(entry, dict):
                raise CompetencyLevelConfigError(f"Entry #{idx} must be a JSON object")

            level_id = str(entry.get("id", "")).strip()
            if not level_id:
                raise CompetencyLevelConfigError(f"Entry #{idx} is missing a non-empty 'id'")
            try:
                level = CompetencyLevel(level_id)
            except ValueError as exc:
                raise CompetencyLevelConfigError(f"Unknown competency level: {level_id}") from exc
            if level_id in seen:
                raise CompetencyLevelConfigError(f"Duplicate competency level id detected: {level_id}")
            seen.add(level_id)

            try:
                min_score = float(entry.get("min_score"))
            except (TypeError, ValueError) as exc:
                raise CompetencyLevelConfigError(
                    f"Entry {level_id} has non-numeric min_score"
                ) from exc
            if not 0.0 <= min_score <= 100.0:
                raise CompetencyLevelConfigError(
                    f"Entry {level_id} min_score must be within [0, 100]"
                )

            ui_complexity = str(entry.get("ui_complexity", "simplified")).strip()
            if ui_complexity not in _UI_TIERS:
                raise CompetencyLevelConfigError(
                    f"Entry {level_id} has unknown ui_complexity '{ui_complexity}'"
                )

            try:
                recognition_target = float(entry.get("recognition_target", 30))
                completion_target = float(entry.get("completion_target", 900))
            except (TypeError, ValueError) as exc:
                raise CompetencyLevelConfigError(
                    f"Entry {level_id} has non-numeric targets"
                ) from exc

            levels.append(
                LevelDefinition(
                    level=level,
                    label=str(entry.get("label", level_id)).strip(),
                    description=str(entry.get("description", "")).strip(),
                    min_score=min_score,
                    ui_complexity=ui_complexity,
                    recognition_target=recognition_target,
                    completion_target=completion_target,
                )
            )

        if len(levels) != len(_LEVEL_ORDER):
            raise CompetencyLevelConfigError(
                f"Competency levels file must define all {len(_LEVEL_ORDER)} levels (found {len(levels)})"
            )

        levels.sort(key=lambda lvl: lvl.level.rank)
        if levels[0].min_score != 0.0:
            raise CompetencyLevelConfigError("The lowest competency level must start at 0")
        for lower, upper in zip(levels, levels[1:]):
            if upper.min_score <= lower.min_score:
                raise CompetencyLevelConfigError(
                    f"Breakpoints must increase with level ({lower.level.value} -> {upper.level.value})"
                )

        self._levels = levels

    # ------------------------------------------------------------------
    @property
    def levels(self) -> List[LevelDefinition]:
        """Return a shallow copy of the known level definitions."""

        return list(self._levels)

    def sequence(self) -> Sequence[CompetencyLevel]:
        return tuple(level.level for level in self._levels)

    def get(self, level: CompetencyLevel | str) -> LevelDefinition:
        key = CompetencyLevel(level)
        for definition in self._levels:
            if definition.level is key:
                return definition
        raise ValueError(f"Unknown competency level: {level}")

    def level_for(self, overall: float) -> CompetencyLevel:
        """Return the highest level whose breakpoint ``overall`` reaches."""

        selected = self._levels[0].level
        for definition in self._levels:
            if overall >= definition.min_score:
                selected = definition.level
        return selected

    def next_breakpoint(self, level: CompetencyLevel) -> Optional[float]:
        """Return the score that unlocks the level above ``level``, if any."""

        for definition in self._levels:
            if definition.level.rank == level.rank + 1:
                return definition.min_score
        return None

    def ui_complexity(self, level: CompetencyLevel) -> str:
        return self.get(level).ui_complexity

    # ------------------------------------------------------------------
    def __iter__(self) -> Iterable[LevelDefinition]:
        return iter(self._levels)


def ui_tier_rank(tier: str) -> int:
    return _UI_TIERS.index(tier) if tier in _UI_TIERS else 0


COMPETENCY_LEVELS = CompetencyLevelRegistry()
"""Read-only registry shared across modules (configuration, not session state)."""
