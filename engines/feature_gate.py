"""Progressive feature gate.

``compute_access`` maps a competency level and skill scores to the set of
features the rules table grants on its own.  Because some introductory
features are capped with ``max_level`` that function is not monotonic, so the
session-scoped :class:`ProgressiveFeatureGate` unions every evaluation with
the previous profile and emits milestones only for features and levels that
are new within the session.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, List, Mapping, Optional, Sequence, Union

from competency_levels import COMPETENCY_LEVELS, CompetencyLevel, CompetencyLevelRegistry, ui_tier_rank
from engines.skill_assessment import SkillScores

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeatureRule:
    feature: str
    min_level: CompetencyLevel = CompetencyLevel.FOUNDATION
    max_level: Optional[CompetencyLevel] = None
    min_scores: Mapping[str, float] = field(default_factory=dict)

    def grants(self, level: CompetencyLevel, scores: SkillScores) -> bool:
        if level < self.min_level:
            return False
        if self.max_level is not None and level > self.max_level:
            return False
        return all(scores.dimension(name) >= threshold for name, threshold in self.min_scores.items())


F, D, P, A = (
    CompetencyLevel.FOUNDATION,
    CompetencyLevel.DEVELOPING,
    CompetencyLevel.PROFICIENT,
    CompetencyLevel.ADVANCED,
)

FEATURE_RULES: Sequence[FeatureRule] = (
    # introductory surfaces, replaced as the level rises
    FeatureRule("basic_tools", F, max_level=D),
    FeatureRule("guided_tutorials", F, max_level=F),
    FeatureRule("implementation_basics", F, max_level=F),
    FeatureRule("methodology_introduction", F, max_level=F),
    FeatureRule("intermediate_customization", D, max_level=D),
    FeatureRule("best_practices", D, max_level=D),
    FeatureRule("methodology_development", D, max_level=D),
    FeatureRule("performance_insights", D),
    FeatureRule("all_tools", P),
    FeatureRule("advanced_customization", P),
    FeatureRule("analytics_dashboard", P),
    FeatureRule("optimization_recommendations", P, max_level=P),
    FeatureRule("methodology_mastery", P, max_level=P),
    FeatureRule("competitive_intelligence", A),
    FeatureRule("market_data", A),
    FeatureRule("strategic_insights", A),
    FeatureRule("thought_leadership_tools", A),
    # dimension-specific unlocks at any level
    FeatureRule("advanced_icp_analytics", min_scores={"customer_analysis": 80}),
    FeatureRule("competitive_analysis_tools", min_scores={"customer_analysis": 80}),
    FeatureRule("advanced_financial_modeling", min_scores={"value_communication": 80}),
    FeatureRule("market_benchmarking", min_scores={"value_communication": 80}),
    FeatureRule("executive_presentation_builder", min_scores={"executive_readiness": 80}),
    FeatureRule("strategic_communication_tools", min_scores={"executive_readiness": 80}),
    FeatureRule("revenue_intelligence_mastery", min_scores={"overall": 90}),
    FeatureRule("market_leadership_insights", min_scores={"overall": 90}),
)


def features_gated_at(level: CompetencyLevel, rules: Sequence[FeatureRule] = FEATURE_RULES) -> List[str]:
    """Features whose minimum level is exactly ``level``."""

    return [rule.feature for rule in rules if rule.min_level is level and not rule.min_scores]


def compute_access(
    level: CompetencyLevel,
    scores: SkillScores,
    rules: Sequence[FeatureRule] = FEATURE_RULES,
) -> FrozenSet[str]:
    """Features granted by the rules table alone (pure, non-monotonic)."""

    return frozenset(rule.feature for rule in rules if rule.grants(level, scores))


@dataclass(frozen=True)
class FeatureAccessProfile:
    features: FrozenSet[str]
    ui_complexity: str
    level: CompetencyLevel

    def to_dict(self) -> Dict[str, object]:
        return {
            "features": sorted(self.features),
            "ui_complexity": self.ui_complexity,
            "level": self.level.value,
        }


@dataclass(frozen=True)
class FeatureMilestone:
    user_id: str
    feature: str
    level: CompetencyLevel
    achieved_at: float
    kind: str = "feature"

    def to_dict(self) -> Dict[str, object]:
        return {
            "kind": self.kind,
            "user_id": self.user_id,
            "feature": self.feature,
            "level": self.level.value,
            "achieved_at": self.achieved_at,
        }


@dataclass(frozen=True)
class LevelMilestone:
    user_id: str
    previous_level: CompetencyLevel
    level: CompetencyLevel
    achieved_at: float
    kind: str = "level"

    def to_dict(self) -> Dict[str, object]:
        return {
            "kind": self.kind,
            "user_id": self.user_id,
            "previous_level": self.previous_level.value,
            "level": self.level.value,
            "achieved_at": self.achieved_at,
        }


Milestone = Union[FeatureMilestone, LevelMilestone]


class ProgressiveFeatureGate:
    """Session-scoped gate that only ever grows a user's feature set."""

    def __init__(
        self,
        *,
        rules: Sequence[FeatureRule] = FEATURE_RULES,
        registry: CompetencyLevelRegistry = COMPETENCY_LEVELS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.rules = tuple(rules)
        self.registry = registry
        self._clock = clock
        self._profiles: Dict[str, FeatureAccessProfile] = {}
        self._milestones: Dict[str, List[Milestone]] = {}

    def access(self, user_id: str, level: CompetencyLevel, scores: SkillScores) -> FeatureAccessProfile:
        granted = compute_access(level, scores, self.rules)
        previous = self._profiles.get(user_id)
        now = self._clock()
        issued = self._milestones.setdefault(user_id, [])

        if previous is None:
            features = granted
            top_level = level
        else:
            features = previous.features | granted
            top_level = max(previous.level, level)
            if level > previous.level:
                issued.append(
                    LevelMilestone(user_id=user_id, previous_level=previous.level, level=level, achieved_at=now)
                )
                logger.info("User %s advanced from %s to %s", user_id, previous.level.value, level.value)

        already = {m.feature for m in issued if isinstance(m, FeatureMilestone)}
        for feature in sorted(features - already):
            issued.append(FeatureMilestone(user_id=user_id, feature=feature, level=level, achieved_at=now))
            logger.info("Feature unlocked for %s: %s", user_id, feature)

        tier = self.registry.ui_complexity(top_level)
        if previous is not None and ui_tier_rank(previous.ui_complexity) > ui_tier_rank(tier):
            tier = previous.ui_complexity

        profile = FeatureAccessProfile(features=frozenset(features), ui_complexity=tier, level=top_level)
        self._profiles[user_id] = profile
        return profile

    def get_access(self, user_id: str) -> Optional[FeatureAccessProfile]:
        return self._profiles.get(user_id)

    def milestones(self, user_id: str) -> List[Milestone]:
        return list(self._milestones.get(user_id, ()))

    def reset(self) -> None:
        self._profiles.clear()
        self._milestones.clear()
