"""
Achievement rules and XP/level arithmetic. Pure functions only: nothing here
reads or writes the store.
"""

from dataclasses import dataclass
from datetime import date
from typing import Iterable, List, Mapping, Optional

from classroom_sync.firestore_models import AchievementRule, GamificationStats

XP_PER_QUIZ_POINT = 10
XP_PER_LEVEL = 100


@dataclass(frozen=True)
class AchievementUnlock:
    rule: AchievementRule
    unlocked_on: date

    @property
    def id(self):
        return self.rule.id


@dataclass(frozen=True)
class UserStats:
    xp: int
    level: int
    xp_for_next_level: int
    level_name: str


def evaluate(stats: GamificationStats, rules: Iterable[AchievementRule], unlocked: Mapping[str, object],
             today: Optional[date] = None) -> List[AchievementUnlock]:
    """Return the rules newly satisfied by ``stats``.

    A rule is skipped when it is already unlocked, inactive, has no positive
    target or names a criterion we do not count. Output follows rule order.
    """
    today = today or date.today()
    unlocks = []
    for rule in rules:
        if rule.id in unlocked or not rule.is_active:
            continue
        if rule.criterion_count <= 0:
            continue
        counter = stats.counter_for(rule.criterion_type)
        if counter is None:
            continue
        if counter >= rule.criterion_count:
            unlocks.append(AchievementUnlock(rule, today))
    return unlocks


def quiz_xp(score: int, previous_attempts: int) -> int:
    """XP for a quiz completion; only the first attempt earns anything."""
    if previous_attempts > 0:
        return 0
    return max(int(score), 0) * XP_PER_QUIZ_POINT


def level_for_xp(xp: int) -> int:
    return max(int(xp), 0) // XP_PER_LEVEL + 1


def level_name(level: int) -> str:
    return 'Beginner' if level < 5 else 'Student'


def user_stats(xp: int) -> UserStats:
    xp = max(int(xp), 0)
    level = level_for_xp(xp)
    return UserStats(
        xp=xp,
        level=level,
        xp_for_next_level=level * XP_PER_LEVEL - xp,
        level_name=level_name(level),
    )
