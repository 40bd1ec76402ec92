"""
Achievement persistence: the global rule catalog and the per-user
``userAchievements/{userId}`` document (xp, stats, unlocked map).

The user document is only ever changed through increments and merge writes,
so concurrent unlocks from several sessions cannot overwrite each other.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from classroom_sync.errors import SyncError
from classroom_sync.firestore_models import (
    AchievementRule, GamificationStats, UnlockedAchievement, UserAchievementState,
)
from classroom_sync.services.cache_first import CacheFirstExecutor
from classroom_sync.services.gamification import AchievementUnlock, evaluate
from classroom_sync.store import SERVER_TIMESTAMP, Increment, Query, RemoteStore

logger = logging.getLogger(__name__)

ACHIEVEMENTS = 'achievements'
USER_ACHIEVEMENTS = 'userAchievements'


def user_achievements_path(user_id: str) -> str:
    return f'{USER_ACHIEVEMENTS}/{user_id}'


class AchievementService:

    def __init__(self, store: RemoteStore, executor: Optional[CacheFirstExecutor] = None):
        self.store = store
        self.executor = executor or CacheFirstExecutor(store)
        self._rules: Optional[List[AchievementRule]] = None

    async def fetch_rules(self) -> List[AchievementRule]:
        """Active rules, read once per service lifetime. A failed read is
        logged and returns an empty list without being cached."""
        if self._rules is not None:
            return list(self._rules)
        try:
            snapshot = await self.executor.fetch(Query(ACHIEVEMENTS))
        except SyncError:
            logger.exception('Failed to fetch achievement rules')
            return []
        # Rules without a status count as active.
        rules = [AchievementRule.from_dict(doc.data, doc.id) for doc in snapshot]
        self._rules = [r for r in rules if r.is_active]
        return list(self._rules)

    def invalidate_rules(self):
        self._rules = None

    async def fetch_user_state(self, user_id: str) -> UserAchievementState:
        if not user_id:
            raise ValueError('user_id is required')
        path = user_achievements_path(user_id)
        try:
            doc = await self.executor.fetch_document(path, force_refresh=True)
            if doc is not None:
                return UserAchievementState.from_dict(doc.data)
            initial = UserAchievementState()
            data = initial.to_dict()
            data['updatedAt'] = SERVER_TIMESTAMP
            await self.store.set(path, data)
            logger.info('Created achievement document for %s', user_id)
            return initial
        except SyncError:
            logger.exception('Failed to load achievement state for %s', user_id)
            return UserAchievementState()

    async def award_xp(self, user_id: str, amount: int):
        if amount <= 0:
            return
        await self.store.set(user_achievements_path(user_id), {
            'xp': Increment(amount),
            'updatedAt': SERVER_TIMESTAMP,
        }, merge=True)

    async def increment_stat(self, user_id: str, criterion_type: str, amount: int = 1):
        field_name = GamificationStats.FIELDS.get(criterion_type)
        if field_name is None:
            raise ValueError(f'Unknown stat: {criterion_type}')
        await self.store.set(user_achievements_path(user_id), {
            'stats': {field_name: Increment(amount)},
            'updatedAt': SERVER_TIMESTAMP,
        }, merge=True)

    async def record_unlocks(self, user_id: str, unlocks: Iterable[AchievementUnlock],
                             when: Optional[datetime] = None) -> Dict[str, UnlockedAchievement]:
        when = when or datetime.now(timezone.utc)
        recorded = {u.id: UnlockedAchievement(date=when, seen=False) for u in unlocks}
        if not recorded:
            return {}
        await self.store.set(user_achievements_path(user_id), {
            'unlocked': {aid: entry.to_dict() for aid, entry in recorded.items()},
            'updatedAt': SERVER_TIMESTAMP,
        }, merge=True)
        logger.info('Unlocked %s for %s', ', '.join(recorded), user_id)
        return recorded

    async def mark_seen(self, user_id: str, achievement_ids: Iterable[str]):
        updates = {f'unlocked.{aid}.seen': True for aid in achievement_ids}
        if not updates:
            return
        updates['updatedAt'] = SERVER_TIMESTAMP
        await self.store.update(user_achievements_path(user_id), updates)

    async def check_and_unlock(self, user_id: str, state: UserAchievementState) -> List[AchievementUnlock]:
        """Evaluate the rules against ``state`` and persist new unlocks.
        ``state.unlocked`` is updated in place with what was recorded."""
        rules = await self.fetch_rules()
        unlocks = evaluate(state.stats, rules, state.unlocked)
        if not unlocks:
            return []
        recorded = await self.record_unlocks(user_id, unlocks)
        state.unlocked.update(recorded)
        return unlocks
