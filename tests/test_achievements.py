import pytest

from classroom_sync.errors import StoreUnavailable
from classroom_sync.firestore_models import GamificationStats, UserAchievementState
from classroom_sync.services.achievements import AchievementService, user_achievements_path

from seed import seed_store


@pytest.fixture
def service(store):
    return AchievementService(store)


class TestRules:
    """Test reading the achievement rule catalog."""

    @pytest.mark.asyncio
    async def test_rules_are_read_once(self, store, service):
        """Test that active rules are cached for the service lifetime."""
        await seed_store(store)
        store.seed_document('achievements/retired', {'title': 'Old', 'criterionType': 'quizzes',
                                                     'criterionCount': 1, 'status': 'inactive'})
        store.clear_cache()

        rules = await service.fetch_rules()
        reads = store.server_reads
        again = await service.fetch_rules()

        assert sorted(r.id for r in rules) == ['first_activity', 'first_module', 'first_quiz', 'quiz_master']
        assert [r.id for r in again] == [r.id for r in rules]
        assert store.server_reads == reads

    @pytest.mark.asyncio
    async def test_rule_without_status_is_active(self, store, service):
        """Test that only rules explicitly marked inactive are skipped."""
        store.seed_document('achievements/legacy', {'title': 'Legacy', 'criterionType': 'quizzes',
                                                    'criterionCount': 1})
        store.seed_document('achievements/retired', {'title': 'Old', 'criterionType': 'quizzes',
                                                     'criterionCount': 1, 'status': 'inactive'})

        rules = await service.fetch_rules()

        assert [r.id for r in rules] == ['legacy']

    @pytest.mark.asyncio
    async def test_failed_read_is_not_cached(self, store, service):
        """Test that a failed rule read returns nothing and is retried next time."""
        await seed_store(store)
        store.clear_cache()
        store.inject_failure('query', times=1)

        assert await service.fetch_rules() == []
        assert len(await service.fetch_rules()) == 4


class TestUserState:
    """Test the per-user achievement document."""

    @pytest.mark.asyncio
    async def test_missing_document_is_created(self, store, service):
        """Test that the first read creates a zeroed document."""
        state = await service.fetch_user_state('u1')

        assert state.xp == 0
        assert state.level == 1
        assert store.server_document(user_achievements_path('u1'))['stats']['quizzesCompleted'] == 0

    @pytest.mark.asyncio
    async def test_failure_yields_default_state(self, store, service):
        """Test that a store failure returns an empty state instead of raising."""
        store.offline = True

        state = await service.fetch_user_state('u1')

        assert state == UserAchievementState()

    @pytest.mark.asyncio
    async def test_empty_user_id(self, service):
        """Test that a user id is required."""
        with pytest.raises(ValueError):
            await service.fetch_user_state('')

    @pytest.mark.asyncio
    async def test_increments(self, store, service):
        """Test that XP and stats are changed through increments."""
        await service.fetch_user_state('u1')

        await service.award_xp('u1', 30)
        await service.award_xp('u1', 20)
        await service.award_xp('u1', 0)
        await service.increment_stat('u1', 'quizzes')

        data = store.server_document(user_achievements_path('u1'))
        assert data['xp'] == 50
        assert data['stats']['quizzesCompleted'] == 1
        assert data['stats']['modulesCompleted'] == 0

    @pytest.mark.asyncio
    async def test_unknown_stat(self, service):
        """Test that only counted criteria can be incremented."""
        with pytest.raises(ValueError):
            await service.increment_stat('u1', 'loginStreak')


class TestUnlocks:
    """Test evaluating and persisting unlocks."""

    @pytest.mark.asyncio
    async def test_check_and_unlock(self, store, service):
        """Test that satisfied rules are recorded once and merged into the state."""
        await seed_store(store)
        state = await service.fetch_user_state('u1')
        state.stats = GamificationStats(quizzes_completed=1)

        unlocks = await service.check_and_unlock('u1', state)
        again = await service.check_and_unlock('u1', state)

        assert [u.id for u in unlocks] == ['first_quiz']
        assert again == []
        stored = store.server_document(user_achievements_path('u1'))
        assert stored['unlocked']['first_quiz']['seen'] is False
        assert 'first_quiz' in state.unlocked

    @pytest.mark.asyncio
    async def test_mark_seen(self, store, service):
        """Test that unlocked achievements can be flagged as seen."""
        await seed_store(store)
        state = await service.fetch_user_state('u1')
        state.stats = GamificationStats(quizzes_completed=3)
        await service.check_and_unlock('u1', state)

        await service.mark_seen('u1', ['first_quiz'])

        unlocked = store.server_document(user_achievements_path('u1'))['unlocked']
        assert unlocked['first_quiz']['seen'] is True
        assert unlocked['quiz_master']['seen'] is False

    @pytest.mark.asyncio
    async def test_record_unlocks_failure_propagates(self, store, service):
        """Test that a failed unlock write is raised to the caller."""
        await seed_store(store)
        state = await service.fetch_user_state('u1')
        state.stats = GamificationStats(modules_completed=1)
        store.inject_failure('write', times=1)

        with pytest.raises(StoreUnavailable):
            await service.check_and_unlock('u1', state)
        assert state.unlocked == {}
