from datetime import date

from classroom_sync.firestore_models import RULE_INACTIVE, AchievementRule, GamificationStats
from classroom_sync.services.gamification import evaluate, level_for_xp, quiz_xp, user_stats

TODAY = date(2026, 3, 2)


def _rule(rule_id, criterion, count, status='active'):
    return AchievementRule(id=rule_id, title=rule_id, criterion_type=criterion, criterion_count=count,
                           status=status)


RULES = [
    _rule('first_quiz', 'quizzes', 1),
    _rule('quiz_master', 'quizzes', 3),
    _rule('first_module', 'modules', 1),
    _rule('first_activity', 'activities', 1),
]


class TestEvaluate:
    """Test the achievement rule engine."""

    def test_threshold_reached(self):
        """Test that rules whose counter meets the target are returned in rule order."""
        stats = GamificationStats(quizzes_completed=3, activities_completed=1)

        unlocks = evaluate(stats, RULES, {}, today=TODAY)

        assert [u.id for u in unlocks] == ['first_quiz', 'quiz_master', 'first_activity']
        assert all(u.unlocked_on == TODAY for u in unlocks)

    def test_already_unlocked_rules_are_skipped(self):
        """Test that unlocked rules never fire twice."""
        stats = GamificationStats(quizzes_completed=5)

        unlocks = evaluate(stats, RULES, {'first_quiz': object()}, today=TODAY)

        assert [u.id for u in unlocks] == ['quiz_master']

    def test_below_threshold(self):
        """Test that nothing unlocks below the target."""
        assert evaluate(GamificationStats(quizzes_completed=2), RULES[1:2], {}, today=TODAY) == []

    def test_unknown_criterion_and_bad_targets(self):
        """Test that unknown criteria, non-positive targets and inactive rules are ignored."""
        stats = GamificationStats(quizzes_completed=10, modules_completed=10, login_streak=10)
        rules = [
            _rule('streak', 'loginStreak', 1),
            _rule('zero', 'quizzes', 0),
            _rule('negative', 'modules', -1),
            _rule('retired', 'quizzes', 1, status=RULE_INACTIVE),
            _rule('none', None, 1),
        ]

        assert evaluate(stats, rules, {}, today=TODAY) == []

    def test_pure(self):
        """Test that the same input yields the same output."""
        stats = GamificationStats(modules_completed=1)

        assert evaluate(stats, RULES, {}, today=TODAY) == evaluate(stats, RULES, {}, today=TODAY)


class TestXp:
    """Test XP and level arithmetic."""

    def test_quiz_xp_first_attempt_only(self):
        """Test that only the first attempt of a quiz earns XP."""
        assert quiz_xp(3, 0) == 30
        assert quiz_xp(5, 1) == 0
        assert quiz_xp(-2, 0) == 0

    def test_levels(self):
        """Test level boundaries every 100 XP."""
        assert level_for_xp(0) == 1
        assert level_for_xp(99) == 1
        assert level_for_xp(100) == 2
        assert level_for_xp(-50) == 1

    def test_user_stats(self):
        """Test derived level name and XP to the next level."""
        stats = user_stats(430)

        assert stats.level == 5
        assert stats.xp_for_next_level == 70
        assert stats.level_name == 'Student'
        assert user_stats(30).level_name == 'Beginner'
