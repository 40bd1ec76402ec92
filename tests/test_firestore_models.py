from datetime import datetime, timedelta, timezone

from classroom_sync.firestore_models import (
    ORIGIN_BROADCAST, Activity, ClassStudent, Notification, SchoolClass, Submission,
    UserAchievementState, coerce_datetime, parse_datetime,
)


class TestDatetimes:
    """Test timestamp normalization."""

    def test_parse_variants(self):
        """Test datetimes, ISO strings and epoch milliseconds."""
        expected = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

        assert parse_datetime(expected) == expected
        assert parse_datetime(datetime(2026, 3, 1, 12, 0)) == expected
        assert parse_datetime('2026-03-01T12:00:00Z') == expected
        assert parse_datetime(int(expected.timestamp() * 1000)) == expected

    def test_unparseable(self):
        """Test that garbage parses to None and coerces to now."""
        assert parse_datetime('not a date') is None
        assert parse_datetime(True) is None
        assert parse_datetime({'seconds': 1}) is None
        assert abs(coerce_datetime(None) - datetime.now(timezone.utc)) < timedelta(seconds=5)


class TestClassModels:
    """Test class documents."""

    def test_legacy_student_ids(self):
        """Test that bare student ids in the students array are accepted."""
        cls = SchoolClass.from_dict({'students': ['s1', {'id': 's2', 'name': 'Two'}]}, 'c1')

        assert cls.students == [ClassStudent(id='s1'), ClassStudent(id='s2', name='Two')]
        assert cls.has_student('s1')
        assert not cls.has_student('s3')

    def test_malformed_counters(self):
        """Test that bad counters default to zero."""
        cls = SchoolClass.from_dict({'studentCount': 'many', 'noticeCount': None}, 'c1')

        assert cls.student_count == 0
        assert cls.notice_count == 0


class TestActivityModels:
    """Test activities and submissions."""

    def test_submission_lookup_and_display(self):
        """Test finding a student's submission and formatting its grade."""
        activity = Activity.from_dict({
            'points': 10,
            'submissions': [
                {'studentId': 's1', 'status': 'Graded', 'grade': 7.5},
                {'studentId': 's2', 'status': 'AwaitingGrading'},
                'garbage',
            ],
        }, 'a1')

        assert len(activity.submissions) == 2
        assert activity.submission_for('s1').grade_display(activity.points) == '7.5/10'
        assert activity.submission_for('s2').grade_display(activity.points) == '-'
        assert activity.submission_for('s3') is None

    def test_submission_id_fallback(self):
        """Test that the record id is used when studentId is missing."""
        assert Submission.from_dict({'content': 'x'}, 's9').student_id == 's9'


class TestNotificationModels:
    """Test notification parsing and visibility."""

    def test_broadcast_read_flag_is_ignored(self):
        """Test that broadcasts are always parsed as unread."""
        n = Notification.from_dict({'read': True, 'classId': 'c1'}, 'b1', origin=ORIGIN_BROADCAST)

        assert n.is_broadcast
        assert n.read is False
        assert 'read' not in n.to_dict()

    def test_visibility(self):
        """Test the private window and broadcast expiry."""
        now = datetime.now(timezone.utc)
        window = timedelta(days=7)

        assert Notification(timestamp=now - timedelta(days=6)).is_visible(now, window)
        assert not Notification(timestamp=now - timedelta(days=8)).is_visible(now, window)
        assert Notification(origin=ORIGIN_BROADCAST, expires_at=now + timedelta(days=1)).is_visible(now, window)
        assert not Notification(origin=ORIGIN_BROADCAST, expires_at=now).is_visible(now, window)


class TestAchievementModels:
    """Test the per-user achievement document."""

    def test_round_trip_fields(self):
        """Test reading stats and unlocked entries."""
        state = UserAchievementState.from_dict({
            'xp': 250,
            'stats': {'quizzesCompleted': 3, 'modulesCompleted': '2'},
            'unlocked': {'first_quiz': {'date': '2026-03-01T00:00:00+00:00', 'seen': True}},
        })

        assert state.level == 3
        assert state.stats.counter_for('quizzes') == 3
        assert state.stats.counter_for('modules') == 2
        assert state.stats.counter_for('loginStreak') is None
        assert state.unlocked['first_quiz'].seen
        assert state.to_dict()['unlocked']['first_quiz']['date'].startswith('2026-03-01')

    def test_negative_xp(self):
        """Test that negative XP reads as zero."""
        assert UserAchievementState.from_dict({'xp': -10}).xp == 0
