"""
Student-side data service: enrolled classes, the paginated activity feed,
quizzes, modules, achievements and the student's own writes.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from classroom_sync.errors import (
    AlreadyGraded, AlreadyMember, DocumentNotFound, InvalidClassCode, StoreError,
)
from classroom_sync.firestore_models import (
    AWAITING_GRADING, GRADED, Activity, AchievementRule, Module, Quiz, QuizResult, SchoolClass,
    Submission, UserAchievementState,
)
from classroom_sync.services.achievements import user_achievements_path
from classroom_sync.services.base import (
    ACTIVITIES, CLASSES, USERS, BaseDataService, replace_submission, submission_path,
)
from classroom_sync.services.gamification import UserStats, quiz_xp, user_stats
from classroom_sync.services.pagination import PaginationLoader
from classroom_sync.store import (
    DESCENDING, SERVER_TIMESTAMP, ArrayUnion, Increment, Query,
)

logger = logging.getLogger(__name__)

CONTENT_ACTIVE = 'active'


def quiz_results_collection(user_id: str) -> str:
    return f'{USERS}/{user_id}/quiz_results'


class StudentDataService(BaseDataService):
    role = 'student'

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.quizzes: List[Quiz] = []
        self.modules: List[Module] = []
        self.achievements_view: List[Dict[str, Any]] = []
        self.achievement_state = UserAchievementState()
        self.user_stats: UserStats = user_stats(0)
        self.activity_feed = PaginationLoader(
            self.executor,
            self._activities_query,
            page_size=self.config.ACTIVITIES_PAGE_SIZE,
            parse=self._parse_activity,
        )

    # -- Queries -------------------------------------------------------------

    @staticmethod
    def _activities_query(class_ids) -> Query:
        return (Query(ACTIVITIES)
                .where('classId', 'in', list(class_ids))
                .where('isVisible', '==', True))

    def _classes_query(self) -> Query:
        return Query(CLASSES).where('studentIds', 'array_contains', self.user.id)

    def _catalog_queries(self):
        quizzes = Query('quizzes').where('status', '==', CONTENT_ACTIVE)
        modules = (Query('modules')
                   .where('status', '==', CONTENT_ACTIVE)
                   .where('visibility', '==', 'public'))
        if self.user.series:
            quizzes = quizzes.where('series', 'array_contains', self.user.series)
            modules = modules.where('series', 'array_contains', self.user.series)
        return [quizzes, modules, Query(quiz_results_collection(self.user.id))]

    @staticmethod
    def _class_modules_query(class_ids) -> Query:
        return (Query('modules')
                .where('status', '==', CONTENT_ACTIVE)
                .where('classIds', 'array_contains_any', list(class_ids)))

    def _parse_activity(self, doc) -> Activity:
        activity = Activity.from_dict(doc.data, doc.id)
        if not activity.class_name:
            cls = self.find_class(activity.class_id)
            activity.class_name = cls.name if cls else 'Class'
        return activity

    # -- Loading -------------------------------------------------------------

    async def _load(self, force_refresh: bool):
        snapshot = await self.executor.fetch(self._classes_query(), force_refresh)
        self.classes = [SchoolClass.from_dict(doc.data, doc.id) for doc in snapshot]
        class_ids = self.class_ids

        quizzes_snap, modules_snap, results_snap = await self.executor.fetch_many(
            self._catalog_queries(), force_refresh)
        class_modules_snap = await self.executor.fetch_chunked(
            self._class_modules_query, class_ids, force_refresh)

        attempts = {doc.id: QuizResult.from_dict(doc.data, doc.id).attempts for doc in results_snap}
        self.quizzes = []
        for doc in quizzes_snap:
            quiz = Quiz.from_dict(doc.data, doc.id)
            quiz.attempts = attempts.get(quiz.id, 0)
            self.quizzes.append(quiz)

        modules: Dict[str, Module] = {}
        for doc in list(modules_snap) + list(class_modules_snap):
            modules.setdefault(doc.id, Module.from_dict(doc.data, doc.id))
        profile = await self.executor.fetch_document(f'{USERS}/{self.user.id}', force_refresh)
        progress = (profile.get('modulesProgress') if profile else None) or {}
        for module in modules.values():
            entry = progress.get(module.id)
            module.progress = int(entry.get('progress', 0)) if isinstance(entry, dict) else 0
        self.modules = list(modules.values())

        rules = await self.achievements.fetch_rules()
        self.achievement_state = await self.achievements.fetch_user_state(self.user.id)
        self.user_stats = user_stats(self.achievement_state.xp)
        self._merge_achievements(rules)

        await self.activity_feed.load_first_page(class_ids, force_refresh)

    def _merge_achievements(self, rules: List[AchievementRule]):
        view = []
        for rule in rules:
            entry = self.achievement_state.unlocked.get(rule.id)
            view.append({
                'rule': rule,
                'unlocked': entry is not None,
                'date': entry.date if entry else None,
                'seen': entry.seen if entry else False,
            })
        self.achievements_view = view

    def _broadcast_class_ids(self) -> List[str]:
        return self.class_ids

    # -- Activity feed -------------------------------------------------------

    @property
    def activities(self) -> List[Activity]:
        return self.activity_feed.items

    @property
    def has_more_activities(self) -> bool:
        return self.activity_feed.has_more

    @property
    def is_loading_more_activities(self) -> bool:
        return self.activity_feed.is_loading

    def find_activity(self, activity_id: str) -> Optional[Activity]:
        for activity in self.activities:
            if activity.id == activity_id:
                return activity
        return None

    async def load_more_activities(self) -> List[Activity]:
        try:
            return await self.activity_feed.load_next_page()
        except StoreError:
            logger.exception('Failed to load more activities for %s', self.user.id)
            self.notices.flash('Failed to load more activities.', 'danger')
            return []

    async def fetch_class_history(self, class_id: str) -> List[Activity]:
        """Load the latest activities of one class and merge them into the feed."""
        query = (Query(ACTIVITIES)
                 .where('classId', '==', class_id)
                 .where('isVisible', '==', True)
                 .order('createdAt', DESCENDING)
                 .limited(self.config.CLASS_HISTORY_LIMIT))
        try:
            snapshot = await self.executor.fetch(query)
        except StoreError:
            logger.exception('Failed to load history of class %s', class_id)
            self.notices.flash('Failed to load the class history.', 'danger')
            return []
        fetched = [self._parse_activity(doc) for doc in snapshot]
        self.activity_feed.merge_window(fetched)
        return fetched

    @property
    def grade_report(self) -> Dict[str, Dict[str, Any]]:
        """Graded submissions of this student, grouped by class and unidade."""
        report = {cls.id: {'class_name': cls.name, 'unidades': {}} for cls in self.classes}
        for activity in self.activities:
            class_report = report.get(activity.class_id)
            if class_report is None or not activity.unidade:
                continue
            submission = activity.submission_for(self.user.id)
            if submission is None or not submission.is_graded or submission.grade is None:
                continue
            unit = class_report['unidades'].setdefault(
                activity.unidade, {'total_points': 0, 'activities': []})
            unit['total_points'] += submission.grade
            unit['activities'].append({
                'id': activity.id,
                'title': activity.title,
                'grade': submission.grade,
                'max_points': activity.points,
            })
        return report

    # -- Quizzes -------------------------------------------------------------

    async def complete_quiz(self, quiz_id: str, title: str, score: int, total: int) -> int:
        """Record a quiz attempt. Returns the XP earned: score * 10 on the
        first attempt, 0 afterwards or when saving fails."""
        result_path = f'{quiz_results_collection(self.user.id)}/{quiz_id}'
        outcome = {}

        async def _commit_tx(tx):
            existing = await tx.get(result_path)
            previous = QuizResult.from_dict(existing.data, quiz_id) if existing else None
            previous_attempts = previous.attempts if previous else 0
            xp = quiz_xp(score, previous_attempts)
            tx.set(result_path, {
                'quizId': quiz_id,
                'title': title,
                'lastScore': score,
                'totalQuestions': total,
                'lastCompletedAt': SERVER_TIMESTAMP,
                'attempts': Increment(1),
                'bestScore': max(previous.best_score, score) if previous else score,
            }, merge=True)
            first = previous_attempts == 0
            if first:
                tx.set(user_achievements_path(self.user.id), {
                    'xp': Increment(xp),
                    'stats': {'quizzesCompleted': Increment(1)},
                    'updatedAt': SERVER_TIMESTAMP,
                }, merge=True)
            return xp, first

        async def commit():
            outcome['xp'], outcome['first'] = await self.store.run_transaction(_commit_tx)

        ok = await self.reconciler.run(f'complete quiz {quiz_id}', commit,
                                       error_message='Failed to save your result.')
        if not ok:
            return 0

        xp = outcome['xp']
        for quiz in self.quizzes:
            if quiz.id == quiz_id:
                quiz.attempts += 1
        if outcome['first']:
            self.achievement_state.xp += xp
            self.achievement_state.stats.quizzes_completed += 1
            self.user_stats = user_stats(self.achievement_state.xp)

        if xp > 0:
            self.notices.flash(f'Congratulations! You earned {xp} XP!', 'success')
        elif not outcome['first']:
            self.notices.flash('Quiz completed! (No extra XP for repeat attempts)', 'info')
        else:
            self.notices.flash('Quiz completed! (No correct answers, no XP)', 'info')

        if outcome['first']:
            await self._check_achievements()
        return xp

    async def _check_achievements(self):
        try:
            unlocks = await self.achievements.check_and_unlock(self.user.id, self.achievement_state)
        except StoreError:
            logger.exception('Failed to record achievements for %s', self.user.id)
            return
        for unlock in unlocks:
            self.notices.flash(f'Achievement unlocked: {unlock.rule.title}!', 'success')
        if unlocks:
            self._merge_achievements(await self.achievements.fetch_rules())

    async def mark_achievements_seen(self, achievement_ids=None) -> bool:
        ids = [aid for aid, entry in self.achievement_state.unlocked.items()
               if not entry.seen and (achievement_ids is None or aid in achievement_ids)]
        if not ids:
            return True
        previous = {aid: self.achievement_state.unlocked[aid].seen for aid in ids}

        def apply():
            for aid in ids:
                self.achievement_state.unlocked[aid].seen = True

        def rollback():
            for aid, seen in previous.items():
                self.achievement_state.unlocked[aid].seen = seen

        return await self.reconciler.run(
            'mark achievements seen',
            commit=lambda: self.achievements.mark_seen(self.user.id, ids),
            apply=apply, rollback=rollback,
        )

    # -- Activities ----------------------------------------------------------

    async def submit_activity(self, activity_id: str, content: str) -> bool:
        """Submit (or resubmit, while ungraded) this student's answer."""
        activity_path = f'{ACTIVITIES}/{activity_id}'
        record = Submission(
            student_id=self.user.id,
            student_name=self.user.name,
            content=content,
            status=AWAITING_GRADING,
            submitted_at=datetime.now(timezone.utc),
        ).to_dict()
        local = self.find_activity(activity_id)
        previous = list(local.submissions) if local else None
        outcome = {}

        async def _commit_tx(tx):
            doc = await tx.get(activity_path)
            if doc is None:
                raise DocumentNotFound('This activity no longer exists.')
            existing = await tx.get(submission_path(activity_id, self.user.id))
            if existing is not None and existing.get('status') == GRADED:
                raise AlreadyGraded('This activity has already been graded.')
            tx.set(submission_path(activity_id, self.user.id), record)
            update = {
                'submissions': replace_submission(doc.get('submissions') or [], record),
                'status': 'pending',
            }
            first = existing is None
            if first:
                update['submissionCount'] = Increment(1)
                update['pendingSubmissionCount'] = Increment(1)
                tx.set(user_achievements_path(self.user.id), {
                    'stats': {'activitiesCompleted': Increment(1)},
                    'updatedAt': SERVER_TIMESTAMP,
                }, merge=True)
            tx.update(activity_path, update)
            return doc.data, first

        async def commit():
            outcome['activity'], outcome['first'] = await self.store.run_transaction(_commit_tx)

        def apply():
            if local is not None:
                others = [s for s in local.submissions if s.student_id != self.user.id]
                local.submissions = others + [Submission.from_dict(record)]

        def rollback():
            if local is not None:
                local.submissions = previous

        ok = await self.reconciler.run(
            f'submit activity {activity_id}', commit, apply=apply, rollback=rollback,
            success_message='Activity submitted successfully!',
            error_message='Failed to submit the activity.',
        )
        if not ok:
            return False

        data = outcome['activity']
        if data.get('creatorId'):
            await self._notify_user(
                data['creatorId'], 'activity_submission', 'New submission received',
                f'{self.user.name} submitted an answer to "{data.get("title", "")}".',
                class_id=data.get('classId'), activity_id=activity_id,
                deep_link={'page': 'activities', 'activityId': activity_id},
            )
        if outcome['first']:
            self.achievement_state.stats.activities_completed += 1
            await self._check_achievements()
        return True

    # -- Classes -------------------------------------------------------------

    async def join_class(self, code: str) -> bool:
        """Join a class by its code. Membership is checked and granted in one
        transaction, so concurrent joins cannot add the student twice."""
        code = (code or '').strip().upper()

        async def commit():
            if not code:
                raise InvalidClassCode()
            snapshot = await self.executor.fetch(Query(CLASSES).where('code', '==', code), force_refresh=True)
            if snapshot.empty:
                raise InvalidClassCode()
            found = snapshot.documents[0]
            if SchoolClass.from_dict(found.data, found.id).has_student(self.user.id):
                raise AlreadyMember()

            async def _join(tx):
                doc = await tx.get(found.path)
                if doc is None:
                    raise DocumentNotFound('Class not found.')
                cls = SchoolClass.from_dict(doc.data, doc.id)
                if cls.has_student(self.user.id):
                    raise AlreadyMember()
                tx.update(found.path, {
                    'students': ArrayUnion([{
                        'id': self.user.id,
                        'name': self.user.name or '',
                        'avatarUrl': self.user.avatar_url,
                    }]),
                    'studentIds': ArrayUnion([self.user.id]),
                    'studentCount': Increment(1),
                })
                if cls.teacher_id:
                    tx.set(f'teacher_history/{cls.teacher_id}', {
                        'totalStudents': Increment(1),
                        'lastUpdated': SERVER_TIMESTAMP,
                    }, merge=True)

            await self.store.run_transaction(_join)

        ok = await self.reconciler.run(
            f'join class {code}', commit,
            success_message='Joined the class successfully!',
            error_message='Failed to join the class.',
        )
        if ok:
            await self.refresh(force_refresh=True)
        return ok

    # -- Modules -------------------------------------------------------------

    def find_module(self, module_id: str) -> Optional[Module]:
        for module in self.modules:
            if module.id == module_id:
                return module
        return None

    async def update_module_progress(self, module_id: str, progress: float) -> bool:
        clean = min(max(int(math.floor(progress)), 0), 100)
        module = self.find_module(module_id)
        previous = module.progress if module else None

        def apply():
            if module is not None:
                module.progress = clean

        def rollback():
            if module is not None:
                module.progress = previous

        return await self.reconciler.run(
            f'update progress of module {module_id}',
            commit=lambda: self.store.set(f'{USERS}/{self.user.id}', {
                'modulesProgress': {module_id: {'progress': clean, 'lastUpdated': SERVER_TIMESTAMP}},
            }, merge=True),
            apply=apply, rollback=rollback,
            error_message='Failed to save your progress.',
        )

    async def complete_module(self, module_id: str) -> bool:
        """Mark a module 100% complete; the completion counter only moves the
        first time a module is completed."""
        user_path = f'{USERS}/{self.user.id}'
        module = self.find_module(module_id)
        previous = module.progress if module else None
        outcome = {}

        async def _commit_tx(tx):
            doc = await tx.get(user_path)
            entry = ((doc.get('modulesProgress') if doc else None) or {}).get(module_id)
            first = not (isinstance(entry, dict) and entry.get('progress', 0) >= 100)
            tx.set(user_path, {
                'modulesProgress': {module_id: {'progress': 100, 'completedAt': SERVER_TIMESTAMP}},
            }, merge=True)
            if first:
                tx.set(user_achievements_path(self.user.id), {
                    'stats': {'modulesCompleted': Increment(1)},
                    'updatedAt': SERVER_TIMESTAMP,
                }, merge=True)
            return first

        async def commit():
            outcome['first'] = await self.store.run_transaction(_commit_tx)

        def apply():
            if module is not None:
                module.progress = 100

        def rollback():
            if module is not None:
                module.progress = previous

        ok = await self.reconciler.run(
            f'complete module {module_id}', commit, apply=apply, rollback=rollback,
            error_message='Failed to complete the module.',
        )
        if ok and outcome['first']:
            self.achievement_state.stats.modules_completed += 1
            await self._check_achievements()
        return ok
