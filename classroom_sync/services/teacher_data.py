"""
Teacher-side data service: owned classes, pending submissions, grading,
notices, co-teacher invitations and broadcast housekeeping.
"""

import asyncio
import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

from classroom_sync.errors import (
    AlreadyGraded, AlreadyTeacher, DocumentNotFound, InvalidGrade, InvitationPending, InviteeNotFound,
    NotATeacher, StoreError,
)
from classroom_sync.firestore_models import (
    ACTIVITY_PENDING, GRADED, Activity, AttendanceSession, ClassInvitation, ClassNotice, Module,
    SchoolClass, Submission, User,
)
from classroom_sync.services.base import (
    ACTIVITIES, CLASSES, USERS, BaseDataService, project_submissions, replace_submission,
    submission_path,
)
from classroom_sync.services.notifications import BROADCASTS
from classroom_sync.services.pagination import PaginationLoader
from classroom_sync.store import (
    MAX_BATCH_WRITES, SERVER_TIMESTAMP, ArrayUnion, BatchOp, Increment, Query,
)

logger = logging.getLogger(__name__)

INVITATIONS = 'invitations'
ATTENDANCE_SESSIONS = 'attendance_sessions'

CLASS_CODE_LENGTH = 6
CLASS_CODE_ATTEMPTS = 5
_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_class_code(length=CLASS_CODE_LENGTH) -> str:
    return ''.join(secrets.choice(_CODE_ALPHABET) for _ in range(length))


@dataclass
class PendingActivity:
    id: str
    title: str
    class_id: str
    class_name: str
    pending_count: int


class TeacherDataService(BaseDataService):
    role = 'teacher'

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.invitations: List[ClassInvitation] = []
        self.modules: List[Module] = []
        self.attendance_sessions: Dict[str, List[AttendanceSession]] = {}
        self._class_loaders: Dict[str, Dict[str, PaginationLoader]] = {}

    # -- Loading -------------------------------------------------------------

    async def _load(self, force_refresh: bool):
        classes_snap, pending_snap, modules_snap = await self.executor.fetch_many([
            Query(CLASSES).where('teachers', 'array_contains', self.user.id),
            Query(ACTIVITIES).where('creatorId', '==', self.user.id).where('status', '==', ACTIVITY_PENDING),
            Query('modules').where('creatorId', '==', self.user.id),
        ], force_refresh)

        classes = []
        for doc in classes_snap:
            cls = SchoolClass.from_dict(doc.data, doc.id)
            # Notices are shared by every teacher of the class; show only ours.
            cls.notices = [n for n in cls.notices if n.author_id == self.user.id]
            cls.notice_count = len(cls.notices)
            classes.append(cls)

        names = {c.id: c.name for c in classes}
        pending = []
        for doc in pending_snap:
            activity = Activity.from_dict(doc.data, doc.id)
            activity.class_name = activity.class_name or names.get(activity.class_id, 'Unknown class')
            pending.append(activity)
        for cls in classes:
            cls.activities = [a for a in pending if a.class_id == cls.id]

        # Invitations are always read from the server.
        invites_snap = await self.executor.fetch(
            Query(INVITATIONS).where('inviteeId', '==', self.user.id).where('status', '==', 'pending'),
            force_refresh=True)

        self.classes = classes
        self.modules = [Module.from_dict(doc.data, doc.id) for doc in modules_snap]
        self.invitations = [ClassInvitation.from_dict(doc.data, doc.id) for doc in invites_snap]
        self.attendance_sessions = {}
        self._class_loaders = {}

    # -- Derived views -------------------------------------------------------

    @property
    def pending_activities(self) -> List[PendingActivity]:
        pending = []
        for cls in self.classes:
            for activity in cls.activities:
                if activity.pending_submission_count > 0:
                    pending.append(PendingActivity(
                        id=activity.id,
                        title=activity.title,
                        class_id=cls.id,
                        class_name=activity.class_name or cls.name,
                        pending_count=activity.pending_submission_count,
                    ))
        return pending

    @property
    def dashboard_stats(self) -> Dict[str, int]:
        pending = self.pending_activities
        return {
            'total_classes': len(self.classes),
            'total_students': sum(c.student_count or len(c.students) for c in self.classes),
            'total_modules_created': sum(1 for m in self.modules if m.creator_id == self.user.id),
            'total_pending_submissions': sum(p.pending_count for p in pending),
        }

    def find_activity(self, activity_id: str) -> Optional[Activity]:
        for cls in self.classes:
            for activity in cls.activities:
                if activity.id == activity_id:
                    return activity
        return None

    # -- Class details -------------------------------------------------------

    def _loaders_for(self, class_id: str) -> Dict[str, PaginationLoader]:
        loaders = self._class_loaders.get(class_id)
        if loaders is None:
            cls = self.find_class(class_id)

            def parse_activity(doc):
                activity = Activity.from_dict(doc.data, doc.id)
                activity.class_name = activity.class_name or (cls.name if cls else 'Class')
                return activity

            loaders = {
                'activities': PaginationLoader(
                    self.executor,
                    lambda _: (Query(ACTIVITIES)
                               .where('classId', '==', class_id)
                               .where('creatorId', '==', self.user.id)),
                    page_size=self.config.CLASS_HISTORY_LIMIT,
                    parse=parse_activity,
                ),
                'sessions': PaginationLoader(
                    self.executor,
                    lambda _: (Query(ATTENDANCE_SESSIONS)
                               .where('classId', '==', class_id)
                               .where('teacherId', '==', self.user.id)),
                    page_size=self.config.ATTENDANCE_SESSION_LIMIT,
                    order_by='date',
                    parse=lambda doc: AttendanceSession.from_dict(doc.data, doc.id),
                ),
            }
            self._class_loaders[class_id] = loaders
        return loaders

    async def fetch_class_details(self, class_id: str, force_refresh: bool = False) -> bool:
        """Lazily load a class's latest activities and attendance sessions."""
        cls = self.find_class(class_id)
        if cls is not None and cls.is_fully_loaded and not force_refresh:
            return True
        loaders = self._loaders_for(class_id)
        try:
            await asyncio.gather(
                loaders['activities'].load_first_page([class_id], force_refresh),
                loaders['sessions'].load_first_page([class_id], force_refresh),
            )
        except StoreError:
            logger.exception('Failed to load details of class %s', class_id)
            self.notices.flash('Failed to load class details.', 'danger')
            return False
        if cls is not None:
            cls.activities = list(loaders['activities'].items)
            cls.is_fully_loaded = True
        self.attendance_sessions[class_id] = list(loaders['sessions'].items)
        return True

    async def load_more_class_activities(self, class_id: str) -> List[Activity]:
        loader = self._loaders_for(class_id)['activities']
        try:
            added = await loader.load_next_page()
        except StoreError:
            logger.exception('Failed to load more activities of class %s', class_id)
            self.notices.flash('Failed to load more activities.', 'danger')
            return []
        cls = self.find_class(class_id)
        if cls is not None:
            cls.activities = list(loader.items)
        return added

    # -- Notices -------------------------------------------------------------

    async def post_notice(self, class_id: str, text: str) -> bool:
        now = datetime.now(timezone.utc)
        notice = ClassNotice(
            id=str(int(now.timestamp() * 1000)),
            text=text,
            author=self.user.name,
            author_id=self.user.id,
            timestamp=now,
        )
        cls = self.find_class(class_id)
        class_path = f'{CLASSES}/{class_id}'

        def apply():
            if cls is not None:
                cls.notices.insert(0, notice)
                cls.notice_count += 1

        def rollback():
            if cls is not None and notice in cls.notices:
                cls.notices.remove(notice)
                cls.notice_count = max(cls.notice_count - 1, 0)

        async def _commit_tx(tx):
            doc = await tx.get(class_path)
            if doc is None:
                raise DocumentNotFound('Class not found.')
            current = doc.get('notices') or []
            tx.update(class_path, {
                'notices': [notice.to_dict()] + list(current),
                'noticeCount': Increment(1),
            })

        async def commit():
            await self.store.run_transaction(_commit_tx)
            await self._broadcast(
                class_id, 'notice_post', 'New notice',
                f'Teacher {self.user.name}: "{text}"',
                deep_link={'page': 'join_class'},
            )

        return await self.reconciler.run(
            f'post notice to {class_id}', commit, apply=apply, rollback=rollback,
            success_message='Notice posted!', error_message='Failed to post the notice.',
        )

    # -- Classes -------------------------------------------------------------

    async def _unique_class_code(self) -> str:
        for _ in range(CLASS_CODE_ATTEMPTS):
            code = generate_class_code()
            taken = await self.store.query(Query(CLASSES).where('code', '==', code).limited(1))
            if taken.empty:
                return code
        raise StoreError('Could not generate a unique class code')

    async def create_class(self, name: str) -> Optional[str]:
        outcome = {}

        async def commit():
            code = await self._unique_class_code()
            payload = {
                'name': name,
                'teacherId': self.user.id,
                'teachers': [self.user.id],
                'subjects': {self.user.id: 'Homeroom'},
                'teacherNames': {self.user.id: self.user.name},
                'code': code,
                'students': [],
                'studentIds': [],
                'studentCount': 0,
                'notices': [],
                'noticeCount': 0,
                'createdAt': SERVER_TIMESTAMP,
            }
            class_id = await self.store.add(CLASSES, payload)
            cls = SchoolClass.from_dict(dict(payload, createdAt=datetime.now(timezone.utc)), class_id)
            cls.is_fully_loaded = True
            outcome['class'] = cls

        ok = await self.reconciler.run(f'create class {name}', commit,
                                       success_message='Class created!',
                                       error_message='Failed to create the class.')
        if not ok:
            return None
        self.classes.append(outcome['class'])
        return outcome['class'].id

    # -- Co-teachers ---------------------------------------------------------

    async def invite_teacher(self, class_id: str, email: str, subject: str) -> bool:
        email = (email or '').strip()
        cls = self.find_class(class_id)
        outcome = {}

        async def commit():
            users = await self.executor.fetch(Query(USERS).where('email', '==', email), force_refresh=True)
            if users.empty:
                raise InviteeNotFound()
            invitee = User.from_dict(users.documents[0].data, users.documents[0].id)
            if not invitee.is_teacher():
                raise NotATeacher()
            if cls is not None and invitee.id in cls.teachers:
                raise AlreadyTeacher()
            pending = await self.executor.fetch(
                Query(INVITATIONS)
                .where('classId', '==', class_id)
                .where('inviteeId', '==', invitee.id)
                .where('status', '==', 'pending'),
                force_refresh=True)
            if not pending.empty:
                raise InvitationPending()
            class_name = cls.name if cls else 'Class'
            invitation = ClassInvitation(
                class_id=class_id,
                class_name=class_name,
                inviter_id=self.user.id,
                inviter_name=self.user.name,
                invitee_id=invitee.id,
                invitee_email=email,
                subject=subject,
            )
            data = invitation.to_dict()
            data['timestamp'] = SERVER_TIMESTAMP
            await self.store.add(INVITATIONS, data)
            outcome['invitee'] = invitee
            await self._notify_user(
                invitee.id, 'class_invitation', 'Co-teaching invitation',
                f'You were invited to teach the class "{class_name}". Check your dashboard.',
                class_id=class_id,
            )

        ok = await self.reconciler.run(f'invite {email} to {class_id}', commit,
                                       error_message='Failed to send the invitation.')
        if ok:
            self.notices.flash(
                f'Invitation sent to {outcome["invitee"].name}. Waiting for acceptance.', 'success')
        return ok

    async def accept_invite(self, invitation: ClassInvitation) -> bool:
        class_path = f'{CLASSES}/{invitation.class_id}'
        index = self.invitations.index(invitation) if invitation in self.invitations else None

        async def _commit_tx(tx):
            doc = await tx.get(class_path)
            if doc is None:
                raise DocumentNotFound('This class no longer exists.')
            tx.update(class_path, {
                'teachers': ArrayUnion([self.user.id]),
                f'subjects.{self.user.id}': invitation.subject,
                f'teacherNames.{self.user.id}': self.user.name,
            })
            tx.delete(f'{INVITATIONS}/{invitation.id}')

        def apply():
            if index is not None:
                self.invitations.remove(invitation)

        def rollback():
            if index is not None and invitation not in self.invitations:
                self.invitations.insert(index, invitation)

        ok = await self.reconciler.run(
            f'accept invitation {invitation.id}',
            commit=lambda: self.store.run_transaction(_commit_tx),
            apply=apply, rollback=rollback,
            success_message='Invitation accepted! The class will appear shortly.',
            error_message='Failed to accept the invitation.',
        )
        if ok:
            await self.refresh(force_refresh=True)
        return ok

    async def decline_invite(self, invitation_id: str) -> bool:
        previous = list(self.invitations)

        def apply():
            self.invitations = [i for i in self.invitations if i.id != invitation_id]

        def rollback():
            self.invitations = previous

        return await self.reconciler.run(
            f'decline invitation {invitation_id}',
            commit=lambda: self.store.delete(f'{INVITATIONS}/{invitation_id}'),
            apply=apply, rollback=rollback,
            success_message='Invitation declined.',
            error_message='Failed to decline the invitation.',
        )

    # -- Activities ----------------------------------------------------------

    async def grade_activity(self, activity_id: str, student_id: str, grade: float,
                             feedback: Optional[str] = None) -> bool:
        """Grade one submission. A graded submission keeps its grade; only
        its feedback may still be edited."""
        activity_path = f'{ACTIVITIES}/{activity_id}'
        record_path = submission_path(activity_id, student_id)
        graded_at = datetime.now(timezone.utc)
        local = self.find_activity(activity_id)
        outcome = {}

        async def _commit_tx(tx):
            doc = await tx.get(activity_path)
            if doc is None:
                raise DocumentNotFound('This activity no longer exists.')
            activity = Activity.from_dict(doc.data, doc.id)
            if not isinstance(grade, (int, float)) or isinstance(grade, bool) or not 0 <= grade <= activity.points:
                raise InvalidGrade(f'Grade must be between 0 and {activity.points:g}.')

            existing = await tx.get(record_path)
            if existing is not None:
                submission = Submission.from_dict(existing.data, student_id)
            else:
                # Older activities may only carry the embedded copy.
                submission = activity.submission_for(student_id)
            if submission is None:
                raise DocumentNotFound('Submission not found.')

            if submission.is_graded:
                if submission.grade != grade:
                    raise AlreadyGraded()
                submission.feedback = feedback
                regraded = False
            else:
                submission.status = GRADED
                submission.grade = grade
                submission.feedback = feedback
                submission.graded_at = graded_at
                regraded = True

            record = submission.to_dict()
            tx.set(record_path, record)
            embedded = replace_submission(doc.get('submissions') or [], record)
            update = {'submissions': embedded, 'status': project_submissions(embedded)['status']}
            if regraded:
                update['pendingSubmissionCount'] = Increment(-1)
            tx.update(activity_path, update)
            return activity, submission, regraded

        async def commit():
            outcome['activity'], outcome['submission'], outcome['graded'] = \
                await self.store.run_transaction(_commit_tx)

        def apply():
            if local is None:
                return
            for s in local.submissions:
                if s.student_id == student_id:
                    if not s.is_graded:
                        local.pending_submission_count = max(local.pending_submission_count - 1, 0)
                        s.status = GRADED
                        s.grade = grade
                        s.graded_at = graded_at
                    s.feedback = feedback

        async def resync():
            cls = self.find_class(local.class_id) if local else None
            if cls is not None and cls.is_fully_loaded:
                cls.is_fully_loaded = False
                await self.fetch_class_details(cls.id, force_refresh=True)
            else:
                await self.refresh(force_refresh=True)

        ok = await self.reconciler.run(
            f'grade {student_id} on {activity_id}', commit, apply=apply, resync=resync,
            success_message='Grade saved!', error_message='Failed to save the grade.',
        )
        if ok and outcome['graded']:
            activity = outcome['activity']
            await self._notify_user(
                student_id, 'activity_correction', 'Activity graded',
                f'Your activity "{activity.title}" was graded. Grade: {grade:g}',
                class_id=activity.class_id, activity_id=activity_id,
                deep_link={'page': 'activities', 'activityId': activity_id},
            )
        return ok

    async def save_activity(self, activity: Activity) -> Optional[str]:
        """Create an activity and announce it to the class."""
        outcome = {}

        async def commit():
            data = activity.to_dict()
            data.update({
                'creatorId': self.user.id,
                'creatorName': self.user.name,
                'status': ACTIVITY_PENDING,
                'pendingSubmissionCount': 0,
                'submissionCount': 0,
                'submissions': [],
                'createdAt': SERVER_TIMESTAMP,
            })
            outcome['id'] = await self.store.add(ACTIVITIES, data)
            await self._broadcast(
                activity.class_id, 'activity_post', 'New activity',
                f'Teacher {self.user.name} posted a new activity: "{activity.title}"',
                deep_link={'page': 'activities'},
            )

        ok = await self.reconciler.run(f'create activity {activity.title}', commit,
                                       success_message='Activity created!',
                                       error_message='Failed to create the activity.')
        if not ok:
            return None
        cls = self.find_class(activity.class_id)
        if cls is not None:
            cls.is_fully_loaded = False
            self._class_loaders.pop(cls.id, None)
            await self.fetch_class_details(cls.id, force_refresh=True)
        return outcome['id']

    # -- Housekeeping --------------------------------------------------------

    async def cleanup_expired_broadcasts(self) -> int:
        """Delete up to 500 expired broadcasts. Returns how many were removed."""
        query = (Query(BROADCASTS)
                 .where('expiresAt', '<', datetime.now(timezone.utc))
                 .limited(MAX_BATCH_WRITES))
        outcome = {'count': 0}

        async def commit():
            snapshot = await self.executor.fetch(query, force_refresh=True)
            if not snapshot.empty:
                await self.store.batch_write([BatchOp.delete(doc.path) for doc in snapshot])
            outcome['count'] = snapshot.size

        ok = await self.reconciler.run('clean up expired broadcasts', commit,
                                       error_message='Failed to clean up old data.')
        if not ok:
            return 0
        if outcome['count']:
            self.notices.flash(f'{outcome["count"]} expired notifications removed.', 'success')
        else:
            self.notices.flash('No expired notifications found.', 'info')
        return outcome['count']
