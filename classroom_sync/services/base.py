"""
Plumbing shared by the student and teacher data services: the cache-first
executor, the reconciler, the notification center and a few write helpers.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

from config import Config
from classroom_sync.errors import StoreError
from classroom_sync.firestore_models import (
    ACTIVITY_GRADED, ACTIVITY_PENDING, GRADED, SchoolClass, Submission, User,
)
from classroom_sync.notices import NoticeBoard
from classroom_sync.services.achievements import AchievementService
from classroom_sync.services.cache_first import CacheFirstExecutor
from classroom_sync.services.notifications import BROADCASTS, NOTIFICATIONS, NotificationCenter
from classroom_sync.services.reconciler import Reconciler
from classroom_sync.store import SERVER_TIMESTAMP, Query, RemoteStore, Source

logger = logging.getLogger(__name__)

ACTIVITIES = 'activities'
CLASSES = 'classes'
USERS = 'users'


def submissions_collection(activity_id: str) -> str:
    return f'{ACTIVITIES}/{activity_id}/submissions'


def submission_path(activity_id: str, student_id: str) -> str:
    return f'{submissions_collection(activity_id)}/{student_id}'


def project_submissions(records: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    """Activity fields derived from the per-student submission records."""
    records = list(records)
    pending = sum(1 for r in records if r.get('status') != GRADED)
    return {
        'submissions': records,
        'submissionCount': len(records),
        'pendingSubmissionCount': pending,
        'status': ACTIVITY_PENDING if pending or not records else ACTIVITY_GRADED,
    }


def replace_submission(embedded: Sequence[Dict[str, Any]], record: Dict[str, Any]) -> List[Dict[str, Any]]:
    """The embedded array with ``record`` replacing the same student's entry."""
    student_id = record.get('studentId')
    others = [s for s in embedded if isinstance(s, dict) and s.get('studentId') != student_id]
    return others + [record]


class BaseDataService:
    role: Optional[str] = None

    def __init__(self, user: User, store: RemoteStore, config_class=Config,
                 notices: Optional[NoticeBoard] = None):
        self.user = user
        self.store = store
        self.config = config_class
        self.notices = notices if notices is not None else NoticeBoard()
        self.executor = CacheFirstExecutor(
            store,
            timeout=config_class.NETWORK_TIMEOUT_SECONDS,
            retry_attempts=config_class.NETWORK_RETRY_ATTEMPTS,
        )
        self.reconciler = Reconciler(self.notices)
        self.achievements = AchievementService(store, self.executor)
        self.notification_center = NotificationCenter(store, user.id, config_class)
        self.classes: List[SchoolClass] = []
        self.is_loading = False

    # -- Loading -------------------------------------------------------------

    async def refresh(self, force_refresh: bool = False) -> bool:
        """Reload everything the dashboard shows. Load failures are reported
        as a notice and leave the previous state in place."""
        self.is_loading = True
        try:
            await self._load(force_refresh)
            await self.notification_center.start(self._broadcast_class_ids())
            return True
        except StoreError as exc:
            logger.exception('Failed to load %s data for %s', self.role, self.user.id)
            self.notices.flash(f'Failed to load data: {exc}', 'danger')
            return False
        finally:
            self.is_loading = False

    async def _load(self, force_refresh: bool):
        raise NotImplementedError

    def _broadcast_class_ids(self) -> List[str]:
        return []

    def find_class(self, class_id: str) -> Optional[SchoolClass]:
        for cls in self.classes:
            if cls.id == class_id:
                return cls
        return None

    @property
    def class_ids(self) -> List[str]:
        return [c.id for c in self.classes]

    # -- Notifications -------------------------------------------------------

    @property
    def notifications(self):
        return self.notification_center.view.notifications

    @property
    def unread_notification_count(self) -> int:
        return self.notification_center.unread_count

    async def mark_all_notifications_read(self) -> bool:
        return await self.reconciler.run(
            'mark all notifications read',
            commit=self.notification_center.mark_all_read,
            error_message='Failed to mark notifications as read.',
        )

    async def mark_notification_read(self, notification_id: str) -> bool:
        """Mark one notification read. False for unknown or already read ids."""
        outcome = {'marked': False}

        async def commit():
            outcome['marked'] = await self.notification_center.mark_read(notification_id)

        ok = await self.reconciler.run(
            f'mark notification {notification_id} read', commit,
            error_message='Failed to mark the notification as read.',
        )
        return ok and outcome['marked']

    async def close(self):
        await self.notification_center.stop()

    # -- Write helpers -------------------------------------------------------

    async def _notify_user(self, user_id: str, type_: str, title: str, summary: str,
                           class_id: Optional[str] = None, activity_id: Optional[str] = None,
                           deep_link: Optional[Dict[str, Any]] = None):
        """Send a private notification. Delivery problems are logged only,
        the operation that triggered it has already succeeded."""
        data = {
            'userId': user_id,
            'actorId': self.user.id,
            'actorName': self.user.name,
            'type': type_,
            'title': title,
            'summary': summary,
            'classId': class_id,
            'activityId': activity_id,
            'deepLink': deep_link or {'page': 'dashboard'},
            'read': False,
            'timestamp': SERVER_TIMESTAMP,
        }
        try:
            await self.store.add(NOTIFICATIONS, data)
        except StoreError:
            logger.exception('Failed to notify %s (%s)', user_id, type_)

    async def _broadcast(self, class_id: str, type_: str, title: str, summary: str,
                         deep_link: Dict[str, Any]) -> Optional[str]:
        """Announce something to every student of a class. Like
        ``_notify_user``, a failed delivery is logged only."""
        expires_at = datetime.now(timezone.utc) + timedelta(days=self.config.BROADCAST_TTL_DAYS)
        try:
            return await self.store.add(BROADCASTS, {
                'classId': class_id,
                'type': type_,
                'title': title,
                'summary': summary,
                'authorName': self.user.name,
                'timestamp': SERVER_TIMESTAMP,
                'expiresAt': expires_at,
                'deepLink': deep_link,
            })
        except StoreError:
            logger.exception('Failed to broadcast %s to class %s', type_, class_id)
            return None

    async def rebuild_submission_projection(self, activity_id: str) -> int:
        """Rewrite an activity's embedded submissions and counters from the
        per-student records. Returns the number of submissions."""
        snapshot = await self.store.query(Query(submissions_collection(activity_id)), source=Source.SERVER)
        records = [Submission.from_dict(doc.data, doc.id) for doc in snapshot]
        records.sort(key=lambda s: s.submitted_at)
        await self.store.update(f'{ACTIVITIES}/{activity_id}',
                                project_submissions([r.to_dict() for r in records]))
        logger.info('Rebuilt submissions of %s (%d records)', activity_id, len(records))
        return len(records)
