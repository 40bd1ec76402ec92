"""
Notification feed: private notifications and class broadcasts merged into one
list, with per-user read receipts for broadcasts.

``merge_notifications`` is the pure reducer. ``NotificationMerger`` keeps the
latest snapshot of each input and recomputes the view whenever any of them
changes. ``NotificationCenter`` owns the three live subscriptions that feed the
merger and the mark-as-read writes.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set

from config import Config
from classroom_sync.errors import StoreTimeout
from classroom_sync.firestore_models import ORIGIN_BROADCAST, ORIGIN_PRIVATE, Notification
from classroom_sync.store import (
    DESCENDING, MAX_BATCH_WRITES, MAX_DISJUNCTION_VALUES, SERVER_TIMESTAMP, BatchOp, Query,
    RemoteStore, Subscription, chunked,
)

logger = logging.getLogger(__name__)

NOTIFICATIONS = 'notifications'
BROADCASTS = 'broadcasts'


def receipts_collection(user_id: str) -> str:
    return f'users/{user_id}/read_notifications'


def _now():
    return datetime.now(timezone.utc)


def _timestamp(n: Notification):
    return n.timestamp or datetime.min.replace(tzinfo=timezone.utc)


def merge_notifications(private: Sequence[Notification], broadcast: Sequence[Notification],
                        receipts: Iterable[str]) -> List[Notification]:
    """Combine both sources, newest first. A notification is read if it says
    so itself or a receipt exists for its id. Equal timestamps keep private
    items ahead of broadcasts."""
    receipt_ids = set(receipts)
    merged = [
        replace(n, read=n.read or n.id in receipt_ids)
        for n in list(private) + list(broadcast)
    ]
    merged.sort(key=_timestamp, reverse=True)
    return merged


@dataclass(frozen=True)
class NotificationView:
    notifications: List[Notification] = field(default_factory=list)
    unread_count: int = 0


class NotificationMerger:

    def __init__(self):
        self._private: List[Notification] = []
        self._broadcast: List[Notification] = []
        self._receipts: Set[str] = set()
        self._observers: List[Callable[[NotificationView], None]] = []
        self.view = NotificationView()

    @property
    def receipts(self) -> Set[str]:
        return set(self._receipts)

    def observe(self, callback: Callable[[NotificationView], None]):
        self._observers.append(callback)

    def update_private(self, notifications: Sequence[Notification]):
        self._private = list(notifications)
        self._recompute()

    def update_broadcast(self, notifications: Sequence[Notification]):
        self._broadcast = list(notifications)
        self._recompute()

    def update_receipts(self, ids: Iterable[str]):
        self._receipts = set(ids)
        self._recompute()

    def drop_private(self, ids: Iterable[str]):
        ids = set(ids)
        self._private = [n for n in self._private if n.id not in ids]
        self._recompute()

    def add_receipts(self, ids: Iterable[str]):
        self._receipts |= set(ids)
        self._recompute()

    def find(self, notification_id: str) -> Optional[Notification]:
        for n in self.view.notifications:
            if n.id == notification_id:
                return n
        return None

    def _recompute(self):
        merged = merge_notifications(self._private, self._broadcast, self._receipts)
        self.view = NotificationView(merged, sum(1 for n in merged if not n.read))
        for callback in list(self._observers):
            callback(self.view)


class NotificationCenter:
    """Live notification feed for one user."""

    def __init__(self, store: RemoteStore, user_id: str, config_class=Config,
                 merger: Optional[NotificationMerger] = None):
        self.store = store
        self.user_id = user_id
        self.private_limit = config_class.PRIVATE_NOTIFICATION_LIMIT
        self.window = timedelta(days=config_class.NOTIFICATION_WINDOW_DAYS)
        self.timeout = config_class.NETWORK_TIMEOUT_SECONDS
        self.merger = merger or NotificationMerger()
        self._subscriptions: Dict[str, Subscription] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._class_ids: tuple = ()
        self.started = False

    @property
    def view(self) -> NotificationView:
        return self.merger.view

    @property
    def unread_count(self) -> int:
        return self.merger.view.unread_count

    @property
    def class_ids(self) -> tuple:
        return self._class_ids

    # -- Queries -------------------------------------------------------------

    def private_query(self) -> Query:
        return (Query(NOTIFICATIONS)
                .where('userId', '==', self.user_id)
                .where('read', '==', False)
                .order('timestamp', DESCENDING)
                .limited(self.private_limit))

    def broadcast_query(self, class_ids: Sequence[str]) -> Query:
        return (Query(BROADCASTS)
                .where('classId', 'in', list(class_ids))
                .where('expiresAt', '>', _now()))

    def receipts_query(self) -> Query:
        return Query(receipts_collection(self.user_id))

    # -- Snapshot handlers ---------------------------------------------------

    def _on_private(self, snapshot):
        now = _now()
        items = []
        for doc in snapshot:
            n = Notification.from_dict(doc.data, doc.id, origin=ORIGIN_PRIVATE)
            if n.is_visible(now, self.window):
                items.append(n)
        self.merger.update_private(items)

    def _on_broadcast(self, snapshot):
        now = _now()
        items = []
        for doc in snapshot:
            n = Notification.from_dict(doc.data, doc.id, origin=ORIGIN_BROADCAST)
            # The server filter was evaluated at subscribe time.
            if n.is_visible(now, self.window):
                items.append(n)
        self.merger.update_broadcast(items)

    def _on_receipts(self, snapshot):
        self.merger.update_receipts(doc.id for doc in snapshot)

    # -- Lifecycle -----------------------------------------------------------

    async def _open(self, name: str, query: Query, handler):
        await self._close(name)
        subscription = self.store.subscribe(query)
        self._subscriptions[name] = subscription
        # The store delivers the first snapshot as soon as the listener is up.
        try:
            snapshot = await asyncio.wait_for(subscription.__anext__(), self.timeout)
        except asyncio.TimeoutError as exc:
            await self._close(name)
            raise StoreTimeout(f'No {name} notifications after {self.timeout}s') from exc
        except StopAsyncIteration:
            await self._close(name)
            return
        handler(snapshot)
        self._tasks[name] = asyncio.create_task(self._consume(name, subscription, handler))

    async def _consume(self, name, subscription, handler):
        async for snapshot in subscription:
            try:
                handler(snapshot)
            except Exception:
                logger.exception('Failed to apply %s notification snapshot', name)

    async def _close(self, name: str):
        subscription = self._subscriptions.pop(name, None)
        if subscription is not None:
            subscription.close()
        task = self._tasks.pop(name, None)
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def start(self, class_ids: Sequence[str] = ()):
        if self.started:
            await self.update_classes(class_ids)
            return
        try:
            await self._open('private', self.private_query(), self._on_private)
            await self._open('receipts', self.receipts_query(), self._on_receipts)
            await self.update_classes(class_ids, force=True)
        except Exception:
            await self.stop()
            raise
        self.started = True
        logger.debug('Notification center started for %s', self.user_id)

    async def update_classes(self, class_ids: Sequence[str], force: bool = False):
        """Resubscribe to broadcasts when the first ten class ids change.
        Classes beyond the tenth never receive broadcasts."""
        first = tuple(class_ids)[:MAX_DISJUNCTION_VALUES]
        if not force and set(first) == set(self._class_ids):
            return
        self._class_ids = first
        await self._close('broadcast')
        if first:
            await self._open('broadcast', self.broadcast_query(first), self._on_broadcast)
        else:
            self.merger.update_broadcast([])

    async def stop(self):
        for name in list(self._subscriptions):
            await self._close(name)
        self.started = False

    # -- Read state ----------------------------------------------------------

    def _read_op(self, n: Notification) -> BatchOp:
        if n.is_broadcast:
            return BatchOp.set(f'{receipts_collection(self.user_id)}/{n.id}', {'readAt': SERVER_TIMESTAMP})
        return BatchOp.update(f'{NOTIFICATIONS}/{n.id}', {'read': True, 'readAt': SERVER_TIMESTAMP})

    def _apply_read_locally(self, notifications: Sequence[Notification]):
        self.merger.drop_private(n.id for n in notifications if not n.is_broadcast)
        self.merger.add_receipts(n.id for n in notifications if n.is_broadcast)

    async def mark_all_read(self) -> int:
        """Mark every unread notification read. Returns how many were marked."""
        unread = [n for n in self.merger.view.notifications if not n.read]
        if not unread:
            return 0
        for chunk in chunked(unread, MAX_BATCH_WRITES):
            await self.store.batch_write([self._read_op(n) for n in chunk])
        self._apply_read_locally(unread)
        logger.info('Marked %d notifications read for %s', len(unread), self.user_id)
        return len(unread)

    async def mark_read(self, notification_id: str) -> bool:
        n = self.merger.find(notification_id)
        if n is None or n.read:
            return False
        op = self._read_op(n)
        if op.kind == 'set':
            await self.store.set(op.path, op.data, merge=True)
        else:
            await self.store.update(op.path, op.data)
        self._apply_read_locally([n])
        return True
