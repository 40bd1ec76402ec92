"""
Optimistic mutations: apply the change locally, commit it remotely, and undo
the local change when the commit fails.
"""

import inspect
import logging
from typing import Any, Awaitable, Callable, Optional

from classroom_sync.errors import DomainConflict, StoreError
from classroom_sync.notices import NoticeBoard

logger = logging.getLogger(__name__)

DEFAULT_ERROR_MESSAGE = 'Something went wrong. Please try again.'


async def _maybe_await(result):
    if inspect.isawaitable(result):
        return await result
    return result


class Reconciler:

    def __init__(self, notices: Optional[NoticeBoard] = None):
        self.notices = notices if notices is not None else NoticeBoard()

    async def run(self, name: str, commit: Callable[[], Awaitable[Any]],
                  apply: Optional[Callable[[], Any]] = None,
                  rollback: Optional[Callable[[], Any]] = None,
                  resync: Optional[Callable[[], Any]] = None,
                  success_message: Optional[str] = None,
                  error_message: str = DEFAULT_ERROR_MESSAGE) -> bool:
        """Run one mutation. Returns True when the commit succeeded.

        Domain conflicts are reported with their own message as an 'info'
        notice; store failures as a 'danger' notice with ``error_message``.
        Either way the local change is rolled back, or ``resync`` reloads the
        affected state when no rollback is given. Neither is re-raised.
        """
        if apply is not None:
            await _maybe_await(apply())
        try:
            await commit()
        except DomainConflict as exc:
            logger.info('%s rejected: %s', name, exc)
            await self._undo(name, rollback, resync)
            self.notices.flash(str(exc), 'info')
            return False
        except StoreError:
            logger.exception('%s failed', name)
            await self._undo(name, rollback, resync)
            self.notices.flash(error_message, 'danger')
            return False
        logger.info('%s committed', name)
        if success_message:
            self.notices.flash(success_message, 'success')
        return True

    async def _undo(self, name, rollback, resync):
        if rollback is not None:
            await _maybe_await(rollback())
            return
        if resync is not None:
            try:
                await _maybe_await(resync())
            except StoreError:
                logger.exception('Resync after failed %s also failed', name)
