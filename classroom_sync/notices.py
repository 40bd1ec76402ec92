"""
User-visible transient notices.

Works like Flask's ``flash(message, category)`` / ``get_flashed_messages``:
services post short messages with a Bootstrap-style category and the UI layer
drains them. Categories in use: 'success', 'info', 'warning', 'danger'.
"""

import logging
from dataclasses import dataclass
from typing import Callable, List, Tuple

logger = logging.getLogger(__name__)

CATEGORIES = ('success', 'info', 'warning', 'danger')


@dataclass(frozen=True)
class Notice:
    message: str
    category: str = 'info'


class NoticeBoard:

    def __init__(self):
        self._pending: List[Notice] = []
        self._listeners: List[Callable[[Notice], None]] = []

    def flash(self, message: str, category: str = 'info'):
        if category not in CATEGORIES:
            raise ValueError(f'Unknown notice category: {category}')
        notice = Notice(message, category)
        self._pending.append(notice)
        for listener in list(self._listeners):
            listener(notice)

    def listen(self, callback: Callable[[Notice], None]) -> Callable[[], None]:
        """Register a callback for new notices; returns an unregister function."""
        self._listeners.append(callback)

        def _remove():
            if callback in self._listeners:
                self._listeners.remove(callback)
        return _remove

    def get_flashed_messages(self, with_categories: bool = False) -> List:
        """Drain pending notices, oldest first."""
        pending, self._pending = self._pending, []
        if with_categories:
            return [(n.category, n.message) for n in pending]
        return [n.message for n in pending]

    def peek(self) -> List[Tuple[str, str]]:
        return [(n.category, n.message) for n in self._pending]

    def __len__(self):
        return len(self._pending)
