"""
evescope - Analyst notifications

One notification per failed chart category per refresh cycle. A repeated
failure of the same category replaces the older entry instead of stacking.
"""
from __future__ import annotations

import itertools
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from services.error_sanitizer import sanitize_error_detail

log = logging.getLogger("evescope.notifications")

DEFAULT_MAX_NOTIFICATIONS = 50


@dataclass(frozen=True)
class Notification:
    id: int
    category: str
    message: str
    level: str = "error"
    detail: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category,
            "message": self.message,
            "level": self.level,
            "detail": self.detail,
            "created_at": self.created_at.isoformat(),
        }


class NotificationCenter:
    def __init__(self, max_items: int = DEFAULT_MAX_NOTIFICATIONS) -> None:
        self._items: deque[Notification] = deque(maxlen=max(1, int(max_items)))
        self._ids = itertools.count(1)

    def add_error(self, category: str, message: str, *, detail: Optional[str] = None) -> Notification:
        for existing in list(self._items):
            if existing.category == category:
                self._items.remove(existing)
        note = Notification(
            id=next(self._ids),
            category=category,
            message=message,
            detail=sanitize_error_detail(detail),
        )
        self._items.append(note)
        log.warning(
            "notification.error",
            extra={"category": category, "message": message, "detail": note.detail},
        )
        return note

    def dismiss(self, notification_id: int) -> bool:
        for existing in self._items:
            if existing.id == notification_id:
                self._items.remove(existing)
                return True
        return False

    def clear(self) -> None:
        self._items.clear()

    def items(self) -> list[Notification]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)
