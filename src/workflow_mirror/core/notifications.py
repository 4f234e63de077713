"""User-visible, dismissible notifications.

Nothing in the mirror is fatal: recoverable failures are reported here and the
host decides how to show them.
"""

from __future__ import annotations

import itertools
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Literal

Variant = Literal["default", "destructive"]


@dataclass(frozen=True, slots=True)
class Notification:
    title: str
    description: str
    variant: Variant = "destructive"
    notification_id: int = 0


@dataclass
class NotificationCenter:
    """Keeps notifications until the host dismisses them."""

    _items: dict[int, Notification] = field(default_factory=dict)
    _listeners: list[Callable[[Notification], None]] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._ids = itertools.count(1)

    def notify(
        self, title: str, description: str, *, variant: Variant = "destructive"
    ) -> Notification:
        item = Notification(
            title=title, description=description, variant=variant, notification_id=next(self._ids)
        )
        self._items[item.notification_id] = item
        for listener in list(self._listeners):
            listener(item)
        return item

    def subscribe(self, listener: Callable[[Notification], None]) -> None:
        self._listeners.append(listener)

    def dismiss(self, notification_id: int) -> None:
        self._items.pop(notification_id, None)

    def pending(self) -> list[Notification]:
        return [self._items[k] for k in sorted(self._items)]
