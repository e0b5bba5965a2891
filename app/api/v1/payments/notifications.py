"""Discrete success/warning/error events for the UI, instead of exceptions across its boundary."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

from app.core.enums import NotificationLevel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    level: NotificationLevel
    message: str
    kind: Optional[str] = None
    background: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


NotificationListener = Callable[[Notification], None]


class NotificationCenter:
    """Foreground listeners belong to an open dialog; background ones outlive it."""

    def __init__(self) -> None:
        self._foreground: List[NotificationListener] = []
        self._background: List[NotificationListener] = []
        self.history: List[Notification] = []

    def subscribe(self, listener: NotificationListener, *, background: bool = False) -> Callable[[], None]:
        listeners = self._background if background else self._foreground
        listeners.append(listener)

        def unsubscribe() -> None:
            if listener in listeners:
                listeners.remove(listener)

        return unsubscribe

    def emit(
        self,
        level: NotificationLevel,
        message: str,
        *,
        kind: Optional[str] = None,
        background: bool = False,
    ) -> Notification:
        # nothing listening in the foreground: route to background rather than drop
        background = background or not self._foreground
        notification = Notification(level=level, message=message, kind=kind, background=background)
        self.history.append(notification)
        targets = self._background if background else self._foreground
        for listener in list(targets):
            try:
                listener(notification)
            except Exception:
                logger.exception("Notification listener failed")
        return notification

    def success(self, message: str, **kwargs) -> Notification:
        return self.emit(NotificationLevel.SUCCESS, message, **kwargs)

    def warning(self, message: str, **kwargs) -> Notification:
        return self.emit(NotificationLevel.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs) -> Notification:
        return self.emit(NotificationLevel.ERROR, message, **kwargs)
