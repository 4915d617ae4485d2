from __future__ import annotations

import threading
from collections import defaultdict
from typing import Any, Callable

from loguru import logger
from sqlalchemy import event as sa_event
from sqlalchemy.orm import Session


Event = dict[str, Any]
Callback = Callable[[Event], None]

CONTESTS_CHANNEL = "contests"


def notifications_channel(user_id: int) -> str:
    return f"notifications:{user_id}"


class ChangeFeed:
    """In-process publish/subscribe for row change events pushed to websocket clients."""

    def __init__(self):
        self._subscribers: dict[str, list[Callback]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, channel: str, callback: Callback) -> Callable[[], None]:
        with self._lock:
            self._subscribers[channel].append(callback)

        def unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(channel, [])
                if callback in callbacks:
                    callbacks.remove(callback)
                if not callbacks:
                    self._subscribers.pop(channel, None)

        return unsubscribe

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._subscribers.get(channel, []))

    def publish(self, channel: str, event: Event) -> int:
        with self._lock:
            callbacks = list(self._subscribers.get(channel, []))
        delivered = 0
        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                logger.exception("Feed subscriber failed on channel {}", channel)
                continue
            delivered += 1
        return delivered


feed = ChangeFeed()

PENDING_EVENTS_KEY = "pending_feed_events"


def queue_event(db: Session, channel: str, event: Event) -> None:
    """Hold an event on the session until its transaction commits."""
    db.info.setdefault(PENDING_EVENTS_KEY, []).append((channel, event))


@sa_event.listens_for(Session, "after_commit")
def _publish_pending(session: Session) -> None:
    pending = session.info.pop(PENDING_EVENTS_KEY, [])
    for channel, event in pending:
        feed.publish(channel, event)


@sa_event.listens_for(Session, "after_rollback")
def _drop_pending(session: Session) -> None:
    session.info.pop(PENDING_EVENTS_KEY, None)
