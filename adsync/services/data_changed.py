"""Outbound "data changed" notifications.

WHAT:
    After a job writes rows, the worker announces (brand_id, date range) so
    downstream consumers (dashboards, caches, report builders) can refresh.
    Listeners are plain callables registered in-process; the arq worker
    registers a Redis pub/sub publisher at startup.

WHY:
    The ingestion core must not know who consumes its data. A listener that
    fails is logged and reported, never allowed to fail the sync job whose
    rows are already committed.
"""

import logging
from datetime import date
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

import redis

from adsync.schemas import DataChangedEvent
from adsync.telemetry import capture_exception

logger = logging.getLogger(__name__)

Listener = Callable[[DataChangedEvent], None]

_listeners: List[Listener] = []


def register_listener(listener: Listener) -> None:
    if listener not in _listeners:
        _listeners.append(listener)


def unregister_listener(listener: Listener) -> None:
    if listener in _listeners:
        _listeners.remove(listener)


def clear_listeners() -> None:
    _listeners.clear()


def data_changed(
    brand_id: UUID,
    since: date,
    until: date,
    source: str,
    extra: Optional[Dict[str, Any]] = None,
) -> DataChangedEvent:
    """Notify every registered listener that rows in [since, until] changed.

    Returns:
        The event that was dispatched
    """
    event = DataChangedEvent(brand_id=brand_id, since=since, until=until, source=source, extra=extra or {})
    logger.debug("[DATA_CHANGED] brand=%s %s..%s (%s)", brand_id, since, until, source)

    for listener in list(_listeners):
        try:
            listener(event)
        except Exception as e:
            logger.error("[DATA_CHANGED] Listener %r failed: %s", listener, e)
            capture_exception(e, extra={"operation": "data_changed", "brand_id": str(brand_id)})
    return event


class RedisDataChangedPublisher:
    """Listener publishing events as JSON on a Redis channel.

    Usage:
        publisher = RedisDataChangedPublisher.from_url(settings.REDIS_URL, settings.DATA_CHANGED_CHANNEL)
        register_listener(publisher)
    """

    def __init__(self, client: "redis.Redis", channel: str):
        self.client = client
        self.channel = channel

    @classmethod
    def from_url(cls, url: str, channel: str) -> "RedisDataChangedPublisher":
        return cls(redis.Redis.from_url(url), channel)

    def __call__(self, event: DataChangedEvent) -> None:
        receivers = self.client.publish(self.channel, event.model_dump_json())
        logger.debug("[DATA_CHANGED] Published to %s (%d receivers)", self.channel, receivers)

    def close(self) -> None:
        self.client.close()
