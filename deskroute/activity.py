"""
In-memory activity log for engine events (ticket assigned, left unassigned, rebalanced, SLA alerts).
The worker publishes its events over Redis pub/sub; the API process subscribes in a background
thread so GET /activity shows both.
"""

import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

import redis

from deskroute.config import REDIS_URL, STORE_BACKEND

logger = logging.getLogger(__name__)

ACTIVITY_CHANNEL = "assignment_activity"
MAX_EVENTS = 200
# Identifies this process so it skips its own published events.
_ORIGIN = uuid.uuid4().hex


@dataclass
class ActivityEvent:
    ts: float = field(default_factory=time.time)
    type: str = ""
    data: dict[str, Any] = field(default_factory=dict)


_events: list[ActivityEvent] = []
_lock = threading.Lock()


def emit(event_type: str, data: dict[str, Any] | None = None) -> None:
    """Append an event to this process's activity log."""
    with _lock:
        _events.append(ActivityEvent(type=event_type, data=data or {}))
        while len(_events) > MAX_EVENTS:
            _events.pop(0)


def get_recent(limit: int = 100, event_type: str | None = None) -> list[dict]:
    """Most recent events (newest last), optionally filtered by type."""
    with _lock:
        events = [e for e in _events if event_type is None or e.type == event_type]
        return [{"ts": e.ts, "type": e.type, "data": e.data} for e in events[-limit:]]


def clear() -> None:
    with _lock:
        _events.clear()


def _redis_subscriber_thread() -> None:
    try:
        r = redis.from_url(REDIS_URL, decode_responses=True)
        pubsub = r.pubsub()
        pubsub.subscribe(ACTIVITY_CHANNEL)
        logger.info("Activity subscriber listening on channel %s", ACTIVITY_CHANNEL)
        for message in pubsub.listen():
            if message["type"] != "message":
                continue
            try:
                payload = json.loads(message["data"])
            except json.JSONDecodeError as e:
                logger.warning("Activity message parse error: %s", e)
                continue
            if payload.get("origin") == _ORIGIN:
                continue
            emit(payload.get("type", "unknown"), payload.get("data", {}))
    except redis.RedisError as e:
        logger.warning("Activity Redis subscriber stopped: %s", e)


def start_redis_subscriber() -> None:
    """Start the daemon thread that mirrors worker events into this process."""
    if STORE_BACKEND != "redis":
        return
    t = threading.Thread(target=_redis_subscriber_thread, daemon=True)
    t.start()


def publish_event(event_type: str, data: dict[str, Any]) -> None:
    """Record an event locally and, with the Redis backend, publish it to other processes."""
    emit(event_type, data)
    if STORE_BACKEND != "redis":
        return
    try:
        r = redis.from_url(REDIS_URL, decode_responses=True)
        r.publish(ACTIVITY_CHANNEL, json.dumps({"type": event_type, "data": data, "origin": _ORIGIN}, default=str))
    except redis.RedisError as e:
        logger.warning("Activity publish failed: %s", e)
