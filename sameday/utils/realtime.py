"""Publish/subscribe channel for live order updates.

Events are plain dicts shaped {type, orderId?, deliveryId?, status?, rider?,
lat?, lon?}. The engine publishes after commit; the SSE stream subscribes.
"""
from __future__ import annotations

import json
import logging
import os
import queue
import threading

import redis

from sameday.utils.transactions import on_commit

logger = logging.getLogger(__name__)

_LOCK = threading.Lock()
_BROKER = None


def order_channel(order_id: int) -> str:
    return f"sameday:order:{int(order_id)}"


def live_event(
    event_type: str,
    *,
    order_id: int | None = None,
    delivery_id: int | None = None,
    status: str | None = None,
    rider: int | None = None,
    lat: float | None = None,
    lon: float | None = None,
) -> dict:
    event = {
        "type": event_type,
        "orderId": order_id,
        "deliveryId": delivery_id,
        "status": status,
        "rider": rider,
        "lat": lat,
        "lon": lon,
    }
    return {k: v for k, v in event.items() if v is not None}


class MemorySubscription:
    def __init__(self, broker: "MemoryBroker", channel: str):
        self._broker = broker
        self.channel = channel
        self._queue: queue.Queue = queue.Queue(maxsize=256)

    def _offer(self, event: dict) -> None:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            logger.warning("live_subscriber_overflow channel=%s", self.channel)

    def get(self, timeout: float = 1.0) -> dict | None:
        try:
            return self._queue.get(timeout=max(0.0, float(timeout)))
        except queue.Empty:
            return None

    def close(self) -> None:
        self._broker._unsubscribe(self)


class MemoryBroker:
    name = "memory"

    def __init__(self):
        self._lock = threading.Lock()
        self._subs: dict[str, list[MemorySubscription]] = {}

    def publish(self, channel: str, event: dict) -> int:
        with self._lock:
            subs = list(self._subs.get(channel, []))
        for sub in subs:
            sub._offer(dict(event))
        return len(subs)

    def subscribe(self, channel: str) -> MemorySubscription:
        sub = MemorySubscription(self, channel)
        with self._lock:
            self._subs.setdefault(channel, []).append(sub)
        return sub

    def _unsubscribe(self, sub: MemorySubscription) -> None:
        with self._lock:
            subs = self._subs.get(sub.channel, [])
            if sub in subs:
                subs.remove(sub)
            if not subs:
                self._subs.pop(sub.channel, None)


class RedisSubscription:
    def __init__(self, pubsub, channel: str):
        self._pubsub = pubsub
        self.channel = channel

    def get(self, timeout: float = 1.0) -> dict | None:
        msg = self._pubsub.get_message(ignore_subscribe_messages=True, timeout=max(0.0, float(timeout)))
        if not msg or msg.get("type") != "message":
            return None
        try:
            data = json.loads(msg.get("data") or "{}")
        except Exception:
            return None
        return data if isinstance(data, dict) else None

    def close(self) -> None:
        try:
            self._pubsub.close()
        except Exception:
            logger.warning("live_redis_unsubscribe_failed channel=%s", self.channel)


class RedisBroker:
    name = "redis"

    def __init__(self, url: str):
        self._client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=0.75,
            health_check_interval=30,
        )

    def publish(self, channel: str, event: dict) -> int:
        return int(self._client.publish(channel, json.dumps(event, separators=(",", ":"))) or 0)

    def subscribe(self, channel: str) -> RedisSubscription:
        pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe(channel)
        return RedisSubscription(pubsub, channel)


def get_broker():
    global _BROKER
    with _LOCK:
        if _BROKER is not None:
            return _BROKER
        url = (os.getenv("REALTIME_REDIS_URL") or os.getenv("REDIS_URL") or "").strip()
        if url:
            try:
                _BROKER = RedisBroker(url)
                logger.info("live_broker=redis")
                return _BROKER
            except Exception as e:
                logger.warning("live_broker_redis_failed err=%s fallback=memory", e)
        _BROKER = MemoryBroker()
        return _BROKER


def set_broker(broker) -> None:
    global _BROKER
    with _LOCK:
        _BROKER = broker


def publish(order_id: int, event: dict) -> None:
    """Never raises; live updates are advisory."""
    try:
        get_broker().publish(order_channel(order_id), event)
    except Exception:
        logger.exception("live_publish_failed order_id=%s type=%s", order_id, event.get("type"))


def publish_after_commit(order_id: int, event: dict) -> None:
    on_commit(publish, int(order_id), event)
