# services/fanout.py
import os
import asyncio
import logging
import threading
from typing import Dict, Set, Optional
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

QUEUE_SIZE = int(os.getenv("PARLEY_SUBSCRIBER_QUEUE_SIZE", "256"))

USERS_TOPIC = "users"


def account_topic(account_id: str) -> str:
    return f"account:{account_id}"


def conversation_topic(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


class Subscriber:
    """
    One live connection. Events are queued on the event loop that owns the
    socket; the gateway drains the queue and writes frames.
    """

    def __init__(self, account_id: str, session_id: str, loop: asyncio.AbstractEventLoop, maxsize: int = QUEUE_SIZE):
        self.account_id = account_id
        self.session_id = session_id
        self.loop = loop
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.topics: Set[str] = set()
        self.overflowed = False
        self.closed = False

    def deliver(self, event: dict):
        """Thread-safe: schedule the event onto the owning loop."""
        if self.closed or self.overflowed:
            return
        try:
            self.loop.call_soon_threadsafe(self._put, event)
        except RuntimeError:
            # loop already closed
            self.closed = True

    def _put(self, event: dict):
        if self.overflowed:
            return
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.overflowed = True
            logger.warning(f"Subscriber queue overflow for account {self.account_id}; dropping connection")


class Hub:
    """In-process topic registry with thread-safe publish."""

    def __init__(self):
        self._lock = threading.Lock()
        self._topics: Dict[str, Set[Subscriber]] = {}
        self._by_account: Dict[str, Set[Subscriber]] = {}

    def register(self, subscriber: Subscriber):
        with self._lock:
            self._by_account.setdefault(subscriber.account_id, set()).add(subscriber)
        self.subscribe(subscriber, account_topic(subscriber.account_id))

    def unregister(self, subscriber: Subscriber) -> int:
        """Drop a connection. Returns how many connections the account still has."""
        subscriber.closed = True
        with self._lock:
            for topic in list(subscriber.topics):
                subs = self._topics.get(topic)
                if subs is not None:
                    subs.discard(subscriber)
                    if not subs:
                        del self._topics[topic]
            subscriber.topics.clear()
            remaining = self._by_account.get(subscriber.account_id, set())
            remaining.discard(subscriber)
            if not remaining:
                self._by_account.pop(subscriber.account_id, None)
            return len(remaining)

    def subscribe(self, subscriber: Subscriber, topic: str):
        with self._lock:
            self._topics.setdefault(topic, set()).add(subscriber)
            subscriber.topics.add(topic)

    def unsubscribe(self, subscriber: Subscriber, topic: str):
        with self._lock:
            subs = self._topics.get(topic)
            if subs is not None:
                subs.discard(subscriber)
                if not subs:
                    del self._topics[topic]
            subscriber.topics.discard(topic)

    def unsubscribe_account(self, account_id: str, topic: str):
        """Remove every connection of an account from a topic."""
        for sub in self.connections(account_id):
            self.unsubscribe(sub, topic)

    def publish(self, topic: str, event: dict) -> int:
        with self._lock:
            targets = list(self._topics.get(topic, ()))
        for sub in targets:
            sub.deliver(event)
        if targets:
            logger.debug(f"Published {event.get('type')} to {len(targets)} subscriber(s) on {topic}")
        return len(targets)

    def is_subscribed(self, account_id: str, topic: str) -> bool:
        with self._lock:
            return any(s.account_id == account_id for s in self._topics.get(topic, ()))

    def connections(self, account_id: str, session_id: Optional[str] = None) -> list:
        with self._lock:
            subs = list(self._by_account.get(account_id, ()))
        if session_id is not None:
            subs = [s for s in subs if s.session_id == session_id]
        return subs

    def connection_count(self, account_id: str) -> int:
        with self._lock:
            return len(self._by_account.get(account_id, ()))

    def clear(self):
        with self._lock:
            self._topics.clear()
            self._by_account.clear()


hub = Hub()
