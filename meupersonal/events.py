"""
In-process publish/subscribe used to fan notifications out to SSE streams.

Handlers run synchronously on the publisher's thread; a failing handler is
logged and never affects the publisher or the other subscribers.
"""

import logging
from collections import defaultdict
from threading import Lock
from typing import Any, Callable

logger = logging.getLogger(__name__)

Handler = Callable[[Any], None]

_subscribers: dict[str, list[Handler]] = defaultdict(list)
_lock = Lock()


def academy_topic(academy_id: str) -> str:
    return f"academy:{academy_id}"


def user_topic(user_id: str) -> str:
    return f"user:{user_id}"


def franqueadora_topic(franqueadora_id: str) -> str:
    return f"franqueadora:{franqueadora_id}"


def subscribe(topic: str, handler: Handler) -> Callable[[], None]:
    """Register a handler; returns a callable that removes it"""
    with _lock:
        _subscribers[topic].append(handler)

    def unsubscribe() -> None:
        with _lock:
            handlers = _subscribers.get(topic)
            if handlers and handler in handlers:
                handlers.remove(handler)
            if handlers is not None and not handlers:
                del _subscribers[topic]

    return unsubscribe


def publish(topic: str, payload: Any) -> int:
    """Deliver payload to every handler of topic; returns how many were called"""
    with _lock:
        handlers = list(_subscribers.get(topic, ()))

    for handler in handlers:
        try:
            handler(payload)
        except Exception as e:
            logger.error(f"❌ Event handler failed for topic {topic}: {e}")
    return len(handlers)


def subscriber_count(topic: str) -> int:
    with _lock:
        return len(_subscribers.get(topic, ()))


def reset() -> None:
    with _lock:
        _subscribers.clear()
