from __future__ import annotations

import itertools
import logging
from typing import Any, Callable, Protocol

logger = logging.getLogger(__name__)

Payload = dict[str, Any]
PayloadCallback = Callable[[Payload], None]


class KeyValueStore(Protocol):
    """String store shared by every scope and session.

    Write failures (quota exceeded, locked database) are reported by returning
    ``False`` and never raised.
    """

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> bool: ...

    def remove(self, key: str) -> bool: ...

    def keys(self, prefix: str = "") -> list[str]: ...


class ChangeNotifier(Protocol):
    """Cross-session broadcast channel for opaque JSON-compatible payloads."""

    def publish(self, payload: Payload) -> None: ...

    def subscribe(self, callback: PayloadCallback) -> int: ...

    def unsubscribe(self, token: int) -> None: ...


class InMemoryKeyValueStore:
    def __init__(self, quota_bytes: int | None = None) -> None:
        self._entries: dict[str, str] = {}
        self.quota_bytes = quota_bytes

    def get(self, key: str) -> str | None:
        return self._entries.get(key)

    def set(self, key: str, value: str) -> bool:
        if self.quota_bytes is not None:
            projected = self.used_bytes() - len(self._entries.get(key, "")) + len(value)
            if projected > self.quota_bytes:
                logger.warning("store_quota_exceeded", extra={"key": key, "projected_bytes": projected})
                return False
        self._entries[key] = value
        return True

    def remove(self, key: str) -> bool:
        self._entries.pop(key, None)
        return True

    def keys(self, prefix: str = "") -> list[str]:
        return sorted(key for key in self._entries if key.startswith(prefix))

    def used_bytes(self) -> int:
        return sum(len(value) for value in self._entries.values())


class InProcessChangeNotifier:
    """Pub/sub bus for sessions living in the same process."""

    def __init__(self) -> None:
        self._subscribers: dict[int, PayloadCallback] = {}
        self._tokens = itertools.count(1)

    def publish(self, payload: Payload) -> None:
        for token, callback in list(self._subscribers.items()):
            try:
                callback(dict(payload))
            except Exception:
                logger.exception("change_subscriber_failed", extra={"token": token})

    def subscribe(self, callback: PayloadCallback) -> int:
        token = next(self._tokens)
        self._subscribers[token] = callback
        return token

    def unsubscribe(self, token: int) -> None:
        self._subscribers.pop(token, None)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
