from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from .codec import format_timestamp, parse_timestamp
from .models import ReportConfiguration, Scope, new_id, utcnow
from .stores import ChangeNotifier, KeyValueStore, Payload

logger = logging.getLogger(__name__)

REPORT_LIST_CACHE_KEY = "report_list_cache"
SYNC_EVENT = "report_config_sync"


class NotificationKind(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class NotificationShapeError(ValueError):
    """Raised when a payload received from the notifier is not a sync notification."""


@dataclass(slots=True, frozen=True)
class SyncNotification:
    kind: str
    scope: Scope
    config_id: str
    timestamp: datetime = field(default_factory=utcnow)
    message: str = ""
    origin: str = ""

    def to_payload(self) -> Payload:
        return {
            "event": SYNC_EVENT,
            "kind": str(getattr(self.kind, "value", self.kind)),
            "scope": self.scope.label,
            "config_id": self.config_id,
            "timestamp": format_timestamp(self.timestamp),
            "message": self.message,
            "origin": self.origin,
        }

    @classmethod
    def from_payload(cls, payload: Any) -> SyncNotification:
        if not isinstance(payload, dict) or payload.get("event") != SYNC_EVENT:
            raise NotificationShapeError("payload is not a report sync event")
        kind = payload.get("kind")
        if kind not in {item.value for item in NotificationKind}:
            raise NotificationShapeError(f"unknown notification kind: {kind!r}")
        try:
            scope = Scope.from_label(str(payload.get("scope") or ""))
            timestamp = parse_timestamp(str(payload["timestamp"]))
        except (KeyError, ValueError) as exc:
            raise NotificationShapeError(str(exc)) from exc
        return cls(
            kind=str(kind),
            scope=scope,
            config_id=str(payload.get("config_id") or ""),
            timestamp=timestamp,
            message=str(payload.get("message") or ""),
            origin=str(payload.get("origin") or ""),
        )


SyncListener = Callable[[SyncNotification], None]
InvalidationListener = Callable[[Scope], None]


def notification_for(
    configuration: ReportConfiguration,
    kind: NotificationKind | str = NotificationKind.UPDATED,
) -> SyncNotification:
    kind_value = str(getattr(kind, "value", kind))
    scope = configuration.owner_scope
    return SyncNotification(
        kind=kind_value,
        scope=scope,
        config_id=configuration.id,
        timestamp=utcnow(),
        message=f"Configuration {kind_value} for {scope.describe()}",
    )


def deletion_notification(scope: Scope, config_id: str = "") -> SyncNotification:
    return SyncNotification(
        kind=NotificationKind.DELETED.value,
        scope=scope,
        config_id=config_id,
        timestamp=utcnow(),
        message=f"Configuration deleted for {scope.describe()}",
    )


def cache_keys_for(scope: Scope) -> list[str]:
    return [f"report_cache:{scope.label}", f"report_data:{scope.label}", REPORT_LIST_CACHE_KEY]


class SyncBroadcaster:
    """Fan-out of configuration changes to local listeners and other sessions.

    Local listeners are called synchronously by ``announce``. The payload is
    then published on the notifier so that broadcasters in other sessions
    deliver it to their own listeners. Echoes of our own payloads are dropped.
    """

    def __init__(
        self,
        notifier: ChangeNotifier | None = None,
        cache_store: KeyValueStore | None = None,
    ) -> None:
        self.notifier = notifier
        self.cache_store = cache_store
        self.origin = new_id("sync")
        self._listeners: dict[str, SyncListener] = {}
        self._invalidation_listeners: dict[str, InvalidationListener] = {}
        self._token: int | None = None
        self.initialized = False

    def init(self) -> None:
        if self.initialized:
            return
        if self.notifier is not None:
            self._token = self.notifier.subscribe(self._on_remote_payload)
        self.initialized = True
        logger.info("sync_initialized", extra={"origin": self.origin})

    def shutdown(self) -> None:
        if self.notifier is not None and self._token is not None:
            self.notifier.unsubscribe(self._token)
        self._token = None
        self._listeners.clear()
        self._invalidation_listeners.clear()
        self.initialized = False
        logger.info("sync_shutdown", extra={"origin": self.origin})

    def add_listener(self, listener_id: str, callback: SyncListener) -> None:
        self._listeners[listener_id] = callback

    def remove_listener(self, listener_id: str) -> None:
        self._listeners.pop(listener_id, None)

    def add_invalidation_listener(self, listener_id: str, callback: InvalidationListener) -> None:
        self._invalidation_listeners[listener_id] = callback

    def remove_invalidation_listener(self, listener_id: str) -> None:
        self._invalidation_listeners.pop(listener_id, None)

    def announce(self, notification: SyncNotification) -> None:
        stamped = SyncNotification(
            kind=notification.kind,
            scope=notification.scope,
            config_id=notification.config_id,
            timestamp=notification.timestamp,
            message=notification.message,
            origin=notification.origin or self.origin,
        )
        self._deliver(stamped)
        if self.notifier is not None:
            self.notifier.publish(stamped.to_payload())

    def invalidate(self, scope: Scope) -> list[str]:
        """Drop cached report entries for ``scope`` and return the keys that existed.

        Client reports cached while falling back to the global configuration
        go stale with it, so invalidating global also drops every client entry.
        """
        removed: list[str] = []
        if self.cache_store is not None:
            keys = cache_keys_for(scope)
            if scope.is_global:
                for prefix in ("report_cache:client:", "report_data:client:"):
                    keys.extend(self.cache_store.keys(prefix))
            for key in keys:
                if self.cache_store.get(key) is not None and self.cache_store.remove(key):
                    removed.append(key)
        for listener_id, callback in list(self._invalidation_listeners.items()):
            try:
                callback(scope)
            except Exception:
                logger.exception("invalidation_listener_failed", extra={"listener_id": listener_id})
        logger.info("cache_invalidated", extra={"scope": scope.label, "keys": removed})
        return removed

    def status(self) -> dict[str, Any]:
        return {
            "initialized": self.initialized,
            "origin": self.origin,
            "listeners": sorted(self._listeners),
            "invalidation_listeners": sorted(self._invalidation_listeners),
        }

    def _deliver(self, notification: SyncNotification) -> None:
        for listener_id, callback in list(self._listeners.items()):
            try:
                callback(notification)
            except Exception:
                logger.exception(
                    "sync_listener_failed",
                    extra={"listener_id": listener_id, "scope": notification.scope.label},
                )

    def _on_remote_payload(self, payload: Payload) -> None:
        try:
            notification = SyncNotification.from_payload(payload)
        except NotificationShapeError as exc:
            logger.warning("sync_payload_ignored", extra={"error": str(exc)})
            return
        if notification.origin == self.origin:
            return
        self._deliver(notification)
