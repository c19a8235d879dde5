import logging

import pytest

from report_configurator.db import SqliteChangeNotifier, connect
from report_configurator.models import GLOBAL, ReportConfiguration, Scope
from report_configurator.stores import InMemoryKeyValueStore, InProcessChangeNotifier
from report_configurator.sync import (
    NotificationShapeError,
    SyncBroadcaster,
    SyncNotification,
    deletion_notification,
    notification_for,
)


def collect(broadcaster: SyncBroadcaster, listener_id: str = "viewer") -> list[SyncNotification]:
    received: list[SyncNotification] = []
    broadcaster.add_listener(listener_id, received.append)
    return received


def test_notification_builders() -> None:
    configuration = ReportConfiguration(id="cfg-1", name="Report", owner_scope=Scope.client("acme"))

    updated = notification_for(configuration)
    assert updated.kind == "updated"
    assert updated.scope == Scope.client("acme")
    assert updated.config_id == "cfg-1"
    assert updated.message == "Configuration updated for client acme"

    deleted = deletion_notification(GLOBAL)
    assert deleted.kind == "deleted"
    assert deleted.message == "Configuration deleted for global"


def test_payload_round_trip_and_shape_check() -> None:
    notification = notification_for(ReportConfiguration(id="cfg-1", name="Report"), "created")
    restored = SyncNotification.from_payload(notification.to_payload())
    assert restored == notification

    with pytest.raises(NotificationShapeError):
        SyncNotification.from_payload({"event": "something-else"})
    with pytest.raises(NotificationShapeError, match="unknown notification kind"):
        SyncNotification.from_payload({**notification.to_payload(), "kind": "renamed"})
    with pytest.raises(NotificationShapeError):
        SyncNotification.from_payload({**notification.to_payload(), "scope": "tenant:x"})


def test_announce_reaches_every_listener_once() -> None:
    notifier = InProcessChangeNotifier()
    broadcaster = SyncBroadcaster(notifier)
    broadcaster.init()
    first = collect(broadcaster, "first")
    second = collect(broadcaster, "second")

    broadcaster.announce(deletion_notification(GLOBAL))

    assert len(first) == 1
    assert len(second) == 1
    assert first[0].origin == broadcaster.origin


def test_failing_listener_is_skipped(caplog) -> None:
    broadcaster = SyncBroadcaster()
    broadcaster.init()

    def explode(_: SyncNotification) -> None:
        raise RuntimeError("boom")

    broadcaster.add_listener("broken", explode)
    healthy = collect(broadcaster, "healthy")

    with caplog.at_level(logging.ERROR):
        broadcaster.announce(deletion_notification(GLOBAL))

    assert len(healthy) == 1
    assert "sync_listener_failed" in caplog.text


def test_remote_sessions_receive_payloads() -> None:
    notifier = InProcessChangeNotifier()
    local = SyncBroadcaster(notifier)
    remote = SyncBroadcaster(notifier)
    local.init()
    remote.init()
    received = collect(remote)

    local.announce(deletion_notification(Scope.client("acme")))

    assert len(received) == 1
    assert received[0].scope == Scope.client("acme")
    assert received[0].origin == local.origin


def test_malformed_remote_payload_is_ignored() -> None:
    notifier = InProcessChangeNotifier()
    broadcaster = SyncBroadcaster(notifier)
    broadcaster.init()
    received = collect(broadcaster)

    notifier.publish({"event": "report_config_sync", "kind": "updated"})
    notifier.publish({"hello": "world"})

    assert received == []


def test_shutdown_unsubscribes_and_clears_listeners() -> None:
    notifier = InProcessChangeNotifier()
    broadcaster = SyncBroadcaster(notifier)
    broadcaster.init()
    collect(broadcaster)
    assert notifier.subscriber_count == 1

    broadcaster.shutdown()

    assert notifier.subscriber_count == 0
    assert broadcaster.status() == {
        "initialized": False,
        "origin": broadcaster.origin,
        "listeners": [],
        "invalidation_listeners": [],
    }


def test_invalidate_clears_cache_keys_and_notifies() -> None:
    cache = InMemoryKeyValueStore()
    for key in ("report_cache:client:acme", "report_data:client:acme", "report_list_cache", "report_cache:global"):
        cache.set(key, "{}")
    broadcaster = SyncBroadcaster(cache_store=cache)
    invalidated: list[Scope] = []
    broadcaster.add_invalidation_listener("ui", invalidated.append)

    removed = broadcaster.invalidate(Scope.client("acme"))

    assert removed == ["report_cache:client:acme", "report_data:client:acme", "report_list_cache"]
    assert cache.keys() == ["report_cache:global"]
    assert invalidated == [Scope.client("acme")]


def test_status_lists_listeners() -> None:
    broadcaster = SyncBroadcaster()
    broadcaster.init()
    collect(broadcaster, "b")
    collect(broadcaster, "a")
    broadcaster.remove_listener("b")

    status = broadcaster.status()
    assert status["initialized"] is True
    assert status["listeners"] == ["a"]


def test_sqlite_notifier_delivers_across_broadcasters(tmp_path) -> None:
    db = tmp_path / "reports.db"
    writer = SyncBroadcaster(SqliteChangeNotifier(db))
    reader_notifier = SqliteChangeNotifier(db)
    reader = SyncBroadcaster(reader_notifier)
    writer.init()
    reader.init()
    own = collect(writer, "writer-view")
    remote = collect(reader, "reader-view")

    writer.announce(deletion_notification(Scope.client("acme")))
    assert len(own) == 1
    assert remote == []

    assert reader_notifier.poll() == 1
    assert len(remote) == 1
    assert remote[0].scope == Scope.client("acme")
    assert reader_notifier.poll() == 0


def test_sqlite_notifier_drops_own_echoes(tmp_path) -> None:
    notifier = SqliteChangeNotifier(tmp_path / "reports.db")
    broadcaster = SyncBroadcaster(notifier)
    broadcaster.init()
    received = collect(broadcaster)

    broadcaster.announce(deletion_notification(GLOBAL))
    notifier.poll()

    assert len(received) == 1


def test_invalidate_reports_only_existing_keys() -> None:
    cache = InMemoryKeyValueStore()
    cache.set("report_data:client:acme", "{}")
    broadcaster = SyncBroadcaster(cache_store=cache)

    assert broadcaster.invalidate(Scope.client("acme")) == ["report_data:client:acme"]
    assert broadcaster.invalidate(Scope.client("acme")) == []


def test_invalidating_global_drops_client_report_caches() -> None:
    cache = InMemoryKeyValueStore()
    for key in ("report_cache:global", "report_cache:client:acme", "report_data:client:beta", "config:client:acme"):
        cache.set(key, "{}")
    broadcaster = SyncBroadcaster(cache_store=cache)

    removed = broadcaster.invalidate(GLOBAL)

    assert sorted(removed) == ["report_cache:client:acme", "report_cache:global", "report_data:client:beta"]
    assert cache.keys() == ["config:client:acme"]


def test_sqlite_publish_failure_is_logged_not_raised(tmp_path, caplog) -> None:
    db = tmp_path / "reports.db"
    notifier = SqliteChangeNotifier(db)
    broadcaster = SyncBroadcaster(notifier)
    broadcaster.init()
    received = collect(broadcaster)
    conn = connect(db)
    with conn:
        conn.execute("DROP TABLE change_events")
    conn.close()

    with caplog.at_level(logging.WARNING):
        broadcaster.announce(deletion_notification(GLOBAL))

    assert len(received) == 1
    assert "change_event_publish_failed" in caplog.text
