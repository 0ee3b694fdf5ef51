"""ChangeFeedReconciler のユニットテスト"""

import pytest
from energy_sync.clock import ManualClock
from energy_sync.collection import OrderedCollection
from energy_sync.config import ReconcilerSection
from energy_sync.models import ChangeEvent, ChangeKind
from energy_sync.reconciler import ChangeFeedReconciler, ReconcileUpdate
from energy_sync.transport import InMemoryChangeFeedTransport, SubscriptionStatus

TOPIC = "notifications:user-1"


@pytest.fixture
def transport() -> InMemoryChangeFeedTransport:
    return InMemoryChangeFeedTransport()


@pytest.fixture
def collection() -> OrderedCollection:
    return OrderedCollection(max_items=100, counters={"unread": lambda n: not n.get("read", False)})


@pytest.fixture
def reconciler(
    transport: InMemoryChangeFeedTransport, collection: OrderedCollection, clock: ManualClock
) -> ChangeFeedReconciler:
    return ChangeFeedReconciler(
        transport,
        collection,
        clock,
        table="notifications",
        config=ReconcilerSection(throttle_window_ms=1000),
    )


def event(entity_id: str, kind: ChangeKind, at: float = 0.0, **payload) -> ChangeEvent:
    return ChangeEvent(entity_id=entity_id, kind=kind, payload={"id": entity_id, **payload}, observed_at=at)


async def test_start_is_idempotent(reconciler: ChangeFeedReconciler, transport: InMemoryChangeFeedTransport) -> None:
    await reconciler.start("user-1")
    await reconciler.start("user-1")
    assert transport.subscribers(TOPIC) == 1
    assert reconciler.topic == TOPIC

    await reconciler.stop()
    await reconciler.stop()
    assert transport.subscribers(TOPIC) == 0


async def test_start_for_new_subject_moves_subscription(
    reconciler: ChangeFeedReconciler, transport: InMemoryChangeFeedTransport
) -> None:
    await reconciler.start("user-1")
    await reconciler.start("user-2")
    assert transport.subscribers(TOPIC) == 0
    assert transport.subscribers("notifications:user-2") == 1


async def test_burst_for_one_entity_is_merged_once(
    reconciler: ChangeFeedReconciler,
    transport: InMemoryChangeFeedTransport,
    collection: OrderedCollection,
    clock: ManualClock,
) -> None:
    """同一エンティティへの 50 件のイベントは 1 回だけマージされること。"""
    updates: list[ReconcileUpdate] = []
    reconciler.add_listener(updates.append)
    await reconciler.start("user-1")

    transport.emit(TOPIC, event("n1", ChangeKind.INSERT, title="v0"))
    for i in range(1, 50):
        transport.emit(TOPIC, event("n1", ChangeKind.UPDATE, title=f"v{i}"))
    assert updates == []

    await clock.advance(1.0)
    assert len(updates) == 1
    assert updates[0].applied == 1
    assert collection.snapshot() == [{"id": "n1", "title": "v49"}]
    assert updates[0].counters == {"unread": 1}


async def test_events_are_applied_in_first_arrival_order(
    reconciler: ChangeFeedReconciler,
    transport: InMemoryChangeFeedTransport,
    collection: OrderedCollection,
    clock: ManualClock,
) -> None:
    await reconciler.start("user-1")
    transport.emit(TOPIC, event("a", ChangeKind.INSERT))
    transport.emit(TOPIC, event("b", ChangeKind.INSERT))
    transport.emit(TOPIC, event("a", ChangeKind.UPDATE, read=True))
    await clock.advance(1.0)
    assert [n["id"] for n in collection.snapshot()] == ["b", "a"]
    assert collection.counters == {"unread": 1}


async def test_insert_then_delete_of_new_entity_is_dropped(
    reconciler: ChangeFeedReconciler,
    transport: InMemoryChangeFeedTransport,
    collection: OrderedCollection,
    clock: ManualClock,
) -> None:
    updates: list[ReconcileUpdate] = []
    reconciler.add_listener(updates.append)
    await reconciler.start("user-1")

    transport.emit(TOPIC, event("tmp", ChangeKind.INSERT))
    transport.emit(TOPIC, event("tmp", ChangeKind.DELETE))
    await clock.advance(1.0)
    assert len(collection) == 0
    assert updates == []


async def test_delete_of_held_entity(
    reconciler: ChangeFeedReconciler,
    transport: InMemoryChangeFeedTransport,
    collection: OrderedCollection,
    clock: ManualClock,
) -> None:
    collection.insert({"id": "old"})
    await reconciler.start("user-1")
    transport.emit(TOPIC, event("old", ChangeKind.DELETE))
    await clock.advance(1.0)
    assert "old" not in collection


async def test_duplicate_payload_does_not_notify(
    reconciler: ChangeFeedReconciler,
    transport: InMemoryChangeFeedTransport,
    collection: OrderedCollection,
    clock: ManualClock,
) -> None:
    collection.insert({"id": "n1", "title": "same"})
    updates: list[ReconcileUpdate] = []
    reconciler.add_listener(updates.append)
    await reconciler.start("user-1")

    transport.emit(TOPIC, event("n1", ChangeKind.UPDATE, title="same"))
    await clock.advance(1.0)
    assert updates == []


async def test_window_reopens_after_flush(
    reconciler: ChangeFeedReconciler, transport: InMemoryChangeFeedTransport, clock: ManualClock
) -> None:
    updates: list[ReconcileUpdate] = []
    reconciler.add_listener(updates.append)
    await reconciler.start("user-1")

    transport.emit(TOPIC, event("a", ChangeKind.INSERT))
    await clock.advance(1.0)
    transport.emit(TOPIC, event("b", ChangeKind.INSERT))
    await clock.advance(0.5)
    assert len(updates) == 1
    await clock.advance(0.5)
    assert len(updates) == 2


async def test_failing_listener_does_not_block_others(
    reconciler: ChangeFeedReconciler, transport: InMemoryChangeFeedTransport, clock: ManualClock
) -> None:
    seen: list[int] = []

    def broken(update: ReconcileUpdate) -> None:
        raise RuntimeError("render failed")

    reconciler.add_listener(broken)
    reconciler.add_listener(lambda u: seen.append(u.applied))
    await reconciler.start("user-1")
    transport.emit(TOPIC, event("a", ChangeKind.INSERT))
    await clock.advance(1.0)
    assert seen == [1]


async def test_stop_discards_buffered_events(
    reconciler: ChangeFeedReconciler,
    transport: InMemoryChangeFeedTransport,
    collection: OrderedCollection,
    clock: ManualClock,
) -> None:
    await reconciler.start("user-1")
    transport.emit(TOPIC, event("a", ChangeKind.INSERT))
    await reconciler.stop()
    await clock.advance(5.0)
    assert len(collection) == 0
    assert clock.pending_timers == 0


async def test_resubscribes_with_backoff_after_drop(
    reconciler: ChangeFeedReconciler, transport: InMemoryChangeFeedTransport, clock: ManualClock
) -> None:
    await reconciler.start("user-1")
    transport.fail_next_subscribe(1)
    transport.drop(TOPIC, SubscriptionStatus.CHANNEL_ERROR)
    assert not reconciler.subscribed

    await clock.advance(1.0)
    assert len(transport.subscribe_calls) == 2
    assert not reconciler.subscribed

    await clock.advance(1.0)
    assert len(transport.subscribe_calls) == 2
    await clock.advance(1.0)
    assert len(transport.subscribe_calls) == 3
    assert reconciler.subscribed
    assert transport.subscribers(TOPIC) == 1


async def test_gives_up_after_max_attempts(
    transport: InMemoryChangeFeedTransport, collection: OrderedCollection, clock: ManualClock
) -> None:
    reconciler = ChangeFeedReconciler(
        transport,
        collection,
        clock,
        table="notifications",
        config=ReconcilerSection(resubscribe_initial_delay=1.0, resubscribe_max_delay=2.0, resubscribe_max_attempts=3),
    )
    await reconciler.start("user-1")
    transport.fail_next_subscribe(10)
    transport.drop(TOPIC, SubscriptionStatus.TIMED_OUT)

    await clock.advance(60.0)
    assert reconciler.gave_up
    assert len(transport.subscribe_calls) == 1 + 3
    assert clock.pending_timers == 0


def test_from_postgres_payload() -> None:
    insert = ChangeEvent.from_postgres_payload({"eventType": "INSERT", "new": {"id": 5, "title": "t"}}, 1.0)
    assert insert.entity_id == "5"
    assert insert.kind is ChangeKind.INSERT

    delete = ChangeEvent.from_postgres_payload({"eventType": "DELETE", "old": {"id": 5}, "new": {}}, 2.0)
    assert delete.kind is ChangeKind.DELETE
    assert delete.payload == {"id": 5}

    with pytest.raises(ValueError):
        ChangeEvent.from_postgres_payload({"eventType": "UPDATE", "new": {}}, 3.0)


async def test_delete_then_reinsert_moves_entity_to_front(
    reconciler: ChangeFeedReconciler,
    transport: InMemoryChangeFeedTransport,
    collection: OrderedCollection,
    clock: ManualClock,
) -> None:
    """同一ウィンドウ内で削除→再挿入されたエンティティは先頭に移ること。"""
    collection.insert({"id": "a", "title": "first"})
    collection.insert({"id": "b"})
    await reconciler.start("user-1")

    transport.emit(TOPIC, event("a", ChangeKind.DELETE))
    transport.emit(TOPIC, event("a", ChangeKind.INSERT, title="again"))
    await clock.advance(1.0)
    assert collection.snapshot() == [{"id": "a", "title": "again"}, {"id": "b"}]


async def test_reinsert_then_delete_removes_entity(
    reconciler: ChangeFeedReconciler,
    transport: InMemoryChangeFeedTransport,
    collection: OrderedCollection,
    clock: ManualClock,
) -> None:
    collection.insert({"id": "a"})
    await reconciler.start("user-1")

    transport.emit(TOPIC, event("a", ChangeKind.DELETE))
    transport.emit(TOPIC, event("a", ChangeKind.INSERT))
    transport.emit(TOPIC, event("a", ChangeKind.DELETE))
    await clock.advance(1.0)
    assert len(collection) == 0
