from live_sync import LiveViewSync


def test_waiting_view_refreshes_on_every_change(service, feed):
    sync = LiveViewSync(service, feed)
    snapshots = []
    subscription = sync.subscribe_waiting(snapshots.append)

    a = service.register("Alice", "5551110001", "alice@example.com")
    b = service.register("Bob", "5551110002", "bob@example.com")
    service.call_next()

    assert [[t.id for t in snap] for snap in snapshots] == [[a.id], [a.id, b.id], [b.id]]
    subscription.cancel()


def test_called_view_refreshes(service, feed):
    sync = LiveViewSync(service, feed)
    seen = []
    sync.subscribe_called(seen.append)

    a = service.register("Alice", "5551110001", "alice@example.com")
    service.call_next()
    service.complete_ticket(a.id)

    assert seen[0] is None
    assert seen[1].id == a.id
    assert seen[2] is None


def test_cancel_stops_callbacks(service, feed):
    sync = LiveViewSync(service, feed)
    snapshots = []
    subscription = sync.subscribe_waiting(snapshots.append)

    service.register("Alice", "5551110001", "alice@example.com")
    subscription.cancel()
    service.register("Bob", "5551110002", "bob@example.com")

    assert len(snapshots) == 1
    assert not subscription.active
    assert feed.listener_count == 0
    # Cancelling twice is harmless
    subscription.cancel()


def test_subscriptions_are_independent(service, feed):
    sync = LiveViewSync(service, feed)
    first, second = [], []
    sub_first = sync.subscribe_waiting(first.append)
    with sync.subscribe_waiting(second.append):
        service.register("Alice", "5551110001", "alice@example.com")
    service.register("Bob", "5551110002", "bob@example.com")

    assert len(first) == 2
    assert len(second) == 1
    sub_first.cancel()


def test_cancel_during_refetch_suppresses_delivery(service, feed):
    calls = []

    class SlowService:
        def list_waiting(self):
            subscription.cancel()
            return []

    sync = LiveViewSync(SlowService(), feed)
    subscription = sync.subscribe_waiting(calls.append)
    service.register("Alice", "5551110001", "alice@example.com")
    assert calls == []


def test_failing_callback_does_not_break_writes(service, feed):
    sync = LiveViewSync(service, feed)

    def explode(_):
        raise RuntimeError("client went away")

    sync.subscribe_waiting(explode)
    ticket = service.register("Alice", "5551110001", "alice@example.com")
    assert service.list_waiting()[0].id == ticket.id
