import time

from core.event_system import EventSystem, EventType, ScanEventData, WatcherEventData


def _scan_event(event_type=EventType.SCAN_COMPLETED):
    return ScanEventData(event_type=event_type, source="test", timestamp=time.time(), library_id="lib")


def test_subscribers_receive_published_events():
    events = EventSystem()
    seen = []
    events.subscribe(EventType.SCAN_COMPLETED, seen.append)

    event = _scan_event()
    events.publish(event)

    assert seen == [event]


def test_unsubscribe():
    events = EventSystem()
    seen = []
    events.subscribe(EventType.SCAN_COMPLETED, seen.append)
    events.unsubscribe(EventType.SCAN_COMPLETED, seen.append)
    events.publish(_scan_event())
    assert seen == []


def test_broken_subscriber_isolated():
    events = EventSystem()
    seen = []

    def broken(event):
        raise RuntimeError("boom")

    events.subscribe(EventType.SCAN_FAILED, broken)
    events.subscribe(EventType.SCAN_FAILED, seen.append)
    events.publish(_scan_event(EventType.SCAN_FAILED))

    assert len(seen) == 1


def test_progress_events_are_not_kept_in_history():
    events = EventSystem()
    events.publish(_scan_event(EventType.SCAN_PROGRESS))
    events.publish(WatcherEventData(event_type=EventType.WATCHER_ADD, source="watcher",
                                    timestamp=time.time(), library_id="lib", path="x.jpg"))

    history = events.get_event_history()
    assert [e.event_type for e in history] == [EventType.WATCHER_ADD]


def test_history_is_bounded():
    events = EventSystem(history_size=3)
    for _ in range(5):
        events.publish(_scan_event())
    assert len(events.get_event_history()) == 3
    events.clear_history()
    assert events.get_event_history() == []
