# tests/test_notifier.py
import pytest

from printflow.domain.errors import NotFound
from printflow.domain.stages import stage_index
from printflow.services.notification_service import order_channel, session_channel


def test_snapshot_is_current_truth(worker, notifier):
    session = worker.create_session("waves", [], "en", None)
    worker.advance(session["session_id"])

    snap = notifier.snapshot(session["session_id"])

    assert snap["stage"] == "generating_brief"
    assert snap["seq"] == 2
    with pytest.raises(NotFound):
        notifier.snapshot("missing")


def test_events_published_in_order(worker, bus):
    session = worker.create_session("waves", [], "en", None)
    worker.run(session["session_id"], budget_seconds=5)

    published = bus.channel_payloads(session_channel(session["session_id"]))
    seqs = [p["seq"] for p in published]
    assert seqs == sorted(seqs)
    assert published[0]["stage"] == "queued"
    assert published[-1]["stage"] == "ready"


def test_subscribe_replays_log_for_late_subscriber(worker, notifier):
    session = worker.create_session("waves", [], "en", None)
    worker.run(session["session_id"], budget_seconds=5)

    events = list(notifier.subscribe(session["session_id"], poll_timeout=0, max_idle_polls=1))

    stages = [e["stage"] for e in events]
    assert stages[0] == "queued"
    assert stages[-1] == "ready"
    assert [stage_index(s) for s in stages] == sorted(stage_index(s) for s in stages)


def test_subscribe_resumes_after_seq(worker, notifier):
    session = worker.create_session("waves", [], "en", None)
    worker.run(session["session_id"], budget_seconds=5)

    events = list(notifier.subscribe(session["session_id"], after_seq=3, poll_timeout=0, max_idle_polls=1))

    assert events[0]["seq"] == 4
    assert events[-1]["stage"] == "ready"


def test_subscribe_follows_live_events_without_duplicates(worker, notifier, bus):
    session = worker.create_session("waves", [], "en", None)
    sid = session["session_id"]
    stream = notifier.subscribe(sid, poll_timeout=0, max_idle_polls=2)

    first = next(stream)
    assert first["stage"] == "queued"

    worker.run(sid, budget_seconds=5)
    rest = list(stream)

    seqs = [first["seq"]] + [e["seq"] for e in rest]
    assert seqs == sorted(set(seqs))
    assert rest[-1]["stage"] == "ready"
    # the subscription is closed once the stream ends
    assert bus.subscribers[session_channel(sid)] == []


def test_subscribe_stops_when_idle(worker, notifier):
    session = worker.create_session("waves", [], "en", None)

    events = list(notifier.subscribe(session["session_id"], poll_timeout=0, max_idle_polls=3))

    assert [e["stage"] for e in events] == ["queued"]


def test_bus_outage_does_not_break_transitions(worker, notifier, bus):
    bus.fail = True
    session = worker.create_session("waves", [], "en", None)

    assert worker.run(session["session_id"], budget_seconds=5) == "ready"
    # the log still has every event for pollers
    assert notifier.events(session["session_id"])[-1]["stage"] == "ready"


def test_order_events(paid_order, bus):
    payloads = bus.channel_payloads(order_channel(paid_order))

    assert payloads[0]["status"] == "processing"
    assert payloads[0]["status_message"] == "Processing your order"
