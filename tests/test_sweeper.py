from datetime import datetime, timezone

import bardo.sweeper
from bardo.sweeper import StatusSweeper, seconds_until, sweep_event_statuses
from helpers import past, stage


def _doc(store, e):
    return store.events.find_one({"_id": e["_id"]})


def test_ended_stages_are_deactivated(store, make_event):
    e = make_event(
        preSaleStages=[stage("Early", end=past(1)), stage("General")],
        status="active",
    )

    summary = sweep_event_statuses(store)

    assert summary["stagesDeactivated"] == 1
    stages = _doc(store, e)["preSaleStages"]
    assert [s["isActive"] for s in stages] == [False, True]
    assert _doc(store, e)["status"] == "active"


def test_last_stage_ending_sells_the_event_out(store, make_event):
    e = make_event(preSaleStages=[stage(end=past(1))], status="active")

    summary = sweep_event_statuses(store)

    assert _doc(store, e)["status"] == "sold-out"
    assert summary["updated"] == 1


def test_past_events_complete(store, make_event):
    e = make_event(date=past(1), status="active", basePrice=100.0)
    cancelled = make_event(date=past(1), status="cancelled")

    sweep_event_statuses(store)

    assert _doc(store, e)["status"] == "completed"
    assert _doc(store, cancelled)["status"] == "cancelled"


def test_exhausted_free_pool(store, make_event):
    e = make_event(freeTickets={"enabled": True, "quantity": 2, "ticketsClaimed": 2}, status="active")

    sweep_event_statuses(store)

    assert _doc(store, e)["status"] == "sold-out"


def test_one_failing_event_does_not_stop_the_sweep(store, make_event, monkeypatch):
    bad = make_event(date=past(1), status="active", title="Rota")
    good = make_event(date=past(2), status="active", title="Sana")
    original = bardo.sweeper.refresh_event_status

    def flaky(events, event, now=None):
        if event["_id"] == bad["_id"]:
            raise RuntimeError("boom")
        return original(events, event, now)

    monkeypatch.setattr(bardo.sweeper, "refresh_event_status", flaky)

    summary = sweep_event_statuses(store)

    assert summary["errors"] == 1
    assert summary["scanned"] == 2
    assert _doc(store, good)["status"] == "completed"
    assert _doc(store, bad)["status"] == "active"


def test_sweep_is_idempotent(store, make_event):
    make_event(date=past(1), status="active")

    assert sweep_event_statuses(store)["updated"] == 1
    second = sweep_event_statuses(store)
    assert second["updated"] == 0
    assert second["scanned"] == 0


def test_seconds_until_next_run():
    now = datetime(2026, 3, 1, 23, 30, tzinfo=timezone.utc)

    assert seconds_until("00:00", now) == 30 * 60
    assert seconds_until("23:45", now) == 15 * 60
    assert seconds_until("23:30", now) == 24 * 3600


def test_sweeper_thread_runs_once_and_stops(store, make_event):
    e = make_event(date=past(1), status="active")
    sweeper = StatusSweeper(store, "00:00")
    sweeper.stop()

    sweeper.start()
    sweeper.join(timeout=5)

    assert not sweeper.is_alive()
    assert _doc(store, e)["status"] == "completed"


def test_cli_command(app, make_event):
    make_event(date=past(1), status="active")

    result = app.test_cli_runner().invoke(args=["sweep-statuses"])

    assert result.exit_code == 0
    assert "updated=1" in result.output
