import threading
from dataclasses import replace

import pytest

from geoalarm.errors import AlarmNotFound, PermissionDenied, PositionUnavailable, ProximityDenied
from geoalarm.location import PermissionState
from geoalarm.manager import AlarmRuntimeState, AlarmState

from helpers import TOKYO_STATION, make_alarm, north_of


def assert_disabled_alarms_unscheduled(lifecycle):
    for alarm in lifecycle.alarms():
        if not alarm.enabled:
            assert lifecycle.scheduler.pending_for(alarm.id) == []


def snapshot(lifecycle):
    return (
        lifecycle.alarms(),
        sorted(lifecycle.scheduler.channel.list_pending(), key=lambda item: item[0]),
        lifecycle.alerting_ids(),
    )


def ring(lifecycle, clock, alarm_id="alarm-a"):
    clock.set(7, 0)
    lifecycle.scheduler.channel.deliver_due()
    assert lifecycle.state(alarm_id) == AlarmState.ALERTING


def test_add_arms_alarm(lifecycle, scheduler):
    stored = lifecycle.add(make_alarm(enabled=False))
    assert stored.enabled is True
    assert lifecycle.state("alarm-a") == AlarmState.ARMED
    assert len(scheduler.pending_for("alarm-a")) == 64


def test_add_without_notification_permission_stays_disabled(lifecycle, channel):
    channel.set_authorization(PermissionState.DENIED)
    lifecycle.add(make_alarm())
    assert lifecycle.get("alarm-a").enabled is True
    assert lifecycle.state("alarm-a") == AlarmState.DISABLED
    assert lifecycle.notification_authorized is False


def test_add_rejects_duplicate_id(lifecycle):
    lifecycle.add(make_alarm())
    with pytest.raises(ValueError):
        lifecycle.add(make_alarm(name="Twin"))


@pytest.mark.parametrize(
    "action",
    [
        lambda lc: lc.update(make_alarm(name="Renamed")),
        lambda lc: lc.toggle_enabled("alarm-a"),
        lambda lc: lc.delete("alarm-a"),
        lambda lc: lc.stop("alarm-a"),
    ],
)
def test_gated_actions_rejected_out_of_range(lifecycle, tracker, action):
    lifecycle.add(make_alarm())
    tracker.push(north_of(TOKYO_STATION, 150))
    before = snapshot(lifecycle)
    with pytest.raises(ProximityDenied) as excinfo:
        action(lifecycle)
    assert excinfo.value.distance == pytest.approx(150, abs=0.01)
    assert excinfo.value.radius == 100
    assert snapshot(lifecycle) == before


@pytest.mark.parametrize(
    "action",
    [
        lambda lc: lc.update(make_alarm(name="Renamed")),
        lambda lc: lc.toggle_enabled("alarm-a"),
        lambda lc: lc.delete("alarm-a"),
        lambda lc: lc.stop("alarm-a"),
    ],
)
def test_gated_actions_rejected_without_fix(lifecycle, action):
    lifecycle.add(make_alarm())
    before = snapshot(lifecycle)
    with pytest.raises(PositionUnavailable):
        action(lifecycle)
    assert snapshot(lifecycle) == before


def test_denied_location_permission_reported(lifecycle, tracker):
    lifecycle.add(make_alarm())
    tracker.set_permission(PermissionState.DENIED)
    with pytest.raises(PermissionDenied) as excinfo:
        lifecycle.delete("alarm-a")
    assert excinfo.value.permission == "location"
    assert lifecycle.get("alarm-a") is not None


def test_gate_uses_stored_coordinate(lifecycle, tracker):
    lifecycle.add(make_alarm())
    far_away = north_of(TOKYO_STATION, 5_000)
    tracker.push(far_away)
    moved_here = replace(make_alarm(), latitude=far_away.latitude, longitude=far_away.longitude)
    with pytest.raises(ProximityDenied):
        lifecycle.update(moved_here)
    assert lifecycle.get("alarm-a").latitude == TOKYO_STATION.latitude


def test_unknown_alarm(lifecycle, tracker):
    tracker.push(TOKYO_STATION)
    with pytest.raises(AlarmNotFound):
        lifecycle.stop("ghost")
    with pytest.raises(AlarmNotFound):
        lifecycle.state("ghost")


def test_update_in_range_reschedules_or_cancels(lifecycle, tracker, scheduler):
    lifecycle.add(make_alarm())
    tracker.push(north_of(TOKYO_STATION, 20))

    updated = lifecycle.update(make_alarm(name="Later", hour=8, minute=30))
    assert updated.name == "Later"
    first = min(e.fire_at for e in scheduler.channel.pending_events())
    assert (first.hour, first.minute) == (8, 30)
    assert len(scheduler.pending_for("alarm-a")) == 64

    lifecycle.update(make_alarm(name="Later", hour=8, minute=30, enabled=False))
    assert lifecycle.state("alarm-a") == AlarmState.DISABLED
    assert_disabled_alarms_unscheduled(lifecycle)


def test_toggle_in_range(lifecycle, tracker, scheduler):
    lifecycle.add(make_alarm())
    tracker.push(TOKYO_STATION)
    assert lifecycle.toggle_enabled("alarm-a").enabled is False
    assert scheduler.pending_for("alarm-a") == []
    assert_disabled_alarms_unscheduled(lifecycle)
    assert lifecycle.toggle_enabled("alarm-a").enabled is True
    assert lifecycle.state("alarm-a") == AlarmState.ARMED


def test_delete_in_range(lifecycle, tracker, scheduler, repository, store):
    lifecycle.add(make_alarm())
    lifecycle.add(make_alarm("alarm-b"))
    tracker.push(TOKYO_STATION)
    lifecycle.delete("alarm-a")
    assert [a.id for a in lifecycle.alarms()] == ["alarm-b"]
    assert scheduler.pending_for("alarm-a") == []
    assert repository.flush(timeout=2)
    assert [a.id for a in store.load()] == ["alarm-b"]


def test_wake_delivery_starts_alert(lifecycle, clock, sink):
    alerts = []
    lifecycle.on_alerting(alerts.append)
    lifecycle.add(make_alarm())
    ring(lifecycle, clock)
    clock.advance(5)
    lifecycle.scheduler.channel.deliver_due()

    assert lifecycle.get("alarm-a").enabled is True
    assert sink.start_continuous_alert.called
    assert [a.id for a in alerts] == ["alarm-a"]
    assert lifecycle.pending_alarm_id == "alarm-a"
    assert lifecycle.is_alerting


def test_stop_requires_presence(lifecycle, tracker, clock, sink, scheduler):
    stopped = []
    lifecycle.on_stopped(stopped.append)
    lifecycle.add(make_alarm(latitude=35.6809591, longitude=139.7673068))
    ring(lifecycle, clock)

    tracker.push(north_of(TOKYO_STATION, 150))
    assert lifecycle.proximity("alarm-a").in_range is False
    with pytest.raises(ProximityDenied):
        lifecycle.stop("alarm-a")
    assert lifecycle.state("alarm-a") == AlarmState.ALERTING
    sink.stop_alert.assert_not_called()

    tracker.push(north_of(TOKYO_STATION, 80))
    assert lifecycle.proximity("alarm-a").in_range is True
    result = lifecycle.stop("alarm-a")

    assert result.enabled is False
    assert lifecycle.state("alarm-a") == AlarmState.DISABLED
    assert scheduler.pending_for("alarm-a") == []
    assert not scheduler.is_repeating("alarm-a")
    sink.stop_alert.assert_called_once()
    assert [a.id for a in stopped] == ["alarm-a"]
    assert_disabled_alarms_unscheduled(lifecycle)


def test_alert_keeps_playing_while_another_alarm_rings(lifecycle, tracker, clock, sink):
    lifecycle.add(make_alarm())
    lifecycle.add(make_alarm("alarm-b", latitude=34.7025, longitude=135.4959))
    ring(lifecycle, clock)
    assert lifecycle.state("alarm-b") == AlarmState.ALERTING

    tracker.push(TOKYO_STATION)
    lifecycle.stop("alarm-a")
    sink.stop_alert.assert_not_called()
    assert lifecycle.alerting_ids() == ["alarm-b"]
    assert lifecycle.pending_alarm_id == "alarm-b"


def test_wake_for_disabled_alarm_is_ignored(lifecycle, sink):
    lifecycle.add(make_alarm())
    lifecycle.repository.update(make_alarm(enabled=False))
    lifecycle.on_wake_delivered("alarm-a")
    lifecycle.on_wake_delivered("ghost")
    sink.start_continuous_alert.assert_not_called()
    assert lifecycle.alerting_ids() == []


def test_deleting_alerting_alarm_silences_it(lifecycle, tracker, clock, sink):
    lifecycle.add(make_alarm())
    ring(lifecycle, clock)
    tracker.push(TOKYO_STATION)
    lifecycle.delete("alarm-a")
    sink.stop_alert.assert_called_once()
    assert lifecycle.alerting_ids() == []


def test_reconcile_matches_repository(lifecycle, tracker, scheduler):
    lifecycle.add(make_alarm("A", hour=8))
    lifecycle.add(make_alarm("B", hour=9))
    tracker.push(TOKYO_STATION)
    lifecycle.toggle_enabled("B")
    scheduler.channel.register("B_repeat_0", scheduler.clock(), {"alarm_id": "B", "repeating": True})

    assert lifecycle.reconcile() == 64
    assert len(scheduler.pending_for("A")) == 64
    assert scheduler.pending_for("B") == []
    assert_disabled_alarms_unscheduled(lifecycle)


def test_reconcile_keeps_alerting_alarm_ringing(lifecycle, clock, scheduler):
    lifecycle.add(make_alarm())
    ring(lifecycle, clock)
    clock.advance(60)

    lifecycle.reconcile()

    pending = scheduler.pending_for("alarm-a")
    assert len(pending) == 1
    assert scheduler.is_repeating("alarm-a")
    assert lifecycle.state("alarm-a") == AlarmState.ALERTING


def test_stop_racing_deliveries_leaves_nothing_scheduled(lifecycle, tracker, clock, scheduler):
    lifecycle.add(make_alarm())
    ring(lifecycle, clock)
    clock.advance(600)
    tracker.push(TOKYO_STATION)
    done = threading.Event()

    def deliver():
        while not done.is_set():
            scheduler.channel.deliver_due()

    worker = threading.Thread(target=deliver)
    worker.start()
    try:
        lifecycle.stop("alarm-a")
    finally:
        done.set()
        worker.join()
    scheduler.channel.deliver_due()
    assert scheduler.pending_for("alarm-a") == []
    assert lifecycle.state("alarm-a") == AlarmState.DISABLED


def test_request_permissions_asks_both_sources(lifecycle, tracker, channel):
    asked = []
    tracker._on_permission_request = lambda: asked.append("location")
    tracker.set_permission(PermissionState.NOT_DETERMINED)
    channel._on_authorization_request = lambda: PermissionState.GRANTED
    lifecycle.request_permissions()
    assert asked == ["location"]
    assert lifecycle.notification_authorized


def test_earlier_alarm_added_second_still_rings(lifecycle, clock, sink):
    lifecycle.add(make_alarm("late", hour=9))
    lifecycle.add(make_alarm("early", hour=7))
    assert len(lifecycle.scheduler.pending_for("early")) == 64

    clock.set(7, 0, 30)
    lifecycle.scheduler.channel.deliver_due()

    assert lifecycle.alerting_ids() == ["early"]
    assert lifecycle.state("late") == AlarmState.ARMED
    sink.start_continuous_alert.assert_called()


def test_reconcile_after_stop_on_stale_listing(lifecycle, tracker, scheduler, repository, monkeypatch):
    lifecycle.add(make_alarm())
    tracker.push(TOKYO_STATION)
    list_alarms = repository.list

    def list_then_stop():
        alarms = list_alarms()
        lifecycle.stop("alarm-a")
        return alarms

    monkeypatch.setattr(repository, "list", list_then_stop)
    assert lifecycle.reconcile() == 0

    assert repository.get("alarm-a").enabled is False
    assert scheduler.pending_for("alarm-a") == []
    assert not scheduler.is_repeating("alarm-a")


def test_delete_releases_alarm_lock(lifecycle, tracker):
    lifecycle.add(make_alarm())
    tracker.push(TOKYO_STATION)
    lifecycle.delete("alarm-a")
    assert "alarm-a" not in lifecycle._alarm_locks


def test_runtime_state_holds_only_alerting_bookkeeping():
    assert set(vars(AlarmRuntimeState())) == {"alerting", "pending_alarm_id"}
