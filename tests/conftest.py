from datetime import datetime
from unittest.mock import MagicMock

import pytest

from geoalarm.channel import LocalNotificationChannel
from geoalarm.location import PermissionState, ProximityTracker
from geoalarm.manager import AlarmLifecycle
from geoalarm.repository import AlarmRepository
from geoalarm.scheduler import NotificationScheduler
from geoalarm.sounds import AlertSink
from geoalarm.storage import JsonAlarmStore

from helpers import JST, FakeClock


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 1, 1, 6, 59, 0, tzinfo=JST))


@pytest.fixture
def channel(clock):
    return LocalNotificationChannel(clock=clock, authorization=PermissionState.GRANTED)


@pytest.fixture
def scheduler(channel, clock):
    return NotificationScheduler(channel, clock=clock, timezone=JST)


@pytest.fixture
def store(tmp_path):
    return JsonAlarmStore(tmp_path / "alarms.json")


@pytest.fixture
def repository(store):
    repo = AlarmRepository(store)
    yield repo
    repo.close()


@pytest.fixture
def tracker():
    return ProximityTracker(permission=PermissionState.GRANTED)


@pytest.fixture
def sink():
    return MagicMock(spec=AlertSink)


@pytest.fixture
def lifecycle(repository, scheduler, tracker, sink):
    return AlarmLifecycle(repository, scheduler, tracker, sink, radius=100.0)
