"""Tests for the live session state machine."""

from datetime import datetime, timedelta

import pytest
from hypothesis import given
from hypothesis import strategies as st

from live_session import (
    LOST_CONNECTION_ERROR,
    NO_DATA_ERROR,
    ConnectionStatus,
    Lifecycle,
    LiveSession,
    SessionSettings,
    status_label,
)
from push_sources import CONNECTED_PATH, DATA_PATH, PushSource
from readings import Reading

T0 = datetime(2026, 5, 4, 9, 30, 0)

FIRST = {"CPS": 80, "CPM": 4800, "Dose_uSv": 0.5, "Activity_Ci": 0.0001, "Activity_Bq": 600}
SECOND = {"CPS": 90, "CPM": 5000, "Dose_uSv": 3.2, "Activity_Ci": 0.0002, "Activity_Bq": 700}


class StepClock:
    """Returns T0, T0+1s, T0+2s, ... on successive calls."""

    def __init__(self):
        self.calls = 0

    def __call__(self) -> datetime:
        now = T0 + timedelta(seconds=self.calls)
        self.calls += 1
        return now


class BrokenSource(PushSource):
    def subscribe(self, path, on_value, on_error=None):
        raise ConnectionError("backend unreachable")


@pytest.fixture
def source():
    return PushSource()


@pytest.fixture
def session(source):
    s = LiveSession(source, clock=StepClock())
    s.start()
    yield s
    s.stop()


def deliver(source, path, value):
    source.publish(path, value)
    source.poll()


def connect(source):
    deliver(source, CONNECTED_PATH, True)


class TestLifecycle:
    def test_initial_state(self, source):
        s = LiveSession(source)
        state = s.snapshot()
        assert s.lifecycle is Lifecycle.IDLE
        assert state.reading == Reading()
        assert state.samples == ()
        assert state.last_update is None
        assert state.error is None
        assert state.alert is False
        assert state.status_text == "SAFE"

    def test_start_subscribes_to_both_paths(self, source, session):
        assert session.lifecycle is Lifecycle.RUNNING
        assert session.snapshot().status is ConnectionStatus.CONNECTING
        assert source.subscriber_count(DATA_PATH) == 1
        assert source.subscriber_count(CONNECTED_PATH) == 1

    def test_stop_releases_both_subscriptions(self, source, session):
        session.stop()
        assert source.subscriber_count() == 0
        assert session.lifecycle is Lifecycle.STOPPED

    def test_stop_twice(self, source, session):
        session.stop()
        session.stop()
        assert source.subscriber_count() == 0

    def test_no_mutation_after_stop(self, source, session):
        source.publish(DATA_PATH, FIRST)
        session.stop()
        source.poll()
        deliver(source, CONNECTED_PATH, True)
        state = session.snapshot()
        assert state.reading == Reading()
        assert state.status is ConnectionStatus.CONNECTING

    def test_restart_not_allowed(self, session):
        session.stop()
        with pytest.raises(RuntimeError):
            session.start()

    def test_double_start_not_allowed(self, session):
        with pytest.raises(RuntimeError):
            session.start()

    def test_stop_before_start(self, source):
        s = LiveSession(source)
        s.stop()
        assert s.lifecycle is Lifecycle.STOPPED

    def test_context_manager_stops(self, source):
        with LiveSession(source) as s:
            assert source.subscriber_count() == 2
        assert s.lifecycle is Lifecycle.STOPPED
        assert source.subscriber_count() == 0

    def test_context_manager_stops_on_error(self, source):
        with pytest.raises(KeyError):
            with LiveSession(source):
                raise KeyError("boom")
        assert source.subscriber_count() == 0

    def test_subscription_failure_surfaces_as_disconnected(self):
        s = LiveSession(BrokenSource())
        s.start()
        state = s.snapshot()
        assert state.status is ConnectionStatus.DISCONNECTED
        assert "backend unreachable" in state.error
        s.stop()


class TestConnectivity:
    def test_connect(self, source, session):
        connect(source)
        assert session.snapshot().status is ConnectionStatus.CONNECTED

    def test_false_while_connecting(self, source, session):
        deliver(source, CONNECTED_PATH, False)
        state = session.snapshot()
        assert state.status is ConnectionStatus.DISCONNECTED
        assert state.error == LOST_CONNECTION_ERROR

    def test_lost_connection_then_recovered(self, source, session):
        connect(source)
        deliver(source, CONNECTED_PATH, False)
        state = session.snapshot()
        assert state.status is ConnectionStatus.DISCONNECTED
        assert state.error == LOST_CONNECTION_ERROR
        connect(source)
        state = session.snapshot()
        assert state.status is ConnectionStatus.CONNECTED
        assert state.error is None

    def test_transport_error(self, source, session):
        connect(source)
        source.publish_error(CONNECTED_PATH, "transport error: reset")
        source.publish(CONNECTED_PATH, False)
        source.poll()
        state = session.snapshot()
        assert state.status is ConnectionStatus.DISCONNECTED
        assert state.error == "transport error: reset"

    def test_data_channel_error(self, source, session):
        connect(source)
        source.publish_error(DATA_PATH, "permission denied")
        source.poll()
        state = session.snapshot()
        assert state.status is ConnectionStatus.DISCONNECTED
        assert state.error == "permission denied"

    def test_reconnect_keeps_data_error(self, source, session):
        connect(source)
        deliver(source, DATA_PATH, None)
        connect(source)
        assert session.snapshot().error == NO_DATA_ERROR

    def test_data_updates_while_disconnected(self, source, session):
        connect(source)
        deliver(source, CONNECTED_PATH, False)
        deliver(source, DATA_PATH, FIRST)
        state = session.snapshot()
        assert state.reading.to_payload() == FIRST
        assert state.status is ConnectionStatus.DISCONNECTED
        connect(source)
        assert session.snapshot().status is ConnectionStatus.CONNECTED


class TestDataEvents:
    def test_scenario_two_readings(self, source, session):
        connect(source)
        deliver(source, DATA_PATH, FIRST)
        state = session.snapshot()
        assert state.reading.to_payload() == FIRST
        assert state.alert is False
        assert [s.value for s in state.samples] == [0.5]
        assert state.last_update == T0

        deliver(source, DATA_PATH, SECOND)
        state = session.snapshot()
        assert state.alert is True
        assert state.status_text == "DANGER"
        assert [s.value for s in state.samples] == [0.5, 3.2]

    def test_absent_data_keeps_status(self, source, session):
        connect(source)
        deliver(source, DATA_PATH, FIRST)
        deliver(source, DATA_PATH, None)
        state = session.snapshot()
        assert state.error == NO_DATA_ERROR
        assert state.status is ConnectionStatus.CONNECTED
        assert state.reading.to_payload() == FIRST
        assert len(state.samples) == 1

    def test_absent_data_while_disconnected(self, source, session):
        deliver(source, CONNECTED_PATH, False)
        deliver(source, DATA_PATH, None)
        state = session.snapshot()
        assert state.status is ConnectionStatus.DISCONNECTED
        assert state.error == NO_DATA_ERROR

    def test_reading_clears_error(self, source, session):
        deliver(source, DATA_PATH, None)
        deliver(source, DATA_PATH, FIRST)
        assert session.snapshot().error is None

    def test_malformed_payload_is_zeroed(self, source, session):
        deliver(source, DATA_PATH, {"CPS": "lots", "Dose_uSv": float("nan")})
        state = session.snapshot()
        assert state.reading == Reading()
        assert state.error is None
        assert len(state.samples) == 1

    def test_json_text_is_decoded(self, source, session):
        deliver(source, DATA_PATH, '{"CPS": 12, "Dose_uSv": 2.5}')
        state = session.snapshot()
        assert state.reading.cps == 12.0
        assert state.alert is True

    def test_undecodable_frame_keeps_session_alive(self, source, session):
        deliver(source, DATA_PATH, FIRST)
        deliver(source, DATA_PATH, "{not json")
        state = session.snapshot()
        assert state.error.startswith("failed to process reading")
        assert state.reading.to_payload() == FIRST
        assert len(state.samples) == 1
        deliver(source, DATA_PATH, SECOND)
        assert session.snapshot().error is None

    def test_bridge_frame(self, source, session):
        deliver(source, DATA_PATH, {"cps": 3, "cpm": 180, "uSvph": "0.02", "time": "10:00:00"})
        reading = session.snapshot().reading
        assert (reading.cps, reading.cpm) == (3.0, 180.0)
        assert reading.dose_usv == pytest.approx(0.02)

    def test_window_is_bounded(self, source):
        s = LiveSession(source, SessionSettings(max_points=20), clock=StepClock())
        s.start()
        for i in range(1, 26):
            source.publish(DATA_PATH, {"Dose_uSv": float(i)})
        source.poll()
        assert [x.value for x in s.snapshot().samples] == [float(i) for i in range(6, 26)]
        assert len(s.snapshot().frame()) == 20
        s.stop()

    def test_threshold_boundary(self, source, session):
        deliver(source, DATA_PATH, {"Dose_uSv": 2.0})
        assert session.snapshot().alert is False
        deliver(source, DATA_PATH, {"Dose_uSv": 2.0001})
        assert session.snapshot().alert is True

    def test_custom_threshold(self, source):
        s = LiveSession(source, SessionSettings(danger_threshold=0.3))
        s.start()
        deliver(source, DATA_PATH, FIRST)
        assert s.snapshot().alert is True
        s.stop()

    @given(st.floats(min_value=0, max_value=10, allow_nan=False))
    def test_alert_matches_reading(self, dose):
        source = PushSource()
        s = LiveSession(source)
        s.start()
        deliver(source, DATA_PATH, {"Dose_uSv": dose})
        state = s.snapshot()
        assert state.alert == (state.reading.dose_usv > 2.0)
        s.stop()


class TestStaleness:
    def test_disabled_by_default(self, source, session):
        deliver(source, DATA_PATH, FIRST)
        assert session.snapshot().is_stale(T0 + timedelta(days=1)) is False

    def test_stale_after_window(self, source):
        s = LiveSession(source, SessionSettings(stale_after_s=5), clock=StepClock())
        s.start()
        assert s.snapshot().is_stale(T0 + timedelta(hours=1)) is False
        deliver(source, DATA_PATH, FIRST)
        state = s.snapshot()
        assert state.is_stale(T0 + timedelta(seconds=5)) is False
        assert state.is_stale(T0 + timedelta(seconds=6)) is True
        s.stop()

    @pytest.mark.parametrize("kwargs", [{"stale_after_s": 0}, {"max_points": 0}])
    def test_invalid_settings(self, kwargs):
        with pytest.raises(ValueError):
            SessionSettings(**kwargs)


def test_status_label():
    assert status_label(True) == ("DANGER", "red")
    assert status_label(False) == ("SAFE", "green")
