import pytest

from rtc_probe.commands import TestConfig
from rtc_probe.state import (
    TEARDOWN_EFFECTS,
    ChannelClosed,
    ChannelFailed,
    ChannelOpened,
    ChannelState,
    ConfigReceived,
    ConnectionState,
    ConnectivityChanged,
    Effect,
    RunAborted,
    RunCompleted,
    SessionSnapshot,
    StartRequested,
    Teardown,
    advance,
)

CONFIG = TestConfig(10, 512, 5)


def _run(events, snapshot=None):
    snapshot = snapshot or SessionSnapshot()
    effects = []
    for event in events:
        transition = advance(snapshot, event)
        snapshot = transition.snapshot
        effects.extend(transition.effects)
    return snapshot, effects


def test_happy_path():
    snapshot, effects = _run([
        ConnectivityChanged(ConnectionState.CONNECTED),
        ChannelOpened(),
        ConfigReceived(CONFIG),
        StartRequested(),
    ])
    assert snapshot.connection is ConnectionState.CONNECTED
    assert snapshot.channel is ChannelState.INPROGRESS
    assert snapshot.config == CONFIG
    assert effects == [Effect.SEND_READY, Effect.START_RUN]

    snapshot, effects = _run([RunCompleted()], snapshot)
    assert snapshot.channel is ChannelState.CLOSED
    assert snapshot.config is None
    assert effects == [Effect.RELEASE_TIMER]


def test_start_without_config_is_ignored():
    snapshot, effects = _run([ChannelOpened(), StartRequested()])
    assert snapshot.channel is ChannelState.OPENED
    assert effects == [Effect.WARN_NO_CONFIG]


def test_config_before_channel_open():
    snapshot, effects = _run([ConfigReceived(CONFIG)])
    assert snapshot.config is None
    assert effects == [Effect.WARN_CHANNEL_NOT_OPEN]


def test_config_during_run_is_rejected():
    snapshot, _ = _run([ChannelOpened(), ConfigReceived(CONFIG), StartRequested()])
    snapshot, effects = _run([ConfigReceived(TestConfig(1, 10, 1))], snapshot)
    assert snapshot.config == CONFIG
    assert effects == [Effect.WARN_BUSY]

    _, effects = _run([StartRequested()], snapshot)
    assert effects == [Effect.WARN_BUSY]


def test_new_cycle_after_completed_run():
    snapshot, _ = _run([ChannelOpened(), ConfigReceived(CONFIG), StartRequested(), RunCompleted()])
    snapshot, effects = _run([ConfigReceived(CONFIG)], snapshot)
    assert snapshot.channel is ChannelState.OPENED
    assert effects == [Effect.SEND_READY]


@pytest.mark.parametrize("event", [ChannelClosed(), ChannelFailed("boom"), RunAborted("gone")])
def test_run_interrupted(event):
    snapshot, _ = _run([ChannelOpened(), ConfigReceived(CONFIG), StartRequested()])
    snapshot, effects = _run([event], snapshot)
    assert snapshot.channel is ChannelState.CLOSED
    assert snapshot.config is None
    assert effects == [Effect.RELEASE_TIMER]


@pytest.mark.parametrize("state", [
    ConnectionState.DISCONNECTED, ConnectionState.FAILED, ConnectionState.CLOSED,
])
def test_terminal_connectivity_tears_down_once(state):
    snapshot, effects = _run([
        ChannelOpened(), ConfigReceived(CONFIG), StartRequested(), ConnectivityChanged(state),
    ])
    assert snapshot.torn_down
    assert snapshot.connection is state
    assert effects[-len(TEARDOWN_EFFECTS):] == list(TEARDOWN_EFFECTS)

    snapshot, effects = _run([Teardown("again"), ConnectivityChanged(ConnectionState.CLOSED),
                              ChannelClosed(), ConfigReceived(CONFIG)], snapshot)
    assert effects == []


def test_teardown_marks_connection_closed():
    snapshot, effects = _run([ConnectivityChanged(ConnectionState.CONNECTED), Teardown("hangup")])
    assert snapshot.connection is ConnectionState.CLOSED
    assert snapshot.channel is ChannelState.CLOSED
    assert effects == list(TEARDOWN_EFFECTS)


def test_advance_is_pure():
    snapshot = SessionSnapshot()
    advance(snapshot, ChannelOpened())
    assert snapshot.channel is ChannelState.NEW


def test_unknown_event():
    with pytest.raises(TypeError):
        advance(SessionSnapshot(), object())
