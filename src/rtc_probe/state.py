"""
Peer session state machine.

`advance()` maps (snapshot, event) to (new snapshot, effects). It performs
no I/O; `PeerSession` applies the effects.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Tuple

from .commands import TestConfig


class ConnectionState(str, Enum):
    NEW = "new"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {ConnectionState.DISCONNECTED, ConnectionState.FAILED, ConnectionState.CLOSED}
)


class ChannelState(str, Enum):
    NEW = "new"
    OPENED = "opened"
    INPROGRESS = "inprogress"
    CLOSED = "closed"


class Effect(Enum):
    SEND_READY = "send_ready"
    START_RUN = "start_run"
    RELEASE_TIMER = "release_timer"
    CLOSE_CHANNEL = "close_channel"
    CLOSE_PEER = "close_peer"
    UNREGISTER = "unregister"
    WARN_NO_CONFIG = "warn_no_config"
    WARN_BUSY = "warn_busy"
    WARN_CHANNEL_NOT_OPEN = "warn_channel_not_open"


TEARDOWN_EFFECTS = (
    Effect.RELEASE_TIMER,
    Effect.CLOSE_CHANNEL,
    Effect.CLOSE_PEER,
    Effect.UNREGISTER,
)


@dataclass(frozen=True)
class SessionSnapshot:
    connection: ConnectionState = ConnectionState.NEW
    channel: ChannelState = ChannelState.NEW
    config: Optional[TestConfig] = None
    torn_down: bool = False


# --- events ---

@dataclass(frozen=True)
class ConnectivityChanged:
    state: ConnectionState


@dataclass(frozen=True)
class ChannelOpened:
    pass


@dataclass(frozen=True)
class ConfigReceived:
    config: TestConfig


@dataclass(frozen=True)
class StartRequested:
    pass


@dataclass(frozen=True)
class RunCompleted:
    pass


@dataclass(frozen=True)
class RunAborted:
    reason: str = ""


@dataclass(frozen=True)
class ChannelClosed:
    pass


@dataclass(frozen=True)
class ChannelFailed:
    reason: str = ""


@dataclass(frozen=True)
class Teardown:
    reason: str = ""


@dataclass(frozen=True)
class Transition:
    snapshot: SessionSnapshot
    effects: Tuple[Effect, ...] = ()


def _teardown(snapshot: SessionSnapshot, connection: ConnectionState) -> Transition:
    return Transition(
        replace(
            snapshot,
            connection=connection,
            channel=ChannelState.CLOSED,
            config=None,
            torn_down=True,
        ),
        TEARDOWN_EFFECTS,
    )


def _end_run(snapshot: SessionSnapshot) -> Transition:
    return Transition(
        replace(snapshot, channel=ChannelState.CLOSED, config=None),
        (Effect.RELEASE_TIMER,),
    )


def advance(snapshot: SessionSnapshot, event) -> Transition:
    if snapshot.torn_down:
        return Transition(snapshot)

    if isinstance(event, Teardown):
        connection = snapshot.connection
        if not connection.terminal:
            connection = ConnectionState.CLOSED
        return _teardown(snapshot, connection)

    if isinstance(event, ConnectivityChanged):
        if event.state.terminal:
            return _teardown(snapshot, event.state)
        return Transition(replace(snapshot, connection=event.state))

    if isinstance(event, ChannelOpened):
        if snapshot.channel is ChannelState.NEW:
            return Transition(replace(snapshot, channel=ChannelState.OPENED))
        return Transition(snapshot)

    if isinstance(event, ConfigReceived):
        if snapshot.channel is ChannelState.INPROGRESS:
            return Transition(snapshot, (Effect.WARN_BUSY,))
        if snapshot.channel is ChannelState.NEW:
            return Transition(snapshot, (Effect.WARN_CHANNEL_NOT_OPEN,))
        # a completed run may be followed by a new configuration
        return Transition(
            replace(snapshot, channel=ChannelState.OPENED, config=event.config),
            (Effect.SEND_READY,),
        )

    if isinstance(event, StartRequested):
        if snapshot.channel is ChannelState.INPROGRESS:
            return Transition(snapshot, (Effect.WARN_BUSY,))
        if snapshot.config is None:
            return Transition(snapshot, (Effect.WARN_NO_CONFIG,))
        return Transition(
            replace(snapshot, channel=ChannelState.INPROGRESS),
            (Effect.START_RUN,),
        )

    if isinstance(event, (RunCompleted, RunAborted)):
        if snapshot.channel is ChannelState.INPROGRESS:
            return _end_run(snapshot)
        return Transition(snapshot)

    if isinstance(event, (ChannelClosed, ChannelFailed)):
        if snapshot.channel is ChannelState.CLOSED and snapshot.config is None:
            return Transition(snapshot)
        return _end_run(snapshot)

    raise TypeError(f"Unknown session event: {event!r}")
