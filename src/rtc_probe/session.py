"""
Peer session: one RTCPeerConnection, at most one data channel and at most
one generator timer for a given peer identity.
"""

import asyncio
import datetime
import logging
from typing import Awaitable, Callable, List, Optional

from aiortc.contrib.media import MediaBlackhole
from aiortc.stats import RTCStatsReport

from .commands import (
    READY_REPLY,
    START_COMMAND,
    InvalidCommand,
    is_send_command,
    parse_send_command,
)
from .generator import RunReport, TrafficGenerator
from .state import (
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
from .stats import RTCDataChannelStats

logger = logging.getLogger(__name__)

Notify = Callable[[dict], Awaitable[None]]


class TimerHandle:
    """Owned reference to a running generator task."""

    def __init__(self, task: asyncio.Task, on_release: Callable[[], None] = None):
        self._task = task
        self._on_release = on_release
        self.released = False

    @property
    def task(self) -> asyncio.Task:
        return self._task

    def release(self) -> bool:
        if self.released:
            return False
        self.released = True
        # the generator may release its own timer while finishing
        if not self._task.done() and self._task is not asyncio.current_task():
            self._task.cancel()
        if self._on_release:
            self._on_release()
        return True


class PeerSession:

    def __init__(self, peer_id: str, pc, notify: Notify = None,
                 on_closed: Callable[["PeerSession"], None] = None,
                 tick_interval: float = 1.0):
        self.peer_id = peer_id
        self.pc = pc
        self.channel = None
        self.snapshot = SessionSnapshot()
        self.tick_interval = tick_interval

        self.remote_description_set = False
        self.pending_candidates: List = []

        self.messages_sent = 0
        self.bytes_sent = 0
        self.messages_received = 0
        self.bytes_received = 0

        self.timers_started = 0
        self.timers_released = 0
        self.last_report = None

        self._timer: Optional[TimerHandle] = None
        self._closing: Optional[asyncio.Future] = None
        self._notify = notify
        self._on_closed = on_closed
        self._media = None

        pc.on("connectionstatechange", self._on_connection_state_change)
        pc.on("datachannel", self.attach_channel)
        pc.on("track", self._on_track)

    def __repr__(self):
        return (f"<PeerSession {self.peer_id} connection={self.connection_state.value} "
                f"channel={self.channel_state.value}>")

    # --- state ---

    @property
    def connection_state(self) -> ConnectionState:
        return self.snapshot.connection

    @property
    def channel_state(self) -> ChannelState:
        return self.snapshot.channel

    @property
    def config(self):
        return self.snapshot.config

    @property
    def closed(self) -> bool:
        return self.snapshot.torn_down

    @property
    def channel_open(self) -> bool:
        return self.channel is not None and self.channel.readyState == "open"

    @property
    def has_active_timer(self) -> bool:
        return self._timer is not None and not self._timer.released

    def dispatch(self, event):
        transition = advance(self.snapshot, event)
        self.snapshot = transition.snapshot
        for effect in transition.effects:
            self._apply(effect, event)
        return transition

    def _apply(self, effect: Effect, event):
        if effect is Effect.SEND_READY:
            config = event.config
            logger.info("[peer %s] Configuration received: %d packets/s, %d bytes, %ds",
                        self.peer_id, config.rate_hz, config.packet_size, config.duration_sec)
            try:
                self.send_text(READY_REPLY)
            except Exception as e:
                logger.error("[peer %s] Failed to send '%s': %s", self.peer_id, READY_REPLY, e)
        elif effect is Effect.START_RUN:
            self._start_run()
        elif effect is Effect.RELEASE_TIMER:
            self.release_timer()
        elif effect is Effect.CLOSE_CHANNEL:
            self._close_channel()
        elif effect is Effect.CLOSE_PEER:
            self._closing = asyncio.ensure_future(self._close_peer())
            self._closing.add_done_callback(self._log_close_failure)
        elif effect is Effect.UNREGISTER:
            if self._on_closed:
                self._on_closed(self)
        elif effect is Effect.WARN_NO_CONFIG:
            logger.warning("[peer %s] Received '%s' but no configuration was set (use SEND command first)",
                           self.peer_id, START_COMMAND)
        elif effect is Effect.WARN_BUSY:
            logger.warning("[peer %s] Run already in progress, ignoring %r", self.peer_id, event)
        elif effect is Effect.WARN_CHANNEL_NOT_OPEN:
            logger.warning("[peer %s] Data channel not open, ignoring %r", self.peer_id, event)

    # --- transport events ---

    def _on_connection_state_change(self):
        try:
            state = ConnectionState(self.pc.connectionState)
        except ValueError:
            logger.warning("[peer %s] Unknown connection state %r", self.peer_id, self.pc.connectionState)
            return
        logger.info("[peer %s] Connection state: %s", self.peer_id, state.value)
        if state.terminal and not self.closed:
            logger.info("[peer %s] WebRTC connection %s, cleaning up", self.peer_id, state.value)
        self.dispatch(ConnectivityChanged(state))

    def attach_channel(self, channel):
        if self.closed:
            channel.close()
            return
        if self.channel is not None and self.channel is not channel:
            logger.warning("[peer %s] Second data channel %r refused", self.peer_id, channel.label)
            channel.close()
            return

        self.channel = channel
        logger.info("[peer %s] Data channel %r created", self.peer_id, channel.label)

        channel.on("open", self._on_channel_open)
        channel.on("message", self.handle_message)
        channel.on("close", self._on_channel_close)
        channel.on("error", self._on_channel_error)

        # channels announced by the remote side are already open
        if channel.readyState == "open":
            self._on_channel_open()

    def _on_channel_open(self):
        logger.info("[peer %s] Data channel open, waiting for commands", self.peer_id)
        self.dispatch(ChannelOpened())

    def _on_channel_close(self):
        logger.info("[peer %s] Data channel closed, stopping any active sending", self.peer_id)
        self.dispatch(ChannelClosed())

    def _on_channel_error(self, error):
        logger.error("[peer %s] Data channel error: %s", self.peer_id, error)
        self.dispatch(ChannelFailed(str(error)))

    def _on_track(self, track):
        logger.info("[peer %s] Received %s track", self.peer_id, track.kind)
        if self._media is None:
            self._media = MediaBlackhole()
        self._media.addTrack(track)
        asyncio.ensure_future(self._media.start())

    def handle_message(self, message):
        self.messages_received += 1
        self.bytes_received += len(message) if isinstance(message, bytes) else len(message.encode())

        if isinstance(message, bytes):
            logger.debug("[peer %s] Ignoring %d byte binary message", self.peer_id, len(message))
            return

        logger.info("[peer %s] Received command: %r", self.peer_id, message)
        if is_send_command(message):
            try:
                config = parse_send_command(message)
            except InvalidCommand as e:
                logger.error("[peer %s] %s", self.peer_id, e)
                self.report_error(str(e))
                return
            self.dispatch(ConfigReceived(config))
        elif message.strip().lower() == START_COMMAND:
            self.dispatch(StartRequested())
        else:
            logger.info("[peer %s] Unknown command received: %r", self.peer_id, message)

    def report_error(self, text: str):
        if self._notify is None:
            return
        asyncio.ensure_future(self._notify({"type": "error", "data": text}))

    # --- generator link ---

    def send_text(self, text: str):
        self._send(text, len(text.encode()))

    def send_frame(self, frame: bytes):
        self._send(frame, len(frame))

    def _send(self, data, size: int):
        self.channel.send(data)
        self.messages_sent += 1
        self.bytes_sent += size

    def channel_stats(self) -> RTCDataChannelStats:
        label = self.channel.label if self.channel is not None else ""
        return RTCDataChannelStats(
            timestamp=datetime.datetime.now(datetime.timezone.utc),
            type="data-channel",
            id=f"DC_{self.peer_id}_{label}",
            label=label,
            state=self.channel.readyState if self.channel is not None else "closed",
            messagesSent=self.messages_sent,
            bytesSent=self.bytes_sent,
            messagesReceived=self.messages_received,
            bytesReceived=self.bytes_received,
        )

    async def get_stats(self) -> RTCStatsReport:
        report = RTCStatsReport()
        report.update(await self.pc.getStats())
        report.add(self.channel_stats())
        return report

    def _start_run(self):
        config = self.config
        logger.info("[peer %s] Starting data transmission: %d bytes, %d packets/s for %ds",
                    self.peer_id, config.packet_size, config.rate_hz, config.duration_sec)
        generator = TrafficGenerator(self, config, tick_interval=self.tick_interval)
        task = asyncio.ensure_future(self._run_generator(generator))
        self._timer = TimerHandle(task, on_release=self._count_release)
        self.timers_started += 1

    async def _run_generator(self, generator: TrafficGenerator):
        try:
            report = await generator.run()
        except Exception as e:
            logger.error("[peer %s] Sending stopped by unexpected error: %s", self.peer_id, e)
            report = RunReport(False, generator.packets_sent, ticks=generator.ticks, reason=str(e))
        self.last_report = report
        if report.completed:
            self.dispatch(RunCompleted())
        else:
            self.dispatch(RunAborted(report.reason))
        return report

    def _count_release(self):
        self.timers_released += 1

    def release_timer(self):
        if self._timer is None:
            return
        if self._timer.release():
            logger.info("[peer %s] Sending timer released", self.peer_id)
        self._timer = None

    # --- teardown ---

    def _close_channel(self):
        channel, self.channel = self.channel, None
        if channel is not None and channel.readyState not in ("closing", "closed"):
            channel.close()

    async def _close_peer(self):
        if self._media is not None:
            await self._media.stop()
            self._media = None
        await self.pc.close()

    def _log_close_failure(self, future: asyncio.Future):
        if not future.cancelled() and future.exception() is not None:
            logger.error("[peer %s] Error while closing peer connection: %s", self.peer_id, future.exception())

    async def close(self, reason: str = "hangup"):
        """Tear the session down and wait for the peer connection to close."""
        if not self.closed:
            logger.info("[peer %s] Closing session (%s)", self.peer_id, reason)
        self.dispatch(Teardown(reason))
        if self._closing is not None:
            await self._closing
