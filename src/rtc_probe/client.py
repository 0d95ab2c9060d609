"""
Test controller: negotiates a data channel through the gateway, runs one
test and analyses what arrived.

In media mode a synthetic video track is sent instead of the data channel
test, and the run is judged from the RTCP figures in the stats samples.
"""

import asyncio
import datetime
import logging

import websockets
from aiortc import RTCPeerConnection
from aiortc.stats import RTCStatsReport
from websockets.exceptions import ConnectionClosed

from .analyzer import ReceiveBuffer, RunAnalysis, analyze_media, analyze_run
from .certs import client_ssl_context
from .commands import (
    START_COMMAND,
    format_send_command,
    is_done_report,
    is_ready_reply,
    parse_done,
)
from .config import MEDIA_MODE, ClientConfig, rtc_configuration
from .errors import ProbeError, SignalingError
from .media import NoiseVideoTrack
from .packet import PacketError
from .signaling import (
    ANSWER,
    ERROR,
    HANGUP,
    ICE_CANDIDATE,
    OFFER,
    PEER_ID,
    candidate_from_json,
    candidates_message,
    decode_message,
    description_from_json,
    description_to_json,
    encode_message,
    local_candidates,
)
from .state import ChannelState, ConnectionState
from .stats import RTCDataChannelStats, StatsSampler

logger = logging.getLogger(__name__)

CHANNEL_LABEL = "data-stream-channel"


class ProbeClient:

    def __init__(self, config: ClientConfig = None, pc_factory=None):
        self.config = config or ClientConfig()
        self.test_config = self.config.test_config
        self.peer_id = None
        self.pc = None
        self.channel = None
        self.track = None
        self.websocket = None
        self.buffer = ReceiveBuffer()
        self.done = None
        self.test_state = ChannelState.NEW
        self.connection_state = ConnectionState.NEW

        self.messages_sent = 0
        self.bytes_sent = 0
        self.messages_received = 0
        self.bytes_received = 0
        self.control_messages_received = 0
        self.sampler = StatsSampler(self.get_stats, self.config.stats_interval)

        self._pc_factory = pc_factory or (lambda: RTCPeerConnection(rtc_configuration(self.config.ice_servers)))
        self._remote_candidates = []
        self._remote_description_set = False
        self._finished = asyncio.Event()
        self._finish_task = None
        self._error = None

    @property
    def media_mode(self) -> bool:
        return self.config.mode == MEDIA_MODE

    # --- control connection ---

    async def run(self) -> RunAnalysis:
        kwargs = {}
        if self.config.url.startswith("wss://"):
            kwargs['ssl'] = client_ssl_context(self.config.insecure)

        async with websockets.connect(self.config.url, **kwargs) as websocket:
            self.websocket = websocket
            reader = asyncio.ensure_future(self._read_signaling(websocket))
            try:
                await asyncio.wait_for(self._finished.wait(), timeout=self.config.timeout)
            except asyncio.TimeoutError:
                logger.warning("Test did not finish within %.0fs", self.config.timeout)
            finally:
                reader.cancel()
                await self._send({"type": HANGUP})
                await self.close()

        if self._error:
            raise ProbeError(self._error)
        return self.analyze()

    async def _read_signaling(self, websocket):
        try:
            async for raw in websocket:
                await self.handle_signaling(decode_message(raw))
        except ConnectionClosed:
            logger.info("Control connection closed")
        except SignalingError as e:
            self._fail(str(e))
        except Exception as e:
            logger.exception("Error handling signaling message")
            self._fail(f"{type(e).__name__}: {e}")
        if not self._finished.is_set():
            self._fail("Control connection closed before the run completed")

    async def _send(self, message: dict):
        if self.websocket is None:
            return
        try:
            await self.websocket.send(encode_message(message))
        except ConnectionClosed:
            logger.debug("Control connection closed, %s not sent", message.get("type"))

    async def handle_signaling(self, message: dict):
        kind = message["type"]
        if kind == PEER_ID:
            self.peer_id = message["peerId"]
            logger.info("Received peer ID from server: %s", self.peer_id)
            await self.start_offer()
        elif kind == ANSWER:
            logger.info("Received SDP answer from server")
            await self.pc.setRemoteDescription(description_from_json(message))
            self._remote_description_set = True
            await self._apply_candidates()
            if self.media_mode:
                self._start_media()
        elif kind == ICE_CANDIDATE:
            batch = message.get("candidate") or []
            logger.info("Received %d ICE candidate(s) from server", len(batch))
            self._remote_candidates.extend(batch)
            if self._remote_description_set:
                await self._apply_candidates()
        elif kind == ERROR:
            logger.error("Received error from server - %s", message.get("data"))
            self._fail(message.get("data") or "gateway error")
        else:
            logger.warning("Unknown signaling message type: %s", kind)

    async def _apply_candidates(self):
        batch, self._remote_candidates = self._remote_candidates, []
        for data in batch:
            try:
                await self.pc.addIceCandidate(candidate_from_json(data))
            except Exception as e:
                logger.warning("Error adding remote ICE candidate: %s", e)

    # --- peer connection ---

    async def start_offer(self):
        self.pc = self._pc_factory()
        self.pc.on("connectionstatechange", self._on_connection_state_change)

        if self.media_mode:
            self.track = NoiseVideoTrack()
            self.pc.addTrack(self.track)
        else:
            # unordered and unreliable: losses must stay visible
            self.channel = self.pc.createDataChannel(CHANNEL_LABEL, ordered=False, maxRetransmits=0)
            self.channel.on("open", self._on_channel_open)
            self.channel.on("message", self.handle_channel_message)
            self.channel.on("close", self._on_channel_close)

        await self.pc.setLocalDescription(await self.pc.createOffer())
        await self._send({"type": OFFER, "sdp": description_to_json(self.pc.localDescription)})
        logger.debug("Offer sent to gateway")

        await self._send(candidates_message(local_candidates(self.pc)))
        self.sampler.start()

    def _on_connection_state_change(self):
        try:
            self.connection_state = ConnectionState(self.pc.connectionState)
        except ValueError:
            return
        logger.info("Peer connection state: %s", self.connection_state.value)
        if self.connection_state.terminal and not self._finished.is_set():
            self._fail(f"Peer connection {self.connection_state.value}")

    def _start_media(self):
        if self.test_state is not ChannelState.NEW:
            return
        self.test_state = ChannelState.INPROGRESS
        logger.info("Streaming video for %ds", self.config.duration_sec)
        self._finish_task = asyncio.ensure_future(self._finish_after(self.config.duration_sec))

    def _on_channel_open(self):
        self.buffer.clear()
        self.done = None
        self.test_state = ChannelState.OPENED
        command = format_send_command(self.test_config)
        logger.info("Data channel open, sending %r", command)
        self._channel_send(command)

    def _on_channel_close(self):
        logger.info("Data channel closed")
        if self.test_state is ChannelState.INPROGRESS:
            self._fail("Data channel closed before the run completed")

    def _channel_send(self, text: str):
        self.channel.send(text)
        self.messages_sent += 1
        self.bytes_sent += len(text.encode())

    def handle_channel_message(self, message, received_at: int = None):
        self.messages_received += 1
        if isinstance(message, bytes):
            self.bytes_received += len(message)
            try:
                self.buffer.add(message, received_at)
            except PacketError as e:
                logger.warning("Discarding malformed frame: %s", e)
            return

        self.bytes_received += len(message.encode())
        self.control_messages_received += 1
        if is_ready_reply(message):
            self.test_state = ChannelState.INPROGRESS
            logger.info("Gateway ready, starting run")
            self._channel_send(START_COMMAND)
        elif is_done_report(message):
            try:
                self.done = parse_done(message)
            except ProbeError as e:
                logger.warning("%s", e)
                return
            logger.info("Gateway finished: %d messages, %d bytes sent",
                        self.done.messages_sent, self.done.bytes_sent)
            # wait for packets still in transit
            self._finish_task = asyncio.ensure_future(self._finish_after(self.config.grace_period))
        else:
            logger.info("Unknown message on data channel: %r", message)

    async def _finish_after(self, delay: float):
        await asyncio.sleep(delay)
        await self.sampler.stop(final_sample=True)
        self.test_state = ChannelState.CLOSED
        self._finished.set()

    def _fail(self, reason: str):
        if self._error is None and not self._finished.is_set():
            self._error = reason
        self._finished.set()

    # --- statistics ---

    def channel_stats(self) -> RTCDataChannelStats:
        return RTCDataChannelStats(
            timestamp=datetime.datetime.now(datetime.timezone.utc),
            type="data-channel",
            id=f"DC_{self.peer_id}_{self.channel.label}",
            label=self.channel.label,
            state=self.channel.readyState,
            messagesSent=self.messages_sent,
            bytesSent=self.bytes_sent,
            messagesReceived=self.messages_received,
            bytesReceived=self.bytes_received,
        )

    async def get_stats(self) -> RTCStatsReport:
        report = RTCStatsReport()
        if self.pc is not None:
            report.update(await self.pc.getStats())
        if self.channel is not None:
            report.add(self.channel_stats())
        return report

    async def close(self):
        await self.sampler.stop()
        if self.track is not None:
            self.track.stop()
        if self.channel is not None:
            self.channel.close()
        if self.pc is not None:
            await self.pc.close()

    def analyze(self) -> RunAnalysis:
        if self.media_mode:
            return analyze_media(
                self.sampler.samples,
                self.config.acceptable_delay_ms,
                completed=self.test_state is ChannelState.CLOSED,
            )

        completed = self.test_state is ChannelState.CLOSED and self.done is not None
        return analyze_run(
            self.buffer,
            self.test_config.total_packets,
            self.config.acceptable_delay_ms,
            done=self.done,
            completed=completed,
            samples=self.sampler.samples,
            control_messages=self.control_messages_received,
        )


async def run_probe(config: ClientConfig) -> RunAnalysis:
    return await ProbeClient(config).run()
