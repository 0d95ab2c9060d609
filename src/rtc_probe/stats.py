"""
Statistics sampling.

aiortc reports no data channel counters, so both ends count their own
traffic and publish it as an extra "data-channel" entry next to the
transport and RTP entries of `getStats()`.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from aiortc.stats import RTCStats

logger = logging.getLogger(__name__)


@dataclass
class RTCDataChannelStats(RTCStats):
    """Data channel counters, reported under type "data-channel"."""

    label: str
    state: str
    messagesSent: int
    bytesSent: int
    messagesReceived: int
    bytesReceived: int


def current_formatted_date() -> str:
    return time.strftime("%I:%M:%S %p")


@dataclass
class StatsSample:
    time: str
    messages_sent: int = 0
    bytes_sent: int = 0
    messages_received: int = 0
    bytes_received: int = 0
    # outgoing media, as acknowledged by the remote end
    packets_sent: Optional[int] = None
    media_bytes_sent: Optional[int] = None
    packets_lost: Optional[int] = None
    round_trip_time: Optional[float] = None
    jitter: Optional[float] = None


def sample_from_report(report, at: str = None) -> StatsSample:
    sample = StatsSample(time=at or current_formatted_date())
    for stats in report.values():
        kind = getattr(stats, "type", None)
        if kind == "data-channel":
            sample.messages_sent += stats.messagesSent
            sample.bytes_sent += stats.bytesSent
            sample.messages_received += stats.messagesReceived
            sample.bytes_received += stats.bytesReceived
        elif kind == "outbound-rtp":
            sample.packets_sent = (sample.packets_sent or 0) + stats.packetsSent
            sample.media_bytes_sent = (sample.media_bytes_sent or 0) + stats.bytesSent
        elif kind == "remote-inbound-rtp":
            sample.packets_lost = (sample.packets_lost or 0) + stats.packetsLost
            sample.round_trip_time = stats.roundTripTime
            sample.jitter = stats.jitter
    return sample


class StatsSampler:
    """Calls `source()` every `interval` seconds and keeps one sample per call."""

    def __init__(self, source: Callable[[], Awaitable[dict]], interval: float = 1.0):
        self.source = source
        self.interval = interval
        self.samples: List[StatsSample] = []
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def last(self) -> Optional[StatsSample]:
        return self.samples[-1] if self.samples else None

    def start(self):
        if not self.running:
            self._task = asyncio.ensure_future(self._run())

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval)
            await self.sample()

    async def sample(self) -> Optional[StatsSample]:
        try:
            report = await self.source()
        except Exception as e:
            logger.warning("Could not read statistics: %s", e)
            return None
        sample = sample_from_report(report)
        self.samples.append(sample)
        return sample

    async def stop(self, final_sample: bool = False):
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if final_sample:
            await self.sample()
