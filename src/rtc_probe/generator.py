"""
Traffic generator - paced emission of test frames over a data channel.

Frames go out in batches of `rate_hz` once per tick. Once the target has
been reached, the next tick reads the data channel counters and sends the
completion report.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from .commands import TestConfig, format_done
from .packet import encode_packet

logger = logging.getLogger(__name__)


@dataclass
class RunReport:
    completed: bool
    packets_sent: int
    messages_sent: int = 0
    bytes_sent: int = 0
    ticks: int = 0
    reason: str = ""


def data_channel_counters(report) -> Optional[Tuple[int, int]]:
    """Sum messagesSent / bytesSent over the "data-channel" entries of a stats report."""
    found = False
    messages = sent_bytes = 0
    for stats in report.values():
        if getattr(stats, "type", None) == "data-channel":
            found = True
            messages += stats.messagesSent
            sent_bytes += stats.bytesSent
    return (messages, sent_bytes) if found else None


class TrafficGenerator:
    """
    `link` is the owning peer session. It provides `channel_open`,
    `send_frame()`, `send_text()`, `get_stats()` and `peer_id`.
    """

    def __init__(self, link, config: TestConfig, tick_interval: float = 1.0):
        self.link = link
        self.config = config
        self.tick_interval = tick_interval
        self.packets_sent = 0
        self.ticks = 0
        self._baseline = None

    @property
    def target(self) -> int:
        return self.config.total_packets

    async def run(self) -> RunReport:
        self._baseline = await self._read_counters()

        while True:
            await asyncio.sleep(self.tick_interval)
            report = await self.tick()
            if report is not None:
                return report

    async def tick(self) -> Optional[RunReport]:
        """One timer firing. Returns a report once the run is over."""
        self.ticks += 1

        if not self.link.channel_open:
            logger.warning("[peer %s] Data channel not open, stopping send interval", self.link.peer_id)
            return self._abort("data channel not open")

        if self.packets_sent >= self.target:
            return await self._complete()

        try:
            for _ in range(self.config.rate_hz):
                frame = encode_packet(self.packets_sent, self.config.packet_size)
                self.link.send_frame(frame)
                self.packets_sent += 1
        except Exception as e:
            logger.error("[peer %s] Error sending data: %s", self.link.peer_id, e)
            return self._abort(str(e))
        return None

    async def _read_counters(self) -> Optional[Tuple[int, int]]:
        try:
            return data_channel_counters(await self.link.get_stats())
        except Exception as e:
            logger.warning("[peer %s] Could not read data channel statistics: %s", self.link.peer_id, e)
            return None

    async def _complete(self) -> RunReport:
        counters = await self._read_counters()
        if counters is None or self._baseline is None:
            messages_sent = self.packets_sent
            bytes_sent = self.packets_sent * self.config.packet_size
        else:
            messages_sent = counters[0] - self._baseline[0]
            bytes_sent = counters[1] - self._baseline[1]

        logger.info("[peer %s] Completed sending for %ds. Total packets sent: %d. Total bytes sent: %d",
                    self.link.peer_id, self.config.duration_sec, messages_sent, bytes_sent)
        try:
            self.link.send_text(format_done(messages_sent, bytes_sent))
        except Exception as e:
            logger.error("[peer %s] Failed to send completion report: %s", self.link.peer_id, e)
            return self._abort(str(e))

        return RunReport(True, self.packets_sent, messages_sent, bytes_sent, self.ticks)

    def _abort(self, reason: str) -> RunReport:
        return RunReport(False, self.packets_sent, ticks=self.ticks, reason=reason)
