"""
Loss / delay analysis on the receiving side.

Records are kept in arrival order; the data channel is unordered, so
arrival order is not send order.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Iterable, List, Optional

import numpy as np

from .commands import DoneReport
from .packet import decode_packet, epoch_ms
from .stats import StatsSample

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReceivedPacketRecord:
    sequence_number: int
    send_timestamp: int
    received_at: int

    @property
    def delay_ms(self) -> int:
        return self.received_at - self.send_timestamp


class ReceiveBuffer:
    """Frames received during one run."""

    def __init__(self):
        self.records: List[ReceivedPacketRecord] = []
        self.duplicates = 0
        self.reordered = 0
        self._seen = set()
        self._highest = None

    def add(self, data, received_at: Optional[int] = None) -> ReceivedPacketRecord:
        frame = decode_packet(data)
        if received_at is None:
            received_at = epoch_ms()
        record = ReceivedPacketRecord(frame.sequence_number, frame.send_timestamp, received_at)
        self.records.append(record)

        seq = frame.sequence_number
        if seq in self._seen:
            self.duplicates += 1
            return record
        self._seen.add(seq)
        if self._highest is not None and seq < self._highest:
            self.reordered += 1
        else:
            self._highest = seq
        return record

    @property
    def received_count(self) -> int:
        """Distinct sequence numbers received; duplicates are not counted twice."""
        return len(self._seen)

    @property
    def sequence_numbers(self) -> List[int]:
        return [r.sequence_number for r in self.records]

    def clear(self):
        self.records.clear()
        self._seen.clear()
        self.duplicates = 0
        self.reordered = 0
        self._highest = None

    def __len__(self):
        return len(self.records)


def find_missing(total: int, received: Iterable[int]) -> List[int]:
    """Every sequence number in [0, total) absent from `received`, ascending."""
    seen = set(received)
    return [n for n in range(total) if n not in seen]


def find_delayed(records: Iterable[ReceivedPacketRecord], acceptable_delay_ms: int) -> List[int]:
    return [r.sequence_number for r in records if r.delay_ms > acceptable_delay_ms]


def loss_percentage(expected_total: int, received_count: int) -> float:
    if expected_total <= 0:
        return 0.0
    loss = (expected_total - received_count) * 100 / expected_total
    return max(0.0, min(100.0, loss))


@dataclass
class DelaySummary:
    count: int = 0
    mean_ms: float = 0.0
    median_ms: float = 0.0
    p95_ms: float = 0.0
    min_ms: float = 0.0
    max_ms: float = 0.0
    jitter_ms: float = 0.0


def summarize_delays(records: List[ReceivedPacketRecord]) -> DelaySummary:
    if not records:
        return DelaySummary()

    delays = np.array([r.delay_ms for r in records], dtype=float)
    jitter = float(np.mean(np.abs(np.diff(delays)))) if len(delays) > 1 else 0.0

    return DelaySummary(
        count=len(delays),
        mean_ms=float(np.mean(delays)),
        median_ms=float(np.median(delays)),
        p95_ms=float(np.percentile(delays, 95)),
        min_ms=float(np.min(delays)),
        max_ms=float(np.max(delays)),
        jitter_ms=jitter,
    )


def calculate_mos(latency_ms: float, jitter_ms: float, loss_percent: float) -> float:
    """Mean Opinion Score estimate (1.0 - 5.0) from delay, jitter and loss."""
    latency_penalty = 0
    if latency_ms > 150:
        latency_penalty = min(4, (latency_ms - 150) / 50)
    elif latency_ms > 50:
        latency_penalty = (latency_ms - 50) / 100

    jitter_penalty = 0
    if jitter_ms > 30:
        jitter_penalty = min(2, (jitter_ms - 30) / 30)
    elif jitter_ms > 10:
        jitter_penalty = (jitter_ms - 10) / 40

    loss_penalty = 0
    if loss_percent > 5:
        loss_penalty = min(3, (loss_percent - 5) / 5)
    elif loss_percent > 1:
        loss_penalty = (loss_percent - 1) / 8

    mos = 5.0 - latency_penalty - jitter_penalty - loss_penalty
    return max(1.0, min(5.0, mos))


@dataclass
class MediaSummary:
    """Outgoing video as seen through the remote end's RTCP receiver reports."""

    packets_sent: int = 0
    bytes_sent: int = 0
    packets_lost: int = 0
    loss_percent: float = 0.0
    round_trip_ms: Optional[float] = None
    jitter: Optional[float] = None


def summarize_media(samples: List[StatsSample]) -> MediaSummary:
    sent = [s for s in samples if s.packets_sent is not None]
    if not sent:
        return MediaSummary()

    last = sent[-1]
    lost = last.packets_lost or 0
    rtts = [s.round_trip_time for s in samples if s.round_trip_time is not None]
    jitters = [s.jitter for s in samples if s.jitter is not None]
    return MediaSummary(
        packets_sent=last.packets_sent,
        bytes_sent=last.media_bytes_sent or 0,
        packets_lost=lost,
        loss_percent=loss_percentage(last.packets_sent, last.packets_sent - lost),
        round_trip_ms=float(np.mean(rtts)) * 1000 if rtts else None,
        jitter=float(np.mean(jitters)) if jitters else None,
    )


@dataclass
class RunAnalysis:
    expected_total: int
    received_count: int
    completed: bool
    acceptable_delay_ms: int
    mode: str = "datachannel"
    loss_percent: Optional[float] = None
    missing: List[int] = field(default_factory=list)
    delayed: List[int] = field(default_factory=list)
    duplicates: int = 0
    reordered: int = 0
    messages_sent: Optional[int] = None
    bytes_sent: Optional[int] = None
    delay: DelaySummary = field(default_factory=DelaySummary)
    mos: Optional[float] = None
    # from the periodic getStats() samples
    sampled_received: Optional[int] = None
    sampled_loss_percent: Optional[float] = None
    media: Optional[MediaSummary] = None
    samples: List[StatsSample] = field(default_factory=list, repr=False)
    records: List[ReceivedPacketRecord] = field(default_factory=list, repr=False)

    def to_dict(self, include_records: bool = False) -> dict:
        data = asdict(self)
        if include_records:
            data['records'] = [
                {'sequence_number': r.sequence_number, 'send_timestamp': r.send_timestamp,
                 'received_at': r.received_at, 'delay_ms': r.delay_ms}
                for r in self.records
            ]
        else:
            del data['records']
        return data


def analyze_run(buffer: ReceiveBuffer, expected_total: int, acceptable_delay_ms: int,
                done: DoneReport = None, completed: bool = True,
                samples: List[StatsSample] = None, control_messages: int = 0) -> RunAnalysis:
    """
    Delays are assessed for every record received so far. Loss is only
    defined once the run has completed; before that `missing` stays empty
    and `loss_percent` is None.

    The last stats sample gives a second loss figure from the channel's own
    message counter, less the `control_messages` that were not test frames.
    """
    if done is not None:
        expected_total = done.messages_sent

    analysis = RunAnalysis(
        expected_total=expected_total,
        received_count=buffer.received_count,
        completed=completed,
        acceptable_delay_ms=acceptable_delay_ms,
        delayed=find_delayed(buffer.records, acceptable_delay_ms),
        duplicates=buffer.duplicates,
        reordered=buffer.reordered,
        messages_sent=done.messages_sent if done else None,
        bytes_sent=done.bytes_sent if done else None,
        delay=summarize_delays(buffer.records),
        samples=list(samples or []),
        records=list(buffer.records),
    )

    if completed:
        analysis.missing = find_missing(expected_total, buffer.sequence_numbers)
        analysis.loss_percent = loss_percentage(expected_total, buffer.received_count)
        analysis.mos = calculate_mos(analysis.delay.mean_ms, analysis.delay.jitter_ms, analysis.loss_percent)
        if analysis.samples:
            received = max(0, analysis.samples[-1].messages_received - control_messages)
            analysis.sampled_received = received
            analysis.sampled_loss_percent = loss_percentage(expected_total, received)
        logger.info("Run analysed: %d/%d received, %.2f%% loss, %d delayed over %dms",
                    analysis.received_count, expected_total, analysis.loss_percent,
                    len(analysis.delayed), acceptable_delay_ms)
    return analysis


def analyze_media(samples: List[StatsSample], acceptable_delay_ms: int, completed: bool = True) -> RunAnalysis:
    media = summarize_media(samples)
    analysis = RunAnalysis(
        expected_total=media.packets_sent,
        received_count=media.packets_sent - media.packets_lost,
        completed=completed,
        acceptable_delay_ms=acceptable_delay_ms,
        mode="media",
        media=media,
        samples=list(samples),
    )
    if completed:
        analysis.loss_percent = media.loss_percent
        logger.info("Media run analysed: %d RTP packets sent, %d lost (%.2f%%)",
                    media.packets_sent, media.packets_lost, media.loss_percent)
    return analysis
