"""
Data channel test protocol.

    client -> gateway   SEND <rate> <packet size> <duration>
    gateway -> client   send ready
    client -> gateway   send start
    gateway -> client   <binary frames>
    gateway -> client   SEND DONE <messages sent> <bytes sent>
"""

import re
from dataclasses import dataclass

from .errors import ProbeError
from .packet import HEADER_SIZE, MAX_SEQUENCE_NUMBER

READY_REPLY = "send ready"
START_COMMAND = "send start"

_SEND_RE = re.compile(r'^SEND (\d+) (\d+) (\d+)$')
_DONE_RE = re.compile(r'^SEND DONE (\d+) (\d+)$')


class InvalidCommand(ProbeError, ValueError):
    pass


@dataclass(frozen=True)
class TestConfig:
    """One run: `rate_hz` packets per tick for `duration_sec` ticks."""

    __test__ = False  # not a pytest class

    rate_hz: int
    packet_size: int
    duration_sec: int

    @property
    def total_packets(self) -> int:
        return self.rate_hz * self.duration_sec

    def validate(self) -> "TestConfig":
        if self.rate_hz <= 0 or self.packet_size <= 0 or self.duration_sec <= 0:
            raise InvalidCommand(
                "Invalid SEND command parameters. Use positive numbers for rate, packet size, and duration."
            )
        if self.packet_size < HEADER_SIZE:
            raise InvalidCommand(
                f"Packet size must be at least {HEADER_SIZE} bytes, got {self.packet_size}"
            )
        if self.total_packets > MAX_SEQUENCE_NUMBER + 1:
            raise InvalidCommand(
                f"rate x duration = {self.total_packets} exceeds the {MAX_SEQUENCE_NUMBER + 1} packet limit"
            )
        return self


@dataclass(frozen=True)
class DoneReport:
    messages_sent: int
    bytes_sent: int


def is_send_command(text: str) -> bool:
    return text.startswith("SEND ") and not is_done_report(text)


def is_done_report(text: str) -> bool:
    return text.startswith("SEND DONE")


def is_ready_reply(text: str) -> bool:
    return text.strip().lower() == READY_REPLY


def parse_send_command(text: str) -> TestConfig:
    match = _SEND_RE.match(text.strip())
    if not match:
        raise InvalidCommand(f"Malformed SEND command: {text!r}")
    rate_hz, packet_size, duration_sec = (int(g) for g in match.groups())
    return TestConfig(rate_hz, packet_size, duration_sec).validate()


def format_send_command(config: TestConfig) -> str:
    return f"SEND {config.rate_hz} {config.packet_size} {config.duration_sec}"


def format_done(messages_sent: int, bytes_sent: int) -> str:
    return f"SEND DONE {messages_sent} {bytes_sent}"


def parse_done(text: str) -> DoneReport:
    match = _DONE_RE.match(text.strip())
    if not match:
        raise InvalidCommand(f"Malformed completion report: {text!r}")
    return DoneReport(int(match.group(1)), int(match.group(2)))
