"""WebRTC network quality probe: signaling gateway, paced test traffic, loss / delay analysis."""

from .analyzer import ReceiveBuffer, find_delayed, find_missing, loss_percentage
from .commands import TestConfig, parse_send_command
from .errors import ProbeError
from .packet import decode_packet, encode_packet

__version__ = "0.1.0"
