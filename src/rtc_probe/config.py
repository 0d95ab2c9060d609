import logging
import os
import sys
from dataclasses import dataclass, field
from typing import List, Optional

from aiortc import RTCConfiguration, RTCIceServer

from .commands import TestConfig

DEFAULT_PORT = 8080

DATA_CHANNEL_MODE = "datachannel"
MEDIA_MODE = "media"
TEST_MODES = (DATA_CHANNEL_MODE, MEDIA_MODE)
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(level: str = None):
    """Configure root logging; LOG_LEVEL from the environment wins over the default."""
    level = (level or os.getenv('LOG_LEVEL', 'INFO')).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=LOG_FORMAT,
        stream=sys.stdout,
    )
    # aiortc / aioice are chatty at INFO
    for name in ('aiortc', 'aioice'):
        logging.getLogger(name).setLevel(logging.WARNING)


def rtc_configuration(ice_servers: List[str]) -> RTCConfiguration:
    return RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])


@dataclass
class GatewayConfig:
    host: str = '0.0.0.0'
    port: int = DEFAULT_PORT
    ice_servers: List[str] = field(default_factory=list)
    tick_interval: float = 1.0
    cert_file: Optional[str] = None
    key_file: Optional[str] = None

    @property
    def tls(self) -> bool:
        return bool(self.cert_file and self.key_file)


@dataclass
class ClientConfig:
    url: str = f'ws://localhost:{DEFAULT_PORT}'
    rate_hz: int = 10
    packet_size: int = 512
    duration_sec: int = 5
    acceptable_delay_ms: int = 100
    ice_servers: List[str] = field(default_factory=list)
    grace_period: float = 2.0
    timeout: float = 60.0
    insecure: bool = False
    mode: str = DATA_CHANNEL_MODE
    stats_interval: float = 1.0

    @property
    def test_config(self) -> TestConfig:
        return TestConfig(self.rate_hz, self.packet_size, self.duration_sec).validate()
