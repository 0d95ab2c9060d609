#!/usr/bin/env python3
"""
rtc-probe - WebRTC data channel loss / delay probe

    rtc-probe server --port 8080
    rtc-probe client --url ws://localhost:8080 --rate 10 --size 512 --duration 5
    rtc-probe client --test-mode media --duration 30
"""

import argparse
import asyncio
import logging
import sys
import tempfile

from .certs import generate_self_signed_cert
from .client import run_probe
from .config import DATA_CHANNEL_MODE, DEFAULT_PORT, TEST_MODES, ClientConfig, GatewayConfig, setup_logging
from .errors import ProbeError
from .gateway import SignalingGateway
from .report import format_summary, plot_delays, save_results

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='WebRTC network quality probe')
    parser.add_argument('mode', choices=['server', 'client'], help='Mode: server (gateway) or client')
    parser.add_argument('--log-level', default=None, help='Log level (default: $LOG_LEVEL or INFO)')
    parser.add_argument('--stun', action='append', default=[], metavar='URL',
                        help='ICE server URL, may be repeated (e.g. stun:stun.l.google.com:19302)')

    server_group = parser.add_argument_group('Server', 'Signaling gateway options')
    server_group.add_argument('--host', default='0.0.0.0', help='Address to listen on')
    server_group.add_argument('--port', type=int, default=DEFAULT_PORT, help='Port to listen on')
    server_group.add_argument('--tick', type=float, default=1.0, help='Pacing tick in seconds')
    server_group.add_argument('--cert', default=None, help='TLS certificate (PEM)')
    server_group.add_argument('--key', default=None, help='TLS private key (PEM)')
    server_group.add_argument('--self-signed', action='store_true',
                              help='Generate a throwaway certificate and serve wss://')

    client_group = parser.add_argument_group('Client', 'Test run options')
    client_group.add_argument('--url', default=f'ws://localhost:{DEFAULT_PORT}', help='Gateway URL')
    client_group.add_argument('--test-mode', choices=TEST_MODES, default=DATA_CHANNEL_MODE,
                              help='datachannel: numbered frames from the gateway; media: send a synthetic video track')
    client_group.add_argument('--rate', type=int, default=10, help='Packets per second')
    client_group.add_argument('--size', type=int, default=512, help='Packet size in bytes')
    client_group.add_argument('--duration', type=int, default=5, help='Duration in seconds')
    client_group.add_argument('--max-delay', type=int, default=100, help='Acceptable delay in ms')
    client_group.add_argument('--grace', type=float, default=2.0,
                              help='Seconds to wait for in-flight packets after completion')
    client_group.add_argument('--timeout', type=float, default=60.0, help='Give up after this many seconds')
    client_group.add_argument('--stats-interval', type=float, default=1.0, help='Seconds between getStats() samples')
    client_group.add_argument('--insecure', action='store_true', help='Skip TLS verification for wss://')
    client_group.add_argument('--output', default=None, help='Write results JSON to this file')
    client_group.add_argument('--plot', default=None, help='Write a delay plot (PNG) to this file')
    return parser


def run_server(args) -> int:
    config = GatewayConfig(
        host=args.host,
        port=args.port,
        ice_servers=args.stun,
        tick_interval=args.tick,
        cert_file=args.cert,
        key_file=args.key,
    )
    if args.self_signed and not config.tls:
        config.cert_file, config.key_file = generate_self_signed_cert(tempfile.mkdtemp(prefix='rtc-probe-'))
        logger.info("Generated self-signed certificate %s", config.cert_file)

    try:
        asyncio.run(SignalingGateway(config).serve())
    except KeyboardInterrupt:
        logger.info("Shutting down")
    return 0


def run_client(args) -> int:
    config = ClientConfig(
        url=args.url,
        rate_hz=args.rate,
        packet_size=args.size,
        duration_sec=args.duration,
        acceptable_delay_ms=args.max_delay,
        ice_servers=args.stun,
        grace_period=args.grace,
        timeout=args.timeout,
        insecure=args.insecure,
        mode=args.test_mode,
        stats_interval=args.stats_interval,
    )
    try:
        analysis = asyncio.run(run_probe(config))
    except ProbeError as e:
        logger.error("Run failed: %s", e)
        return 1
    except KeyboardInterrupt:
        return 130

    print(format_summary(analysis))
    if args.output:
        save_results(analysis, args.output)
        print(f"Results saved: {args.output}")
    if args.plot and analysis.media is None:
        plot_delays(analysis, args.plot)
        print(f"Plot saved: {args.plot}")
    return 0 if analysis.completed else 2


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)
    if args.mode == 'server':
        return run_server(args)
    return run_client(args)


if __name__ == '__main__':
    sys.exit(main())
