"""
Entry point for `python -m sockplex`.

Usage:
    python -m sockplex serve [--host 0.0.0.0] [--port 8000]
    python -m sockplex probe [--url ws://localhost:8000/speedtest] [--rounds 20 --discard 5]
                             [--down 4194304] [--up 4194304] [--repeat 1]
"""

import asyncio
import argparse
import json
import logging
import sys

from .client import ProbeClient
from .server import DEFAULT_HOST, DEFAULT_PORT, SPEEDTEST_PATH, run_server
from .speedtest import DEFAULT_TRANSFER_SIZE, DOWN, UP

logger = logging.getLogger("sockplex")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="sockplex - time sync and speed test over one WebSocket")
    parser.add_argument("--verbose", "-v", action="store_true")
    parser.add_argument("--clock", choices=("perf", "date"), default="perf",
                        help="clock used for timestamps (default: perf)")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="run the WebSocket server")
    serve.add_argument("--host", default=DEFAULT_HOST)
    serve.add_argument("--port", "-p", type=int, default=DEFAULT_PORT)

    probe = sub.add_parser("probe", help="run time sync and a speed test against a server")
    probe.add_argument("--url", "-u", default=f"ws://localhost:{DEFAULT_PORT}{SPEEDTEST_PATH}")
    probe.add_argument("--rounds", "-n", type=int, default=20, help="time sync rounds")
    probe.add_argument("--discard", "-k", type=int, default=5, help="warm-up rounds to drop")
    probe.add_argument("--down", type=int, default=DEFAULT_TRANSFER_SIZE, help="downlink bytes (0 skips)")
    probe.add_argument("--up", type=int, default=DEFAULT_TRANSFER_SIZE, help="uplink bytes (0 skips)")
    probe.add_argument("--repeat", "-r", type=int, default=1, help="repetitions of each direction")
    probe.add_argument("--timeout", type=float, default=None, help="seconds per exchange")
    return parser.parse_args(argv)


def build_tests(down: int, up: int, repeat: int) -> list[tuple[str, int]]:
    tests = []
    for _ in range(repeat):
        if down > 0:
            tests.append((DOWN, down))
        if up > 0:
            tests.append((UP, up))
    return tests


async def probe(args) -> int:
    client = ProbeClient(url=args.url, time_fn=args.clock)
    if not await client.connect():
        print("Connection failed")
        return 1

    try:
        stats = await client.timesync_stats(args.rounds, args.discard, timeout=args.timeout)
        print(json.dumps(stats.format(), indent="\t", ensure_ascii=False))

        tests = build_tests(args.down, args.up, args.repeat)
        if tests:
            speed = await client.speedtest_stats(tests, timeout=args.timeout)
            print(json.dumps(speed.format(), indent="\t", ensure_ascii=False))
    except asyncio.TimeoutError:
        logger.error("Timed out waiting for the server")
        return 1
    finally:
        await client.close()

    return 0


def main(argv=None):
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    if args.command == "serve":
        run_server(args.host, args.port, args.clock)
        return

    try:
        sys.exit(asyncio.run(probe(args)))
    except KeyboardInterrupt:
        sys.exit(0)


if __name__ == "__main__":
    main()
