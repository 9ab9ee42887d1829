#!/usr/bin/env python3
# Usage:
#   hopwatch-trace example.com
#   hopwatch-trace 93.184.216.34 --rounds 5 --no-dns

import argparse
import asyncio
import logging
import sys

import config
from emitters import ConsoleEmitter
from netutils import NetworkUtilities
from session import TraceController


def positive_int(value):
    rounds = int(value)
    if rounds < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {value}")
    return rounds


async def trace(args):
    utilities = NetworkUtilities(resolve_hostnames=not args.no_dns)
    controller = TraceController(utilities, ping_interval_s=args.interval, max_rounds=args.rounds)
    try:
        session = controller.start(args.host, ConsoleEmitter())
        await session.task
        if session.monitor_task is None:
            return 1
        await session.monitor_task
        return 0
    finally:
        controller.close()


def build_argparser():
    ap = argparse.ArgumentParser(description="Trace the path to a host, then ping every hop continuously")
    ap.add_argument("host", help="Destination host name or IP")
    ap.add_argument("--rounds", type=positive_int, default=None, help="Stop after this many ping rounds")
    ap.add_argument("--interval", type=float, default=config.PING_INTERVAL_S, help="Seconds between ping rounds")
    ap.add_argument("--no-dns", action="store_true", help="Skip reverse DNS of discovered hops")
    ap.add_argument("-v", "--verbose", action="store_true", help="Show engine logs")
    return ap


def main():
    args = build_argparser().parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING, format=config.LOG_FORMAT)
    try:
        sys.exit(asyncio.run(trace(args)))
    except KeyboardInterrupt:
        logging.info("Trace stopped by user.")


if __name__ == "__main__":
    main()
