#!/usr/bin/env python3
"""
chrome-control - Loopback control server for a Chrome-family browser

Usage:
  python -m chrome_control serve [--log-level debug]
  python -m chrome_control status

Configuration comes from BROWSER_* environment variables (see config.py).
"""

import argparse
import asyncio
import logging
import signal
import sys

import httpx

from .config import BrowserConfig
from .server import ControlServer

logger = logging.getLogger("chrome_control")


def setup_logging(level: str = "info"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s [BROWSER] %(levelname)s: %(message)s'
    )


async def serve(config: BrowserConfig) -> int:
    server = ControlServer(config)
    if await server.start() is None:
        return 1

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    waiter = asyncio.ensure_future(stop_event.wait())
    serving = asyncio.ensure_future(server.wait())
    try:
        await asyncio.wait({waiter, serving}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        logger.info("Shutting down")
        await server.stop()
    return 0


def print_status(config: BrowserConfig) -> int:
    try:
        resp = httpx.get(f"{config.control_url}/", timeout=3.0, trust_env=False)
        data = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        print(f"Error: browser control server not reachable at {config.control_url}: {e}")
        return 1
    if resp.status_code != 200:
        print(f"Error: {data.get('error', resp.status_code)}")
        return 1

    print("Browser Control Status")
    print("=" * 50)
    for key in ("enabled", "running", "pid", "cdpPort", "chosenBrowser",
                "userDataDir", "headless", "attachOnly"):
        print(f"  {key:<14} {data.get(key)}")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description='Browser control server')
    parser.add_argument('command', nargs='?', default='serve', choices=['serve', 'status'])
    parser.add_argument('--log-level', default='info', help='debug, info, warning, error')
    args = parser.parse_args(argv)

    setup_logging(args.log_level)
    try:
        config = BrowserConfig.from_env()
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    if args.command == 'status':
        return print_status(config)
    return asyncio.run(serve(config))


if __name__ == "__main__":
    sys.exit(main())
