#!/usr/bin/env python3
"""
main.py - wsflood command line entry point
Loads a run file, checks target health, runs every scenario and reports
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Optional

import aiohttp

from wsflood.core.errors import ConfigError
from wsflood.core.run_config import RunConfig, load_run_config
from wsflood.engines.orchestrator import Orchestrator, RunReport, RunState
from wsflood.reporting import print_run_report, write_json_report
from wsflood.transport.base import Payload, Transport
from wsflood.transport.stub_transport import StubTransport
from wsflood.transport.websocket_transport import WebSocketTransport

logger = logging.getLogger(__name__)

EXIT_PASSED = 0
EXIT_FAILED = 1
EXIT_SETUP_FAILURE = 2


async def check_target_health(health_url: str, timeout: float = 10.0) -> bool:
    """Check if the target's HTTP health endpoint responds"""
    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(health_url, timeout=aiohttp.ClientTimeout(total=timeout)) as response:
                if response.status == 200:
                    logger.info(f"Target health check passed: {health_url}")
                    return True
                logger.error(f"Target health check failed: HTTP {response.status}")
                return False
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.error(f"Cannot reach target health endpoint {health_url}: {e}")
        return False


def _reject_non_json(data: Payload) -> Optional[int]:
    """Dry-run target policy: close with 1003 on anything that is not JSON text"""
    if isinstance(data, bytes):
        return 1003
    try:
        json.loads(data)
    except ValueError:
        return 1003
    return None


def create_transport(config: RunConfig, dry_run: bool) -> Transport:
    if dry_run:
        logger.info("Dry run: using the in-memory stub transport")
        return StubTransport(connect_latency=(0.002, 0.02), close_on=_reject_non_json, seed=config.options.seed)
    return WebSocketTransport(
        open_timeout=config.params.connect_timeout,
        close_timeout=config.params.close_timeout,
    )


async def run(config: RunConfig, dry_run: bool = False) -> RunReport:
    transport = create_transport(config, dry_run)
    orchestrator = Orchestrator(
        config.scenarios,
        config.params,
        transport,
        thresholds=config.thresholds,
        options=config.options,
    )

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.abort)
    except NotImplementedError:
        logger.debug("Signal handlers not supported on this platform")

    try:
        return await orchestrator.run()
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except NotImplementedError:
            pass
        await transport.aclose()


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="WebSocket load and abuse testing harness")
    parser.add_argument("run_file", help="YAML run file, e.g. config/scenarios.yml")
    parser.add_argument("--dry-run", action="store_true", help="run against the in-memory stub target")
    parser.add_argument("--json-out", metavar="PATH", help="write the run report as JSON")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--seed", type=int, help="seed for hold times, sampling and the stub target")
    return parser.parse_args(argv)


async def async_main(args: argparse.Namespace) -> int:
    try:
        config = load_run_config(args.run_file)
    except ConfigError as e:
        logger.error(f"Invalid run file: {e}")
        return EXIT_SETUP_FAILURE

    if args.seed is not None:
        config.options.seed = args.seed

    if config.health_url and not args.dry_run:
        if not await check_target_health(config.health_url):
            return EXIT_SETUP_FAILURE

    report = await run(config, dry_run=args.dry_run)
    print_run_report(report)
    if args.json_out:
        write_json_report(report, args.json_out)

    if report.state == RunState.FAILED:
        return EXIT_SETUP_FAILURE
    return EXIT_PASSED if report.overall_passed else EXIT_FAILED


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level),
                        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    return asyncio.run(async_main(args))


if __name__ == "__main__":
    sys.exit(main())
