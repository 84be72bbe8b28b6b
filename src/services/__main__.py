"""
CLI Entry Point for the DVM.

Usage:
    python -m services <command> [options]

Examples:
    python -m services dvm
    python -m services dvm --log-level DEBUG
    python -m services history --page 2 --page-size 10
    python -m services stats --json
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from core import Logger
from core.errors import DVMError
from core.relays import RelayNetwork

from .dvm import Dvm, DvmConfig

# =============================================================================
# Configuration
# =============================================================================

YAML_BASE = Path("yaml")
DEFAULT_CONFIG = YAML_BASE / "services" / "dvm.yaml"

COMMANDS = ("dvm", "history", "stats")

logger = Logger("cli")


def load_config(config_path: Path) -> DvmConfig:
    """Load DvmConfig from YAML, falling back to defaults and environment."""
    if not config_path.exists():
        logger.warning("config_not_found", path=str(config_path))
        return DvmConfig()

    with config_path.open(encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return DvmConfig(**data)


def build_dvm(config: DvmConfig) -> Dvm:
    network = RelayNetwork(relays=config.identity.relays, config=config.network)
    return Dvm(network=network, config=config)


# =============================================================================
# Commands
# =============================================================================


async def run_dvm(dvm: Dvm) -> int:
    """Listen for jobs until SIGINT/SIGTERM."""
    loop = asyncio.get_running_loop()

    def handle_signal(sig: signal.Signals) -> None:
        logger.info("shutdown_signal", signal=sig.name)
        dvm.request_shutdown()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        async with dvm:
            await dvm.run()
        return 0
    except DVMError as e:
        logger.error("dvm_failed", stage=e.stage, error=str(e))
        return 1


async def show_history(dvm: Dvm, page: int, page_size: int, as_json: bool) -> int:
    result = await dvm.history().get_job_history(page=page, page_size=page_size)

    if as_json:
        print(json.dumps(asdict(result), indent=2))
        return 0

    print(f"page {page} ({len(result.entries)} of ~{result.total_count})")
    for entry in result.entries:
        amount = f"{entry.invoice_amount_sats} sats" if entry.invoice_amount_sats else "-"
        print(
            f"{entry.timestamp // 1000}  {entry.status:<16} kind={entry.kind}  "
            f"{amount:<12} {entry.job_request_event_id}  {entry.input_summary}"
        )
    return 0


async def show_stats(dvm: Dvm, as_json: bool) -> int:
    stats = await dvm.history().get_job_statistics()
    data: dict[str, Any] = asdict(stats)

    if as_json:
        print(json.dumps(data, indent=2))
    else:
        for key, value in data.items():
            print(f"{key}: {value}")
    return 0


# =============================================================================
# CLI
# =============================================================================


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="python -m services",
        description="NIP-90 Data Vending Machine",
    )

    parser.add_argument("command", choices=COMMANDS, help="Command to run")

    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG,
        help=f"DVM config path (default: {DEFAULT_CONFIG})",
    )

    parser.add_argument("--page", type=int, default=1, help="History page (default: 1)")
    parser.add_argument(
        "--page-size", type=int, default=20, help="History page size (default: 20)"
    )
    parser.add_argument("--json", action="store_true", help="Print history/stats as JSON")

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Log level (default: INFO)",
    )

    return parser.parse_args()


def setup_logging(level: str) -> None:
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


async def main() -> int:
    """Main entry point."""
    args = parse_args()
    setup_logging(args.log_level)

    try:
        config = load_config(args.config)
    except (ValidationError, yaml.YAMLError) as e:
        logger.error("invalid_config", path=str(args.config), error=str(e))
        return 1

    dvm = build_dvm(config)

    try:
        if args.command == "dvm":
            return await run_dvm(dvm)
        if args.command == "history":
            return await show_history(dvm, args.page, args.page_size, args.json)
        return await show_stats(dvm, args.json)
    except ConnectionError as e:
        logger.error("connection_failed", error=str(e))
        return 1
    except ValueError as e:
        logger.error("invalid_arguments", error=str(e))
        return 2
    except KeyboardInterrupt:
        logger.info("interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
