#!/usr/bin/env python3
"""
AMM Grid Engine - Main Entry Point.

Usage:
    python -m src.main config/config.yaml
    python -m src.main config/config.yaml --validate
    python -m src.main config/config.yaml --reset-emergency-stop
    python -m src.main config/config.yaml --live

Environment:
    GRIDBOT_DRY_RUN: Set to 'false' to disable simulated fills
    GRIDBOT_TOTAL_INVESTMENT: Override total investment (USD)
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from config.settings import BotConfig
from src.utils.config_loader import ConfigLoader
from src.core import Orchestrator, OrchestratorConfig
from src.core.orchestrator import OrchestratorState


def setup_logging(level: str, log_file: Optional[str] = None) -> None:
    """
    Configure logging for the engine.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional file path for logging
    """
    console_format = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    file_format = (
        "%(asctime)s [%(levelname)s] %(name)s "
        "(%(filename)s:%(lineno)d): %(message)s"
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    console_handler.setFormatter(logging.Formatter(console_format))
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(logging.DEBUG)  # Everything goes to file
        file_handler.setFormatter(logging.Formatter(file_format))
        root_logger.addHandler(file_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Adaptive multi-pair grid engine for concentrated-liquidity pools",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Simulated fills (default)
  python -m src.main config/config.yaml

  # Validate configuration without running
  python -m src.main config/config.yaml --validate

  # Clear a latched emergency stop, then run
  python -m src.main config/config.yaml --reset-emergency-stop
        """,
    )

    parser.add_argument(
        "config",
        type=str,
        nargs="?",
        default="config/config.yaml",
        help="Path to configuration YAML file (default: config/config.yaml)",
    )

    parser.add_argument(
        "--live",
        action="store_true",
        help="Disable dry run (requires a swap executor to be wired in)",
    )

    parser.add_argument(
        "--validate",
        action="store_true",
        help="Validate configuration and exit",
    )

    parser.add_argument(
        "--fresh",
        action="store_true",
        help="Ignore and clear saved state before starting",
    )

    parser.add_argument(
        "--reset-emergency-stop",
        action="store_true",
        help="Operator override: clear a latched emergency stop",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: from config)",
    )

    parser.add_argument(
        "--log-file",
        type=str,
        default=None,
        help="Log file path (default: from config)",
    )

    return parser.parse_args(argv)


def print_config_summary(config: BotConfig) -> None:
    """Print configuration summary."""
    print("\nConfiguration:")
    print(f"  Dry run: {config.dry_run}")
    print(f"  Total investment: ${config.grid.total_investment}")
    print(f"  Sizing mode: {config.grid.sizing_mode.value}")
    for pair in config.allocation.enabled_pairs:
        print(
            f"  {pair.pair_id}: {pair.allocation_percent}% | {pair.grid_count} levels | "
            f"+/-{pair.range_percent}% | fee {pair.pool_fee}"
        )
    print(f"  Daily loss limit: {config.risk.max_daily_loss_percent}%")
    print(f"  Stop-loss: {config.risk.stop_loss_percent}%")
    print()


def build_orchestrator(config: BotConfig, args: argparse.Namespace) -> Orchestrator:
    """Build the orchestrator; --fresh skips restoring persisted risk state."""
    orch_config = OrchestratorConfig.from_bot_config(
        config, skip_state_restore=args.fresh
    )
    return Orchestrator(config, orch_config)


async def main(args: argparse.Namespace) -> int:
    """
    Main async entry point.

    Args:
        args: Parsed command line arguments

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    logger = logging.getLogger(__name__)

    try:
        config = ConfigLoader(args.config).load()
    except FileNotFoundError:
        print(f"Error: Config file not found: {args.config}")
        return 1
    except Exception as e:
        print(f"Error loading config: {e}")
        return 1

    # Config file logging settings apply unless overridden on the command line
    setup_logging(
        args.log_level or config.logging.level,
        args.log_file or config.logging.file_path,
    )

    if args.live:
        config.execution.dry_run = False

    print_config_summary(config)

    errors = config.validate()
    if errors:
        print("Configuration errors:")
        for error in errors:
            print(f"  - {error}")
        return 1

    logger.info("Configuration validated successfully")

    if args.validate:
        print("Configuration is valid")
        return 0

    orchestrator = build_orchestrator(config, args)
    loop = asyncio.get_running_loop()
    shutdown_requested = False

    def request_shutdown(sig: signal.Signals) -> None:
        nonlocal shutdown_requested
        if shutdown_requested:
            logger.warning(f"Received {sig.name} again, shutdown already in progress")
            return
        logger.info(f"Received {sig.name}, initiating graceful shutdown...")
        shutdown_requested = True
        asyncio.create_task(orchestrator.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_shutdown, sig)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            signal.signal(sig, lambda s, f: request_shutdown(signal.Signals(s)))

    try:
        logger.info("Initializing orchestrator...")
        await orchestrator.initialize()

        if args.fresh and orchestrator.state_manager:
            orchestrator.state_manager.clear_state()
            logger.info("Cleared saved state")

        if args.reset_emergency_stop:
            if orchestrator.reset_emergency_stop():
                logger.warning("Emergency stop cleared by operator")
            else:
                logger.info("No emergency stop was active")

        await orchestrator.start()
        logger.info("Engine is running. Press Ctrl+C to stop.")

        while orchestrator.state not in (OrchestratorState.STOPPED, OrchestratorState.ERROR):
            await asyncio.sleep(1)

        logger.info("Orchestrator stopped normally")
        return 0

    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        try:
            await orchestrator.stop()
        except Exception as stop_error:
            logger.error(f"Error during shutdown: {stop_error}")
        return 1


def run() -> None:
    """Synchronous entry point."""
    args = parse_args()

    setup_logging(args.log_level or "INFO", args.log_file)

    logger = logging.getLogger(__name__)
    logger.info("Starting grid engine")
    logger.info(f"Config: {args.config}")

    try:
        exit_code = asyncio.run(main(args))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        exit_code = 0

    logger.info(f"Exiting with code {exit_code}")
    sys.exit(exit_code)


if __name__ == "__main__":
    run()
