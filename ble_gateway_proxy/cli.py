"""Command line entry point."""

import argparse
import asyncio
import sys

from .config import VALID_LOG_LEVELS, load_config, log_config_status, validate
from .logging_setup import DEFAULT_LOG_LEVEL, setup_logging
from .service import GatewayProxyService


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='ble-gateway-proxy',
        description='April Brother BLE Gateway to MQTT proxy',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Configure from environment / .env only
  %(prog)s

  # Run with a configuration file
  %(prog)s -c config.json

  # Publish at most every 30 seconds, DEBUG logging
  %(prog)s -c config.json --publish-interval 30 --log-level DEBUG

Configuration file format: See config.example.json
        """
    )

    parser.add_argument(
        '-c', '--config',
        help='Path to configuration JSON file (optional, environment variables override it)'
    )

    parser.add_argument(
        '--log-level',
        choices=list(VALID_LOG_LEVELS),
        help=f'Set logging level (default: LOG_LEVEL or {DEFAULT_LOG_LEVEL})'
    )

    parser.add_argument(
        '--publish-interval',
        type=float,
        help='Override publish interval in seconds (0=immediate, >0=scheduled)'
    )

    parser.add_argument(
        '--cache-retention',
        type=float,
        help='Override device cache retention in seconds'
    )

    parser.add_argument(
        '--port',
        type=int,
        help='Override HTTP listen port'
    )

    return parser


def apply_cli_overrides(config: dict, args: argparse.Namespace) -> dict:
    if args.publish_interval is not None:
        config['publish_interval_sec'] = args.publish_interval
    if args.cache_retention is not None:
        config['device_cache_retention_sec'] = args.cache_retention
    if args.port is not None:
        config['server']['port'] = args.port
    if args.log_level:
        config['log_level'] = args.log_level
    return config


def main(argv=None):
    """Main entry point."""
    args = build_parser().parse_args(argv)

    logger = setup_logging(log_level=args.log_level or DEFAULT_LOG_LEVEL)

    try:
        if args.config:
            logger.info(f"Loading configuration from: {args.config}")
        config = validate(apply_cli_overrides(load_config(args.config), args))

        # Re-apply the level now that LOG_LEVEL from the environment is known
        logger = setup_logging(log_level=config['log_level'])
        log_config_status(config, logger)

        service = GatewayProxyService(config, logger)
        asyncio.run(service.run())

    except KeyboardInterrupt:
        logger.info("Interrupted, exiting")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=(args.log_level == 'DEBUG'))
        sys.exit(1)
