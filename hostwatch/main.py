"""Main entry point for the hostwatch engine"""

import sys
import argparse
import traceback

from hostwatch import __version__
from hostwatch.config.settings import load_config
from hostwatch.utils.logger import setup_logger
from hostwatch.engine import Engine


def parse_args(argv=None):
    """Parse command-line arguments"""
    parser = argparse.ArgumentParser(
        description='Alert evaluation and incident engine for host telemetry'
    )

    parser.add_argument(
        '--config',
        '-c',
        type=str,
        default=None,
        help='Path to configuration file (YAML)'
    )

    parser.add_argument(
        '--log-level',
        '-l',
        type=str,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        default=None,
        help='Override log level'
    )

    parser.add_argument(
        '--once',
        action='store_true',
        help='Run a single evaluation pass and exit'
    )

    parser.add_argument(
        '--version',
        '-v',
        action='version',
        version=f'hostwatch v{__version__}'
    )

    return parser.parse_args(argv)


def main(argv=None):
    """Main entry point"""
    args = parse_args(argv)

    try:
        config = load_config(args.config)

        if args.log_level:
            config['engine']['log_level'] = args.log_level

        logger = setup_logger(config)
        logger.info("=" * 60)
        logger.info(f"hostwatch v{__version__}")
        logger.info("=" * 60)

        if args.config:
            logger.info(f"Loaded configuration from: {args.config}")
        else:
            logger.info("Using default configuration")

        engine = Engine(config)
        try:
            if args.once:
                result = engine.run_once()
                return 0 if result is not None and not result.failed_hosts else 1
            engine.start()
        finally:
            engine.close()

        return 0

    except KeyboardInterrupt:
        print("\nShutdown requested by user")
        return 0
    except Exception as e:
        print(f"Fatal error: {e}", file=sys.stderr)
        traceback.print_exc()
        return 1


if __name__ == '__main__':
    sys.exit(main())
