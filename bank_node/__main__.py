"""Command line entry point for the bank node"""

import argparse
import asyncio
import logging
import sqlite3
import sys

from .config import ConfigError, load_config
from .logging_config import get_logger, setup_logging
from .server import BankNodeServer


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bank-node",
        description="Bank node speaking the line-based bank protocol"
    )
    parser.add_argument("--config", "-c", help="JSON configuration file")
    parser.add_argument("--host", help="Listening address")
    parser.add_argument("--port", "-p", type=int, help="Listening port")
    parser.add_argument("--bank-code", help="Bank code (IP address) this node answers to")
    parser.add_argument("--log-level", help="Log level (DEBUG, INFO, WARNING, ERROR)")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(
            args.config,
            host=args.host,
            port=args.port,
            bank_code=args.bank_code,
            log_level=args.log_level
        )
    except ConfigError as e:
        logging.basicConfig(format="%(levelname)s: %(message)s")
        get_logger().critical(f"FATAL: {e}")
        return 1

    logger = setup_logging(
        level=config.log_level,
        fmt=config.log_format,
        log_file=config.log_file,
        backup_count=config.log_backup_count
    )

    try:
        server = BankNodeServer(config)
    except (ValueError, OSError, sqlite3.Error) as e:
        logger.critical(f"FATAL: cannot open account storage {config.storage_url}: {e}")
        return 1

    try:
        asyncio.run(server.serve_forever())
    except KeyboardInterrupt:
        logger.info("Shutting down bank node")
    except OSError as e:
        logger.critical(f"FATAL: cannot start server: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
