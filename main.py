# main.py
import argparse
import asyncio
import logging
import platform
import sys
from logging.handlers import RotatingFileHandler

from core.config_manager import (
    ConfigManager, ConfigError, env_name,
    DEFAULT_ADDRESS, DEFAULT_PROXY, DEFAULT_ORIGIN,
)
from core.proxy_manager import ProxyManager

# Overwritten by release builds
__version__ = "devel"

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

FLAG_NAMES = ('address', 'proxy', 'origin', 'log-file')

logger = logging.getLogger(__name__)


def setup_logging(log_file=None):
    """Console logging, plus a rotating log file when one is configured"""
    handlers = []

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handlers.append(console_handler)

    if log_file:
        # 5MB, 5 backups
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=5 * 1024 * 1024,
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handlers.append(file_handler)

    logging.basicConfig(
        level=logging.INFO,
        handlers=handlers,
        force=True
    )


def build_parser():
    env_names = '\n'.join(f"  {env_name(name)}" for name in FLAG_NAMES)

    parser = argparse.ArgumentParser(
        prog='almarfidintercept',
        description=(
            f"almarfidintercept:\n"
            f"Version {__version__}\n"
            f"Running on Python {platform.python_version()}"
        ),
        epilog=f"Environment variables read when flag is unset:\n{env_names}",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('--address', help=f"Address to bind on. (default {DEFAULT_ADDRESS})")
    parser.add_argument('--proxy', help=f"Address we are proxying. (default {DEFAULT_PROXY})")
    parser.add_argument(
        '--origin',
        help=(
            "The allowed origin for CORS. To allow any origin to connect, use '*'. "
            f"(default {DEFAULT_ORIGIN})"
        )
    )
    parser.add_argument('--config', help="Optional JSON config file.")
    parser.add_argument('--log-file', help="Also write logs to this file, rotated at 5MB.")
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    return parser


def main(argv=None):
    setup_logging()
    args = build_parser().parse_args(argv)

    try:
        config = ConfigManager(args.config).build(
            address=args.address,
            proxy=args.proxy,
            origin=args.origin,
            log_file=args.log_file,
        )
    except ConfigError as e:
        logger.error(f"❌ {e}")
        return 1

    if config.log_file:
        try:
            setup_logging(config.log_file)
        except OSError as e:
            logger.error(f"❌ Unable to open log file {config.log_file}: {e}")
            return 1

    logger.info(f"Serving on address: {config.bind_address}")
    logger.info(f"Allowed origin: {config.allowed_origin}")

    return asyncio.run(ProxyManager(config).run())


def cli():
    sys.exit(main())


if __name__ == "__main__":
    cli()
