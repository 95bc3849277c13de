"""Command line interface for anisphere."""

import argparse
import asyncio
import sys

from colorama import init

from . import config, logger
from .ffmpeg import detect_encoder
from .torrent_client import create_torrent_client
from .webserver import run_webserver


class CustomHelpFormatter(argparse.HelpFormatter):
    """Custom help formatter."""

    def __init__(self, prog):
        super().__init__(prog, max_help_position=40, width=80)

    def _format_action_invocation(self, action):
        if not action.option_strings or action.nargs == 0:
            return super()._format_action_invocation(action)
        default = self._get_default_metavar_for_optional(action)
        args_string = self._format_args(action, default)
        return ", ".join(action.option_strings) + " " + args_string


def setup_argument_parser(config_defaults):
    """Set up command line argument parser.

    Args:
        config_defaults (dict): Default configuration values.

    Returns:
        tuple: A tuple containing (pre_parser, parser).
    """
    pre_parser = argparse.ArgumentParser(add_help=False)
    pre_parser.add_argument(
        "--config",
        default=None,
        help="Path to YAML configuration file",
    )

    parser = argparse.ArgumentParser(
        description="Torrent acquisition to HLS pipeline: downloads through qBittorrent and transcodes with ffmpeg",
        formatter_class=CustomHelpFormatter,
        parents=[pre_parser],
    )

    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument(
        "-s",
        "--server",
        action="store_true",
        default=False,
        help="run the web server, download monitor and transcoder (default)",
    )
    mode_group.add_argument(
        "--test-connection",
        action="store_true",
        default=False,
        help="log in to the torrent client and print its version",
    )
    mode_group.add_argument(
        "--hash",
        metavar="URI",
        help="print the info hash of a magnet link or .torrent URL",
    )
    mode_group.add_argument(
        "--detect-encoder",
        action="store_true",
        default=False,
        help="print the H.264 encoder ffmpeg would use",
    )

    server_group = parser.add_argument_group("Server options")
    server_group.add_argument(
        "--host",
        default=config_defaults.get("server_host", None),
        help=f"server host (default: {config_defaults.get('server_host', None)})",
    )
    server_group.add_argument(
        "--port",
        type=int,
        default=config_defaults.get("server_port", 8256),
        help=f"server port (default: {config_defaults.get('server_port', 8256)})",
    )

    parser.add_argument(
        "-l",
        "--loglevel",
        metavar="LOGLEVEL",
        default=config_defaults.get("loglevel", "info"),
        choices=["debug", "info", "warning", "error", "critical"],
        help="loglevel (default: %(default)s)",
    )

    return pre_parser, parser


def setup_logger_and_config(pre_args):
    """Set up logger and load configuration, exiting on configuration errors."""
    logger.setup_logger("info")

    try:
        config.init_config(pre_args.config)
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        logger.error("Please check your configuration file and try again")
        sys.exit(1)


async def test_connection() -> int:
    client = create_torrent_client(config.cfg.downloader)
    try:
        result = await client.test_connection()
    finally:
        client.close()

    if not result.ok:
        logger.critical(f"Torrent client connection failed: {result.error}")
        return 1
    logger.success(f"Connected to qBittorrent {result.value}")
    return 0


async def print_hash(uri: str) -> int:
    client = create_torrent_client(config.cfg.downloader)
    try:
        result = await client.compute_hash(uri)
    finally:
        client.close()

    if not result.ok:
        logger.error(f"Could not compute info hash: {result.error}")
        return 1
    print(result.value)
    return 0


async def print_encoder() -> int:
    profile = await detect_encoder(config.cfg.transcode.ffmpeg_path)
    print(f"{profile.name} ({profile.encoder})")
    return 0


def main():
    """Main function."""
    init(autoreset=True)

    pre_parser, parser = setup_argument_parser({})
    pre_args, _ = pre_parser.parse_known_args()

    setup_logger_and_config(pre_args)

    # Command line arguments override config file values
    config_defaults = {
        "loglevel": config.cfg.global_config.loglevel,
        "server_host": config.cfg.server.host,
        "server_port": config.cfg.server.port,
    }
    pre_parser, parser = setup_argument_parser(config_defaults)
    args = parser.parse_args()

    logger.setup_logger(args.loglevel)

    logger.section("===== Configuration Summary =====")
    logger.debug(f"Config file: {pre_args.config or 'auto-detected'}")
    logger.debug(f"Log level: {args.loglevel}")
    logger.debug(f"Client URL: {config.cfg.downloader.client}")
    logger.debug(f"Save path: {config.cfg.downloader.save_path or 'client default'}")
    logger.debug(f"Tag: {config.cfg.downloader.tag}")
    logger.debug(f"HLS output: {config.cfg.transcode.output_dir}")
    logger.debug(f"Max concurrent transcodes: {config.cfg.transcode.max_concurrent}")

    if args.test_connection:
        sys.exit(asyncio.run(test_connection()))
    elif args.hash:
        sys.exit(asyncio.run(print_hash(args.hash)))
    elif args.detect_encoder:
        sys.exit(asyncio.run(print_encoder()))

    logger.section("===== Anisphere Starting =====")
    try:
        run_webserver(host=args.host, port=args.port, log_level=args.loglevel)
    except Exception as e:
        logger.critical(f"Server error: {e}")
        sys.exit(1)

    logger.section("===== Anisphere Finished =====")


if __name__ == "__main__":
    main()
