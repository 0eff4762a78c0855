from __future__ import annotations

import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Mapping

from cloudflare_dyndns.cloudflare_client import CloudflareClient
from cloudflare_dyndns.config import AppConfig, ConfigError, load_config, load_env_files
from cloudflare_dyndns.ip_resolver import IpDetector
from cloudflare_dyndns.ip_store import LastIpStore
from cloudflare_dyndns.logging_setup import setup_logging
from cloudflare_dyndns.poll_controller import PollController, ShutdownToken

__version__ = "1.1.10"

LOGGER_NAME = "cloudflare-dyndns"


def _ttl(value: str) -> int:
    try:
        ttl = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"TTL must be an integer, got {value!r}") from exc
    if ttl < 60:
        raise argparse.ArgumentTypeError(f"TTL must be at least 60 seconds, got {ttl}")
    return ttl


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cloudflare-dyndns",
        description="Update a Cloudflare DNS A record with your dynamic public IP address.",
        epilog=(
            "Examples:\n"
            "  cloudflare-dyndns                  Run once and exit\n"
            "  cloudflare-dyndns --continuous     Run continuously with adaptive intervals\n"
            "  cloudflare-dyndns --api-token xxx --domain example.com --subdomain vpn"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-c", "--continuous", action="store_true", help="Run in continuous monitoring mode.")
    parser.add_argument("-v", "--version", action="version", version=f"Cloudflare DynDNS v{__version__}")
    parser.add_argument("--setup", action="store_true", help="Run the interactive setup wizard.")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    parser.add_argument("--config", type=Path, help="Path to a YAML configuration file.")

    direct = parser.add_argument_group("direct configuration")
    direct.add_argument("--api-token", help="Cloudflare API token.")
    direct.add_argument("--zone-id", help="Cloudflare zone ID.")
    direct.add_argument("--record-id", help="DNS record ID.")
    direct.add_argument("--domain", help="Domain name, e.g. example.com.")
    direct.add_argument("--subdomain", help="Subdomain, e.g. vpn.")
    direct.add_argument("--ttl", type=_ttl, help="TTL in seconds (minimum 60).")
    direct.add_argument("--proxied", action="store_true", default=None, help="Enable the Cloudflare proxy.")
    return parser


def overrides_from_args(args: argparse.Namespace) -> dict[str, Any]:
    overrides = {
        "api_token": args.api_token,
        "zone_id": args.zone_id,
        "record_id": args.record_id,
        "domain": args.domain,
        "subdomain": args.subdomain,
        "ttl": args.ttl,
        "proxied": args.proxied,
    }
    return {key: value for key, value in overrides.items() if value is not None}


def build_controller(config: AppConfig, logger: logging.Logger, shutdown: ShutdownToken) -> PollController:
    detector = IpDetector(providers=config.ip_services, logger=logger)
    cloudflare = CloudflareClient(
        api_token=config.api_token,
        api_version=config.api_version,
        api_url=config.api_url,
        timeout_seconds=config.request_timeout_seconds,
        retry_attempts=config.retry_attempts,
        retry_delay_seconds=config.retry_delay_seconds,
        logger=logger,
    )
    return PollController(
        config=config,
        detector=detector,
        cloudflare=cloudflare,
        ip_store=LastIpStore(config.last_ip_file, logger=logger),
        logger=logger,
        shutdown=shutdown,
    )


def install_signal_handlers(shutdown: ShutdownToken, logger: logging.Logger) -> None:
    def _handle(signum: int, _frame: object) -> None:
        if shutdown.requested:
            logger.warning("Forced shutdown requested. Exiting immediately.")
            raise SystemExit(0)
        shutdown.request()
        logger.info("Shutdown requested (signal %d). Waiting for current operation to complete...", signum)

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def run_dyndns(
    continuous: bool = False,
    config: Mapping[str, Any] | None = None,
    debug: bool = False,
    config_file: Path | None = None,
    shutdown: ShutdownToken | None = None,
) -> bool:
    app_config = load_config(overrides=config, config_file=config_file)
    setup_logging("DEBUG" if debug else app_config.log_level, app_config.log_file)
    logger = logging.getLogger(LOGGER_NAME)
    if debug:
        logger.debug("Debug mode enabled")
    logger.debug("Using configuration: %s", app_config.as_dict())

    shutdown = shutdown or ShutdownToken()
    controller = build_controller(app_config, logger, shutdown)
    if not app_config.is_complete():
        logger.error(
            "Configuration is missing or incomplete (%s). Please run 'cloudflare-dyndns --setup' "
            "first or provide configuration.",
            ", ".join(app_config.missing_fields()),
        )
        return False

    if continuous:
        logger.info("Starting Cloudflare DynDNS in continuous monitoring mode...")
        return controller.start_monitoring()

    logger.info("Running Cloudflare DynDNS once...")
    return controller.run_once()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.setup:
        from cloudflare_dyndns.setup_wizard import run_setup

        return run_setup()

    load_env_files()
    shutdown = ShutdownToken()
    install_signal_handlers(shutdown, logging.getLogger(LOGGER_NAME))
    try:
        success = run_dyndns(
            continuous=args.continuous,
            config=overrides_from_args(args),
            debug=args.debug,
            config_file=args.config,
            shutdown=shutdown,
        )
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2

    if shutdown.requested:
        logging.getLogger(LOGGER_NAME).info("Shutdown complete. Exiting cleanly.")
        return 0
    if not success:
        logging.getLogger(LOGGER_NAME).error("Cloudflare DynDNS run failed.")
    return 0 if success else 1


if __name__ == "__main__":
    raise SystemExit(main())
