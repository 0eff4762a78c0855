from __future__ import annotations

import logging
import threading
from typing import Callable, Optional, Protocol

from cloudflare_dyndns.cloudflare_client import CloudflareClient
from cloudflare_dyndns.config import AppConfig, ConfigError
from cloudflare_dyndns.discovery import ResolvedTarget, discover_target
from cloudflare_dyndns.ip_resolver import DetectionFailed, IpDetector
from cloudflare_dyndns.ip_store import LastIpStore

BACKOFF_STEP_SECONDS = 5
ERROR_PAUSE_SECONDS = 30
SETUP_HINT = (
    "Configuration is missing or incomplete. "
    "Please run 'cloudflare-dyndns --setup' first or provide configuration."
)

Discover = Callable[[AppConfig, CloudflareClient, Callable[[], str], logging.Logger], Optional[ResolvedTarget]]


class ShutdownToken:
    """Cooperative shutdown flag, polled between steps and used for sleeping."""

    def __init__(self) -> None:
        self._event = threading.Event()

    @property
    def requested(self) -> bool:
        return self._event.is_set()

    def request(self) -> None:
        self._event.set()

    def wait(self, seconds: float) -> bool:
        return self._event.wait(seconds)


class _Token(Protocol):
    @property
    def requested(self) -> bool: ...

    def wait(self, seconds: float) -> bool: ...


def adaptive_interval(
    stable_checks: int,
    min_seconds: float,
    max_seconds: float,
    step_seconds: float = BACKOFF_STEP_SECONDS,
) -> float:
    """Quadratic ramp from ``min_seconds`` toward ``max_seconds``: 30, 35, 50, 75, 110, ..."""
    backoff = min(stable_checks * stable_checks * step_seconds, max_seconds - min_seconds)
    return min(min_seconds + backoff, max_seconds)


class PollController:
    def __init__(
        self,
        config: AppConfig,
        detector: IpDetector,
        cloudflare: CloudflareClient,
        ip_store: LastIpStore,
        logger: logging.Logger | None = None,
        shutdown: _Token | None = None,
        discover: Discover = discover_target,
    ) -> None:
        self._config = config
        self._detector = detector
        self._cloudflare = cloudflare
        self._ip_store = ip_store
        self._logger = logger or logging.getLogger(__name__)
        self._shutdown = shutdown or ShutdownToken()
        self._discover = discover
        self._target: ResolvedTarget | None = None
        self._credentials_verified = False
        self._stable_checks = 0
        # Set when the last cycle saw a new address, whether or not the update succeeded.
        self.last_changed = False

    @property
    def target(self) -> ResolvedTarget | None:
        return self._target

    @property
    def stable_checks(self) -> int:
        return self._stable_checks

    def _stop_requested(self) -> bool:
        if self._shutdown.requested:
            self._logger.info("Shutdown requested during execution. Stopping before the next step.")
            return True
        return False

    def run_once(self) -> bool:
        self.last_changed = False
        return self._run_cycle()

    def _run_cycle(self) -> bool:
        config = self._config
        if not config.is_complete():
            self._logger.error(SETUP_HINT)
            return False

        try:
            config.validate(self._logger)
        except ConfigError as exc:
            self._logger.critical("%s", exc)
            return False
        self._logger.info("Starting Cloudflare DynDNS update check")

        if self._target is None:
            target = self._discover(config, self._cloudflare, self._detector.detect, self._logger)
            if target is None:
                self._logger.error("Failed to initialize the Cloudflare client with the provided configuration.")
                return False
            self._target = target

        if self._stop_requested():
            return False

        if not self._credentials_verified:
            if not self._cloudflare.verify_credentials():
                self._logger.error("Failed to verify Cloudflare API credentials. Please check your API token.")
                return False
            self._credentials_verified = True

        if self._stop_requested():
            return False

        try:
            current_ip = self._detector.detect()
        except DetectionFailed as exc:
            self._logger.error("%s", exc)
            return False
        self._logger.info("Current public IP: %s", current_ip)

        last_ip = self._ip_store.get_last_ip()
        self._logger.debug("Last known IP: %s", last_ip or "Not found")
        if current_ip == last_ip:
            self._logger.info("IP has not changed (%s). No update needed.", current_ip)
            return True

        self._logger.info("IP change detected! Old: %s, New: %s", last_ip or "Not found", current_ip)
        if self._stop_requested():
            return False

        self.last_changed = True
        if not self._cloudflare.update_dns_record(self._target, current_ip, config.ttl, config.proxied):
            return False

        if not self._ip_store.save_ip(current_ip):
            self._logger.warning(
                "DNS record updated but %s could not be written; the next check will update again.",
                self._ip_store.path,
            )
        return True

    def next_interval(self, changed: bool) -> float:
        config = self._config
        if not config.adaptive_interval:
            return config.check_interval_seconds

        if changed:
            self._stable_checks = 0
            self._logger.debug("IP changed, resetting interval to minimum: %ss", config.min_interval_seconds)
            return config.min_interval_seconds

        self._stable_checks += 1
        interval = adaptive_interval(self._stable_checks, config.min_interval_seconds, config.max_interval_seconds)
        self._logger.debug(
            "Adaptive interval calculation: min=%ss consecutive_stable=%d final=%ss",
            config.min_interval_seconds,
            self._stable_checks,
            interval,
        )
        return interval

    def start_monitoring(self) -> bool:
        self._logger.info("Starting continuous IP monitoring service")
        if not self._config.is_complete():
            self._logger.error(SETUP_HINT)
            return False

        while not self._shutdown.requested:
            try:
                succeeded = self.run_once()
                # A failed cycle is treated like a fresh change: poll again soon.
                interval = self.next_interval(changed=self.last_changed or not succeeded)
            except Exception as exc:  # noqa: BLE001
                self._logger.exception("Error in monitoring loop: %s", exc)
                interval = ERROR_PAUSE_SECONDS

            if self._shutdown.requested:
                break
            self._logger.info("Next check in %s seconds", interval)
            if self._shutdown.wait(interval):
                break

        self._logger.info("Monitoring stopped. Shutting down cleanly.")
        return True
