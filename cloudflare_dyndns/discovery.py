"""Resolve which Cloudflare record to keep in sync.

Discovery reads the immutable :class:`~cloudflare_dyndns.config.AppConfig` and
fills in whatever it lacks (zone, record, FQDN) from the Cloudflare API. The
outcome is a separate :class:`ResolvedTarget`; the configuration itself is never
modified.

Two fallbacks pick a resource without an explicit match: the first zone when the
token sees several zones and no domain is configured, and a "suitable" A record
when nothing but a token is configured. Both are logged as warnings so operators
notice when a guess was made.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Callable

import requests

from cloudflare_dyndns.cloudflare_client import CloudflareAPIError, CloudflareClient
from cloudflare_dyndns.config import AppConfig, construct_fqdn
from cloudflare_dyndns.ip_resolver import DetectionFailed

DEFAULT_TTL = 120


@dataclass(frozen=True)
class ResolvedTarget:
    zone_id: str = ""
    record_id: str = ""
    fqdn: str = ""
    domain: str = ""
    subdomain: str = ""
    zone_name: str = ""

    @property
    def complete(self) -> bool:
        return bool(self.zone_id and self.record_id)


def split_fqdn(fqdn: str) -> tuple[str, str] | None:
    """Split ``home.example.com`` into ``("home", "example.com")`` on the first dot."""
    parts = fqdn.split(".", 1)
    if len(parts) < 2 or not parts[0] or not parts[1]:
        return None
    return parts[0], parts[1]


def _with_name(target: ResolvedTarget, fqdn: str) -> ResolvedTarget:
    parsed = split_fqdn(fqdn)
    if parsed is None:
        return replace(target, fqdn=fqdn)
    subdomain, domain = parsed
    return replace(target, fqdn=fqdn, subdomain=subdomain, domain=domain)


def select_zone(zones: list[dict[str, Any]], domain: str, logger: logging.Logger) -> dict[str, Any] | None:
    if not zones:
        logger.error("No zones found for this API token. Please verify your token has the correct permissions.")
        return None

    if len(zones) == 1:
        zone = zones[0]
        logger.info("Found single zone: %s (%s)", zone.get("name"), zone.get("id"))
        return zone

    if domain:
        wanted = domain.lower()
        for zone in zones:
            if str(zone.get("name", "")).lower() == wanted:
                logger.info("Found matching zone for domain %s: %s", domain, zone.get("id"))
                return zone

    logger.warning("Multiple zones found for this API token. Please specify ZONE_ID in configuration.")
    logger.info("Available zones:")
    for index, zone in enumerate(zones, start=1):
        logger.info("%d. %s (ID: %s)", index, zone.get("name"), zone.get("id"))

    if domain:
        logger.warning("Could not find exact match for %s. Manual configuration required.", domain)
        return None

    zone = zones[0]
    logger.warning("Using first zone by default: %s (%s)", zone.get("name"), zone.get("id"))
    return zone


def pick_suitable_record(records: list[dict[str, Any]], zone_name: str, logger: logging.Logger) -> dict[str, Any]:
    logger.info("Found %d A records:", len(records))
    for index, record in enumerate(records, start=1):
        logger.info("%d. %s (%s)", index, record.get("name"), record.get("content"))

    for record in records:
        name = str(record.get("name", ""))
        own_zone = str(record.get("zone_name") or zone_name)
        if name != own_zone and "*" not in name:
            logger.warning("Selected subdomain record without explicit configuration: %s", name)
            return record

    logger.warning("Using first A record without explicit configuration: %s", records[0].get("name"))
    return records[0]


def discover_target(
    config: AppConfig,
    cloudflare: CloudflareClient,
    detect_ip: Callable[[], str],
    logger: logging.Logger | None = None,
) -> ResolvedTarget | None:
    logger = logger or logging.getLogger(__name__)
    logger.info("Initializing Cloudflare service and discovering configuration...")
    logger.debug("Using Cloudflare API URL: %s/%s", cloudflare.api_url, cloudflare.api_version)

    try:
        return _discover(config, cloudflare, detect_ip, logger)
    except (requests.RequestException, CloudflareAPIError, ValueError) as exc:
        logger.error("Error initializing service: %s", exc)
        return None


def _discover(
    config: AppConfig,
    cloudflare: CloudflareClient,
    detect_ip: Callable[[], str],
    logger: logging.Logger,
) -> ResolvedTarget | None:
    if config.auto_detect_api:
        logger.info("Auto-detecting Cloudflare API version...")
        cloudflare.detect_api_version()

    target = ResolvedTarget(
        zone_id=config.zone_id,
        record_id=config.record_id,
        fqdn=config.fqdn,
        domain=config.domain,
        subdomain=config.subdomain,
    )

    if not target.zone_id:
        logger.info("No Zone ID provided, attempting to discover zones...")
        try:
            zones = cloudflare.list_zones()
        except (requests.RequestException, CloudflareAPIError) as exc:
            logger.error("Failed to lookup zones: %s", exc)
            return None
        zone = select_zone(zones, target.domain, logger)
        if zone is None:
            logger.error("Could not automatically determine Zone ID. Please provide ZONE_ID manually.")
            return None
        target = replace(target, zone_id=str(zone["id"]), zone_name=str(zone.get("name", "")))
        logger.info("Using Zone ID: %s", target.zone_id)

    if target.domain and target.subdomain and not target.fqdn:
        target = replace(target, fqdn=construct_fqdn(target.subdomain, target.domain))
        logger.info("Using FQDN: %s", target.fqdn)

    if not target.fqdn and target.record_id:
        logger.info("Looking up FQDN from Record ID...")
        try:
            record = cloudflare.get_record(target.zone_id, target.record_id)
        except (requests.RequestException, CloudflareAPIError) as exc:
            logger.error("Failed to lookup FQDN from record ID: %s", exc)
            record = {}
        name = str(record.get("name") or "")
        if name:
            target = _with_name(target, name)
            logger.info("Using FQDN: %s", name)
            logger.debug("Extracted subdomain: %s, domain: %s", target.subdomain, target.domain)

    if not target.record_id and target.fqdn:
        logger.info("No Record ID provided, searching for %s...", target.fqdn)
        records = [
            record
            for record in cloudflare.list_a_records(target.zone_id, name=target.fqdn)
            if str(record.get("name", "")).lower() == target.fqdn.lower()
        ]
        if records:
            target = replace(target, record_id=str(records[0]["id"]))
            logger.info("Found Record ID: %s", target.record_id)
        else:
            logger.info("No existing DNS record found for %s. Creating one now...", target.fqdn)
            record_id = _create_record(config, cloudflare, target, detect_ip, logger)
            if not record_id:
                logger.error("Failed to create DNS record for %s.", target.fqdn)
                return None
            target = replace(target, record_id=record_id)
            logger.info("Created new DNS record with ID: %s", record_id)

    if not target.record_id:
        if target.fqdn:
            logger.warning("FQDN %s is configured, but no matching record found.", target.fqdn)
            logger.warning("Will not attempt to update any other records to avoid mistakes.")
            return None

        logger.info("No record specifics provided, attempting to find a suitable A record...")
        records = cloudflare.list_a_records(target.zone_id)
        if not records:
            logger.error(
                "Could not find any suitable DNS records. "
                "Please create an A record first or provide more specific configuration."
            )
            return None
        record = pick_suitable_record(records, target.zone_name, logger)
        target = _with_name(replace(target, record_id=str(record["id"])), str(record.get("name", "")))
        logger.info("Using A record: %s (ID: %s)", target.fqdn, target.record_id)

    if not target.complete:
        logger.error("Could not determine which DNS record to update. Please provide either:")
        logger.error("1. API_TOKEN and DOMAIN and SUBDOMAIN values")
        logger.error("2. API_TOKEN and FQDN value")
        logger.error("3. API_TOKEN and ZONE_ID and RECORD_ID values")
        return None

    logger.info("Configuration successfully initialized")
    logger.debug(
        "Using configuration: Zone ID: %s, Record ID: %s, FQDN: %s", target.zone_id, target.record_id, target.fqdn
    )
    return target


def _create_record(
    config: AppConfig,
    cloudflare: CloudflareClient,
    target: ResolvedTarget,
    detect_ip: Callable[[], str],
    logger: logging.Logger,
) -> str | None:
    try:
        current_ip = detect_ip()
    except DetectionFailed as exc:
        logger.error("Could not detect current IP address to create DNS record: %s", exc)
        return None

    try:
        record = cloudflare.create_a_record(
            zone_id=target.zone_id,
            name=target.fqdn,
            ip=current_ip,
            ttl=config.ttl or DEFAULT_TTL,
            proxied=bool(config.proxied),
        )
    except (requests.RequestException, CloudflareAPIError) as exc:
        logger.error("Error creating DNS record: %s", exc)
        return None

    record_id = str(record.get("id") or "")
    if record_id:
        logger.info("Successfully created DNS record for %s pointing to %s", target.fqdn, current_ip)
    return record_id or None
