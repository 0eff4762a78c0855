from __future__ import annotations

import json
import logging
import random
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Protocol

import requests

USER_AGENT = "CloudflareDynDNS/1.0"
FALLBACK_URL = "https://checkip.amazonaws.com/"
IPV4_PATTERN = re.compile(r"([0-9]{1,3})\.([0-9]{1,3})\.([0-9]{1,3})\.([0-9]{1,3})")


class Provider(str, Enum):
    IPIFY = "ipify"
    IFCONFIG = "ifconfig"
    IPINFO = "ipinfo"
    SEEIP = "seeip"
    IPAPI = "ipapi"
    MYIP = "myip"


@dataclass(frozen=True)
class ProviderEndpoint:
    url: str
    response_format: str = "json"


PROVIDER_ENDPOINTS: dict[Provider, ProviderEndpoint] = {
    Provider.IPIFY: ProviderEndpoint("https://api.ipify.org?format=json"),
    Provider.IFCONFIG: ProviderEndpoint("https://ifconfig.me/ip", response_format="text"),
    Provider.IPINFO: ProviderEndpoint("https://ipinfo.io/json"),
    Provider.SEEIP: ProviderEndpoint("https://api.seeip.org/jsonip"),
    Provider.IPAPI: ProviderEndpoint("https://ipapi.co/json"),
    Provider.MYIP: ProviderEndpoint("https://api.myip.com"),
}

DEFAULT_IP_SERVICES = [
    Provider.IPIFY.value,
    Provider.IFCONFIG.value,
    Provider.IPINFO.value,
    Provider.SEEIP.value,
]


class DetectionFailed(RuntimeError):
    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        detail = "\n".join(self.errors) if self.errors else "no usable providers configured"
        super().__init__(f"Failed to detect public IP with all configured services.\nErrors: {detail}")


class _Shuffler(Protocol):
    def shuffle(self, x: list) -> None: ...


def is_valid_ipv4(value: object) -> bool:
    if not isinstance(value, str):
        return False
    match = IPV4_PATTERN.fullmatch(value)
    if not match:
        return False
    return all(0 <= int(group) <= 255 for group in match.groups())


def parse_response(endpoint: ProviderEndpoint, body: str) -> str:
    """Extract the candidate address from a provider response body.

    JSON providers carry the address under the ``ip`` key. A body that does not
    decode to a JSON object is treated as a plain-text address.
    """
    text = body.strip()
    if endpoint.response_format != "json":
        return text
    try:
        data = json.loads(text)
    except ValueError:
        return text
    if isinstance(data, dict):
        return str(data.get("ip") or "").strip()
    return text


def lookup_provider(name: str) -> Provider | None:
    try:
        return Provider(name.strip().lower())
    except ValueError:
        return None


class IpDetector:
    def __init__(
        self,
        providers: Iterable[str] | None = None,
        timeout_seconds: int = 10,
        logger: logging.Logger | None = None,
        session: requests.Session | None = None,
        rng: _Shuffler | None = None,
    ) -> None:
        names = [name for name in (providers or []) if name and name.strip()]
        self._providers = names or DEFAULT_IP_SERVICES.copy()
        self._timeout_seconds = timeout_seconds
        self._logger = logger or logging.getLogger(__name__)
        self._session = session or requests.Session()
        self._rng = rng or random.Random()
        self._headers = {
            "User-Agent": USER_AGENT,
            "Accept": "application/json, text/plain, */*",
        }

    @property
    def providers(self) -> list[str]:
        return list(self._providers)

    def detect(self) -> str:
        order = list(self._providers)
        self._rng.shuffle(order)
        errors: list[str] = []

        for name in order:
            provider = lookup_provider(name)
            if provider is None:
                self._logger.warning("Unknown IP detection service: %s, skipping", name)
                continue

            endpoint = PROVIDER_ENDPOINTS[provider]
            self._logger.debug("Attempting to detect IP using %s", provider.value)
            try:
                response = self._session.get(endpoint.url, timeout=self._timeout_seconds, headers=self._headers)
                response.raise_for_status()
                if not response.text or not response.text.strip():
                    raise ValueError(f"Empty response from {provider.value}")
                candidate = parse_response(endpoint, response.text)
            except Exception as exc:  # noqa: BLE001
                message = f"Failed to detect IP using {provider.value}: {exc}"
                errors.append(message)
                self._logger.warning(message)
                continue

            if is_valid_ipv4(candidate):
                self._logger.debug("Successfully detected IP %s using %s", candidate, provider.value)
                return candidate

            message = f"Invalid IP format received from {provider.value}: {candidate}"
            errors.append(message)
            self._logger.warning(message)

        raise DetectionFailed(errors)

    def fallback_detect(self) -> str | None:
        try:
            response = self._session.get(FALLBACK_URL, timeout=5, headers={"User-Agent": USER_AGENT})
            response.raise_for_status()
            candidate = response.text.strip()
        except requests.RequestException as exc:
            self._logger.debug("Fallback IP detection failed: %s", exc)
            return None

        if is_valid_ipv4(candidate):
            self._logger.debug("Retrieved fallback IP: %s", candidate)
            return candidate
        self._logger.debug("Fallback IP detection returned an invalid address: %s", candidate)
        return None
