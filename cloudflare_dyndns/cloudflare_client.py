from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any, Callable, TypeVar

import requests

if TYPE_CHECKING:
    from cloudflare_dyndns.discovery import ResolvedTarget

DEFAULT_API_URL = "https://api.cloudflare.com/client"
DEFAULT_API_VERSION = "v4"
ALTERNATIVE_API_VERSIONS = ("v5", "v4", "v3")
PROBE_API_VERSIONS = ("v4", "v5", "v3")
ALTERNATIVE_RECORD_PATHS = ("/dns", "/dns_records/v2")

T = TypeVar("T")


class CloudflareAPIError(RuntimeError):
    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        errors: list[dict[str, Any]] | None = None,
        retry_after: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.errors = errors or []
        self.retry_after = retry_after


def format_errors(errors: list[Any]) -> str:
    messages = []
    for error in errors or []:
        if isinstance(error, dict):
            messages.append(str(error.get("message", error)))
        else:
            messages.append(str(error))
    return "; ".join(messages) or "Unknown error"


class CloudflareClient:
    def __init__(
        self,
        api_token: str,
        api_version: str = DEFAULT_API_VERSION,
        api_url: str = DEFAULT_API_URL,
        timeout_seconds: int = 30,
        retry_attempts: int = 3,
        retry_delay_seconds: float = 5.0,
        logger: logging.Logger | None = None,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.api_version = api_version or DEFAULT_API_VERSION
        self.api_url = (api_url or DEFAULT_API_URL).rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._retry_attempts = max(1, retry_attempts)
        self._retry_delay_seconds = retry_delay_seconds
        self._logger = logger or logging.getLogger(__name__)
        self._session = session or requests.Session()
        self._sleep = sleep
        self._headers = {
            "Authorization": f"Bearer {api_token.strip()}",
            "Content-Type": "application/json",
        }

    def _url(self, path: str, version: str | None = None) -> str:
        return f"{self.api_url}/{version or self.api_version}{path}"

    def _send(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
        timeout: int | None = None,
    ) -> requests.Response:
        response = self._session.request(
            method=method,
            url=url,
            params=params,
            json=payload,
            headers=self._headers,
            timeout=timeout or self._timeout_seconds,
        )
        if response.status_code >= 400:
            errors: list[dict[str, Any]] = []
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                errors = body.get("errors") or []
            raise CloudflareAPIError(
                f"Cloudflare returned status {response.status_code} for {method} {url}: "
                f"{format_errors(errors) if errors else response.text}",
                status_code=response.status_code,
                errors=errors,
                retry_after=response.headers.get("Retry-After"),
            )
        return response

    def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = self._url(path)
        self._logger.debug("Making %s request to: %s", method, url)
        try:
            return self._send(method, url, params=params, payload=payload).json()
        except CloudflareAPIError as exc:
            if exc.status_code != 404:
                raise
            self._logger.warning("Endpoint %s returned 404, attempting to detect API changes", path)
            return self._handle_api_change(method, path, params, payload, exc)

    def _handle_api_change(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None,
        payload: dict[str, Any] | None,
        original_error: CloudflareAPIError,
    ) -> dict[str, Any]:
        if "/zones" in path or "/dns_records" in path:
            for version in ALTERNATIVE_API_VERSIONS:
                if version == self.api_version:
                    continue
                self._logger.debug("Trying alternative API version: %s", version)
                try:
                    response = self._send(method, self._url(path, version), params=params, payload=payload)
                except (requests.RequestException, CloudflareAPIError) as exc:
                    self._logger.debug("API version %s failed: %s", version, exc)
                    continue
                self._logger.info("Successfully used API version %s - updating configuration", version)
                self.api_version = version
                return response.json()

        if "/dns_records" in path:
            for replacement in ALTERNATIVE_RECORD_PATHS:
                alternative = path.replace("/dns_records", replacement, 1)
                self._logger.debug("Trying alternative endpoint: %s", alternative)
                try:
                    response = self._send(method, self._url(alternative), params=params, payload=payload)
                except (requests.RequestException, CloudflareAPIError) as exc:
                    self._logger.debug("Alternative endpoint failed: %s", exc)
                    continue
                self._logger.info("Successfully used alternative endpoint: %s", alternative)
                return response.json()

        raise original_error

    @staticmethod
    def _ensure_success(data: dict[str, Any], what: str) -> dict[str, Any]:
        if not data.get("success", False):
            errors = data.get("errors") or []
            raise CloudflareAPIError(f"Cloudflare API error for {what}: {format_errors(errors)}", errors=errors)
        return data

    def detect_api_version(self) -> str:
        for version in PROBE_API_VERSIONS:
            url = self._url("/zones", version)
            self._logger.debug("Testing API version %s with URL: %s", version, url)
            try:
                response = self._send("GET", url, timeout=5)
                data = response.json()
            except (requests.RequestException, CloudflareAPIError, ValueError) as exc:
                self._logger.debug("API version %s check failed: %s", version, exc)
                continue
            if response.status_code == 200 and isinstance(data, dict) and data.get("success") is True:
                self._logger.info("Detected working API version: %s", version)
                self.api_version = version
                return version

        self._logger.warning("Could not auto-detect API version, using default: %s", self.api_version)
        return self.api_version

    def _paginate(self, path: str, params: dict[str, Any], what: str) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = []
        page = 1
        while True:
            data = self._ensure_success(self._request("GET", path, params={**params, "page": page}), what)
            results.extend(data.get("result") or [])
            info = data.get("result_info") or {}
            total_pages = info.get("total_pages", 1)
            if page >= total_pages:
                break
            page += 1
        return results

    def list_zones(self) -> list[dict[str, Any]]:
        return self._paginate("/zones", {"per_page": 50}, "list zones")

    def get_record(self, zone_id: str, record_id: str) -> dict[str, Any]:
        data = self._ensure_success(self._request("GET", f"/zones/{zone_id}/dns_records/{record_id}"), "get record")
        return data.get("result") or {}

    def list_a_records(self, zone_id: str, name: str | None = None) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"type": "A", "per_page": 100}
        if name:
            params["name"] = name
        return self._paginate(f"/zones/{zone_id}/dns_records", params, "list A records")

    def create_a_record(self, zone_id: str, name: str, ip: str, ttl: int, proxied: bool) -> dict[str, Any]:
        payload = {
            "type": "A",
            "name": name,
            "content": ip,
            "ttl": ttl,
            "proxied": proxied,
        }
        data = self._ensure_success(
            self._request("POST", f"/zones/{zone_id}/dns_records", payload=payload), "create record"
        )
        return data.get("result") or {}

    def update_a_record(
        self,
        zone_id: str,
        record_id: str,
        name: str,
        ip: str,
        ttl: int,
        proxied: bool,
    ) -> dict[str, Any]:
        payload = {
            "type": "A",
            "name": name,
            "content": ip,
            "ttl": ttl,
            "proxied": proxied,
        }
        return self._request("PUT", f"/zones/{zone_id}/dns_records/{record_id}", payload=payload)

    def verify_credentials(self) -> bool:
        try:
            data = self._request("GET", "/user/tokens/verify")
            if data.get("success"):
                self._logger.info("Successfully verified Cloudflare API credentials")
                return True
        except (requests.RequestException, CloudflareAPIError, ValueError) as exc:
            self._logger.debug("Token verify failed: %s. Trying fallback verification.", exc)

        try:
            data = self._request("GET", "/zones", params={"per_page": 1})
        except (requests.RequestException, CloudflareAPIError, ValueError) as exc:
            self._logger.error("Failed to verify API credentials: %s", exc)
            return False

        if data.get("success") is True:
            self._logger.info("Successfully verified Cloudflare API credentials using zones endpoint")
            return True
        self._logger.error("API credentials verification failed: API returned unsuccessful response")
        return False

    def _retry_delay(self, exc: Exception) -> float:
        if isinstance(exc, CloudflareAPIError) and exc.status_code == 429 and exc.retry_after:
            try:
                return float(int(exc.retry_after))
            except ValueError:
                pass
        return self._retry_delay_seconds

    def _with_retry(self, operation: Callable[[], T]) -> T:
        for attempt in range(1, self._retry_attempts + 1):
            try:
                return operation()
            except (requests.RequestException, CloudflareAPIError) as exc:
                if attempt >= self._retry_attempts:
                    raise
                delay = self._retry_delay(exc)
                if isinstance(exc, CloudflareAPIError) and exc.status_code == 429:
                    self._logger.warning(
                        "Rate limit hit. Retrying in %ss (Attempt %d/%d)", delay, attempt, self._retry_attempts
                    )
                else:
                    self._logger.warning(
                        "Operation failed. Retrying in %ss (Attempt %d/%d): %s",
                        delay,
                        attempt,
                        self._retry_attempts,
                        exc,
                    )
                self._sleep(delay)
        raise CloudflareAPIError(f"Operation failed after {self._retry_attempts} attempts")

    def update_dns_record(self, target: ResolvedTarget, new_ip: str, ttl: int, proxied: bool) -> bool:
        if not target.zone_id or not target.record_id:
            self._logger.error("Zone ID and Record ID are required to update a DNS record")
            return False

        self._logger.info("Updating DNS record for %s to %s (TTL: %s, Proxied: %s)", target.fqdn, new_ip, ttl, proxied)
        try:
            data = self._with_retry(
                lambda: self.update_a_record(
                    zone_id=target.zone_id,
                    record_id=target.record_id,
                    name=target.fqdn,
                    ip=new_ip,
                    ttl=ttl,
                    proxied=proxied,
                )
            )
        except (requests.RequestException, CloudflareAPIError) as exc:
            self._logger.error("API error updating DNS record: %s", exc)
            return False

        if data.get("success"):
            self._logger.info("DNS record for %s successfully updated to %s", target.fqdn, new_ip)
            return True

        self._logger.error("Failed to update DNS record: %s", format_errors(data.get("errors") or []))
        self._logger.debug("Cloudflare API response: %s", data)
        return False
