from typing import Any

import pytest
import requests

from cloudflare_dyndns.cloudflare_client import CloudflareAPIError, CloudflareClient
from cloudflare_dyndns.discovery import ResolvedTarget

BASE = "https://api.cloudflare.com/client"


class _Response:
    def __init__(self, status_code: int = 200, body: Any = None, headers: dict | None = None) -> None:
        self.status_code = status_code
        self._body = body if body is not None else {"success": True, "errors": [], "result": None}
        self.headers = headers or {}
        self.text = str(self._body)

    def json(self) -> Any:
        return self._body


class _Session:
    """Replays queued responses per (method, url); unknown routes return 404."""

    def __init__(self, routes: dict[tuple[str, str], list]) -> None:
        self._routes = {key: list(value) for key, value in routes.items()}
        self.calls: list[dict[str, Any]] = []

    def request(self, method, url, params=None, json=None, headers=None, timeout=None):
        self.calls.append({"method": method, "url": url, "params": params, "json": json, "headers": headers})
        queue = self._routes.get((method, url))
        if not queue:
            return _Response(404, {"success": False, "errors": [{"code": 7000, "message": "No route"}]})
        outcome = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _client(session: _Session, **kwargs: Any) -> tuple[CloudflareClient, list[float]]:
    sleeps: list[float] = []
    client = CloudflareClient(
        api_token=" token ",
        session=session,  # type: ignore[arg-type]
        sleep=sleeps.append,
        **kwargs,
    )
    return client, sleeps


TARGET = ResolvedTarget(zone_id="z1", record_id="r1", fqdn="home.example.com")
RECORD_URL = f"{BASE}/v4/zones/z1/dns_records/r1"


def test_requests_carry_bearer_token_and_json_payload() -> None:
    session = _Session({("PUT", RECORD_URL): [_Response(body={"success": True, "result": {"id": "r1"}})]})
    client, _ = _client(session)

    assert client.update_dns_record(TARGET, "198.51.100.10", ttl=120, proxied=False) is True

    call = session.calls[0]
    assert call["headers"]["Authorization"] == "Bearer token"
    assert call["json"] == {
        "type": "A",
        "name": "home.example.com",
        "content": "198.51.100.10",
        "ttl": 120,
        "proxied": False,
    }


def test_404_switches_to_alternative_version_and_sticks() -> None:
    zones_v5 = f"{BASE}/v5/zones"
    session = _Session(
        {("GET", zones_v5): [_Response(body={"success": True, "result": [{"id": "z1", "name": "example.com"}]})]}
    )
    client, _ = _client(session)

    zones = client.list_zones()

    assert zones == [{"id": "z1", "name": "example.com"}]
    assert client.api_version == "v5"
    assert [call["url"] for call in session.calls] == [f"{BASE}/v4/zones", zones_v5]


def test_404_on_dns_records_tries_alternative_paths() -> None:
    alt = f"{BASE}/v4/zones/z1/dns/r1"
    session = _Session({("GET", alt): [_Response(body={"success": True, "result": {"name": "home.example.com"}})]})
    client, _ = _client(session)

    record = client.get_record("z1", "r1")

    assert record["name"] == "home.example.com"
    assert client.api_version == "v4"
    assert [call["url"] for call in session.calls] == [
        RECORD_URL,
        f"{BASE}/v5/zones/z1/dns_records/r1",
        f"{BASE}/v3/zones/z1/dns_records/r1",
        alt,
    ]


def test_404_on_other_paths_is_not_retried() -> None:
    session = _Session({})
    client, _ = _client(session)

    with pytest.raises(CloudflareAPIError) as excinfo:
        client._request("GET", "/user/tokens/verify")

    assert excinfo.value.status_code == 404
    assert len(session.calls) == 1


def test_drift_failure_reraises_original_error() -> None:
    session = _Session({})
    client, _ = _client(session)

    with pytest.raises(CloudflareAPIError) as excinfo:
        client.list_zones()

    assert excinfo.value.status_code == 404
    assert str(excinfo.value).startswith("Cloudflare returned status 404 for GET https://api.cloudflare.com/client/v4/zones")
    assert client.api_version == "v4"


def test_update_retries_rate_limit_with_retry_after() -> None:
    session = _Session(
        {
            ("PUT", RECORD_URL): [
                _Response(429, {"success": False, "errors": [{"code": 971, "message": "throttled"}]}, {"Retry-After": "2"}),
                _Response(body={"success": True, "result": {"id": "r1"}}),
            ]
        }
    )
    client, sleeps = _client(session, retry_delay_seconds=5.0)

    assert client.update_dns_record(TARGET, "198.51.100.10", ttl=120, proxied=False) is True
    assert sleeps == [2.0]


def test_update_retries_server_error_with_fixed_delay() -> None:
    session = _Session(
        {
            ("PUT", RECORD_URL): [
                _Response(500, {"success": False, "errors": []}),
                _Response(500, {"success": False, "errors": []}),
                _Response(body={"success": True, "result": {"id": "r1"}}),
            ]
        }
    )
    client, sleeps = _client(session, retry_delay_seconds=5.0)

    assert client.update_dns_record(TARGET, "198.51.100.10", ttl=120, proxied=False) is True
    assert sleeps == [5.0, 5.0]


def test_update_rate_limit_without_header_uses_base_delay() -> None:
    session = _Session(
        {
            ("PUT", RECORD_URL): [
                _Response(429, {"success": False, "errors": []}),
                _Response(body={"success": True}),
            ]
        }
    )
    client, sleeps = _client(session, retry_delay_seconds=1.5)

    assert client.update_dns_record(TARGET, "198.51.100.10", ttl=120, proxied=False) is True
    assert sleeps == [1.5]


def test_update_exhausting_retries_returns_false() -> None:
    session = _Session({("PUT", RECORD_URL): [requests.ConnectionError("reset")]})
    client, sleeps = _client(session, retry_attempts=3, retry_delay_seconds=5.0)

    assert client.update_dns_record(TARGET, "198.51.100.10", ttl=120, proxied=False) is False
    assert len(session.calls) == 3
    assert sleeps == [5.0, 5.0]


def test_retry_reraises_last_error_after_final_attempt() -> None:
    client, sleeps = _client(_Session({}), retry_attempts=2, retry_delay_seconds=1.0)
    errors = [CloudflareAPIError("first", status_code=500), CloudflareAPIError("second", status_code=502)]

    def _operation() -> None:
        raise errors.pop(0)

    with pytest.raises(CloudflareAPIError) as excinfo:
        client._with_retry(_operation)

    assert str(excinfo.value) == "second"
    assert excinfo.value.status_code == 502
    assert sleeps == [1.0]


def test_update_api_rejection_returns_false_without_retry() -> None:
    session = _Session(
        {("PUT", RECORD_URL): [_Response(body={"success": False, "errors": [{"code": 9000, "message": "bad"}]})]}
    )
    client, sleeps = _client(session)

    assert client.update_dns_record(TARGET, "198.51.100.10", ttl=120, proxied=False) is False
    assert len(session.calls) == 1
    assert sleeps == []


def test_update_requires_resolved_identifiers() -> None:
    session = _Session({})
    client, _ = _client(session)

    assert client.update_dns_record(ResolvedTarget(zone_id="z1"), "198.51.100.10", ttl=120, proxied=False) is False
    assert session.calls == []


def test_verify_credentials_falls_back_to_zone_listing() -> None:
    session = _Session(
        {
            ("GET", f"{BASE}/v4/user/tokens/verify"): [_Response(401, {"success": False, "errors": []})],
            ("GET", f"{BASE}/v4/zones"): [_Response(body={"success": True, "result": []})],
        }
    )
    client, _ = _client(session)

    assert client.verify_credentials() is True
    assert session.calls[-1]["params"] == {"per_page": 1}


def test_verify_credentials_fails_when_both_checks_fail() -> None:
    session = _Session(
        {
            ("GET", f"{BASE}/v4/user/tokens/verify"): [_Response(body={"success": False, "errors": []})],
            ("GET", f"{BASE}/v4/zones"): [_Response(403, {"success": False, "errors": []})],
        }
    )
    client, _ = _client(session)

    assert client.verify_credentials() is False


def test_detect_api_version_adopts_first_working_version() -> None:
    session = _Session(
        {
            ("GET", f"{BASE}/v4/zones"): [requests.ConnectionError("down")],
            ("GET", f"{BASE}/v5/zones"): [_Response(body={"success": True, "result": []})],
        }
    )
    client, _ = _client(session)

    assert client.detect_api_version() == "v5"
    assert client.api_version == "v5"


def test_detect_api_version_keeps_default_on_total_failure() -> None:
    client, _ = _client(_Session({}), api_version="v4")

    assert client.detect_api_version() == "v4"


def test_list_a_records_paginates() -> None:
    url = f"{BASE}/v4/zones/z1/dns_records"
    session = _Session(
        {
            ("GET", url): [
                _Response(body={"success": True, "result": [{"id": "a"}], "result_info": {"total_pages": 2}}),
                _Response(body={"success": True, "result": [{"id": "b"}], "result_info": {"total_pages": 2}}),
            ]
        }
    )
    client, _ = _client(session)

    assert [record["id"] for record in client.list_a_records("z1", name="home.example.com")] == ["a", "b"]
    assert session.calls[0]["params"] == {"type": "A", "per_page": 100, "name": "home.example.com", "page": 1}
    assert session.calls[1]["params"]["page"] == 2
