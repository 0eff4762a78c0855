import pytest
import requests

from cloudflare_dyndns.ip_resolver import (
    PROVIDER_ENDPOINTS,
    DetectionFailed,
    IpDetector,
    Provider,
    is_valid_ipv4,
    parse_response,
)


class _Response:
    def __init__(self, text: str, status_code: int = 200) -> None:
        self.text = text
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"status={self.status_code}")


class _Session:
    def __init__(self, responses: dict) -> None:
        self._responses = responses
        self.urls: list[str] = []

    def get(self, url: str, timeout: int, headers: dict) -> _Response:
        self.urls.append(url)
        outcome = self._responses[url]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class _KeepOrder:
    def shuffle(self, items: list) -> None:
        pass


def _url(provider: Provider) -> str:
    return PROVIDER_ENDPOINTS[provider].url


@pytest.mark.parametrize("value", ["0.0.0.0", "1.2.3.4", "255.255.255.255", "203.0.113.5", "01.002.3.4"])
def test_valid_ipv4_accepted(value: str) -> None:
    assert is_valid_ipv4(value)


@pytest.mark.parametrize(
    "value",
    ["1.2.3.256", "1.2.3", "1.2.3.4.5", "abc.2.3.4", "", " 1.2.3.4", "1.2.3.4\n", "1.2.3.4x", "1234.1.1.1", "١.2.3.4"],
)
def test_malformed_ipv4_rejected(value: str) -> None:
    assert not is_valid_ipv4(value)


def test_is_valid_ipv4_rejects_non_strings() -> None:
    assert not is_valid_ipv4(None)
    assert not is_valid_ipv4(1234)


def test_parse_response_reads_json_ip_and_plain_text() -> None:
    json_endpoint = PROVIDER_ENDPOINTS[Provider.IPIFY]
    text_endpoint = PROVIDER_ENDPOINTS[Provider.IFCONFIG]
    assert parse_response(json_endpoint, '{"ip":"203.0.113.5"}') == "203.0.113.5"
    assert parse_response(json_endpoint, "203.0.113.6\n") == "203.0.113.6"
    assert parse_response(json_endpoint, '{"country":"NL"}') == ""
    assert parse_response(text_endpoint, " 198.51.100.1\n") == "198.51.100.1"


def test_detect_falls_back_to_next_provider() -> None:
    session = _Session(
        {
            _url(Provider.IPIFY): requests.ConnectionError("network issue"),
            _url(Provider.IPINFO): _Response('{"ip":"203.0.113.5"}'),
        }
    )
    detector = IpDetector(providers=["ipify", "ipinfo"], session=session, rng=_KeepOrder())  # type: ignore[arg-type]

    assert detector.detect() == "203.0.113.5"
    assert session.urls == [_url(Provider.IPIFY), _url(Provider.IPINFO)]


def test_detect_skips_unknown_empty_and_invalid_responses() -> None:
    session = _Session(
        {
            _url(Provider.SEEIP): _Response("   "),
            _url(Provider.IFCONFIG): _Response("not-an-ip"),
            _url(Provider.MYIP): _Response('{"ip":"198.51.100.7","country":"NL"}'),
        }
    )
    detector = IpDetector(
        providers=["nosuch", "seeip", "ifconfig", "myip"],
        session=session,  # type: ignore[arg-type]
        rng=_KeepOrder(),
    )

    assert detector.detect() == "198.51.100.7"
    assert len(session.urls) == 3


def test_detect_exhaustion_aggregates_every_provider() -> None:
    session = _Session(
        {
            _url(Provider.IPIFY): requests.Timeout("timed out"),
            _url(Provider.IPAPI): _Response("", status_code=503),
            _url(Provider.IFCONFIG): _Response("1.2.3.999"),
        }
    )
    detector = IpDetector(providers=["ipify", "ipapi", "ifconfig"], session=session, rng=_KeepOrder())  # type: ignore[arg-type]

    with pytest.raises(DetectionFailed) as excinfo:
        detector.detect()

    assert len(excinfo.value.errors) == 3
    message = str(excinfo.value)
    for name in ("ipify", "ipapi", "ifconfig"):
        assert name in message


def test_detect_uses_injected_shuffle_order() -> None:
    class _Reverse:
        def shuffle(self, items: list) -> None:
            items.reverse()

    session = _Session({_url(Provider.SEEIP): _Response('{"ip":"192.0.2.1"}')})
    detector = IpDetector(providers=["ipify", "seeip"], session=session, rng=_Reverse())  # type: ignore[arg-type]

    assert detector.detect() == "192.0.2.1"
    assert session.urls == [_url(Provider.SEEIP)]


def test_default_providers_used_when_none_configured() -> None:
    assert IpDetector(providers=[]).providers == ["ipify", "ifconfig", "ipinfo", "seeip"]


def test_fallback_detect_returns_none_on_failure() -> None:
    session = _Session({"https://checkip.amazonaws.com/": requests.ConnectionError("down")})
    assert IpDetector(session=session).fallback_detect() is None  # type: ignore[arg-type]


def test_fallback_detect_returns_valid_address() -> None:
    session = _Session({"https://checkip.amazonaws.com/": _Response("192.0.2.44\n")})
    assert IpDetector(session=session).fallback_detect() == "192.0.2.44"  # type: ignore[arg-type]
