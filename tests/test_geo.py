import asyncio

import httpx
import pytest

from sparktrack.geo import LOCAL_LABEL, Locator, is_local_address


def make_locator(handler, calls=None):
    def recording(request):
        if calls is not None:
            calls.append(request.url.host)
        return handler(request)
    return Locator(timeout=1.0, geoip_db_path=None, transport=httpx.MockTransport(recording))


def resolve(locator, ip):
    return asyncio.run(locator.resolve_location(ip))


@pytest.mark.parametrize("ip", [
    "", None, "Unknown", "127.0.0.1", "127.3.2.1", "::1", "::ffff:127.0.0.1",
    "10.1.2.3", "172.16.0.1", "172.31.255.255", "192.168.1.5", "   ", " 10.0.0.1 ",
])
def test_local_addresses(ip):
    assert is_local_address(ip)


@pytest.mark.parametrize("ip", ["8.8.8.8", "172.32.0.1", "2001:4860:4860::8888", "not-an-ip"])
def test_public_addresses(ip):
    assert not is_local_address(ip)


@pytest.mark.parametrize("ip", ["127.0.0.1", "192.168.1.5", "  "])
def test_local_short_circuit_makes_no_request(ip):
    calls = []
    locator = make_locator(lambda request: httpx.Response(500), calls)
    assert resolve(locator, ip) == LOCAL_LABEL
    assert calls == []


def test_primary_lookup():
    calls = []

    def handler(request):
        assert request.url.path == "/json/8.8.8.8"
        return httpx.Response(200, json={
            "status": "success", "city": "Mountain View", "regionName": "California", "country": "United States",
        })

    assert resolve(make_locator(handler, calls), "8.8.8.8") == "Mountain View, California, United States"
    assert calls == ["ip-api.com"]


def test_missing_fields_are_skipped():
    def handler(request):
        return httpx.Response(200, json={"status": "success", "city": "", "country": "Germany"})

    assert resolve(make_locator(handler), "8.8.4.4") == "Germany"


def test_falls_back_to_secondary_on_failed_status():
    calls = []

    def handler(request):
        if request.url.host == "ip-api.com":
            return httpx.Response(200, json={"status": "fail", "message": "quota"})
        return httpx.Response(200, json={"city": "Paris", "region": "Ile-de-France", "country_name": "France"})

    assert resolve(make_locator(handler, calls), "1.1.1.1") == "Paris, Ile-de-France, France"
    assert calls == ["ip-api.com", "ipapi.co"]


def test_falls_back_to_secondary_on_timeout():
    def handler(request):
        if request.url.host == "ip-api.com":
            raise httpx.ConnectTimeout("timed out", request=request)
        return httpx.Response(200, json={"city": "Oslo", "country_name": "Norway"})

    assert resolve(make_locator(handler), "1.1.1.1") == "Oslo, Norway"


def test_falls_back_on_empty_primary_result():
    def handler(request):
        if request.url.host == "ip-api.com":
            return httpx.Response(200, json={"status": "success"})
        return httpx.Response(200, json={"city": "Lima", "country_name": "Peru"})

    assert resolve(make_locator(handler), "1.1.1.1") == "Lima, Peru"


def test_both_lookups_fail():
    def handler(request):
        if request.url.host == "ip-api.com":
            return httpx.Response(502, text="bad gateway")
        return httpx.Response(200, json={"error": True, "reason": "RateLimited"})

    assert resolve(make_locator(handler), "1.1.1.1") == "Unknown"


def test_network_errors_are_swallowed():
    def handler(request):
        raise httpx.ConnectError("no route", request=request)

    assert resolve(make_locator(handler), "1.1.1.1") == "Unknown"


def test_missing_geoip_database_is_skipped(tmp_path):
    locator = Locator(
        timeout=1.0,
        geoip_db_path=str(tmp_path / "missing.mmdb"),
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"status": "success", "country": "Japan"})),
    )
    assert locator.get_geoip_reader() is None
    assert resolve(locator, "1.1.1.1") == "Japan"


def test_unreadable_geoip_database_is_disabled(tmp_path):
    bogus = tmp_path / "bogus.mmdb"
    bogus.write_bytes(b"not a maxmind database")
    locator = Locator(timeout=1.0, geoip_db_path=str(bogus))
    assert locator.get_geoip_reader() is None
    assert locator.geoip_db_path is None


class BrokenReader:
    def __init__(self, exc):
        self.exc = exc

    def city(self, raw_ip):
        raise self.exc


@pytest.mark.parametrize("exc", [
    TypeError("The city method cannot be used with the GeoLite2-Country database"),
    RuntimeError("corrupt record"),
])
def test_local_database_errors_fall_through(exc):
    locator = make_locator(lambda request: httpx.Response(200, json={"status": "success", "country": "Japan"}))
    locator._reader = BrokenReader(exc)

    assert resolve(locator, "1.1.1.1") == "Japan"
    assert locator._reader is None
    assert locator.get_geoip_reader() is None


def test_non_text_fields_are_joined():
    locator = make_locator(lambda request: httpx.Response(200, json={"status": "success", "city": 12, "country": "Chile"}))
    assert resolve(locator, "1.1.1.1") == "12, Chile"
