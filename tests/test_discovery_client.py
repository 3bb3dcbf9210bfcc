"""
Unit tests for the Discovery Client.

The remote service is replaced by an httpx.MockTransport, so every test runs
offline.
"""
import json

import httpx
import pytest
from unittest.mock import AsyncMock, patch

from sitescan.core.api_errors import DiscoveryError
from sitescan.core.config import Settings
from sitescan.sources.site_scan.discovery_client import DiscoveryClient
from sitescan.sources.site_scan.types import AnalysisStatus, LocationQuery

DISCOVERY_URL = "https://discovery.test/find-substations"


def _client(handler, **kwargs) -> DiscoveryClient:
    transport = httpx.MockTransport(handler)
    return DiscoveryClient(
        DISCOVERY_URL,
        client=httpx.AsyncClient(transport=transport),
        **kwargs,
    )


def _json_handler(body, status_code=200, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(json.loads(request.content))
        return httpx.Response(status_code, json=body)
    return handler


SUBSTATIONS = {
    "substations": [
        {"id": 101, "name": "Oak Cliff Substation", "latitude": 32.749, "longitude": -96.842,
         "place_id": "p1", "address": "1200 W Davis St, Dallas, TX 75208, USA"},
        {"id": 102, "name": "Mockingbird Substation", "latitude": "32.837", "longitude": "-96.772",
         "address": "5500 E Mockingbird Ln, Dallas, TX 75206, USA"},
    ]
}


# =============================================================================
# Request building
# =============================================================================


@pytest.mark.unit
class TestBuildRequest:

    def test_text_query_uses_default_radius(self):
        client = DiscoveryClient(DISCOVERY_URL, default_radius_meters=100_000, max_results=100)
        payload = client.build_request(LocationQuery(location="Dallas, TX"))
        assert payload == {
            "location": "Dallas, TX",
            "searchRadiusMeters": 100_000,
            "maxResults": 100,
        }

    def test_region_query_uses_center_and_radius(self):
        client = DiscoveryClient(DISCOVERY_URL)
        payload = client.build_request(
            LocationQuery(center_lat=32.78, center_lng=-96.8, radius_meters=25_000, max_results=10)
        )
        assert payload["location"] == "32.78,-96.8"
        assert payload["searchRadiusMeters"] == 25_000
        assert payload["maxResults"] == 10

    def test_from_settings(self):
        settings = Settings(
            _env_file=None,
            discovery_service_url=DISCOVERY_URL,
            default_search_radius_meters=50_000,
            max_discovery_results=25,
        )
        client = DiscoveryClient.from_settings(settings)
        assert client.url == DISCOVERY_URL
        assert client.default_radius_meters == 50_000
        assert client.max_results == 25


# =============================================================================
# discover()
# =============================================================================


@pytest.mark.unit
class TestDiscover:

    @pytest.mark.asyncio
    async def test_returns_pending_sites_in_service_order(self):
        seen = []
        client = _client(_json_handler(SUBSTATIONS, seen=seen))

        sites = await client.discover(LocationQuery(location="Dallas, TX"))

        assert seen[0]["location"] == "Dallas, TX"
        assert [s.name for s in sites] == ["Oak Cliff Substation", "Mockingbird Substation"]
        assert all(s.analysis_status == AnalysisStatus.PENDING for s in sites)
        assert all(s.capacity_estimate is None for s in sites)
        assert sites[0].id == "101"
        assert sites[0].place_id == "p1"
        assert sites[1].coordinates.latitude == pytest.approx(32.837)

    @pytest.mark.asyncio
    async def test_accepts_wrapped_result(self):
        client = _client(_json_handler({"success": True, "result": SUBSTATIONS}))
        sites = await client.discover(LocationQuery(location="Dallas, TX"))
        assert len(sites) == 2

    @pytest.mark.asyncio
    async def test_duplicates_collapse_to_first(self):
        body = {"substations": [
            {"id": 1, "name": "Oak Cliff", "latitude": 32.749, "longitude": -96.842, "address": "first"},
            {"id": 2, "name": "Oak Cliff", "latitude": 32.749, "longitude": -96.842, "address": "second"},
            {"id": 3, "name": "Oak Cliff", "latitude": 32.750, "longitude": -96.842, "address": "moved"},
        ]}
        client = _client(_json_handler(body))

        sites = await client.discover(LocationQuery(location="Dallas, TX"))

        assert [s.address for s in sites] == ["first", "moved"]

    @pytest.mark.asyncio
    async def test_repeated_ids_are_rekeyed(self):
        body = {"substations": [
            {"id": 7, "name": "North", "latitude": 32.9, "longitude": -96.8},
            {"id": 7, "name": "South", "latitude": 32.6, "longitude": -96.8},
        ]}
        client = _client(_json_handler(body))

        sites = await client.discover(LocationQuery(location="Dallas, TX"))

        assert sites[0].id == "7"
        assert sites[1].id != "7"

    @pytest.mark.asyncio
    async def test_mistyped_fields_do_not_sink_the_batch(self):
        body = {"substations": [
            {"name": "Good", "latitude": 32.7, "longitude": -96.8, "address": "1 Main St, Dallas, TX"},
            {"name": "Numeric Place", "latitude": 32.8, "longitude": -96.8, "place_id": 12345},
            {"name": 42, "latitude": 32.9, "longitude": -96.8},
            {"name": ["not", "a", "name"], "latitude": 33.0, "longitude": -96.8},
            {"name": "Odd Address", "latitude": 33.1, "longitude": -96.8, "address": {"street": 1}},
        ]}
        client = _client(_json_handler(body))

        sites = await client.discover(LocationQuery(location="Dallas, TX"))

        assert [s.name for s in sites] == ["Good", "Numeric Place", "42", "Odd Address"]
        assert sites[1].place_id == "12345"
        assert sites[3].address == ""

    @pytest.mark.asyncio
    async def test_unnamed_candidates_dropped_bad_coordinates_kept(self):
        body = {"substations": [
            {"name": "", "latitude": 32.7, "longitude": -96.8},
            {"name": "No Coords", "latitude": "n/a", "longitude": None},
            "garbage",
        ]}
        client = _client(_json_handler(body))

        sites = await client.discover(LocationQuery(location="Dallas, TX"))

        assert len(sites) == 1
        assert sites[0].name == "No Coords"
        assert sites[0].coordinates is None

    @pytest.mark.asyncio
    async def test_zero_usable_candidates_is_an_error(self):
        client = _client(_json_handler({"substations": []}))
        with pytest.raises(DiscoveryError) as exc_info:
            await client.discover(LocationQuery(location="Nowhere"))
        assert exc_info.value.query == "Nowhere"

    @pytest.mark.asyncio
    async def test_missing_substations_list_is_an_error(self):
        client = _client(_json_handler({"places": []}))
        with pytest.raises(DiscoveryError):
            await client.discover(LocationQuery(location="Dallas, TX"))

    @pytest.mark.asyncio
    async def test_service_error_payload(self):
        client = _client(_json_handler({"error": "quota exceeded"}))
        with pytest.raises(DiscoveryError) as exc_info:
            await client.discover(LocationQuery(location="Dallas, TX"))
        assert "quota exceeded" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, text="bad location")

        client = _client(handler, max_retries=3)
        with pytest.raises(DiscoveryError):
            await client.discover(LocationQuery(location="Dallas, TX"))
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_server_error_retried_then_succeeds(self):
        responses = [httpx.Response(503, text="busy"), httpx.Response(200, json=SUBSTATIONS)]

        def handler(request):
            return responses.pop(0)

        client = _client(handler, max_retries=3)
        with patch.object(client, "_backoff", new=AsyncMock()) as backoff:
            sites = await client.discover(LocationQuery(location="Dallas, TX"))

        assert len(sites) == 2
        backoff.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_rate_limit_waits_for_retry_after(self):
        responses = [
            httpx.Response(429, text="slow down", headers={"Retry-After": "2"}),
            httpx.Response(200, json=SUBSTATIONS),
        ]

        def handler(request):
            return responses.pop(0)

        client = _client(handler, max_retries=3)
        with patch.object(client, "_backoff", new=AsyncMock()) as backoff:
            sites = await client.discover(LocationQuery(location="Dallas, TX"))

        assert len(sites) == 2
        attempt, error = backoff.await_args.args
        assert attempt == 0
        assert error.retry_after == 2

    @pytest.mark.asyncio
    async def test_malformed_service_url_is_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json=SUBSTATIONS)

        client = DiscoveryClient(
            "http://[::1",
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            max_retries=3,
        )
        with patch.object(client, "_backoff", new=AsyncMock()) as backoff:
            with pytest.raises(DiscoveryError) as exc_info:
                await client.discover(LocationQuery(location="Dallas, TX"))

        assert "Invalid service URL" in str(exc_info.value)
        assert calls == []
        backoff.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_timeout_exhausts_retries(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        client = _client(handler, max_retries=2)
        with patch.object(client, "_backoff", new=AsyncMock()):
            with pytest.raises(DiscoveryError) as exc_info:
                await client.discover(LocationQuery(location="Dallas, TX"))
        assert "Timed out" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_sends_bearer_token(self):
        headers = []

        def handler(request):
            headers.append(request.headers.get("Authorization"))
            return httpx.Response(200, json=SUBSTATIONS)

        client = _client(handler, api_key="secret")
        await client.discover(LocationQuery(location="Dallas, TX"))
        assert headers == ["Bearer secret"]
