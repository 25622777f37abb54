"""
Test the HTTP-backed estimate sources against mocked provider APIs
"""

import json
from unittest.mock import patch

import httpx
import pytest

from ecotrace.core.circuit_breaker import CircuitBreaker
from ecotrace.core.config import settings
from ecotrace.core.exceptions import EstimateSourceError
from ecotrace.schemas.activity import ActivityRecord, ActivityType
from ecotrace.services.estimate_sources import (
    EPAeGridSource,
    ElectricityMapsSource,
    HttpCalculatorSource,
    build_default_sources,
    estimate_energy_kwh,
)

from conftest import FIXED_NOW


class RecordingTransport:
    """Wraps a handler and keeps every request it served"""

    def __init__(self, handler):
        self.handler = handler
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        return self.handler(request)

    def client(self):
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def unreachable(request):
    raise AssertionError(f"unexpected request to {request.url}")


def activity(**overrides):
    data = {
        "activityType": "electricity",
        "timestamp": FIXED_NOW.isoformat(),
        "location": {"country": "US", "postalCode": "94107"},
        "metadata": {"kWhConsumed": 50},
    }
    data.update(overrides)
    return ActivityRecord.model_validate(data)


class TestEnergyEstimate:
    def test_electricity(self):
        assert estimate_energy_kwh(activity()) == 50

    def test_compute(self):
        record = activity(activityType="cloud_compute", metadata={"vcpuCount": 4, "duration": 1800})
        assert estimate_energy_kwh(record) == pytest.approx(0.2)

    def test_transfer_and_storage(self):
        transfer = activity(activityType="data_transfer", metadata={"bytesTransferred": 1e9})
        storage = activity(activityType="storage", metadata={"sizeGB": 100})
        assert estimate_energy_kwh(transfer) == pytest.approx(6.0)
        assert estimate_energy_kwh(storage) == pytest.approx(0.65)

    def test_other_activity(self):
        assert estimate_energy_kwh(activity(activityType="commit", metadata={"sha": "abc"})) == 0.001


class TestEPAeGridSource:
    @pytest.mark.asyncio
    async def test_fallback_rate_without_api_key(self, geo_service, fixed_clock):
        transport = RecordingTransport(unreachable)
        async with transport.client() as client:
            source = EPAeGridSource(geo_service, client, api_key="", clock=fixed_clock)
            estimate = await source.estimate(activity())

        assert estimate.value == pytest.approx(50 * 244.73 / 1000)
        assert estimate.confidence == 0.9
        assert estimate.last_updated == FIXED_NOW

    @pytest.mark.asyncio
    async def test_not_applicable(self, geo_service, fixed_clock):
        transport = RecordingTransport(unreachable)
        async with transport.client() as client:
            source = EPAeGridSource(geo_service, client, api_key="", clock=fixed_clock)

            assert await source.estimate(activity(location=None)) is None
            assert await source.estimate(
                activity(location={"country": "DE", "postalCode": "10115"})
            ) is None
            # FRCC has no built-in rate
            assert await source.estimate(
                activity(location={"country": "US", "postalCode": "32000"})
            ) is None

    @pytest.mark.asyncio
    async def test_rates_from_api_are_converted_to_kg(self, geo_service, fixed_clock):
        payload = {
            "results": [
                {"egrid_subrgn_acronym": "CAMX", "egrid_subrgn_co2_rate_lb_mwh": 500},
                {"egrid_subrgn_acronym": "SRSO", "egrid_subrgn_co2_rate_lb_mwh": None},
            ]
        }
        transport = RecordingTransport(lambda request: httpx.Response(200, json=payload))
        async with transport.client() as client:
            source = EPAeGridSource(geo_service, client, api_key="secret", clock=fixed_clock)
            first = await source.estimate(activity())
            second = await source.estimate(activity())

        assert first.value == pytest.approx(50 * 500 * 0.45359237 / 1000)
        assert second.value == first.value
        assert len(transport.requests) == 1
        assert transport.requests[0].headers["X-API-KEY"] == "secret"

    @pytest.mark.asyncio
    async def test_api_failure_keeps_fallback_rates(self, geo_service, fixed_clock):
        transport = RecordingTransport(lambda request: httpx.Response(500))
        async with transport.client() as client:
            source = EPAeGridSource(geo_service, client, api_key="secret", clock=fixed_clock)
            estimate = await source.estimate(activity())

        assert estimate.value == pytest.approx(50 * 244.73 / 1000)


class TestElectricityMapsSource:
    @pytest.mark.asyncio
    async def test_live_intensity(self, geo_service, fixed_clock):
        body = {
            "zone": "US-CA",
            "carbonIntensity": 250,
            "datetime": "2024-06-01T11:00:00Z",
            "isEstimated": True,
        }
        transport = RecordingTransport(lambda request: httpx.Response(200, json=body))
        async with transport.client() as client:
            source = ElectricityMapsSource(
                client, geo_service=geo_service, api_key="token", clock=fixed_clock
            )
            estimate = await source.estimate(activity())
            await source.estimate(activity())

        assert estimate.value == pytest.approx(12.5)
        assert estimate.confidence == 0.7
        assert estimate.last_updated.hour == 11
        assert len(transport.requests) == 1
        request = transport.requests[0]
        assert request.url.params["zone"] == "US-CA"
        assert request.headers["auth-token"] == "token"

    @pytest.mark.asyncio
    async def test_zone_without_data(self, fixed_clock):
        transport = RecordingTransport(lambda request: httpx.Response(404))
        async with transport.client() as client:
            source = ElectricityMapsSource(client, api_key="token", clock=fixed_clock)
            assert await source.estimate(activity()) is None

    @pytest.mark.asyncio
    async def test_provider_error(self, fixed_clock):
        transport = RecordingTransport(lambda request: httpx.Response(503))
        async with transport.client() as client:
            source = ElectricityMapsSource(client, api_key="token", clock=fixed_clock)
            with pytest.raises(EstimateSourceError) as exc_info:
                await source.estimate(activity())

        assert exc_info.value.source == "Electricity_Maps"
        assert "HTTP 503" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_breaker_opens_after_repeated_failures(self, fixed_clock):
        transport = RecordingTransport(lambda request: httpx.Response(503))
        async with transport.client() as client:
            breaker = CircuitBreaker(
                name="em_test",
                failure_threshold=2,
                recovery_timeout=60.0,
                expected_exception=(EstimateSourceError,),
            )
            source = ElectricityMapsSource(
                client, api_key="token", clock=fixed_clock, breaker=breaker
            )
            for _ in range(2):
                with pytest.raises(EstimateSourceError):
                    await source.get_carbon_intensity("DE")

            with pytest.raises(EstimateSourceError, match="is OPEN"):
                await source.get_carbon_intensity("DE")

        assert len(transport.requests) == 2

    def test_zone_fallbacks(self):
        source = ElectricityMapsSource(httpx.AsyncClient(), api_key="token")

        assert source.zone_for(activity(location={"country": "US", "region": "tx"})) == "US-TX"
        assert source.zone_for(activity(location={"country": "de"})) == "DE"
        assert source.zone_for(activity(location=None)) == "US"


class TestHttpCalculatorSource:
    @pytest.mark.asyncio
    async def test_posts_activity_and_reads_co2e(self, fixed_clock):
        transport = RecordingTransport(lambda request: httpx.Response(200, json={"co2e": 11.5}))
        async with transport.client() as client:
            source = HttpCalculatorSource(
                name="calculator",
                url="https://calc.test/estimate",
                client=client,
                reliability=0.89,
                api_key="key",
                clock=fixed_clock,
            )
            estimate = await source.estimate(activity())

        assert estimate.value == 11.5
        assert estimate.confidence == 0.89
        request = transport.requests[0]
        assert request.method == "POST"
        assert request.headers["Authorization"] == "Bearer key"
        body = json.loads(request.content)
        assert body["activityType"] == "electricity"
        assert body["metadata"] == {"kWhConsumed": 50.0}

    @pytest.mark.asyncio
    async def test_missing_co2e(self, fixed_clock):
        transport = RecordingTransport(lambda request: httpx.Response(200, json={"unit": "kg"}))
        async with transport.client() as client:
            source = HttpCalculatorSource(
                name="calculator", url="https://calc.test", client=client, reliability=0.8
            )
            assert await source.estimate(activity()) is None

    @pytest.mark.asyncio
    async def test_invalid_json(self, fixed_clock):
        transport = RecordingTransport(lambda request: httpx.Response(200, text="<html>"))
        async with transport.client() as client:
            source = HttpCalculatorSource(
                name="calculator", url="https://calc.test", client=client, reliability=0.8
            )
            with pytest.raises(EstimateSourceError, match="invalid JSON"):
                await source.estimate(activity())

    def test_supported_activities(self):
        source = HttpCalculatorSource(
            name="ccf",
            url="https://ccf.test",
            client=httpx.AsyncClient(),
            reliability=0.8,
            supported_activities=frozenset({ActivityType.CLOUD_COMPUTE}),
        )
        assert not source.supports(activity())
        assert source.supports(activity(activityType="cloud_compute", metadata={"duration": 60}))


class TestDefaultSources:
    def test_only_epa_without_credentials(self, geo_service):
        with patch.object(settings, "ELECTRICITY_MAPS_API_KEY", None), patch.object(
            settings, "CLIMATIQ_API_KEY", None
        ), patch.object(settings, "CLOUD_CARBON_FOOTPRINT_URL", None):
            sources = build_default_sources(geo_service, httpx.AsyncClient())
        assert [s.name for s in sources] == ["EPA_eGRID"]

    def test_all_configured(self, geo_service):
        with patch.object(settings, "ELECTRICITY_MAPS_API_KEY", "em"), patch.object(
            settings, "CLIMATIQ_API_KEY", "cq"
        ), patch.object(settings, "CLOUD_CARBON_FOOTPRINT_URL", "https://ccf.test"):
            sources = build_default_sources(geo_service, httpx.AsyncClient())

        assert [s.name for s in sources] == [
            "EPA_eGRID",
            "Electricity_Maps",
            "climatiq",
            "cloud_carbon_footprint",
        ]
        assert [s.weight for s in sources][:2] == [0.70, 0.30]
