"""
External Estimate Sources
Independent providers of a carbon estimate for an activity, used to
cross-check the primary calculation.

A source returns None when it has nothing to say about an activity (no
location, unsupported region, unknown zone) and raises EstimateSourceError
when the provider itself fails. The gatherer treats the two differently.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, FrozenSet, Optional, Tuple

import httpx

from ecotrace.core.circuit_breaker import CircuitBreaker
from ecotrace.core.clock import utcnow
from ecotrace.core.config import settings
from ecotrace.core.exceptions import CircuitBreakerOpenException, EstimateSourceError
from ecotrace.schemas.activity import (
    ActivityRecord,
    ActivityType,
    ComputeMetadata,
    ElectricityMetadata,
    StorageMetadata,
    TransferMetadata,
    parse_timestamp,
)
from ecotrace.services.geographic_mapping_service import GeographicMappingService

logger = logging.getLogger(__name__)

LB_TO_KG = 0.45359237

# kg CO2 per MWh used when the EPA API is not configured or unavailable
EGRID_FALLBACK_RATES = {
    "CAMX": 244.73,
    "NYCW": 285.45,
    "ERCT": 407.89,
}
EGRID_RATE_VALIDITY = timedelta(hours=2160)
ELECTRICITY_MAPS_CACHE_TTL = timedelta(minutes=5)


@dataclass(frozen=True)
class SourceEstimate:
    value: float
    confidence: float
    last_updated: datetime


def estimate_energy_kwh(activity: ActivityRecord) -> float:
    """Rough energy use of an activity in kWh"""
    metadata = activity.metadata
    if isinstance(metadata, ElectricityMetadata) and metadata.kwh_consumed is not None:
        return metadata.kwh_consumed
    if isinstance(metadata, ComputeMetadata):
        vcpus = metadata.vcpu_count or 1
        duration = metadata.duration or 3600
        return vcpus * duration * 0.1 / 3600
    if isinstance(metadata, TransferMetadata):
        return (metadata.bytes_transferred or 0) * 6e-9
    if isinstance(metadata, StorageMetadata):
        return (metadata.size_gb or 1) * 0.0065
    return 0.001


class EstimateSource(ABC):
    """An independent provider of carbon estimates"""

    name: str = "unknown"
    weight: float = 0.1
    timeout: float = settings.SOURCE_TIMEOUT_SECONDS
    supported_activities: Optional[FrozenSet[ActivityType]] = None

    def supports(self, activity: ActivityRecord) -> bool:
        if self.supported_activities is None:
            return True
        return activity.activity_type in self.supported_activities

    @abstractmethod
    async def estimate(self, activity: ActivityRecord) -> Optional[SourceEstimate]:
        """Estimate kg CO2 for the activity, or None when not applicable"""


class _HttpSource(EstimateSource):
    """Shared plumbing for sources backed by an HTTP API"""

    def __init__(self, client: httpx.AsyncClient, breaker: CircuitBreaker = None):
        self.client = client
        self.breaker = breaker or CircuitBreaker(
            name=self.name,
            failure_threshold=3,
            recovery_timeout=30.0,
            timeout=self.timeout,
            expected_exception=(httpx.HTTPError, EstimateSourceError, TimeoutError),
        )

    async def _request(self, method: str, url: str, **kwargs) -> Optional[Dict[str, Any]]:
        """Perform a request through the circuit breaker; 404 means no data"""

        async def send():
            response = await self.client.request(method, url, **kwargs)
            if response.status_code == 404:
                return None
            if response.status_code != 200:
                raise EstimateSourceError(
                    self.name, f"HTTP {response.status_code} from {url}"
                )
            try:
                return response.json()
            except ValueError as e:
                raise EstimateSourceError(self.name, f"invalid JSON body: {str(e)}")

        try:
            return await self.breaker.call(send)
        except CircuitBreakerOpenException as e:
            raise EstimateSourceError(self.name, str(e)) from e
        except TimeoutError as e:
            raise EstimateSourceError(self.name, str(e)) from e
        except httpx.HTTPError as e:
            raise EstimateSourceError(self.name, f"request failed: {str(e)}") from e


class EPAeGridSource(_HttpSource):
    """Grid emission rate for the activity's eGRID subregion"""

    name = "EPA_eGRID"
    weight = 0.70
    confidence = 0.9

    def __init__(
        self,
        geo_service: GeographicMappingService,
        client: httpx.AsyncClient,
        api_key: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
        **kwargs,
    ):
        super().__init__(client, **kwargs)
        self.geo_service = geo_service
        self.api_key = api_key if api_key is not None else settings.EPA_API_KEY
        self._clock = clock
        self._rates: Dict[str, float] = {}
        self._rates_updated_at: Optional[datetime] = None

    async def estimate(self, activity: ActivityRecord) -> Optional[SourceEstimate]:
        location = activity.location
        if location is None or not location.postal_code:
            return None
        if location.country and location.country.upper() != "US":
            return None

        subregion = self.geo_service.get_egrid_subregion(location.postal_code)
        if subregion is None:
            return None

        rates, updated_at = await self.get_rates()
        rate = rates.get(subregion)
        if rate is None:
            logger.debug(f"No eGRID emission rate for subregion {subregion}")
            return None

        return SourceEstimate(
            value=estimate_energy_kwh(activity) * rate / 1000,
            confidence=self.confidence,
            last_updated=updated_at,
        )

    async def get_rates(self) -> Tuple[Dict[str, float], datetime]:
        """Subregion CO2 rates in kg/MWh, refreshed quarterly"""
        now = self._clock()
        if self._rates_updated_at and now - self._rates_updated_at < EGRID_RATE_VALIDITY:
            return self._rates, self._rates_updated_at

        rates = dict(EGRID_FALLBACK_RATES)
        if self.api_key:
            try:
                rates.update(await self._fetch_rates())
            except EstimateSourceError as e:
                logger.warning(f"EPA eGRID API unavailable, using fallback rates: {str(e)}")

        self._rates, self._rates_updated_at = rates, now
        return rates, now

    async def _fetch_rates(self) -> Dict[str, float]:
        payload = await self._request(
            "GET",
            f"{settings.EPA_API_BASE_URL}/egrid/power-profiler/v1.0/subregions",
            headers={"X-API-KEY": self.api_key, "Accept": "application/json"},
        )
        rates = {}
        for entry in (payload or {}).get("results", []):
            subregion = entry.get("egrid_subrgn_acronym")
            rate_lb = entry.get("egrid_subrgn_co2_rate_lb_mwh")
            if subregion and rate_lb is not None:
                rates[subregion] = float(rate_lb) * LB_TO_KG
        logger.info(f"Fetched {len(rates)} eGRID subregion rates from EPA")
        return rates


class ElectricityMapsSource(_HttpSource):
    """Live carbon intensity of the activity's electricity zone"""

    name = "Electricity_Maps"
    weight = 0.30

    def __init__(
        self,
        client: httpx.AsyncClient,
        geo_service: Optional[GeographicMappingService] = None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
        **kwargs,
    ):
        super().__init__(client, **kwargs)
        self.geo_service = geo_service
        self.api_key = api_key if api_key is not None else settings.ELECTRICITY_MAPS_API_KEY
        self.base_url = (base_url or settings.ELECTRICITY_MAPS_BASE_URL).rstrip("/")
        self._clock = clock
        self._cache: Dict[str, Tuple[datetime, Dict[str, Any]]] = {}

    def zone_for(self, activity: ActivityRecord) -> str:
        location = activity.location
        if location is not None and location.postal_code and self.geo_service:
            zone = self.geo_service.get_electricity_zone(
                location.postal_code, location.country
            )
            if zone:
                return zone

        country = (location.country if location else None) or "US"
        region = location.region if location else None
        if country.upper() == "US" and region:
            return f"US-{region.upper()}"
        return country.upper()

    async def estimate(self, activity: ActivityRecord) -> Optional[SourceEstimate]:
        zone = self.zone_for(activity)
        data = await self.get_carbon_intensity(zone)
        if data is None or data.get("carbonIntensity") is None:
            return None

        last_updated = parse_timestamp(data.get("datetime")) or self._clock()
        return SourceEstimate(
            value=float(data["carbonIntensity"]) / 1000 * estimate_energy_kwh(activity),
            confidence=0.7 if data.get("isEstimated") else 0.85,
            last_updated=last_updated,
        )

    async def get_carbon_intensity(self, zone: str) -> Optional[Dict[str, Any]]:
        now = self._clock()
        cached = self._cache.get(zone)
        if cached and now - cached[0] < ELECTRICITY_MAPS_CACHE_TTL:
            return cached[1]

        data = await self._request(
            "GET",
            f"{self.base_url}/carbon-intensity/latest",
            params={"zone": zone},
            headers={"auth-token": self.api_key or "", "Accept": "application/json"},
        )
        if data is not None:
            self._cache[zone] = (now, data)
        return data


class HttpCalculatorSource(_HttpSource):
    """Third-party calculator that accepts the activity as JSON and returns co2e in kg"""

    def __init__(
        self,
        name: str,
        url: str,
        client: httpx.AsyncClient,
        reliability: float,
        weight: float = 0.2,
        supported_activities: Optional[FrozenSet[ActivityType]] = None,
        api_key: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
        **kwargs,
    ):
        self.name = name
        self.weight = weight
        self.supported_activities = supported_activities
        super().__init__(client, **kwargs)
        self.url = url
        self.reliability = reliability
        self.api_key = api_key
        self._clock = clock

    async def estimate(self, activity: ActivityRecord) -> Optional[SourceEstimate]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        data = await self._request(
            "POST",
            self.url,
            json=activity.model_dump(mode="json", by_alias=True, exclude_none=True),
            headers=headers,
        )
        if data is None or data.get("co2e") is None:
            return None

        return SourceEstimate(
            value=float(data["co2e"]),
            confidence=self.reliability,
            last_updated=self._clock(),
        )


def build_default_sources(
    geo_service: GeographicMappingService, client: httpx.AsyncClient
) -> list:
    """Sources enabled by the current settings"""
    sources = [EPAeGridSource(geo_service, client)]

    if settings.ELECTRICITY_MAPS_API_KEY:
        sources.append(ElectricityMapsSource(client, geo_service=geo_service))

    if settings.CLIMATIQ_API_KEY:
        sources.append(
            HttpCalculatorSource(
                name="climatiq",
                url=settings.CLIMATIQ_API_URL,
                client=client,
                reliability=0.89,
                supported_activities=frozenset(
                    {
                        ActivityType.ELECTRICITY,
                        ActivityType.CLOUD_COMPUTE,
                        ActivityType.TRANSPORT,
                        ActivityType.STORAGE,
                    }
                ),
                api_key=settings.CLIMATIQ_API_KEY,
            )
        )

    if settings.CLOUD_CARBON_FOOTPRINT_URL:
        sources.append(
            HttpCalculatorSource(
                name="cloud_carbon_footprint",
                url=settings.CLOUD_CARBON_FOOTPRINT_URL,
                client=client,
                reliability=0.8,
                supported_activities=frozenset({ActivityType.CLOUD_COMPUTE}),
            )
        )

    logger.info(f"Estimate sources enabled: {[s.name for s in sources]}")
    return sources
