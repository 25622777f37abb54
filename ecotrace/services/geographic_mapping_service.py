"""
Geographic Mapping Service
Resolves postal codes to electricity grid context (eGRID subregion, electricity
zone) from an in-memory index built out of bulk postal data.

The index is an immutable snapshot. A refresh builds a new snapshot off to the
side and swaps the reference only when the build completes, so concurrent
lookups always see either the old or the new index and a cancelled refresh
leaves the old one in place.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from ecotrace.core.clock import utcnow
from ecotrace.core.config import settings
from ecotrace.core.exceptions import GeographicDataError
from ecotrace.core.metrics import update_geo_mappings
from ecotrace.schemas.geography import (
    BoundaryCheck,
    CountryStatistics,
    DataQuality,
    GeographicBoundary,
    MappingStatistics,
    PostalMapping,
)
from ecotrace.services.cache_service import RedisCacheService
from ecotrace.services.postal_data_sources import (
    EPAPostalDataSource,
    build_boundaries,
    build_placeholder_mappings,
    build_us_fallback_mappings,
    digits_of,
    index_key,
    load_international_mappings,
    normalize_postal_code,
)

logger = logging.getLogger(__name__)

MappingLoader = Callable[[datetime], Awaitable[List[PostalMapping]]]

NEAREST_MATCH_MAX_DISTANCE = 1000
CORE_COUNTRIES = ["US", "CA", "GB", "DE", "FR"]
BOUNDARY_MAX_AGE = timedelta(days=30)
SNAPSHOT_CACHE_KEY = "ecotrace:geo:snapshot"


@dataclass(frozen=True)
class GeographicIndex:
    """Read-only snapshot of all postal mappings and boundaries"""

    mappings: Mapping[str, PostalMapping]
    country_keys: Mapping[str, Tuple[str, ...]]
    boundaries: Mapping[str, GeographicBoundary]
    statistics: MappingStatistics
    loaded_at: datetime

    @classmethod
    def build(
        cls,
        mappings: Iterable[PostalMapping],
        boundaries: Iterable[GeographicBoundary],
        loaded_at: datetime,
    ) -> "GeographicIndex":
        by_key: Dict[str, PostalMapping] = {}
        country_keys: Dict[str, List[str]] = defaultdict(list)
        for mapping in mappings:
            key = index_key(mapping.normalized_code, mapping.country)
            if key not in by_key:
                country_keys[mapping.country].append(key)
            by_key[key] = mapping

        quality = DataQuality()
        for mapping in by_key.values():
            completeness = mapping.completeness
            if completeness == 3:
                quality.complete += 1
            elif completeness >= 1:
                quality.partial += 1
            else:
                quality.missing += 1

        statistics = MappingStatistics(
            total_mappings=len(by_key),
            countries_supported=len(country_keys),
            last_update=loaded_at,
            coverage_percentage=round(len(by_key) / 1_000_000 * 100),
            data_quality=quality,
        )

        return cls(
            mappings=MappingProxyType(by_key),
            country_keys=MappingProxyType(
                {country: tuple(keys) for country, keys in country_keys.items()}
            ),
            boundaries=MappingProxyType({b.id: b for b in boundaries}),
            statistics=statistics,
            loaded_at=loaded_at,
        )


class GeographicMappingService:
    """Postal code to grid region resolver with periodic refresh"""

    def __init__(
        self,
        us_loader: Optional[MappingLoader] = None,
        international_loader: Optional[MappingLoader] = None,
        cache: Optional[RedisCacheService] = None,
        validity: timedelta = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._us_loader = us_loader or EPAPostalDataSource()
        self._international_loader = international_loader or load_international_mappings
        self._cache = cache
        self.validity = validity or timedelta(days=settings.GEO_CACHE_VALIDITY_DAYS)
        self._clock = clock

        self._index: Optional[GeographicIndex] = None
        self._refresh_lock = asyncio.Lock()
        self._scheduler_task: Optional[asyncio.Task] = None

    @property
    def index(self) -> Optional[GeographicIndex]:
        return self._index

    @property
    def is_loaded(self) -> bool:
        return self._index is not None

    @property
    def is_stale(self) -> bool:
        if self._index is None:
            return True
        return self._clock() - self._index.loaded_at > self.validity

    async def initialize(self) -> MappingStatistics:
        """Load the index, preferring a still-valid cached snapshot"""
        if self._index is None and self._restore_snapshot():
            return self._index.statistics
        return await self.ensure_fresh()

    async def ensure_fresh(self) -> MappingStatistics:
        if self.is_stale:
            return await self.refresh()
        return self._index.statistics

    async def refresh(self) -> MappingStatistics:
        """Rebuild the index from bulk sources and swap it in"""
        if self._refresh_lock.locked():
            # Another caller is already rebuilding; share its result
            async with self._refresh_lock:
                if self._index is not None:
                    return self._index.statistics

        async with self._refresh_lock:
            start = self._clock()
            index = await self._build_index()
            self._index = index
            update_geo_mappings(index.statistics.total_mappings)

            duration = (self._clock() - start).total_seconds()
            logger.info(
                f"Geographic index loaded: {index.statistics.total_mappings} mappings, "
                f"{index.statistics.countries_supported} countries in {duration:.2f}s"
            )
            self._store_snapshot(index)
            return index.statistics

    # Lookups

    def resolve(
        self, postal_code: Optional[str], country_code: Optional[str] = None
    ) -> Optional[PostalMapping]:
        """Resolve a postal code to its grid mapping, or None when unknown"""
        index = self._index
        if index is None:
            logger.warning("Geographic index not loaded, cannot resolve postal code")
            return None
        if not postal_code or not postal_code.strip():
            return None

        country = country_code.strip().upper() if country_code else None
        normalized = normalize_postal_code(postal_code, country)

        direct = index.mappings.get(normalized)
        if direct is not None and (country is None or direct.country == country):
            return direct

        if country is None:
            return None

        prefixed = index.mappings.get(f"{country}_{normalized}")
        if prefixed is not None:
            return prefixed

        return self._find_nearest(index, normalized, country)

    def get_electricity_zone(
        self, postal_code: str, country_code: Optional[str] = None
    ) -> Optional[str]:
        mapping = self.resolve(postal_code, country_code)
        return mapping.electricity_zone if mapping else None

    def get_egrid_subregion(self, postal_code: str) -> Optional[str]:
        mapping = self.resolve(postal_code, "US")
        return mapping.egrid_subregion if mapping else None

    def get_boundary(self, boundary_id: str) -> Optional[GeographicBoundary]:
        if self._index is None:
            return None
        return self._index.boundaries.get(boundary_id)

    def get_supported_countries(self) -> List[str]:
        if self._index is None:
            return []
        return sorted(self._index.country_keys.keys())

    def get_statistics(self) -> MappingStatistics:
        if self._index is None:
            return MappingStatistics()
        return self._index.statistics

    def get_country_statistics(self, country_code: str) -> Optional[CountryStatistics]:
        index = self._index
        country = country_code.upper()
        if index is None or country not in index.country_keys:
            return None

        mappings = [index.mappings[key] for key in index.country_keys[country]]
        return CountryStatistics(
            country=country,
            mapping_count=len(mappings),
            regions=sorted({m.region for m in mappings if m.region}),
            zones=sorted({m.electricity_zone for m in mappings if m.electricity_zone}),
        )

    def validate_geographic_boundaries(self) -> BoundaryCheck:
        """Self-check of the loaded data: hard errors plus coverage warnings"""
        errors = []
        warnings = []
        index = self._index

        if index is None or not index.mappings:
            errors.append("No postal code mappings loaded")
        if index is None or not index.boundaries:
            warnings.append("No geographic boundaries loaded")

        if index is not None:
            missing = [c for c in CORE_COUNTRIES if c not in index.country_keys]
            if missing:
                warnings.append(f"Missing mappings for core countries: {', '.join(missing)}")

            age = self._clock() - index.loaded_at
            if age > BOUNDARY_MAX_AGE:
                warnings.append(f"Geographic data is {age.days} days old")

        stats = self.get_statistics()
        return BoundaryCheck(
            is_valid=not errors,
            errors=errors,
            warnings=warnings,
            statistics={
                "totalMappings": stats.total_mappings,
                "countriesSupported": stats.countries_supported,
                "boundaries": len(index.boundaries) if index else 0,
            },
        )

    # Scheduler

    async def start_scheduler(self):
        """Start the periodic refresh loop"""
        if self._scheduler_task is not None and not self._scheduler_task.done():
            logger.warning("Geographic refresh scheduler is already running")
            return

        logger.info(
            f"Starting geographic refresh scheduler with {self.validity.days}d interval"
        )
        self._scheduler_task = asyncio.create_task(self._scheduler_loop())

    async def stop_scheduler(self):
        if self._scheduler_task is None:
            return
        self._scheduler_task.cancel()
        try:
            await self._scheduler_task
        except asyncio.CancelledError:
            pass
        self._scheduler_task = None
        logger.info("Geographic refresh scheduler stopped")

    async def _scheduler_loop(self):
        while True:
            try:
                await asyncio.sleep(self.validity.total_seconds())
                logger.info("Starting scheduled geographic data refresh")
                await self.refresh()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in geographic refresh loop: {str(e)}")
                await asyncio.sleep(300)

    # Private helper methods

    async def _build_index(self) -> GeographicIndex:
        loaded_at = self._clock()
        boundaries = build_boundaries()

        try:
            try:
                us_mappings = await self._us_loader(loaded_at)
            except GeographicDataError as e:
                logger.warning(f"Failed to load US postal mappings, using fallback: {str(e)}")
                us_mappings = build_us_fallback_mappings(loaded_at)

            international = await self._international_loader(loaded_at)
            return GeographicIndex.build(
                list(us_mappings) + list(international), boundaries, loaded_at
            )
        except Exception as e:
            logger.error(f"Failed to load geographic mappings, using fallback: {str(e)}")
            fallback = build_us_fallback_mappings(loaded_at) + build_placeholder_mappings(
                loaded_at
            )
            return GeographicIndex.build(fallback, boundaries, loaded_at)

    @staticmethod
    def _find_nearest(
        index: GeographicIndex, normalized: str, country: str
    ) -> Optional[PostalMapping]:
        target = digits_of(normalized)
        if target is None:
            return None

        best: Optional[PostalMapping] = None
        best_distance = None
        for key in index.country_keys.get(country, ()):
            candidate = index.mappings[key]
            value = digits_of(candidate.normalized_code)
            if value is None:
                continue
            distance = abs(value - target)
            if best_distance is None or distance < best_distance:
                best, best_distance = candidate, distance

        if best is not None and best_distance <= NEAREST_MATCH_MAX_DISTANCE:
            logger.debug(
                f"Nearest postal match for {normalized} ({country}): "
                f"{best.normalized_code} at distance {best_distance}"
            )
            return best
        return None

    def _store_snapshot(self, index: GeographicIndex):
        if self._cache is None:
            return
        snapshot = {
            "loaded_at": index.loaded_at.isoformat(),
            "mappings": [m.model_dump(mode="json") for m in index.mappings.values()],
        }
        self._cache.set_with_ttl(
            SNAPSHOT_CACHE_KEY, snapshot, int(self.validity.total_seconds())
        )

    def _restore_snapshot(self) -> bool:
        if self._cache is None:
            return False

        snapshot = self._cache.get(SNAPSHOT_CACHE_KEY)
        if not snapshot:
            return False

        try:
            loaded_at = datetime.fromisoformat(snapshot["loaded_at"])
            mappings = [PostalMapping.model_validate(m) for m in snapshot["mappings"]]
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring unreadable geographic snapshot: {str(e)}")
            return False

        if self._clock() - loaded_at > self.validity or not mappings:
            return False

        self._index = GeographicIndex.build(mappings, build_boundaries(), loaded_at)
        update_geo_mappings(self._index.statistics.total_mappings)
        logger.info(
            f"Restored geographic index from cache: {len(mappings)} mappings"
        )
        return True
