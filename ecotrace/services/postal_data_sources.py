"""
Postal Data Sources
Bulk loaders that feed the geographic index: the EPA power profiler ZIP to
eGRID table, generated postal ranges for supported countries, a hand-curated
US fallback table and static grid boundaries.
"""

import csv
import io
import logging
import re
from datetime import datetime
from typing import Dict, Iterable, List, Optional

import httpx

from ecotrace.core.config import settings
from ecotrace.core.exceptions import GeographicDataError
from ecotrace.schemas.geography import (
    BoundaryType,
    Bounds,
    Coordinates,
    GeographicBoundary,
    PostalMapping,
)

logger = logging.getLogger(__name__)

NORMALIZED_LENGTHS = {
    "US": 5,
    "CA": 6,
    "GB": 6,
    "DE": 5,
    "FR": 5,
    "JP": 7,
    "AU": 4,
}
DEFAULT_NORMALIZED_LENGTH = 8

# Countries covered by generated postal ranges, with their electricity zones
SUPPORTED_COUNTRIES = [
    {
        "code": "CA",
        "name": "Canada",
        "zones": [
            "CA-AB", "CA-BC", "CA-MB", "CA-NB", "CA-NL", "CA-NS", "CA-NT",
            "CA-NU", "CA-ON", "CA-PE", "CA-QC", "CA-SK", "CA-YT",
        ],
    },
    {"code": "GB", "name": "United Kingdom", "zones": ["GB"]},
    {"code": "DE", "name": "Germany", "zones": ["DE"]},
    {"code": "FR", "name": "France", "zones": ["FR"]},
    {"code": "JP", "name": "Japan", "zones": ["JP"]},
    {
        "code": "AU",
        "name": "Australia",
        "zones": ["AU-NSW", "AU-QLD", "AU-SA", "AU-TAS", "AU-VIC", "AU-WA"],
    },
    {"code": "CN", "name": "China", "zones": ["CN"]},
    {"code": "IN", "name": "India", "zones": ["IN"]},
    {"code": "BR", "name": "Brazil", "zones": ["BR-S", "BR-NE", "BR-N", "BR-CS"]},
]

# (start, end, step, region, (lat, lng), timezone)
POSTAL_RANGES = {
    "CA": [
        (10000, 19999, 1000, "ON", (43.65, -79.38), "America/Toronto"),
        (20000, 29999, 1000, "QC", (45.50, -73.57), "America/Montreal"),
        (30000, 39999, 1000, "QC", (46.81, -71.21), "America/Montreal"),
        (80000, 89999, 1000, "AB", (51.05, -114.07), "America/Edmonton"),
        (90000, 99999, 1000, "BC", (49.28, -123.12), "America/Vancouver"),
    ],
    "GB": [(10000, 99999, 5000, "EN", (51.51, -0.13), "Europe/London")],
    "DE": [(10000, 99999, 5000, "DE", (52.52, 13.40), "Europe/Berlin")],
    "FR": [(10000, 99999, 5000, "FR", (48.86, 2.35), "Europe/Paris")],
    "JP": [(1000000, 9999999, 50000, "JP", (35.68, 139.69), "Asia/Tokyo")],
    "AU": [
        (1000, 2999, 100, "NSW", (-33.87, 151.21), "Australia/Sydney"),
        (3000, 3999, 100, "VIC", (-37.81, 144.96), "Australia/Melbourne"),
        (4000, 4999, 100, "QLD", (-27.47, 153.03), "Australia/Brisbane"),
        (5000, 5999, 100, "SA", (-34.93, 138.60), "Australia/Adelaide"),
        (6000, 6999, 100, "WA", (-31.95, 115.86), "Australia/Perth"),
        (7000, 7999, 100, "TAS", (-42.88, 147.33), "Australia/Hobart"),
    ],
    "CN": [(100000, 999999, 50000, "CN", (39.90, 116.40), "Asia/Shanghai")],
    "IN": [(100000, 999999, 50000, "IN", (28.61, 77.21), "Asia/Kolkata")],
    "BR": [(10000, 99999, 5000, "BR", (-23.55, -46.64), "America/Sao_Paulo")],
}

# state, eGRID subregion, inclusive ZIP ranges; expanded in steps of 100
US_FALLBACK_RANGES = [
    ("CA", "CAMX", [(90000, 96199)]),
    ("TX", "ERCT", [(75000, 79999), (73000, 73999), (88000, 88999)]),
    ("NY", "NYCW", [(10000, 14999)]),
    ("FL", "FRCC", [(32000, 34999)]),
    ("IL", "SRMW", [(60000, 62999)]),
    ("PA", "RFCE", [(15000, 19699)]),
    ("OH", "RFCW", [(43000, 45999)]),
    ("WA", "NWPP", [(98000, 99499)]),
    ("OR", "NWPP", [(97000, 97999)]),
]
US_FALLBACK_STEP = 100

PLACEHOLDER_COUNTRIES = ["CA", "GB", "DE", "FR", "JP", "AU", "CN", "IN"]

EGRID_SUBREGIONS = [
    ("CAMX", "California ISO", Bounds(north=42.0, south=32.5, east=-114.1, west=-124.4)),
    ("ERCT", "ERCOT Texas", Bounds(north=36.5, south=25.8, east=-93.5, west=-106.6)),
    ("NYCW", "NYISO Zone A-E", Bounds(north=45.0, south=40.5, east=-71.9, west=-79.8)),
    ("NYUP", "NYISO Zone F-K", Bounds(north=45.0, south=42.0, east=-73.3, west=-79.8)),
    ("NEWE", "ISO New England", Bounds(north=47.5, south=40.9, east=-66.9, west=-73.7)),
    ("RFCE", "RFC East", Bounds(north=42.5, south=36.5, east=-75.0, west=-83.0)),
    ("SRSO", "SERC South", Bounds(north=36.6, south=24.5, east=-75.4, west=-91.7)),
    ("FRCC", "FRCC All", Bounds(north=31.0, south=24.4, east=-79.9, west=-87.6)),
]

ELECTRICITY_ZONES = [
    ("US-CA", "California", (36.7783, -119.4179)),
    ("US-TX", "Texas", (31.9686, -99.9018)),
    ("US-NY", "New York", (42.1657, -74.9481)),
    ("GB", "Great Britain", (55.3781, -3.4360)),
    ("DE", "Germany", (51.1657, 10.4515)),
    ("FR", "France", (46.2276, 2.2137)),
    ("JP", "Japan", (36.2048, 138.2529)),
    ("AU", "Australia", (-25.2744, 133.7751)),
    ("CN", "China", (35.8617, 104.1954)),
    ("IN", "India", (20.5937, 78.9629)),
]


def normalize_postal_code(postal_code: str, country_code: Optional[str] = None) -> str:
    """Strip whitespace and hyphens, upper-case, truncate to the country's length"""
    normalized = re.sub(r"[\s-]+", "", postal_code or "").upper()
    if not country_code:
        return normalized[:DEFAULT_NORMALIZED_LENGTH]
    return normalized[: NORMALIZED_LENGTHS.get(country_code.upper(), DEFAULT_NORMALIZED_LENGTH)]


def index_key(normalized_code: str, country_code: str) -> str:
    """US codes are stored bare; every other country is prefixed"""
    if country_code == "US":
        return normalized_code
    return f"{country_code}_{normalized_code}"


def digits_of(code: str) -> Optional[int]:
    digits = re.sub(r"\D", "", code or "")
    return int(digits) if digits else None


def format_postal_code(code: int, country_code: str) -> str:
    if country_code == "CA":
        padded = str(code).zfill(6)
        return f"{padded[:3]} {padded[3:]}"
    if country_code == "GB":
        return f"{chr(65 + code // 10000)}{str(code % 10000).zfill(4)}"
    if country_code == "JP":
        padded = str(code).zfill(7)
        return f"{padded[:3]}-{padded[3:]}"
    if country_code == "AU":
        return str(code).zfill(4)
    return str(code).zfill(5)


def build_us_fallback_mappings(loaded_at: datetime) -> List[PostalMapping]:
    mappings = []
    for state, subregion, ranges in US_FALLBACK_RANGES:
        for start, end in ranges:
            for zip_number in range(start, end + 1, US_FALLBACK_STEP):
                zip_code = str(zip_number).zfill(5)
                mappings.append(
                    PostalMapping(
                        postal_code=zip_code,
                        normalized_code=normalize_postal_code(zip_code, "US"),
                        country="US",
                        region=state,
                        state=state,
                        egrid_subregion=subregion,
                        electricity_zone=f"US-{state}",
                        last_updated=loaded_at,
                    )
                )
    return mappings


def build_placeholder_mappings(loaded_at: datetime) -> List[PostalMapping]:
    """One country-level mapping per supported country, keyed {CC}_00000"""
    return [
        PostalMapping(
            postal_code="00000",
            normalized_code="00000",
            country=country,
            region=country,
            electricity_zone=country,
            last_updated=loaded_at,
        )
        for country in PLACEHOLDER_COUNTRIES
    ]


def _spread(start: int, end: int, value: int) -> float:
    """Position of value inside [start, end] mapped onto [-1, 1]"""
    if end <= start:
        return 0.0
    return 2 * (value - start) / (end - start) - 1


def build_country_mappings(
    country_code: str, zones: List[str], loaded_at: datetime
) -> List[PostalMapping]:
    mappings = []
    for start, end, step, region, (lat, lng), tz in POSTAL_RANGES.get(country_code, []):
        zone = next((z for z in zones if region in z), zones[0])
        for number in range(start, end + 1, step):
            postal_code = format_postal_code(number, country_code)
            offset = _spread(start, end, number)
            mappings.append(
                PostalMapping(
                    postal_code=postal_code,
                    normalized_code=normalize_postal_code(postal_code, country_code),
                    country=country_code,
                    region=region,
                    electricity_zone=zone,
                    coordinates=Coordinates(latitude=lat + offset, longitude=lng + offset),
                    timezone=tz,
                    last_updated=loaded_at,
                )
            )
    return mappings


async def load_international_mappings(loaded_at: datetime) -> List[PostalMapping]:
    mappings = []
    for country in SUPPORTED_COUNTRIES:
        country_mappings = build_country_mappings(
            country["code"], country["zones"], loaded_at
        )
        logger.debug(
            f"Generated {len(country_mappings)} postal mappings for {country['name']}"
        )
        mappings.extend(country_mappings)
    return mappings


def build_boundaries() -> List[GeographicBoundary]:
    boundaries = []
    for subregion_id, name, bounds in EGRID_SUBREGIONS:
        boundaries.append(
            GeographicBoundary(
                id=subregion_id,
                name=name,
                type=BoundaryType.SUBREGION,
                coordinates=Coordinates(
                    latitude=(bounds.north + bounds.south) / 2,
                    longitude=(bounds.east + bounds.west) / 2,
                ),
                bounds=bounds,
                emission_zone=subregion_id,
            )
        )

    for zone_id, name, (lat, lng) in ELECTRICITY_ZONES:
        boundaries.append(
            GeographicBoundary(
                id=zone_id,
                name=name,
                type=BoundaryType.STATE if zone_id.startswith("US-") else BoundaryType.COUNTRY,
                coordinates=Coordinates(latitude=lat, longitude=lng),
                bounds=Bounds(north=lat + 5, south=lat - 5, east=lng + 5, west=lng - 5),
                emission_zone=zone_id,
            )
        )
    return boundaries


class EPAPostalDataSource:
    """Downloads the EPA power profiler ZIP code table"""

    def __init__(self, url: str = None, client: Optional[httpx.AsyncClient] = None):
        self.url = url or settings.EPA_POSTAL_CSV_URL
        self._client = client

    async def __call__(self, loaded_at: datetime) -> List[PostalMapping]:
        return await self.fetch(loaded_at)

    async def fetch(self, loaded_at: datetime) -> List[PostalMapping]:
        logger.info(f"Downloading EPA ZIP to eGRID table from {self.url}")
        client = self._client or httpx.AsyncClient(
            timeout=settings.EPA_REQUEST_TIMEOUT,
            headers={"User-Agent": "EcoTrace-Geographic-Mapper/1.0"},
        )
        try:
            response = await client.get(self.url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise GeographicDataError(f"EPA postal table unavailable: {str(e)}") from e
        finally:
            if self._client is None:
                await client.aclose()

        mappings = self.parse_csv(response.text, loaded_at)
        if not mappings:
            raise GeographicDataError("EPA postal table contained no usable rows")

        logger.info(f"Loaded {len(mappings)} US postal mappings from EPA")
        return mappings

    @staticmethod
    def parse_csv(text: str, loaded_at: datetime) -> List[PostalMapping]:
        reader = csv.DictReader(io.StringIO(text))
        return list(EPAPostalDataSource._rows_to_mappings(reader, loaded_at))

    @staticmethod
    def _rows_to_mappings(rows: Iterable[Dict[str, str]], loaded_at: datetime):
        for row in rows:
            row = {(k or "").strip(): (v or "").strip() for k, v in row.items()}
            zip_code = row.get("ZIP")
            subregion = row.get("eGRID subregion acronym")
            if not zip_code or not subregion:
                continue

            zip_code = zip_code.zfill(5)
            state = row.get("State abbreviation") or None
            yield PostalMapping(
                postal_code=zip_code,
                normalized_code=normalize_postal_code(zip_code, "US"),
                country="US",
                region=state,
                state=state,
                egrid_subregion=subregion,
                electricity_zone=f"US-{state or 'US'}",
                last_updated=loaded_at,
            )
