"""
Geocoding Enrichment Service

Fills Latitude/Longitude on unified listings that have an address but no
usable coordinates. For each candidate the cascade is:

1. skip if either payload already carries valid coordinates
2. build a postal address (public payload wins over restricted on collisions)
3. geocode cache lookup
4. external geocoding call, followed by a fixed rate-limit delay
5. write-back into the public payload + cache

A pass handles at most batch_size candidates; the rest wait for the next
scheduled run. A quota error aborts the pass instead of being counted as an
empty result.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import requests
from supabase import Client

from config.sync_config import GeocodeSettings, SyncConfig, get_config
from .errors import ConfigError, GeocodingError, QuotaExceeded
from .listing_models import RawListing
from .listing_store import ListingStore
from .retry_policy import RetryPolicy

logger = logging.getLogger(__name__)

LATITUDE_KEYS = ('Latitude', 'latitude')
LONGITUDE_KEYS = ('Longitude', 'longitude')
STREET_FIELDS = ('StreetNumber', 'StreetDirPrefix', 'StreetName', 'StreetSuffix', 'StreetDirSuffix')
PROVINCE_FIELDS = ('StateOrProvince', 'Province', 'State')

QUOTA_STATUSES = frozenset({'OVER_QUERY_LIMIT', 'OVER_DAILY_LIMIT'})


def _as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _lookup(listing: RawListing, keys: Tuple[str, ...]) -> Any:
    """First non-None value across public then restricted payload, per key variant"""
    public = listing.public_payload or {}
    restricted = listing.restricted_payload or {}
    for key in keys:
        for payload in (public, restricted):
            value = payload.get(key)
            if value is not None:
                return value
    return None


def extract_coordinates(listing: RawListing) -> Optional[Tuple[float, float]]:
    """Valid (lat, lng) from either payload, or None"""
    lat = _as_float(_lookup(listing, LATITUDE_KEYS))
    lng = _as_float(_lookup(listing, LONGITUDE_KEYS))
    if lat is None or lng is None:
        return None
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        return None
    return lat, lng


def has_valid_coordinates(listing: RawListing) -> bool:
    return extract_coordinates(listing) is not None


def _text(value: Any) -> str:
    if value is None or isinstance(value, (dict, list)):
        return ""
    return str(value).strip()


def build_address(listing: RawListing) -> Optional[str]:
    """
    Postal address for geocoding.

    Street parts are joined with spaces, then street, city, province and
    postal code are joined with ", ". Empty parts are dropped.

    Returns:
        Address string, or None when nothing usable is present
    """
    merged: Dict[str, Any] = {**(listing.restricted_payload or {}), **(listing.public_payload or {})}

    street = " ".join(part for part in (_text(merged.get(name)) for name in STREET_FIELDS) if part)
    city = _text(merged.get('City'))
    province = next((_text(merged.get(name)) for name in PROVINCE_FIELDS if _text(merged.get(name))), "")
    postal = _text(merged.get('PostalCode'))

    parts = [part for part in (street, city, province, postal) if part]
    return ", ".join(parts) if parts else None


@dataclass
class GeocodeRunResult:
    """Result of one geocoding pass"""
    candidates: int = 0
    cache_hits: int = 0
    geocoded: int = 0
    no_result: int = 0
    failed: int = 0
    api_calls: int = 0
    quota_exhausted: bool = False
    error_message: Optional[str] = None
    duration_seconds: float = 0.0
    errors: List[str] = field(default_factory=list)

    @property
    def updated(self) -> int:
        return self.cache_hits + self.geocoded

    @property
    def exit_code(self) -> int:
        if self.quota_exhausted or self.error_message:
            return 1
        return 2 if self.failed else 0

    def summary(self) -> str:
        return (f"geocode pass: {self.updated} updated ({self.cache_hits} from cache, "
                f"{self.geocoded} from API), {self.no_result} without result, "
                f"{self.failed} failed, {self.api_calls} API calls")


class GeocodingClient:
    """Google Geocoding API client"""

    def __init__(self, settings: GeocodeSettings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.session = session or requests.Session()
        self.session.headers.update({'Accept': 'application/json'})

    def geocode(self, address: str) -> Optional[Dict[str, float]]:
        """
        Geocode one address.

        Returns:
            {'lat': ..., 'lng': ...} for the first result, {} for
            ZERO_RESULTS or a result without geometry, None on an HTTP error

        Raises:
            QuotaExceeded: on OVER_QUERY_LIMIT or HTTP 429
            GeocodingError: on any other non-OK status (e.g. REQUEST_DENIED)
        """
        if not self.settings.api_key:
            raise ConfigError("GEOCODING_API_KEY (or GOOGLE_PLACES_API_KEY / GOOGLE_MAPS_API_KEY) is required")

        response = self.session.get(
            self.settings.endpoint,
            params={'address': address, 'key': self.settings.api_key},
            timeout=self.settings.request_timeout,
        )
        if response.status_code == 429:
            raise QuotaExceeded("Geocoding rate limit hit (HTTP 429)")
        if response.status_code != 200:
            logger.warning(f"Geocoding HTTP {response.status_code} for {address[:60]!r}")
            return None

        data = response.json()
        status = data.get('status')
        if status in QUOTA_STATUSES:
            raise QuotaExceeded(f"Geocoding rate limit hit ({status}). Increase GEOCODE_DELAY_MS or run later.")
        if status not in ('OK', 'ZERO_RESULTS'):
            raise GeocodingError(f"Geocoding failed with status {status}: {data.get('error_message', '')}",
                                 status=status)

        results = data.get('results') or []
        if not results:
            return {}
        location = (results[0].get('geometry') or {}).get('location') or {}
        lat, lng = _as_float(location.get('lat')), _as_float(location.get('lng'))
        if lat is None or lng is None:
            return {}
        return {'lat': lat, 'lng': lng}


class GeocodingService:
    """
    Service for backfilling coordinates on unified listings
    """

    def __init__(
        self,
        supabase_client: Client,
        config: Optional[SyncConfig] = None,
        client: Optional[GeocodingClient] = None,
        store: Optional[ListingStore] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.supabase = supabase_client
        self.config = config or get_config()
        self.settings = self.config.geocode
        self.client = client or GeocodingClient(self.settings)
        self.store = store or ListingStore(supabase_client, self.config.supabase)
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=self.config.batch.max_attempts,
            backoff_seconds=self.config.batch.backoff_seconds,
            sleep=sleep,
        )
        self.sleep = sleep

    async def find_candidates(self, limit: int) -> List[RawListing]:
        """
        Collect up to limit listings with an address but no coordinates.

        Addresses the cache already marks as unresolvable are skipped so
        they do not take up the per-run budget.

        Raises:
            ReadFailure: on any read error
        """
        page_size = self.config.batch.page_size
        candidates: List[RawListing] = []
        unresolvable = 0
        offset = 0

        while len(candidates) < limit:
            rows = await self.store.fetch_page(self.store.raw_table, offset, page_size)
            offset += len(rows)
            for row in rows:
                if not row.get('listing_key'):
                    continue
                listing = RawListing.from_row(row)
                if has_valid_coordinates(listing):
                    continue
                address = build_address(listing)
                if not address:
                    continue
                if await self.store.get_cached_geocode(address) == {}:
                    unresolvable += 1
                    continue
                candidates.append(listing)
                if len(candidates) >= limit:
                    break
            if len(rows) < page_size:
                break

        if unresolvable:
            logger.info(f"Skipped {unresolvable} listings whose address is cached as unresolvable")
        return candidates

    async def _lookup_external(self, address: str, result: GeocodeRunResult) -> Optional[Dict[str, float]]:
        """External call followed by the rate-limit delay, whatever the outcome"""
        result.api_calls += 1
        try:
            return await asyncio.to_thread(self.client.geocode, address)
        finally:
            await self.sleep(self.settings.delay_ms / 1000)

    async def _write_back(self, listing: RawListing, coords: Dict[str, float]) -> None:
        payload = {**(listing.public_payload or {}), 'Latitude': coords['lat'], 'Longitude': coords['lng']}
        await self.retry_policy.call(lambda: self.store.update_public_payload(listing.listing_key, payload))
        listing.public_payload = payload

    async def run_geocode_pass(self, limit: Optional[int] = None) -> GeocodeRunResult:
        """
        Geocode up to limit listings missing coordinates.

        Args:
            limit: Candidate cap (defaults to the configured batch size)

        Returns:
            GeocodeRunResult; quota_exhausted is set when the pass was aborted

        Raises:
            ReadFailure: if candidates cannot be read
        """
        start_time = time.time()
        result = GeocodeRunResult()
        limit = limit or self.settings.batch_size

        logger.info(f"Loading {self.store.raw_table} (missing coordinates only, max {limit})...")
        candidates = await self.find_candidates(limit)
        result.candidates = len(candidates)
        logger.info(f"Found {len(candidates)} listings with address but no coordinates")

        for i, listing in enumerate(candidates, start=1):
            address = build_address(listing)
            if not address:
                continue

            try:
                coords = await self.store.get_cached_geocode(address)
                from_cache = coords is not None
                if coords is None:
                    coords = await self._lookup_external(address, result)

                if not coords:
                    result.no_result += 1
                    if result.no_result <= 5:
                        logger.warning(f"  No result for: {address[:60]}...")
                    # {} is a definite ZERO_RESULTS; None was an HTTP error worth retrying next run
                    if coords is not None and not from_cache:
                        await self.store.put_cached_geocode(address, None, None)
                    continue

                await self._write_back(listing, coords)
                if from_cache:
                    result.cache_hits += 1
                else:
                    result.geocoded += 1
                    await self.store.put_cached_geocode(address, coords['lat'], coords['lng'])

            except QuotaExceeded as e:
                result.quota_exhausted = True
                result.error_message = str(e)
                logger.error(f"Aborting geocode pass: {e}")
                break
            except (GeocodingError, ConfigError) as e:
                result.error_message = str(e)
                logger.error(f"Aborting geocode pass: {e}")
                break
            except Exception as e:
                result.failed += 1
                if result.failed <= 5:
                    logger.error(f"  Error for {listing.listing_key}: {e}")
                    result.errors.append(f"{listing.listing_key}: {e}")

            if i % 50 == 0:
                logger.info(f"  Progress: {i}/{len(candidates)} - {result.updated} updated, "
                            f"{result.failed} failed")

        result.duration_seconds = time.time() - start_time
        logger.info(result.summary())
        return result
