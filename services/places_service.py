"""
Places Enrichment Service

Nearby points of interest (schools, transit) around a coordinate, served
cache-first:

1. radius rpc against the places cache; any hit is returned as-is
2. on a miss, one Places API searchNearby call per type group, concurrently
3. normalize, drop places without coordinates, dedup (first seen wins)
4. haversine distance, radius filter (inclusive), sort, truncate
5. category label by fixed priority
6. background write-back to the cache table

The same normalization backs the bulk warm job, which sweeps a table of
metro-area centers and upserts everything it finds.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import requests
from supabase import Client

from config.metro_centers import MetroCenter, parse_centers
from config.sync_config import PlacesSettings, SyncConfig, get_config
from .batch_sync_service import BatchUpserter, SyncRun
from .errors import ConfigError, QuotaExceeded
from .listing_models import utc_now_iso
from .listing_store import ListingStore
from .retry_policy import RetryPolicy

logger = logging.getLogger(__name__)

FIELD_MASK = "places.id,places.displayName,places.formattedAddress,places.location,places.types"
EARTH_RADIUS_KM = 6371.0


@dataclass(frozen=True)
class PlaceKind:
    """
    One family of points of interest.

    Attributes:
        name: CLI / log name ("schools", "transit")
        table: Cache table written by write-back and the warm job
        rpc: Radius lookup function on the cache
        category_column: Column holding the category code
        type_groups: One external call per group in the on-demand fan-out
        warm_types: Included types for the bulk warm job (single call per center)
        category_priority: Type tags checked in order; first match is the category
        default_category: Category when no tag matches
        labels: Category code -> user-facing label
        default_label: Label for unknown categories
        default_name: Name used when the external place has none
    """
    name: str
    table: str
    rpc: str
    category_column: str
    type_groups: Tuple[Tuple[str, ...], ...]
    warm_types: Tuple[str, ...]
    category_priority: Tuple[str, ...]
    default_category: str
    labels: Dict[str, str]
    default_label: str
    default_name: str

    def category_for_types(self, types: Optional[Iterable[str]]) -> str:
        tags = set(types or [])
        for candidate in self.category_priority:
            if candidate in tags:
                return candidate
        return self.default_category

    def label_for_category(self, category: Optional[str]) -> str:
        return self.labels.get(category or '', self.default_label)

    def label_for_types(self, types: Optional[Iterable[str]]) -> str:
        return self.label_for_category(self.category_for_types(types))


SCHOOLS = PlaceKind(
    name='schools',
    table='places_schools',
    rpc='places_schools_near',
    category_column='level',
    type_groups=(('school',), ('primary_school',), ('secondary_school',), ('university',), ('preschool',)),
    warm_types=('preschool', 'primary_school', 'secondary_school', 'school', 'university',
                'educational_institution'),
    category_priority=('preschool', 'primary_school', 'secondary_school', 'university'),
    default_category='school',
    labels={
        'preschool': 'Preschool',
        'primary_school': 'Elementary',
        'secondary_school': 'High School',
        'university': 'University / College',
    },
    default_label='School',
    default_name='School',
)

TRANSIT = PlaceKind(
    name='transit',
    table='places_transport',
    rpc='places_transport_near',
    category_column='transport_type',
    type_groups=(('subway_station',), ('train_station',), ('bus_station',), ('light_rail_station',),
                 ('transit_station',), ('airport',)),
    warm_types=('transit_station', 'bus_station', 'train_station', 'subway_station', 'light_rail_station',
                'bus_stop'),
    category_priority=('subway_station', 'light_rail_station', 'train_station', 'bus_station', 'airport',
                       'bus_stop'),
    default_category='transit_station',
    labels={
        'subway_station': 'Subway',
        'light_rail_station': 'Light Rail',
        'train_station': 'Train',
        'bus_station': 'Bus',
        'bus_stop': 'Bus',
        'airport': 'Airport',
    },
    default_label='Transit',
    default_name='Transit Stop',
)

PLACE_KINDS: Dict[str, PlaceKind] = {SCHOOLS.name: SCHOOLS, TRANSIT.name: TRANSIT}


def get_place_kind(name: str) -> PlaceKind:
    try:
        return PLACE_KINDS[name]
    except KeyError:
        raise ValueError(f"Unknown place kind {name!r}; expected one of {sorted(PLACE_KINDS)}")


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in km, rounded to 0.1 km"""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (math.sin(d_lat / 2) ** 2
         + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2)
    distance = EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return round(distance, 1)


def parse_formatted_address(formatted: Optional[str]) -> Tuple[Optional[str], Optional[str], Optional[str]]:
    """
    Split "123 Main St, Toronto, ON M5V 1A1, Canada"-style strings.

    Returns:
        (address, city, province): first part, second-to-last part, last part
    """
    if not formatted:
        return None, None, None
    parts = [part.strip() for part in str(formatted).split(',')]
    address = parts[0] or None
    city = (parts[-2] or None) if len(parts) >= 2 else None
    province = parts[-1] or None
    return address, city, province


def extract_place_id(raw_id: Any) -> Optional[str]:
    """External id with any "places/" prefix removed"""
    if not raw_id:
        return None
    value = str(raw_id)
    if value.startswith('places/'):
        value = value[len('places/'):]
    return value or None


def _coordinate(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _display_name(place: Dict[str, Any], default: str) -> str:
    name = place.get('displayName')
    if isinstance(name, dict):
        name = name.get('text')
    return str(name) if name else default


@dataclass
class PlaceRecord:
    """Normalized point of interest"""
    place_id: str
    name: str
    category: str
    label: str
    lat: float
    lng: float
    address: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    distance_km: Optional[float] = None
    types: List[str] = field(default_factory=list)
    updated_at: Optional[str] = None

    def to_row(self, kind: PlaceKind) -> Dict[str, Any]:
        """Cache-table row"""
        return {
            'place_id': self.place_id,
            'name': self.name,
            kind.category_column: self.category,
            'address': self.address,
            'city': self.city,
            'province': self.province,
            'lat': self.lat,
            'lng': self.lng,
            'types_json': list(self.types) if self.types else None,
            'updated_at': self.updated_at or utc_now_iso(),
        }

    def to_response(self) -> Dict[str, Any]:
        return {
            'id': self.place_id,
            'name': self.name,
            'type': self.label,
            'address': self.address,
            'city': self.city,
            'province': self.province,
            'lat': self.lat,
            'lng': self.lng,
            'distance_km': self.distance_km,
        }

    @classmethod
    def from_cache_row(cls, row: Dict[str, Any], kind: PlaceKind) -> Optional['PlaceRecord']:
        lat, lng = _coordinate(row.get('lat')), _coordinate(row.get('lng'))
        if lat is None or lng is None:
            return None
        category = row.get(kind.category_column) or kind.default_category
        distance = _coordinate(row.get('distance_km'))
        return cls(
            place_id=str(row.get('place_id') or f"{kind.name}-{lat}-{lng}"),
            name=row.get('name') or kind.default_name,
            category=category,
            label=kind.label_for_category(category),
            lat=lat,
            lng=lng,
            address=row.get('address'),
            city=row.get('city'),
            province=row.get('province'),
            distance_km=distance,
            types=list(row.get('types_json') or []),
            updated_at=row.get('updated_at'),
        )


def normalize_place(
    place: Dict[str, Any],
    kind: PlaceKind,
    origin: Optional[Tuple[float, float]] = None,
) -> Optional[PlaceRecord]:
    """
    Normalize one searchNearby result.

    Args:
        place: Raw place from the external service
        kind: Place kind driving category and default names
        origin: (lat, lng) to measure distance from, if any

    Returns:
        PlaceRecord, or None when the place has no usable coordinates
    """
    location = place.get('location') or {}
    lat = _coordinate(location.get('latitude'))
    lng = _coordinate(location.get('longitude'))
    if lat is None or lng is None:
        return None

    types = [str(t) for t in (place.get('types') or [])]
    category = kind.category_for_types(types)
    address, city, province = parse_formatted_address(place.get('formattedAddress'))

    return PlaceRecord(
        place_id=extract_place_id(place.get('id')) or f"{kind.name}-{lat}-{lng}",
        name=_display_name(place, kind.default_name),
        category=category,
        label=kind.label_for_category(category),
        lat=lat,
        lng=lng,
        address=address,
        city=city,
        province=province,
        distance_km=haversine_km(origin[0], origin[1], lat, lng) if origin else None,
        types=types,
    )


def dedup_places(places: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Drop repeats by external id (or coordinate pair when the id is missing); first seen wins"""
    seen: Set[str] = set()
    unique = []
    for place in places:
        location = place.get('location') or {}
        lat = _coordinate(location.get('latitude'))
        lng = _coordinate(location.get('longitude'))
        if lat is None or lng is None:
            continue
        key = extract_place_id(place.get('id')) or f"{lat},{lng}"
        if key in seen:
            continue
        seen.add(key)
        unique.append(place)
    return unique


def rank_places(records: Iterable[PlaceRecord], radius_km: float, limit: int) -> List[PlaceRecord]:
    """Keep records within radius_km (inclusive), nearest first, at most limit"""
    within = [r for r in records if r.distance_km is not None and r.distance_km <= radius_km]
    within.sort(key=lambda r: r.distance_km)
    return within[:limit]


class PlacesClient:
    """
    Places API (New) searchNearby client.

    Calls run concurrently on worker threads, so without an injected
    session each call opens and closes its own.
    """

    def __init__(self, settings: PlacesSettings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.session = session

    def search_nearby(
        self,
        lat: float,
        lng: float,
        included_types: Sequence[str],
        max_results: int = 20,
    ) -> List[Dict[str, Any]]:
        """
        One searchNearby call.

        Raises:
            ConfigError: when no API key is configured
            QuotaExceeded: on HTTP 429
            requests.HTTPError: on any other non-2xx response
        """
        if not self.settings.api_key:
            raise ConfigError("GOOGLE_PLACES_API_KEY (or GOOGLE_MAPS_API_KEY) is required")

        if self.session is not None:
            return self._post(self.session, lat, lng, included_types, max_results)
        with requests.Session() as session:
            return self._post(session, lat, lng, included_types, max_results)

    def _post(
        self,
        session: requests.Session,
        lat: float,
        lng: float,
        included_types: Sequence[str],
        max_results: int,
    ) -> List[Dict[str, Any]]:
        response = session.post(
            self.settings.endpoint,
            headers={
                'Content-Type': 'application/json',
                'X-Goog-Api-Key': self.settings.api_key,
                'X-Goog-FieldMask': FIELD_MASK,
            },
            json={
                'locationRestriction': {
                    'circle': {
                        'center': {'latitude': lat, 'longitude': lng},
                        'radius': self.settings.radius_km * 1000,
                    },
                },
                'includedTypes': list(included_types),
                'maxResultCount': max_results,
            },
            timeout=self.settings.request_timeout,
        )
        if response.status_code == 429:
            raise QuotaExceeded("Places API rate limit hit (HTTP 429)")
        response.raise_for_status()
        return response.json().get('places') or []


@dataclass
class WarmRunResult:
    """Result of one bulk cache warm job"""
    centers: int = 0
    api_calls: int = 0
    failed_calls: int = 0
    unique_places: Dict[str, int] = field(default_factory=dict)
    runs: Dict[str, SyncRun] = field(default_factory=dict)
    quota_exhausted: bool = False
    duration_seconds: float = 0.0

    @property
    def exit_code(self) -> int:
        if self.quota_exhausted:
            return 1
        if self.failed_calls or any(run.failed for run in self.runs.values()):
            return 2
        return 0


class PlacesService:
    """
    Service for nearby schools / transit, cache first
    """

    def __init__(
        self,
        supabase_client: Client,
        config: Optional[SyncConfig] = None,
        client: Optional[PlacesClient] = None,
        store: Optional[ListingStore] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.supabase = supabase_client
        self.config = config or get_config()
        self.settings = self.config.places
        self.client = client or PlacesClient(self.settings)
        self.store = store or ListingStore(supabase_client, self.config.supabase)
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=self.config.batch.max_attempts,
            backoff_seconds=self.config.batch.backoff_seconds,
            sleep=sleep,
        )
        self.sleep = sleep
        self._pending_writes: Set[asyncio.Task] = set()

    def clamp_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.settings.default_limit
        return min(self.settings.max_limit, max(1, int(limit)))

    async def nearby(self, kind: PlaceKind, lat: float, lng: float, limit: Optional[int] = None) -> List[PlaceRecord]:
        """
        Points of interest near (lat, lng).

        Args:
            kind: SCHOOLS or TRANSIT
            lat: Latitude of the target
            lng: Longitude of the target
            limit: Result cap (clamped to 1..max_limit, default 20)

        Returns:
            PlaceRecords nearest first

        Raises:
            ValueError: on out-of-range coordinates
            ConfigError: on a cache miss with no API key configured
            QuotaExceeded: when a type group hits the Places rate limit
        """
        if not (-90 <= lat <= 90 and -180 <= lng <= 180):
            raise ValueError(f"Invalid lat or lng: {lat}, {lng}")
        limit = self.clamp_limit(limit)

        cached = await self._from_cache(kind, lat, lng, limit)
        if cached:
            logger.info(f"{kind.name} near {lat:.4f},{lng:.4f}: {len(cached)} from cache")
            return cached

        if not self.settings.api_key:
            raise ConfigError(f"{kind.name} search not configured: GOOGLE_PLACES_API_KEY is missing")

        raw_places = await self._fan_out(kind, lat, lng)
        records = [normalize_place(place, kind, origin=(lat, lng)) for place in dedup_places(raw_places)]
        ranked = rank_places([r for r in records if r], self.settings.radius_km, limit)
        logger.info(f"{kind.name} near {lat:.4f},{lng:.4f}: {len(raw_places)} fetched, {len(ranked)} kept")

        if ranked:
            self._schedule_write_back(kind, ranked)
        return ranked

    async def _from_cache(self, kind: PlaceKind, lat: float, lng: float, limit: int) -> List[PlaceRecord]:
        try:
            rows = await self.store.rpc(kind.rpc, {
                'center_lat': lat,
                'center_lng': lng,
                'radius_km': self.settings.radius_km,
                'max_count': limit,
            })
        except Exception as e:
            logger.warning(f"{kind.rpc} lookup failed, falling back to live search: {e}")
            return []
        records = [PlaceRecord.from_cache_row(row, kind) for row in rows]
        return [r for r in records if r][:limit]

    async def _search_group(self, kind: PlaceKind, lat: float, lng: float, types: Sequence[str]) -> List[Dict]:
        try:
            return await asyncio.to_thread(
                self.client.search_nearby, lat, lng, types, self.settings.per_group_max
            )
        except QuotaExceeded:
            raise
        except Exception as e:
            logger.warning(f"{kind.name} search for {'/'.join(types)} failed: {e}")
            return []

    async def _fan_out(self, kind: PlaceKind, lat: float, lng: float) -> List[Dict]:
        groups = await asyncio.gather(*(
            self._search_group(kind, lat, lng, types) for types in kind.type_groups
        ))
        return [place for group in groups for place in group]

    def _schedule_write_back(self, kind: PlaceKind, records: List[PlaceRecord]) -> asyncio.Task:
        rows = [record.to_row(kind) for record in records]
        task = asyncio.create_task(self.store.upsert(kind.table, rows, on_conflict='place_id'))
        self._pending_writes.add(task)

        def _on_done(done: asyncio.Task) -> None:
            self._pending_writes.discard(done)
            if done.cancelled():
                logger.warning(f"{kind.table} write-back cancelled")
                return
            error = done.exception()
            if error is not None:
                logger.warning(f"{kind.table} write-back failed: {error}")
            else:
                logger.debug(f"{kind.table} write-back saved {len(rows)} rows")

        task.add_done_callback(_on_done)
        return task

    async def wait_for_write_backs(self) -> None:
        """Let pending cache write-backs finish (used before the event loop closes)"""
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)

    async def warm_cache(
        self,
        kinds: Sequence[PlaceKind] = (SCHOOLS, TRANSIT),
        centers: Optional[Sequence[MetroCenter]] = None,
    ) -> WarmRunResult:
        """
        Bulk-populate the places caches around every metro center.

        One search per center per kind, with the rate-limit delay after each
        call. Results are deduplicated by place_id across centers, then
        upserted in batches.

        Args:
            kinds: Place kinds to warm
            centers: Search centers (defaults to GOOGLE_PLACES_CENTERS or the Canadian table)

        Returns:
            WarmRunResult
        """
        if not self.settings.api_key:
            raise ConfigError("GOOGLE_PLACES_API_KEY (or GOOGLE_MAPS_API_KEY) is required for the warm job")

        start_time = time.time()
        centers = list(centers) if centers is not None else parse_centers(self.settings.centers)
        result = WarmRunResult(centers=len(centers))
        collected: Dict[str, Dict[str, PlaceRecord]] = {kind.name: {} for kind in kinds}

        logger.info(f"Warming {', '.join(k.name for k in kinds)} for {len(centers)} centers "
                    f"(radius {self.settings.radius_km} km)")

        for center in centers:
            if result.quota_exhausted:
                break
            for kind in kinds:
                logger.info(f"Fetching {kind.name} near {center.latitude:.2f},{center.longitude:.2f} "
                            f"({center.name})...")
                result.api_calls += 1
                try:
                    places = await asyncio.to_thread(
                        self.client.search_nearby,
                        center.latitude, center.longitude, kind.warm_types, self.settings.per_group_max,
                    )
                except QuotaExceeded as e:
                    logger.error(f"Aborting warm job: {e}")
                    result.quota_exhausted = True
                    break
                except Exception as e:
                    result.failed_calls += 1
                    logger.error(f"  {kind.name} error: {e}")
                    places = []
                finally:
                    await self.sleep(self.settings.delay_ms / 1000)

                bucket = collected[kind.name]
                for place in places:
                    record = normalize_place(place, kind)
                    if record is not None:
                        bucket.setdefault(record.place_id, record)
                logger.info(f"  {kind.name} this center: {len(places)}")

        for kind in kinds:
            records = list(collected[kind.name].values())
            result.unique_places[kind.name] = len(records)
            run = SyncRun(name=f"{kind.table} warm")
            if records:
                upserter = BatchUpserter(
                    self.store,
                    kind.table,
                    on_conflict='place_id',
                    batch_size=self.config.batch.upsert_batch_size,
                    retry_policy=self.retry_policy,
                    max_logged_row_errors=self.config.batch.max_logged_row_errors,
                )
                now = utc_now_iso()
                rows = []
                for record in records:
                    record.updated_at = now
                    rows.append(record.to_row(kind))
                await upserter.write(rows, run)
                logger.info(f"Saved to {kind.table}: {run.succeeded} ({run.failed} failed)")
            else:
                logger.info(f"No {kind.name} to save.")
            result.runs[kind.name] = run

        result.duration_seconds = time.time() - start_time
        return result
