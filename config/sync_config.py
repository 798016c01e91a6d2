"""
Sync Configuration for the Listing Sync Pipeline

This module loads configuration from sync_config.yaml and provides
typed access to scheduler, batching, geocoding and places settings.

Every numeric setting can be overridden from the environment and is clamped
to a safe range, so a bad value in .env degrades to a sane default instead
of stopping the worker.

Pipeline Overview:
- Fetch (external collaborator): populates listings_unified
- Sold sync: listings_unified -> sold_listings (terminal statuses only)
- Analytics (external collaborator): refreshes derived tables
- Geocode pass: fills missing coordinates on listings_unified
- Clean backfill: listings_unified -> listings_unified_clean
"""

import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)


def _int_setting(value, default: int, minimum: Optional[int] = None, maximum: Optional[int] = None) -> int:
    """Parse an integer setting, falling back to the default and clamping to [minimum, maximum]."""
    try:
        number = int(str(value).strip()) if value is not None and str(value).strip() != "" else default
    except (TypeError, ValueError):
        logger.warning(f"Invalid integer setting {value!r}, using default {default}")
        number = default
    if minimum is not None:
        number = max(number, minimum)
    if maximum is not None:
        number = min(number, maximum)
    return number


def _bool_setting(value, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _first_env(*names: str) -> Optional[str]:
    """Return the first non-empty environment variable among names."""
    for name in names:
        value = os.getenv(name)
        if value and value.strip():
            return value.strip()
    return None


@dataclass
class SupabaseSettings:
    """Connection settings and table names for the data store"""
    url: Optional[str] = None
    key: Optional[str] = None

    raw_table: str = "listings_unified"
    clean_table: str = "listings_unified_clean"
    sold_table: str = "sold_listings"
    geocode_cache_table: str = "geocode_cache"


@dataclass
class SchedulerSettings:
    """Cadence of the continuous sync loop"""
    interval_minutes: int = 30
    buffer_seconds: int = 90

    def __post_init__(self):
        assert self.interval_minutes > 0, f"Interval must be positive: {self.interval_minutes}"
        assert self.buffer_seconds >= 0, f"Buffer must be non-negative: {self.buffer_seconds}"


@dataclass
class BatchSettings:
    """Read window and upsert chunk sizes for the batched sync engine"""
    page_size: int = 300
    upsert_batch_size: int = 250
    sold_upsert_batch_size: int = 250
    clean_upsert_batch_size: int = 250

    # Retry policy for batch upserts
    max_attempts: int = 3
    backoff_seconds: float = 0.5
    max_logged_row_errors: int = 5


@dataclass
class GeocodeSettings:
    """External geocoding settings"""
    api_key: Optional[str] = None
    endpoint: str = "https://maps.googleapis.com/maps/api/geocode/json"
    batch_size: int = 30
    delay_ms: int = 200
    request_timeout: int = 30
    enabled: bool = True


@dataclass
class PlacesSettings:
    """External places search settings"""
    api_key: Optional[str] = None
    endpoint: str = "https://places.googleapis.com/v1/places:searchNearby"
    radius_km: float = 15.0
    per_group_max: int = 20
    default_limit: int = 20
    max_limit: int = 50
    delay_ms: int = 200
    request_timeout: int = 30
    centers: Optional[str] = None  # "lat,lng|lat,lng" override for the warm job


@dataclass
class SyncConfig:
    """Main configuration class for the listing sync pipeline"""

    supabase: SupabaseSettings = field(default_factory=SupabaseSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    batch: BatchSettings = field(default_factory=BatchSettings)
    geocode: GeocodeSettings = field(default_factory=GeocodeSettings)
    places: PlacesSettings = field(default_factory=PlacesSettings)

    # External collaborators, run as shell commands (empty = skipped)
    fetch_command: Optional[str] = None
    analytics_command: Optional[str] = None

    # Logging
    log_file: str = "listing_sync.log"
    log_level: str = "INFO"

    def as_dict(self) -> Dict:
        """Effective configuration with secrets masked"""
        return {
            'supabase': {
                'url': self.supabase.url,
                'key': '***' if self.supabase.key else None,
                'raw_table': self.supabase.raw_table,
                'clean_table': self.supabase.clean_table,
                'sold_table': self.supabase.sold_table,
                'geocode_cache_table': self.supabase.geocode_cache_table,
            },
            'scheduler': {
                'interval_minutes': self.scheduler.interval_minutes,
                'buffer_seconds': self.scheduler.buffer_seconds,
            },
            'batch': {
                'page_size': self.batch.page_size,
                'upsert_batch_size': self.batch.upsert_batch_size,
                'sold_upsert_batch_size': self.batch.sold_upsert_batch_size,
                'clean_upsert_batch_size': self.batch.clean_upsert_batch_size,
                'max_attempts': self.batch.max_attempts,
                'backoff_seconds': self.batch.backoff_seconds,
            },
            'geocode': {
                'api_key': '***' if self.geocode.api_key else None,
                'batch_size': self.geocode.batch_size,
                'delay_ms': self.geocode.delay_ms,
                'enabled': self.geocode.enabled,
            },
            'places': {
                'api_key': '***' if self.places.api_key else None,
                'radius_km': self.places.radius_km,
                'per_group_max': self.places.per_group_max,
                'delay_ms': self.places.delay_ms,
                'centers': self.places.centers,
            },
            'fetch_command': self.fetch_command,
            'analytics_command': self.analytics_command,
            'log_file': self.log_file,
            'log_level': self.log_level,
        }


def _load_yaml_config() -> Dict:
    """Load configuration from YAML file"""
    config_path = Path(__file__).parent / "sync_config.yaml"

    if not config_path.exists():
        logger.warning(f"Config file not found at {config_path}, using defaults")
        return {}

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f)
            logger.info(f"Loaded configuration from {config_path}")
            return config or {}
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Error loading config from {config_path}: {e}")
        return {}


def _build_config_from_yaml(yaml_config: Dict) -> SyncConfig:
    """Build SyncConfig from YAML configuration with environment variable overrides"""

    tables = yaml_config.get('tables', {})
    scheduler = yaml_config.get('scheduler', {})
    batch = yaml_config.get('batch', {})
    geocode = yaml_config.get('geocode', {})
    places = yaml_config.get('places', {})
    collaborators = yaml_config.get('collaborators', {})
    logging_config = yaml_config.get('logging', {})

    upsert_batch_size = _int_setting(
        os.getenv('UPSERT_BATCH_SIZE', batch.get('upsert_batch_size')), 250, 100, 1000
    )

    google_key = _first_env('GOOGLE_PLACES_API_KEY', 'GOOGLE_MAPS_API_KEY')

    return SyncConfig(
        supabase=SupabaseSettings(
            url=_first_env('SUPABASE_URL'),
            key=_first_env('SUPABASE_SERVICE_ROLE_KEY', 'SUPABASE_KEY'),
            raw_table=tables.get('raw', "listings_unified"),
            clean_table=tables.get('clean', "listings_unified_clean"),
            sold_table=tables.get('sold', "sold_listings"),
            geocode_cache_table=tables.get('geocode_cache', "geocode_cache"),
        ),
        scheduler=SchedulerSettings(
            interval_minutes=_int_setting(
                os.getenv('SYNC_INTERVAL_MINUTES', scheduler.get('interval_minutes')), 30, 1, 1440
            ),
            buffer_seconds=_int_setting(
                os.getenv('SYNC_BUFFER_SECONDS', scheduler.get('buffer_seconds')), 90, 0, 3600
            ),
        ),
        batch=BatchSettings(
            page_size=_int_setting(os.getenv('PAGE_SIZE', batch.get('page_size')), 300, 50, 1000),
            upsert_batch_size=upsert_batch_size,
            sold_upsert_batch_size=_int_setting(
                os.getenv('SOLD_UPSERT_BATCH_SIZE', batch.get('sold_upsert_batch_size')),
                upsert_batch_size, 100, 1000
            ),
            clean_upsert_batch_size=_int_setting(
                os.getenv('CLEAN_UPSERT_BATCH_SIZE', batch.get('clean_upsert_batch_size')),
                upsert_batch_size, 100, 1000
            ),
            max_attempts=_int_setting(batch.get('max_attempts'), 3, 1, 10),
            backoff_seconds=float(batch.get('backoff_seconds', 0.5)),
            max_logged_row_errors=_int_setting(batch.get('max_logged_row_errors'), 5, 0, 1000),
        ),
        geocode=GeocodeSettings(
            api_key=_first_env('GEOCODING_API_KEY') or google_key,
            endpoint=geocode.get('endpoint', "https://maps.googleapis.com/maps/api/geocode/json"),
            batch_size=_int_setting(os.getenv('GEOCODE_BATCH_SIZE', geocode.get('batch_size')), 30, 1, 5000),
            delay_ms=_int_setting(os.getenv('GEOCODE_DELAY_MS', geocode.get('delay_ms')), 200, 100),
            request_timeout=_int_setting(geocode.get('request_timeout'), 30, 5, 120),
            enabled=_bool_setting(os.getenv('SYNC_GEOCODE_ENABLED', geocode.get('enabled')), True),
        ),
        places=PlacesSettings(
            api_key=google_key,
            endpoint=places.get('endpoint', "https://places.googleapis.com/v1/places:searchNearby"),
            radius_km=float(places.get('radius_km', 15.0)),
            per_group_max=_int_setting(places.get('per_group_max'), 20, 1, 20),
            default_limit=_int_setting(places.get('default_limit'), 20, 1, 50),
            max_limit=_int_setting(places.get('max_limit'), 50, 1, 50),
            delay_ms=_int_setting(os.getenv('PLACES_DELAY_MS', places.get('delay_ms')), 200, 0),
            request_timeout=_int_setting(places.get('request_timeout'), 30, 5, 120),
            centers=os.getenv('GOOGLE_PLACES_CENTERS') or places.get('centers'),
        ),
        fetch_command=_first_env('FETCH_COMMAND') or collaborators.get('fetch_command') or None,
        analytics_command=_first_env('ANALYTICS_COMMAND') or collaborators.get('analytics_command') or None,
        log_file=logging_config.get('log_file', "listing_sync.log"),
        log_level=os.getenv("SYNC_LOG_LEVEL", logging_config.get('log_level', "INFO")),
    )


# Global configuration instance
_config: Optional[SyncConfig] = None


def get_config(reload: bool = False) -> SyncConfig:
    """
    Get the global configuration instance.

    Args:
        reload: If True, reload configuration from YAML file and environment

    Returns:
        SyncConfig instance
    """
    global _config
    if _config is None or reload:
        yaml_config = _load_yaml_config()
        _config = _build_config_from_yaml(yaml_config)
    return _config


def reload_config() -> SyncConfig:
    """Force reload configuration from YAML file and environment"""
    return get_config(reload=True)


def set_config(config: Optional[SyncConfig]) -> None:
    """Set the global configuration instance (useful for testing)"""
    global _config
    _config = config


def build_config(yaml_config: Optional[Dict] = None) -> SyncConfig:
    """Build a fresh configuration without touching the global instance"""
    return _build_config_from_yaml(yaml_config or {})
