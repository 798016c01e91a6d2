"""
Configuration module for the listing sync pipeline.
"""

from .sync_config import (
    SyncConfig,
    SupabaseSettings,
    SchedulerSettings,
    BatchSettings,
    GeocodeSettings,
    PlacesSettings,
    build_config,
    get_config,
    reload_config,
    set_config,
)
from .metro_centers import MetroCenter, CANADA_METRO_CENTERS, parse_centers

__all__ = [
    'SyncConfig',
    'SupabaseSettings',
    'SchedulerSettings',
    'BatchSettings',
    'GeocodeSettings',
    'PlacesSettings',
    'build_config',
    'get_config',
    'reload_config',
    'set_config',
    'MetroCenter',
    'CANADA_METRO_CENTERS',
    'parse_centers',
]
