"""
Listing Store

Thin adapter over the Supabase client for the tables the pipeline reads
and writes: the unified listing store, the derived stores (sold, clean),
the geocode cache, and the places cache rpcs.
"""

import logging
import os
import re
from typing import Any, Dict, List, Optional

from supabase import Client, create_client

from config.sync_config import SupabaseSettings
from .errors import ConfigError, ReadFailure, WriteFailure
from .listing_models import PUBLIC_PAYLOAD_COLUMN, RAW_LISTING_COLUMNS, Payload, utc_now_iso
from .retry_policy import is_retryable_error

logger = logging.getLogger(__name__)


def get_supabase_client(settings: Optional[SupabaseSettings] = None) -> Client:
    """Create a Supabase client from settings or the environment"""
    url = settings.url if settings else os.getenv('SUPABASE_URL')
    key = settings.key if settings else (os.getenv('SUPABASE_SERVICE_ROLE_KEY') or os.getenv('SUPABASE_KEY'))

    if not url or not key:
        raise ConfigError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY (or SUPABASE_KEY) are required")

    return create_client(url, key)


def normalize_address_key(address: str) -> str:
    """Cache key for an address: lower-cased with whitespace collapsed"""
    return re.sub(r"\s+", " ", address.strip().lower())


class ListingStore:
    """
    Data-store operations used by the sync services.

    Reads raise ReadFailure; writes raise WriteFailure carrying whether the
    underlying error was transient, which the retry policy checks.
    """

    def __init__(self, supabase_client: Client, settings: Optional[SupabaseSettings] = None):
        self.supabase = supabase_client
        self.settings = settings or SupabaseSettings()

    @property
    def raw_table(self) -> str:
        return self.settings.raw_table

    async def fetch_page(
        self,
        table: str,
        offset: int,
        limit: int,
        columns: str = RAW_LISTING_COLUMNS,
    ) -> List[Dict]:
        """
        Read one window of rows, most recently updated first.

        Args:
            table: Table to read
            offset: Zero-based row offset
            limit: Window size
            columns: Columns to select

        Returns:
            List of row dictionaries (shorter than limit at end of data)

        Raises:
            ReadFailure: on any store error
        """
        try:
            response = (
                self.supabase.table(table)
                .select(columns)
                .order('updated_at', desc=True)
                .order('listing_key')
                .range(offset, offset + limit - 1)
                .execute()
            )
        except Exception as e:
            raise ReadFailure(f"Failed to read {table} at offset {offset}: {e}", table=table, offset=offset) from e

        return response.data or []

    async def upsert(self, table: str, rows: List[Dict], on_conflict: str = 'listing_key') -> None:
        """
        Insert-or-replace rows keyed by on_conflict.

        Raises:
            WriteFailure: on any store error, flagged retryable for
                transient network/timeout errors
        """
        try:
            self.supabase.table(table).upsert(rows, on_conflict=on_conflict).execute()
        except Exception as e:
            raise WriteFailure(f"Upsert into {table} failed: {e}", retryable=is_retryable_error(e)) from e

    async def update_public_payload(self, listing_key: str, payload: Payload) -> None:
        """Replace the public payload of one listing and bump updated_at"""
        try:
            self.supabase.table(self.raw_table).update({
                PUBLIC_PAYLOAD_COLUMN: payload,
                'updated_at': utc_now_iso(),
            }).eq('listing_key', listing_key).execute()
        except Exception as e:
            raise WriteFailure(f"Update of {listing_key} in {self.raw_table} failed: {e}",
                               retryable=is_retryable_error(e)) from e

    async def rpc(self, function_name: str, params: Dict[str, Any]) -> List[Dict]:
        response = self.supabase.rpc(function_name, params).execute()
        return response.data or []

    async def get_cached_geocode(self, address: str) -> Optional[Dict]:
        """
        Cached coordinates for an address.

        Returns:
            {'lat': float, 'lng': float} on a hit, {} for an address the
            geocoder could not resolve, None on a miss or cache error
        """
        try:
            response = (
                self.supabase.table(self.settings.geocode_cache_table)
                .select('address_key, lat, lng')
                .eq('address_key', normalize_address_key(address))
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.warning(f"Geocode cache lookup failed: {e}")
            return None

        rows = response.data or []
        if not rows:
            return None
        if rows[0].get('lat') is None or rows[0].get('lng') is None:
            return {}
        return {'lat': float(rows[0]['lat']), 'lng': float(rows[0]['lng'])}

    async def put_cached_geocode(self, address: str, lat: Optional[float], lng: Optional[float]) -> None:
        """Best-effort write of a lookup to the geocode cache; null coordinates mark no result"""
        try:
            self.supabase.table(self.settings.geocode_cache_table).upsert({
                'address_key': normalize_address_key(address),
                'address': address,
                'lat': lat,
                'lng': lng,
                'updated_at': utc_now_iso(),
            }, on_conflict='address_key').execute()
        except Exception as e:
            logger.warning(f"Geocode cache write failed for {address[:60]!r}: {e}")
