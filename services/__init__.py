"""
Listing Sync Services

This package implements the listing pipeline: status classification, the
clean projection, batched syncs into derived tables, geocoding and places
enrichment, and the scheduler that drives them.
"""

from .errors import ConfigError, GeocodingError, QuotaExceeded, ReadFailure, SyncError, WriteFailure
from .listing_models import CleanListing, ListingStatus, RawListing, SoldListing
from .status_classifier import classify, closed_date, is_terminal, build_sold_listing
from .clean_projection import clean, build_clean_listing
from .retry_policy import RetryPolicy, is_retryable_error
from .listing_store import ListingStore, get_supabase_client
from .batch_sync_service import BatchSyncService, BatchUpserter, SyncRun
from .geocoding_service import GeocodingClient, GeocodingService, GeocodeRunResult
from .places_service import PlacesClient, PlacesService, PlaceRecord, PlaceKind, SCHOOLS, TRANSIT, WarmRunResult
from .pipeline_orchestrator import PipelineOrchestrator, PipelineResult, StageResult
from .scheduler_service import SchedulerService, SchedulerState, ScheduleStatus, compute_next_delay

__all__ = [
    # Errors
    'SyncError',
    'ConfigError',
    'ReadFailure',
    'WriteFailure',
    'QuotaExceeded',
    'GeocodingError',

    # Models and pure transforms
    'RawListing',
    'CleanListing',
    'SoldListing',
    'ListingStatus',
    'classify',
    'closed_date',
    'is_terminal',
    'build_sold_listing',
    'clean',
    'build_clean_listing',

    # Sync engine
    'RetryPolicy',
    'is_retryable_error',
    'ListingStore',
    'get_supabase_client',
    'BatchSyncService',
    'BatchUpserter',
    'SyncRun',

    # Enrichment
    'GeocodingClient',
    'GeocodingService',
    'GeocodeRunResult',
    'PlacesClient',
    'PlacesService',
    'PlaceRecord',
    'PlaceKind',
    'SCHOOLS',
    'TRANSIT',
    'WarmRunResult',

    # Orchestration
    'PipelineOrchestrator',
    'PipelineResult',
    'StageResult',
    'SchedulerService',
    'SchedulerState',
    'ScheduleStatus',
    'compute_next_delay',
]

__version__ = '1.0.0'
