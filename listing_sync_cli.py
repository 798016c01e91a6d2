#!/usr/bin/env python3
"""
CLI Interface for the Listing Sync Pipeline

Provides commands for:
- Running the full pipeline once, or continuously as a daemon
- Running individual stages (sold sync, clean backfill, geocoding)
- Querying and warming the nearby places caches
- Viewing the effective configuration

Usage:
    python listing_sync_cli.py run
    python listing_sync_cli.py daemon --interval-minutes 30
    python listing_sync_cli.py sync-sold
    python listing_sync_cli.py backfill-clean
    python listing_sync_cli.py geocode --limit 30
    python listing_sync_cli.py nearby transit 43.65 -79.38
    python listing_sync_cli.py warm-places --kind schools
    python listing_sync_cli.py show-config
"""

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from datetime import datetime

from dotenv import load_dotenv
from supabase import Client

from config.sync_config import SyncConfig, get_config, set_config
from services.batch_sync_service import BatchSyncService, SyncRun
from services.errors import SyncError
from services.geocoding_service import GeocodingService
from services.listing_store import get_supabase_client
from services.pipeline_orchestrator import EXIT_FATAL, PipelineOrchestrator
from services.places_service import PLACE_KINDS, PlacesService, get_place_kind
from services.scheduler_service import SchedulerService

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


def setup_logging(config: SyncConfig):
    """Console + file logging at the configured level."""
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(config.log_file)
        ]
    )


def create_client_or_exit(config: SyncConfig) -> Client:
    try:
        return get_supabase_client(config.supabase)
    except SyncError as e:
        print(f"Error: {e}")
        sys.exit(EXIT_FATAL)


def print_sync_run(run: SyncRun):
    print("\n" + "-" * 60)
    print(f"RESULTS: {run.name}")
    print("-" * 60)
    print(f"Rows Read: {run.rows_read}")
    print(f"Rows Selected: {run.rows_selected}")
    print(f"Upserted: {run.succeeded}")
    print(f"Failed: {run.failed}")
    print(f"Retries: {len(run.retry_delays)}")
    print(f"Batches Fell Back To Per-Row: {run.batches_fallen_back}")
    print(f"Duration: {run.duration_ms / 1000:.1f} seconds")
    if run.errors:
        print("\nErrors:")
        for error in run.errors:
            print(f"  - {error}")
    print()


async def cmd_run(args) -> int:
    """Run the full pipeline once."""
    config = get_config()
    print(f"\n{'=' * 60}")
    print("RUNNING LISTING PIPELINE")
    print(f"{'=' * 60}")
    print(f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print()

    orchestrator = PipelineOrchestrator(create_client_or_exit(config), config)
    result = await orchestrator.run_pipeline(listing_limit=args.limit)

    print("\n" + "-" * 60)
    print(f"{'Stage':<18} {'Status':<10} Summary")
    print("-" * 60)
    for stage in result.stages:
        status = 'skipped' if stage.skipped else ('✅ OK' if stage.exit_code == 0 else f'❌ {stage.exit_code}')
        print(f"{stage.name:<18} {status:<10} {stage.error_message or stage.summary}")
    print("-" * 60)
    print(f"Exit Code: {result.exit_code}  Duration: {result.duration_seconds:.1f} seconds\n")
    return result.exit_code


async def cmd_daemon(args) -> int:
    """Run the pipeline continuously."""
    config = get_config()
    scheduler_settings = dataclasses.replace(
        config.scheduler,
        interval_minutes=args.interval_minutes or config.scheduler.interval_minutes,
        buffer_seconds=args.buffer_seconds if args.buffer_seconds is not None else config.scheduler.buffer_seconds,
    )
    config = dataclasses.replace(config, scheduler=scheduler_settings)
    set_config(config)

    print("\n" + "=" * 60)
    print("STARTING LISTING SYNC DAEMON")
    print("=" * 60)
    print(f"Interval: {scheduler_settings.interval_minutes} minutes")
    print(f"Buffer: {scheduler_settings.buffer_seconds} seconds")
    print(f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("\nPress Ctrl+C to stop...")
    print()

    orchestrator = PipelineOrchestrator(create_client_or_exit(config), config)
    scheduler = SchedulerService(orchestrator, config)
    status = await scheduler.run_continuous(max_runs=args.max_runs)
    return status.last_exit_code or 0


async def cmd_sync_sold(args) -> int:
    """Sync terminal listings into sold_listings."""
    config = get_config()
    service = BatchSyncService(create_client_or_exit(config), config)
    run = await service.sync_sold_listings()
    print_sync_run(run)
    return run.exit_code


async def cmd_backfill_clean(args) -> int:
    """Rebuild listings_unified_clean."""
    config = get_config()
    service = BatchSyncService(create_client_or_exit(config), config)
    run = await service.backfill_clean_listings()
    print_sync_run(run)
    return run.exit_code


async def cmd_geocode(args) -> int:
    """One geocoding pass over listings missing coordinates."""
    config = get_config()
    if not config.geocode.api_key:
        print("Error: set GEOCODING_API_KEY (or GOOGLE_PLACES_API_KEY / GOOGLE_MAPS_API_KEY)")
        return EXIT_FATAL

    service = GeocodingService(create_client_or_exit(config), config)
    result = await service.run_geocode_pass(limit=args.limit)

    print("\n" + "-" * 60)
    print("RESULTS: geocode")
    print("-" * 60)
    print(f"Candidates: {result.candidates}")
    print(f"From Cache: {result.cache_hits}")
    print(f"Geocoded: {result.geocoded}")
    print(f"No Result: {result.no_result}")
    print(f"Failed: {result.failed}")
    if result.error_message:
        print(f"Aborted: {result.error_message}")
    print()
    return result.exit_code


async def cmd_nearby(args) -> int:
    """Nearby schools or transit, printed as JSON."""
    config = get_config()
    service = PlacesService(create_client_or_exit(config), config)
    try:
        records = await service.nearby(get_place_kind(args.kind), args.lat, args.lng, args.limit)
    except (ValueError, SyncError) as e:
        print(f"Error: {e}")
        return EXIT_FATAL
    finally:
        await service.wait_for_write_backs()

    print(json.dumps([record.to_response() for record in records], indent=2, ensure_ascii=False))
    return 0


async def cmd_warm_places(args) -> int:
    """Populate the places caches around every metro center."""
    config = get_config()
    kinds = list(PLACE_KINDS.values()) if args.kind == 'all' else [get_place_kind(args.kind)]
    service = PlacesService(create_client_or_exit(config), config)
    try:
        result = await service.warm_cache(kinds)
    except SyncError as e:
        print(f"Error: {e}")
        return EXIT_FATAL

    print("\n" + "-" * 60)
    print("RESULTS: warm-places")
    print("-" * 60)
    print(f"Centers: {result.centers}")
    print(f"API Calls: {result.api_calls} ({result.failed_calls} failed)")
    for name, count in result.unique_places.items():
        run = result.runs.get(name)
        print(f"{name}: {count} unique, {run.succeeded if run else 0} saved")
    if result.quota_exhausted:
        print("Aborted: rate limit hit")
    print(f"Duration: {result.duration_seconds:.1f} seconds\n")
    return result.exit_code


async def cmd_show_config(args) -> int:
    """Print the effective configuration (secrets masked)."""
    print(json.dumps(get_config().as_dict(), indent=2))
    return 0


def main():
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description='Listing Sync Pipeline CLI',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s run                               Run the full pipeline once
  %(prog)s run --limit 500                   Pass LISTING_LIMIT=500 to the fetch step
  %(prog)s daemon --interval-minutes 15      Run every 15 minutes
  %(prog)s sync-sold                         Sync sold / terminal listings only
  %(prog)s backfill-clean                    Rebuild listings_unified_clean
  %(prog)s geocode --limit 100               Geocode up to 100 listings
  %(prog)s nearby schools 43.65 -79.38       Schools near downtown Toronto
  %(prog)s warm-places --kind transit        Pre-warm the transit cache
        """
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    run_parser = subparsers.add_parser('run', help='Run the full pipeline once')
    run_parser.add_argument('--limit', type=int, help='Listing limit passed to the fetch command')
    run_parser.set_defaults(func=cmd_run)

    daemon_parser = subparsers.add_parser('daemon', help='Run as continuous daemon')
    daemon_parser.add_argument('--interval-minutes', type=int, help='Minimum minutes between run starts')
    daemon_parser.add_argument('--buffer-seconds', type=int, help='Minimum seconds between runs')
    daemon_parser.add_argument('--max-runs', type=int, help='Stop after this many runs')
    daemon_parser.set_defaults(func=cmd_daemon)

    sold_parser = subparsers.add_parser('sync-sold', help='Sync terminal listings into sold_listings')
    sold_parser.set_defaults(func=cmd_sync_sold)

    clean_parser = subparsers.add_parser('backfill-clean', help='Rebuild listings_unified_clean')
    clean_parser.set_defaults(func=cmd_backfill_clean)

    geocode_parser = subparsers.add_parser('geocode', help='Geocode listings missing coordinates')
    geocode_parser.add_argument('--limit', type=int, help='Maximum listings to process')
    geocode_parser.set_defaults(func=cmd_geocode)

    nearby_parser = subparsers.add_parser('nearby', help='Nearby schools or transit as JSON')
    nearby_parser.add_argument('kind', choices=sorted(PLACE_KINDS), help='Place kind')
    nearby_parser.add_argument('lat', type=float, help='Latitude')
    nearby_parser.add_argument('lng', type=float, help='Longitude')
    nearby_parser.add_argument('--limit', type=int, default=20, help='Result count (1-50)')
    nearby_parser.set_defaults(func=cmd_nearby)

    warm_parser = subparsers.add_parser('warm-places', help='Pre-warm the places caches')
    warm_parser.add_argument('--kind', choices=sorted(PLACE_KINDS) + ['all'], default='all')
    warm_parser.set_defaults(func=cmd_warm_places)

    config_parser = subparsers.add_parser('show-config', help='Show the effective configuration')
    config_parser.set_defaults(func=cmd_show_config)

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    try:
        config = get_config()
    except (SyncError, AssertionError, ValueError) as e:
        print(f"Configuration error: {e}")
        sys.exit(EXIT_FATAL)
    setup_logging(config)

    try:
        exit_code = asyncio.run(args.func(args))
    except KeyboardInterrupt:
        print("\n\nStopped by user.")
        exit_code = 0
    except SyncError as e:
        logger.error(f"{args.command} failed: {e}")
        exit_code = EXIT_FATAL
    except Exception as e:
        logger.exception(f"{args.command} error: {e}")
        exit_code = EXIT_FATAL

    sys.exit(exit_code)


if __name__ == '__main__':
    main()
