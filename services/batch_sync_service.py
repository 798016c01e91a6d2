"""
Batched Sync Service for the Unified Listing Store

This service moves rows from listings_unified into a derived table:
paginated read (most recently updated first), caller-supplied filter and
transform, then chunked keyed upserts with retry and per-row fallback.

Two syncs are built on it:
- Sold sync: listings_unified -> sold_listings (terminal statuses only)
- Clean backfill: listings_unified -> listings_unified_clean (null / [] stripped)
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from supabase import Client

from config.sync_config import SyncConfig, get_config
from .clean_projection import build_clean_listing
from .listing_models import RawListing
from .listing_store import ListingStore
from .retry_policy import RetryPolicy
from .status_classifier import build_sold_listing, is_terminal

logger = logging.getLogger(__name__)


@dataclass
class SyncRun:
    """Cursor and counters for one invocation of the sync engine"""
    name: str
    page_size: int = 300
    offset: int = 0
    rows_read: int = 0
    rows_selected: int = 0
    succeeded: int = 0
    failed: int = 0
    batches: int = 0
    batches_fallen_back: int = 0
    retry_delays: List[float] = field(default_factory=list)
    duration_ms: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return self.succeeded + self.failed

    @property
    def exit_code(self) -> int:
        """0 when every attempted row was written, 2 when some rows failed"""
        return 0 if self.failed == 0 else 2

    def summary(self) -> str:
        return (f"{self.name}: {self.succeeded} upserted, {self.failed} failed "
                f"({self.rows_read} read, {self.rows_selected} selected, "
                f"{len(self.retry_delays)} retries, {self.batches_fallen_back} batches fell back to per-row)")


class BatchUpserter:
    """
    Chunked keyed upsert with retry and per-row fallback.

    A batch is retried under the retry policy. If it still fails, each row
    is written on its own so one bad row cannot block its batch-mates.
    Never raises; every row ends up counted as succeeded or failed.
    """

    def __init__(
        self,
        store: ListingStore,
        table: str,
        on_conflict: str = 'listing_key',
        batch_size: int = 250,
        retry_policy: Optional[RetryPolicy] = None,
        max_logged_row_errors: int = 5,
    ):
        self.store = store
        self.table = table
        self.on_conflict = on_conflict
        self.batch_size = max(1, batch_size)
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_logged_row_errors = max_logged_row_errors

    async def write(self, rows: List[Dict], run: SyncRun) -> SyncRun:
        """
        Upsert rows in chunks, in the order given.

        Args:
            rows: Transformed rows, each carrying the conflict key
            run: Sync run to accumulate counters into

        Returns:
            The same SyncRun, updated
        """
        total = len(rows)
        for start in range(0, total, self.batch_size):
            batch = rows[start:start + self.batch_size]
            run.batches += 1

            def _record_retry(attempt: int, delay: float, error: BaseException) -> None:
                run.retry_delays.append(delay)

            try:
                await self.retry_policy.call(
                    lambda: self.store.upsert(self.table, batch, on_conflict=self.on_conflict),
                    on_retry=_record_retry,
                )
                run.succeeded += len(batch)
            except Exception as e:
                logger.warning(f"Batch {run.batches} into {self.table} failed after retries: {e} "
                               f"- retrying rows individually")
                run.batches_fallen_back += 1
                await self._write_rows_individually(batch, run)

            if run.batches % 5 == 0 or start + self.batch_size >= total:
                logger.info(f"  {self.table}: batch {run.batches} - "
                            f"{min(start + self.batch_size, total)}/{total}")

        return run

    async def _write_rows_individually(self, batch: List[Dict], run: SyncRun):
        for row in batch:
            try:
                await self.store.upsert(self.table, [row], on_conflict=self.on_conflict)
                run.succeeded += 1
            except Exception as e:
                run.failed += 1
                message = f"Upsert error for {self.on_conflict}={row.get(self.on_conflict)}: {e}"
                if run.failed <= self.max_logged_row_errors:
                    logger.error(message)
                    run.errors.append(message)


class BatchSyncService:
    """
    Service for syncing the unified listing store into derived tables
    """

    def __init__(
        self,
        supabase_client: Client,
        config: Optional[SyncConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
        store: Optional[ListingStore] = None,
    ):
        self.supabase = supabase_client
        self.config = config or get_config()
        self.store = store or ListingStore(supabase_client, self.config.supabase)
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=self.config.batch.max_attempts,
            backoff_seconds=self.config.batch.backoff_seconds,
        )

    async def read_all(self, run: SyncRun) -> List[RawListing]:
        """
        Page through the unified store until a short page.

        Raises:
            ReadFailure: on any read error; nothing is written for the run
        """
        listings: List[RawListing] = []
        while True:
            rows = await self.store.fetch_page(self.store.raw_table, run.offset, run.page_size)
            run.rows_read += len(rows)
            run.offset += len(rows)

            for row in rows:
                if row.get('listing_key') in (None, ''):
                    run.failed += 1
                    logger.warning(f"Skipping row without listing_key at offset {run.offset}")
                    continue
                listings.append(RawListing.from_row(row))

            if len(rows) < run.page_size:
                break

        return listings

    async def run_sync(
        self,
        name: str,
        target_table: str,
        transform: Callable[[RawListing], Any],
        predicate: Optional[Callable[[RawListing], bool]] = None,
        batch_size: Optional[int] = None,
        run: Optional[SyncRun] = None,
    ) -> SyncRun:
        """
        Read, filter, transform and upsert into target_table.

        Args:
            name: Label used in logs and the returned SyncRun
            target_table: Derived table to upsert into (keyed by listing_key)
            transform: Builds the target record from a RawListing; the result
                must have to_row() or already be a dict
            predicate: Optional filter applied before transform
            batch_size: Upsert chunk size (defaults to the configured size)
            run: Existing run state to continue from

        Returns:
            SyncRun with counters

        Raises:
            ReadFailure: if the read phase fails
        """
        start_time = time.time()
        run = run or SyncRun(name=name, page_size=self.config.batch.page_size)

        logger.info(f"Starting {name}: reading {self.store.raw_table} "
                    f"(page size {run.page_size})...")
        listings = await self.read_all(run)

        rows: List[Dict] = []
        for listing in listings:
            try:
                if predicate is not None and not predicate(listing):
                    continue
                record = transform(listing)
                rows.append(record.to_row() if hasattr(record, 'to_row') else record)
            except Exception as e:
                run.failed += 1
                if run.failed <= self.config.batch.max_logged_row_errors:
                    logger.error(f"Transform error for listing_key={listing.listing_key}: {e}")
                    run.errors.append(f"Transform error for {listing.listing_key}: {e}")
        run.rows_selected = len(rows)

        logger.info(f"Read {run.rows_read} rows, {run.rows_selected} selected for {target_table}")

        if rows:
            upserter = BatchUpserter(
                self.store,
                target_table,
                on_conflict='listing_key',
                batch_size=batch_size or self.config.batch.upsert_batch_size,
                retry_policy=self.retry_policy,
                max_logged_row_errors=self.config.batch.max_logged_row_errors,
            )
            await upserter.write(rows, run)
        else:
            logger.info(f"No rows to sync into {target_table}")

        run.duration_ms = int((time.time() - start_time) * 1000)
        logger.info(run.summary())
        return run

    async def sync_sold_listings(self) -> SyncRun:
        """Upsert every terminal listing into sold_listings"""
        return await self.run_sync(
            name="sold_listings sync",
            target_table=self.config.supabase.sold_table,
            transform=build_sold_listing,
            predicate=is_terminal,
            batch_size=self.config.batch.sold_upsert_batch_size,
        )

    async def backfill_clean_listings(self) -> SyncRun:
        """Rebuild listings_unified_clean from listings_unified"""
        return await self.run_sync(
            name="listings_unified_clean backfill",
            target_table=self.config.supabase.clean_table,
            transform=build_clean_listing,
            batch_size=self.config.batch.clean_upsert_batch_size,
        )


__all__ = ['BatchSyncService', 'BatchUpserter', 'SyncRun']
