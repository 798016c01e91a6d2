"""
Listing Pipeline Orchestrator

Runs one full pipeline pass, strictly in order:

1. fetch collaborator (external feed -> listings_unified)
2. sold sync (listings_unified -> sold_listings)
3. analytics collaborator (derived-table refresh)
4. geocoding pass (when enabled and an API key is configured)
5. clean backfill (listings_unified -> listings_unified_clean)

Each stage yields an exit code: 0 success, 2 partial (some rows failed),
1 fatal. A fatal stage ends the sequence; a partial stage does not.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from supabase import Client

from config.sync_config import SyncConfig, get_config
from .batch_sync_service import BatchSyncService
from .errors import SyncError
from .geocoding_service import GeocodingService

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_PARTIAL = 2

CommandRunner = Callable[[str, Dict[str, str]], Awaitable[int]]


async def run_shell_command(command: str, env: Dict[str, str]) -> int:
    """Run a collaborator command, inheriting stdout/stderr; returns its exit status"""
    process = await asyncio.create_subprocess_shell(command, env=env)
    return await process.wait()


@dataclass
class StageResult:
    """Outcome of one pipeline stage"""
    name: str
    exit_code: int = EXIT_OK
    summary: str = ""
    skipped: bool = False
    error_message: Optional[str] = None
    duration_seconds: float = 0.0
    detail: Any = None


@dataclass
class PipelineResult:
    """Outcome of one pipeline pass"""
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    stages: List[StageResult] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def exit_code(self) -> int:
        """First non-zero stage exit code, else 0"""
        for stage in self.stages:
            if stage.exit_code != EXIT_OK:
                return stage.exit_code
        return EXIT_OK

    @property
    def success(self) -> bool:
        return self.exit_code == EXIT_OK

    def stage(self, name: str) -> Optional[StageResult]:
        return next((s for s in self.stages if s.name == name), None)


class PipelineOrchestrator:
    """
    Main orchestrator for the listing sync pipeline
    """

    def __init__(
        self,
        supabase_client: Client,
        config: Optional[SyncConfig] = None,
        sync_service: Optional[BatchSyncService] = None,
        geocoding_service: Optional[GeocodingService] = None,
        command_runner: CommandRunner = run_shell_command,
    ):
        self.supabase = supabase_client
        self.config = config or get_config()
        self.sync_service = sync_service or BatchSyncService(supabase_client, self.config)
        self._geocoding_service = geocoding_service
        self.command_runner = command_runner

    @property
    def geocoding_service(self) -> GeocodingService:
        if self._geocoding_service is None:
            self._geocoding_service = GeocodingService(self.supabase, self.config)
        return self._geocoding_service

    @property
    def geocode_enabled(self) -> bool:
        return self.config.geocode.enabled and bool(self.config.geocode.api_key)

    async def run_pipeline(self, listing_limit: Optional[int] = None) -> PipelineResult:
        """
        Execute the full pipeline once.

        Args:
            listing_limit: Passed to the fetch collaborator as LISTING_LIMIT

        Returns:
            PipelineResult with one StageResult per stage that ran
        """
        start_time = time.time()
        result = PipelineResult()
        logger.info("Starting listing pipeline run")

        stages = [
            ('fetch', lambda: self._run_collaborator('fetch', self.config.fetch_command, listing_limit)),
            ('sold_sync', self._run_sold_sync),
            ('analytics', lambda: self._run_collaborator('analytics', self.config.analytics_command)),
            ('geocode', self._run_geocode),
            ('clean_backfill', self._run_clean_backfill),
        ]

        for name, stage_fn in stages:
            stage = await self._run_stage(name, stage_fn)
            result.stages.append(stage)
            if stage.exit_code == EXIT_FATAL:
                logger.error(f"Stage {name} failed fatally; skipping remaining stages")
                break

        result.duration_seconds = time.time() - start_time
        logger.info(f"Pipeline run finished in {result.duration_seconds:.1f}s with exit code {result.exit_code}")
        for stage in result.stages:
            status = "skipped" if stage.skipped else f"exit {stage.exit_code}"
            logger.info(f"  {stage.name}: {status} {stage.summary}".rstrip())
        return result

    async def _run_stage(self, name: str, stage_fn: Callable[[], Awaitable[StageResult]]) -> StageResult:
        start_time = time.time()
        logger.info(f"--- Stage: {name} ---")
        try:
            stage = await stage_fn()
        except SyncError as e:
            logger.error(f"Stage {name} aborted: {e}")
            stage = StageResult(name=name, exit_code=EXIT_FATAL, error_message=str(e))
        except Exception as e:
            logger.exception(f"Unexpected error in stage {name}: {e}")
            stage = StageResult(name=name, exit_code=EXIT_FATAL, error_message=str(e))
        stage.duration_seconds = time.time() - start_time
        return stage

    async def _run_collaborator(self, name: str, command: Optional[str],
                                listing_limit: Optional[int] = None) -> StageResult:
        if not command:
            logger.info(f"No {name} command configured; skipping")
            return StageResult(name=name, skipped=True)

        env = dict(os.environ)
        if listing_limit is not None:
            env['LISTING_LIMIT'] = str(listing_limit)

        logger.info(f"Running {name}: {command}")
        returncode = await self.command_runner(command, env)
        if returncode != 0:
            return StageResult(name=name, exit_code=EXIT_FATAL,
                               error_message=f"{name} command exited with status {returncode}",
                               summary=f"status {returncode}")
        return StageResult(name=name, summary="ok")

    async def _run_sold_sync(self) -> StageResult:
        run = await self.sync_service.sync_sold_listings()
        return StageResult(name='sold_sync', exit_code=run.exit_code, summary=run.summary(), detail=run)

    async def _run_geocode(self) -> StageResult:
        if not self.geocode_enabled:
            logger.info("Geocoding disabled or no API key configured; skipping")
            return StageResult(name='geocode', skipped=True)
        geocode_result = await self.geocoding_service.run_geocode_pass()
        return StageResult(name='geocode', exit_code=geocode_result.exit_code,
                           summary=geocode_result.summary(), error_message=geocode_result.error_message,
                           detail=geocode_result)

    async def _run_clean_backfill(self) -> StageResult:
        run = await self.sync_service.backfill_clean_listings()
        return StageResult(name='clean_backfill', exit_code=run.exit_code, summary=run.summary(), detail=run)
