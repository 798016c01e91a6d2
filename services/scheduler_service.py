"""
Scheduler Service for the Listing Sync Pipeline

Runs the pipeline forever on a fixed cadence. After each run the scheduler
waits max(buffer_seconds, interval_minutes * 60 - elapsed) before starting
the next one, so back-to-back runs are never closer than the buffer even
when a run finishes instantly or overruns its interval.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

from config.sync_config import SyncConfig, get_config
from .pipeline_orchestrator import EXIT_FATAL, PipelineOrchestrator

logger = logging.getLogger(__name__)


class SchedulerState(str, Enum):
    IDLE = "Idle"
    RUNNING = "Running"


def compute_next_delay(interval_minutes: float, buffer_seconds: float, elapsed_seconds: float) -> float:
    """Seconds to wait after a run that took elapsed_seconds"""
    return max(float(buffer_seconds), interval_minutes * 60 - elapsed_seconds)


@dataclass
class ScheduleStatus:
    """Observable state of the scheduler loop"""
    state: SchedulerState = SchedulerState.IDLE
    runs_completed: int = 0
    last_started_at: Optional[datetime] = None
    last_elapsed_seconds: Optional[float] = None
    last_exit_code: Optional[int] = None
    next_delay_seconds: Optional[float] = None
    exit_codes: List[int] = field(default_factory=list)


class SchedulerService:
    """
    Service for running the pipeline on a fixed cadence.

    Manages:
    - Idle / Running state transitions
    - Next-run delay from interval, buffer and run duration
    - Logging pipeline exit codes without stopping the loop
    """

    def __init__(
        self,
        orchestrator: PipelineOrchestrator,
        config: Optional[SyncConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.orchestrator = orchestrator
        self.config = config or get_config()
        self.sleep = sleep
        self.clock = clock
        self.status = ScheduleStatus()

    @property
    def interval_minutes(self) -> int:
        return self.config.scheduler.interval_minutes

    @property
    def buffer_seconds(self) -> int:
        return self.config.scheduler.buffer_seconds

    def is_running(self) -> bool:
        return self.status.state == SchedulerState.RUNNING

    async def run_once(self) -> int:
        """
        One Running phase: execute the pipeline and record its exit code.

        Exceptions escaping the pipeline are logged and reported as a fatal
        exit code; they never end the schedule.
        """
        self.status.state = SchedulerState.RUNNING
        self.status.last_started_at = datetime.now(timezone.utc)
        started = self.clock()

        try:
            result = await self.orchestrator.run_pipeline()
            exit_code = result.exit_code
        except asyncio.CancelledError:
            self.status.state = SchedulerState.IDLE
            raise
        except Exception as e:
            logger.error(f"Pipeline run raised: {e}")
            exit_code = EXIT_FATAL

        self.status.last_elapsed_seconds = self.clock() - started
        self.status.last_exit_code = exit_code
        self.status.exit_codes.append(exit_code)
        self.status.runs_completed += 1
        self.status.state = SchedulerState.IDLE

        if exit_code == 0:
            logger.info(f"Run {self.status.runs_completed} completed in "
                        f"{self.status.last_elapsed_seconds:.1f}s")
        else:
            logger.warning(f"Run {self.status.runs_completed} exited with code {exit_code} "
                           f"after {self.status.last_elapsed_seconds:.1f}s; next run still scheduled")
        return exit_code

    async def run_continuous(self, max_runs: Optional[int] = None) -> ScheduleStatus:
        """
        Run the pipeline continuously.

        Args:
            max_runs: Stop after this many runs (None = forever)

        Returns:
            Final ScheduleStatus
        """
        logger.info(f"Starting continuous scheduler (interval: {self.interval_minutes} min, "
                    f"buffer: {self.buffer_seconds}s)")

        while max_runs is None or self.status.runs_completed < max_runs:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                logger.info("Scheduler cancelled, shutting down...")
                break

            if max_runs is not None and self.status.runs_completed >= max_runs:
                break

            delay = compute_next_delay(self.interval_minutes, self.buffer_seconds,
                                       self.status.last_elapsed_seconds or 0.0)
            self.status.next_delay_seconds = delay
            logger.info(f"Next run in {delay:.0f}s")
            try:
                await self.sleep(delay)
            except asyncio.CancelledError:
                logger.info("Scheduler cancelled, shutting down...")
                break

        logger.info("Scheduler stopped")
        return self.status
