"""
Tests for the pipeline orchestrator: stage order, skipping, and exit-code
propagation.
"""

import asyncio

import pytest

from conftest import FakeSupabase
from services.batch_sync_service import SyncRun
from services.errors import ReadFailure
from services.geocoding_service import GeocodeRunResult
from services.pipeline_orchestrator import EXIT_FATAL, EXIT_OK, EXIT_PARTIAL, PipelineOrchestrator


class FakeSyncService:
    def __init__(self, log, sold=None, clean=None):
        self.log = log
        self.sold = sold
        self.clean = clean

    async def sync_sold_listings(self):
        self.log.append("sold_sync")
        if isinstance(self.sold, Exception):
            raise self.sold
        return self.sold or SyncRun(name="sold", succeeded=3)

    async def backfill_clean_listings(self):
        self.log.append("clean_backfill")
        if isinstance(self.clean, Exception):
            raise self.clean
        return self.clean or SyncRun(name="clean", succeeded=5)


class FakeGeocoding:
    def __init__(self, log, result=None):
        self.log = log
        self.result = result or GeocodeRunResult()

    async def run_geocode_pass(self, limit=None):
        self.log.append("geocode")
        return self.result


class FakeCommandRunner:
    def __init__(self, log, returncodes=None):
        self.log = log
        self.returncodes = returncodes or {}
        self.calls = []

    async def __call__(self, command, env):
        self.log.append(command)
        self.calls.append((command, env))
        return self.returncodes.get(command, 0)


def make_orchestrator(config, log, sold=None, clean=None, geocode=None, returncodes=None):
    runner = FakeCommandRunner(log, returncodes)
    orchestrator = PipelineOrchestrator(
        FakeSupabase(),
        config,
        sync_service=FakeSyncService(log, sold, clean),
        geocoding_service=FakeGeocoding(log, geocode),
        command_runner=runner,
    )
    return orchestrator, runner


@pytest.fixture
def commands(sync_config):
    sync_config.fetch_command = "fetch-listings"
    sync_config.analytics_command = "refresh-analytics"
    return sync_config


@pytest.mark.unit
class TestStageOrder:

    def test_full_sequence(self, commands):
        log = []
        orchestrator, _ = make_orchestrator(commands, log)

        result = asyncio.run(orchestrator.run_pipeline())

        assert log == ["fetch-listings", "sold_sync", "refresh-analytics", "geocode", "clean_backfill"]
        assert [s.name for s in result.stages] == ["fetch", "sold_sync", "analytics", "geocode", "clean_backfill"]
        assert result.exit_code == EXIT_OK
        assert result.success

    def test_unset_commands_are_skipped(self, sync_config):
        log = []
        orchestrator, runner = make_orchestrator(sync_config, log)

        result = asyncio.run(orchestrator.run_pipeline())

        assert runner.calls == []
        assert result.stage("fetch").skipped
        assert result.stage("analytics").skipped
        assert result.exit_code == EXIT_OK

    def test_geocode_skipped_without_key(self, commands):
        commands.geocode.api_key = None
        log = []
        orchestrator, _ = make_orchestrator(commands, log)

        result = asyncio.run(orchestrator.run_pipeline())

        assert "geocode" not in log
        assert result.stage("geocode").skipped

    def test_geocode_disabled(self, commands):
        commands.geocode.enabled = False
        log = []
        orchestrator, _ = make_orchestrator(commands, log)

        asyncio.run(orchestrator.run_pipeline())

        assert "geocode" not in log

    def test_listing_limit_passed_to_fetch(self, commands):
        log = []
        orchestrator, runner = make_orchestrator(commands, log)

        asyncio.run(orchestrator.run_pipeline(listing_limit=250))

        command, env = runner.calls[0]
        assert command == "fetch-listings"
        assert env["LISTING_LIMIT"] == "250"
        assert "LISTING_LIMIT" not in runner.calls[1][1]


@pytest.mark.unit
class TestExitCodes:

    def test_fetch_failure_stops_pipeline(self, commands):
        log = []
        orchestrator, _ = make_orchestrator(commands, log, returncodes={"fetch-listings": 3})

        result = asyncio.run(orchestrator.run_pipeline())

        assert log == ["fetch-listings"]
        assert result.exit_code == EXIT_FATAL
        assert "status 3" in result.stage("fetch").error_message

    def test_partial_sync_continues(self, commands):
        log = []
        orchestrator, _ = make_orchestrator(commands, log, sold=SyncRun(name="sold", succeeded=4, failed=1))

        result = asyncio.run(orchestrator.run_pipeline())

        assert log[-1] == "clean_backfill"
        assert result.stage("sold_sync").exit_code == EXIT_PARTIAL
        assert result.exit_code == EXIT_PARTIAL

    def test_read_failure_is_fatal(self, commands):
        log = []
        orchestrator, _ = make_orchestrator(commands, log, sold=ReadFailure("boom", table="listings_unified"))

        result = asyncio.run(orchestrator.run_pipeline())

        assert log == ["fetch-listings", "sold_sync"]
        assert result.exit_code == EXIT_FATAL
        assert result.stage("sold_sync").error_message == "boom"

    def test_quota_exhaustion_is_fatal(self, commands):
        log = []
        orchestrator, _ = make_orchestrator(commands, log,
                                            geocode=GeocodeRunResult(quota_exhausted=True,
                                                                     error_message="OVER_QUERY_LIMIT"))

        result = asyncio.run(orchestrator.run_pipeline())

        assert "clean_backfill" not in log
        assert result.exit_code == EXIT_FATAL

    def test_unexpected_error_is_fatal(self, commands):
        log = []
        orchestrator, _ = make_orchestrator(commands, log, clean=RuntimeError("unexpected"))

        result = asyncio.run(orchestrator.run_pipeline())

        assert result.exit_code == EXIT_FATAL
        assert result.stage("clean_backfill").error_message == "unexpected"

    def test_first_non_zero_code_wins(self, commands):
        log = []
        orchestrator, _ = make_orchestrator(commands, log,
                                            sold=SyncRun(name="sold", failed=1),
                                            clean=ReadFailure("late read failure"))

        result = asyncio.run(orchestrator.run_pipeline())

        assert result.exit_code == EXIT_PARTIAL
        assert result.stage("clean_backfill").exit_code == EXIT_FATAL
