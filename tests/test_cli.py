"""
Tests for the command-line entry point.
"""

import json
import sys

import pytest

import listing_sync_cli
from services.errors import QuotaExceeded


def run_cli(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["listing-sync", *argv])
    with pytest.raises(SystemExit) as exc_info:
        listing_sync_cli.main()
    return exc_info.value.code


@pytest.mark.unit
class TestCli:

    def test_show_config_prints_masked_json(self, monkeypatch, tmp_path, capsys):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "secret")
        monkeypatch.setenv("SYNC_INTERVAL_MINUTES", "15")

        assert run_cli(monkeypatch, "show-config") == 0

        dumped = json.loads(capsys.readouterr().out)
        assert dumped["scheduler"]["interval_minutes"] == 15
        assert dumped["supabase"]["key"] == "***"

    def test_missing_credentials_exit_fatal(self, monkeypatch, tmp_path, capsys):
        monkeypatch.chdir(tmp_path)

        assert run_cli(monkeypatch, "sync-sold") == 1
        assert "SUPABASE_URL" in capsys.readouterr().out

    def test_no_command_prints_help(self, monkeypatch, capsys):
        assert run_cli(monkeypatch) == 0
        assert "warm-places" in capsys.readouterr().out

    def test_run_propagates_pipeline_exit_code(self, monkeypatch, tmp_path, mocker):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("SUPABASE_URL", "https://example.supabase.co")
        monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "secret")
        mocker.patch.object(listing_sync_cli, "get_supabase_client", return_value=object())

        result = mocker.Mock(stages=[], exit_code=2, duration_seconds=0.0)
        run_pipeline = mocker.AsyncMock(return_value=result)
        mocker.patch.object(listing_sync_cli.PipelineOrchestrator, "run_pipeline", run_pipeline)

        assert run_cli(monkeypatch, "run", "--limit", "10") == 2
        run_pipeline.assert_awaited_once_with(listing_limit=10)

    def test_nearby_rate_limit_exits_fatal(self, monkeypatch, tmp_path, mocker, capsys):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("SUPABASE_URL", "https://example.supabase.co")
        monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "secret")
        mocker.patch.object(listing_sync_cli, "get_supabase_client", return_value=object())
        nearby = mocker.AsyncMock(side_effect=QuotaExceeded("Places API rate limit hit (HTTP 429)"))
        mocker.patch.object(listing_sync_cli.PlacesService, "nearby", nearby)

        assert run_cli(monkeypatch, "nearby", "transit", "43.65", "-79.38") == 1
        assert "rate limit" in capsys.readouterr().out
