import copy
import os
import sys

import pytest

# Ensure project root on sys.path for imports
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from config.sync_config import (  # noqa: E402
    BatchSettings,
    GeocodeSettings,
    PlacesSettings,
    SchedulerSettings,
    SupabaseSettings,
    SyncConfig,
    set_config,
)

CONFIG_ENV_VARS = (
    "SUPABASE_URL", "SUPABASE_SERVICE_ROLE_KEY", "SUPABASE_KEY",
    "GEOCODING_API_KEY", "GOOGLE_PLACES_API_KEY", "GOOGLE_MAPS_API_KEY",
    "SYNC_INTERVAL_MINUTES", "SYNC_BUFFER_SECONDS", "PAGE_SIZE", "UPSERT_BATCH_SIZE",
    "SOLD_UPSERT_BATCH_SIZE", "CLEAN_UPSERT_BATCH_SIZE", "GEOCODE_BATCH_SIZE",
    "GEOCODE_DELAY_MS", "PLACES_DELAY_MS", "GOOGLE_PLACES_CENTERS", "FETCH_COMMAND",
    "ANALYTICS_COMMAND", "SYNC_GEOCODE_ENABLED", "SYNC_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _test_env(monkeypatch):
    # Keep tests independent of the developer's .env
    for name in CONFIG_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    yield
    set_config(None)


class FakeResponse:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    """Records one query-builder chain and runs it against FakeSupabase on execute()"""

    def __init__(self, db, table):
        self.db = db
        self.table = table
        self.op = 'select'
        self.columns = '*'
        self.filters = []
        self.orders = []
        self.window = None
        self.max_rows = None
        self.payload = None
        self.on_conflict = None

    def select(self, columns='*', **kwargs):
        self.op = 'select'
        self.columns = columns
        return self

    def upsert(self, rows, on_conflict='id', **kwargs):
        self.op = 'upsert'
        self.payload = rows if isinstance(rows, list) else [rows]
        self.on_conflict = on_conflict
        return self

    def update(self, values):
        self.op = 'update'
        self.payload = values
        return self

    def eq(self, column, value):
        self.filters.append((column, value))
        return self

    def order(self, column, desc=False):
        self.orders.append((column, desc))
        return self

    def range(self, start, end):
        self.window = (start, end)
        return self

    def limit(self, count):
        self.max_rows = count
        return self

    def execute(self):
        return self.db._execute(self)


class FakeRpc:
    def __init__(self, db, name, params):
        self.db = db
        self.name = name
        self.params = params

    def execute(self):
        return self.db._execute_rpc(self)


class FakeSupabase:
    """
    In-memory stand-in for the Supabase client.

    Tables are lists of row dicts. Failures are injected with add_failure();
    every executed call is recorded in calls as (table, op, payload).
    """

    def __init__(self, tables=None, rpc_results=None):
        self.tables = {name: [dict(row) for row in rows] for name, rows in (tables or {}).items()}
        self.rpc_results = rpc_results or {}
        self.rpc_calls = []
        self.calls = []
        self._failures = []

    def table(self, name):
        return FakeQuery(self, name)

    def rpc(self, name, params):
        return FakeRpc(self, name, params)

    def add_failure(self, error, table=None, op=None, times=None, when=None):
        """
        Make matching calls raise error.

        Args:
            error: Exception instance to raise
            table / op: Restrict to a table and/or operation
            times: Number of times to fail (None = always)
            when: Optional predicate on the call payload
        """
        self._failures.append({'error': error, 'table': table, 'op': op, 'times': times, 'when': when})

    def rows(self, table):
        return self.tables.get(table, [])

    def keys(self, table, key='listing_key'):
        return sorted(row[key] for row in self.rows(table))

    def _maybe_fail(self, table, op, payload):
        for rule in self._failures:
            if rule['table'] not in (None, table) or rule['op'] not in (None, op):
                continue
            if rule['when'] is not None and not rule['when'](payload):
                continue
            if rule['times'] is not None:
                if rule['times'] <= 0:
                    continue
                rule['times'] -= 1
            raise rule['error']

    def _execute(self, query):
        payload = copy.deepcopy(query.payload)
        self.calls.append((query.table, query.op, payload))
        self._maybe_fail(query.table, query.op, payload)
        rows = self.tables.setdefault(query.table, [])

        if query.op == 'select':
            selected = [r for r in rows if all(r.get(c) == v for c, v in query.filters)]
            for column, desc in reversed(query.orders):
                selected.sort(key=lambda r: (r.get(column) is not None, r.get(column) or ''), reverse=desc)
            if query.window is not None:
                start, end = query.window
                selected = selected[start:end + 1]
            if query.max_rows is not None:
                selected = selected[:query.max_rows]
            return FakeResponse(copy.deepcopy(selected))

        if query.op == 'upsert':
            key = query.on_conflict
            for new_row in payload:
                existing = next((r for r in rows if r.get(key) == new_row.get(key)), None)
                if existing is None:
                    rows.append(dict(new_row))
                else:
                    existing.clear()
                    existing.update(new_row)
            return FakeResponse(copy.deepcopy(payload))

        if query.op == 'update':
            updated = []
            for row in rows:
                if all(row.get(c) == v for c, v in query.filters):
                    row.update(payload)
                    updated.append(copy.deepcopy(row))
            return FakeResponse(updated)

        raise AssertionError(f"Unsupported op {query.op}")

    def _execute_rpc(self, rpc):
        self.rpc_calls.append((rpc.name, dict(rpc.params)))
        self._maybe_fail(rpc.name, 'rpc', rpc.params)
        result = self.rpc_results.get(rpc.name, [])
        return FakeResponse(copy.deepcopy(result))


class RecordingSleep:
    """Async sleep replacement that returns immediately and records delays"""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def raw_row(listing_key, public=None, restricted=None, updated_at="2024-05-01T00:00:00+00:00"):
    return {'listing_key': listing_key, 'idx': public, 'vow': restricted, 'updated_at': updated_at}


@pytest.fixture
def fake_db():
    return FakeSupabase()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def sync_config():
    """Small batches so chunking and paging are visible with a handful of rows"""
    return SyncConfig(
        supabase=SupabaseSettings(url="http://localhost", key="test-key"),
        scheduler=SchedulerSettings(interval_minutes=5, buffer_seconds=90),
        batch=BatchSettings(
            page_size=3,
            upsert_batch_size=2,
            sold_upsert_batch_size=2,
            clean_upsert_batch_size=2,
            max_attempts=3,
            backoff_seconds=0.5,
        ),
        geocode=GeocodeSettings(api_key="test-geocode-key", batch_size=30, delay_ms=200),
        places=PlacesSettings(api_key="test-places-key", delay_ms=200),
    )
