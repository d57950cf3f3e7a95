import datetime as dt
import os
import queue
import sys

import pytest

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

import timet_viewer as tv  # noqa: E402


FIXED_NOW = dt.datetime(2024, 3, 15, 9, 30)

ALPHA = tv.Project("p-a", "Alpha")
BETA = tv.Project("p-b", "Beta")


class FakeApi:
    """Serves canned months and records pushes; fail_month makes one month raise."""

    def __init__(self, months=None, fail_month=None, push_error=None):
        self.months = months or {}
        self.fail_month = fail_month
        self.push_error = push_error
        self.fetched = []
        self.pushed = []

    def fetch_month(self, year, month):
        self.fetched.append((year, month))
        if month == self.fail_month:
            raise tv.RemoteError(f"HTTP 503 for {year}-{month:02d}")
        return list(self.months.get(month, []))

    def push_entry(self, project, day, hours):
        if self.push_error is not None:
            raise self.push_error
        self.pushed.append((project, day, hours))


@pytest.fixture
def temp_db_path(tmp_path):
    """Return a unique SQLite path per test to avoid cross-test contamination."""
    return tmp_path / "timet.db"


@pytest.fixture
def store():
    db = tv.TimetDB(":memory:")
    yield db
    db.close()


@pytest.fixture
def fake_api():
    return FakeApi()


@pytest.fixture
def config(tmp_path):
    return tv.Config(endpoint="timet.test/api", api_key="k", config_location=str(tmp_path), commit="abc123")


@pytest.fixture
def sender():
    return queue.Queue()


@pytest.fixture
def make_model(store, fake_api, config, sender):
    def _make(api=None):
        return tv.TimetModel(sender, api or fake_api, store, config, clock=lambda: FIXED_NOW)
    return _make


@pytest.fixture
def seeded_store(store):
    """Jan 10h Alpha; Feb 5h Alpha + 3h Beta."""
    store.replace_all([
        tv.Entry(dt.date(2024, 1, 8), 10.0, ALPHA.project_id, ALPHA.project_name),
        tv.Entry(dt.date(2024, 2, 1), 5.0, ALPHA.project_id, ALPHA.project_name),
        tv.Entry(dt.date(2024, 2, 2), 3.0, BETA.project_id, BETA.project_name),
    ])
    return store
