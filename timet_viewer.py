#!/usr/bin/env python3
# timet_viewer: Terminal viewer for hours logged on timet, backed by a local cache
#
# Hotkeys
#   r      refresh the cache for the current year (runs in background with progress)
#   j/k    move selection (arrows work too)
#   Enter  show the selected month in detail
#   p      pick the active project (Enter set, x unset)
#   l      log today's hours for the active project
#   H      home (dismisses the error banner)
#   q      quit
#
# Config
#   $TIMET_CONFIG_HOME/timet/config.yaml, else $XDG_CONFIG_HOME/timet/config.yaml,
#   else ~/.config/timet/config.yaml:
#
#     api:
#       endpoint: "timet.example.com/api"
#
# Environment
# - TIMET_API_KEY (or TIMET_API_KEY=... in a .env file)
# - TIMET_COMMIT (optional, shown in the footer)
# - MOCK_FETCH=1 (optional offline demo)

from __future__ import annotations

import argparse
import asyncio
import calendar
import datetime as dt
import enum
import os
import queue
import sqlite3
import string
import sys
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

import requests
import yaml
from prompt_toolkit import Application
from prompt_toolkit.filters import Condition
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.keys import Keys
from prompt_toolkit.layout import HSplit, VSplit, Layout, Window
from prompt_toolkit.layout.containers import ConditionalContainer, Float, FloatContainer
from prompt_toolkit.layout.controls import FormattedTextControl
from prompt_toolkit.layout.dimension import Dimension
from prompt_toolkit.styles import Style
from prompt_toolkit.widgets import Frame
import logging
from logging.handlers import RotatingFileHandler


__version__ = "0.1.0"

logger = logging.getLogger('timet_viewer')


# -----------------------------
# Config
# -----------------------------
class ConfigError(ValueError):
    pass


@dataclass
class Config:
    endpoint: str
    api_key: str
    config_location: str
    version: str = __version__
    commit: str = "dev"


def locate_config_dir() -> str:
    base = os.environ.get("TIMET_CONFIG_HOME") or os.environ.get("XDG_CONFIG_HOME")
    if not base:
        base = os.path.join(os.path.expanduser("~"), ".config")
    return os.path.join(base, "timet")


def load_dotenv_key(search_dirs: Iterable[str]) -> Optional[str]:
    """Read TIMET_API_KEY from the first .env file found in search_dirs."""
    for base in search_dirs:
        path = os.path.join(base, ".env")
        if not os.path.isfile(path):
            continue
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith('#') or '=' not in line:
                    continue
                k, v = line.split('=', 1)
                v = v.strip().strip('"').strip("'")
                if k.strip() == "TIMET_API_KEY" and v:
                    return v
    return None


def load_config(path: Optional[str] = None, require_key: bool = True) -> Config:
    if path is None:
        location = locate_config_dir()
        path = os.path.join(location, "config.yaml")
    else:
        location = os.path.dirname(os.path.abspath(path))
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError as exc:
        raise ConfigError(f"Config: file not found: {path}") from exc
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Config: cannot read {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"Config: expected a mapping in {path}")
    api = raw.get("api") or {}
    endpoint = str(api.get("endpoint") or "").strip() if isinstance(api, dict) else ""
    if not endpoint:
        raise ConfigError("Config: 'api.endpoint' is required.")
    key = os.environ.get("TIMET_API_KEY") or load_dotenv_key([os.getcwd(), location]) or ""
    if require_key and not key:
        raise ConfigError("TIMET_API_KEY is not set (environment or .env).")
    return Config(
        endpoint=endpoint,
        api_key=key,
        config_location=location,
        commit=os.environ.get("TIMET_COMMIT") or "dev",
    )


def setup_logging(log_path: str, log_level: str = 'ERROR') -> None:
    # Always reset handlers so --log-level reliably controls file output.
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    logger.setLevel(logging.DEBUG)
    directory = os.path.dirname(log_path)
    if directory and not os.path.isdir(directory):
        os.makedirs(directory, exist_ok=True)
    fh = RotatingFileHandler(log_path, maxBytes=2000000, backupCount=2, encoding='utf-8')
    lvl = getattr(logging, str(log_level).upper(), logging.ERROR)
    fh.setLevel(lvl if isinstance(lvl, int) else logging.ERROR)
    fh.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(message)s'))
    logger.addHandler(fh)


# -----------------------------
# Models
# -----------------------------
@dataclass(frozen=True)
class Project:
    project_id: str
    project_name: str


@dataclass
class Entry:
    date: dt.date
    hours: float
    project_id: str
    project_name: str

    @property
    def project(self) -> Project:
        return Project(self.project_id, self.project_name)


@dataclass
class YearSummary:
    month: int
    month_name: str
    hours: float


@dataclass
class MonthDetail:
    date: dt.date
    project_name: str
    hours: float


# -----------------------------
# DB
# -----------------------------
StoreError = sqlite3.Error


def _month_pattern(year: int, month: Optional[int] = None) -> str:
    if month is None:
        return f"{year:04d}-%"
    return f"{year:04d}-{month:02d}-%"


class TimetDB:
    """Local cache of timet entries plus the active project preference.

    The connection is shared with the refresh thread; every public method
    takes the lock for exactly one statement or transaction.
    """

    ENTRY_TABLE_SQL = """
      CREATE TABLE IF NOT EXISTS entry (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        date TEXT NOT NULL,
        hours REAL NOT NULL,
        project_name TEXT NOT NULL,
        project_id TEXT NOT NULL
      )
    """
    PREFERENCE_TABLE_SQL = """
      CREATE TABLE IF NOT EXISTS preference (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
      )
    """
    UPSERT_SQL = (
        "INSERT INTO entry(date, hours, project_name, project_id) VALUES (?,?,?,?) "
        "ON CONFLICT(date, project_id) DO UPDATE SET "
        "hours=excluded.hours, project_name=excluded.project_name"
    )
    ACTIVE_PROJECT_KEY = "active_project"

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(path, check_same_thread=False)
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._migrate_if_needed()

    def _has_day_project_key(self) -> bool:
        for row in self.conn.execute("PRAGMA index_list(entry)").fetchall():
            name, unique = row[1], row[2]
            if not unique:
                continue
            cols = [r[2] for r in self.conn.execute(f"PRAGMA index_info('{name}')").fetchall()]
            if cols == ["date", "project_id"]:
                return True
        return False

    def _migrate_if_needed(self) -> None:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute(self.ENTRY_TABLE_SQL)
            cur.execute(self.PREFERENCE_TABLE_SQL)
            if not self._has_day_project_key():
                # Older caches kept one row per remote record; newest row wins.
                cur.execute(
                    "DELETE FROM entry WHERE id NOT IN "
                    "(SELECT MAX(id) FROM entry GROUP BY date, project_id)"
                )
                if cur.rowcount > 0:
                    logger.info("Removed %d duplicate cache rows during migration", cur.rowcount)
                cur.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_entry_day_project ON entry(date, project_id)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_entry_date ON entry(date)")
            self.conn.commit()

    @staticmethod
    def _entry_params(e: Entry) -> Tuple[str, float, str, str]:
        return (e.date.isoformat(), float(e.hours), e.project_name, e.project_id)

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def entry_count(self) -> int:
        with self._lock:
            return int(self.conn.execute("SELECT COUNT(*) FROM entry").fetchone()[0])

    def load_entries(self) -> List[Entry]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT date, hours, project_id, project_name FROM entry ORDER BY date, project_name"
            ).fetchall()
        return [Entry(dt.date.fromisoformat(d), float(h), pid, name) for d, h, pid, name in rows]

    def replace_all(self, entries: Iterable[Entry]) -> int:
        """Swap the whole entry set in one transaction; the old set survives any failure.

        Rows sharing a (date, project) collapse to the last one; returns the stored count.
        """
        rows = [self._entry_params(e) for e in entries]
        with self._lock, self.conn:
            self.conn.execute("DELETE FROM entry")
            self.conn.executemany(self.UPSERT_SQL, rows)
            stored = int(self.conn.execute("SELECT COUNT(*) FROM entry").fetchone()[0])
        if stored < len(rows):
            logger.warning("Collapsed %d duplicate day/project rows while replacing cache", len(rows) - stored)
        return stored

    def append_or_replace(self, project: Project, day: dt.date, hours: float) -> Entry:
        entry = Entry(day, float(hours), project.project_id, project.project_name)
        with self._lock, self.conn:
            self.conn.execute(self.UPSERT_SQL, self._entry_params(entry))
        return entry

    def distinct_projects(self) -> List[Project]:
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT project_id, project_name FROM entry
                WHERE id IN (SELECT MAX(id) FROM entry WHERE hours != 0 GROUP BY project_id)
                ORDER BY project_name COLLATE NOCASE, project_id
                """
            ).fetchall()
        return [Project(pid, name) for pid, name in rows]

    def yearly_aggregate(self, year: int, through_month: int = 12, project_id: Optional[str] = None) -> List[YearSummary]:
        through_month = max(0, min(12, int(through_month)))
        sql = "SELECT CAST(substr(date, 6, 2) AS INTEGER), SUM(hours) FROM entry WHERE date LIKE ?"
        params: List[object] = [_month_pattern(year)]
        if project_id:
            sql += " AND project_id=?"
            params.append(project_id)
        sql += " GROUP BY substr(date, 6, 2)"
        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()
        sums: Dict[int, float] = {int(m): float(h or 0.0) for m, h in rows}
        return [
            YearSummary(month=m, month_name=calendar.month_name[m], hours=sums.get(m, 0.0))
            for m in range(1, through_month + 1)
        ]

    def monthly_detail(self, month: int, year: int, project_id: Optional[str] = None) -> List[MonthDetail]:
        if not 1 <= month <= 12:
            raise ValueError(f"Could not create date from {year}-{month}-1")
        sql = "SELECT date, project_name, hours FROM entry WHERE date LIKE ? AND hours != 0"
        params: List[object] = [_month_pattern(year, month)]
        if project_id:
            sql += " AND project_id=?"
            params.append(project_id)
        sql += " ORDER BY date ASC, project_name ASC"
        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [MonthDetail(dt.date.fromisoformat(d), name, float(h)) for d, name, h in rows]

    def get_active_project(self) -> Optional[Project]:
        with self._lock:
            row = self.conn.execute(
                "SELECT value FROM preference WHERE key=?", (self.ACTIVE_PROJECT_KEY,)
            ).fetchone()
            if not row:
                return None
            project_id = row[0]
            name_row = self.conn.execute(
                "SELECT project_name FROM entry WHERE project_id=? ORDER BY id DESC LIMIT 1",
                (project_id,),
            ).fetchone()
        return Project(project_id, name_row[0] if name_row else project_id)

    def set_active_project(self, project_id: str) -> None:
        with self._lock, self.conn:
            self.conn.execute(
                "INSERT INTO preference(key, value) VALUES (?,?) "
                "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
                (self.ACTIVE_PROJECT_KEY, project_id),
            )

    def clear_active_project(self) -> None:
        with self._lock, self.conn:
            self.conn.execute("DELETE FROM preference WHERE key=?", (self.ACTIVE_PROJECT_KEY,))


# -----------------------------
# Remote API
# -----------------------------
class RemoteError(RuntimeError):
    pass


RETRY_STATUSES = (429, 502, 503, 504)


def _parse_retry_after_seconds(resp: Optional[requests.Response]) -> Optional[int]:
    if resp is None or resp.headers is None:
        return None
    ra = resp.headers.get('Retry-After')
    if not ra:
        return None
    try:
        return max(0, int(float(ra)))
    except ValueError:
        return None


def _entry_from_payload(item: Dict[str, object]) -> Entry:
    """Map one camelCase entry from entries-bymonth onto an Entry."""
    try:
        year = int(item["year"])
        day = dt.date(year, 1, 1) + dt.timedelta(days=int(item["dayOfYear"]) - 1)
        if day.year != year:
            raise ValueError(f"day {item['dayOfYear']} outside {year}")
        project_id = str(item["projectId"])
        return Entry(
            date=day,
            hours=float(item["hours"]),
            project_id=project_id,
            project_name=str(item.get("projectName") or project_id),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise RemoteError(f"Malformed entry in response: {item!r}") from exc


class TimetApi:
    def __init__(self, endpoint: str, api_key: str, timeout: float = 5.0, max_total_wait: int = 30):
        endpoint = endpoint.strip().rstrip('/')
        if not endpoint.startswith(("http://", "https://")):
            endpoint = f"https://{endpoint}"
        self.endpoint = endpoint
        self.api_key = api_key
        self.timeout = timeout
        self.max_total_wait = max_total_wait

    @classmethod
    def from_config(cls, cfg: Config) -> "TimetApi":
        return cls(cfg.endpoint, cfg.api_key)

    def _session(self) -> requests.Session:
        s = requests.Session()
        s.headers["X-API-KEY"] = self.api_key
        s.headers["Accept"] = "application/json"
        return s

    def _sleep(self, seconds: float) -> None:
        logger.info("timet busy; waiting %ds", int(seconds))
        time.sleep(max(0.0, seconds))

    def _request(self, method: str, path: str, retry: bool = True, **kwargs) -> requests.Response:
        """Send one request, retrying rate limits and transient failures.

        Gives up with RemoteError once the next wait would exceed max_total_wait.
        With retry=False the first failure is raised without sleeping.
        """
        max_wait = self.max_total_wait if retry else 0
        url = f"{self.endpoint}/{path}"
        backoff = 1
        total_wait = 0
        session = self._session()
        try:
            while True:
                try:
                    resp = session.request(method, url, timeout=self.timeout, **kwargs)
                except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as exc:
                    wait_s = backoff
                    backoff = min(30, backoff * 2)
                    if total_wait + wait_s > max_wait:
                        raise RemoteError(f"{method} {url} failed: {exc}") from exc
                    self._sleep(wait_s)
                    total_wait += wait_s
                    continue
                except requests.exceptions.RequestException as exc:
                    raise RemoteError(f"{method} {url} failed: {exc}") from exc

                if resp.status_code in RETRY_STATUSES:
                    wait_s = _parse_retry_after_seconds(resp)
                    if wait_s is None:
                        wait_s = backoff
                        backoff = min(30, backoff * 2)
                    if total_wait + wait_s > max_wait:
                        raise RemoteError(f"{method} {url}: HTTP {resp.status_code}")
                    self._sleep(wait_s)
                    total_wait += wait_s
                    continue
                if resp.status_code >= 300:
                    logger.warning("%s %s HTTP %s: %s", method, url, resp.status_code, resp.text[:200])
                    raise RemoteError(f"{method} {url}: HTTP {resp.status_code}")
                return resp
        finally:
            session.close()

    def fetch_month(self, year: int, month: int) -> List[Entry]:
        """Return every entry of the given month; an absent entries list is an error."""
        resp = self._request("GET", "entries-bymonth", params={"year": year, "month": month})
        try:
            payload = resp.json()
        except ValueError as exc:
            raise RemoteError(f"Invalid JSON for {year}-{month:02d}") from exc
        items = payload.get("entries") if isinstance(payload, dict) else None
        if items is None:
            raise RemoteError(f"No entries in response for {year}-{month:02d}")
        entries = [_entry_from_payload(item) for item in items]
        logger.debug("Fetched %d entries for %d-%02d", len(entries), year, month)
        return entries

    def push_entry(self, project: Project, day: dt.date, hours: float) -> None:
        # Called from the key handler: one attempt, no backoff.
        self._request(
            "POST",
            "entries",
            retry=False,
            json={"projectId": project.project_id, "date": day.isoformat(), "hours": hours},
        )
        logger.info("Pushed %.2fh for %s on %s", hours, project.project_id, day.isoformat())


class MockApi:
    """Offline stand-in for TimetApi (MOCK_FETCH=1)."""

    PROJECTS = (
        Project("alpha", "Alpha"),
        Project("beta", "Beta"),
        Project("gamma", "Gamma"),
    )

    def __init__(self, today: Optional[dt.date] = None):
        self.today = today or dt.date.today()
        self.pushed: List[Entry] = []

    def fetch_month(self, year: int, month: int) -> List[Entry]:
        rows: List[Entry] = []
        for d in range(1, calendar.monthrange(year, month)[1] + 1):
            day = dt.date(year, month, d)
            if day > self.today or day.weekday() >= 5:
                continue
            proj = self.PROJECTS[(d + month) % len(self.PROJECTS)]
            rows.append(Entry(day, 7.5 if d % 4 else 4.0, proj.project_id, proj.project_name))
        return rows

    def push_entry(self, project: Project, day: dt.date, hours: float) -> None:
        self.pushed.append(Entry(day, hours, project.project_id, project.project_name))


# -----------------------------
# Messages
# -----------------------------
class ActiveView(enum.Enum):
    HOME = "home"
    LOADING = "loading"
    MONTH = "month"
    PROJECT_SELECT = "project_select"
    HOURS_ENTRY = "hours_entry"


class RunningState(enum.Enum):
    RUNNING = "running"
    DONE = "done"


class ProjectMessage(enum.Enum):
    OPEN = "open"
    RETURN = "return"


@dataclass(frozen=True)
class HoursOpen:
    project: Project


@dataclass(frozen=True)
class HoursValidationError:
    error: str


@dataclass(frozen=True)
class HoursReturn:
    pass


HoursMessage = Union[HoursOpen, HoursValidationError, HoursReturn]


@dataclass(frozen=True)
class View:
    view: ActiveView


@dataclass(frozen=True)
class Home:
    pass


@dataclass(frozen=True)
class DetailMonth:
    pass


@dataclass(frozen=True)
class RefreshStarted:
    pass


@dataclass(frozen=True)
class RefreshProgressing:
    month: int


@dataclass(frozen=True)
class RefreshCompleted:
    count: int = 0


@dataclass(frozen=True)
class RefreshFailed:
    reason: str


@dataclass(frozen=True)
class ActiveProject:
    project: Optional[Project]


@dataclass(frozen=True)
class Projects:
    msg: ProjectMessage


@dataclass(frozen=True)
class AddHours:
    msg: HoursMessage


@dataclass(frozen=True)
class EntryLogged:
    entry: Entry


@dataclass(frozen=True)
class Quit:
    pass


Message = Union[
    View, Home, DetailMonth, RefreshStarted, RefreshProgressing, RefreshCompleted,
    RefreshFailed, ActiveProject, Projects, AddHours, EntryLogged, Quit,
]


# -----------------------------
# Project selector
# -----------------------------
class ProjectModel:
    def __init__(self, store: TimetDB):
        self.store = store
        self.selected = 0
        self.projects: List[Project] = []

    def set_projects(self) -> None:
        self.projects = self.store.distinct_projects()
        self.selected = min(self.selected, max(0, len(self.projects) - 1))

    def selected_project(self) -> Optional[Project]:
        if not self.projects:
            return None
        return self.projects[self.selected]

    def set_active_project(self) -> Optional[Project]:
        project = self.selected_project()
        if project is not None:
            self.store.set_active_project(project.project_id)
        return project

    def next_row(self) -> None:
        self.selected = min(self.selected + 1, max(0, len(self.projects) - 1))

    def previous_row(self) -> None:
        self.selected = max(0, self.selected - 1)

    def handle_key(self, key: str) -> Optional[Message]:
        if key in ('H', 'escape'):
            return Home()
        if key in ('j', 'down'):
            self.next_row()
            return None
        if key in ('k', 'up'):
            self.previous_row()
            return None
        if key == 'x':
            return ActiveProject(None)
        if key == 'enter':
            project = self.set_active_project()
            return ActiveProject(project) if project is not None else None
        return None

    def update(self, msg: ProjectMessage) -> Optional[Message]:
        if msg is ProjectMessage.OPEN:
            self.selected = 0
            self.set_projects()
            return View(ActiveView.PROJECT_SELECT)
        if msg is ProjectMessage.RETURN:
            return View(ActiveView.PROJECT_SELECT)
        raise TypeError(f"Unhandled project message: {msg!r}")


# -----------------------------
# Hours entry
# -----------------------------
MAX_DAILY_HOURS = 24.0


class HoursError(ValueError):
    pass


def validate_hours(hours: float) -> None:
    if hours < 0 or hours > MAX_DAILY_HOURS:
        raise HoursError(f"Valid input 0h...24h (given: {hours:g})")


class HoursModel:
    """Numeric input popup that logs today's hours for one project."""

    def __init__(self, api, store: TimetDB, today: Callable[[], dt.date] = dt.date.today):
        self.api = api
        self.store = store
        self.today = today
        self.project: Optional[Project] = None
        self.input = ""
        self.cursor = 0
        self.error_message: Optional[str] = None

    def reset(self) -> None:
        self.input = ""
        self.cursor = 0
        self.error_message = None

    def input_to_float(self) -> float:
        if not self.input:
            raise HoursError("hours cannot be empty")
        try:
            return float(self.input)
        except ValueError as exc:
            raise HoursError(f"Not a number: {self.input}") from exc

    def add_hours(self, hours: float) -> Entry:
        validate_hours(hours)
        if self.project is None:
            raise HoursError("An active project must be set to log hours")
        day = self.today()
        self.api.push_entry(self.project, day, hours)
        return self.store.append_or_replace(self.project, day, hours)

    def enter_char(self, ch: str) -> None:
        if ch == '.':
            if not self.input or '.' in self.input:
                return
        elif ch not in string.digits:
            return
        self.input = self.input[:self.cursor] + ch + self.input[self.cursor:]
        self.move_cursor_right()

    def delete_char(self) -> None:
        if self.cursor == 0:
            return
        self.input = self.input[:self.cursor - 1] + self.input[self.cursor:]
        self.move_cursor_left()

    def move_cursor_left(self) -> None:
        self.cursor = max(0, self.cursor - 1)

    def move_cursor_right(self) -> None:
        self.cursor = min(len(self.input), self.cursor + 1)

    def handle_key(self, key: str) -> Optional[Message]:
        if key == 'enter':
            if not self.input:
                return None
            try:
                entry = self.add_hours(self.input_to_float())
            except (HoursError, RemoteError) as exc:
                logger.warning("Logging hours failed: %s", exc)
                return AddHours(HoursValidationError(str(exc)))
            self.reset()
            return EntryLogged(entry)
        if key == 'escape':
            return Home()
        if key == 'backspace':
            self.delete_char()
        elif key == 'left':
            self.move_cursor_left()
        elif key == 'right':
            self.move_cursor_right()
        elif len(key) == 1:
            self.enter_char(key)
        return None

    def update(self, msg: HoursMessage) -> Optional[Message]:
        if isinstance(msg, HoursOpen):
            self.project = msg.project
            self.reset()
            return View(ActiveView.HOURS_ENTRY)
        if isinstance(msg, HoursValidationError):
            self.error_message = msg.error
            return None
        if isinstance(msg, HoursReturn):
            return View(ActiveView.HOURS_ENTRY)
        raise TypeError(f"Unhandled hours message: {msg!r}")


# -----------------------------
# Application model
# -----------------------------
class TimetModel:
    def __init__(
        self,
        sender: "queue.Queue[Message]",
        api,
        store: TimetDB,
        config: Config,
        clock: Callable[[], dt.datetime] = dt.datetime.now,
    ):
        self.config = config
        self.sender = sender
        self.api = api
        self.store = store
        self._clock = clock
        self.now = clock()
        self.project_model = ProjectModel(store)
        self.hours_model = HoursModel(api, store)
        self.error_message: Optional[str] = None
        self.status_line = ""
        self.running_state = RunningState.RUNNING
        self.active_view = ActiveView.HOME
        self.active_project = store.get_active_project()
        self.active_year = self.now.year
        self.active_month = 0
        self.update_month = 0
        self.selected = 0
        self.overview: List[YearSummary] = []
        self.overview_month: List[MonthDetail] = []
        self.refresh_in_progress = False
        self.refresh_thread: Optional[threading.Thread] = None
        self.reload_overview()

    @property
    def running(self) -> bool:
        return self.running_state is RunningState.RUNNING

    @property
    def active_project_id(self) -> Optional[str]:
        return self.active_project.project_id if self.active_project else None

    def next_row(self) -> None:
        self.selected = min(self.selected + 1, max(0, len(self.overview) - 1))
        self.set_active_month()

    def previous_row(self) -> None:
        self.selected = max(0, self.selected - 1)
        self.set_active_month()

    def set_active_month(self) -> None:
        self.active_month = self.selected + 1
        self.overview_month = self.store.monthly_detail(self.active_month, self.active_year, self.active_project_id)

    def reload_overview(self) -> None:
        self.overview = self.store.yearly_aggregate(self.active_year, self.now.month, self.active_project_id)
        self.selected = max(0, min(self.selected, len(self.overview) - 1))
        if self.active_month:
            self.set_active_month()

    def refresh(self) -> bool:
        """Start the refresh thread; False when one is already running."""
        if self.refresh_in_progress:
            return False
        self.now = self._clock()
        self.active_year = self.now.year
        self.update_month = 0
        self.refresh_thread = threading.Thread(
            target=run_refresh,
            args=(self.api, self.store, self.sender, self.now.year, self.now.month),
            name="timet-refresh",
            daemon=True,
        )
        self.refresh_in_progress = True
        try:
            self.refresh_thread.start()
        except RuntimeError:
            self.refresh_in_progress = False
            raise
        return True


# -----------------------------
# Update
# -----------------------------
MAX_CASCADE = 32


def update(model: TimetModel, msg: Message) -> Optional[Message]:
    if isinstance(msg, View):
        model.active_view = msg.view
        return None
    if isinstance(msg, Home):
        model.error_message = None
        model.status_line = ""
        return View(ActiveView.HOME)
    if isinstance(msg, DetailMonth):
        model.set_active_month()
        return View(ActiveView.MONTH)
    if isinstance(msg, RefreshStarted):
        if not model.refresh():
            model.status_line = "Refresh already in progress"
        return View(ActiveView.LOADING)
    if isinstance(msg, RefreshProgressing):
        model.update_month = msg.month
        return View(ActiveView.LOADING)
    if isinstance(msg, RefreshCompleted):
        model.refresh_in_progress = False
        model.reload_overview()
        model.status_line = f"Refreshed {msg.count} entries"
        return View(ActiveView.HOME)
    if isinstance(msg, RefreshFailed):
        model.refresh_in_progress = False
        model.error_message = f"Could not refresh items: {msg.reason} - H(ome) or q(uit)"
        return None
    if isinstance(msg, ActiveProject):
        if msg.project is not None:
            model.store.set_active_project(msg.project.project_id)
        else:
            model.store.clear_active_project()
        model.active_project = msg.project
        model.reload_overview()
        return View(ActiveView.HOME)
    if isinstance(msg, Projects):
        return model.project_model.update(msg.msg)
    if isinstance(msg, AddHours):
        return model.hours_model.update(msg.msg)
    if isinstance(msg, EntryLogged):
        e = msg.entry
        model.reload_overview()
        model.status_line = f"Logged {e.hours:g}h for {e.project_name} on {e.date.isoformat()}"
        return View(ActiveView.HOME)
    if isinstance(msg, Quit):
        model.running_state = RunningState.DONE
        return None
    raise TypeError(f"Unhandled message: {msg!r}")


def settle(model: TimetModel, msg: Message) -> int:
    """Apply msg and every follow-up message it produces; return the step count."""
    pending = deque([msg])
    steps = 0
    while pending:
        steps += 1
        if steps > MAX_CASCADE:
            raise RuntimeError(f"Message cascade did not settle after {MAX_CASCADE} steps")
        follow_up = update(model, pending.popleft())
        if follow_up is not None:
            pending.append(follow_up)
    return steps


# -----------------------------
# Refresh worker
# -----------------------------
def run_refresh(api, store: TimetDB, sender: "queue.Queue[Message]", year: int, through_month: int) -> None:
    """Fetch months 1..through_month in order, then replace the cache in one go.

    Runs on the refresh thread and only talks back through sender.
    """
    logger.info("Refresh started for %d (months 1-%d)", year, through_month)
    entries: List[Entry] = []
    try:
        for month in range(1, through_month + 1):
            entries.extend(api.fetch_month(year, month))
            sender.put(RefreshProgressing(month))
        count = store.replace_all(entries)
    except Exception as exc:
        logger.exception("Refresh failed")
        sender.put(RefreshFailed(str(exc) or exc.__class__.__name__))
        return
    logger.info("Refresh finished; cached %d entries", count)
    sender.put(RefreshCompleted(count))


# -----------------------------
# Event loop
# -----------------------------
POLL_INTERVAL = 0.25


def handle_key(model: TimetModel, key: str) -> Optional[Message]:
    """Map a key press onto a message; navigation keys act on the model directly."""
    if key in ('q', 'c-c'):
        return Quit()
    if key == 'H':
        return Home()
    if key == 'l':
        if model.active_project is None:
            model.error_message = "An active project must be set to log hours"
            return None
        return AddHours(HoursOpen(model.active_project))

    view = model.active_view
    if view is ActiveView.HOURS_ENTRY:
        return model.hours_model.handle_key(key)
    if view is ActiveView.PROJECT_SELECT:
        return model.project_model.handle_key(key)
    if view in (ActiveView.HOME, ActiveView.MONTH):
        if key == 'p':
            return Projects(ProjectMessage.OPEN)
        if key == 'r':
            return RefreshStarted()
        if key in ('j', 'down'):
            model.next_row()
            return None
        if key in ('k', 'up'):
            model.previous_row()
            return None
        if key == 'enter':
            return DetailMonth()
    return None


class EventLoop:
    def __init__(self, model: TimetModel, receiver: "queue.Queue[Message]"):
        self.model = model
        self.receiver = receiver

    def _guarded(self, fn: Callable[[], object]) -> object:
        try:
            return fn()
        except StoreError as exc:
            logger.exception("Database error")
            self.model.error_message = f"Database error: {exc}"
            return None

    def dispatch(self, msg: Message) -> None:
        self._guarded(lambda: settle(self.model, msg))

    def drain(self) -> int:
        """Settle every message the refresh thread has queued, oldest first."""
        handled = 0
        while True:
            try:
                msg = self.receiver.get_nowait()
            except queue.Empty:
                return handled
            self.dispatch(msg)
            handled += 1

    def tick(self, key: Optional[str] = None) -> None:
        self.drain()
        if key is None or not self.model.running:
            return
        msg = self._guarded(lambda: handle_key(self.model, key))
        if msg is not None:
            self.dispatch(msg)


# -----------------------------
# UI helpers (fragments only)
# -----------------------------
Fragments = List[Tuple[str, str]]

BASE_STYLE = {
    "title": "bold #a5b4fc",
    "header": "bold bg:#312e81 #e0e7ff",
    "row": "bg:#1e1b4b #e0e7ff",
    "row.alt": "bg:#312e81 #e0e7ff",
    "selected": "bold bg:#a5b4fc #1e1b4b",
    "key": "#60a5fa",
    "muted": "#9ca3af",
    "error": "bold bg:#7f1d1d #fecaca",
    "status": "#a5b4fc",
    "footer": "#6366f1",
    "note": "bold #fecaca",
    "input": "bg:#1e1b4b #e0e7ff",
    "cursor": "reverse",
}

HELP_KEYS = [
    ("H", "Home screen"),
    ("q", "Quit application"),
    ("r", "Refresh database"),
    ("p", "Select project"),
    ("l", "Log hours"),
    ("k", "Up"),
    ("j", "Down"),
    ("Enter", "Select"),
]


def _ascii_bar(done: int, total: int, width: int = 40) -> str:
    pct = 0 if total <= 0 else int(done * 100 / total)
    fill = int(width * pct / 100)
    return f"[{'#'*fill}{'.'*(width-fill)}] {pct:3d}%"


def _row_style(i: int, selected: bool) -> str:
    if selected:
        return "class:selected"
    return "class:row.alt" if i % 2 else "class:row"


def build_overview_fragments(model: TimetModel) -> Fragments:
    scope = model.active_project.project_name if model.active_project else "all projects"
    frags: Fragments = [
        ("class:title", f" {model.active_year}  ({scope})"),
        ("", "\n\n"),
        ("class:header", f"   {'Month':<12}{'Hours':>9} "),
        ("", "\n"),
    ]
    if not model.overview:
        frags.append(("class:muted", "   Nothing to show. Press r to refresh."))
        return frags
    for i, row in enumerate(model.overview):
        is_sel = i == model.selected
        marker = " █ " if is_sel else "   "
        frags.append((_row_style(i, is_sel), f"{marker}{row.month_name:<12}{row.hours:>9.1f} "))
        frags.append(("", "\n"))
    total = sum(r.hours for r in model.overview)
    frags.append(("class:header", f"   {'Total':<12}{total:>9.1f} "))
    return frags


def build_month_fragments(model: TimetModel) -> Fragments:
    if not model.active_month:
        return []
    frags: Fragments = [
        ("class:title", f" {calendar.month_name[model.active_month]} {model.active_year}"),
        ("", "\n\n"),
        ("class:header", f" {'Date':<10} {'Project':<24} {'Hours':>6} "),
        ("", "\n"),
    ]
    if not model.overview_month:
        frags.append(("class:muted", " No hours logged."))
        return frags
    for i, row in enumerate(model.overview_month):
        name = row.project_name if len(row.project_name) <= 24 else row.project_name[:23] + "…"
        frags.append((_row_style(i, False), f" {row.date.strftime('%m/%d/%y'):<10} {name:<24} {row.hours:>6.1f} "))
        frags.append(("", "\n"))
    if frags[-1] == ("", "\n"):
        frags.pop()
    return frags


def build_fragments(model: TimetModel) -> Fragments:
    """Return the main body for the active view as (style, text) tuples."""
    frags = build_overview_fragments(model)
    if model.active_view is ActiveView.MONTH:
        frags.append(("", "\n\n"))
        frags.extend(build_month_fragments(model))
    return frags


def build_loading_fragments(model: TimetModel) -> Fragments:
    total = model.now.month
    return [
        ("", f"Rebuilding database ({model.update_month}/{total} months)\n\n"),
        ("class:status", _ascii_bar(model.update_month, total, width=30)),
    ]


def build_project_fragments(project_model: ProjectModel) -> Fragments:
    frags: Fragments = []
    if not project_model.projects:
        frags.append(("class:muted", " No projects cached. Refresh first.\n"))
    for i, p in enumerate(project_model.projects):
        is_sel = i == project_model.selected
        marker = " █ " if is_sel else "   "
        frags.append((_row_style(i, is_sel), f"{marker}{p.project_name:<30}"))
        frags.append(("", "\n"))
    frags.append(("", "\n"))
    frags.append(("class:key", " Set <Enter>   Unset <x>"))
    return frags


def build_hours_fragments(hours_model: HoursModel) -> Fragments:
    text = hours_model.input
    cur = hours_model.cursor
    under = text[cur] if cur < len(text) else " "
    project = hours_model.project.project_name if hours_model.project else "-"
    frags: Fragments = [
        ("", f" Project: {project}\n"),
        ("class:muted", " Hours 0.0...24.0\n\n"),
        ("class:input", " " + text[:cur]),
        ("class:cursor", under),
        ("class:input", text[cur + 1:] + " " * max(1, 12 - len(text))),
        ("", "\n\n"),
    ]
    if hours_model.error_message:
        frags.append(("class:error", f" {hours_model.error_message} "))
        frags.append(("", "\n"))
    frags.extend([
        ("class:note", " Note!"),
        ("", " Overrides daily hours for active project\n"),
        ("class:key", " <Enter> save   <Esc> cancel"),
    ])
    return frags


def build_help_fragments() -> Fragments:
    frags: Fragments = [("class:header", f" {'Key':<7}{'Operation':<18}"), ("", "\n")]
    for key, op in HELP_KEYS:
        frags.append(("class:key", f" {key:<7}{op:<18}"))
        frags.append(("", "\n"))
    return frags


def build_status_fragments(model: TimetModel) -> Fragments:
    if model.error_message:
        return [("class:error", f" {model.error_message} ")]
    if model.status_line:
        return [("class:status", f" {model.status_line}")]
    return []


def build_footer_fragments(model: TimetModel) -> Fragments:
    cfg = model.config
    return [("class:footer", f" release: {cfg.version}-{cfg.commit} | config: {cfg.config_location} ")]


def print_summary(model: TimetModel, out=None) -> None:
    out = out or sys.stdout
    scope = model.active_project.project_name if model.active_project else "all projects"
    print(f"{model.active_year} ({scope})", file=out)
    for row in model.overview:
        print(f"  {row.month_name:<12}{row.hours:>9.1f}", file=out)
    print(f"  {'Total':<12}{sum(r.hours for r in model.overview):>9.1f}", file=out)


# -----------------------------
# TUI
# -----------------------------
NAMED_KEYS = ('enter', 'backspace', 'escape', 'up', 'down', 'left', 'right', 'c-c')


def run_ui(model: TimetModel, loop: EventLoop) -> None:
    """Full-screen viewer; every key press and ticker beat goes through loop.tick."""
    app: Optional[Application] = None

    def _exit() -> None:
        if app is not None and not app.is_done:
            app.exit()

    def dispatch(key: str) -> None:
        loop.tick(key)
        if not model.running:
            _exit()

    kb = KeyBindings()

    def _bind(name: str) -> None:
        @kb.add(name)
        def _(event):
            dispatch(name)

    for name in NAMED_KEYS:
        _bind(name)

    @kb.add(Keys.Any)
    def _(event):
        ch = event.data or ""
        if len(ch) != 1 or not ch.isprintable():
            return
        dispatch(ch)

    def popup(get_fragments, title: str, view: ActiveView, width: int) -> Float:
        body = Window(
            content=FormattedTextControl(text=get_fragments),
            width=Dimension(preferred=width),
            wrap_lines=False,
            always_hide_cursor=True,
        )
        return Float(content=ConditionalContainer(
            Frame(body=body, title=title),
            filter=Condition(lambda: model.active_view is view),
        ))

    body = VSplit([
        Window(content=FormattedTextControl(text=lambda: build_fragments(model)), wrap_lines=False),
        Window(content=FormattedTextControl(text=build_help_fragments), width=Dimension.exact(27)),
    ])
    root = FloatContainer(
        content=HSplit([
            Window(content=FormattedTextControl(text=[("class:title", " timet ")]), height=1),
            body,
            Window(content=FormattedTextControl(text=lambda: build_status_fragments(model)), height=1),
            Window(content=FormattedTextControl(text=lambda: build_footer_fragments(model)), height=1),
        ]),
        floats=[
            popup(lambda: build_loading_fragments(model), "Refresh", ActiveView.LOADING, 50),
            popup(lambda: build_project_fragments(model.project_model), "Select active project", ActiveView.PROJECT_SELECT, 40),
            popup(lambda: build_hours_fragments(model.hours_model), "Todays hours", ActiveView.HOURS_ENTRY, 50),
        ],
    )

    app = Application(layout=Layout(root), key_bindings=kb, full_screen=True, style=Style.from_dict(BASE_STYLE))

    # Drains refresh messages while no key is pressed.
    async def _ticker():
        while True:
            await asyncio.sleep(POLL_INTERVAL)
            try:
                loop.tick(None)
            except Exception:
                logger.exception("Ticker failed")
            if not model.running:
                _exit()
                return
            app.invalidate()

    app.run(pre_run=lambda: app.create_background_task(_ticker()))


# -----------------------------
# CLI
# -----------------------------
def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="timet hours viewer")
    ap.add_argument("--config", help="Path to YAML config (default: <config dir>/config.yaml)")
    ap.add_argument("--db", help="Path to sqlite DB (default: <config dir>/timet.db)")
    ap.add_argument("--log-level", default="ERROR", help="File log level (DEBUG, INFO, WARNING, ERROR)")
    ap.add_argument("--log-file", help="Log file path (default: <config dir>/timet.log)")
    ap.add_argument("--no-ui", action="store_true", help="Print the yearly summary and exit")
    ap.add_argument("--refresh", action="store_true", help="With --no-ui: refresh the cache before printing")
    args = ap.parse_args(argv)

    mock = os.environ.get("MOCK_FETCH") == "1"
    try:
        cfg = load_config(args.config, require_key=not mock)
    except ConfigError as e:
        if not mock:
            print(str(e), file=sys.stderr)
            return 1
        cfg = Config(endpoint="mock", api_key="", config_location=locate_config_dir())

    setup_logging(args.log_file or os.path.join(cfg.config_location, "timet.log"), args.log_level)
    api = MockApi() if mock else TimetApi.from_config(cfg)

    db_path = args.db or os.path.join(cfg.config_location, "timet.db")
    try:
        directory = os.path.dirname(os.path.abspath(db_path))
        os.makedirs(directory, exist_ok=True)
        store = TimetDB(db_path)
    except (OSError, StoreError) as e:
        print(f"Cannot open cache {db_path}: {e}", file=sys.stderr)
        return 1

    sender: "queue.Queue[Message]" = queue.Queue()
    try:
        try:
            model = TimetModel(sender, api, store, cfg)
        except StoreError as e:
            logger.exception("Startup failed")
            print(f"Cannot read cache {db_path}: {e}", file=sys.stderr)
            return 1
        loop = EventLoop(model, sender)
        if args.no_ui:
            if args.refresh:
                run_refresh(api, store, sender, model.now.year, model.now.month)
                loop.drain()
                if model.error_message:
                    print(model.error_message, file=sys.stderr)
                    return 2
            print_summary(model)
            return 0
        run_ui(model, loop)
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
