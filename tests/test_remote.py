import datetime as dt

import pytest
import requests

import timet_viewer as tv
from conftest import ALPHA


class DummyResponse:
    def __init__(self, status_code=200, payload=None, headers=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        self.text = text

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class DummySession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []
        self.headers = {}
        self.closed = False

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        nxt = self.responses.pop(0)
        if isinstance(nxt, Exception):
            raise nxt
        return nxt

    def close(self):
        self.closed = True


def _api(monkeypatch, responses, **kwargs):
    api = tv.TimetApi("timet.test/api/", "secret", **kwargs)
    session = DummySession(responses)
    waits = []
    monkeypatch.setattr(api, '_session', lambda: session)
    monkeypatch.setattr(api, '_sleep', lambda seconds: waits.append(seconds))
    return api, session, waits


def _item(day_of_year, hours=7.5, project_id="p-a", name="Alpha", year=2024):
    return {
        "dayOfYear": day_of_year,
        "year": year,
        "month": 1,
        "hours": hours,
        "projectName": name,
        "projectId": project_id,
    }


def test_endpoint_gets_scheme_and_loses_trailing_slash():
    assert tv.TimetApi("timet.test/api/", "k").endpoint == "https://timet.test/api"
    assert tv.TimetApi("http://localhost:8080", "k").endpoint == "http://localhost:8080"


def test_session_carries_api_key_header():
    session = tv.TimetApi("timet.test", "secret")._session()
    try:
        assert session.headers["X-API-KEY"] == "secret"
    finally:
        session.close()


def test_fetch_month_parses_entries(monkeypatch):
    payload = {"entries": [_item(1), _item(40, hours=3, project_id="p-b", name="Beta")]}
    api, session, _ = _api(monkeypatch, [DummyResponse(payload=payload)])
    entries = api.fetch_month(2024, 1)

    method, url, kwargs = session.calls[0]
    assert method == "GET"
    assert url == "https://timet.test/api/entries-bymonth"
    assert kwargs["params"] == {"year": 2024, "month": 1}
    assert entries[0] == tv.Entry(dt.date(2024, 1, 1), 7.5, "p-a", "Alpha")
    assert entries[1].date == dt.date(2024, 2, 9)
    assert entries[1].project.project_name == "Beta"
    assert session.closed


def test_fetch_month_empty_list_is_fine(monkeypatch):
    api, _, _ = _api(monkeypatch, [DummyResponse(payload={"entries": []})])
    assert api.fetch_month(2024, 2) == []


@pytest.mark.parametrize('payload', [{"entries": None}, {}, ["not", "a", "dict"]])
def test_fetch_month_missing_entries_is_error(monkeypatch, payload):
    api, _, _ = _api(monkeypatch, [DummyResponse(payload=payload)])
    with pytest.raises(tv.RemoteError):
        api.fetch_month(2024, 1)


def test_fetch_month_invalid_json(monkeypatch):
    api, _, _ = _api(monkeypatch, [DummyResponse(payload=ValueError("bad json"))])
    with pytest.raises(tv.RemoteError, match="Invalid JSON"):
        api.fetch_month(2024, 1)


@pytest.mark.parametrize('item', [
    {"dayOfYear": 1, "year": 2024, "hours": 1},
    _item(367, year=2023),
    _item("x"),
])
def test_fetch_month_malformed_entry(monkeypatch, item):
    api, _, _ = _api(monkeypatch, [DummyResponse(payload={"entries": [item]})])
    with pytest.raises(tv.RemoteError, match="Malformed"):
        api.fetch_month(2024, 1)


def test_retry_after_header_is_honoured(monkeypatch):
    api, session, waits = _api(monkeypatch, [
        DummyResponse(429, headers={"Retry-After": "3"}),
        DummyResponse(payload={"entries": [_item(2)]}),
    ])
    assert len(api.fetch_month(2024, 1)) == 1
    assert waits == [3]
    assert len(session.calls) == 2


def test_timeouts_back_off_exponentially(monkeypatch):
    api, _, waits = _api(monkeypatch, [
        requests.exceptions.Timeout("slow"),
        DummyResponse(503),
        DummyResponse(payload={"entries": []}),
    ])
    assert api.fetch_month(2024, 1) == []
    assert waits == [1, 2]


def test_backoff_gives_up_after_max_total_wait(monkeypatch):
    api, _, waits = _api(monkeypatch, [DummyResponse(502)] * 10, max_total_wait=3)
    with pytest.raises(tv.RemoteError, match="HTTP 502"):
        api.fetch_month(2024, 1)
    assert sum(waits) <= 3


def test_client_error_is_not_retried(monkeypatch):
    api, session, waits = _api(monkeypatch, [DummyResponse(401, text="unauthorized")])
    with pytest.raises(tv.RemoteError, match="401"):
        api.fetch_month(2024, 1)
    assert waits == []
    assert len(session.calls) == 1


def test_other_request_errors_are_wrapped(monkeypatch):
    api, _, _ = _api(monkeypatch, [requests.exceptions.InvalidURL("nope")])
    with pytest.raises(tv.RemoteError):
        api.fetch_month(2024, 1)


def test_push_entry_posts_json(monkeypatch):
    api, session, _ = _api(monkeypatch, [DummyResponse(201)])
    api.push_entry(ALPHA, dt.date(2024, 3, 15), 6.5)
    method, url, kwargs = session.calls[0]
    assert (method, url) == ("POST", "https://timet.test/api/entries")
    assert kwargs["json"] == {"projectId": "p-a", "date": "2024-03-15", "hours": 6.5}


@pytest.mark.parametrize('failure', [
    requests.exceptions.ConnectTimeout("timeout"),
    DummyResponse(503),
    DummyResponse(429, headers={"Retry-After": "1"}),
])
def test_push_entry_makes_a_single_attempt(monkeypatch, failure):
    api, session, waits = _api(monkeypatch, [failure, DummyResponse(201)])
    with pytest.raises(tv.RemoteError):
        api.push_entry(ALPHA, dt.date(2024, 3, 15), 6.5)
    assert waits == []
    assert len(session.calls) == 1


def test_logging_hours_never_sleeps_on_key_handler(monkeypatch, store):
    api = tv.TimetApi("timet.test", "secret")
    session = DummySession([requests.exceptions.ConnectTimeout("timeout")] * 5)
    slept = []
    monkeypatch.setattr(api, '_session', lambda: session)
    monkeypatch.setattr(tv.time, 'sleep', lambda seconds: slept.append(seconds))
    hm = tv.HoursModel(api, store, today=lambda: dt.date(2024, 3, 15))
    hm.update(tv.HoursOpen(ALPHA))
    hm.handle_key('8')

    msg = hm.handle_key('enter')

    assert isinstance(msg, tv.AddHours)
    assert "timeout" in msg.msg.error
    assert slept == []
    assert len(session.calls) == 1
    assert store.entry_count() == 0


@pytest.mark.parametrize('header,expected', [("5", 5), ("2.7", 2), ("-4", 0), ("soon", None), (None, None)])
def test_parse_retry_after(header, expected):
    headers = {"Retry-After": header} if header is not None else {}
    assert tv._parse_retry_after_seconds(DummyResponse(429, headers=headers)) == expected


def test_mock_api_skips_weekends_and_future_days():
    api = tv.MockApi(today=dt.date(2024, 3, 15))
    entries = api.fetch_month(2024, 3)
    assert entries
    assert all(e.date.weekday() < 5 and e.date <= dt.date(2024, 3, 15) for e in entries)
    assert api.fetch_month(2024, 4) == []
    api.push_entry(ALPHA, dt.date(2024, 3, 15), 2)
    assert api.pushed[0].project == ALPHA
