import csv
import io
import time
from importlib import reload

import pytest
from fastapi.testclient import TestClient

from backend.visitor_tracker.tokens import encode_session_token

SITE_SECRET = "site-secret-key-for-visitor-tracker-tests-0001"
SESSION_SECRET = "tgfg-session-secret-for-visitor-tracker-tests"


@pytest.fixture
def app_module(tmp_path, monkeypatch):
    db_path = tmp_path / "tracker.db"
    monkeypatch.setenv("VISITOR_TRACKER_DATABASE_URL", f"sqlite:///{db_path}")
    monkeypatch.setenv("VISITOR_TRACKER_SECRET_KEY", SITE_SECRET)
    monkeypatch.setenv("VISITOR_TRACKER_SESSION_SECRET", SESSION_SECRET)
    monkeypatch.setenv("VISITOR_TRACKER_STATS_RATE_LIMIT", "3")
    monkeypatch.setenv("VISITOR_TRACKER_STATS_RATE_WINDOW", "60")
    monkeypatch.setenv("VISITOR_TRACKER_RETENTION_INTERVAL_SECONDS", "3600")
    monkeypatch.setenv("VISITOR_TRACKER_TRACK_GUESTS", "true")
    monkeypatch.setenv("VISITOR_TRACKER_ANONYMIZE_IP", "true")
    monkeypatch.setenv("VISITOR_TRACKER_EXCLUDED_ROLES", "administrator")

    from backend.visitor_tracker import database

    reload(database)

    from backend.visitor_tracker import main

    reload(main)
    main.reset_application_state()

    yield main

    main.reset_application_state()
    database.engine.dispose()


@pytest.fixture
def client(app_module):
    return TestClient(app_module.app)


def _session_cookie(email="gate@visitors.org", lifetime=600):
    token = encode_session_token({"email": email, "exp": int(time.time()) + lifetime}, SESSION_SECRET)
    return f"tgfg_session={token}"


def _forward(client, admin_headers, **body):
    body.setdefault("url", "https://www.visitors.org/")
    return client.post("/events", json=body, headers=admin_headers)


def test_collect_records_browser_view(client, admin_headers):
    response = client.post(
        "/collect",
        json={"url": "https://www.visitors.org/pricing"},
        headers={
            "Cookie": _session_cookie(),
            "X-Forwarded-For": "192.168.1.77, 10.0.0.1",
            "User-Agent": "pytest-browser",
        },
    )

    assert response.status_code == 202
    assert response.json() == {"recorded": True, "outcome": "recorded"}

    listing = client.get("/events", headers=admin_headers).json()
    assert listing["total"] == 1
    (item,) = listing["items"]
    assert item["email"] == "gate@visitors.org"
    assert item["ip"] == "192.168.1.0"
    assert item["user_id"] is None
    assert item["user_agent"] == "pytest-browser"
    assert item["event"] == "view"


def test_collect_falls_back_to_referer(client, admin_headers):
    response = client.post("/collect", json={}, headers={"Referer": "https://www.visitors.org/blog"})

    assert response.status_code == 202
    items = client.get("/events", headers=admin_headers).json()["items"]
    assert items[0]["url"] == "https://www.visitors.org/blog"


def test_collect_without_any_url_is_rejected(client):
    response = client.post("/collect", json={})

    assert response.status_code == 422


def test_collect_respects_guest_tracking(client, monkeypatch):
    monkeypatch.setenv("VISITOR_TRACKER_TRACK_GUESTS", "false")

    response = client.post("/collect", json={"url": "https://www.visitors.org/"})

    assert response.status_code == 202
    assert response.json() == {"recorded": False, "outcome": "suppressed_guest"}


def test_forwarded_event_with_excluded_role_is_suppressed(client, admin_headers):
    response = _forward(
        client,
        admin_headers,
        account={"id": 1, "email": "root@visitors.org", "roles": ["administrator"]},
    )

    assert response.status_code == 200
    assert response.json() == {"recorded": False, "outcome": "suppressed_role"}
    assert client.get("/events", headers=admin_headers).json()["total"] == 0


def test_forwarded_login_is_recorded(client, admin_headers):
    response = _forward(
        client,
        admin_headers,
        event="login",
        url=None,
        headers={"CF-Connecting-IP": "2001:db8:85a3::8a2e:370:7334"},
        account={"id": 12, "email": "writer@visitors.org", "roles": ["author"]},
    )

    assert response.json()["recorded"] is True
    (item,) = client.get("/events", headers=admin_headers).json()["items"]
    assert item["event"] == "login"
    assert item["user_id"] == 12
    assert item["url"] == "http://localhost/"
    assert item["ip"] == "2001:db8:85a3::"


def test_forwarded_login_without_account_is_rejected(client, admin_headers):
    response = _forward(client, admin_headers, event="login")

    assert response.status_code == 422


def test_admin_endpoints_require_token(client):
    assert client.get("/events").status_code == 401
    assert client.get("/stats").status_code == 401
    assert client.get("/export.csv").status_code == 401
    assert client.post("/events", json={"url": "https://www.visitors.org/"}).status_code == 401


def test_event_listing_pages(client, admin_headers):
    for index in range(55):
        _forward(client, admin_headers, url=f"https://www.visitors.org/{index}")

    first = client.get("/events", headers=admin_headers).json()
    second = client.get("/events", params={"page": 2}, headers=admin_headers).json()

    assert (first["total"], first["pages"], len(first["items"])) == (55, 2, 50)
    assert first["items"][0]["url"] == "https://www.visitors.org/54"
    assert [item["url"] for item in second["items"]][-1] == "https://www.visitors.org/0"


def test_stats_shape_and_guest_filter(client, admin_headers):
    _forward(client, admin_headers, url="https://www.visitors.org/a", account={"id": 3, "email": "m@visitors.org"})
    _forward(client, admin_headers, url="https://www.visitors.org/a")
    _forward(client, admin_headers, url="https://www.visitors.org/b")

    with_guests = client.get("/stats", params={"guests": 1, "event": ""}, headers=admin_headers)
    members_only = client.get("/stats", params={"guests": 0}, headers=admin_headers)

    assert with_guests.status_code == 200
    body = with_guests.json()
    assert set(body) == {"kpis", "daily", "top_pages"}
    assert body["kpis"] == {"total": 3, "views": 3, "logins": 0, "unique": 1}
    assert body["top_pages"][0] == {"url": "https://www.visitors.org/a", "count": 2}
    assert len(body["daily"]) == 1
    assert set(body["daily"][0]) == {"day", "count"}

    assert members_only.json()["kpis"] == {"total": 1, "views": 1, "logins": 0, "unique": 1}


def test_stats_date_filters(client, admin_headers):
    _forward(client, admin_headers)

    response = client.get(
        "/stats", params={"from": "2030-01-02", "to": "2030-01-01", "guests": 1}, headers=admin_headers
    )

    assert response.json()["kpis"]["total"] == 0


@pytest.mark.parametrize("params", [{"from": "yesterday"}, {"to": "2024-13-01"}, {"event": "click"}])
def test_stats_rejects_bad_filters(client, admin_headers, params):
    assert client.get("/stats", params=params, headers=admin_headers).status_code == 422


def test_stats_rate_limit_enforced(client, admin_headers):
    for _ in range(3):
        assert client.get("/stats", headers=admin_headers).status_code == 200

    response = client.get("/stats", headers=admin_headers)

    assert response.status_code == 429
    assert response.json()["detail"] == "Rate limit exceeded"


def test_export_csv(client, admin_headers):
    _forward(client, admin_headers, url="https://www.visitors.org/a", remote_addr="192.168.1.77")

    response = client.get("/export.csv", headers=admin_headers)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert "visitor-logs.csv" in response.headers["content-disposition"]
    rows = list(csv.reader(io.StringIO(response.text)))
    assert rows[0] == ["ID", "Timestamp", "Email", "IP", "Event", "URL", "User-Agent"]
    assert rows[1][3:6] == ["192.168.1.0", "view", "https://www.visitors.org/a"]


def test_privacy_export_and_erase(client, admin_headers):
    account = {"id": 8, "email": "gone@visitors.org"}
    for index in range(3):
        _forward(client, admin_headers, url=f"https://www.visitors.org/{index}", account=account)
    _forward(client, admin_headers, url="https://www.visitors.org/guest")

    exported = client.get("/privacy/export", params={"email": "gone@visitors.org"}, headers=admin_headers).json()
    assert exported["done"] is True
    assert [item["url"] for item in exported["data"]] == [f"https://www.visitors.org/{index}" for index in range(3)]

    erased = client.post("/privacy/erase", json={"email": "gone@visitors.org"}, headers=admin_headers).json()
    assert erased == {"items_removed": True, "items_retained": False, "removed": 3, "done": True}
    assert client.get("/events", headers=admin_headers).json()["total"] == 1


def test_clear_events(client, admin_headers):
    _forward(client, admin_headers)
    _forward(client, admin_headers)

    response = client.delete("/events", headers=admin_headers)

    assert response.json() == {"deleted": 2}
    assert client.get("/events", headers=admin_headers).json()["total"] == 0


def test_session_status(client, admin_headers):
    detected = client.get("/session", headers={**admin_headers, "Cookie": _session_cookie()})
    missing = client.get("/session", headers=admin_headers)
    expired = client.get("/session", headers={**admin_headers, "Cookie": _session_cookie(lifetime=-5)})

    assert detected.json() == {"detected": True, "email": "gate@visitors.org"}
    assert missing.json() == {"detected": False, "email": None}
    assert expired.json()["detected"] is False


def test_store_failure_maps_to_service_unavailable(client, admin_headers):
    from backend.visitor_tracker import database

    database.Base.metadata.drop_all(bind=database.engine)

    response = client.get("/stats", headers=admin_headers)

    assert response.status_code == 503
    assert response.json() == {"detail": "Event store unavailable"}
