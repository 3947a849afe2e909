"""Tests for the HTTP handlers."""

import pytest
from fastapi.testclient import TestClient


@pytest.fixture
def client(repository, fake_mail, background_config):
    from mailfeed.server import create_app

    app = create_app(
        repository=repository, mail_client=fake_mail, config=background_config, autostart=False, init_db=False
    )
    with TestClient(app) as test_client:
        yield test_client


def _create_account(client, name="Lists"):
    response = client.post(
        "/api/v1/accounts",
        json={"name": name, "host": "imap.example.com", "username": "reader", "password": "secret"},
    )
    assert response.status_code == 200
    return response.json()


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["background_state"] == "Stopped"


def test_account_rule_feed_roundtrip(client):
    account = _create_account(client)
    assert "password" not in account

    rule = client.post(
        "/api/v1/rules",
        json={"account_id": account["id"], "name": "Python", "to_address": "python-list@example.com"},
    )
    assert rule.status_code == 200

    feed = client.post("/api/v1/feeds", json={"rule_id": rule.json()["id"], "title": "Python list"})
    assert feed.status_code == 200
    assert feed.json()["max_items"] == 100
    assert feed.json()["item_count"] == 0

    assert len(client.get("/api/v1/accounts").json()) == 1
    assert len(client.get("/api/v1/rules", params={"account_id": account["id"]}).json()) == 1
    assert len(client.get("/api/v1/feeds").json()) == 1


def test_rule_without_predicate_is_422(client):
    account = _create_account(client)

    response = client.post("/api/v1/rules", json={"account_id": account["id"], "name": "Everything"})

    assert response.status_code == 422


def test_feed_with_min_over_max_is_422(client):
    account = _create_account(client)
    rule = client.post(
        "/api/v1/rules", json={"account_id": account["id"], "name": "Python", "subject_contains": "python"}
    ).json()

    response = client.post(
        "/api/v1/feeds", json={"rule_id": rule["id"], "title": "Bad", "max_items": 5, "min_items": 6}
    )

    assert response.status_code == 422


def test_duplicate_account_is_400(client):
    _create_account(client)

    response = client.post(
        "/api/v1/accounts",
        json={"name": "Lists", "host": "imap.example.com", "username": "reader", "password": "secret"},
    )

    assert response.status_code == 400


def test_delete_account(client):
    account = _create_account(client)

    assert client.delete(f"/api/v1/accounts/{account['id']}").status_code == 200
    assert client.delete(f"/api/v1/accounts/{account['id']}").status_code == 404


def test_background_lifecycle(client):
    status = client.get("/api/v1/background/status").json()
    assert status["state"] == "Stopped"
    assert status["config"]["max_concurrent_accounts"] == 2

    started = client.post("/api/v1/background/start", json={"force": False}).json()
    assert started == {"success": True, "message": "Background processing started"}
    assert client.get("/api/v1/background/status").json()["state"] == "Running"

    again = client.post("/api/v1/background/start").json()
    assert again["success"] is False

    stopped = client.post("/api/v1/background/stop").json()
    assert stopped["success"] is True
    assert client.get("/api/v1/background/status").json()["state"] == "Stopped"


def test_process_unknown_account_is_404(client):
    response = client.post("/api/v1/background/process/missing")

    assert response.status_code == 404


def test_process_while_stopped_reports_failure(client):
    account = _create_account(client)

    response = client.post(f"/api/v1/background/process/{account['id']}")

    assert response.status_code == 200
    assert response.json()["success"] is False


def test_process_all_while_running(client):
    _create_account(client)
    client.post("/api/v1/background/start")

    response = client.post("/api/v1/background/process-all")

    assert response.status_code == 200
    assert response.json()["success"] is True
    client.post("/api/v1/background/stop")
