import re
import sqlite3

import pytest
from fastapi.testclient import TestClient

import database.db as db
import schooldesk.config as config
import schooldesk.main as main
import schooldesk.services.factory_reset as factory_reset
from schooldesk.services.factory_reset import get_verification_gate
from schooldesk.services.verification import VerificationGate
from schooldesk.services.verification_store import InMemoryVerificationStore


class CapturingSender:
    def __init__(self):
        self.fail_with: str | None = None
        self.messages: list[tuple[str, str]] = []

    def send(self, destination, message, config):
        self.messages.append((destination, message))
        if self.fail_with:
            return {"success": False, "error": self.fail_with}
        return {"success": True, "error": None}

    def last_code(self) -> str:
        match = re.search(r"is: (\d{6})\.", self.messages[-1][1])
        assert match, self.messages[-1][1]
        return match.group(1)


@pytest.fixture()
def sender():
    return CapturingSender()


@pytest.fixture()
def client(tmp_path, monkeypatch, sender):
    test_db = tmp_path / "schooldesk_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)

    db.create_tables()

    gate = VerificationGate(InMemoryVerificationStore(), sender)
    main.app.dependency_overrides[get_verification_gate] = lambda: gate

    with TestClient(main.app) as c:
        yield c

    main.app.dependency_overrides.clear()


@pytest.fixture()
def auth_headers(client):
    res = client.post(
        "/auth/login",
        json={
            "username": config.ADMIN_USERNAME,
            "password": config.ADMIN_PASSWORD,
        },
    )
    assert res.status_code == 200
    token = res.json()["access_token"]
    return {"Authorization": f"Bearer {token}"}


def _seed_school_data() -> None:
    conn = db.connect_db()
    cur = conn.cursor()
    cur.execute("INSERT INTO families (father_name, phone) VALUES (?, ?)", ("Ahmed Khan", "03001112233"))
    family_id = cur.lastrowid
    cur.execute(
        "INSERT INTO students (family_id, full_name, class_name) VALUES (?, ?, ?)",
        (family_id, "Ali Khan", "5"),
    )
    student_id = cur.lastrowid
    cur.execute(
        "INSERT INTO attendance (student_id, date, status) VALUES (?, ?, ?)",
        (student_id, "2026-02-10", "Absent"),
    )
    cur.execute(
        "INSERT INTO fee_payments (family_id, amount, paid_on) VALUES (?, ?, ?)",
        (family_id, 4500, "2026-02-01"),
    )
    cur.execute("INSERT INTO teachers (full_name) VALUES (?)", ("Sara Malik",))
    cur.execute(
        "INSERT INTO expenses (category, amount, spent_on) VALUES (?, ?, ?)",
        ("Utilities", 12000, "2026-02-03"),
    )
    conn.commit()
    conn.close()


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_verification_config(client):
    res = client.get("/config/verification")
    assert res.status_code == 200
    payload = res.json()
    assert payload["code_length"] == 6
    assert payload["expiry_seconds"] == 300


def test_login_rejects_invalid_credentials(client):
    res = client.post(
        "/auth/login",
        json={"username": config.ADMIN_USERNAME, "password": "wrong-password"},
    )
    assert res.status_code == 401
    assert res.json()["detail"] == "Invalid admin credentials."


def test_auth_me(client, auth_headers):
    res = client.get("/auth/me", headers=auth_headers)
    assert res.status_code == 200
    assert res.json()["username"] == config.ADMIN_USERNAME
    assert res.json()["role"] == "admin"


def test_admin_endpoints_require_session(client):
    for method, path in (
        ("get", "/settings"),
        ("get", "/admin/data/summary"),
        ("post", "/admin/factory-reset/request"),
        ("get", "/admin/factory-reset/history"),
    ):
        res = getattr(client, method)(path)
        assert res.status_code == 401
        assert res.json()["detail"] == "Missing bearer token."

    res = client.post("/admin/factory-reset/confirm", json={"code": "123456"})
    assert res.status_code == 401


def test_settings_hide_credentials(client, auth_headers):
    res = client.put(
        "/settings",
        json={
            "school_name": "Spirit School",
            "owner_phone": " 0300 7654321 ",
            "whatsapp_provider": "ultramsg",
            "whatsapp_api_key": "secret-token",
        },
        headers=auth_headers,
    )
    assert res.status_code == 200
    body = res.json()
    assert body["school_name"] == "Spirit School"
    assert body["owner_phone"] == "0300 7654321"
    assert body["whatsapp_api_key_set"] is True
    assert body["whatsapp_access_token_set"] is False
    assert "whatsapp_api_key" not in body

    res = client.get("/settings", headers=auth_headers)
    assert res.json()["school_name"] == "Spirit School"
    assert db.get_school_settings()["whatsapp_api_key"] == "secret-token"


def test_settings_reject_unknown_provider(client, auth_headers):
    res = client.put("/settings", json={"whatsapp_provider": "telegram"}, headers=auth_headers)
    assert res.status_code == 422


def test_factory_reset_flow(client, auth_headers, sender):
    db.update_school_settings({"school_name": "Spirit School", "owner_phone": "03007654321"})
    _seed_school_data()

    summary = client.get("/admin/data/summary", headers=auth_headers).json()
    assert summary["total"] == 6

    res = client.post("/admin/factory-reset/request", headers=auth_headers)
    assert res.status_code == 200
    assert res.json()["ok"] is True
    assert res.json()["expires_in_seconds"] == 300

    destination, message = sender.messages[-1]
    assert destination == "03007654321"
    assert "resetting all data for Spirit School" in message
    code = sender.last_code()

    wrong = "000000" if code != "000000" else "111111"
    res = client.post("/admin/factory-reset/confirm", json={"code": wrong}, headers=auth_headers)
    assert res.status_code == 400
    assert res.json()["detail"] == "Invalid code."
    assert client.get("/admin/data/summary", headers=auth_headers).json()["total"] == 6

    res = client.post("/admin/factory-reset/confirm", json={"code": code}, headers=auth_headers)
    assert res.status_code == 200
    body = res.json()
    assert body["ok"] is True
    assert body["cleared"]["students"] == 1
    assert body["cleared"]["families"] == 1
    assert sum(body["cleared"].values()) == 6

    summary = client.get("/admin/data/summary", headers=auth_headers).json()
    assert summary["total"] == 0

    # Admin and settings survive the wipe.
    assert db.get_school_settings()["school_name"] == "Spirit School"
    assert client.get("/auth/me", headers=auth_headers).status_code == 200

    res = client.post("/admin/factory-reset/confirm", json={"code": code}, headers=auth_headers)
    assert res.status_code == 400
    assert res.json()["detail"] == "No OTP has been sent or it has already been used."


def test_confirm_rejects_malformed_code(client, auth_headers):
    for bad in ("12345", "1234567", "12a456", ""):
        res = client.post("/admin/factory-reset/confirm", json={"code": bad}, headers=auth_headers)
        assert res.status_code == 422


def test_confirm_without_request_keeps_data(client, auth_headers):
    _seed_school_data()
    res = client.post("/admin/factory-reset/confirm", json={"code": "123456"}, headers=auth_headers)
    assert res.status_code == 400
    assert res.json()["detail"] == "No OTP has been sent or it has already been used."
    assert client.get("/admin/data/summary", headers=auth_headers).json()["total"] == 6


def test_request_falls_back_to_school_phone(client, auth_headers, sender):
    db.update_school_settings({"school_phone": "+92 300 1234567", "owner_phone": ""})
    res = client.post("/admin/factory-reset/request", headers=auth_headers)
    assert res.status_code == 200
    assert sender.messages[-1][0] == "+92 300 1234567"


def test_delivery_failure_returns_502_and_invalidates_code(client, auth_headers, sender):
    _seed_school_data()
    sender.fail_with = "No Active WhatsApp Provider is Configured."

    res = client.post("/admin/factory-reset/request", headers=auth_headers)
    assert res.status_code == 502
    assert res.json()["detail"] == "Failed to send OTP: No Active WhatsApp Provider is Configured."

    code = sender.last_code()
    res = client.post("/admin/factory-reset/confirm", json={"code": code}, headers=auth_headers)
    assert res.status_code == 400
    assert res.json()["detail"] == "No OTP has been sent or it has already been used."
    assert client.get("/admin/data/summary", headers=auth_headers).json()["total"] == 6


def test_request_without_any_phone_fails(client, auth_headers, sender):
    db.update_school_settings({"school_phone": "", "owner_phone": ""})
    res = client.post("/admin/factory-reset/request", headers=auth_headers)
    assert res.status_code == 502
    assert sender.messages == []


def test_reset_history_records_each_step(client, auth_headers, sender):
    client.post("/admin/factory-reset/request", headers=auth_headers)
    code = sender.last_code()
    wrong = "000000" if code != "000000" else "111111"
    client.post("/admin/factory-reset/confirm", json={"code": wrong}, headers=auth_headers)
    client.post("/admin/factory-reset/confirm", json={"code": code}, headers=auth_headers)

    res = client.get("/admin/factory-reset/history", headers=auth_headers)
    assert res.status_code == 200
    rows = res.json()["rows"]
    assert [(r["event_type"], r["reason"]) for r in rows] == [
        ("RESET_CONFIRMED", "VERIFIED"),
        ("RESET_REJECTED", "CODE_MISMATCH"),
        ("OTP_REQUESTED", "CODE_SENT"),
    ]
    assert all(r["actor"] == config.ADMIN_USERNAME for r in rows)


def test_verification_config_reports_active_code(client, auth_headers, sender):
    assert client.get("/config/verification").json()["active_code"] is False

    client.post("/admin/factory-reset/request", headers=auth_headers)
    assert client.get("/config/verification").json()["active_code"] is True

    client.post("/admin/factory-reset/confirm", json={"code": sender.last_code()}, headers=auth_headers)
    assert client.get("/config/verification").json()["active_code"] is False


def test_storage_failure_during_wipe_returns_503_and_is_audited(client, auth_headers, sender, monkeypatch):
    _seed_school_data()

    def broken_clear():
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(factory_reset, "clear_school_data", broken_clear)

    client.post("/admin/factory-reset/request", headers=auth_headers)
    res = client.post("/admin/factory-reset/confirm", json={"code": sender.last_code()}, headers=auth_headers)
    assert res.status_code == 503
    assert res.json()["detail"].startswith("Factory reset failed")
    assert client.get("/admin/data/summary", headers=auth_headers).json()["total"] == 6

    rows = client.get("/admin/factory-reset/history", headers=auth_headers).json()["rows"]
    assert rows[0]["event_type"] == "RESET_FAILED"
    assert rows[0]["detail"] == {"error": "database is locked"}
