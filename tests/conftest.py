from __future__ import annotations

import json

import pytest

from cache_layer import cache_clear
from utils import iso_utc_now


@pytest.fixture()
def app_client(tmp_path, monkeypatch):
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'portal_test.db'}")
    monkeypatch.setenv("AUTH_ALLOW_TEST_TOKENS", "1")
    monkeypatch.setenv("ENABLE_SCHEDULER", "0")
    monkeypatch.setenv("INTERNAL_CRON_TOKEN", "cron-secret")
    monkeypatch.setenv("RATE_LIMIT_GLOBAL", "0")
    monkeypatch.setenv("RATE_LIMIT_DEFAULT", "0")
    monkeypatch.setenv("RATE_LIMIT_LOGIN", "0")

    cache_clear()
    from portal_app import create_app

    app = create_app()
    app.config["TESTING"] = True
    with app.test_client() as client:
        yield app, client
    cache_clear()


def seed_user(*, user_id: str, email: str, role: str, status: str = "ACTIVE") -> None:
    from db import SessionLocal
    from models import User

    now = iso_utc_now()
    with SessionLocal() as db:
        db.add(
            User(
                userId=user_id,
                email=email,
                fullName="Test User",
                role=role,
                status=status,
                lastLoginAt="",
                createdAt=now,
                createdBy="TEST",
                updatedAt=now,
                updatedBy="TEST",
            )
        )
        db.commit()


def api(client, payload: dict):
    return client.post("/api", data=json.dumps(payload), content_type="text/plain; charset=utf-8")


def call(client, action: str, token, data: dict | None = None):
    res = api(client, {"action": action, "token": token, "data": data or {}})
    return res, res.get_json()


def login(client, *, email: str) -> str:
    res = api(client, {"action": "LOGIN_EXCHANGE", "token": None, "data": {"idToken": f"TEST:{email}"}})
    assert res.status_code == 200
    body = res.get_json()
    assert body["ok"] is True
    return body["data"]["sessionToken"]


def seed_and_login(client, role: str) -> str:
    email = f"{role.lower()}@example.com"
    seed_user(user_id=f"USR-{role}", email=email, role=role)
    return login(client, email=email)


def seed_candidate(*, candidate_id: str, requirement_id: str, status: str, **fields) -> None:
    from db import SessionLocal
    from models import Candidate

    now = iso_utc_now()
    with SessionLocal() as db:
        db.add(
            Candidate(
                candidateId=candidate_id,
                requirementId=requirement_id,
                candidateName=fields.pop("candidateName", "Test Candidate"),
                status=status,
                createdAt=now,
                createdBy="TEST",
                updatedAt=now,
                updatedBy="TEST",
                **fields,
            )
        )
        db.commit()
