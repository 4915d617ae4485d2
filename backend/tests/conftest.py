from __future__ import annotations

import os
import random
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["PASSWORD_PBKDF2_ITERATIONS"] = "1000"
os.environ["SEED_SAMPLE_CONTESTS"] = "false"

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest
from fastapi.testclient import TestClient

from spl.db import Base, SessionLocal, engine
from spl.main import app
from spl.market import MarketDataService, get_market
from spl.seed import seed

ADMIN_USERNAME = "sandbox-admin"
ADMIN_PASSWORD = "sandbox-password"

# One stock per slot: captain, all-rounder, vice-captain, wicket-keeper, 4 batsmen, 3 bowlers.
LINEUP: list[tuple[str, str]] = [
    ("AAPL", "captain"),
    ("MSFT", "all-rounder"),
    ("GOOGL", "vice-captain"),
    ("TSLA", "wicket-keeper"),
    ("AMZN", "batsman"),
    ("NVDA", "batsman"),
    ("META", "batsman"),
    ("JPM", "batsman"),
    ("V", "bowler"),
    ("JNJ", "bowler"),
    ("KO", "bowler"),
]


class FlatRandom(random.Random):
    """No price movement: quotes equal the catalog prices."""

    def uniform(self, a: float, b: float) -> float:
        return 0.0

    def random(self) -> float:
        return 0.5


@pytest.fixture(autouse=True)
def fresh_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        seed(db)
    finally:
        db.close()
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def market() -> MarketDataService:
    service = MarketDataService(cache_seconds=3600, rng=FlatRandom())
    app.dependency_overrides[get_market] = lambda: service
    return service


@pytest.fixture
def client(market):
    with TestClient(app) as test_client:
        yield test_client


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def register(client) -> Callable[..., dict[str, Any]]:
    def _register(username: str, password: str = "password123", email: str | None = None) -> dict[str, Any]:
        response = client.post(
            "/auth/register",
            json={"username": username, "password": password, "email": email},
        )
        assert response.status_code == 200, response.text
        body = response.json()
        return {"token": body["access_token"], "headers": bearer(body["access_token"]), "user": body["user"]}

    return _register


@pytest.fixture
def admin_headers(client) -> dict[str, str]:
    response = client.post("/auth/login", json={"username": ADMIN_USERNAME, "password": ADMIN_PASSWORD})
    assert response.status_code == 200, response.text
    return bearer(response.json()["access_token"])


@pytest.fixture
def create_team(client) -> Callable[..., dict[str, Any]]:
    def _create_team(headers: dict[str, str], name: str = "Bulls", contest_id: int | None = None) -> dict[str, Any]:
        response = client.post(
            "/teams",
            json={
                "name": name,
                "stocks": [{"symbol": symbol, "role": role} for symbol, role in LINEUP],
                "contest_id": contest_id,
            },
            headers=headers,
        )
        assert response.status_code == 200, response.text
        return response.json()

    return _create_team


def contest_payload(**overrides: Any) -> dict[str, Any]:
    now = datetime.utcnow()
    payload: dict[str, Any] = {
        "title": "Friday Flash",
        "description": "A single session contest for testing.",
        "contest_type": "tournament",
        "difficulty": "beginner",
        "entry_fee": 100,
        "max_participants": 10,
        "team_building_end_time": (now + timedelta(hours=1)).isoformat(),
        "start_time": (now + timedelta(hours=2)).isoformat(),
        "end_time": (now + timedelta(hours=8)).isoformat(),
        "tags": ["Daily"],
        "rules": ["Eleven stocks per team."],
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def create_contest(client, admin_headers) -> Callable[..., dict[str, Any]]:
    def _create_contest(**overrides: Any) -> dict[str, Any]:
        response = client.post("/admin/contests", json=contest_payload(**overrides), headers=admin_headers)
        assert response.status_code == 200, response.text
        return response.json()

    return _create_contest
