"""HTTP-level tests: auth, error mapping and the assessment endpoints."""

import asyncio
from unittest.mock import AsyncMock, patch

import aiosqlite
import pytest
from fastapi.testclient import TestClient

from helpers import INTAKE_PROFILE, question_json, setup_test_db
from stats_tutor.db.database import get_db
from stats_tutor.errors import GenerationTimeout
from stats_tutor.middleware.rate_limit import auth_limiter
from stats_tutor.server import app

GENERATE = "stats_tutor.services.orchestrator.generate_question"


@pytest.fixture
def client(tmp_path):
    db_path = str(tmp_path / "api.db")

    async def _create():
        db = await setup_test_db(db_path)
        await db.close()

    asyncio.run(_create())

    async def _override_get_db():
        db = await aiosqlite.connect(db_path)
        db.row_factory = aiosqlite.Row
        try:
            yield db
        finally:
            await db.close()

    auth_limiter.reset()
    app.dependency_overrides[get_db] = _override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def _register(client, email="layla@example.com"):
    resp = client.post("/api/auth/register", json={
        "name": "Layla Hassan",
        "email": email,
        "password": "correct-horse",
    })
    assert resp.status_code == 200
    return {"Authorization": f"Bearer {resp.json()['token']}"}


def _generator():
    def make(request):
        return question_json(request.allowed_clusters[0], prompt=f"{request.level} q{request.question_index}")
    return AsyncMock(side_effect=make)


def _with_profile(client, headers):
    resp = client.put("/api/profile", headers=headers, json={"intake": INTAKE_PROFILE})
    assert resp.status_code == 200
    resp = client.post("/api/chat/new", headers=headers, json={})
    assert resp.status_code == 200
    return resp.json()


class TestAuth:

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_api_requires_token(self, client):
        resp = client.get("/api/chat/current")
        assert resp.status_code == 401

    def test_register_login_me(self, client):
        headers = _register(client)
        me = client.get("/api/auth/me", headers=headers).json()
        assert me["email"] == "layla@example.com"
        assert me["locale"] == "en"

        dup = client.post("/api/auth/register", json={
            "name": "Someone Else", "email": "LAYLA@example.com", "password": "another-pass",
        })
        assert dup.status_code == 409

        bad = client.post("/api/auth/login", json={"email": "layla@example.com", "password": "nope-nope"})
        assert bad.status_code == 401
        good = client.post("/api/auth/login", json={"email": "layla@example.com", "password": "correct-horse"})
        assert good.status_code == 200
        assert good.json()["token"]

    def test_short_password_rejected(self, client):
        resp = client.post("/api/auth/register", json={
            "name": "Layla Hassan", "email": "short@example.com", "password": "abc",
        })
        assert resp.status_code == 422

    def test_invalid_token(self, client):
        resp = client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
        assert resp.status_code == 401


class TestAssessmentEndpoints:

    def test_new_user_starts_with_intake_opening(self, client):
        headers = _register(client)
        resp = client.post("/api/intake/next", headers=headers, json={})
        assert resp.status_code == 200
        assert resp.json()["stepKey"] == "__opening__"

        current = client.get("/api/chat/current", headers=headers).json()
        assert current["session"]["status"] == "intake"
        assert len(current["messages"]) == 1

    def test_question_before_intake_is_an_ordering_error(self, client):
        headers = _register(client)
        resp = client.post("/api/assess/next", headers=headers, json={})
        assert resp.status_code == 409
        assert resp.json() == {
            "error": "not_in_assessment_phase",
            "message": "The assessment is not running right now. Please reload.",
            "retryable": False,
        }

    def test_question_is_reserved_and_hidden_answer(self, client):
        headers = _register(client)
        session = _with_profile(client, headers)
        assert session["status"] == "assessment"

        with patch(GENERATE, _generator()) as generator:
            first = client.post("/api/assess/next", headers=headers, json={}).json()
            second = client.post("/api/assess/next", headers=headers,
                                 json={"sessionId": session["sessionId"]}).json()
        assert generator.await_count == 1
        assert first["qid"] == second["qid"]
        assert "correct_index" not in first

        current = client.get("/api/chat/current", headers=headers).json()
        pending = current["session"]["state"]["assessment"]["current_question"]
        assert pending["qid"] == first["qid"]
        assert "correct_index" not in pending

    def test_invalid_choice_index(self, client):
        headers = _register(client)
        _with_profile(client, headers)
        with patch(GENERATE, _generator()):
            client.post("/api/assess/next", headers=headers, json={})
        resp = client.post("/api/assess/answer", headers=headers, json={"choiceIndex": 9})
        assert resp.status_code == 422
        assert resp.json()["error"] == "invalid_answer"

        ok = client.post("/api/assess/answer", headers=headers, json={"choiceIndex": 0})
        assert ok.status_code == 200
        assert ok.json()["nextAction"] == "continue"

    def test_answer_without_question(self, client):
        headers = _register(client)
        _with_profile(client, headers)
        resp = client.post("/api/assess/answer", headers=headers, json={"choiceIndex": 0})
        assert resp.status_code == 409
        assert resp.json()["error"] == "no_active_question"

    def test_generation_timeout_is_retryable(self, client):
        headers = _register(client)
        _with_profile(client, headers)
        with patch(GENERATE, AsyncMock(side_effect=GenerationTimeout("slow"))):
            resp = client.post("/api/assess/next", headers=headers, json={})
        assert resp.status_code == 503
        assert resp.json()["retryable"] is True
        assert "slow" not in resp.json()["message"]

    def test_report_before_finishing(self, client):
        headers = _register(client)
        _with_profile(client, headers)
        resp = client.post("/api/report", headers=headers, json={})
        assert resp.status_code == 409
        assert resp.json()["error"] == "report_not_ready"

    def test_teach_message_requires_active_teaching(self, client):
        headers = _register(client)
        _with_profile(client, headers)
        resp = client.post("/api/teach/message", headers=headers, json={"message": "hi"})
        assert resp.status_code == 409
        assert resp.json()["error"] == "teaching_not_active"


class TestDashboard:

    def test_profile_round_trip(self, client):
        headers = _register(client)
        resp = client.put("/api/profile", headers=headers, json={
            "phone": "+201001234567",
            "locale": "ar",
            "intake": {"sector": "Telecom", "not_a_field": "ignored"},
        })
        body = resp.json()
        assert body["user"]["phone"] == "+201001234567"
        assert body["user"]["locale"] == "ar"
        assert body["intake"] == {"sector": "Telecom"}
        assert client.get("/api/profile", headers=headers).json() == body

    def test_email_taken_by_other_user(self, client):
        _register(client, "first@example.com")
        headers = _register(client, "second@example.com")
        resp = client.put("/api/profile", headers=headers, json={"email": "first@example.com"})
        assert resp.status_code == 409

    def test_empty_history(self, client):
        headers = _register(client)
        assert client.get("/api/assessments", headers=headers).json() == {
            "assessments": [], "average_percent": 0,
        }
        assert client.get("/api/tutorials", headers=headers).json() == {"tutorials": []}
        assert client.get("/api/tutorials/1", headers=headers).status_code == 404
        assert client.delete("/api/tutorials/1", headers=headers).status_code == 404

    def test_invalid_intake_field_is_rejected(self, client):
        headers = _register(client)
        resp = client.put("/api/profile", headers=headers, json={
            "phone": "+201001234567",
            "intake": {"sector": "Telecom", "email": "not-an-email"},
        })
        assert resp.status_code == 422
        assert resp.json()["detail"]["field"] == "email"

        profile = client.get("/api/profile", headers=headers).json()
        assert profile["intake"] == {}
        assert profile["user"]["phone"] is None

    def test_partial_intake_keeps_wizard_running(self, client):
        headers = _register(client)
        resp = client.put("/api/profile", headers=headers, json={"intake": {"sector": "Telecom"}})
        assert resp.status_code == 200

        session = client.post("/api/chat/new", headers=headers, json={}).json()
        assert session["status"] == "intake"
        step = client.post("/api/intake/next", headers=headers, json={}).json()
        assert step["stepKey"] == "__opening__"
        assert client.post("/api/assess/next", headers=headers, json={}).status_code == 409
