import time
import uuid
from typing import Dict, Optional

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from conftest import FakeCompletionService
from intake.agents.orchestrator import ACKNOWLEDGED_MESSAGE, WELCOME_MESSAGE, IntakeOrchestrator
from intake.api.dependencies import get_current_user, get_orchestrator
from intake.api.intake import router as intake_router
from intake.config.settings import settings
from intake.middleware.jwt_auth import JWTAuthMiddleware
from intake.models.queue import MessageStatus
from intake.models.session import IntakeSession, utc_now
from intake.models.triage import SessionStatus
from intake.services.intake_client import IntakeApiClient
from intake.services.message_queue import MessageReliabilityQueue
from intake.services.session_service import SessionService, get_session_service

USER = {"user_id": "user-1", "username": "alex", "email": "alex@example.com", "token_type": "ACCESS"}


class InMemorySessionService(SessionService):
    """SessionService backed by a dict instead of MongoDB."""

    def __init__(self):
        self.sessions: Dict[str, IntakeSession] = {}

    async def insert_session(self, session: IntakeSession) -> IntakeSession:
        self.sessions[session.session_id] = session
        return session

    async def get_session(self, session_id: str, user_id: Optional[str] = None) -> Optional[IntakeSession]:
        session = self.sessions.get(session_id)
        if session is None or (user_id is not None and session.user_id != user_id):
            return None
        return session

    async def update_session(self, session: IntakeSession) -> bool:
        self.sessions[session.session_id] = session.model_copy(update={"updated_at": utc_now()})
        return True

    async def reset_session(self, session: IntakeSession, fresh: IntakeSession) -> IntakeSession:
        self.sessions[session.session_id] = session.model_copy(update={"status": SessionStatus.ABANDONED})
        return await self.insert_session(fresh.model_copy(update={"session_id": str(uuid.uuid4())}))


@pytest.fixture
def service():
    return InMemorySessionService()


@pytest.fixture
def completion():
    return FakeCompletionService()


@pytest.fixture
def client(service, completion):
    app = FastAPI()
    app.include_router(intake_router)
    app.dependency_overrides[get_current_user] = lambda: USER
    app.dependency_overrides[get_session_service] = lambda: service
    app.dependency_overrides[get_orchestrator] = lambda: IntakeOrchestrator(completion_service=completion)
    return TestClient(app)


def start(client) -> str:
    response = client.post("/api/v1/intake/sessions")
    assert response.status_code == 200
    return response.json()["session_id"]


def test_start_session_begins_with_vitals(client, service):
    response = client.post("/api/v1/intake/sessions")

    body = response.json()
    stored = service.sessions[body["session_id"]]
    assert body["current_agent"] == "VitalsTriageAgent"
    assert body["message"] == WELCOME_MESSAGE
    assert stored.message_count == 1
    assert stored.messages[0].role == "model"


def test_session_details(client):
    session_id = start(client)

    response = client.get(f"/api/v1/intake/sessions/{session_id}")

    assert response.status_code == 200
    assert response.json()["medical_data"]["vitals_data"]["vitals_stage_completed"] is False


def test_unknown_session_is_404(client):
    response = client.get("/api/v1/intake/sessions/missing")

    assert response.status_code == 404


def test_other_users_session_is_403(client, service):
    other = IntakeSession(user_id="someone-else")
    service.sessions[other.session_id] = other

    response = client.post(f"/api/v1/intake/sessions/{other.session_id}/messages", json={"content": "hi"})

    assert response.status_code == 403


def test_skip_command_is_acknowledged_without_model(client, service, completion):
    session_id = start(client)

    response = client.post(f"/api/v1/intake/sessions/{session_id}/messages", json={"content": "skip"})

    body = response.json()
    assert response.status_code == 200
    assert body["ai_message"]["content"] == "Skipping to the next section..."
    assert body["active_agent"] == "Triage"
    assert body["termination"]["reason"] == "skip_command"
    assert completion.calls == []
    assert service.sessions[session_id].message_count == 3
    assert service.sessions[session_id].status == SessionStatus.IN_PROGRESS


def test_turn_calls_active_agent(client, completion):
    session_id = start(client)

    response = client.post(
        f"/api/v1/intake/sessions/{session_id}/messages",
        json={"content": "Hi, I'm Alex and I have a sore throat"},
    )

    assert response.json()["ai_message"]["content"] == "VitalsTriageAgent asks a question"
    assert completion.calls[0]["message"] == "Hi, I'm Alex and I have a sore throat"


def test_empty_message_is_rejected(client):
    session_id = start(client)

    response = client.post(f"/api/v1/intake/sessions/{session_id}/messages", json={"content": ""})

    assert response.status_code == 422


def test_emergency_vitals_halt_until_acknowledged(client, service, completion):
    session_id = start(client)

    vitals = client.post(
        f"/api/v1/intake/sessions/{session_id}/vitals",
        json={"vitals": {"temperature": {"value": 40.5}, "blood_pressure": {"systolic": 120, "diastolic": 80}}},
    )
    halted = client.post(f"/api/v1/intake/sessions/{session_id}/messages", json={"content": "what now?"})

    assert vitals.json()["triage"]["decision"] == "emergency"
    assert vitals.json()["emergency"]["recommendations"][0] == "Seek immediate medical attention"
    assert halted.json()["emergency"] is not None
    assert halted.json()["active_agent"] is None
    assert completion.calls == []

    acknowledged = client.post(f"/api/v1/intake/sessions/{session_id}/emergency/acknowledge")
    assert acknowledged.status_code == 200
    assert acknowledged.json()["current_agent"] == "Triage"
    assert service.sessions[session_id].messages[-1].content == ACKNOWLEDGED_MESSAGE

    resumed = client.post(f"/api/v1/intake/sessions/{session_id}/messages", json={"content": "I have a sore throat"})
    assert resumed.json()["active_agent"] == "Triage"
    assert completion.calls[0]["agent"].value == "Triage"


def test_acknowledge_without_emergency_is_409(client):
    session_id = start(client)

    response = client.post(f"/api/v1/intake/sessions/{session_id}/emergency/acknowledge")

    assert response.status_code == 409


def test_normal_vitals_open_triage(client):
    session_id = start(client)

    response = client.post(
        f"/api/v1/intake/sessions/{session_id}/vitals",
        json={
            "vitals": {
                "patient_name": "Alex",
                "patient_age": 34,
                "temperature": {"value": 98.6, "unit": "fahrenheit"},
                "weight": {"value": 150, "unit": "lbs"},
                "blood_pressure": {"systolic": 118, "diastolic": 76},
                "current_status": "sore throat",
            }
        },
    )

    assert response.json()["triage"]["decision"] == "direct-to-diagnosis"
    assert response.json()["current_agent"] == "Triage"


def test_closed_session_rejects_messages(client, service):
    session_id = start(client)
    service.sessions[session_id] = service.sessions[session_id].model_copy(
        update={"status": SessionStatus.READY}
    )

    response = client.post(f"/api/v1/intake/sessions/{session_id}/messages", json={"content": "one more"})

    assert response.status_code == 409


def test_reset_creates_new_session(client, service):
    session_id = start(client)
    client.post(f"/api/v1/intake/sessions/{session_id}/messages", json={"content": "skip"})

    response = client.post(f"/api/v1/intake/sessions/{session_id}/reset")

    new_id = response.json()["session_id"]
    assert new_id != session_id
    assert response.json()["current_agent"] == "VitalsTriageAgent"
    assert service.sessions[session_id].status == SessionStatus.ABANDONED
    assert service.sessions[new_id].tracking.ai_message_count == 0
    assert service.sessions[new_id].message_count == 1


def user_copies(service, session_id, content):
    return [m for m in service.sessions[session_id].messages if m.role == "user" and m.content == content]


def test_resent_temp_id_replays_stored_turn(client, service, completion):
    session_id = start(client)
    payload = {"content": "I have a sore throat", "temp_id": "temp-1"}

    first = client.post(f"/api/v1/intake/sessions/{session_id}/messages", json=payload)
    second = client.post(f"/api/v1/intake/sessions/{session_id}/messages", json=payload)

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["user_message"]["id"] == first.json()["user_message"]["id"]
    assert second.json()["ai_message"]["id"] == first.json()["ai_message"]["id"]
    assert len(user_copies(service, session_id, "I have a sore throat")) == 1
    assert user_copies(service, session_id, "I have a sore throat")[0].temp_id == "temp-1"
    assert len(completion.calls) == 1
    assert service.sessions[session_id].tracking.ai_message_count == 1


def test_identical_message_within_window_is_409(client, service, completion):
    session_id = start(client)

    first = client.post(f"/api/v1/intake/sessions/{session_id}/messages", json={"content": "I have a sore throat"})
    second = client.post(f"/api/v1/intake/sessions/{session_id}/messages", json={"content": "I have a sore throat"})

    assert first.status_code == 200
    assert second.status_code == 409
    assert second.json()["detail"] == "Duplicate message"
    assert len(user_copies(service, session_id, "I have a sore throat")) == 1
    assert len(completion.calls) == 1


def test_identical_message_after_window_is_a_new_turn(client, service, completion, monkeypatch):
    monkeypatch.setattr(settings, "duplicate_message_window_seconds", 0)
    session_id = start(client)

    client.post(f"/api/v1/intake/sessions/{session_id}/messages", json={"content": "still hurts"})
    second = client.post(f"/api/v1/intake/sessions/{session_id}/messages", json={"content": "still hurts"})

    assert second.status_code == 200
    assert len(user_copies(service, session_id, "still hurts")) == 2


class LostFirstResponse(httpx.AsyncBaseTransport):
    """Lets the server handle every request but times out reading the first response."""

    def __init__(self, app):
        self._inner = httpx.ASGITransport(app=app)
        self.requests = 0

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.requests += 1
        response = await self._inner.handle_async_request(request)
        if self.requests == 1:
            await response.aread()
            raise httpx.ReadTimeout("read timed out", request=request)
        return response


async def test_queue_retry_after_lost_response_is_not_a_second_turn(client, service, completion):
    session = IntakeSession(user_id=USER["user_id"])
    service.sessions[session.session_id] = session
    transport = LostFirstResponse(client.app)
    api = IntakeApiClient(base_url="http://intake.test", transport=transport)
    queue = MessageReliabilityQueue(session.session_id, api.sender(session.session_id), retry_delay=0)

    temp_id = queue.enqueue("I have a sore throat")
    await queue.wait_idle()

    assert transport.requests == 2
    assert queue.get_message(temp_id).status == MessageStatus.SENT
    assert [m.role for m in queue.messages] == ["user", "model"]
    assert len(completion.calls) == 1
    assert len(user_copies(service, session.session_id, "I have a sore throat")) == 1


def test_failed_completion_still_answers(service):
    app = FastAPI()
    app.include_router(intake_router)
    failing = IntakeOrchestrator(completion_service=FakeCompletionService(error=TimeoutError()))
    app.dependency_overrides[get_current_user] = lambda: USER
    app.dependency_overrides[get_session_service] = lambda: service
    app.dependency_overrides[get_orchestrator] = lambda: failing
    client = TestClient(app)
    session_id = start(client)

    response = client.post(f"/api/v1/intake/sessions/{session_id}/messages", json={"content": "hello"})

    assert response.status_code == 200
    assert service.sessions[session_id].tracking.consecutive_errors == 1
    assert service.sessions[session_id].tracking.ai_message_count == 0


# --- Authentication ---


@pytest.fixture(scope="module")
def rsa_keys():
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    public_pem = private_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return private_pem, public_pem.decode()


@pytest.fixture
def auth_client(rsa_keys):
    app = FastAPI()
    app.add_middleware(JWTAuthMiddleware, public_key=rsa_keys[1])

    @app.get("/whoami")
    async def whoami(request: Request):
        return await get_current_user(request)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return TestClient(app)


def make_token(private_pem, token_type="ACCESS", expires_in=300):
    payload = {
        "sub": "alex",
        "userId": "user-1",
        "email": "alex@example.com",
        "tokenType": token_type,
        "iss": settings.jwt_issuer,
        "exp": int(time.time()) + expires_in,
    }
    return jwt.encode(payload, private_pem, algorithm="RS256")


def test_bearer_token_sets_user(auth_client, rsa_keys):
    token = make_token(rsa_keys[0])

    response = auth_client.get("/whoami", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200
    assert response.json()["user_id"] == "user-1"


def test_cookie_token_sets_user(auth_client, rsa_keys):
    cookie = f"{settings.jwt_access_cookie_name}={make_token(rsa_keys[0])}"

    response = auth_client.get("/whoami", headers={"Cookie": cookie})

    assert response.json()["username"] == "alex"


@pytest.mark.parametrize("token_type, expires_in", [("REFRESH", 300), ("ACCESS", -60)])
def test_refresh_or_expired_tokens_are_rejected(auth_client, rsa_keys, token_type, expires_in):
    token = make_token(rsa_keys[0], token_type=token_type, expires_in=expires_in)

    response = auth_client.get("/whoami", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401


def test_missing_token_is_rejected_but_health_is_public(auth_client):
    assert auth_client.get("/whoami").status_code == 401
    assert auth_client.get("/health").status_code == 200
