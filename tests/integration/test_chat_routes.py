"""Integration tests for direct messaging routes."""

from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient

from src.api.deps import get_current_user
from src.api.middleware.error_handler import StoreError
from src.schemas.auth import UserContext
from src.services.message_store import MessageStore


def act_as(user: UserContext) -> None:
    from src.main import app

    app.dependency_overrides[get_current_user] = lambda: user


class TestAuthentication:
    """Chat routes require a bearer token."""

    def test_contacts_without_token_returns_401(self, client: TestClient) -> None:
        response = client.get("/api/v1/chat/contacts")

        assert response.status_code == 401

    def test_invalid_token_returns_401(self, client: TestClient) -> None:
        response = client.get(
            "/api/v1/chat/contacts",
            headers={"Authorization": "Bearer not-a-real-token"},
        )

        assert response.status_code == 401


class TestContacts:
    """Tests for GET /api/v1/chat/contacts."""

    def test_teacher_lists_students(self, client: TestClient, teacher: UserContext) -> None:
        act_as(teacher)

        response = client.get("/api/v1/chat/contacts")

        assert response.status_code == 200
        contacts = response.json()["contacts"]
        assert [c["name"] for c in contacts] == ["Omar Student", "Sara Student"]
        assert all(c["role"] == "Student" for c in contacts)
        assert all(c["unread_count"] == 0 and c["last_message"] is None for c in contacts)

    def test_student_lists_teachers(self, client: TestClient, student: UserContext) -> None:
        act_as(student)

        contacts = client.get("/api/v1/chat/contacts").json()["contacts"]

        assert {c["role"] for c in contacts} == {"Teacher"}

    def test_summary_can_be_skipped(self, client: TestClient, student: UserContext) -> None:
        act_as(student)

        contacts = client.get("/api/v1/chat/contacts", params={"include_summary": "false"}).json()["contacts"]

        assert all(c["unread_count"] is None for c in contacts)


class TestMessages:
    """Tests for sending, listing and reading messages."""

    def test_send_then_read_flow(self, client: TestClient, teacher: UserContext, student: UserContext) -> None:
        act_as(teacher)
        sent = client.post(
            f"/api/v1/chat/contacts/{student.user_id}/messages",
            json={"content": "Homework due Friday"},
        )

        assert sent.status_code == 201
        body = sent.json()
        assert body["sender_id"] == str(teacher.user_id)
        assert body["receiver_id"] == str(student.user_id)
        assert body["is_read"] is False

        act_as(student)
        contacts = {c["id"]: c for c in client.get("/api/v1/chat/contacts").json()["contacts"]}
        assert contacts[str(teacher.user_id)]["unread_count"] == 1
        assert contacts[str(teacher.user_id)]["last_message"]["id"] == body["id"]

        history = client.get(f"/api/v1/chat/contacts/{teacher.user_id}/messages").json()["messages"]
        assert [m["id"] for m in history] == [body["id"]]

        marked = client.post(f"/api/v1/chat/contacts/{teacher.user_id}/read")
        assert marked.status_code == 200
        assert marked.json() == {"updated": 1}

        history = client.get(f"/api/v1/chat/contacts/{teacher.user_id}/messages").json()["messages"]
        assert history[0]["is_read"] is True

    def test_history_limit(self, client: TestClient, teacher: UserContext, student: UserContext) -> None:
        act_as(teacher)
        for n in range(3):
            client.post(f"/api/v1/chat/contacts/{student.user_id}/messages", json={"content": f"m{n}"})

        history = client.get(
            f"/api/v1/chat/contacts/{student.user_id}/messages", params={"limit": 2}
        ).json()["messages"]

        assert [m["content"] for m in history] == ["m1", "m2"]

    def test_blank_content_returns_422(self, client: TestClient, teacher: UserContext, student: UserContext) -> None:
        act_as(teacher)

        response = client.post(f"/api/v1/chat/contacts/{student.user_id}/messages", json={"content": "   "})

        assert response.status_code == 422

    def test_oversized_content_returns_invalid_argument(
        self, client: TestClient, teacher: UserContext, student: UserContext
    ) -> None:
        act_as(teacher)

        response = client.post(
            f"/api/v1/chat/contacts/{student.user_id}/messages",
            json={"content": "x" * 5000},
        )

        assert response.status_code == 422
        assert response.json()["error"] == "invalid_argument"

    def test_malformed_contact_id_returns_422(self, client: TestClient, teacher: UserContext) -> None:
        act_as(teacher)

        response = client.get("/api/v1/chat/contacts/not-a-uuid/messages")

        assert response.status_code == 422

    def test_store_failure_returns_502_with_code(
        self, client: TestClient, teacher: UserContext, student: UserContext
    ) -> None:
        act_as(teacher)

        with patch.object(
            MessageStore,
            "send",
            AsyncMock(side_effect=StoreError("insert or update violates foreign key constraint", code="23503")),
        ):
            response = client.post(
                f"/api/v1/chat/contacts/{student.user_id}/messages",
                json={"content": "hello"},
            )

        assert response.status_code == 502
        data = response.json()
        assert data["error"] == "store_error"
        assert data["details"][0]["type"] == "23503"
