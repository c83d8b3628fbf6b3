"""
Tests for the test attempt endpoints.
"""
import pytest

from psikotes.models import AttemptStatus
from tests.factories import build_session


def _start(client, headers, test_id, **body):
    return client.post("/v1/attempts/start", json={"test_id": test_id, **body}, headers=headers)


class TestStartAttempt:
    """Tests for POST /v1/attempts/start."""

    def test_start_success(self, client, auth_headers, test_user, cognitive_test):
        """Starting a test returns the attempt and its progress."""
        response = _start(
            client, auth_headers, cognitive_test.id, browser_info={"name": "Safari"}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Test attempt started successfully"
        assert data["resumed"] is False

        attempt = data["attempt"]
        assert attempt["user_id"] == test_user.id
        assert attempt["status"] == "started"
        assert attempt["attempt_number"] == 1
        assert attempt["total_questions"] == 10
        assert attempt["browser_info"] == {"name": "Safari"}
        assert attempt["ip_address"] is not None

        progress = data["progress"]
        assert progress["time_remaining"] == 1800
        assert progress["can_continue"] is True
        assert progress["test"]["name"] == "Logical Reasoning"
        assert progress["test"]["category"] == "iq"
        assert progress["session"] is None

    def test_second_start_resumes(self, client, auth_headers, cognitive_test):
        first = _start(client, auth_headers, cognitive_test.id).json()
        response = _start(client, auth_headers, cognitive_test.id)

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Resumed existing test attempt"
        assert data["resumed"] is True
        assert data["attempt"]["id"] == first["attempt"]["id"]

    def test_start_after_deadline_creates_new_attempt(
        self, client, clock, auth_headers, cognitive_test
    ):
        first = _start(client, auth_headers, cognitive_test.id).json()
        clock.advance(minutes=31)

        data = _start(client, auth_headers, cognitive_test.id).json()
        assert data["resumed"] is False
        assert data["attempt"]["attempt_number"] == 2

        old = client.get(f"/v1/attempts/{first['attempt']['id']}", headers=auth_headers)
        assert old.json()["attempt"]["status"] == "expired"

    def test_unknown_test(self, client, auth_headers):
        response = _start(client, auth_headers, 9999)

        assert response.status_code == 404
        assert response.json() == {
            "detail": "Test not found.",
            "code": "NOT_FOUND",
            "field": "test_id",
        }

    def test_invalid_session_code(self, client, auth_headers, cognitive_test):
        response = _start(client, auth_headers, cognitive_test.id, session_code="NOPE")

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_SESSION"
        assert response.json()["field"] == "session_code"

    def test_start_in_session(
        self, client, db_session, auth_headers, cognitive_test
    ):
        session = build_session([cognitive_test])
        db_session.add(session)
        db_session.commit()

        response = _start(
            client, auth_headers, cognitive_test.id, session_code="SESSION-1"
        )

        assert response.status_code == 200
        data = response.json()
        assert data["attempt"]["session_test_id"] == session.id
        assert data["progress"]["session"]["session_code"] == "SESSION-1"

    def test_requires_authentication(self, client, cognitive_test):
        response = client.post("/v1/attempts/start", json={"test_id": cognitive_test.id})
        assert response.status_code in (401, 403)

    def test_invalid_token(self, client, cognitive_test):
        response = _start(
            client, {"Authorization": "Bearer not-a-token"}, cognitive_test.id
        )
        assert response.status_code == 401

    def test_rejects_invalid_test_id(self, client, auth_headers):
        response = _start(client, auth_headers, 0)
        assert response.status_code == 422


class TestGetAttempt:
    """Tests for GET /v1/attempts/{attempt_id} and its progress."""

    def test_get_attempt(self, client, clock, auth_headers, cognitive_test):
        attempt_id = _start(client, auth_headers, cognitive_test.id).json()["attempt"]["id"]
        clock.advance(minutes=10)

        response = client.get(f"/v1/attempts/{attempt_id}", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["attempt"]["id"] == attempt_id
        assert data["progress"]["time_remaining"] == 20 * 60

    def test_get_progress(self, client, clock, auth_headers, cognitive_test):
        attempt_id = _start(client, auth_headers, cognitive_test.id).json()["attempt"]["id"]
        clock.advance(minutes=26)

        response = client.get(f"/v1/attempts/{attempt_id}/progress", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["attempt_id"] == attempt_id
        assert data["is_nearly_expired"] is True
        assert data["test"]["time_limit"] == 30

    def test_overdue_attempt_reads_as_expired(
        self, client, clock, auth_headers, cognitive_test
    ):
        attempt_id = _start(client, auth_headers, cognitive_test.id).json()["attempt"]["id"]
        clock.advance(minutes=31)

        data = client.get(f"/v1/attempts/{attempt_id}", headers=auth_headers).json()
        assert data["attempt"]["status"] == "expired"
        assert data["progress"]["is_expired"] is True
        assert data["progress"]["can_continue"] is False

    def test_other_participant_forbidden(
        self, client, auth_headers, other_headers, cognitive_test
    ):
        attempt_id = _start(client, auth_headers, cognitive_test.id).json()["attempt"]["id"]

        response = client.get(f"/v1/attempts/{attempt_id}", headers=other_headers)

        assert response.status_code == 403
        assert response.json()["code"] == "FORBIDDEN"

    def test_admin_can_read(
        self, client, auth_headers, admin_auth_headers, cognitive_test
    ):
        attempt_id = _start(client, auth_headers, cognitive_test.id).json()["attempt"]["id"]
        response = client.get(f"/v1/attempts/{attempt_id}", headers=admin_auth_headers)
        assert response.status_code == 200

    def test_not_found(self, client, auth_headers):
        response = client.get("/v1/attempts/9999", headers=auth_headers)
        assert response.status_code == 404


class TestUpdateAttempt:
    """Tests for PUT /v1/attempts/{attempt_id}."""

    def test_update_progress(self, client, auth_headers, cognitive_test):
        attempt_id = _start(client, auth_headers, cognitive_test.id).json()["attempt"]["id"]

        response = client.put(
            f"/v1/attempts/{attempt_id}",
            json={"status": "in_progress", "questions_answered": 4, "time_spent": 300},
            headers=auth_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["attempt"]["status"] == "in_progress"
        assert data["attempt"]["questions_answered"] == 4
        assert data["progress"]["progress_percentage"] == 40

    def test_invalid_transition(self, client, auth_headers, cognitive_test):
        attempt_id = _start(client, auth_headers, cognitive_test.id).json()["attempt"]["id"]
        client.put(
            f"/v1/attempts/{attempt_id}",
            json={"status": "in_progress"},
            headers=auth_headers,
        )

        response = client.put(
            f"/v1/attempts/{attempt_id}", json={"status": "started"}, headers=auth_headers
        )

        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "INVALID_STATUS_TRANSITION"
        assert body["detail"] == (
            "Cannot change attempt status from 'in_progress' to 'started'."
        )

    def test_progress_above_total(self, client, auth_headers, cognitive_test):
        attempt_id = _start(client, auth_headers, cognitive_test.id).json()["attempt"]["id"]

        response = client.put(
            f"/v1/attempts/{attempt_id}",
            json={"questions_answered": 11},
            headers=auth_headers,
        )

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_PROGRESS"

    def test_admin_cannot_modify(
        self, client, auth_headers, admin_auth_headers, cognitive_test
    ):
        attempt_id = _start(client, auth_headers, cognitive_test.id).json()["attempt"]["id"]

        response = client.put(
            f"/v1/attempts/{attempt_id}",
            json={"time_spent": 10},
            headers=admin_auth_headers,
        )
        assert response.status_code == 403

    def test_negative_time_rejected(self, client, auth_headers, cognitive_test):
        attempt_id = _start(client, auth_headers, cognitive_test.id).json()["attempt"]["id"]
        response = client.put(
            f"/v1/attempts/{attempt_id}", json={"time_spent": -1}, headers=auth_headers
        )
        assert response.status_code == 422


class TestFinishAttempt:
    """Tests for POST /v1/attempts/{attempt_id}/finish."""

    def test_finish_returns_result(
        self, client, auth_headers, cognitive_test, question_ids
    ):
        attempt_id = _start(client, auth_headers, cognitive_test.id).json()["attempt"]["id"]
        for question_id in question_ids(cognitive_test)[:9]:
            client.post(
                f"/v1/attempts/{attempt_id}/answers",
                json={"question_id": question_id, "answer": "a"},
                headers=auth_headers,
            )

        response = client.post(
            f"/v1/attempts/{attempt_id}/finish", json={}, headers=auth_headers
        )

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Test attempt completed successfully"
        assert data["attempt"]["status"] == "completed"
        assert data["completion_percentage"] == 90
        assert data["result"]["grade"] == "A"
        assert data["result"]["scaled_score"] == pytest.approx(90.0)
        assert data["result"]["is_passed"] is True
        assert data["next_test"] is None

    def test_finish_after_deadline(self, client, clock, auth_headers, cognitive_test):
        attempt_id = _start(client, auth_headers, cognitive_test.id).json()["attempt"]["id"]
        clock.advance(minutes=40)

        response = client.post(
            f"/v1/attempts/{attempt_id}/finish", json={}, headers=auth_headers
        )

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Time limit exceeded; the attempt has expired"
        assert data["attempt"]["status"] == "expired"
        assert data["result"] is None

    def test_abandon(self, client, auth_headers, cognitive_test):
        attempt_id = _start(client, auth_headers, cognitive_test.id).json()["attempt"]["id"]

        response = client.post(
            f"/v1/attempts/{attempt_id}/finish",
            json={"completion_type": "abandoned"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json()["message"] == "Test attempt abandoned"
        assert response.json()["attempt"]["status"] == "abandoned"

    def test_cannot_finish_as_expired(self, client, auth_headers, cognitive_test):
        attempt_id = _start(client, auth_headers, cognitive_test.id).json()["attempt"]["id"]
        response = client.post(
            f"/v1/attempts/{attempt_id}/finish",
            json={"completion_type": "expired"},
            headers=auth_headers,
        )
        assert response.status_code == 422

    def test_finish_twice(self, client, auth_headers, cognitive_test):
        attempt_id = _start(client, auth_headers, cognitive_test.id).json()["attempt"]["id"]
        client.post(f"/v1/attempts/{attempt_id}/finish", json={}, headers=auth_headers)

        response = client.post(
            f"/v1/attempts/{attempt_id}/finish", json={}, headers=auth_headers
        )

        assert response.status_code == 400
        assert response.json()["code"] == "ATTEMPT_ALREADY_FINISHED"

    def test_finish_names_next_session_test(
        self, client, db_session, auth_headers, cognitive_test, disc_test
    ):
        db_session.add(build_session([cognitive_test, disc_test]))
        db_session.commit()
        attempt_id = _start(
            client, auth_headers, cognitive_test.id, session_code="SESSION-1"
        ).json()["attempt"]["id"]

        response = client.post(
            f"/v1/attempts/{attempt_id}/finish", json={}, headers=auth_headers
        )

        next_test = response.json()["next_test"]
        assert next_test == {
            "test_id": disc_test.id,
            "name": "DISC Profile",
            "sequence": 2,
            "is_required": True,
        }


class TestListAttempts:
    """Tests for the attempt listings."""

    def test_list_own_attempts(
        self, client, clock, auth_headers, test_user, cognitive_test, disc_test
    ):
        first = _start(client, auth_headers, cognitive_test.id).json()["attempt"]["id"]
        client.post(f"/v1/attempts/{first}/finish", json={}, headers=auth_headers)
        clock.advance(minutes=5)
        _start(client, auth_headers, disc_test.id)

        response = client.get(f"/v1/attempts/user/{test_user.id}", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert data["total_pages"] == 1
        newest, oldest = data["attempts"]
        assert newest["test"]["id"] == disc_test.id
        assert newest["grade"] is None
        assert oldest["attempt"]["status"] == "completed"
        assert oldest["grade"] == "E"
        assert oldest["is_passed"] is False

    def test_status_filter(self, client, auth_headers, test_user, cognitive_test):
        _start(client, auth_headers, cognitive_test.id)

        response = client.get(
            f"/v1/attempts/user/{test_user.id}",
            params={"status": "completed"},
            headers=auth_headers,
        )
        assert response.json()["total"] == 0

    def test_other_user_forbidden(self, client, other_headers, test_user):
        response = client.get(f"/v1/attempts/user/{test_user.id}", headers=other_headers)
        assert response.status_code == 403

    def test_admin_lists_anyone(self, client, admin_auth_headers, test_user):
        response = client.get(
            f"/v1/attempts/user/{test_user.id}", headers=admin_auth_headers
        )
        assert response.status_code == 200
        assert response.json()["attempts"] == []

    def test_limit_is_bounded(self, client, auth_headers, test_user):
        response = client.get(
            f"/v1/attempts/user/{test_user.id}",
            params={"limit": 101},
            headers=auth_headers,
        )
        assert response.status_code == 422

    def test_session_listing(
        self,
        client,
        db_session,
        auth_headers,
        admin_auth_headers,
        cognitive_test,
    ):
        session = build_session([cognitive_test])
        db_session.add(session)
        db_session.commit()
        _start(client, auth_headers, cognitive_test.id, session_code="SESSION-1")

        response = client.get(
            f"/v1/attempts/session/{session.id}", headers=admin_auth_headers
        )

        assert response.status_code == 200
        data = response.json()
        assert data["session"]["session_code"] == "SESSION-1"
        assert data["total"] == 1
        assert data["status_counts"]["started"] == 1
        assert data["session_results"] == []

    def test_session_listing_admin_only(
        self, client, db_session, auth_headers, cognitive_test
    ):
        session = build_session([cognitive_test])
        db_session.add(session)
        db_session.commit()

        response = client.get(f"/v1/attempts/session/{session.id}", headers=auth_headers)
        assert response.status_code == 403


class TestStatusOptions:
    """Tests for GET /v1/attempts/utils/status-options."""

    def test_lists_every_status(self, client):
        response = client.get("/v1/attempts/utils/status-options")

        assert response.status_code == 200
        options = {o["value"]: o for o in response.json()}
        assert set(options) == {s.value for s in AttemptStatus}
        assert options["started"]["allowed_transitions"] == [
            "abandoned",
            "completed",
            "expired",
            "in_progress",
        ]
        assert options["completed"]["is_terminal"] is True
        assert options["completed"]["allowed_transitions"] == []
        assert options["in_progress"]["label"] == "In Progress"
