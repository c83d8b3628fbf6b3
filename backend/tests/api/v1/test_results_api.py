"""
Tests for the test result endpoints.
"""
import pytest


def _complete(client, headers, test, question_ids, answers):
    attempt_id = client.post(
        "/v1/attempts/start", json={"test_id": test.id}, headers=headers
    ).json()["attempt"]["id"]
    for question_id, answer in zip(question_ids, answers):
        client.post(
            f"/v1/attempts/{attempt_id}/answers",
            json={"question_id": question_id, "answer": answer},
            headers=headers,
        )
    client.post(f"/v1/attempts/{attempt_id}/finish", json={}, headers=headers)
    return attempt_id


class TestGetResult:
    """Tests for GET /v1/results/attempt/{attempt_id}."""

    def test_cognitive_result(self, client, auth_headers, cognitive_test, question_ids):
        attempt_id = _complete(
            client,
            auth_headers,
            cognitive_test,
            question_ids(cognitive_test),
            ["a"] * 7 + ["b"] * 3,
        )

        response = client.get(f"/v1/results/attempt/{attempt_id}", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["attempt_id"] == attempt_id
        assert data["raw_score"] == pytest.approx(7.0)
        assert data["scaled_score"] == pytest.approx(70.0)
        assert data["percentile"] == pytest.approx(70.0)
        assert data["grade"] == "C"
        assert data["is_passed"] is True
        assert data["completion_percentage"] == pytest.approx(100.0)
        assert data["traits"] is None
        assert data["detailed_analysis"]["correct_answers"] == 7

    def test_personality_result(self, client, auth_headers, disc_test, question_ids):
        attempt_id = _complete(
            client, auth_headers, disc_test, question_ids(disc_test), ["5", "3", "1", "4"]
        )

        data = client.get(
            f"/v1/results/attempt/{attempt_id}", headers=auth_headers
        ).json()

        assert data["grade"] is None
        assert data["percentile"] is None
        assert data["is_passed"] is None
        assert len(data["traits"]) == 4
        assert data["traits"][0] == {
            "name": "Dominance",
            "key": "dominance",
            "score": 100,
            "description": "Assertive, results-oriented, strong-willed, and forceful",
            "category": "personality",
            "raw_average": 5.0,
            "question_count": 1,
        }
        assert [t["score"] for t in data["traits"]] == [100, 50, 0, 75]

    def test_result_not_calculated_yet(self, client, auth_headers, cognitive_test):
        attempt_id = client.post(
            "/v1/attempts/start", json={"test_id": cognitive_test.id}, headers=auth_headers
        ).json()["attempt"]["id"]

        response = client.get(f"/v1/results/attempt/{attempt_id}", headers=auth_headers)

        assert response.status_code == 404
        assert response.json()["detail"] == "Test result not found."

    def test_other_participant_forbidden(
        self, client, auth_headers, other_headers, cognitive_test, question_ids
    ):
        attempt_id = _complete(
            client, auth_headers, cognitive_test, question_ids(cognitive_test), ["a"]
        )
        response = client.get(f"/v1/results/attempt/{attempt_id}", headers=other_headers)
        assert response.status_code == 403


class TestCalculateResult:
    """Tests for POST /v1/results/attempt/{attempt_id}/calculate."""

    def test_existing_result_returned(
        self, client, auth_headers, cognitive_test, question_ids
    ):
        attempt_id = _complete(
            client, auth_headers, cognitive_test, question_ids(cognitive_test), ["a"] * 5
        )

        response = client.post(
            f"/v1/results/attempt/{attempt_id}/calculate", headers=auth_headers
        )

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Result already calculated"
        assert data["recalculated"] is False
        assert data["result"]["grade"] == "E"

    def test_forced_recalculation(
        self, client, auth_headers, cognitive_test, question_ids
    ):
        attempt_id = _complete(
            client, auth_headers, cognitive_test, question_ids(cognitive_test), ["a"] * 5
        )
        before = client.get(
            f"/v1/results/attempt/{attempt_id}", headers=auth_headers
        ).json()

        response = client.post(
            f"/v1/results/attempt/{attempt_id}/calculate",
            json={"force_recalculate": True},
            headers=auth_headers,
        )

        data = response.json()
        assert data["message"] == "Result calculated successfully"
        assert data["recalculated"] is True
        assert data["result"]["id"] == before["id"]
        assert data["result"]["scaled_score"] == before["scaled_score"]

    def test_incomplete_attempt(self, client, auth_headers, cognitive_test):
        attempt_id = client.post(
            "/v1/attempts/start", json={"test_id": cognitive_test.id}, headers=auth_headers
        ).json()["attempt"]["id"]

        response = client.post(
            f"/v1/results/attempt/{attempt_id}/calculate", headers=auth_headers
        )

        assert response.status_code == 400
        assert response.json()["code"] == "ATTEMPT_NOT_COMPLETED"


class TestUserResults:
    """Tests for GET /v1/results/user/{user_id}."""

    def test_list_results(
        self, client, clock, auth_headers, test_user, cognitive_test, disc_test, question_ids
    ):
        first = _complete(
            client, auth_headers, cognitive_test, question_ids(cognitive_test), ["a"] * 10
        )
        clock.advance(hours=1)
        second = _complete(
            client, auth_headers, disc_test, question_ids(disc_test), ["3"] * 4
        )

        response = client.get(f"/v1/results/user/{test_user.id}", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["user_id"] == test_user.id
        assert data["total"] == 2
        assert [r["attempt_id"] for r in data["results"]] == [second, first]

    def test_admin_can_list(self, client, admin_auth_headers, test_user):
        response = client.get(
            f"/v1/results/user/{test_user.id}", headers=admin_auth_headers
        )
        assert response.status_code == 200
        assert response.json()["total"] == 0

    def test_other_user_forbidden(self, client, other_headers, test_user):
        response = client.get(f"/v1/results/user/{test_user.id}", headers=other_headers)
        assert response.status_code == 403
