"""
Tests for the exception handlers registered in main.py.
"""
import uuid
from unittest.mock import patch

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from psikotes.core.error_responses import AssessmentError, ErrorKind
from psikotes.main import create_application


class TestExceptionHandlers:
    """Domain errors, HTTP errors and unexpected failures."""

    @pytest.fixture
    def test_app(self):
        """Create a fresh application instance for each test."""
        app = create_application()

        @app.get("/raise-not-found")
        async def raise_not_found():
            raise AssessmentError(
                ErrorKind.NOT_FOUND, "Attempt not found.", field="attempt_id"
            )

        @app.get("/raise-integrity")
        async def raise_integrity():
            raise AssessmentError(
                ErrorKind.DATA_INTEGRITY_ERROR, "Answer count mismatch."
            )

        @app.get("/raise-http")
        async def raise_http():
            raise HTTPException(status_code=409, detail="Conflict")

        @app.get("/needs-count")
        async def needs_count(count: int):
            return {"count": count}

        @app.get("/raise-runtime")
        async def raise_runtime():
            raise RuntimeError("database exploded")

        return app

    @pytest.fixture
    def client(self, test_app):
        """Create a test client without raising server exceptions."""
        with TestClient(test_app, raise_server_exceptions=False) as test_client:
            yield test_client

    def test_assessment_error_maps_kind_to_status(self, client):
        response = client.get("/raise-not-found")

        assert response.status_code == 404
        assert response.json() == {
            "detail": "Attempt not found.",
            "code": "NOT_FOUND",
            "field": "attempt_id",
        }

    def test_client_errors_are_not_reported(self, client):
        with patch("psikotes.main.capture_error") as mock_capture:
            client.get("/raise-not-found")

        mock_capture.assert_not_called()

    def test_integrity_error_is_reported(self, client):
        with patch("psikotes.main.capture_error") as mock_capture:
            response = client.get("/raise-integrity")

        assert response.status_code == 500
        assert response.json()["code"] == "DATA_INTEGRITY_ERROR"
        mock_capture.assert_called_once()
        assert mock_capture.call_args.kwargs["tags"] == {
            "error_type": "DATA_INTEGRITY_ERROR"
        }

    def test_http_exception_keeps_plain_detail(self, client):
        response = client.get("/raise-http")

        assert response.status_code == 409
        assert response.json() == {"detail": "Conflict"}

    def test_500_response_includes_error_id(self, client):
        response = client.get("/raise-runtime")

        assert response.status_code == 500
        data = response.json()
        assert data["detail"] == "Internal server error"
        assert data["code"] == "INTERNAL_ERROR"
        assert str(uuid.UUID(data["error_id"])) == data["error_id"]

    def test_error_ids_are_unique(self, client):
        first = client.get("/raise-runtime").json()["error_id"]
        second = client.get("/raise-runtime").json()["error_id"]

        assert first != second

    def test_500_response_does_not_leak_message(self, client):
        response = client.get("/raise-runtime")

        assert "database exploded" not in response.text

    def test_validation_errors_are_listed(self, client):
        response = client.get("/needs-count", params={"count": "many"})

        assert response.status_code == 422
        errors = response.json()["detail"]
        assert len(errors) == 1
        assert errors[0]["loc"] == ["query", "count"]
        assert errors[0]["type"] == "int_parsing"

    def test_unhandled_exception_is_reported(self, client):
        with patch("psikotes.main.capture_error") as mock_capture:
            response = client.get("/raise-runtime")

        error_id = response.json()["error_id"]
        mock_capture.assert_called_once()
        assert mock_capture.call_args.kwargs["context"]["error_id"] == error_id
        assert mock_capture.call_args.kwargs["tags"] == {"error_type": "RuntimeError"}
