import pytest
import os
import sys
from unittest.mock import AsyncMock, patch
from fastapi.testclient import TestClient

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app import create_app
from graph.errors import StoreUnavailable
from tools.settings import Settings
from helpers import FULL_FORM, PHONE, FakeClock, make_deps

class TestIntakeAPI:
    """Test the HTTP surface end to end with in-memory stores."""

    def setup_method(self):
        self.clock = FakeClock()
        self.deps = make_deps(self.clock)
        self.settings = Settings()
        self.settings.form_base_url = "https://forms.example.com"
        self.client = TestClient(create_app(self.settings, self.deps))

    def issue(self, phone=PHONE):
        response = self.client.post("/api/form-tokens", json={"phoneNumber": phone})
        assert response.status_code == 200
        return response.json()

    def test_issue_token(self):
        data = self.issue()

        assert data["phoneNumber"] == PHONE
        assert data["formUrl"].startswith("https://forms.example.com/form.html?token=")
        assert "phone=%2B15551234999" in data["formUrl"]
        assert "expiresAt" in data

    def test_issue_token_invalid_phone(self):
        response = self.client.post("/api/form-tokens", json={"phoneNumber": "12"})

        assert response.status_code == 422
        assert response.json()["code"] == "INVALID_PHONE_NUMBER"

    def test_validate_token(self):
        token = self.issue()["token"]

        response = self.client.get(f"/api/form-tokens/{token}")
        assert response.json() == {"valid": True, "phoneNumber": PHONE}

        response = self.client.get("/api/form-tokens/unknown")
        assert response.json() == {"valid": False, "reason": "TOKEN_NOT_FOUND"}

    def test_submit_and_query(self):
        token = self.issue()["token"]

        response = self.client.post("/api/form-submission", json={"token": token, "formData": FULL_FORM})

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "success"
        assert data["userData"]["isComplete"] is True
        assert data["classification"]["result"] == "ACCEPTABLE"
        user_id = data["userData"]["userId"]

        assert self.client.get(f"/api/leads/{PHONE}").json()["lead"]["leadId"] == data["lead"]["leadId"]
        assert self.client.get(f"/api/users/{PHONE}").json()["user"]["userId"] == user_id
        assert self.client.get(f"/api/classifications/{user_id}").json()["classification"]["score"] == 90
        assert self.client.get("/api/leads").json()["count"] == 1
        assert self.client.get("/api/users").json()["count"] == 1
        assert self.client.get("/api/classifications").json()["count"] == 1
        assert self.client.get(f"/api/classifications/{user_id}/history").json()["count"] == 1

        check = self.client.get(f"/api/check-existing/{PHONE}").json()
        assert check["found"] is True
        assert check["name"] == "Margaret Wilson"

    def test_reused_token(self):
        token = self.issue()["token"]
        self.client.post("/api/form-submission", json={"token": token, "formData": FULL_FORM})

        response = self.client.post("/api/form-submission", json={"token": token, "formData": FULL_FORM})

        assert response.status_code == 409
        assert response.json() == {
            "status": "error",
            "code": "TOKEN_ALREADY_CONSUMED",
            "stage": "TOKEN_PENDING",
            "message": "Form token has already been used",
        }

    def test_phone_mismatch(self):
        token = self.issue("+15550000001")["token"]

        response = self.client.post("/api/form-submission", json={"token": token, "formData": FULL_FORM})

        assert response.status_code == 403
        assert response.json()["code"] == "PHONE_MISMATCH"
        assert self.client.get("/api/leads").json()["count"] == 0

    def test_store_failure_reports_stage(self):
        token = self.issue()["token"]

        with patch.object(self.deps.leads, "upsert", AsyncMock(side_effect=StoreUnavailable("down", store="lead"))):
            response = self.client.post("/api/form-submission", json={"token": token, "formData": FULL_FORM})

        assert response.status_code == 503
        assert response.json()["stage"] == "TOKEN_VALIDATED"
        assert response.json()["store"] == "lead"

    def test_missing_entities(self):
        assert self.client.get(f"/api/leads/{PHONE}").status_code == 404
        assert self.client.get(f"/api/users/{PHONE}").status_code == 404
        assert self.client.get("/api/classifications/user-404").status_code == 404
        assert self.client.get(f"/api/check-existing/{PHONE}").json()["found"] is False

    def test_health(self):
        data = self.client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["services"] == {
            "token": "connected",
            "lead": "connected",
            "user_data": "connected",
            "classification": "connected",
        }

        with patch.object(self.deps.user_data, "ping", AsyncMock(return_value=False)):
            data = self.client.get("/health").json()
        assert data["status"] == "degraded"
        assert data["services"]["user_data"] == "unreachable"

    def test_shutdown_closes_store_connections(self):
        deps = make_deps()
        closers = {
            name: AsyncMock()
            for name in ("leads", "user_data", "classifications")
        }
        with patch.object(deps.tokens.store, "aclose", AsyncMock()) as token_close, \
             patch.object(deps.leads, "aclose", closers["leads"]), \
             patch.object(deps.user_data, "aclose", closers["user_data"]), \
             patch.object(deps.classifications, "aclose", closers["classifications"]):
            with TestClient(create_app(self.settings, deps)) as client:
                assert client.get("/health").status_code == 200
                token_close.assert_not_awaited()

            token_close.assert_awaited_once()
            for closer in closers.values():
                closer.assert_awaited_once()
