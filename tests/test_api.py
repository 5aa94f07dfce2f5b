"""
Tests for the job HTTP API.
"""

import os
import shutil
import tempfile
from unittest.mock import MagicMock

from fastapi.testclient import TestClient

from tryon_core.api import create_app
from tryon_core.config.loader import AppConfig, DatabaseConfig
from tryon_core.core.jobs import JobStore
from tryon_core.core.ledger import ReservationLedger
from tryon_core.core.service import GenerationService, build_service
from tryon_core.storage.models import (
    BillingStatus,
    ProductRecord,
    ScenarioRecord,
    StoreFinancials,
)
from tryon_core.storage.repository import (
    initialize_schema,
    insert_products,
    insert_scenarios,
    upsert_store_financials,
)

JOB_BODY = {
    "storeId": "store-1",
    "personImageUrl": "https://cdn.example.com/person.jpg",
    "productIds": ["p1", "p2"],
    "customerName": "Ana",
}


class TestJobApi:
    """Test the job endpoints against a real ledger and job store."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self._store("store-1", balance=2)
        self._store("empty-store", balance=0)
        self._store("frozen-store", balance=5, billing_status=BillingStatus.FROZEN)
        self.dispatcher = MagicMock()
        self.service = GenerationService(
            ledger=ReservationLedger(self.db_path),
            jobs=JobStore(self.db_path, max_retries=1),
            dispatcher=self.dispatcher,
        )
        self.client = TestClient(create_app(service=self.service))

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _store(self, store_id, balance, **kwargs):
        upsert_store_financials(
            StoreFinancials(store_id=store_id, credits_balance=balance, overdraft_limit=0, **kwargs),
            self.db_path,
        )

    def _create_job(self, **overrides):
        body = dict(JOB_BODY)
        body.update(overrides)
        return self.client.post("/jobs", json=body)

    def _complete(self, job_id):
        self.client.post(f"/jobs/{job_id}/processing")
        return self.client.post(f"/jobs/{job_id}/complete", json={
            "imageUrl": "https://cdn.example.com/look.png",
            "compositionId": "comp-1",
            "sceneImageUrls": ["https://cdn.example.com/scene.png"],
            "totalCost": 0.12,
            "processingTime": 41.5,
            "apiCost": 0.08,
        })

    def test_create_job_returns_202(self):
        response = self._create_job()

        assert response.status_code == 202
        data = response.json()
        assert data["status"] == "PENDING"
        assert data["jobId"]
        assert data["reservationId"]
        self.dispatcher.dispatch.assert_called_once_with(data["jobId"])

    def test_insufficient_funds_is_402(self):
        response = self._create_job(storeId="empty-store")

        assert response.status_code == 402
        assert response.json()["error"] == "insufficient_funds"

    def test_frozen_billing_is_403(self):
        response = self._create_job(storeId="frozen-store")

        assert response.status_code == 403
        assert response.json()["error"] == "billing_frozen"

    def test_missing_products_is_400(self):
        response = self._create_job(productIds=[])

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_missing_person_image_is_400(self):
        body = dict(JOB_BODY)
        del body["personImageUrl"]

        response = self.client.post("/jobs", json=body)

        assert response.status_code == 400
        self.dispatcher.dispatch.assert_not_called()

    def test_unknown_job_is_404(self):
        response = self.client.get("/jobs/does-not-exist")

        assert response.status_code == 404
        assert response.json()["error"] == "job_not_found"

    def test_job_status_payload(self):
        job_id = self._create_job().json()["jobId"]

        data = self.client.get(f"/jobs/{job_id}").json()

        assert data["jobId"] == job_id
        assert data["status"] == "PENDING"
        assert data["retryCount"] == 0
        assert data["maxRetries"] == 1
        assert data["result"] is None
        assert data["creditCommitted"] is False
        assert data["createdAt"]

    def test_complete_then_consume(self):
        job_id = self._create_job().json()["jobId"]

        completed = self._complete(job_id)
        assert completed.status_code == 200
        assert completed.json()["status"] == "COMPLETED"
        assert completed.json()["result"]["imageUrl"] == "https://cdn.example.com/look.png"
        assert completed.json()["result"]["sceneImageUrls"] == ["https://cdn.example.com/scene.png"]

        consumed = self.client.post(f"/jobs/{job_id}/consume")
        assert consumed.status_code == 200
        assert consumed.json() == {"committed": True, "sandbox": False, "remainingBalance": 1}

        again = self.client.post(f"/jobs/{job_id}/consume")
        assert again.status_code == 409
        assert again.json()["error"] == "reservation_already_confirmed"

        status = self.client.get(f"/jobs/{job_id}").json()
        assert status["creditCommitted"] is True
        assert status["viewedAt"]

    def test_consume_pending_job_is_409(self):
        job_id = self._create_job().json()["jobId"]

        response = self.client.post(f"/jobs/{job_id}/consume")

        assert response.status_code == 409
        assert response.json()["error"] == "invalid_transition"

    def test_complete_without_image_is_400(self):
        job_id = self._create_job().json()["jobId"]

        response = self.client.post(f"/jobs/{job_id}/complete", json={"compositionId": "c"})

        assert response.status_code == 400

    def test_fail_requeues_then_fails(self):
        job_id = self._create_job().json()["jobId"]
        self.client.post(f"/jobs/{job_id}/processing")

        first = self.client.post(f"/jobs/{job_id}/fail", json={"error": "model timeout"})
        assert first.status_code == 200
        assert first.json()["requeued"] is True
        assert first.json()["status"] == "PENDING"

        self.client.post(f"/jobs/{job_id}/processing")
        second = self.client.post(f"/jobs/{job_id}/fail", json={
            "error": "model timeout",
            "errorDetails": {"provider": "compose"},
        })
        assert second.json()["requeued"] is False
        assert second.json()["status"] == "FAILED"
        assert second.json()["errorDetails"] == {"provider": "compose"}

    def test_cancel_job(self):
        job_id = self._create_job().json()["jobId"]

        response = self.client.post(f"/jobs/{job_id}/cancel")

        assert response.status_code == 200
        assert response.json()["status"] == "CANCELLED"
        assert self.client.post(f"/jobs/{job_id}/cancel").status_code == 409


class TestConfiguredApp:
    """Test the app wired by build_service against catalog tables."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "wired.db")
        initialize_schema(self.db_path)
        upsert_store_financials(
            StoreFinancials(store_id="store-1", credits_balance=2, overdraft_limit=0),
            self.db_path,
        )
        insert_scenarios([
            ScenarioRecord("beach", "https://cdn.example.com/beach.jpg", "golden hour", "beach", ("beach",)),
            ScenarioRecord("party", "https://cdn.example.com/party.jpg", "neon", "party", ("festa",)),
        ], self.db_path)
        insert_products([
            ProductRecord(id="p1", name="Biquini Beach", category="Moda Praia"),
        ], self.db_path)
        self.service = build_service(AppConfig(database=DatabaseConfig(path=self.db_path)))
        self.client = TestClient(create_app(service=self.service))

    def teardown_method(self):
        self.service.dispatcher.shutdown(wait=True)
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_created_job_carries_matched_scenario(self):
        response = self.client.post("/jobs", json={
            "storeId": "store-1",
            "personImageUrl": "https://cdn.example.com/person.jpg",
            "productIds": ["p1"],
        })

        assert response.status_code == 202
        options = self.service.jobs.get(response.json()["jobId"]).options
        assert options["scenario"]["id"] == "beach"
        assert options["scenario"]["lightingPrompt"] == "golden hour"

    def test_unknown_products_leave_scenario_unset(self):
        response = self.client.post("/jobs", json={
            "storeId": "store-1",
            "personImageUrl": "https://cdn.example.com/person.jpg",
            "productIds": ["not-in-catalog"],
        })

        assert response.status_code == 202
        assert "scenario" not in self.service.jobs.get(response.json()["jobId"]).options
