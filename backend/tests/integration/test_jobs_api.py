"""
Integration Tests — Processing Jobs API
═══════════════════════════════════════
These tests exercise the FULL FastAPI routing stack, including:
  - JSON body parsing with camelCase aliases
  - Dependency injection chain (store, publisher, pipeline, settings overridden)
  - Status-code mapping for every pipeline outcome
  - The uniform {"error": ...} envelope on 4xx/5xx

What is mocked vs real
──────────────────────
  ✅ Real: FastAPI routing, Pydantic validation, presigned URL signing,
           stage tracking, exception handlers
  🔲 Mock: PostgreSQL        (InMemoryJobStore)
  🔲 Mock: Celery broker     (mock_publisher fixture)
  🔲 Mock: Pipeline          (mock_pipeline fixture)

How to run
──────────
  pytest -m integration backend/tests/integration/test_jobs_api.py -v
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from app.core.config import Settings, get_settings
from app.core.errors import (
    AlreadyProcessed,
    ConfigurationError,
    NotFoundError,
    PersistenceError,
    PipelineError,
)
from app.services.pipeline import PipelineOutcome
from app.services.stage_tracker import JobStage, fail


def _upload_body(**overrides) -> dict:
    body = {
        "fileName":       "report.pdf",
        "fileType":       "application/pdf",
        "fileSize":       2048,
        "analysisTarget": "document-analysis",
    }
    body.update(overrides)
    return body


# ─────────────────────────────────────────────────────────────────────────────
# POST /api/v1/uploads
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestRegisterUpload:

    async def test_registers_job_and_returns_presigned_put(self, async_client, job_store):
        resp = await async_client.post("/api/v1/uploads", json=_upload_body())

        assert resp.status_code == 201
        body = resp.json()
        assert body["storagePath"].startswith("incoming/")
        assert body["storagePath"].endswith("-report.pdf")
        assert body["uploadUrl"].startswith("https://test-bucket.s3.amazonaws.com/incoming/")
        assert "X-Amz-Signature=" in body["uploadUrl"]
        assert "X-Amz-SignedHeaders=content-type%3Bhost" in body["uploadUrl"]
        assert body["expiresIn"] == 900

        job = job_store.jobs[body["jobId"]]
        assert job.status == "queued"
        assert job.storage_path == body["storagePath"]
        assert job.analysis_target == "document-analysis"
        assert job.metadata["job_stage"] == "registered"

    async def test_path_components_are_stripped(self, async_client, job_store):
        resp = await async_client.post(
            "/api/v1/uploads", json=_upload_body(fileName="../../etc/report.pdf"),
        )
        assert resp.status_code == 201
        assert job_store.jobs[resp.json()["jobId"]].file_name == "report.pdf"

    async def test_caller_metadata_and_user_are_kept(self, async_client, job_store):
        resp = await async_client.post("/api/v1/uploads", json=_upload_body(
            userId="bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb",
            metadata={"source": "dashboard"},
        ))
        job = job_store.jobs[resp.json()["jobId"]]
        assert job.user_id == "bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb"
        assert job.metadata["source"] == "dashboard"

    async def test_unknown_analysis_target_is_422(self, async_client):
        resp = await async_client.post("/api/v1/uploads", json=_upload_body(analysisTarget="summarize"))

        assert resp.status_code == 422
        body = resp.json()
        assert body["error"] == "Request validation failed"
        assert body["details"][0]["code"] == "VALIDATION_ERROR"

    async def test_negative_size_is_422(self, async_client):
        resp = await async_client.post("/api/v1/uploads", json=_upload_body(fileSize=-1))
        assert resp.status_code == 422

    async def test_missing_storage_configuration_is_500(self, async_client, app_with_overrides):
        app_with_overrides.dependency_overrides[get_settings] = lambda: Settings(
            _env_file=None,
            aws_region="us-east-1",
            aws_access_key_id="AKIDTEST",
            aws_secret_access_key="test-secret",
            aws_s3_bucket="",
            openai_api_key="",
        )
        resp = await async_client.post("/api/v1/uploads", json=_upload_body())

        assert resp.status_code == 500
        assert resp.json() == {"error": "Server not configured", "missing": ["AWS_S3_BUCKET"]}

    async def test_store_failure_is_500(self, async_client, job_store):
        job_store.fail_on["create_job"] = PersistenceError("connection reset")
        resp = await async_client.post("/api/v1/uploads", json=_upload_body())

        assert resp.status_code == 500
        assert resp.json() == {"error": "Failed to register job"}


# ─────────────────────────────────────────────────────────────────────────────
# PATCH /api/v1/jobs/{job_id}/stage
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestUpdateStage:

    async def test_uploaded_records_stage_and_dispatches(self, async_client, make_job, job_store, mock_publisher):
        job = await make_job(stage=JobStage.REGISTERED)

        resp = await async_client.patch(f"/api/v1/jobs/{job.id}/stage", json={"stage": "uploaded"})

        assert resp.status_code == 200
        body = resp.json()
        assert body["jobId"] == job.id
        assert body["stage"] == "uploaded"
        assert "uploaded_at" in body["metadata"]
        assert job_store.jobs[job.id].metadata["job_stage"] == "uploaded"
        mock_publisher.publish_processing_task.assert_awaited_once_with(job.id)

    async def test_dispatch_failure_is_not_fatal(self, async_client, make_job, mock_publisher):
        job = await make_job(stage=JobStage.REGISTERED)
        mock_publisher.publish_processing_task = AsyncMock(side_effect=ConnectionError("broker down"))

        resp = await async_client.patch(f"/api/v1/jobs/{job.id}/stage", json={"stage": "uploaded"})
        assert resp.status_code == 200

    async def test_injected_does_not_dispatch(self, async_client, make_job, job_store, mock_publisher):
        job = await make_job(stage=JobStage.EXTRACTED, status="completed")

        resp = await async_client.patch(f"/api/v1/jobs/{job.id}/stage", json={"stage": "injected"})

        assert resp.status_code == 200
        assert "injected_at" in job_store.jobs[job.id].metadata
        mock_publisher.publish_processing_task.assert_not_awaited()

    async def test_unknown_job_is_404(self, async_client):
        resp = await async_client.patch(
            "/api/v1/jobs/6f1c1c0e-3a0b-4c51-9b0f-8f3b4b2f8d11/stage", json={"stage": "uploaded"},
        )
        assert resp.status_code == 404
        assert resp.json() == {"error": "Job not found"}

    async def test_failed_job_is_409(self, async_client, make_job, job_store):
        job = await make_job()
        job_store.jobs[job.id].metadata = fail(job.metadata, "Textract timed out")

        resp = await async_client.patch(f"/api/v1/jobs/{job.id}/stage", json={"stage": "indexed"})

        assert resp.status_code == 409
        assert job_store.jobs[job.id].metadata["job_stage"] == "failed"

    async def test_unknown_stage_is_422(self, async_client, make_job):
        job = await make_job()
        resp = await async_client.patch(f"/api/v1/jobs/{job.id}/stage", json={"stage": "archived"})
        assert resp.status_code == 422


# ─────────────────────────────────────────────────────────────────────────────
# POST /api/v1/jobs/process
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestProcessJob:

    async def test_completed(self, async_client, mock_pipeline):
        mock_pipeline.run.return_value = PipelineOutcome(
            status="completed", job_id="j1", stage="indexed", chunk_count=3,
        )
        resp = await async_client.post("/api/v1/jobs/process", json={"jobId": "j1"})

        assert resp.status_code == 200
        assert resp.json() == {"status": "completed", "jobId": "j1", "stage": "indexed", "chunkCount": 3}
        mock_pipeline.run.assert_awaited_once_with("j1")

    async def test_completed_with_indexing_error(self, async_client, mock_pipeline):
        mock_pipeline.run.return_value = PipelineOutcome(
            status="completed", job_id="j1", stage="extracted", indexing_error="rate limited",
        )
        resp = await async_client.post("/api/v1/jobs/process", json={"jobId": "j1"})

        assert resp.status_code == 200
        assert resp.json()["indexingError"] == "rate limited"

    async def test_unsupported_target_is_400(self, async_client, mock_pipeline):
        mock_pipeline.run.return_value = PipelineOutcome(
            status="failed", job_id="j1", stage="failed", error="no text extraction", unsupported=True,
        )
        resp = await async_client.post("/api/v1/jobs/process", json={"jobId": "j1"})

        assert resp.status_code == 400
        assert resp.json() == {"status": "failed", "jobId": "j1", "error": "no text extraction"}

    async def test_extraction_failure_is_500(self, async_client, mock_pipeline):
        mock_pipeline.run.return_value = PipelineOutcome(
            status="failed", job_id="j1", stage="failed", error="No text detected in image",
        )
        resp = await async_client.post("/api/v1/jobs/process", json={"jobId": "j1"})
        assert resp.status_code == 500

    async def test_not_found_is_404(self, async_client, mock_pipeline):
        mock_pipeline.run.side_effect = NotFoundError("Job not found")
        resp = await async_client.post("/api/v1/jobs/process", json={"jobId": "j1"})

        assert resp.status_code == 404
        assert resp.json() == {"error": "Job not found"}

    async def test_already_processed_is_200(self, async_client, mock_pipeline):
        mock_pipeline.run.side_effect = AlreadyProcessed("j1", "processing")
        resp = await async_client.post("/api/v1/jobs/process", json={"jobId": "j1"})

        assert resp.status_code == 200
        assert resp.json() == {"message": "already processed"}

    async def test_other_pipeline_error_is_500(self, async_client, mock_pipeline):
        mock_pipeline.run.side_effect = PipelineError("store unavailable")
        resp = await async_client.post("/api/v1/jobs/process", json={"jobId": "j1"})

        assert resp.status_code == 500
        assert resp.json() == {"status": "failed", "jobId": "j1", "error": "store unavailable"}

    async def test_missing_configuration_is_500(self, async_client, app_with_overrides):
        from app.api.v1.jobs import get_pipeline_factory

        def _factory(settings, store):
            raise ConfigurationError("Server not configured", missing=["OPENAI_API_KEY"])

        app_with_overrides.dependency_overrides[get_pipeline_factory] = lambda: _factory
        resp = await async_client.post("/api/v1/jobs/process", json={"jobId": "j1"})

        assert resp.status_code == 500
        assert resp.json() == {"error": "Server not configured", "missing": ["OPENAI_API_KEY"]}

    async def test_missing_job_id_is_422(self, async_client):
        resp = await async_client.post("/api/v1/jobs/process", json={})
        assert resp.status_code == 422


# ─────────────────────────────────────────────────────────────────────────────
# Operations
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
async def test_health(async_client):
    resp = await async_client.get("/health")

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "service": "document-indexing-worker"}
    assert "x-request-id" in resp.headers
