"""Tests for the background job runner."""
import asyncio
from pathlib import Path

import pytest

from shortsmith.pipeline.acquisition import AcquisitionOrchestrator
from shortsmith.pipeline.errors import ErrorKind
from shortsmith.pipeline.job import JobRecord, JobStatus
from shortsmith.pipeline.policy import SubscriptionTier, get_tier_policy
from shortsmith.pipeline.rate_governor import RateGovernor
from shortsmith.pipeline.segmentation import SegmentationEngine
from shortsmith.pipeline.strategies import AcquisitionStrategy
from shortsmith.services.storage_service import ObjectStorage
from shortsmith.services.upload_service import UploadService
from shortsmith.services.webhook_service import WebhookResult
from shortsmith.workers.job_runner import JobRunner
from shortsmith.workers.processor import PipelineDeps


class _HangingStrategy(AcquisitionStrategy):
    name = "hanging"

    async def fetch_info(self, url):
        return {"title": "Demo", "duration": 600}

    async def download(self, url, output_dir, processing_id):
        (Path(output_dir) / f"{processing_id}_original.mp4.part").write_bytes(b"\x00" * 64)
        await asyncio.sleep(60)


class _RecordingWebhook:
    def __init__(self):
        self.sent = []

    async def send_success(self, url, job):
        self.sent.append(("success", job.processing_id, job.status))
        return WebhookResult(True, 200, 1)

    async def send_failure(self, url, job):
        self.sent.append(("failure", job.processing_id, job.status))
        return WebhookResult(True, 200, 1)


def _deps(tmp_path):
    processing_dir = tmp_path / "processing"
    output_dir = tmp_path / "output"
    processing_dir.mkdir()
    output_dir.mkdir()
    return PipelineDeps(
        orchestrator=AcquisitionOrchestrator(
            [_HangingStrategy(user_agents=[])],
            RateGovernor(),
            attempts_per_strategy=1,
            strategy_timeout=120,
            info_timeout=120,
        ),
        engine=SegmentationEngine(),
        uploader=UploadService(ObjectStorage(client=object(), public_base_url="https://cdn.example.com")),
        webhook=_RecordingWebhook(),
        preflight=None,
        processing_dir=processing_dir,
        output_dir=output_dir,
    )


def _job(processing_id="job7"):
    return JobRecord(
        source_url="https://www.youtube.com/watch?v=dQw4w9WgXcQ",
        callback_url="https://hooks.example.com/done",
        tier=SubscriptionTier.FREE,
        limits=get_tier_policy("free").resolve_limits(),
        processing_id=processing_id,
    )


@pytest.mark.asyncio
async def test_job_timeout_fails_once_and_cleans_up(tmp_path):
    deps = _deps(tmp_path)
    runner = JobRunner(deps=deps, job_timeout=0.05)
    job = _job()

    assert runner.submit(job)
    assert runner.is_job_running("job7")
    await runner.wait_idle()

    assert job.status == JobStatus.FAILED
    assert job.error_kind == ErrorKind.NETWORK_TIMEOUT
    assert "timed out" in job.error_message
    assert deps.webhook.sent == [("failure", "job7", JobStatus.FAILED)]
    assert list(deps.processing_dir.iterdir()) == []
    assert not runner.is_job_running("job7")


@pytest.mark.asyncio
async def test_duplicate_submit_is_rejected(tmp_path):
    runner = JobRunner(deps=_deps(tmp_path), job_timeout=30)

    assert runner.submit(_job())
    assert not runner.submit(_job())
    assert runner.running_count == 1

    await runner.shutdown()


@pytest.mark.asyncio
async def test_shutdown_cancels_running_jobs(tmp_path):
    deps = _deps(tmp_path)
    runner = JobRunner(deps=deps, job_timeout=30)
    runner.submit(_job("job8"))
    runner.submit(_job("job9"))
    await asyncio.sleep(0.01)

    await runner.shutdown()

    assert runner.running_count == 0
    assert deps.webhook.sent == []
    assert list(deps.processing_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_cancel_job(tmp_path):
    runner = JobRunner(deps=_deps(tmp_path), job_timeout=30)
    runner.submit(_job())
    await asyncio.sleep(0)

    assert await runner.cancel_job("job7")
    assert not await runner.cancel_job("missing")
    await runner.wait_idle()
    assert not runner.is_job_running("job7")
