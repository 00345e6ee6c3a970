"""Runs one job through every pipeline stage and reports the outcome."""
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Optional

from shortsmith.config import settings
from shortsmith.pipeline.acquisition import (
    AcquisitionOrchestrator,
    SourceRef,
    parse_source_url,
    preflight,
)
from shortsmith.pipeline.errors import ErrorKind, PipelineError, classify_exception
from shortsmith.pipeline.job import JobRecord, JobStatus, SourceArtifact, cleanup_job_files
from shortsmith.pipeline.policy import check_source, get_tier_policy
from shortsmith.pipeline.rate_governor import RateGovernor
from shortsmith.pipeline.segmentation import SegmentationEngine
from shortsmith.pipeline.strategies import default_strategies
from shortsmith.pipeline.validator import ValidationResult, validate
from shortsmith.services.storage_service import ObjectStorage
from shortsmith.services.upload_service import UploadService
from shortsmith.services.webhook_service import WebhookResult, WebhookService
from shortsmith.utils.ffmpeg import FFmpegError, VideoInfo, get_video_info

logger = logging.getLogger(__name__)


@dataclass
class PipelineDeps:
    """Collaborators a job needs; swapped for fakes in tests."""
    orchestrator: AcquisitionOrchestrator
    engine: SegmentationEngine
    uploader: UploadService
    webhook: WebhookService
    record_sink: Optional[Callable[[JobRecord], Awaitable[None]]] = None
    preflight: Optional[Callable[[SourceRef], Awaitable[Optional[dict]]]] = preflight
    probe: Callable[[Path], Awaitable[VideoInfo]] = get_video_info
    validate: Callable[[Path], ValidationResult] = validate
    processing_dir: Path = field(default_factory=lambda: settings.processing_dir)
    output_dir: Path = field(default_factory=lambda: settings.output_dir)

    @property
    def work_dirs(self):
        return [self.processing_dir, self.output_dir]


def build_default_deps(governor: RateGovernor) -> PipelineDeps:
    """Production wiring around a shared rate governor."""
    from shortsmith.services.record_service import persist_job

    return PipelineDeps(
        orchestrator=AcquisitionOrchestrator(default_strategies(), governor),
        engine=SegmentationEngine(),
        uploader=UploadService(ObjectStorage()),
        webhook=WebhookService(),
        record_sink=persist_job,
        preflight=preflight if settings.preflight_enabled else None,
    )


async def run_pipeline(job: JobRecord, deps: PipelineDeps) -> JobRecord:
    """
    Advance a job through acquisition, validation, probing, segmentation and
    upload. Any failure moves the job to FAILED with a classified kind.
    Local files are always cleaned up.
    """
    pid = job.processing_id
    policy = get_tier_policy(job.tier)

    try:
        job.advance(JobStatus.ACQUIRING)
        source = parse_source_url(job.source_url)
        job.platform = source.platform

        if deps.preflight is not None:
            await deps.preflight(source)

        info = await deps.orchestrator.fetch_info(source, pid)
        # Metadata from the source wins over caller-supplied keys.
        job.video_info = {**job.video_info, **info.value}
        logger.info(f"[{pid}] Video: {job.video_info.get('title')} ({job.video_info.get('duration')}s)")

        download = await deps.orchestrator.download(
            source, deps.processing_dir, pid, validate=deps.validate
        )

        job.advance(JobStatus.VALIDATING)
        validation = deps.validate(download.value)
        if not validation.ok:
            raise PipelineError(ErrorKind.CORRUPTED_DOWNLOAD, f"File validation failed: {validation.reason}")
        artifact = SourceArtifact(path=download.value, size=validation.size, signature=validation.signature)
        job.artifact = artifact
        logger.info(f"[{pid}] Downloaded {artifact.size_mb}MB ({artifact.signature}) via {download.strategy}")

        job.advance(JobStatus.PROBING)
        try:
            artifact.info = await deps.probe(artifact.path)
        except FFmpegError as e:
            raise PipelineError(ErrorKind.CORRUPTED_DOWNLOAD, f"Could not probe source (invalid data): {e}") from e
        job.video_info["source"] = artifact.info.to_dict()
        check_source(
            duration=artifact.info.duration,
            size_bytes=artifact.size,
            width=artifact.info.width,
            height=artifact.info.height,
            has_audio=artifact.info.has_audio,
            limits=job.limits,
            tier=job.tier,
        )

        job.advance(JobStatus.SEGMENTING)
        shorts = await deps.engine.run(job, artifact, deps.output_dir, policy)

        job.advance(JobStatus.UPLOADING)
        for short in await deps.uploader.upload_shorts(job, shorts):
            job.add_short(short)

        job.advance(JobStatus.COMPLETED)
        logger.info(f"[{pid}] Completed with {len(job.shorts)} shorts in {job.elapsed_seconds}s")
    except Exception as e:
        job.fail(classify_exception(e), str(e))
    finally:
        cleanup_job_files(pid, deps.work_dirs)

    return job


async def deliver_outcome(job: JobRecord, deps: PipelineDeps) -> Optional[WebhookResult]:
    """Persist the terminal record and send the job's single callback."""
    if job.callback_sent:
        logger.warning(f"[{job.processing_id}] Callback already sent, skipping")
        return None
    job.callback_sent = True

    if deps.record_sink is not None:
        try:
            await deps.record_sink(job)
        except Exception as e:
            logger.error(f"[{job.processing_id}] Failed to persist record: {e}")

    if job.status == JobStatus.COMPLETED:
        result = await deps.webhook.send_success(job.callback_url, job)
    else:
        result = await deps.webhook.send_failure(job.callback_url, job)

    if result.success:
        logger.info(f"[{job.processing_id}] Callback delivered after {result.attempts} attempt(s)")
    else:
        logger.error(f"[{job.processing_id}] Callback not delivered: {result.error}")
    return result


async def process_job(job: JobRecord, deps: PipelineDeps) -> JobRecord:
    """Run the pipeline, then report the outcome exactly once."""
    await run_pipeline(job, deps)
    await deliver_outcome(job, deps)
    return job
