"""Background job runner using asyncio."""
import asyncio
import logging
import traceback
from typing import Dict, Optional

from shortsmith.config import settings
from shortsmith.pipeline.errors import ErrorKind
from shortsmith.pipeline.job import JobRecord, cleanup_job_files
from shortsmith.pipeline.rate_governor import RateGovernor
from shortsmith.workers.processor import (
    PipelineDeps,
    build_default_deps,
    deliver_outcome,
    run_pipeline,
)

logger = logging.getLogger(__name__)


class JobRunner:
    """
    Async background job runner.

    Owns the process-wide rate governor; each accepted job runs as its own
    task under an overall timeout.
    """

    def __init__(
        self,
        deps: Optional[PipelineDeps] = None,
        governor: Optional[RateGovernor] = None,
        job_timeout: float = None,
    ):
        self.governor = governor or RateGovernor()
        self._deps = deps
        self.job_timeout = job_timeout or settings.job_timeout_seconds
        self._running_jobs: Dict[str, asyncio.Task] = {}

    @property
    def deps(self) -> PipelineDeps:
        if self._deps is None:
            self._deps = build_default_deps(self.governor)
        return self._deps

    def submit(self, job: JobRecord) -> bool:
        """
        Start processing a job in the background.

        Returns:
            True if the job was started, False if it is already running
        """
        if job.processing_id in self._running_jobs:
            logger.warning(f"[{job.processing_id}] Job is already running")
            return False

        pid = job.processing_id
        task = asyncio.create_task(self._run_job(job), name=f"job-{pid}")
        self._running_jobs[pid] = task
        # Runs even when the task is cancelled before it starts.
        task.add_done_callback(lambda _task: self._running_jobs.pop(pid, None))
        return True

    async def _run_job(self, job: JobRecord):
        """Run a job with the overall timeout and deliver its outcome."""
        pid = job.processing_id
        deps = self.deps
        try:
            try:
                await asyncio.wait_for(run_pipeline(job, deps), timeout=self.job_timeout)
            except asyncio.TimeoutError:
                if not job.status.is_terminal:
                    job.fail(
                        ErrorKind.NETWORK_TIMEOUT,
                        f"Processing timed out after {self.job_timeout:.0f} seconds",
                    )
                cleanup_job_files(pid, deps.work_dirs)

            await deliver_outcome(job, deps)

        except asyncio.CancelledError:
            cleanup_job_files(pid, deps.work_dirs)
            logger.info(f"[{pid}] Job was cancelled")
            raise

        except Exception as e:
            logger.error(f"[{pid}] Job crashed: {e}\n{traceback.format_exc()}")

    async def cancel_job(self, processing_id: str) -> bool:
        """Cancel a running job."""
        task = self._running_jobs.get(processing_id)
        if task:
            task.cancel()
            return True
        return False

    def is_job_running(self, processing_id: str) -> bool:
        """Check if a job is currently running."""
        return processing_id in self._running_jobs

    @property
    def running_count(self) -> int:
        return len(self._running_jobs)

    async def wait_idle(self):
        """Wait for every running job to finish."""
        tasks = list(self._running_jobs.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self):
        """Cancel all running jobs and wait for them to unwind."""
        tasks = list(self._running_jobs.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Cancelled {len(tasks)} running jobs")


# Global job runner instance
job_runner = JobRunner()
