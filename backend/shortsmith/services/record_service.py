"""Processing record persistence."""
import json
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from shortsmith.db.database import async_session_maker
from shortsmith.models.processing_record import ProcessingRecord
from shortsmith.pipeline.job import JobRecord

logger = logging.getLogger(__name__)


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=None)


class RecordService:
    """Service for processing record operations."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, processing_id: str) -> Optional[ProcessingRecord]:
        return await self.db.get(ProcessingRecord, processing_id)

    async def save(self, job: JobRecord) -> ProcessingRecord:
        """
        Insert or update the record for a job.

        Args:
            job: Job in any state

        Returns:
            The persisted record
        """
        record = await self.get(job.processing_id)
        if record is None:
            record = ProcessingRecord(
                processing_id=job.processing_id,
                created_at=_naive_utc(job.started_at),
            )
            self.db.add(record)

        record.source_url = job.source_url
        record.callback_url = job.callback_url
        record.platform = job.platform
        record.subscription_type = job.tier.value
        record.status = job.status
        record.error_kind = job.error_kind.value if job.error_kind else None
        record.error_message = job.error_message
        record.shorts_count = len(job.shorts)
        record.completed_at = _naive_utc(job.finished_at)
        if job.shorts:
            record.result = json.dumps([short.to_dict() for short in job.shorts])

        await self.db.commit()
        await self.db.refresh(record)
        return record


async def persist_job(job: JobRecord) -> None:
    """Record sink: save a job snapshot in its own session."""
    async with async_session_maker() as session:
        await RecordService(session).save(job)
    logger.debug(f"[{job.processing_id}] Persisted record ({job.status.value})")
