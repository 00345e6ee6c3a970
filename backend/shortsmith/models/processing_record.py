"""Processing record model: persisted summary of one job."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Enum, Text

from shortsmith.db.database import Base
from shortsmith.pipeline.job import JobStatus


class ProcessingRecord(Base):
    """One row per accepted processing request."""

    __tablename__ = "processing_records"

    processing_id = Column(String(64), primary_key=True)

    # Request
    source_url = Column(String(2048), nullable=False)
    callback_url = Column(String(2048), nullable=True)
    platform = Column(String(32), nullable=False, default="YouTube")
    subscription_type = Column(String(32), nullable=False, default="free")

    # Outcome
    status = Column(Enum(JobStatus), default=JobStatus.ACCEPTED, nullable=False)
    error_kind = Column(String(64), nullable=True)
    error_message = Column(Text, nullable=True)
    shorts_count = Column(Integer, default=0, nullable=False)
    result = Column(Text, nullable=True)  # JSON list of shorts

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<ProcessingRecord(id={self.processing_id}, status={self.status})>"

    def to_dict(self):
        """Convert to dictionary."""
        return {
            "processing_id": self.processing_id,
            "video_url": self.source_url,
            "platform": self.platform,
            "subscription_type": self.subscription_type,
            "status": self.status.value,
            "error_kind": self.error_kind,
            "error_message": self.error_message,
            "shorts_count": self.shorts_count,
            "result": self.result,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
