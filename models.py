# models.py

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus:
    PENDING = "pending"
    PROCESSING_PROMPTS = "processing_prompts"
    PROCESSING_VIDEOS = "processing_videos"
    STITCHING = "stitching"
    COMPLETED = "completed"
    FAILED = "failed"

    TERMINAL = frozenset({COMPLETED, FAILED})


class ItemStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    TERMINAL = frozenset({COMPLETED, FAILED})


# Allowed forward moves; anything not listed here is rejected by the JobStore.
JOB_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PROCESSING_PROMPTS, JobStatus.FAILED},
    JobStatus.PROCESSING_PROMPTS: {JobStatus.PROCESSING_VIDEOS, JobStatus.FAILED},
    JobStatus.PROCESSING_VIDEOS: {JobStatus.STITCHING, JobStatus.FAILED},
    JobStatus.STITCHING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}

ITEM_TRANSITIONS = {
    ItemStatus.PENDING: {ItemStatus.PROCESSING},
    ItemStatus.PROCESSING: {ItemStatus.COMPLETED, ItemStatus.FAILED},
    ItemStatus.COMPLETED: set(),
    ItemStatus.FAILED: set(),
}


class Job(Base):
    """One batch of property photos on its way to a single stitched video."""

    __tablename__ = "video_jobs"

    id = Column(String(36), primary_key=True, index=True, default=_new_id)
    user_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default=JobStatus.PENDING)
    total_items = Column(Integer, nullable=False, default=0)
    completed_items = Column(Integer, nullable=False, default=0)
    credits_charged = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    output_url = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    items = relationship(
        "JobItem",
        back_populates="job",
        order_by="JobItem.position",
        cascade="all, delete-orphan",
    )


class JobItem(Base):
    """A single uploaded photo with independent prompt and video sub-states."""

    __tablename__ = "video_job_items"

    id = Column(String(36), primary_key=True, index=True, default=_new_id)
    job_id = Column(String(36), ForeignKey("video_jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    image_url = Column(String, nullable=False)
    image_name = Column(String, nullable=True)
    prompt_status = Column(String, nullable=False, default=ItemStatus.PENDING)
    video_status = Column(String, nullable=False, default=ItemStatus.PENDING)
    generated_prompt = Column(Text, nullable=True)
    video_url = Column(String, nullable=True)
    prompt_prediction_id = Column(String, nullable=True)
    video_prediction_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    job = relationship("Job", back_populates="items")


class CreditAccount(Base):
    """Spendable credit balance per user. Credits are granted elsewhere."""

    __tablename__ = "credit_accounts"

    user_id = Column(String, primary_key=True)
    balance = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class UsageRecord(Base):
    __tablename__ = "usage_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    feature = Column(String, nullable=False)
    credits_used = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
