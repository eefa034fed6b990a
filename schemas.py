"""
Pydantic models for data validation in the Property Video Generator.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class JobCreatedResponse(BaseModel):
    """Response after a batch of images has been admitted and uploaded."""
    job_id: str
    uploaded_count: int
    credits_charged: int
    remaining_credits: int


class PromptStageResponse(BaseModel):
    processed_images: int
    total_images: int


class VideoStageResponse(BaseModel):
    generated_videos: int
    eligible_images: int
    total_images: int
    output_url: str


class VideoStageQueuedResponse(BaseModel):
    """Response when the video stage has been handed to a background worker."""
    job_id: str
    status: str  # "queued"
    task_id: Optional[str] = None


class JobSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    status: str
    total_items: int
    completed_items: int
    error_message: Optional[str] = None
    output_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class StageProgress(BaseModel):
    completed: int = 0
    processing: int = 0
    failed: int = 0
    # Videos only: items never animated because their prompt failed
    skipped: int = 0
    total: int = 0


class JobProgress(BaseModel):
    prompts: StageProgress
    videos: StageProgress


class JobItemStatus(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    position: int
    image_url: str
    image_name: Optional[str] = None
    prompt_status: str
    video_status: str
    generated_prompt: Optional[str] = None
    video_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class JobStatusResponse(BaseModel):
    """Read-only progress projection of a Job and its items."""
    job: JobSummary
    progress: JobProgress
    items: List[JobItemStatus]


class ErrorResponse(BaseModel):
    error: str
    detail: str
