"""
Router for the image-to-video pipeline endpoints.
Handles job creation, stage triggers and status polling.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, File, Header, HTTPException, Query, UploadFile, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from database import get_db
from job_store import JobStore
from orchestrator import ImageUpload, JobOrchestrator, build_orchestrator
from schemas import (
    ErrorResponse,
    JobCreatedResponse,
    JobStatusResponse,
    PromptStageResponse,
    VideoStageQueuedResponse,
    VideoStageResponse,
)
from reporting import StatusReporter
from tasks import run_pipeline_task, run_video_stage_task


# Create the router
router = APIRouter(prefix="/video-jobs", tags=["video-jobs"])

# Error bodies produced by the pipeline exception handler in main.py
JOB_ERRORS = {
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


def get_current_user_id(x_user_id: str = Header(..., min_length=1)) -> str:
    """The caller is authenticated upstream; the gateway forwards the user id."""
    return x_user_id


def get_orchestrator(db: Session = Depends(get_db)) -> JobOrchestrator:
    return build_orchestrator(db)


def get_status_reporter(db: Session = Depends(get_db)) -> StatusReporter:
    return StatusReporter(JobStore(db))


@router.post(
    "/",
    response_model=JobCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse},
        402: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
)
def create_job(
    images: List[UploadFile] = File(...),
    auto_start: bool = Query(False, description="Run both stages in the background right away"),
    user_id: str = Depends(get_current_user_id),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    """
    Debits credits, creates the job and uploads every image to object storage.
    """
    uploads = [
        ImageUpload(
            filename=image.filename or "image",
            content=image.file.read(),
            content_type=image.content_type or "application/octet-stream",
        )
        for image in images
    ]
    created = orchestrator.create_job(user_id, uploads)
    logging.info(f"✨ Job {created.job_id} created with {created.uploaded_count} images")

    if auto_start:
        try:
            run_pipeline_task.delay(created.job_id, user_id)
        except Exception as e:
            logging.error(f"Failed to submit pipeline task to Celery: {e}")
            raise HTTPException(status_code=500, detail="Job created but processing could not be started.")

    return JobCreatedResponse(**vars(created))


@router.post("/{job_id}/prompts", response_model=PromptStageResponse, responses=JOB_ERRORS)
def generate_prompts(
    job_id: str,
    user_id: str = Depends(get_current_user_id),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    """
    Runs the prompt stage to completion. Takes up to a minute per image.
    """
    summary = orchestrator.run_prompt_stage(job_id, user_id)
    return PromptStageResponse(**vars(summary))


@router.post(
    "/{job_id}/videos",
    response_model=VideoStageResponse | VideoStageQueuedResponse,
    responses={202: {"model": VideoStageQueuedResponse}, **JOB_ERRORS},
)
def generate_videos(
    job_id: str,
    wait: bool = Query(False, description="Block until the video stage finishes"),
    user_id: str = Depends(get_current_user_id),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    """
    Queues the video stage on a Celery worker, or runs it inline with `wait=true`.
    The stage can take tens of minutes; clients should poll the status endpoint.
    """
    if wait:
        summary = orchestrator.run_video_stage(job_id, user_id)
        return VideoStageResponse(**vars(summary))

    orchestrator.check_video_stage_ready(job_id, user_id)
    try:
        result = run_video_stage_task.delay(job_id, user_id)
    except Exception as e:
        logging.error(f"Failed to submit video stage to Celery: {e}")
        raise HTTPException(status_code=500, detail="Failed to start the video generation stage.")

    logging.info(f"Video stage for job {job_id} queued as task {result.id}")
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=VideoStageQueuedResponse(job_id=job_id, status="queued", task_id=result.id).model_dump(),
    )


@router.get("/{job_id}/status", response_model=JobStatusResponse, responses=JOB_ERRORS)
def get_job_status(
    job_id: str,
    user_id: str = Depends(get_current_user_id),
    reporter: StatusReporter = Depends(get_status_reporter),
):
    """
    Checks the progress of a job. Safe to poll as often as needed.
    """
    return reporter.report(job_id, user_id)
