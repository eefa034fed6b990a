"""
Relational persistence for Jobs and JobItems.

Every state change goes through this module: transitions are validated
against the tables in `models` and committed immediately, so a crash in the
middle of a batch leaves the last persisted state inspectable.
"""

import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from errors import AuthorizationError, InvalidTransition, JobNotFound
from models import ITEM_TRANSITIONS, JOB_TRANSITIONS, ItemStatus, Job, JobItem, JobStatus


class JobStore:
    def __init__(self, db: Session):
        self.db = db

    def rollback(self) -> None:
        """Discard a half-applied write so the session can record a failure."""
        self.db.rollback()

    # --- Reads ---

    def get_job(self, job_id: str) -> Optional[Job]:
        return self.db.get(Job, job_id)

    def get_owned_job(self, job_id: str, user_id: str) -> Job:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        if job.user_id != user_id:
            raise AuthorizationError(job_id)
        return job

    def items(self, job_id: str) -> List[JobItem]:
        query = select(JobItem).where(JobItem.job_id == job_id).order_by(JobItem.position)
        return list(self.db.execute(query).scalars())

    # --- Creation ---

    def create_job(self, user_id: str, total_items: int, credits_charged: int) -> Job:
        job = Job(
            user_id=user_id,
            status=JobStatus.PENDING,
            total_items=total_items,
            completed_items=0,
            credits_charged=credits_charged,
        )
        self.db.add(job)
        self.db.commit()
        self.db.refresh(job)
        return job

    def add_item(self, job: Job, position: int, image_url: str, image_name: Optional[str]) -> JobItem:
        item = JobItem(job_id=job.id, position=position, image_url=image_url, image_name=image_name)
        self.db.add(item)
        self.db.commit()
        self.db.refresh(item)
        return item

    def set_total_items(self, job: Job, total_items: int) -> None:
        if job.status != JobStatus.PENDING:
            raise InvalidTransition(f"Job {job.id} batch size is fixed once processing starts")
        job.total_items = total_items
        self.db.commit()

    # --- Job transitions ---

    def set_job_status(self, job: Job, status: str) -> None:
        if status not in JOB_TRANSITIONS.get(job.status, set()):
            raise InvalidTransition(f"Job {job.id} cannot move from {job.status} to {status}")
        logging.info(f"Job {job.id}: {job.status} -> {status}")
        job.status = status
        self.db.commit()

    def fail_job(self, job: Job, error_message: str) -> None:
        if job.status in JobStatus.TERMINAL:
            logging.warning(f"Job {job.id} already {job.status}; ignoring failure '{error_message}'")
            return
        logging.error(f"Job {job.id} failed: {error_message}")
        job.status = JobStatus.FAILED
        job.error_message = error_message
        self.db.commit()

    def complete_job(self, job: Job, output_url: str) -> None:
        if JobStatus.COMPLETED not in JOB_TRANSITIONS.get(job.status, set()):
            raise InvalidTransition(f"Job {job.id} cannot complete from {job.status}")
        job.status = JobStatus.COMPLETED
        job.output_url = output_url
        self.db.commit()
        logging.info(f"Job {job.id} completed: {output_url}")

    def increment_completed(self, job: Job) -> None:
        if job.completed_items >= job.total_items:
            raise InvalidTransition(f"Job {job.id} already counts {job.completed_items}/{job.total_items} items")
        job.completed_items += 1
        self.db.commit()

    # --- Item transitions ---

    def set_prompt_status(
        self,
        item: JobItem,
        status: str,
        generated_prompt: Optional[str] = None,
        prediction_id: Optional[str] = None,
    ) -> None:
        self._check_item_transition(item, "prompt", item.prompt_status, status)
        item.prompt_status = status
        if generated_prompt is not None:
            item.generated_prompt = generated_prompt
        if prediction_id is not None:
            item.prompt_prediction_id = prediction_id
        self.db.commit()

    def set_video_status(
        self,
        item: JobItem,
        status: str,
        video_url: Optional[str] = None,
        prediction_id: Optional[str] = None,
    ) -> None:
        if item.prompt_status != ItemStatus.COMPLETED:
            raise InvalidTransition(
                f"Item {item.id} video cannot start before its prompt completes (prompt is {item.prompt_status})"
            )
        self._check_item_transition(item, "video", item.video_status, status)
        item.video_status = status
        if video_url is not None:
            item.video_url = video_url
        if prediction_id is not None:
            item.video_prediction_id = prediction_id
        self.db.commit()

    def fail_unfinished_items(self, job: Job, stage: str) -> int:
        """Mark every item still `processing` in the given stage ("prompt" or "video") as failed."""
        released = 0
        for item in self.items(job.id):
            if stage == "prompt" and item.prompt_status == ItemStatus.PROCESSING:
                self.set_prompt_status(item, ItemStatus.FAILED)
                released += 1
            elif stage == "video" and item.video_status == ItemStatus.PROCESSING:
                self.set_video_status(item, ItemStatus.FAILED)
                released += 1
        if released:
            logging.warning(f"Job {job.id}: marked {released} in-flight {stage} item(s) as failed")
        return released

    @staticmethod
    def _check_item_transition(item: JobItem, stage: str, current: str, target: str) -> None:
        if target not in ITEM_TRANSITIONS.get(current, set()):
            raise InvalidTransition(f"Item {item.id} {stage} cannot move from {current} to {target}")
