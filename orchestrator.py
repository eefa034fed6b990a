"""
JobOrchestrator: drives a batch of property photos to one stitched video.

    create_job        rate limit -> credit debit -> Job + uploaded JobItems
    run_prompt_stage  describe every photo, one at a time
    run_video_stage   animate every described photo, one at a time, then stitch

Items are processed strictly in upload order with a single external call in
flight, to stay under the provider's rate limits. A failing item is recorded
and skipped; only a stage with zero successes fails the whole Job.

Credits are debited once at admission and are never refunded here, even when
every item later fails. Refunds, if the product wants them, belong to billing.
"""

import os
import re
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.orm import Session

from config import ANIMATE_PROMPT_TEMPLATE, PipelineConfig
from credits import CreditLedger, SqlCreditLedger
from errors import (
    InsufficientCredits,
    InvalidBatch,
    JobStateError,
    NoImagesUploaded,
    PollTimeout,
    ProviderFailure,
    RateLimited,
    StageFailed,
    StitchError,
    StorageError,
)
from job_store import JobStore
from models import ItemStatus, Job, JobItem, JobStatus
from rate_limit import RateLimiter, get_rate_limiter
from services import InferenceClient, ReplicateInferenceClient, Stitcher
from storage import ObjectStore, S3ObjectStore


@dataclass
class ImageUpload:
    filename: str
    content: bytes
    content_type: str = "image/jpeg"


@dataclass
class JobCreated:
    job_id: str
    uploaded_count: int
    credits_charged: int
    remaining_credits: int


@dataclass
class PromptStageSummary:
    processed_images: int
    total_images: int


@dataclass
class VideoStageSummary:
    generated_videos: int
    eligible_images: int
    total_images: int
    output_url: str


def build_motion_prompt(generated_prompt: str) -> str:
    return ANIMATE_PROMPT_TEMPLATE.format(scene=generated_prompt.strip())


def storage_key(user_id: str, job_id: str, position: int, filename: str) -> str:
    name = re.sub(r"[^A-Za-z0-9._-]", "_", os.path.basename(filename or "")) or "image"
    return f"{user_id}/{job_id}/{position}-{name}"


class JobOrchestrator:
    def __init__(
        self,
        jobs: JobStore,
        ledger: CreditLedger,
        store: ObjectStore,
        inference: InferenceClient,
        stitcher: Stitcher,
        config: Optional[PipelineConfig] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.jobs = jobs
        self.ledger = ledger
        self.store = store
        self.inference = inference
        self.stitcher = stitcher
        self.config = config or PipelineConfig()
        self.rate_limiter = rate_limiter

    # --- Admission ---

    def create_job(self, user_id: str, images: List[ImageUpload]) -> JobCreated:
        count = len(images)
        if count == 0:
            raise InvalidBatch("At least one image is required")
        if count > self.config.max_items:
            raise InvalidBatch(f"Maximum {self.config.max_items} images allowed")

        if self.rate_limiter is not None:
            decision = self.rate_limiter.check(user_id)
            if not decision.allowed:
                raise RateLimited(decision.retry_after)

        required = count * self.config.price_per_item
        debit = self.ledger.debit(user_id, required)
        if not debit.ok:
            raise InsufficientCredits(debit.new_balance, required)

        job = self.jobs.create_job(user_id, total_items=count, credits_charged=required)
        logging.info(f"📥 Job {job.id} admitted for user {user_id}: {count} images, {required} credits")

        uploaded = 0
        for position, image in enumerate(images):
            key = storage_key(user_id, job.id, position, image.filename)
            try:
                url = self.store.put(key, image.content, image.content_type)
            except StorageError as e:
                logging.error(f"Dropping image {image.filename!r} from job {job.id}: {e}")
                continue
            self.jobs.add_item(job, position=position, image_url=url, image_name=image.filename)
            uploaded += 1

        if uploaded == 0:
            # Credits stay debited: see module docstring.
            self.jobs.fail_job(job, "No images could be uploaded")
            raise NoImagesUploaded(job.id)

        if uploaded != count:
            self.jobs.set_total_items(job, uploaded)

        return JobCreated(
            job_id=job.id,
            uploaded_count=uploaded,
            credits_charged=required,
            remaining_credits=debit.new_balance,
        )

    # --- Prompt stage ---

    def run_prompt_stage(self, job_id: str, user_id: str) -> PromptStageSummary:
        job = self.jobs.get_owned_job(job_id, user_id)
        if job.status != JobStatus.PENDING:
            raise JobStateError(f"Job {job_id} is not in pending state (status: {job.status})")

        self.jobs.set_job_status(job, JobStatus.PROCESSING_PROMPTS)
        with self._fail_on_error(job, "prompt", "Prompt generation failed"):
            items = self.jobs.items(job.id)
            succeeded = 0
            for index, item in enumerate(items, start=1):
                logging.info(f"📝 Job {job.id}: describing image {index}/{len(items)}")
                if self._describe_item(job, item):
                    succeeded += 1

            if succeeded == 0:
                self.jobs.fail_job(job, "Failed to generate any prompts")
                raise StageFailed(job.id, "Failed to generate any prompts")

        logging.info(f"Job {job.id}: prompts ready for {succeeded}/{len(items)} images")
        return PromptStageSummary(processed_images=succeeded, total_images=len(items))

    def _describe_item(self, job: Job, item: JobItem) -> bool:
        self.jobs.set_prompt_status(item, ItemStatus.PROCESSING)
        try:
            result = self.inference.describe(item.image_url)
        except (ProviderFailure, PollTimeout) as e:
            logging.error(f"❌ Prompt failed for item {item.id} of job {job.id}: {e}")
            self.jobs.set_prompt_status(item, ItemStatus.FAILED)
            return False

        self.jobs.set_prompt_status(
            item,
            ItemStatus.COMPLETED,
            generated_prompt=result.output,
            prediction_id=result.prediction_id,
        )
        self.jobs.increment_completed(job)
        return True

    # --- Video stage ---

    def check_video_stage_ready(self, job_id: str, user_id: str) -> Job:
        job = self.jobs.get_owned_job(job_id, user_id)
        if job.status != JobStatus.PROCESSING_PROMPTS:
            raise JobStateError(f"Job {job_id} is not ready for video generation (status: {job.status})")

        items = self.jobs.items(job.id)
        if any(item.prompt_status in (ItemStatus.PENDING, ItemStatus.PROCESSING) for item in items):
            raise JobStateError(f"Job {job_id} is still generating prompts")
        return job

    def run_video_stage(self, job_id: str, user_id: str) -> VideoStageSummary:
        job = self.check_video_stage_ready(job_id, user_id)
        items = self.jobs.items(job.id)
        eligible = [item for item in items if item.prompt_status == ItemStatus.COMPLETED]

        self.jobs.set_job_status(job, JobStatus.PROCESSING_VIDEOS)
        with self._fail_on_error(job, "video", "Video generation failed"):
            if not eligible:
                self.jobs.fail_job(job, "No images with completed prompts found")
                raise StageFailed(job.id, "No images with completed prompts found")

            clips = []
            for index, item in enumerate(eligible, start=1):
                logging.info(f"🎬 Job {job.id}: animating image {index}/{len(eligible)}")
                video_url = self._animate_item(job, item)
                if video_url:
                    clips.append(video_url)

            if not clips:
                self.jobs.fail_job(job, "Failed to generate any videos")
                raise StageFailed(job.id, "Failed to generate any videos")

            self.jobs.set_job_status(job, JobStatus.STITCHING)
            try:
                output_url = self.stitcher.stitch(job.id, clips)
            except StitchError as e:
                message = f"Failed to stitch videos: {e.message}"
                self.jobs.fail_job(job, message)
                raise StageFailed(job.id, message) from e

            self.jobs.complete_job(job, output_url)

        return VideoStageSummary(
            generated_videos=len(clips),
            eligible_images=len(eligible),
            total_images=len(items),
            output_url=output_url,
        )

    def _animate_item(self, job: Job, item: JobItem) -> Optional[str]:
        self.jobs.set_video_status(item, ItemStatus.PROCESSING)
        try:
            result = self.inference.animate(item.image_url, build_motion_prompt(item.generated_prompt))
        except (ProviderFailure, PollTimeout) as e:
            logging.error(f"❌ Video failed for item {item.id} of job {job.id}: {e}")
            self.jobs.set_video_status(item, ItemStatus.FAILED)
            return None

        self.jobs.set_video_status(
            item,
            ItemStatus.COMPLETED,
            video_url=result.output,
            prediction_id=result.prediction_id,
        )
        return result.output

    # --- Chained ---

    def run_pipeline(self, job_id: str, user_id: str) -> VideoStageSummary:
        self.run_prompt_stage(job_id, user_id)
        return self.run_video_stage(job_id, user_id)

    @contextmanager
    def _fail_on_error(self, job: Job, stage: str, message: str):
        try:
            yield
        except StageFailed:
            raise
        except Exception:
            logging.exception(f"Unexpected error while processing job {job.id}")
            self.jobs.rollback()
            self.jobs.fail_unfinished_items(job, stage)
            self.jobs.fail_job(job, message)
            raise


def build_orchestrator(db: Session, config: Optional[PipelineConfig] = None) -> JobOrchestrator:
    """Wire the production collaborators around one database session."""
    config = config or PipelineConfig()
    store = S3ObjectStore()
    return JobOrchestrator(
        jobs=JobStore(db),
        ledger=SqlCreditLedger(db),
        store=store,
        inference=ReplicateInferenceClient(config),
        stitcher=Stitcher(store),
        config=config,
        rate_limiter=get_rate_limiter(),
    )
