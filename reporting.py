"""
StatusReporter: the client-facing progress view of a Job.

Pure read path. Counters are recomputed from the item rows on every call, so
the report is always consistent with the persisted sub-states. Items whose
prompt failed keep `video_status = pending` forever; the video progress
counts them as `skipped` so they are not mistaken for items not yet started.
"""

from typing import Iterable

from job_store import JobStore
from models import ItemStatus, JobItem
from schemas import JobItemStatus, JobProgress, JobStatusResponse, JobSummary, StageProgress


def count_statuses(statuses: Iterable[str], skipped: int = 0) -> StageProgress:
    statuses = list(statuses)
    return StageProgress(
        completed=sum(1 for s in statuses if s == ItemStatus.COMPLETED),
        processing=sum(1 for s in statuses if s == ItemStatus.PROCESSING),
        failed=sum(1 for s in statuses if s == ItemStatus.FAILED),
        skipped=skipped,
        total=len(statuses),
    )


def count_skipped_videos(items: Iterable[JobItem]) -> int:
    return sum(
        1 for item in items
        if item.prompt_status == ItemStatus.FAILED and item.video_status == ItemStatus.PENDING
    )


class StatusReporter:
    def __init__(self, jobs: JobStore):
        self.jobs = jobs

    def report(self, job_id: str, user_id: str) -> JobStatusResponse:
        job = self.jobs.get_owned_job(job_id, user_id)
        items = self.jobs.items(job.id)
        return JobStatusResponse(
            job=JobSummary.model_validate(job),
            progress=JobProgress(
                prompts=count_statuses(item.prompt_status for item in items),
                videos=count_statuses(
                    (item.video_status for item in items),
                    skipped=count_skipped_videos(items),
                ),
            ),
            items=[JobItemStatus.model_validate(item) for item in items],
        )
