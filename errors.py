"""
Exception types for the video generation pipeline.

Each error carries the HTTP status the API answers with, so the routers can
stay thin and the orchestrator never imports FastAPI.
"""

from typing import Optional


class VideoPipelineError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def extra(self) -> dict:
        return {}


class InvalidBatch(VideoPipelineError):
    status_code = 400
    code = "invalid_batch"


class RateLimited(VideoPipelineError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, retry_after: int):
        super().__init__(f"Rate limit exceeded. Retry in {retry_after} seconds.")
        self.retry_after = retry_after

    def extra(self) -> dict:
        return {"retry_after": self.retry_after}


class InsufficientCredits(VideoPipelineError):
    status_code = 402
    code = "insufficient_credits"

    def __init__(self, current_balance: int, required: int):
        super().__init__(f"Insufficient credits. Required: {required}, Available: {current_balance}")
        self.current_balance = current_balance
        self.required = required

    def extra(self) -> dict:
        return {"current_credits": self.current_balance, "required_credits": self.required}


class StorageError(VideoPipelineError):
    code = "storage_error"


class UploadFailure(StorageError):
    code = "upload_failed"


class NoImagesUploaded(VideoPipelineError):
    code = "no_images_uploaded"

    def __init__(self, job_id: str):
        super().__init__("No images could be uploaded")
        self.job_id = job_id

    def extra(self) -> dict:
        return {"job_id": self.job_id}


class ProviderFailure(VideoPipelineError):
    """The inference provider reported a failed, cancelled or unusable prediction."""

    code = "provider_failure"
    stage = "inference"

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.detail = detail


class PromptGenerationError(ProviderFailure):
    stage = "describe"


class VideoGenerationError(ProviderFailure):
    stage = "animate"


class PollTimeout(VideoPipelineError):
    code = "poll_timeout"

    def __init__(self, stage: str, attempts: int, waited_seconds: float):
        super().__init__(f"{stage} prediction timed out after {attempts} checks (~{int(waited_seconds)}s)")
        self.stage = stage
        self.attempts = attempts


class StitchError(VideoPipelineError):
    code = "stitch_failed"


class JobNotFound(VideoPipelineError):
    status_code = 404
    code = "job_not_found"

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")


class AuthorizationError(VideoPipelineError):
    status_code = 403
    code = "forbidden"

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} does not belong to the caller")


class JobStateError(VideoPipelineError):
    status_code = 409
    code = "invalid_job_state"


class InvalidTransition(VideoPipelineError):
    code = "invalid_transition"


class StageFailed(VideoPipelineError):
    """A whole stage failed; the Job has already been marked failed."""

    code = "stage_failed"

    def __init__(self, job_id: str, message: str):
        super().__init__(message)
        self.job_id = job_id

    def extra(self) -> dict:
        return {"job_id": self.job_id}
