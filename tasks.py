# tasks.py

from celery import Celery
import logging

from database import SessionLocal
from config import CELERY_BROKER_URL, CELERY_RESULT_BACKEND
from errors import VideoPipelineError
from orchestrator import build_orchestrator

celery = Celery('tasks', broker=CELERY_BROKER_URL, backend=CELERY_RESULT_BACKEND)
# One job at a time per worker process; the video stage can run for an hour.
celery.conf.update(task_acks_late=True, worker_prefetch_multiplier=1)
logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")


def _run_stage(stage_name: str, job_id: str, user_id: str) -> dict:
    db = SessionLocal()
    try:
        orchestrator = build_orchestrator(db)
        logging.info(f"📝 Worker received {stage_name} for job {job_id}")
        stage = getattr(orchestrator, stage_name)
        summary = stage(job_id, user_id)
        logging.info(f"✅ Worker finished {stage_name} for job {job_id}: {summary}")
        return vars(summary)
    except VideoPipelineError as e:
        # The job row already carries the failure; the task result mirrors it.
        logging.error(f"❌ Worker {stage_name} for job {job_id} ended with {e.code}: {e.message}")
        return {"error": e.code, "detail": e.message}
    finally:
        db.close()


@celery.task
def run_video_stage_task(job_id: str, user_id: str) -> dict:
    """
    Background task for the long-running video stage: animate, then stitch.
    """
    return _run_stage("run_video_stage", job_id, user_id)


@celery.task
def run_pipeline_task(job_id: str, user_id: str) -> dict:
    """
    Background task that chains the prompt stage straight into the video stage.
    """
    return _run_stage("run_pipeline", job_id, user_id)
