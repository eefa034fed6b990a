"""
Configuration file for the Property Video Generator.
Contains all global constants, pipeline tuning and prompt templates.
"""

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()

# --- Constants ---
PROJECT_ROOT = os.getcwd()
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./property_video.db")

CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/0")
# When set, admission rate limiting is shared across instances through Redis.
REDIS_URL = os.getenv("REDIS_URL", "")

INFERENCE_API_URL = os.getenv("INFERENCE_API_URL", "https://api.replicate.com/v1")
INFERENCE_API_TOKEN = os.getenv("INFERENCE_API_TOKEN", "")
DESCRIBE_MODEL = os.getenv("DESCRIBE_MODEL", "")
ANIMATE_MODEL = os.getenv("ANIMATE_MODEL", "")
INFERENCE_REQUEST_TIMEOUT = int(os.getenv("INFERENCE_REQUEST_TIMEOUT", "30"))

S3_BUCKET = os.getenv("S3_BUCKET", "video-assets")
S3_ENDPOINT_URL = os.getenv("S3_ENDPOINT_URL", "")
S3_REGION = os.getenv("S3_REGION", "auto")
S3_ACCESS_KEY_ID = os.getenv("S3_ACCESS_KEY_ID", "")
S3_SECRET_ACCESS_KEY = os.getenv("S3_SECRET_ACCESS_KEY", "")
S3_PUBLIC_URL = os.getenv("S3_PUBLIC_URL", "")
DOWNLOAD_TIMEOUT = int(os.getenv("DOWNLOAD_TIMEOUT", "120"))

FFMPEG_BINARY = os.getenv("FFMPEG_BINARY", "ffmpeg")
STITCH_TIMEOUT_SECONDS = int(os.getenv("STITCH_TIMEOUT_SECONDS", "600"))
TEMP_STITCH_DIR = os.getenv("TEMP_STITCH_DIR", os.path.join(PROJECT_ROOT, "temp_videos"))

RATE_LIMIT_MAX_REQUESTS = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "5"))
RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))

PRICE_PER_ITEM = 4
MAX_ITEMS = 10


# --- Pipeline tuning ---

@dataclass(frozen=True)
class StagePolling:
    """How often, and how many times, a prediction is checked before giving up."""
    interval: float
    max_attempts: int

    @property
    def ceiling_seconds(self) -> float:
        return self.interval * self.max_attempts


@dataclass(frozen=True)
class PipelineConfig:
    price_per_item: int = PRICE_PER_ITEM
    max_items: int = MAX_ITEMS
    describe_polling: StagePolling = field(default_factory=lambda: StagePolling(interval=2, max_attempts=30))
    animate_polling: StagePolling = field(default_factory=lambda: StagePolling(interval=5, max_attempts=720))


# --- Prompt Engineering Section ---

DESCRIBE_SYSTEM_PROMPT = "You are an expert AI image-to-video creator and property video maker."

DESCRIBE_INSTRUCTION = (
    "Analyze this property image and create a detailed prompt for video generation. "
    "Focus ONLY on what's visible in the image. Do not add or hallucinate any elements. "
    "Stay within the frame boundaries. Create a cinematic prompt suitable for a property "
    "video that describes the scene accurately without adding fictional elements."
)

ANIMATE_PROMPT_TEMPLATE = """Add a smooth, slow camera motion to this image.
Do not change anything and do not add anything: only use what you can see in this image.
Keep every existing element exactly as it appears.

Scene: {scene}"""
