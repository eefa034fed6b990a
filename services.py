"""
Service classes for the Property Video Generator.
Contains the InferenceClient (describe / animate with polling) and the Stitcher.
"""

import os
import time
import logging
import tempfile
import subprocess
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Type

import ffmpeg
import requests

from config import (
    ANIMATE_MODEL,
    DESCRIBE_INSTRUCTION,
    DESCRIBE_MODEL,
    DESCRIBE_SYSTEM_PROMPT,
    FFMPEG_BINARY,
    INFERENCE_API_TOKEN,
    INFERENCE_API_URL,
    INFERENCE_REQUEST_TIMEOUT,
    STITCH_TIMEOUT_SECONDS,
    TEMP_STITCH_DIR,
    PipelineConfig,
    StagePolling,
)
from errors import (
    PollTimeout,
    PromptGenerationError,
    ProviderFailure,
    StitchError,
    StorageError,
    VideoGenerationError,
)
from storage import ObjectStore

PENDING_STATUSES = {"starting", "processing", "queued"}
FAILED_STATUSES = {"failed", "canceled", "cancelled"}
SUCCEEDED = "succeeded"


@dataclass
class Prediction:
    """Asynchronous handle returned by the inference provider."""
    id: str
    status: str
    poll_url: str
    output: Any = None
    error: Optional[str] = None

    @classmethod
    def from_json(cls, data: Any) -> "Prediction":
        # Gateways sometimes answer with null, a list or an error page body
        if not isinstance(data, dict):
            raise ValueError(f"Expected a prediction object, got {type(data).__name__}")
        urls = data.get("urls") or {}
        if not isinstance(urls, dict):
            raise ValueError(f"Expected prediction urls to be an object, got {type(urls).__name__}")
        return cls(
            id=str(data.get("id", "")),
            status=str(data.get("status", "")).lower(),
            poll_url=urls.get("get", ""),
            output=data.get("output"),
            error=data.get("error"),
        )

    @property
    def finished(self) -> bool:
        return self.status == SUCCEEDED or self.status in FAILED_STATUSES


@dataclass
class InferenceResult:
    output: str
    prediction_id: str


class InferenceClient:
    """The two external capabilities the pipeline needs."""

    def describe(self, image_url: str) -> InferenceResult:
        raise NotImplementedError

    def animate(self, image_url: str, prompt: str) -> InferenceResult:
        raise NotImplementedError


class ReplicateInferenceClient(InferenceClient):
    """Submits predictions over HTTP and polls them to a terminal state."""

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        api_url: str = INFERENCE_API_URL,
        api_token: str = INFERENCE_API_TOKEN,
        describe_model: str = DESCRIBE_MODEL,
        animate_model: str = ANIMATE_MODEL,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or PipelineConfig()
        self.api_url = api_url.rstrip("/")
        self.describe_model = describe_model
        self.animate_model = animate_model
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {api_token}",
            "Content-Type": "application/json",
        })
        self._sleep = sleep

    # --- Public API ---

    def describe(self, image_url: str) -> InferenceResult:
        payload = {
            "version": self.describe_model,
            "input": {
                "prompt": DESCRIBE_INSTRUCTION,
                "system_prompt": DESCRIBE_SYSTEM_PROMPT,
                "image_input": [image_url],
                "temperature": 1,
                "max_completion_tokens": 4096,
            },
        }
        prediction = self._submit(payload, PromptGenerationError)
        prediction = self._wait(prediction, self.config.describe_polling, PromptGenerationError)
        text = self._extract_text(prediction.output)
        if not text.strip():
            raise PromptGenerationError(f"Prediction {prediction.id} returned an empty prompt")
        return InferenceResult(output=text.strip(), prediction_id=prediction.id)

    def animate(self, image_url: str, prompt: str) -> InferenceResult:
        payload = {
            "version": self.animate_model,
            "input": {
                "image": image_url,
                "prompt": prompt,
                "duration": 5,
                "aspect_ratio": "16:9",
            },
        }
        prediction = self._submit(payload, VideoGenerationError)
        prediction = self._wait(prediction, self.config.animate_polling, VideoGenerationError)
        video_url = self._extract_url(prediction.output)
        if not video_url:
            raise VideoGenerationError(f"Prediction {prediction.id} succeeded without a video URL")
        return InferenceResult(output=video_url, prediction_id=prediction.id)

    # --- Protocol ---

    def _submit(self, payload: dict, error_cls: Type[ProviderFailure]) -> Prediction:
        try:
            response = self.session.post(
                f"{self.api_url}/predictions", json=payload, timeout=INFERENCE_REQUEST_TIMEOUT
            )
            response.raise_for_status()
            prediction = Prediction.from_json(response.json())
        except (requests.RequestException, ValueError) as e:
            raise error_cls(f"Could not start {error_cls.stage} prediction: {e}") from e

        if not prediction.poll_url and not prediction.finished:
            raise error_cls(f"Provider returned no poll URL for prediction {prediction.id}")
        logging.info(f"Submitted {error_cls.stage} prediction {prediction.id} ({prediction.status})")
        return prediction

    def _wait(self, prediction: Prediction, polling: StagePolling, error_cls: Type[ProviderFailure]) -> Prediction:
        attempts = 0
        delay = polling.interval
        while not prediction.finished:
            if attempts >= polling.max_attempts:
                raise PollTimeout(error_cls.stage, attempts, polling.ceiling_seconds)

            self._sleep(delay)
            attempts += 1
            try:
                prediction = self._check(prediction.poll_url)
                delay = polling.interval
            except (requests.RequestException, ValueError) as e:
                # The check failed, not the prediction: back off and ask again.
                logging.warning(f"Status check {attempts}/{polling.max_attempts} for {error_cls.stage} failed: {e}")
                delay = polling.interval * 2
                continue

            logging.debug(f"Poll {attempts}/{polling.max_attempts}: {prediction.id} is {prediction.status}")

        if prediction.status in FAILED_STATUSES:
            detail = prediction.error or prediction.status
            raise error_cls(f"{error_cls.stage} prediction {prediction.id} {prediction.status}: {detail}", detail=detail)
        return prediction

    def _check(self, poll_url: str) -> Prediction:
        response = self.session.get(poll_url, timeout=INFERENCE_REQUEST_TIMEOUT)
        response.raise_for_status()
        return Prediction.from_json(response.json())

    @staticmethod
    def _extract_text(output: Any) -> str:
        # Language models stream their answer back as a list of tokens
        if isinstance(output, list):
            return "".join(str(part) for part in output)
        if isinstance(output, dict):
            return str(output.get("text") or output.get("content") or "")
        if output is None:
            return ""
        return str(output)

    @staticmethod
    def _extract_url(output: Any) -> str:
        if isinstance(output, list):
            return str(output[0]) if output else ""
        if isinstance(output, str):
            return output
        return ""


class Stitcher:
    """Concatenates clips with ffmpeg and uploads the result."""

    def __init__(
        self,
        store: ObjectStore,
        work_dir: str = TEMP_STITCH_DIR,
        ffmpeg_binary: str = FFMPEG_BINARY,
        timeout: int = STITCH_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.work_dir = work_dir
        self.ffmpeg_binary = ffmpeg_binary
        self.timeout = timeout

    def build_command(self, manifest_path: str, output_path: str) -> List[str]:
        stream = (
            ffmpeg
            .input(manifest_path, f="concat", safe=0)
            .output(
                output_path,
                vcodec="libx264",
                acodec="aac",
                avoid_negative_ts="make_zero",
                fflags="+genpts",
            )
            .overwrite_output()
        )
        return stream.compile(cmd=self.ffmpeg_binary)

    def _download_clips(self, video_urls: List[str], tmp_dir: str) -> List[str]:
        paths = []
        for index, url in enumerate(video_urls):
            path = os.path.join(tmp_dir, f"clip_{index:03d}.mp4")
            try:
                data = self.store.get(url)
            except StorageError as e:
                raise StitchError(f"Failed to download clip {index + 1}: {e}") from e
            with open(path, "wb") as f:
                f.write(data)
            paths.append(path)
            logging.info(f"Downloaded clip {index + 1}/{len(video_urls)} to {path}")
        return paths

    @staticmethod
    def _write_manifest(clip_paths: List[str], tmp_dir: str) -> str:
        manifest_path = os.path.join(tmp_dir, "concat.txt")
        with open(manifest_path, "w", encoding="utf-8") as f:
            for path in clip_paths:
                escaped = os.path.abspath(path).replace("'", "'\\''")
                f.write(f"file '{escaped}'\n")
        return manifest_path

    def _run_ffmpeg(self, manifest_path: str, output_path: str) -> None:
        command = self.build_command(manifest_path, output_path)
        logging.info(f"🎞️ Running FFmpeg command: {' '.join(command)}")
        try:
            subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=True,
            )
        except subprocess.CalledProcessError as e:
            stderr = e.stderr.strip() if e.stderr else ""
            logging.error(f"FFmpeg stitching failed. Stderr:\n{stderr}")
            last_line = stderr.splitlines()[-1] if stderr else f"exit code {e.returncode}"
            raise StitchError(f"FFmpeg failed: {last_line}") from e
        except subprocess.TimeoutExpired as e:
            raise StitchError(f"FFmpeg timed out after {self.timeout} seconds") from e
        except FileNotFoundError as e:
            raise StitchError(f"FFmpeg binary not found: {self.ffmpeg_binary}") from e

    def stitch(self, job_id: str, video_urls: List[str]) -> str:
        if not video_urls:
            raise StitchError("No video clips to stitch")
        if len(video_urls) == 1:
            logging.info("Only one clip, no stitching needed")
            return video_urls[0]

        logging.info(f"🎬 Stitching {len(video_urls)} clips for job {job_id}")
        os.makedirs(self.work_dir, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix=f"stitch-{job_id}-", dir=self.work_dir) as tmp_dir:
            clip_paths = self._download_clips(video_urls, tmp_dir)
            manifest_path = self._write_manifest(clip_paths, tmp_dir)
            output_path = os.path.join(tmp_dir, "output.mp4")

            self._run_ffmpeg(manifest_path, output_path)

            if not os.path.exists(output_path) or os.path.getsize(output_path) == 0:
                raise StitchError("FFmpeg did not produce an output video")

            with open(output_path, "rb") as f:
                data = f.read()

            try:
                url = self.store.put(f"{job_id}/stitched-{job_id}.mp4", data, "video/mp4")
            except StorageError as e:
                raise StitchError(f"Failed to upload stitched video: {e}") from e

        logging.info(f"✅ Stitched video for job {job_id}: {url}")
        return url
