# tests/test_services.py

import os
import subprocess

import pytest
import requests

import services
from config import PipelineConfig, StagePolling
from conftest import USER_ID, FakeObjectStore, make_images
from errors import PollTimeout, PromptGenerationError, StitchError, VideoGenerationError
from models import ItemStatus, JobStatus
from services import Prediction, ReplicateInferenceClient, Stitcher

POLL_URL = "https://api.test/predictions/p1"


UNDECODABLE = object()


class FakeResponse:
    def __init__(self, data=None, status_code=200):
        self.data = data
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")

    def json(self):
        if self.data is UNDECODABLE:
            raise ValueError("No JSON object could be decoded")
        return self.data


class FakeSession:
    """
    Replays scripted provider answers. Each entry in `checks` is the decoded JSON
    body of a status check, `UNDECODABLE`, or an exception to raise.
    """

    def __init__(self, submitted, checks=(), default_check=None):
        self.headers = {}
        self.submitted = submitted
        self.checks = list(checks)
        self.default_check = default_check
        self.posts = []
        self.gets = []

    def post(self, url, json=None, timeout=None):
        self.posts.append((url, json))
        if isinstance(self.submitted, FakeResponse):
            return self.submitted
        return FakeResponse(self.submitted)

    def get(self, url, timeout=None):
        self.gets.append(url)
        answer = self.checks.pop(0) if self.checks else self.default_check
        if isinstance(answer, Exception):
            raise answer
        return FakeResponse(answer)


def _prediction(status, output=None, error=None):
    return {"id": "p1", "status": status, "urls": {"get": POLL_URL}, "output": output, "error": error}


def _client(session, config=None):
    sleeps = []
    client = ReplicateInferenceClient(
        config=config or PipelineConfig(),
        api_url="https://api.test/",
        api_token="token",
        describe_model="describe-model",
        animate_model="animate-model",
        session=session,
        sleep=sleeps.append,
    )
    return client, sleeps


# --- Prediction polling ---

def test_describe_polls_until_succeeded_and_joins_tokens():
    """
    A describe prediction is checked every 2 seconds until it succeeds.
    """
    # Input: the provider answers "processing" once, then streams back tokens
    session = FakeSession(
        _prediction("starting"),
        checks=[_prediction("processing"), _prediction("succeeded", output=["A bright ", "living room"])],
    )
    client, sleeps = _client(session)

    # Action
    result = client.describe("https://cdn.test/u/j/0-front.jpg")

    # Assert
    assert result.output == "A bright living room"
    assert result.prediction_id == "p1"
    assert sleeps == [2, 2]
    assert session.gets == [POLL_URL, POLL_URL]

    url, payload = session.posts[0]
    assert url == "https://api.test/predictions"
    assert payload["version"] == "describe-model"
    assert payload["input"]["image_input"] == ["https://cdn.test/u/j/0-front.jpg"]
    assert session.headers["Authorization"] == "Bearer token"


def test_failed_status_check_doubles_the_next_wait():
    session = FakeSession(
        _prediction("starting"),
        checks=[requests.ConnectionError("reset"), _prediction("succeeded", output="Living room")],
    )
    client, sleeps = _client(session)

    result = client.describe("https://cdn.test/a.jpg")

    assert result.output == "Living room"
    assert sleeps == [2, 4]


@pytest.mark.parametrize("body", [
    UNDECODABLE,
    None,
    [],
    "<html>502 Bad Gateway</html>",
    {"id": "p1", "status": "processing", "urls": "https://api.test/predictions/p1"},
])
def test_malformed_status_body_is_treated_as_transient(body):
    session = FakeSession(
        _prediction("starting"),
        checks=[body, _prediction("succeeded", output="https://provider.test/v.mp4")],
    )
    client, sleeps = _client(session)

    result = client.animate("https://cdn.test/a.jpg", "pan slowly")

    assert result.output == "https://provider.test/v.mp4"
    assert sleeps == [5, 10]


def test_malformed_status_body_does_not_abort_the_batch(make_orchestrator, job_store):
    """
    A gateway answering with a JSON list is retried; every image still gets a prompt.
    """
    # Input: the first status check of the first image returns `[]`
    session = FakeSession(
        _prediction("starting"),
        checks=[[], _prediction("succeeded", output="Front porch"), _prediction("succeeded", output="Kitchen")],
    )
    client, _ = _client(session)
    orchestrator = make_orchestrator(inference=client)
    created = orchestrator.create_job(USER_ID, make_images("front.jpg", "kitchen.jpg"))

    # Action
    summary = orchestrator.run_prompt_stage(created.job_id, USER_ID)

    # Assert
    assert summary.processed_images == 2
    job = job_store.get_job(created.job_id)
    assert job.status == JobStatus.PROCESSING_PROMPTS
    assert [item.prompt_status for item in job_store.items(job.id)] == [ItemStatus.COMPLETED, ItemStatus.COMPLETED]
    assert [item.generated_prompt for item in job_store.items(job.id)] == ["Front porch", "Kitchen"]


def test_polling_gives_up_after_max_attempts():
    config = PipelineConfig(describe_polling=StagePolling(interval=1, max_attempts=3))
    session = FakeSession(_prediction("starting"), default_check=_prediction("processing"))
    client, sleeps = _client(session, config)

    with pytest.raises(PollTimeout) as exc_info:
        client.describe("https://cdn.test/a.jpg")

    assert exc_info.value.stage == "describe"
    assert exc_info.value.attempts == 3
    assert sleeps == [1, 1, 1]


def test_failed_prediction_surfaces_provider_detail():
    session = FakeSession(_prediction("starting"), checks=[_prediction("failed", error="NSFW content detected")])
    client, _ = _client(session)

    with pytest.raises(VideoGenerationError) as exc_info:
        client.animate("https://cdn.test/a.jpg", "pan slowly")

    assert exc_info.value.detail == "NSFW content detected"


def test_cancelled_prediction_is_a_failure():
    session = FakeSession(_prediction("starting"), checks=[_prediction("canceled")])
    client, _ = _client(session)

    with pytest.raises(PromptGenerationError) as exc_info:
        client.describe("https://cdn.test/a.jpg")

    assert exc_info.value.detail == "canceled"


def test_submission_error_is_not_retried():
    session = FakeSession(FakeResponse({"detail": "Invalid version"}, status_code=422))
    client, sleeps = _client(session)

    with pytest.raises(PromptGenerationError):
        client.describe("https://cdn.test/a.jpg")

    assert sleeps == []
    assert session.gets == []


def test_prediction_finished_at_submission_skips_polling():
    session = FakeSession({"id": "p9", "status": "succeeded", "output": ["https://provider.test/a.mp4", "extra"]})
    client, sleeps = _client(session)

    result = client.animate("https://cdn.test/a.jpg", "pan slowly")

    assert result.output == "https://provider.test/a.mp4"
    assert result.prediction_id == "p9"
    assert sleeps == []
    payload = session.posts[0][1]
    assert payload["input"]["duration"] == 5
    assert payload["input"]["aspect_ratio"] == "16:9"


def test_empty_description_is_a_failure():
    session = FakeSession(_prediction("starting"), checks=[_prediction("succeeded", output=["  ", ""])])
    client, _ = _client(session)

    with pytest.raises(PromptGenerationError):
        client.describe("https://cdn.test/a.jpg")


def test_succeeded_video_without_url_is_a_failure():
    session = FakeSession(_prediction("starting"), checks=[_prediction("succeeded", output=[])])
    client, _ = _client(session)

    with pytest.raises(VideoGenerationError):
        client.animate("https://cdn.test/a.jpg", "pan slowly")


def test_prediction_from_json_normalizes_status():
    prediction = Prediction.from_json({"id": 42, "status": "SUCCEEDED"})

    assert prediction.id == "42"
    assert prediction.finished
    assert prediction.poll_url == ""


def test_extract_text_reads_dict_output():
    assert ReplicateInferenceClient._extract_text({"text": "A hallway"}) == "A hallway"
    assert ReplicateInferenceClient._extract_text(None) == ""


# --- Stitcher ---

@pytest.fixture
def stitch_store():
    return FakeObjectStore()


@pytest.fixture
def work_dir(tmp_path):
    return str(tmp_path / "stitch")


def _output_path(command):
    return next(arg for arg in command if arg.endswith("output.mp4"))


def _manifest_path(command):
    return command[command.index("-i") + 1]


def test_single_clip_is_returned_unchanged(stitch_store, work_dir, monkeypatch):
    def fail_run(*args, **kwargs):
        raise AssertionError("ffmpeg should not run for a single clip")

    monkeypatch.setattr(services.subprocess, "run", fail_run)
    stitcher = Stitcher(stitch_store, work_dir=work_dir)

    assert stitcher.stitch("job-1", ["https://provider.test/a.mp4"]) == "https://provider.test/a.mp4"
    assert stitch_store.objects == {}


def test_no_clips_is_an_error(stitch_store, work_dir):
    with pytest.raises(StitchError):
        Stitcher(stitch_store, work_dir=work_dir).stitch("job-1", [])


def test_stitch_concatenates_in_order_and_cleans_up(stitch_store, work_dir, monkeypatch):
    """
    Clips are downloaded, listed in a concat manifest, joined and uploaded.
    """
    seen = {}

    def fake_run(command, **kwargs):
        with open(_manifest_path(command), encoding="utf-8") as f:
            seen["manifest"] = f.read().splitlines()
        seen["clips"] = sorted(name for name in os.listdir(os.path.dirname(_output_path(command))) if name.startswith("clip_"))
        with open(_output_path(command), "wb") as f:
            f.write(b"stitched")
        return subprocess.CompletedProcess(command, 0, "", "")

    monkeypatch.setattr(services.subprocess, "run", fake_run)
    stitcher = Stitcher(stitch_store, work_dir=work_dir)

    url = stitcher.stitch("job-1", ["https://provider.test/a.mp4", "https://provider.test/b.mp4"])

    assert url == "https://cdn.test/job-1/stitched-job-1.mp4"
    assert stitch_store.objects["job-1/stitched-job-1.mp4"] == (b"stitched", "video/mp4")
    assert seen["clips"] == ["clip_000.mp4", "clip_001.mp4"]
    assert [line.rsplit(os.sep, 1)[-1] for line in seen["manifest"]] == ["clip_000.mp4'", "clip_001.mp4'"]
    assert all(line.startswith("file '") for line in seen["manifest"])
    assert os.listdir(work_dir) == []


def test_ffmpeg_failure_reports_last_stderr_line_and_cleans_up(stitch_store, work_dir, monkeypatch):
    def fake_run(command, **kwargs):
        raise subprocess.CalledProcessError(1, command, output="", stderr="ffmpeg version 6\nconcat.txt: Invalid data found")

    monkeypatch.setattr(services.subprocess, "run", fake_run)
    stitcher = Stitcher(stitch_store, work_dir=work_dir)

    with pytest.raises(StitchError) as exc_info:
        stitcher.stitch("job-1", ["https://provider.test/a.mp4", "https://provider.test/b.mp4"])

    assert "Invalid data found" in exc_info.value.message
    assert os.listdir(work_dir) == []
    assert stitch_store.objects == {}


def test_ffmpeg_timeout_is_a_stitch_error(stitch_store, work_dir, monkeypatch):
    def fake_run(command, **kwargs):
        raise subprocess.TimeoutExpired(command, kwargs["timeout"])

    monkeypatch.setattr(services.subprocess, "run", fake_run)
    stitcher = Stitcher(stitch_store, work_dir=work_dir, timeout=7)

    with pytest.raises(StitchError) as exc_info:
        stitcher.stitch("job-1", ["https://provider.test/a.mp4", "https://provider.test/b.mp4"])

    assert "7 seconds" in exc_info.value.message


def test_missing_output_file_is_a_stitch_error(stitch_store, work_dir, monkeypatch):
    monkeypatch.setattr(services.subprocess, "run", lambda command, **kwargs: subprocess.CompletedProcess(command, 0))
    stitcher = Stitcher(stitch_store, work_dir=work_dir)

    with pytest.raises(StitchError) as exc_info:
        stitcher.stitch("job-1", ["https://provider.test/a.mp4", "https://provider.test/b.mp4"])

    assert "did not produce" in exc_info.value.message


def test_clip_download_failure_is_a_stitch_error(stitch_store, work_dir, monkeypatch):
    calls = []
    monkeypatch.setattr(services.subprocess, "run", lambda command, **kwargs: calls.append(command))
    stitcher = Stitcher(stitch_store, work_dir=work_dir)

    with pytest.raises(StitchError):
        stitcher.stitch("job-1", ["https://provider.test/a.mp4", "https://provider.test/missing.mp4"])

    assert calls == []
    assert os.listdir(work_dir) == []


def test_build_command_uses_concat_demuxer_and_reencodes(stitch_store):
    command = Stitcher(stitch_store, ffmpeg_binary="/usr/bin/ffmpeg").build_command("/tmp/concat.txt", "/tmp/output.mp4")

    def value_after(flag):
        return command[command.index(flag) + 1]

    assert command[0] == "/usr/bin/ffmpeg"
    assert value_after("-f") == "concat"
    assert value_after("-safe") == "0"
    assert value_after("-i") == "/tmp/concat.txt"
    assert value_after("-vcodec") == "libx264"
    assert value_after("-acodec") == "aac"
    assert value_after("-avoid_negative_ts") == "make_zero"
    assert value_after("-fflags") == "+genpts"
    assert "/tmp/output.mp4" in command
    assert "-y" in command
