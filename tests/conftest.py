# tests/conftest.py

import os
import sys

# Add the parent directory to the Python path so we can import from it
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from config import PipelineConfig, StagePolling
from credits import SqlCreditLedger
from database import Base
from errors import StitchError, StorageError, UploadFailure
from job_store import JobStore
from models import CreditAccount
from orchestrator import ImageUpload, JobOrchestrator
from services import InferenceClient, InferenceResult
from storage import ObjectStore

USER_ID = "user-1"
OTHER_USER_ID = "user-2"
STARTING_BALANCE = 100


class FakeObjectStore(ObjectStore):
    """Keeps objects in memory; any key containing a name in `fail_on` is refused."""

    def __init__(self, fail_on=()):
        self.objects = {}
        self.fail_on = set(fail_on)

    def put(self, key, data, content_type):
        if any(name in key for name in self.fail_on):
            raise UploadFailure(f"refused {key}")
        self.objects[key] = (data, content_type)
        return f"https://cdn.test/{key}"

    def get(self, url):
        key = url.replace("https://cdn.test/", "")
        if key in self.objects:
            return self.objects[key][0]
        if "missing" in url:
            raise StorageError(f"404 for {url}")
        return f"clip:{url}".encode()


class FakeInference(InferenceClient):
    """
    Scripted inference. `describe_errors` / `animate_errors` map a substring of
    the image URL to the exception that call should raise.
    """

    def __init__(self, describe_errors=None, animate_errors=None, on_call=None):
        self.describe_errors = describe_errors or {}
        self.animate_errors = animate_errors or {}
        self.on_call = on_call
        self.describe_calls = []
        self.animate_calls = []

    @staticmethod
    def _match(errors, image_url):
        for name, error in errors.items():
            if name in image_url:
                return error
        return None

    def describe(self, image_url):
        self.describe_calls.append(image_url)
        if self.on_call:
            self.on_call("describe", image_url)
        error = self._match(self.describe_errors, image_url)
        if error:
            raise error
        name = image_url.rsplit("/", 1)[-1]
        return InferenceResult(output=f"A sunlit view of {name}", prediction_id=f"desc-{len(self.describe_calls)}")

    def animate(self, image_url, prompt):
        self.animate_calls.append((image_url, prompt))
        if self.on_call:
            self.on_call("animate", image_url)
        error = self._match(self.animate_errors, image_url)
        if error:
            raise error
        name = image_url.rsplit("/", 1)[-1]
        return InferenceResult(output=f"https://provider.test/{name}.mp4", prediction_id=f"vid-{len(self.animate_calls)}")


class FakeStitcher:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def stitch(self, job_id, video_urls):
        self.calls.append((job_id, list(video_urls)))
        if self.error:
            raise self.error
        if not video_urls:
            raise StitchError("No video clips to stitch")
        if len(video_urls) == 1:
            return video_urls[0]
        return f"https://cdn.test/{job_id}/stitched-{job_id}.mp4"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    session.add(CreditAccount(user_id=USER_ID, balance=STARTING_BALANCE))
    session.add(CreditAccount(user_id=OTHER_USER_ID, balance=STARTING_BALANCE))
    session.commit()
    yield session
    session.close()


@pytest.fixture
def job_store(db):
    return JobStore(db)


@pytest.fixture
def ledger(db):
    return SqlCreditLedger(db)


@pytest.fixture
def object_store():
    return FakeObjectStore()


@pytest.fixture
def inference():
    return FakeInference()


@pytest.fixture
def stitcher():
    return FakeStitcher()


@pytest.fixture
def fast_config():
    return PipelineConfig(
        describe_polling=StagePolling(interval=0, max_attempts=30),
        animate_polling=StagePolling(interval=0, max_attempts=720),
    )


@pytest.fixture
def make_orchestrator(job_store, ledger, object_store, inference, stitcher, fast_config):
    def _make(**overrides):
        parts = dict(
            jobs=job_store,
            ledger=ledger,
            store=object_store,
            inference=inference,
            stitcher=stitcher,
            config=fast_config,
            rate_limiter=None,
        )
        parts.update(overrides)
        return JobOrchestrator(**parts)

    return _make


@pytest.fixture
def orchestrator(make_orchestrator):
    return make_orchestrator()


def make_images(*names):
    return [ImageUpload(filename=name, content=f"bytes-of-{name}".encode(), content_type="image/jpeg") for name in names]
