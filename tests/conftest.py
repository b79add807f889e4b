"""Shared fixtures: in-memory database, fake oracle transport, fake clocks.

The project root is added to sys.path so `pytest` works without an editable
install. LOG_DIR / UPLOAD_DIR point at a temp dir before core.config loads.
"""

from __future__ import annotations

import os
import sys
import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional, Sequence, Union

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

_TMP = tempfile.mkdtemp(prefix="civic-tests-")
os.environ.setdefault("LOG_DIR", os.path.join(_TMP, "logs"))
os.environ.setdefault("UPLOAD_DIR", os.path.join(_TMP, "uploads"))
os.environ.setdefault("SQLITE_PATH", os.path.join(_TMP, "civic_test.db"))
os.environ["OPENAI_API_KEY"] = ""

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from brain.llm_client import ImagePayload, OracleClient, RetryPolicy, SlidingWindowRateLimiter  # noqa: E402
from db.base import Base  # noqa: E402
from db.init_db import seed_departments  # noqa: E402
from db.models.department import Department  # noqa: E402
from db.models.user import StaffUser  # noqa: E402
from db.session import enable_sqlite_savepoints  # noqa: E402
from services.image_store import ImageStore  # noqa: E402
from services.issue_service import IssuePipeline  # noqa: E402

T0 = datetime(2024, 6, 3, 9, 0, 0)

JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"fake-jpeg-body" * 8


class FakeClock:
    """Monotonic clock + sleep pair for the rate limiter / retry loop."""

    def __init__(self, start: float = 0.0):
        self.t = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.t

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.t += seconds


class WallClock:
    """Settable naive-UTC `now` for the pipeline."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeOracle:
    """VisionOracle returning scripted answers (str) or raising scripted errors."""

    def __init__(self, script: Sequence[Union[str, Exception]]):
        self.script = list(script)
        self.calls: List[int] = []

    def classify(self, images, prompt):
        self.calls.append(len(images))
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, Exception):
            raise item
        return item


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.created: List[str] = []
        self.resolved: List[str] = []

    def issue_created(self, issue):
        if self.fail:
            raise RuntimeError("smtp down")
        self.created.append(issue.issue_id)

    def issue_resolved(self, issue):
        if self.fail:
            raise RuntimeError("smtp down")
        self.resolved.append(issue.issue_id)


def make_oracle_client(script, clock: Optional[FakeClock] = None, max_calls: int = 10):
    clock = clock or FakeClock()
    oracle = FakeOracle(script)
    limiter = SlidingWindowRateLimiter(max_calls=max_calls, period=60.0, clock=clock, sleep=clock.sleep)
    client = OracleClient(oracle, rate_limiter=limiter, retry_policy=RetryPolicy(), sleep=clock.sleep)
    return client, oracle, clock


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_savepoints(eng)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def db(engine):
    Session = sessionmaker(bind=engine, autoflush=False)
    session = Session()
    seed_departments(session)

    roads = session.query(Department).filter_by(code="ROADS").one()
    sanitation = session.query(Department).filter_by(code="SANITATION").one()
    session.add_all([
        # lowest id in ROADS/Central but suspended -> never picked
        StaffUser(username="roads_suspended", full_name="Sam Suspended", role="authority",
                  department_id=roads.id, ward_area="Central", is_suspended=True),
        StaffUser(username="roads_central", full_name="Carla Central", role="authority",
                  department_id=roads.id, ward_area="Central"),
        StaffUser(username="roads_north", full_name="Nina North", role="authority",
                  department_id=roads.id, ward_area="North"),
        StaffUser(username="sanitation_north", full_name="Noah North", role="authority",
                  department_id=sanitation.id, ward_area="North"),
    ])
    session.commit()
    yield session
    session.close()


@pytest.fixture
def wall_clock():
    return WallClock()


@pytest.fixture
def image_store(tmp_path):
    store = ImageStore(tmp_path)
    (tmp_path / "pothole.jpg").write_bytes(JPEG_BYTES)
    (tmp_path / "garbage.jpg").write_bytes(JPEG_BYTES + b"g")
    (tmp_path / "proof.jpg").write_bytes(JPEG_BYTES + b"p")
    return store


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def pipeline(db, image_store, notifier, wall_clock):
    return IssuePipeline(db, oracle=None, notifier=notifier, image_store=image_store, clock=wall_clock)


@pytest.fixture
def jpeg_payload():
    return ImagePayload(data=JPEG_BYTES, mime_type="image/jpeg")


def staff_id(db, username: str) -> int:
    return db.query(StaffUser).filter_by(username=username).one().id
