"""
Pytest configuration for the proctor API and client tests
"""
import asyncio
import json
import os

os.environ["DATABASE_URL"] = "sqlite://"

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from app.core.cache import cache
from app.core.database import Base, engine, SessionLocal
from app.proctor.capabilities import AcquiredTrack, DisplayGeometry, MediaPlatform
from app.proctor.state import SessionStateStore
from app.schemas.proctoring import (
    ExamDefinition,
    ProctorSessionResponse,
    ReportActivityResponse,
    SessionStatus,
    SubmitResultResponse,
)
from app.services.signaling_relay import SignalingRelay


class InMemoryCache:
    """Stands in for the redis-backed CacheManager; values round-trip through JSON like redis"""

    def __init__(self):
        self.data = {}

    def get(self, key):
        value = self.data.get(key)
        return json.loads(value) if value is not None else None

    def set(self, key, value, ttl=None):
        self.data[key] = json.dumps(value, default=str)
        return True

    def persist(self, key, value):
        return self.set(key, value)

    def delete(self, key):
        return self.data.pop(key, None) is not None

    async def aget(self, key):
        return self.get(key)

    async def aset(self, key, value, ttl=None):
        return self.set(key, value, ttl)

    async def adelete(self, key):
        return self.delete(key)

    def health_check(self):
        return True

    async def ahealth_check(self):
        return True


class FakeEmitter:
    """Records what the relay emits, per socket id"""

    def __init__(self):
        self.calls = []
        self.failing = set()

    async def __call__(self, event, data, to=None):
        if to in self.failing:
            raise ConnectionError(f"socket {to} is gone")
        self.calls.append((event, data, to))

    def to(self, sid):
        return [(event, data) for event, data, target in self.calls if target == sid]


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeRelay:
    """Client-side relay double: records emits and lets tests deliver server events"""

    def __init__(self):
        self.emitted = []
        self.handlers = {}
        self.joins = []
        self.fail = False

    def on(self, event, handler):
        self.handlers[event] = handler

    async def emit(self, event, data):
        if self.fail:
            raise ConnectionError("relay unavailable")
        self.emitted.append((event, data))

    async def join_exam(self, exam_id, student_id):
        self.joins.append(("join-exam", exam_id, student_id))
        return {"success": True}

    async def join_proctor(self, exam_id, student_id=None):
        self.joins.append(("join-proctor", exam_id, student_id))
        return {"success": True}

    async def deliver(self, event, data):
        return await self.handlers[event](data)

    def events(self, name):
        return [data for event, data in self.emitted if event == name]


class FakeApi:
    """Persistence collaborator double with the ProctorApiClient surface"""

    def __init__(self, clock, duration_seconds=3600):
        self.clock = clock
        self.duration_seconds = duration_seconds
        self.started = []
        self.progress = []
        self.activities = []
        self.capabilities = []
        self.submissions = []
        self.submit_response = None
        self.fail_submit = False
        self.fail_progress = False
        self.fail_activity = False
        self.start_instant = None
        self.resumed = False
        self.violation_count = 0

    async def start_session(self, exam_id, student_id, student_name=None):
        self.started.append((exam_id, student_id))
        return ProctorSessionResponse(
            session_id="session-1",
            exam_id=exam_id,
            student_id=student_id,
            start_instant=self.start_instant if self.start_instant is not None else self.clock(),
            duration_seconds=self.duration_seconds,
            status=SessionStatus.ACTIVE,
            violation_count=self.violation_count,
            resumed=self.resumed,
        )

    async def update_progress(self, session_id, snapshot):
        if self.fail_progress:
            raise ConnectionError("api unavailable")
        self.progress.append(snapshot)
        return {"success": True, "applied": True}

    async def report_activity(self, session_id, kind, description=None, severity=None,
                              counts_toward_threshold=True, metadata=None):
        if self.fail_activity:
            raise ConnectionError("api unavailable")
        self.activities.append({"type": kind, "counts": counts_toward_threshold, "severity": severity})
        count = sum(1 for a in self.activities if a["counts"])
        return ReportActivityResponse(recorded=True, violation_count=count, threshold_reached=count >= 3)

    async def record_capability(self, session_id, capability, granted, timestamp=None):
        self.capabilities.append((capability, granted))
        return {"success": True}

    async def submit_result(self, session_id, exam_id, answers, time_taken, auto_submitted=False, reason=None):
        if self.fail_submit:
            raise ConnectionError("api unavailable")
        self.submissions.append({
            "answers": answers,
            "time_taken": time_taken,
            "auto_submitted": auto_submitted,
            "reason": reason,
        })
        return self.submit_response or SubmitResultResponse(message="Exam submitted successfully!", result_id=1)


class FakeTrack:
    def __init__(self, kind="video"):
        self.kind = kind
        self.stopped = False

    def stop(self):
        self.stopped = True


class FakePlatform(MediaPlatform):
    """Scripted device access: each acquire pops the next outcome (tracks or an exception)"""

    def __init__(self, geometry=None, outcomes=None, fullscreen=True, delay=0.0):
        self.geometry = geometry or DisplayGeometry(1920, 1080, 1920, 1080)
        self.outcomes = outcomes or {}
        self.fullscreen = fullscreen
        self.delay = delay
        self.acquired = []

    async def display_geometry(self):
        return self.geometry

    async def acquire(self, capability):
        if self.delay:
            await asyncio.sleep(self.delay)
        queue = self.outcomes.get(capability)
        outcome = queue.pop(0) if queue else self._default(capability)
        if isinstance(outcome, Exception):
            raise outcome
        self.acquired.extend(outcome)
        return outcome

    def _default(self, capability):
        if capability.value == "screen-share":
            return [AcquiredTrack("video", label="screen:0:0", width=1920, height=1080, track=FakeTrack())]
        kind = "audio" if capability.value == "microphone" else "video"
        return [AcquiredTrack(kind, label=f"default {capability.value}", width=640, height=480, track=FakeTrack(kind))]

    async def enter_fullscreen(self):
        return self.fullscreen

    async def open_tracks(self):
        return {"webcam": FakeTrack("video"), "microphone": FakeTrack("audio"), "screen": FakeTrack("video")}


# server fixtures

@pytest.fixture(autouse=True)
def memory_cache(monkeypatch):
    """Route the shared cache manager to memory so no test needs redis"""
    memory = InMemoryCache()
    for name in ("get", "set", "persist", "delete", "aget", "aset", "adelete", "health_check", "ahealth_check"):
        monkeypatch.setattr(cache, name, getattr(memory, name))
    return memory


@pytest.fixture
def tables():
    from app import models  # noqa: F401

    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture
def db(tables):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def emitter():
    return FakeEmitter()


@pytest.fixture
def relay(emitter):
    return SignalingRelay(emitter)


@pytest.fixture
def app(tables, relay, monkeypatch):
    from app.main import app

    monkeypatch.setattr(app.state, "relay", relay)
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def exam_payload():
    return {
        "id": "exam-1",
        "title": "Linear Algebra Midterm",
        "duration_minutes": 60,
        "question_ids": ["q1", "q2", "q3", "q4", "q5"],
    }


@pytest.fixture
def exam(client, exam_payload):
    response = client.post("/api/v1/exams", json=exam_payload)
    assert response.status_code == 201
    return response.json()


# client fixtures

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return SessionStateStore(InMemoryCache())


@pytest.fixture
def fake_relay():
    return FakeRelay()


@pytest.fixture
def fake_api(clock):
    return FakeApi(clock)


def make_exam(question_count=5, duration_minutes=60, **kwargs):
    return ExamDefinition(
        id=kwargs.pop("id", "exam-1"),
        title=kwargs.pop("title", "Linear Algebra Midterm"),
        duration_minutes=duration_minutes,
        question_ids=[f"q{i}" for i in range(1, question_count + 1)],
        **kwargs,
    )


@pytest_asyncio.fixture
async def controller_factory(fake_api, fake_relay, store, clock):
    """Builds controllers wired to the fakes and stops their background tasks afterwards"""
    from app.proctor.controller import ExamSessionController

    built = []

    def build(exam=None, **kwargs):
        exam = exam or make_exam()
        fake_api.duration_seconds = exam.duration_minutes * 60
        controller = ExamSessionController(exam, "student-1", fake_api, fake_relay, store,
                                           student_name="Ada", clock=clock, **kwargs)
        built.append(controller)
        return controller

    yield build

    for controller in built:
        controller.timer.stop()
        controller.progress.stop()
