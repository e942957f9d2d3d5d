"""Shared pytest fixtures for test suite"""
import asyncio
import json
import os
import sys
import tempfile
from pathlib import Path
from typing import Generator
from unittest.mock import patch

import fakeredis
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Settings are read at import time, so point them at throwaway locations first
_TEST_ROOT = Path(tempfile.mkdtemp(prefix="reelhouse-tests-"))
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["STORAGE_DIR"] = str(_TEST_ROOT / "storage")
os.environ["WORK_DIR"] = str(_TEST_ROOT / "work")
os.environ["STALE_SWEEP_ENABLED"] = "false"
os.environ["STORAGE_BACKEND"] = "local"

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from reelhouse.main import app
from reelhouse.db import redis as redis_module
from reelhouse.db.session import get_db
from reelhouse.models import Base
from reelhouse.services.media.config import ThumbnailOptions
from reelhouse.services.media.orchestrator import ProcessingOptions, build_orchestrator
from reelhouse.services.media.process import ProcessErr, ProcessErrorKind, ProcessOk
from reelhouse.services.storage.local_store import LocalArtifactStore


# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

# 2 KiB of distinct bytes per rendition, enough for range assertions
RENDITION_PAYLOAD = bytes(range(256)) * 8


class FakeRunner:
    """Stands in for ffmpeg and ffprobe

    Answers ``-version`` checks, returns canned ffprobe JSON, emits
    ``-progress`` lines for transcodes and writes every output file the
    command names. Failures and timeouts can be injected per quality, failures
    per thumbnail.
    """

    def __init__(
        self,
        duration=60.0,
        width=1280,
        height=720,
        fail_qualities=(),
        timeout_qualities=(),
        fail_thumbnails=(),
        missing_tools=False,
        probe_error=None,
        probe_payload=None,
        transcode_delay=0.0,
    ):
        self.duration = duration
        self.width = width
        self.height = height
        self.fail_qualities = set(fail_qualities)
        self.timeout_qualities = set(timeout_qualities)
        self.fail_thumbnails = set(fail_thumbnails)
        self.missing_tools = missing_tools
        self.probe_error = probe_error
        self.probe_payload = probe_payload
        self.transcode_delay = transcode_delay
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0

    def default_probe_payload(self):
        fmt = {
            "format_name": "mov,mp4,m4a,3gp,3g2,mj2",
            "bit_rate": "2500000",
            "size": "1048576",
        }
        if self.duration is not None:
            fmt["duration"] = str(self.duration)
        return {
            "streams": [
                {
                    "codec_type": "video",
                    "codec_name": "h264",
                    "width": self.width,
                    "height": self.height,
                    "r_frame_rate": "30/1",
                    "avg_frame_rate": "30/1",
                },
                {"codec_type": "audio", "codec_name": "aac"},
            ],
            "format": fmt,
        }

    def transcode_calls(self):
        return [cmd for cmd in self.calls if "-progress" in cmd]

    def thumbnail_calls(self):
        return [cmd for cmd in self.calls if "-frames:v" in cmd]

    async def run(self, cmd, timeout=None, on_line=None):
        cmd = [str(part) for part in cmd]
        self.calls.append(cmd)
        if self.missing_tools:
            return ProcessErr(ProcessErrorKind.NOT_FOUND, f"{cmd[0]}: [Errno 2] No such file or directory")
        if "-version" in cmd:
            return ProcessOk(stdout=f"{cmd[0]} version 6.1-test Copyright (c) the FFmpeg developers", stderr="")
        if "-show_streams" in cmd:
            return self._probe()
        if "-progress" in cmd:
            return await self._transcode(cmd, on_line, timeout)
        return self._thumbnail(cmd)

    def _probe(self):
        if self.probe_error:
            return ProcessErr(ProcessErrorKind.EXIT, f"ffprobe exited with code 1: {self.probe_error}", 1, self.probe_error)
        payload = self.probe_payload if self.probe_payload is not None else self.default_probe_payload()
        return ProcessOk(stdout=json.dumps(payload), stderr="")

    async def _transcode(self, cmd, on_line, timeout=None):
        scale = cmd[cmd.index("-vf") + 1]
        quality = f"{scale.split(':')[-1]}p"
        output = Path(cmd[-1])

        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.transcode_delay:
                await asyncio.sleep(self.transcode_delay)
        finally:
            self.in_flight -= 1

        if quality in self.fail_qualities:
            return ProcessErr(ProcessErrorKind.EXIT, "ffmpeg exited with code 1: Conversion failed!", 1, "Conversion failed!")
        if quality in self.timeout_qualities:
            output.parent.mkdir(parents=True, exist_ok=True)
            output.write_bytes(RENDITION_PAYLOAD[:100])
            return ProcessErr(ProcessErrorKind.TIMEOUT, f"{cmd[0]} timed out after {timeout}s")

        if on_line is not None and self.duration:
            for fraction, state in ((0.5, "continue"), (1.0, "end")):
                on_line(f"frame={int(self.duration * 30 * fraction)}")
                on_line(f"out_time_us={int(self.duration * fraction * 1_000_000)}")
                on_line(f"progress={state}")
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(RENDITION_PAYLOAD)
        return ProcessOk(stdout="", stderr="")

    def _thumbnail(self, cmd):
        output = Path(cmd[-1])
        index = int(output.stem.rsplit("_", 1)[-1])
        if index in self.fail_thumbnails:
            return ProcessErr(ProcessErrorKind.EXIT, "ffmpeg exited with code 1: Invalid data", 1, "Invalid data")
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(b"\xff\xd8\xff\xe0thumbnail" + bytes([index]))
        return ProcessOk(stdout="", stderr="")


def upload_video(orchestrator, tmp_path, content=b"\x00\x00\x00\x18ftypmp42" * 64, name="lecture.mp4", asset_id="asset1"):
    """Write a local file and hand it to the orchestrator as an upload"""
    source = tmp_path / f"upload-{asset_id}.mp4"
    source.write_bytes(content)
    return asyncio.run(orchestrator.accept_upload(asset_id, source, name, "video/mp4"))


def process(orchestrator, asset_id="asset1", qualities=None, **kwargs):
    return asyncio.run(orchestrator.process_upload(asset_id, ProcessingOptions(qualities=qualities, **kwargs)))


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    # Create all tables
    Base.metadata.create_all(bind=test_engine)

    # Create session
    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        # Drop all tables after test
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def mock_redis():
    """Mock Redis client using fakeredis"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)
    with patch.object(redis_module, '_client', fake_redis):
        yield fake_redis


@pytest.fixture(scope="function")
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture(scope="function")
def store(tmp_path) -> LocalArtifactStore:
    return LocalArtifactStore(tmp_path / "store")


@pytest.fixture(scope="function")
def orchestrator(db_session, mock_redis, store, fake_runner, tmp_path):
    """Orchestrator wired to the fake toolchain, a temp store and the test database"""
    return build_orchestrator(
        runner=fake_runner,
        store=store,
        session_factory=TestSessionLocal,
        thumbnail_options=ThumbnailOptions(count=3),
        max_concurrent=2,
        work_dir=tmp_path / "work",
        delete_original_default=False,
    )


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis, orchestrator) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database, mocked Redis and the fake toolchain"""

    # Override get_db dependency to use test database
    def override_get_db():
        db = TestSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.state.orchestrator = orchestrator

    try:
        # Disable OpenTelemetry instrumentation in tests
        with patch('reelhouse.core.otel.initialize_otel', return_value=False):
            with patch('reelhouse.core.otel.setup_otel_logging', return_value=False):
                with patch('reelhouse.core.otel.instrument_sqlalchemy'):
                    with TestClient(app) as test_client:
                        yield test_client
    finally:
        # Cleanup - always clear overrides
        app.dependency_overrides.clear()
        app.state.orchestrator = None
