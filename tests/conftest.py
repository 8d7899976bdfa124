import io
import sys
import time
from pathlib import Path

import pytest
from PIL import Image

from splat_api.config import Settings
from splat_api.ingest import UploadedImage
from splat_api.jobs import JobManager

STUB = Path(__file__).resolve().parent / "stub_generator.py"


def _image_bytes(fmt: str) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (8, 8), (200, 40, 40)).save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def jpeg_bytes():
    return _image_bytes("JPEG")


@pytest.fixture
def png_bytes():
    return _image_bytes("PNG")


@pytest.fixture
def image(jpeg_bytes):
    return UploadedImage("a.jpg", jpeg_bytes)


@pytest.fixture
def make_settings(tmp_path):
    def _make(mode="ok", extra_env=None, **overrides):
        env = {"STUB_MODE": mode, "HOME": str(tmp_path / "home")}
        env.update(extra_env or {})
        values = dict(
            upload_dir=tmp_path / "uploads",
            output_dir=tmp_path / "outputs",
            generator_command=[sys.executable, str(STUB), "{input_dir}", "{output_dir}"],
            generator_env=env,
            generator_timeout_sec=30,
            max_concurrent_jobs=2,
            max_queued_jobs=2,
        )
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def settings(make_settings):
    return make_settings()


@pytest.fixture
def make_manager():
    managers = []

    def _make(settings):
        manager = JobManager(settings)
        managers.append(manager)
        return manager

    yield _make
    for manager in managers:
        manager.shutdown()


@pytest.fixture
def wait_for():
    def _wait(predicate, timeout=10.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.05)
        return False

    return _wait
