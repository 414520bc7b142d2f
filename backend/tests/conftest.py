"""
Pytest configuration and shared fixtures
"""
import pytest
from fastapi.testclient import TestClient
from pathlib import Path
import sys
import os
import io

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

# Set test environment variables before importing app
os.environ.setdefault("CLOUDINARY_CLOUD_NAME", "demo-cloud")
os.environ.setdefault("CLOUDINARY_API_KEY", "test-key")
os.environ.setdefault("CLOUDINARY_API_SECRET", "test-secret")
os.environ.setdefault("PINSTAR_MAX_UPLOAD_MB", "5")

from main import app
from services.previews import get_preview_registry


def make_image_bytes(size=(512, 512), fmt="PNG", mode="RGB", color=(255, 255, 255)) -> bytes:
    from PIL import Image as PILImage  # type: ignore

    img = PILImage.new(mode, size, color=color)
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


def make_noise_image_bytes(size=(1200, 900), fmt="PNG") -> bytes:
    """Random pixels: hard to compress, so JPEG output stays large."""
    from PIL import Image as PILImage  # type: ignore

    img = PILImage.frombytes("RGB", size, os.urandom(size[0] * size[1] * 3))
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def client():
    """Create a test client for the FastAPI app"""
    return TestClient(app)


@pytest.fixture
def sample_image_bytes():
    """Small valid PNG"""
    return make_image_bytes()


@pytest.fixture(autouse=True)
def clear_previews():
    yield
    get_preview_registry().clear()


@pytest.fixture(autouse=True)
def reset_rate_limits():
    import main

    main._rate_buckets.clear()
    yield
    main._rate_buckets.clear()
