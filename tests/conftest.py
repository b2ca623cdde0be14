"""Shared test fixtures for inventory tests."""

from datetime import datetime, timedelta

import numpy as np
import cv2
import pytest

from fabric_inventory.database import create_db_engine, create_session_factory, init_db
from fabric_inventory.errors import VisionProviderError
from fabric_inventory.ledger import StockLedger
from fabric_inventory.stock import StockService
from fabric_inventory.storage import LocalBlobStorage
from fabric_inventory.vision import Label, LabelDetector


def encode_png(image: np.ndarray) -> bytes:
    ok, buffer = cv2.imencode(".png", image)
    assert ok
    return buffer.tobytes()


@pytest.fixture
def red_square_image():
    """Generate a 200x200 red square on white background."""
    img = np.ones((200, 200, 3), dtype=np.uint8) * 255
    img[40:160, 40:160] = [30, 30, 200]  # Red square (BGR)
    return img


@pytest.fixture
def blue_circle_image():
    """Generate a 200x200 blue circle on white background."""
    img = np.ones((200, 200, 3), dtype=np.uint8) * 255
    cv2.circle(img, (100, 100), 60, (200, 30, 30), -1)
    return img


@pytest.fixture
def textured_image():
    """Generate a 200x200 checkerboard, a stand-in for a woven pattern."""
    img = np.ones((200, 200, 3), dtype=np.uint8) * 200
    for y in range(0, 200, 20):
        for x in range(0, 200, 20):
            if (x // 20 + y // 20) % 2 == 0:
                img[y:y+20, x:x+20] = [50, 50, 50]
    return img


@pytest.fixture
def noise_image():
    """Generate a 200x200 random noise image."""
    rng = np.random.RandomState(42)
    return rng.randint(0, 255, (200, 200, 3), dtype=np.uint8)


@pytest.fixture
def red_square_png(red_square_image):
    return encode_png(red_square_image)


@pytest.fixture
def blue_circle_png(blue_circle_image):
    return encode_png(blue_circle_image)


@pytest.fixture
def textured_png(textured_image):
    return encode_png(textured_image)


class FakeClock:
    """Deterministic ledger clock; each call advances by ``step``."""

    def __init__(self, start=datetime(2024, 1, 15, 9, 0, 0), step=timedelta(minutes=1)):
        self.now = start
        self.step = step

    def __call__(self):
        current = self.now
        self.now = self.now + self.step
        return current

    def jump_to(self, moment: datetime):
        self.now = moment


class FakeLabelDetector(LabelDetector):
    """
    In-memory label detector.

    Labels are looked up by the exact image bytes; unknown images get
    ``default`` labels. Images listed in ``failing`` raise a provider error.
    """

    def __init__(self, labels_by_image=None, default=None, failing=()):
        self.labels_by_image = labels_by_image or {}
        self.default = default or []
        self.failing = set(failing)
        self.calls = 0

    def detect_labels(self, image_bytes):
        self.calls += 1
        if image_bytes in self.failing:
            raise VisionProviderError("simulated provider outage")
        return list(self.labels_by_image.get(image_bytes, self.default))


@pytest.fixture
def fabric_labels():
    return [Label("Fabric", 90.0), Label("Red", 80.0), Label("Textile", 70.0)]


@pytest.fixture
def db_engine():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(session_factory, clock):
    return StockLedger(session_factory, clock=clock)


@pytest.fixture
def storage(tmp_path):
    return LocalBlobStorage(str(tmp_path / "uploads"))


@pytest.fixture
def stock_service(db_session, ledger, storage):
    return StockService(db_session, ledger, storage)


@pytest.fixture
def make_detector():
    """Factory for FakeLabelDetector instances."""
    return FakeLabelDetector
