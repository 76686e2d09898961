"""Pytest configuration and fixtures for dslr-photobooth tests.

Session and driver tests run against the digital twin with a fake JPEG
encoder, so nothing here needs a camera, gphoto2 or OpenCV.
"""

from __future__ import annotations

import pytest

from dslr_photobooth.devices.session import FixedBackoff, SessionConfig
from dslr_photobooth.drivers.cameras.twin import (
    DigitalTwinCameraDriver,
    DigitalTwinConfig,
    TwinFaults,
)
from dslr_photobooth.observability import reset_logging
from tests.helpers import CountingReclaimer, FakeEncoder, RecordingPublisher


@pytest.fixture(autouse=True)
def _isolate_logging():
    """Drop handlers installed by a test so the next one starts clean."""
    yield
    reset_logging()


@pytest.fixture
def fake_encoder() -> FakeEncoder:
    return FakeEncoder()


@pytest.fixture
def twin_faults() -> TwinFaults:
    """Empty failure script; tests mutate it to inject faults."""
    return TwinFaults()


@pytest.fixture
def twin_driver(tmp_path, fake_encoder, twin_faults) -> DigitalTwinCameraDriver:
    """Digital twin writing its card to a temp dir, with a fake encoder.

    Yields:
        DigitalTwinCameraDriver whose handles are closed after the test.
    """
    card = tmp_path / "card"
    card.mkdir()
    driver = DigitalTwinCameraDriver(
        config=DigitalTwinConfig(preview_size=(32, 24), card_dir=card),
        faults=twin_faults,
        encoder=fake_encoder,
    )
    yield driver
    for handle in driver.handles:
        handle.close()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def reclaimer() -> CountingReclaimer:
    return CountingReclaimer()


@pytest.fixture
def session_config(tmp_path) -> SessionConfig:
    """Fast session tuning: 10ms preview, short device timeout."""
    return SessionConfig(
        preview_interval=0.01,
        device_timeout=1.0,
        reclaim_timeout=2.0,
        image_dir=tmp_path / "images",
        download_timeout=2.0,
    )


@pytest.fixture
def fast_retry() -> FixedBackoff:
    """Three attempts, no delay between them."""
    return FixedBackoff(max_attempts=3, delay_seconds=0.0)
