"""Test helpers for dslr-photobooth.

Protocol compliance checks plus the small fakes most session tests
share: a publisher that records events, a JPEG encoder that skips
OpenCV, a reclaimer that counts sweeps, and an async polling wait.

Example:
    from tests.helpers import RecordingPublisher, assert_implements_protocol

    publisher = RecordingPublisher()
    assert_implements_protocol(publisher, EventPublisher)
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import Any, Protocol

from dslr_photobooth.devices.events import OutboundEvent
from dslr_photobooth.drivers.reclaimer import ReclaimReport

# Minimal valid JPEG header; enough for mime sniffing and data URLs.
FAKE_JPEG = b"\xff\xd8\xff\xe0fake-jpeg-payload\xff\xd9"


def assert_implements_protocol(instance: object, protocol: type[Protocol]) -> None:
    """Assert ``instance`` satisfies a @runtime_checkable Protocol.

    Raises:
        AssertionError: Listing the protocol members the instance lacks.
    """
    if isinstance(instance, protocol):
        return
    object_attrs = set(dir(object))
    expected = {
        attr
        for attr in set(dir(protocol)) - object_attrs
        if not attr.startswith("_")
    }
    missing = sorted(attr for attr in expected if not hasattr(instance, attr))
    raise AssertionError(
        f"{type(instance).__name__} does not implement {protocol.__name__}. "
        f"Missing: {', '.join(missing) or 'unknown'}"
    )


class RecordingPublisher:
    """EventPublisher that keeps every event it is given."""

    def __init__(self) -> None:
        self.events: list[OutboundEvent] = []

    def publish(self, event: OutboundEvent) -> None:
        self.events.append(event)

    def named(self, name: str) -> list[OutboundEvent]:
        return [e for e in self.events if e.name == name]

    def states(self) -> list[str]:
        """States carried by session-status events, in order."""
        return [e.data["state"] for e in self.named("session-status")]


class FakeEncoder:
    """ImageEncoder returning a constant JPEG; no OpenCV needed."""

    def __init__(self) -> None:
        self.encoded = 0
        self.texts: list[str] = []

    def encode_jpeg(self, img: Any, quality: int = 85) -> bytes:
        self.encoded += 1
        return FAKE_JPEG

    def put_text(
        self,
        img: Any,
        text: str,
        position: tuple[int, int],
        scale: float,
        color: Any,
        thickness: int,
    ) -> None:
        self.texts.append(text)


class CountingReclaimer:
    """Reclaimer that records each sweep and returns a canned report."""

    def __init__(self, report: ReclaimReport | None = None) -> None:
        self.calls = 0
        self.report = report or ReclaimReport()
        self.on_reclaim: Callable[[], None] | None = None

    def reclaim(self) -> ReclaimReport:
        self.calls += 1
        if self.on_reclaim is not None:
            self.on_reclaim()
        return self.report


async def wait_until(
    predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01
) -> None:
    """Poll ``predicate`` on the event loop until it holds.

    Raises:
        AssertionError: If it never holds within ``timeout`` seconds.
    """
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)
