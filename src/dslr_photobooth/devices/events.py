"""Outward events pushed from the session to connected clients."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

PREVIEW_FRAME = "preview-frame"
CAPTURE_READY = "capture-ready"
SESSION_STATUS = "session-status"


@dataclass(frozen=True, slots=True)
class OutboundEvent:
    """A named event and its JSON-serializable payload.

    ``preview-frame`` and ``capture-ready`` carry a ``data:image/jpeg;base64``
    string, ``session-status`` carries ``SessionStatus.to_dict()``.
    """

    name: str
    data: Any

    def to_message(self) -> dict[str, Any]:
        return {"event": self.name, "data": self.data}


@runtime_checkable
class EventPublisher(Protocol):  # pragma: no cover
    """Transport side of the session.

    ``publish`` is called on the event loop and must not block; slow
    consumers are the transport's problem, not the session's.
    """

    def publish(self, event: OutboundEvent) -> None:
        ...


class NullPublisher:
    """Publisher that discards everything."""

    def publish(self, event: OutboundEvent) -> None:
        pass
