"""Camera session lifecycle and recovery controller.

``SessionController`` is the single owner of the camera. It acquires the
device, keeps live view and capture dispatch running while the session
is active, and when the device stops answering it tears everything
down, sweeps stale driver processes, waits and tries again.

State machine:

    IDLE --start()--> ACQUIRING --ok--> ACTIVE --shutdown()--> IDLE
                          |               |
                        fails        fatal error
                          v               v
                      RECOVERING <--------+
                       |      |
          attempts left|      |retry limit reached
                       v      v
                ACQUIRING    FAILED --start()--> ACQUIRING

Every transition happens on the event loop inside the controller; the
preview loop and dispatcher only report problems through callbacks.
Acquisitions never overlap: one lifecycle task at a time drives
ACQUIRING and RECOVERING, and a new one is only created from IDLE,
FAILED or ACTIVE.

Example:
    controller = SessionController(driver, reclaimer, publisher)
    await controller.start()
    await controller.wait_for_state(SessionState.ACTIVE, timeout=30)
    await controller.trigger_capture()
    ...
    await controller.shutdown()
"""

from __future__ import annotations

import asyncio
import itertools
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Protocol, runtime_checkable

from dslr_photobooth.devices.dispatcher import (
    DEFAULT_DEDUP_WINDOW,
    DEFAULT_DOWNLOAD_TIMEOUT,
    DEFAULT_QUEUE_SIZE,
    CaptureDispatcher,
)
from dslr_photobooth.devices.events import (
    SESSION_STATUS,
    EventPublisher,
    NullPublisher,
    OutboundEvent,
)
from dslr_photobooth.devices.executor import DEFAULT_DEVICE_TIMEOUT, DeviceExecutor
from dslr_photobooth.devices.preview import DEFAULT_PREVIEW_INTERVAL, PreviewStreamer
from dslr_photobooth.drivers.cameras.types import (
    CameraDriver,
    CameraHandle,
    Capability,
    DeviceBusyError,
    DeviceDescriptor,
    DeviceError,
    DeviceEvent,
    FatalDeviceError,
    NoDeviceError,
    UnsupportedOperationError,
    UnsupportedPropertyError,
)
from dslr_photobooth.drivers.reclaimer import NullReclaimer, Reclaimer
from dslr_photobooth.observability import LogContext, SessionStats, get_logger

logger = get_logger(__name__)

__all__ = [
    "DEFAULT_PROPERTIES",
    "ExponentialBackoff",
    "FixedBackoff",
    "NoActiveSessionError",
    "RetryPolicy",
    "SessionConfig",
    "SessionController",
    "SessionError",
    "SessionState",
    "SessionStatus",
    "get_controller",
    "init_controller",
    "shutdown_controller",
]


# =============================================================================
# Types
# =============================================================================


class SessionState(Enum):
    """Lifecycle state of the camera session."""

    IDLE = "idle"
    ACQUIRING = "acquiring"
    ACTIVE = "active"
    RECOVERING = "recovering"
    FAILED = "failed"


class SessionError(Exception):
    """Base exception for session-level errors."""


class NoActiveSessionError(SessionError):
    """A command needs an active session and there is none."""


class DispatchHealthError(SessionError):
    """Capture dispatch kept failing; treated as a device malfunction."""


@dataclass(frozen=True, slots=True)
class SessionStatus:
    """Answer to a status query.

    Attributes:
        state: Current lifecycle state.
        device_discovered: Whether the last discovery found a camera.
        device: The camera in use (or being acquired), if any.
        attempts: Acquisition attempts in the current acquire/recover cycle.
        max_attempts: Retry limit from the policy.
        preview_active: Whether live view frames are being streamed.
        last_error: Most recent error that drove a transition.
        changed_at: When the state last changed.
    """

    state: SessionState
    device_discovered: bool
    device: DeviceDescriptor | None = None
    attempts: int = 0
    max_attempts: int = 0
    preview_active: bool = False
    last_error: str | None = None
    changed_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.state is SessionState.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "device_discovered": self.device_discovered,
            "device": self.device.to_dict() if self.device else None,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "preview_active": self.preview_active,
            "last_error": self.last_error,
            "changed_at": self.changed_at.isoformat() if self.changed_at else None,
        }


# =============================================================================
# Retry policy
# =============================================================================


@runtime_checkable
class RetryPolicy(Protocol):  # pragma: no cover
    """How many acquisitions to try and how long to wait between them."""

    @property
    def max_attempts(self) -> int:
        ...

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        ...


@dataclass(frozen=True)
class FixedBackoff:
    """Same delay before every retry."""

    max_attempts: int = 5
    delay_seconds: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.delay_seconds < 0:
            raise ValueError("delay_seconds must not be negative")

    def delay_for(self, attempt: int) -> float:
        return self.delay_seconds


@dataclass(frozen=True)
class ExponentialBackoff:
    """``base_delay * factor ** (attempt - 1)``, capped at ``max_delay``."""

    max_attempts: int = 5
    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.factor < 1:
            raise ValueError("base_delay must be >= 0 and factor >= 1")

    def delay_for(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * self.factor ** max(attempt - 1, 0))


# =============================================================================
# Configuration
# =============================================================================

# Tethered booth defaults: images to the host, best JPEG, booth lighting.
DEFAULT_PROPERTIES: Mapping[str, str] = MappingProxyType(
    {
        "save-destination": "host",
        "image-quality": "high",
        "white-balance": "fluorescent",
    }
)


def _default_image_dir() -> Path:
    return Path.cwd() / "images"


@dataclass
class SessionConfig:
    """Session tuning. Read once when the controller is created.

    Attributes:
        properties: Camera properties applied on every acquisition.
        preview_interval: Live-view poll period in seconds.
        device_timeout: Bound on every device call in seconds.
        reclaim_timeout: Bound on one reclaim sweep, settle wait included.
        image_dir: Where captures are downloaded; created if missing.
        event_queue_size: Capacity of the device notification channel.
        dedup_window: Recent capture keys remembered for de-duplication.
        download_timeout: Bound on downloading and reading one capture.
        dispatch_failure_threshold: Consecutive dispatch failures that
            force a recovery. None keeps dispatch failures isolated.
    """

    properties: Mapping[str, str] = field(
        default_factory=lambda: dict(DEFAULT_PROPERTIES)
    )
    preview_interval: float = DEFAULT_PREVIEW_INTERVAL
    device_timeout: float = DEFAULT_DEVICE_TIMEOUT
    reclaim_timeout: float = 30.0
    image_dir: Path = field(default_factory=_default_image_dir)
    event_queue_size: int = DEFAULT_QUEUE_SIZE
    dedup_window: int = DEFAULT_DEDUP_WINDOW
    download_timeout: float = DEFAULT_DOWNLOAD_TIMEOUT
    dispatch_failure_threshold: int | None = None


# =============================================================================
# Controller
# =============================================================================


class SessionController:
    """Owns the camera handle and drives the session state machine.

    All methods must be called from the event loop the controller runs
    on. Driver callbacks reach it through the dispatcher's thread-safe
    channel.
    """

    _session_ids = itertools.count(1)

    def __init__(
        self,
        driver: CameraDriver,
        reclaimer: Reclaimer | None = None,
        publisher: EventPublisher | None = None,
        config: SessionConfig | None = None,
        retry_policy: RetryPolicy | None = None,
        stats: SessionStats | None = None,
    ) -> None:
        """Create an idle controller.

        Args:
            driver: Camera driver used for discovery and opening.
            reclaimer: Process sweep run before each retry; no-op if None.
            publisher: Transport receiving outward events.
            config: Session tuning; defaults when None.
            retry_policy: Attempts and backoff; ``FixedBackoff()`` when None.
            stats: Statistics collector; a new one when None.
        """
        self._driver = driver
        self._reclaimer: Reclaimer = reclaimer or NullReclaimer()
        self._publisher: EventPublisher = publisher or NullPublisher()
        self.config = config or SessionConfig()
        self.retry_policy: RetryPolicy = retry_policy or FixedBackoff()
        self.stats = stats or SessionStats()

        self._state = SessionState.IDLE
        self._state_changed = asyncio.Event()
        self._changed_at = datetime.now(UTC)
        self._history: deque[SessionState] = deque([self._state], maxlen=128)
        self._command_lock = asyncio.Lock()
        self._lifecycle_task: asyncio.Task[None] | None = None
        self._closing = False

        self._attempts = 0
        self._last_error: str | None = None
        self._device_discovered = False
        self._descriptor: DeviceDescriptor | None = None

        self._executor: DeviceExecutor | None = None
        self._handle: CameraHandle | None = None
        self._sink_registered = False
        self._dispatcher: CaptureDispatcher | None = None
        self._preview: PreviewStreamer | None = None

    def __repr__(self) -> str:
        return f"SessionController(state={self._state.value})"

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def history(self) -> list[SessionState]:
        """States entered so far, oldest first (bounded)."""
        return list(self._history)

    @property
    def publisher(self) -> EventPublisher:
        return self._publisher

    @property
    def handle(self) -> CameraHandle | None:
        return self._handle

    @property
    def preview(self) -> PreviewStreamer | None:
        return self._preview

    @property
    def dispatcher(self) -> CaptureDispatcher | None:
        return self._dispatcher

    def status(self) -> SessionStatus:
        return SessionStatus(
            state=self._state,
            device_discovered=self._device_discovered,
            device=self._descriptor,
            attempts=self._attempts,
            max_attempts=self.retry_policy.max_attempts,
            preview_active=self._preview is not None and self._preview.is_running,
            last_error=self._last_error,
            changed_at=self._changed_at,
        )

    async def query_status(self, refresh: bool = False) -> SessionStatus:
        """Return the current status.

        Args:
            refresh: When no acquisition is running or active (IDLE or
                FAILED), run a bounded discovery first so
                ``device_discovered`` reflects what is plugged in now.
        """
        if refresh and self._state in (SessionState.IDLE, SessionState.FAILED):
            try:
                devices = await asyncio.wait_for(
                    asyncio.to_thread(self._driver.discover),
                    self.config.device_timeout,
                )
            except Exception as e:
                logger.warning(
                    "Status discovery failed",
                    error=str(e) or type(e).__name__,
                    error_type=type(e).__name__,
                )
                self._device_discovered = False
            else:
                self._device_discovered = bool(devices)
        return self.status()

    async def wait_for_state(
        self, *states: SessionState, timeout: float | None = None
    ) -> SessionState:
        """Wait until the session is in one of ``states``.

        Raises:
            TimeoutError: If none is reached within ``timeout`` seconds.
        """

        async def _wait() -> SessionState:
            while self._state not in states:
                await self._state_changed.wait()
            return self._state

        return await asyncio.wait_for(_wait(), timeout)

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    async def start(self) -> SessionStatus:
        """Begin acquisition.

        No-op while acquiring, recovering or active. From FAILED this is
        the external restart: the attempt counter starts over.
        """
        async with self._command_lock:
            idle = self._state in (SessionState.IDLE, SessionState.FAILED)
            if idle and self._lifecycle_task is None:
                if self._state is SessionState.FAILED:
                    logger.info("Restarting failed session")
                self._attempts = 0
                self._last_error = None
                self._spawn_lifecycle(None)
            else:
                logger.debug("Start ignored", state=self._state.value)
            return self.status()

    async def trigger_capture(self) -> None:
        """Release the shutter. The image arrives later as ``capture-ready``.

        Raises:
            NoActiveSessionError: Session is not ACTIVE.
            DeviceBusyError: Camera still busy; state unchanged.
            FatalDeviceError: Camera stopped answering; recovery started.
            NoDeviceError: Camera disappeared; recovery started.
        """
        handle, executor = self._handle, self._executor
        if self._state is not SessionState.ACTIVE or handle is None or executor is None:
            raise NoActiveSessionError(
                f"No active camera session (state={self._state.value})"
            )
        try:
            await executor.call(handle.trigger_capture, operation="trigger_capture")
        except DeviceBusyError as e:
            logger.info("Capture refused, camera busy", error=str(e))
            raise
        except (FatalDeviceError, NoDeviceError) as e:
            self._request_recovery(e)
            raise
        logger.info("Capture requested")

    async def shutdown(self) -> None:
        """Stop everything and release the camera; ends in IDLE.

        Cancels any acquisition or backoff in progress, then tears down
        in order: preview loop, event sink, notification channel, device
        live view, handle.
        """
        async with self._command_lock:
            self._closing = True
            try:
                task, self._lifecycle_task = self._lifecycle_task, None
                if task is not None and not task.done():
                    task.cancel()
                    try:
                        await task
                    except asyncio.CancelledError:
                        current = asyncio.current_task()
                        if current is not None and current.cancelling():
                            raise
                await self._teardown()
                self._attempts = 0
                self._set_state(SessionState.IDLE)
                logger.info("Camera session shut down")
            finally:
                self._closing = False

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _spawn_lifecycle(self, fault: BaseException | None) -> None:
        self._lifecycle_task = asyncio.get_running_loop().create_task(
            self._run_lifecycle(fault), name="camera-session-lifecycle"
        )

    async def _run_lifecycle(self, fault: BaseException | None) -> None:
        """Acquire, and on failure reclaim, back off and retry.

        ``fault`` is the error that ended an ACTIVE session, or None for a
        fresh start from IDLE/FAILED.
        """
        policy = self.retry_policy
        failed = 0
        pending = fault
        with LogContext(session=next(self._session_ids)):
            try:
                while True:
                    if pending is not None:
                        await self._recover(pending)
                        if failed >= policy.max_attempts:
                            self._last_error = (
                                f"Retry limit reached after {failed} attempts: "
                                f"{_describe(pending)}"
                            )
                            self._set_state(SessionState.FAILED)
                            logger.error(
                                "Camera session failed",
                                attempts=failed,
                                last_error=_describe(pending),
                            )
                            return
                        delay = policy.delay_for(max(failed, 1))
                        logger.info("Retrying acquisition", delay_s=delay)
                        await asyncio.sleep(delay)

                    self._attempts = failed + 1
                    self._set_state(SessionState.ACQUIRING)
                    try:
                        await self._acquire()
                    except Exception as e:
                        failed += 1
                        pending = e
                        self._last_error = _describe(e)
                        logger.warning(
                            "Acquisition failed",
                            attempt=failed,
                            max_attempts=policy.max_attempts,
                            error=_describe(e),
                            error_type=type(e).__name__,
                        )
                        continue

                    self._activate()
                    return
            finally:
                if self._lifecycle_task is asyncio.current_task():
                    self._lifecycle_task = None

    async def _recover(self, error: BaseException) -> None:
        """Tear down, enter RECOVERING and sweep stale driver processes."""
        await self._teardown()
        self._set_state(SessionState.RECOVERING)
        try:
            report = await asyncio.wait_for(
                asyncio.to_thread(self._reclaimer.reclaim),
                self.config.reclaim_timeout,
            )
        except Exception as e:
            self.stats.record_reclaim_failure()
            logger.error(
                "Reclaim sweep failed",
                error=_describe(e),
                error_type=type(e).__name__,
            )
            return
        if report.partial_failure:
            self.stats.record_reclaim_failure(len(report.failures))
            logger.warning("Reclaim incomplete", failures=report.failures)

    async def _acquire(self) -> None:
        """Discover, open, configure and wire up the camera.

        Resources are stored on the controller as soon as they exist so a
        failure part-way is cleaned up by the next teardown.
        """
        cfg = self.config
        executor = DeviceExecutor(timeout=cfg.device_timeout)
        self._executor = executor

        devices = await executor.call(self._driver.discover, operation="discover")
        self._device_discovered = bool(devices)
        if not devices:
            raise NoDeviceError("No camera detected")
        descriptor = devices[0]
        self._descriptor = descriptor

        handle = await executor.call(
            self._driver.open,
            descriptor,
            operation="open",
            on_abandoned=_close_quietly,
        )
        self._handle = handle
        logger.info(
            "Camera opened",
            device_id=descriptor.device_id,
            name=descriptor.name,
            port=descriptor.port,
        )

        if Capability.CONFIGURE in handle.capabilities and cfg.properties:
            await self._configure(handle, executor)

        dispatcher = CaptureDispatcher(
            cfg.image_dir,
            self._publisher.publish,
            queue_size=cfg.event_queue_size,
            dedup_window=cfg.dedup_window,
            download_timeout=cfg.download_timeout,
            on_fault=self._on_device_fault,
            on_failure=self._on_dispatch_failure,
            stats=self.stats,
        )
        dispatcher.start()
        self._dispatcher = dispatcher
        await executor.call(
            handle.register_event_sink, dispatcher.submit, operation="register_sink"
        )
        self._sink_registered = True

        if Capability.PREVIEW in handle.capabilities:
            try:
                await executor.call(handle.start_preview, operation="start_preview")
            except (FatalDeviceError, NoDeviceError):
                raise
            except DeviceError as e:
                logger.warning("Live view unavailable", error=_describe(e))
            else:
                self._preview = PreviewStreamer(
                    handle,
                    executor,
                    self._publish_preview,
                    interval=cfg.preview_interval,
                    on_fatal=self._request_recovery,
                    stats=self.stats,
                )

    async def _configure(self, handle: CameraHandle, executor: DeviceExecutor) -> None:
        """Apply properties; anything short of a fatal error is only logged."""
        try:
            await executor.call(
                handle.configure, dict(self.config.properties), operation="configure"
            )
        except UnsupportedPropertyError as e:
            logger.warning("Camera properties not applied", properties=list(e.properties))
        except (FatalDeviceError, NoDeviceError):
            raise
        except (DeviceError, UnsupportedOperationError) as e:
            logger.warning("Camera configuration failed", error=_describe(e))

    def _activate(self) -> None:
        self._attempts = 0
        self._last_error = None
        self.stats.reset_dispatch_failures()
        self._set_state(SessionState.ACTIVE)
        if self._preview is not None:
            self._preview.start()
        else:
            logger.info("Session active without live view")

    async def _teardown(self) -> None:
        """Release session resources in dependency order. Never raises."""
        preview, self._preview = self._preview, None
        if preview is not None:
            await preview.stop()

        handle, executor = self._handle, self._executor
        if handle is not None and executor is not None and self._sink_registered:
            await self._quiet_call(
                executor, handle.register_event_sink, None, operation="unregister_sink"
            )
        self._sink_registered = False

        dispatcher, self._dispatcher = self._dispatcher, None
        if dispatcher is not None:
            await dispatcher.stop()

        if handle is not None and executor is not None:
            if Capability.PREVIEW in handle.capabilities:
                await self._quiet_call(
                    executor, handle.stop_preview, operation="stop_preview"
                )
            await self._quiet_call(executor, handle.close, operation="close")
            logger.info("Camera released")
        self._handle = None

        if executor is not None:
            executor.shutdown()
        self._executor = None

    @staticmethod
    async def _quiet_call(
        executor: DeviceExecutor, func: Any, *args: Any, operation: str
    ) -> None:
        try:
            await executor.call(func, *args, operation=operation)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                "Teardown step failed",
                operation=operation,
                error=_describe(e),
                error_type=type(e).__name__,
            )

    # -------------------------------------------------------------------------
    # Fault handling
    # -------------------------------------------------------------------------

    def _request_recovery(self, error: BaseException) -> None:
        """Move an ACTIVE session to RECOVERING and start the retry cycle."""
        if self._state is not SessionState.ACTIVE or self._closing:
            return
        if self._lifecycle_task is not None and not self._lifecycle_task.done():
            return
        logger.error(
            "Camera fault, recovering",
            error=_describe(error),
            error_type=type(error).__name__,
        )
        self.stats.record_recovery(type(error).__name__)
        self._last_error = _describe(error)
        self._set_state(SessionState.RECOVERING)
        self._spawn_lifecycle(error)

    def _on_device_fault(self, event: DeviceEvent) -> None:
        self._request_recovery(FatalDeviceError(event.detail or "Device fault"))

    def _on_dispatch_failure(self, error: BaseException, consecutive: int) -> None:
        threshold = self.config.dispatch_failure_threshold
        if threshold is None or consecutive < threshold:
            return
        self._request_recovery(
            DispatchHealthError(
                f"{consecutive} consecutive capture dispatch failures "
                f"(last: {_describe(error)})"
            )
        )

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def _publish_preview(self, event: OutboundEvent) -> None:
        if self._state is SessionState.ACTIVE:
            self._publisher.publish(event)

    def _set_state(self, state: SessionState) -> None:
        if state is self._state:
            return
        previous, self._state = self._state, state
        self._changed_at = datetime.now(UTC)
        self._history.append(state)
        logger.info(
            "Session state changed",
            from_state=previous.value,
            to_state=state.value,
            attempts=self._attempts,
        )
        event, self._state_changed = self._state_changed, asyncio.Event()
        event.set()
        self._publisher.publish(OutboundEvent(SESSION_STATUS, self.status().to_dict()))


def _describe(error: BaseException) -> str:
    return str(error) or type(error).__name__


def _close_quietly(handle: CameraHandle) -> None:
    """Close a handle nobody owns any more."""
    try:
        handle.close()
    except Exception as e:
        logger.warning("Late handle close failed", error=_describe(e))


# =============================================================================
# Global accessor
# =============================================================================

# Set once at application start; the only process-wide reference.
_controller: SessionController | None = None


def init_controller(
    driver: CameraDriver,
    reclaimer: Reclaimer | None = None,
    publisher: EventPublisher | None = None,
    config: SessionConfig | None = None,
    retry_policy: RetryPolicy | None = None,
    stats: SessionStats | None = None,
) -> SessionController:
    """Create the process-wide controller.

    Raises:
        RuntimeError: If one already exists; call shutdown_controller() first.
    """
    global _controller
    if _controller is not None:
        raise RuntimeError("Session controller already initialized")
    _controller = SessionController(
        driver,
        reclaimer=reclaimer,
        publisher=publisher,
        config=config,
        retry_policy=retry_policy,
        stats=stats,
    )
    return _controller


def get_controller() -> SessionController:
    """Return the process-wide controller.

    Raises:
        RuntimeError: If init_controller() has not been called.
    """
    if _controller is None:
        raise RuntimeError(
            "Session controller not initialized. Call init_controller() first."
        )
    return _controller


async def shutdown_controller() -> None:
    """Shut down and forget the process-wide controller. Safe if unset."""
    global _controller
    controller, _controller = _controller, None
    if controller is not None:
        await controller.shutdown()
