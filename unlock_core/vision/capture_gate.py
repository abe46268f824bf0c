"""Capture gate: allows one snapshot only while presence is trusted."""
from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

import numpy as np

from .camera_manager import CameraError, CameraHandle
from .pipeline import encode_jpeg
from .presence import PresenceObservation


class NotReady(RuntimeError):
    """Capture requested outside the Ready state."""


class GateState(enum.Enum):
    IDLE = "idle"
    SAMPLING = "sampling"
    READY = "ready"
    CAPTURING = "capturing"
    CAPTURED = "captured"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self in (GateState.CAPTURED, GateState.ABORTED)


class AbortReason(enum.Enum):
    DEVICE_FAILURE = "device_failure"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class CapturedFrame:
    image_bytes: bytes = field(repr=False)
    captured_at: datetime
    presence_confidence_at_capture: float


class CaptureGate:
    """State machine over ``Idle -> Sampling -> Ready -> Capturing -> Captured``.

    ``Aborted`` is reachable from every non-terminal state. A gate serves a
    single capture; create a new gate for another attempt.
    """

    def __init__(
        self,
        *,
        presence_threshold: float = 0.6,
        dwell_count: int = 2,
        timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        encoder: Callable[[np.ndarray], bytes] = encode_jpeg,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if dwell_count < 1:
            raise ValueError("dwell_count must be >= 1")
        self.presence_threshold = float(presence_threshold)
        self.dwell_count = int(dwell_count)
        self.timeout = float(timeout)
        self._clock = clock
        self._encoder = encoder
        self._logger = logger or logging.getLogger(__name__)
        self._cond = threading.Condition(threading.RLock())

        self._state = GateState.IDLE
        self._camera: Optional[CameraHandle] = None
        self._deadline: Optional[float] = None
        self._streak = 0
        self._ready_reached = False
        self._last_observation: Optional[PresenceObservation] = None
        self._captured: Optional[CapturedFrame] = None
        self._abort_reason: Optional[AbortReason] = None
        self._abort_error: Optional[BaseException] = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def state(self) -> GateState:
        with self._cond:
            return self._state

    @property
    def streak(self) -> int:
        with self._cond:
            return self._streak

    @property
    def abort_reason(self) -> Optional[AbortReason]:
        with self._cond:
            return self._abort_reason

    @property
    def abort_error(self) -> Optional[BaseException]:
        with self._cond:
            return self._abort_error

    @property
    def captured_frame(self) -> Optional[CapturedFrame]:
        with self._cond:
            return self._captured

    @property
    def last_observation(self) -> Optional[PresenceObservation]:
        with self._cond:
            return self._last_observation

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def _set_state(self, state: GateState) -> None:
        if state is self._state:
            return
        self._logger.debug("[Gate] %s -> %s", self._state.value, state.value)
        self._state = state
        self._cond.notify_all()

    def attach(self, camera: CameraHandle) -> None:
        with self._cond:
            if self._state is not GateState.IDLE:
                raise RuntimeError(f"Gate already attached (state={self._state.value})")
            self._camera = camera
            self._deadline = self._clock() + self.timeout
            self._set_state(GateState.SAMPLING)

    def observe(self, observation: PresenceObservation) -> GateState:
        with self._cond:
            if self._state not in (GateState.SAMPLING, GateState.READY):
                return self._state
            self._last_observation = observation
            if observation.qualifies(self.presence_threshold):
                self._streak += 1
            else:
                self._streak = 0
            if self._streak >= self.dwell_count:
                self._ready_reached = True
                self._set_state(GateState.READY)
            else:
                self._set_state(GateState.SAMPLING)
            return self._state

    def check_timeout(self) -> GateState:
        with self._cond:
            if (
                not self._state.terminal
                and not self._ready_reached
                and self._deadline is not None
                and self._clock() >= self._deadline
            ):
                self._logger.info("[Gate] No trusted presence within %.1fs", self.timeout)
                self._abort_locked(AbortReason.TIMEOUT)
            return self._state

    def capture(self) -> CapturedFrame:
        with self._cond:
            if self._state is not GateState.READY:
                raise NotReady(f"Capture not allowed in state '{self._state.value}'")
            camera = self._camera
            confidence = self._last_observation.confidence if self._last_observation else 0.0
            self._set_state(GateState.CAPTURING)
            try:
                frame = camera.current_frame()
                image_bytes = self._encoder(frame)
            except (CameraError, ValueError) as exc:
                self._logger.warning("[Gate] Capture failed: %s", exc)
                self._abort_locked(AbortReason.DEVICE_FAILURE, exc)
                raise
            self._captured = CapturedFrame(
                image_bytes=image_bytes,
                captured_at=datetime.now(timezone.utc),
                presence_confidence_at_capture=confidence,
            )
            self._set_state(GateState.CAPTURED)
            return self._captured

    def cancel(self) -> None:
        self.abort(AbortReason.CANCELLED)

    def abort(self, reason: AbortReason, error: Optional[BaseException] = None) -> None:
        with self._cond:
            self._abort_locked(reason, error)

    def _abort_locked(self, reason: AbortReason, error: Optional[BaseException] = None) -> None:
        if self._state.terminal:
            return
        self._abort_reason = reason
        self._abort_error = error
        self._set_state(GateState.ABORTED)

    def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """Block until Ready or a terminal state; True only for Ready."""
        with self._cond:
            self._cond.wait_for(
                lambda: self._state is GateState.READY or self._state.terminal,
                timeout=timeout,
            )
            return self._state is GateState.READY
