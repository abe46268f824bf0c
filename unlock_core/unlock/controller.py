"""Unlock controller: one biometric unlock attempt session end to end.

Threads involved in a session:

* the presence sampler (producer) publishing into a single-slot channel,
* the supervisor (consumer) feeding the capture gate, checking deadlines and
  handling device faults,
* caller threads invoking :meth:`UnlockController.request_capture` and
  :meth:`UnlockController.cancel`.

Every exit path goes through :meth:`UnlockController._finish`, which fixes
exactly one terminal :class:`SessionResult` and releases the camera handle.
"""
from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from unlock_core.inference.verifier import (
    MatchingCapability,
    ReferenceDescriptor,
    VerdictOutcome,
    VerdictReason,
    VerificationVerdict,
    Verifier,
)
from unlock_core.vision.camera_manager import (
    CameraConfig,
    CameraError,
    CameraHandle,
    StreamStalled,
)
from unlock_core.vision.capture_gate import AbortReason, CaptureGate, GateState, NotReady
from unlock_core.vision.presence import (
    HaarPresenceDetector,
    ObservationSlot,
    PresenceDetector,
    PresenceSampler,
)

from .config import UnlockConfig

CameraFactory = Callable[[UnlockConfig], CameraHandle]
ResultCallback = Callable[["SessionResult"], None]


class SessionError(RuntimeError):
    """Raised when the controller is used out of order."""


class UnlockOutcome(enum.Enum):
    VERIFIED = "verified"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    DEVICE_ERROR = "device_error"


_GATE_ABORT_FOR = {
    UnlockOutcome.CANCELLED: AbortReason.CANCELLED,
    UnlockOutcome.TIMED_OUT: AbortReason.TIMEOUT,
    UnlockOutcome.DEVICE_ERROR: AbortReason.DEVICE_FAILURE,
}


@dataclass(frozen=True)
class SessionResult:
    outcome: UnlockOutcome
    verdict: Optional[VerificationVerdict] = None
    attempts: int = 0
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "verdict": self.verdict.to_dict() if self.verdict else None,
            "attempts": self.attempts,
            "detail": self.detail,
        }


@dataclass
class UnlockSession:
    camera: CameraHandle
    deadline: float
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    attempts: int = 0
    inconclusive: int = 0
    stall_recoveries: int = 0
    result: Optional[SessionResult] = None


def default_camera_factory(config: UnlockConfig) -> CameraHandle:
    return CameraHandle(
        CameraConfig(index=config.camera_index, staleness_window=config.staleness_window)
    )


class UnlockController:
    """Orchestrates camera, sampler, gate and verifier for a single session.

    A controller serves one session; construct a new one for the next unlock.
    """

    def __init__(
        self,
        matcher: MatchingCapability,
        reference: ReferenceDescriptor,
        config: Optional[UnlockConfig] = None,
        *,
        camera_factory: Optional[CameraFactory] = None,
        detector: Optional[PresenceDetector] = None,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config or UnlockConfig()
        self.reference = reference
        self._logger = logger or logging.getLogger(__name__)
        self._verifier = Verifier(
            matcher,
            match_threshold=self.config.match_threshold,
            liveness_threshold=self.config.liveness_threshold,
            logger=self._logger,
        )
        self._camera_factory = camera_factory or default_camera_factory
        self._detector = detector
        self._clock = clock

        self._lock = threading.RLock()
        self._action_lock = threading.Lock()
        self._fault_lock = threading.Lock()
        self._done = threading.Event()
        self._finished = threading.Event()

        self._session: Optional[UnlockSession] = None
        self._gate: Optional[CaptureGate] = None
        self._sampler: Optional[PresenceSampler] = None
        self._slot: Optional[ObservationSlot] = None
        self._last_seq = 0
        self._fault: Optional[Tuple[CameraHandle, CameraError]] = None
        self._supervisor: Optional[threading.Thread] = None
        self._subscribers: List[ResultCallback] = []

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def session(self) -> Optional[UnlockSession]:
        return self._session

    @property
    def gate(self) -> Optional[CaptureGate]:
        with self._lock:
            return self._gate

    @property
    def sampler(self) -> Optional[PresenceSampler]:
        with self._lock:
            return self._sampler

    @property
    def result(self) -> Optional[SessionResult]:
        with self._lock:
            return self._session.result if self._session else None

    def status(self) -> Dict[str, Any]:
        with self._lock:
            session = self._session
            gate = self._gate
            if session is None:
                return {"active": False, "state": GateState.IDLE.value, "result": None}
            observation = gate.last_observation if gate else None
            return {
                "active": session.result is None,
                "identity": self.reference.identity,
                "state": gate.state.value if gate else GateState.IDLE.value,
                "attempts": session.attempts,
                "inconclusive": session.inconclusive,
                "stall_recoveries": session.stall_recoveries,
                "started_at": session.started_at.isoformat(),
                "presence": {
                    "present": observation.present,
                    "confidence": round(observation.confidence, 4),
                } if observation else None,
                "result": session.result.to_dict() if session.result else None,
            }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def start_unlock(self) -> None:
        with self._lock:
            if self._session is not None:
                raise SessionError("Unlock session already started")
            detector = self._detector or HaarPresenceDetector()
            self._detector = detector

            camera = self._camera_factory(self.config)
            camera.acquire()
            try:
                self._session = UnlockSession(
                    camera=camera,
                    deadline=self._clock() + self.config.session_timeout,
                )
                self._open_gate_locked()
                self._start_sampler_locked()
                self._supervisor = threading.Thread(
                    target=self._supervise, name="unlock-supervisor", daemon=True
                )
                self._supervisor.start()
            except BaseException:
                if self._sampler is not None:
                    self._sampler.stop()
                camera.release()
                self._session = None
                self._gate = None
                self._sampler = None
                raise
        self._logger.info(
            "[Unlock] Session started for identity=%s (timeout=%.1fs)",
            self.reference.identity,
            self.config.session_timeout,
        )

    def request_capture(self) -> Optional[VerificationVerdict]:
        """Capture and verify while the gate is Ready.

        Returns the verdict after the retry policy is applied, or None when
        the device failed during capture.
        """
        if not self._action_lock.acquire(blocking=False):
            raise NotReady("A capture is already in progress")
        try:
            with self._lock:
                session = self._session
                if session is None or session.result is not None:
                    raise NotReady("No active unlock session")
                gate = self._gate
                camera = session.camera
            try:
                frame = gate.capture()
            except (CameraError, ValueError) as exc:
                self._handle_device_fault(exc, camera)
                return None
            verdict = self._verifier.verify(frame, self.reference)
            return self._apply_verdict(verdict)
        finally:
            self._action_lock.release()

    def finish(self, verdict: VerificationVerdict) -> SessionResult:
        outcome = (
            UnlockOutcome.VERIFIED
            if verdict.outcome is VerdictOutcome.VERIFIED
            else UnlockOutcome.REJECTED
        )
        return self._finish(outcome, verdict=verdict, detail=verdict.reason.value)

    def cancel(self) -> Optional[SessionResult]:
        with self._lock:
            if self._session is None:
                return None
        return self._finish(UnlockOutcome.CANCELLED, detail="cancelled by caller")

    def subscribe(self, callback: ResultCallback) -> None:
        with self._lock:
            result = self._session.result if self._session else None
            if result is None:
                self._subscribers.append(callback)
                return
        callback(result)

    def wait(self, timeout: Optional[float] = None) -> Optional[SessionResult]:
        self._finished.wait(timeout)
        return self.result

    def wait_ready(self, timeout: Optional[float] = None) -> bool:
        gate = self.gate
        if gate is None:
            return False
        return gate.wait_ready(timeout)

    def __enter__(self) -> "UnlockController":
        self.start_unlock()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._session is not None and self._session.result is None:
            self.cancel()

    # ------------------------------------------------------------------
    # Session internals (call with self._lock held)
    # ------------------------------------------------------------------
    def _open_gate_locked(self) -> None:
        session = self._session
        remaining = max(0.0, session.deadline - self._clock())
        gate = CaptureGate(
            presence_threshold=self.config.presence_threshold,
            dwell_count=self.config.dwell_count,
            timeout=remaining,
            clock=self._clock,
            logger=self._logger,
        )
        gate.attach(session.camera)
        self._gate = gate

    def _start_sampler_locked(self) -> None:
        camera = self._session.camera
        self._slot = ObservationSlot()
        self._last_seq = 0
        self._sampler = PresenceSampler(
            camera,
            self._detector,
            self._slot,
            interval=self.config.sample_interval,
            detection_timeout=self.config.detection_timeout,
            on_fault=lambda exc: self._on_sampler_fault(camera, exc),
            logger=self._logger,
        )
        self._sampler.start()

    def _apply_verdict(self, verdict: VerificationVerdict) -> VerificationVerdict:
        with self._lock:
            session = self._session
            if session.result is not None:
                return verdict
            session.attempts += 1
            if verdict.outcome is VerdictOutcome.INCONCLUSIVE:
                session.inconclusive += 1
                if session.inconclusive <= self.config.max_inconclusive_retries:
                    self._logger.info(
                        "[Unlock] Inconclusive (%s), retry %d/%d",
                        verdict.reason.value,
                        session.inconclusive,
                        self.config.max_inconclusive_retries,
                    )
                    self._open_gate_locked()
                    return verdict
                verdict = VerificationVerdict(
                    VerdictOutcome.REJECTED,
                    verdict.confidence,
                    VerdictReason.RETRIES_EXHAUSTED,
                    f"{session.inconclusive} inconclusive verdicts",
                )
        self.finish(verdict)
        return verdict

    def _on_sampler_fault(self, camera: CameraHandle, exc: CameraError) -> None:
        with self._fault_lock:
            self._fault = (camera, exc)
        slot = self._slot
        if slot is not None:
            slot.wake()

    def _take_fault(self) -> Optional[Tuple[CameraHandle, CameraError]]:
        with self._fault_lock:
            fault, self._fault = self._fault, None
            return fault

    def _is_stale_fault_locked(self, camera: CameraHandle) -> bool:
        session = self._session
        return session is None or session.result is not None or camera is not session.camera

    def _handle_device_fault(self, exc: Exception, camera: CameraHandle) -> None:
        """Recover or end the session for a fault raised by ``camera``.

        Faults from a handle that has since been replaced are ignored, so one
        stall is charged against the recovery budget once.
        """
        with self._lock:
            if self._is_stale_fault_locked(camera):
                self._logger.debug("[Unlock] Ignoring fault from superseded camera: %s", exc)
                return
        if isinstance(exc, StreamStalled) and self._recover_stream(exc, camera):
            return
        self._finish(UnlockOutcome.DEVICE_ERROR, detail=str(exc))

    def _recover_stream(self, exc: StreamStalled, failed: CameraHandle) -> bool:
        with self._lock:
            if self._is_stale_fault_locked(failed):
                return True
            session = self._session
            if session.stall_recoveries >= self.config.max_stall_recoveries:
                return False
            session.stall_recoveries += 1
            self._logger.warning(
                "[Unlock] Stream stalled (%s); re-acquiring camera (%d/%d)",
                exc,
                session.stall_recoveries,
                self.config.max_stall_recoveries,
            )
            self._sampler.stop()
            # The old sampler may have reported this same stall already.
            self._take_fault()
            self._gate.abort(AbortReason.DEVICE_FAILURE, exc)
            session.camera.release()

            camera = self._camera_factory(self.config)
            try:
                camera.acquire()
            except CameraError as err:
                self._logger.error("[Unlock] Camera re-acquire failed: %s", err)
                return False
            session.camera = camera
            self._open_gate_locked()
            self._start_sampler_locked()
            return True

    def _supervise(self) -> None:
        try:
            while not self._done.is_set():
                with self._lock:
                    slot = self._slot
                    last_seq = self._last_seq
                item = slot.wait_for(last_seq, timeout=self._tick_timeout())
                if self._done.is_set():
                    break

                fault = self._take_fault()
                if fault is not None:
                    camera, exc = fault
                    self._handle_device_fault(exc, camera)
                    continue

                if item is not None:
                    with self._lock:
                        if slot is not self._slot:
                            continue
                        self._last_seq = item[0]
                        gate = self._gate
                    gate.observe(item[1])
                elif slot.closed:
                    self._done.wait(0.01)

                self._check_deadlines()
        except Exception as exc:
            self._logger.exception("[Unlock] Supervisor crashed")
            self._finish(UnlockOutcome.DEVICE_ERROR, detail=f"unexpected error: {exc}")

    def _tick_timeout(self) -> float:
        session = self._session
        remaining = session.deadline - self._clock()
        return max(0.01, min(self.config.sample_interval, remaining))

    def _check_deadlines(self) -> None:
        with self._lock:
            session = self._session
            gate = self._gate
        if gate.check_timeout() is GateState.ABORTED and gate.abort_reason is AbortReason.TIMEOUT:
            self._finish(UnlockOutcome.TIMED_OUT, detail="no trusted presence before timeout")
        elif self._clock() >= session.deadline:
            self._finish(UnlockOutcome.TIMED_OUT, detail="session timeout")

    def _finish(
        self,
        outcome: UnlockOutcome,
        verdict: Optional[VerificationVerdict] = None,
        detail: str = "",
    ) -> SessionResult:
        with self._lock:
            session = self._session
            if session is None:
                raise SessionError("Unlock session not started")
            if session.result is not None:
                return session.result
            result = SessionResult(
                outcome=outcome,
                verdict=verdict,
                attempts=session.attempts,
                detail=detail,
            )
            session.result = result
            self._done.set()
            if self._sampler is not None:
                self._sampler.stop()
            if self._gate is not None:
                self._gate.abort(_GATE_ABORT_FOR.get(outcome, AbortReason.CANCELLED))
            session.camera.release()
            subscribers, self._subscribers = self._subscribers, []
        self._finished.set()

        self._logger.info(
            "[Unlock] Session finished: identity=%s outcome=%s attempts=%d %s",
            self.reference.identity,
            outcome.value,
            result.attempts,
            detail,
        )
        for callback in subscribers:
            try:
                callback(result)
            except Exception:
                self._logger.exception("[Unlock] Result subscriber failed")
        return result
