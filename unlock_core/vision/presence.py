"""Presence sampling: a background producer of liveness observations.

The sampler polls a :class:`CameraHandle` on a fixed cadence, runs a pluggable
detection capability on each frame and publishes one
:class:`PresenceObservation` per tick into an :class:`ObservationSlot`.

The slot holds only the latest observation (last write wins). A consumer that
falls behind sees the newest value, never a backlog.
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol, Tuple

import cv2
import numpy as np

from .camera_manager import CameraError, CameraHandle, FrameUnavailable
from .pipeline import compute_quality, largest_face, load_face_cascade


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PresenceObservation:
    present: bool
    confidence: float
    sampled_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be in [0, 1], got {self.confidence!r}")

    @classmethod
    def absent(cls) -> "PresenceObservation":
        return cls(present=False, confidence=0.0)

    def qualifies(self, threshold: float) -> bool:
        return self.present and self.confidence >= threshold


@dataclass(frozen=True)
class Detection:
    present: bool
    confidence: float


class PresenceDetector(Protocol):
    """Detection capability: ``detect(frame) -> Detection``."""

    def detect(self, frame: np.ndarray) -> Detection:
        ...


class HaarPresenceDetector:
    """OpenCV Haar presence detector.

    Confidence blends how much of the frame the largest face fills with the
    frame sharpness, so a distant or blurred face scores low.
    """

    def __init__(
        self,
        haar_xml: Optional[str] = None,
        min_size: Tuple[int, int] = (60, 60),
        full_face_ratio: float = 0.12,
        size_weight: float = 0.6,
    ):
        self.cascade = load_face_cascade(haar_xml)
        self.min_size = tuple(map(int, min_size))
        self.full_face_ratio = float(full_face_ratio)
        self.size_weight = float(size_weight)

    def detect(self, frame: np.ndarray) -> Detection:
        gray = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
        bbox = largest_face(gray, self.cascade, min_size=self.min_size)
        if bbox is None:
            return Detection(present=False, confidence=0.0)

        _, _, w, h = bbox
        frame_area = float(gray.shape[0] * gray.shape[1]) or 1.0
        size_score = min(1.0, (w * h / frame_area) / self.full_face_ratio)
        sharpness = compute_quality(gray)
        confidence = self.size_weight * size_score + (1.0 - self.size_weight) * sharpness
        return Detection(present=True, confidence=max(0.0, min(1.0, confidence)))


class ObservationSlot:
    """Single-slot, last-write-wins channel between sampler and consumer."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._seq = 0
        self._latest: Optional[PresenceObservation] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def publish(self, observation: PresenceObservation) -> bool:
        with self._cond:
            if self._closed:
                return False
            self._seq += 1
            self._latest = observation
            self._cond.notify_all()
            return True

    def latest(self) -> Tuple[int, Optional[PresenceObservation]]:
        with self._cond:
            return self._seq, self._latest

    def wait_for(
        self, after_seq: int, timeout: Optional[float] = None
    ) -> Optional[Tuple[int, PresenceObservation]]:
        """Return the newest (seq, observation) with seq > after_seq.

        Returns None on timeout, on close, or when woken by :meth:`wake`.
        """
        with self._cond:
            if self._seq <= after_seq and not self._closed:
                self._cond.wait(timeout)
            if self._closed or self._seq <= after_seq or self._latest is None:
                return None
            return self._seq, self._latest

    def wake(self) -> None:
        with self._cond:
            self._cond.notify_all()

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()


class PresenceSampler:
    """Background sampling loop bound to one open camera handle."""

    def __init__(
        self,
        camera: CameraHandle,
        detector: PresenceDetector,
        slot: ObservationSlot,
        *,
        interval: float = 1.0,
        detection_timeout: float = 0.5,
        on_fault: Optional[Callable[[CameraError], None]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.camera = camera
        self.detector = detector
        self.slot = slot
        self.interval = max(0.0, float(interval))
        self.detection_timeout = max(0.0, float(detection_timeout))
        self._on_fault = on_fault
        self._logger = logger or logging.getLogger(__name__)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("Presence sampler already started")
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="presence-detect")
        self._thread = threading.Thread(target=self._loop, name="presence-sampler", daemon=True)
        self._thread.start()
        self._logger.debug("[Presence] Sampler started (interval=%.3fs)", self.interval)

    def stop(self) -> None:
        self._stop.set()
        self.slot.close()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.interval + self.detection_timeout + 1.0)
            if thread.is_alive():
                self._logger.warning("[Presence] Sampler thread did not exit in time")
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
        self._logger.debug("[Presence] Sampler stopped after %s ticks", self.ticks)

    def _loop(self) -> None:
        while not self._stop.is_set():
            if not self.camera.is_open:
                self._logger.debug("[Presence] Camera released, sampler exiting")
                break
            started = time.monotonic()
            try:
                observation = self.sample_once()
            except CameraError as exc:
                if self._stop.is_set() or not self.camera.is_open:
                    break
                self._logger.warning("[Presence] Device fault: %s", exc)
                self._stop.set()
                if self._on_fault is not None:
                    self._on_fault(exc)
                break
            if self._stop.is_set():
                break
            self.slot.publish(observation)
            elapsed = time.monotonic() - started
            self._stop.wait(max(0.0, self.interval - elapsed))

    def sample_once(self) -> PresenceObservation:
        """Run one tick. Device faults other than FrameUnavailable propagate."""
        self.ticks += 1
        try:
            frame = self.camera.current_frame()
        except FrameUnavailable as exc:
            self._logger.debug("[Presence] %s", exc)
            return PresenceObservation.absent()
        return self._detect(frame)

    def _detect(self, frame: np.ndarray) -> PresenceObservation:
        try:
            if self._executor is None:
                result = self.detector.detect(frame)
            else:
                future = self._executor.submit(self.detector.detect, frame)
                result = future.result(timeout=self.detection_timeout)
        except FutureTimeout:
            self._logger.debug("[Presence] Detection exceeded %.3fs", self.detection_timeout)
            return PresenceObservation.absent()
        except Exception as exc:
            self._logger.debug("[Presence] Detection failed: %s", exc)
            return PresenceObservation.absent()

        try:
            return PresenceObservation(
                present=bool(result.present),
                confidence=float(result.confidence),
            )
        except (AttributeError, TypeError, ValueError) as exc:
            self._logger.debug("[Presence] Invalid detection result %r: %s", result, exc)
            return PresenceObservation.absent()
