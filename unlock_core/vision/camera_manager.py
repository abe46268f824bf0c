"""Camera device handle with scoped acquisition and guaranteed release."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import cv2
import numpy as np


class CameraError(RuntimeError):
    """Raised when camera operations fail."""


class DeviceUnavailable(CameraError):
    """No camera exists, the stream cannot be opened or permission was denied."""


class StreamStalled(CameraError):
    """The stream produced no frame within the staleness window."""


class FrameUnavailable(CameraError):
    """A read failed before the first frame arrived; the stream may still start."""


class CameraProvider(Protocol):
    """Abstraction for objects that can supply cv2.VideoCapture."""

    def open(self, index: int) -> cv2.VideoCapture:
        ...


class DefaultCameraProvider:
    """Real provider that uses OpenCV to create VideoCapture objects."""

    def open(self, index: int) -> cv2.VideoCapture:
        capture = cv2.VideoCapture(index)
        if not capture or not capture.isOpened():
            if capture is not None:
                capture.release()
            raise DeviceUnavailable(f"Cannot open camera index {index}")
        return capture


@dataclass
class CameraConfig:
    index: int = 0
    width: Optional[int] = None
    height: Optional[int] = None
    warmup_frames: int = 3
    buffer_size: Optional[int] = 2
    staleness_window: float = 2.0


class CameraHandle:
    """Exclusive, single-use ownership of one live camera stream.

    A handle moves through ``new -> open -> closed`` exactly once. Closing is
    idempotent and a closed handle cannot be reopened; acquire a new handle
    instead.
    """

    def __init__(
        self,
        config: Optional[CameraConfig] = None,
        provider: Optional[CameraProvider] = None,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or CameraConfig()
        self.provider = provider or DefaultCameraProvider()
        self._clock = clock
        self._logger = logger or logging.getLogger(__name__)
        self._lock = threading.RLock()
        self._capture: Optional[cv2.VideoCapture] = None
        self._closed = False
        self._last_frame: Optional[np.ndarray] = None
        self._last_ok_at: Optional[float] = None

    @property
    def is_open(self) -> bool:
        with self._lock:
            return self._capture is not None

    @property
    def closed(self) -> bool:
        return self._closed

    def acquire(self) -> "CameraHandle":
        with self._lock:
            if self._closed:
                raise CameraError("Camera handle already released; acquire a new handle")
            if self._capture is not None:
                raise CameraError("Camera handle already open")
            try:
                capture = self.provider.open(self.config.index)
            except DeviceUnavailable:
                raise
            except Exception as exc:
                raise DeviceUnavailable(
                    f"Cannot open camera index {self.config.index}: {exc}"
                ) from exc
            if capture is None:
                raise DeviceUnavailable(f"Camera provider returned no stream for index {self.config.index}")
            self._capture = capture
            self._last_ok_at = self._clock()
            self._configure_capture(capture)
            self._logger.info("[Camera] Acquired camera index %s", self.config.index)
            return self

    def _configure_capture(self, capture: cv2.VideoCapture) -> None:
        try:
            if self.config.width:
                capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.config.width)
            if self.config.height:
                capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.config.height)
            if self.config.buffer_size is not None and hasattr(cv2, "CAP_PROP_BUFFERSIZE"):
                capture.set(cv2.CAP_PROP_BUFFERSIZE, self.config.buffer_size)

            actual_w = int(capture.get(cv2.CAP_PROP_FRAME_WIDTH))
            actual_h = int(capture.get(cv2.CAP_PROP_FRAME_HEIGHT))
            fps = capture.get(cv2.CAP_PROP_FPS)
            self._logger.info(
                "[Camera] Ready: %sx%s @ %.2f fps",
                actual_w,
                actual_h,
                fps or 0,
            )

            warmup = max(0, self.config.warmup_frames)
            if warmup:
                self._logger.debug("[Camera] Warming up (%s frames)", warmup)
                success = 0
                for _ in range(warmup):
                    ret, frame = capture.read()
                    if ret and frame is not None:
                        success += 1
                        self._remember(frame)
                    time.sleep(0.05)
                self._logger.debug("[Camera] Warmup frames ok=%s/%s", success, warmup)
        except Exception as exc:
            self._logger.warning("[Camera] Unable to configure camera: %s", exc)

    def _remember(self, frame: np.ndarray) -> None:
        self._last_frame = frame
        self._last_ok_at = self._clock()

    def current_frame(self) -> np.ndarray:
        with self._lock:
            capture = self._capture
            if capture is None:
                raise CameraError("Camera handle is not open")
            ret, frame = capture.read()
            if ret and frame is not None:
                self._remember(frame)
                return frame

            age = self._clock() - (self._last_ok_at or 0.0)
            if age > self.config.staleness_window:
                raise StreamStalled(
                    f"No frame from camera index {self.config.index} for {age:.2f}s"
                )
            if self._last_frame is not None:
                return self._last_frame
            raise FrameUnavailable("Camera has not produced a frame yet")

    def release(self) -> None:
        with self._lock:
            capture = self._capture
            self._capture = None
            self._closed = True
            self._last_frame = None
        if capture is None:
            return
        try:
            capture.release()
        except Exception as exc:
            self._logger.debug("[Camera] release() failed: %s", exc)
        self._logger.info("[Camera] Released camera index %s", self.config.index)

    def __enter__(self) -> "CameraHandle":
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
