"""Frame helpers shared by presence detection, capture and matching."""
from __future__ import annotations

from typing import Optional, Tuple

import cv2
import numpy as np

BBox = Tuple[int, int, int, int]


def compute_quality(frame: np.ndarray) -> float:
    """Sharpness score in [0, 1] from the Laplacian variance."""
    try:
        gray = frame if frame.ndim == 2 else cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
        laplacian_var = cv2.Laplacian(gray, cv2.CV_64F).var()
        normalized = max(0.0, min(laplacian_var / 1500.0, 1.0))
        return float(normalized)
    except Exception:
        return 0.0


def encode_jpeg(frame: np.ndarray, quality: int = 90) -> bytes:
    ret, buf = cv2.imencode('.jpg', frame, [int(cv2.IMWRITE_JPEG_QUALITY), quality])
    if not ret:
        raise ValueError("Unable to encode frame as JPEG")
    return buf.tobytes()


def decode_image(data: bytes) -> Optional[np.ndarray]:
    """Decode encoded image bytes to a BGR array, or None if undecodable."""
    if not data:
        return None
    arr = np.frombuffer(data, dtype=np.uint8)
    image = cv2.imdecode(arr, cv2.IMREAD_COLOR)
    return image


def load_face_cascade(path: Optional[str] = None) -> cv2.CascadeClassifier:
    cascade_path = path or cv2.data.haarcascades + 'haarcascade_frontalface_default.xml'
    cascade = cv2.CascadeClassifier(cascade_path)
    if cascade.empty():
        raise RuntimeError(f"Failed to load Haar cascade: {cascade_path}")
    return cascade


def largest_face(
    frame: np.ndarray,
    cascade: cv2.CascadeClassifier,
    min_size: Tuple[int, int] = (60, 60),
) -> Optional[BBox]:
    """Return the (x, y, w, h) box of the largest Haar detection, if any."""
    gray = frame if frame.ndim == 2 else cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
    faces = cascade.detectMultiScale(
        gray,
        scaleFactor=1.1,
        minNeighbors=5,
        flags=cv2.CASCADE_SCALE_IMAGE,
        minSize=min_size,
    )
    if faces is None or len(faces) == 0:
        return None
    x, y, w, h = max(faces, key=lambda box: int(box[2]) * int(box[3]))
    return int(x), int(y), int(w), int(h)


def crop(frame: np.ndarray, bbox: BBox) -> np.ndarray:
    x, y, w, h = bbox
    height, width = frame.shape[:2]
    x1, y1 = max(0, x), max(0, y)
    x2, y2 = min(width, x + w), min(height, y + h)
    return frame[y1:y2, x1:x2]
