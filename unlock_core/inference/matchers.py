"""Matching capabilities pluggable into :class:`Verifier`.

Each capability interprets the opaque reference blob its own way:

* :class:`EmbeddingMatcher` reads it as a float32 face embedding.
* :class:`DeepFaceMatcher` reads it as an encoded enrolled face image.
"""
from __future__ import annotations

import logging
import math
from typing import Any, Optional, Protocol, Tuple

import numpy as np

from unlock_core.vision.capture_gate import CapturedFrame
from unlock_core.vision.pipeline import (
    compute_quality,
    crop,
    decode_image,
    largest_face,
    load_face_cascade,
)

from .verifier import InferenceError, MatchResult, ReferenceDescriptor


class FaceEmbedder(Protocol):
    def embed(self, face_bgr: np.ndarray) -> np.ndarray:
        ...


def l2_normalize(v: np.ndarray, eps: float = 1e-12) -> np.ndarray:
    v = np.asarray(v, dtype=np.float32).reshape(-1)
    n = float(np.linalg.norm(v) + eps)
    return (v / n).astype(np.float32)


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    a = l2_normalize(a)
    b = l2_normalize(b)
    if a.shape != b.shape:
        raise InferenceError(f"Embedding size mismatch: {a.shape[0]} vs {b.shape[0]}")
    return float(np.dot(a, b))


def embedding_from_blob(blob: bytes) -> np.ndarray:
    if not blob or len(blob) % 4 != 0:
        raise InferenceError("Reference blob is not a float32 embedding")
    return np.frombuffer(blob, dtype=np.float32).copy()


class EmbeddingMatcher:
    """Cosine similarity between the captured face and a stored embedding."""

    name = "embedding"

    def __init__(
        self,
        embedder: FaceEmbedder,
        *,
        min_quality: float = 0.05,
        min_face_size: Tuple[int, int] = (60, 60),
        haar_xml: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.embedder = embedder
        self.min_quality = float(min_quality)
        self.min_face_size = tuple(map(int, min_face_size))
        self.cascade = load_face_cascade(haar_xml)
        self._logger = logger or logging.getLogger(__name__)

    def compare(self, frame: CapturedFrame, reference: ReferenceDescriptor) -> MatchResult:
        image = decode_image(frame.image_bytes)
        if image is None:
            return MatchResult(similarity=0.0, confident=False, detail="undecodable frame")

        bbox = largest_face(image, self.cascade, min_size=self.min_face_size)
        if bbox is None:
            return MatchResult(similarity=0.0, confident=False, detail="no face in frame")

        face = crop(image, bbox)
        quality = compute_quality(face)
        if quality < self.min_quality:
            return MatchResult(
                similarity=0.0,
                confident=False,
                detail=f"face quality {quality:.3f} below {self.min_quality:.3f}",
            )

        reference_vec = embedding_from_blob(reference.blob)
        try:
            live_vec = self.embedder.embed(face)
        except InferenceError:
            raise
        except Exception as exc:
            raise InferenceError(f"Embedder failed: {exc}") from exc

        similarity = cosine_similarity(live_vec, reference_vec)
        self._logger.debug("[Verify] cosine=%.4f quality=%.3f", similarity, quality)
        return MatchResult(similarity=max(0.0, similarity), confident=True)


class DeepFaceMatcher:
    """Delegates comparison to ``DeepFace.verify``.

    The module is injected so the heavy import happens where the application
    decides to pay for it.
    """

    name = "deepface"

    def __init__(
        self,
        deepface_module: Any,
        *,
        model_name: str = "Facenet512",
        detector_backend: str = "opencv",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if deepface_module is None:
            raise InferenceError("DeepFace module missing")
        self._deepface = deepface_module
        self.model_name = model_name
        self.detector_backend = detector_backend
        self._logger = logger or logging.getLogger(__name__)

    def compare(self, frame: CapturedFrame, reference: ReferenceDescriptor) -> MatchResult:
        live = decode_image(frame.image_bytes)
        if live is None:
            return MatchResult(similarity=0.0, confident=False, detail="undecodable frame")
        enrolled = decode_image(reference.blob)
        if enrolled is None:
            raise InferenceError("Reference blob is not an encoded face image")

        try:
            result = self._deepface.verify(
                img1_path=live,
                img2_path=enrolled,
                model_name=self.model_name,
                detector_backend=self.detector_backend,
                distance_metric="cosine",
                enforce_detection=True,
            )
        except ValueError as exc:
            # DeepFace raises ValueError when no face can be detected.
            return MatchResult(similarity=0.0, confident=False, detail=str(exc))
        except Exception as exc:
            raise InferenceError(f"DeepFace verify failed: {exc}") from exc

        distance = float(result.get("distance", 1.0))
        if not math.isfinite(distance):
            raise InferenceError(f"DeepFace returned distance {distance!r}")
        similarity = max(0.0, min(1.0, 1.0 - distance))
        self._logger.debug(
            "[Verify] deepface distance=%.4f threshold=%s", distance, result.get("threshold")
        )
        return MatchResult(similarity=similarity, confident=True)
