"""ArcFace-style ONNX face embedder for :class:`EmbeddingMatcher`."""
from __future__ import annotations

import logging
from typing import Any, Optional, Tuple

import cv2
import numpy as np

from .matchers import l2_normalize
from .verifier import InferenceError


class ArcFaceEmbedderONNX:
    """
    ArcFace-style ONNX embedder.
    Input: face crop BGR -> resized, RGB, (x-127.5)/128, NCHW float32.
    Output: L2-normalized (D,) float32 vector.
    """

    def __init__(
        self,
        model_path: Optional[str] = None,
        input_size: Tuple[int, int] = (112, 112),
        session: Any = None,
        logger: Optional[logging.Logger] = None,
    ):
        self._logger = logger or logging.getLogger(__name__)
        self.in_w, self.in_h = int(input_size[0]), int(input_size[1])
        if session is None:
            if not model_path:
                raise InferenceError("ArcFace model path not configured")
            # Imported here so the package does not require onnxruntime unless used.
            import onnxruntime as ort

            session = ort.InferenceSession(model_path, providers=["CPUExecutionProvider"])
            self._logger.info("[Inference] ArcFace model loaded from %s", model_path)
        self.sess = session
        self.in_name = self.sess.get_inputs()[0].name
        self.out_name = self.sess.get_outputs()[0].name

    def _preprocess(self, face_bgr: np.ndarray) -> np.ndarray:
        img = face_bgr
        if img.shape[1] != self.in_w or img.shape[0] != self.in_h:
            img = cv2.resize(img, (self.in_w, self.in_h), interpolation=cv2.INTER_LINEAR)

        rgb = cv2.cvtColor(img, cv2.COLOR_BGR2RGB).astype(np.float32)
        rgb = (rgb - 127.5) / 128.0
        x = np.transpose(rgb, (2, 0, 1))[None, ...]
        return x.astype(np.float32)

    def embed(self, face_bgr: np.ndarray) -> np.ndarray:
        x = self._preprocess(face_bgr)
        y = self.sess.run([self.out_name], {self.in_name: x})[0]
        emb = np.asarray(y, dtype=np.float32).reshape(-1)
        return l2_normalize(emb)
