"""Tests for the matching capabilities and the ONNX embedder."""

from types import SimpleNamespace

import cv2
import numpy as np
import pytest

from fakes import blank_frame
from unlock_core.inference import matchers
from unlock_core.inference.embedder import ArcFaceEmbedderONNX
from unlock_core.inference.matchers import (
    DeepFaceMatcher,
    EmbeddingMatcher,
    cosine_similarity,
    embedding_from_blob,
)
from unlock_core.inference.verifier import InferenceError, ReferenceDescriptor


def _png(image) -> bytes:
    ok, buf = cv2.imencode(".png", image)
    assert ok
    return buf.tobytes()


class FakeDeepFace:
    def __init__(self, result=None, error=None):
        self.result = result if result is not None else {"distance": 0.12, "threshold": 0.3}
        self.error = error
        self.calls = []

    def verify(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.result


class FakeEmbedder:
    def __init__(self, vector):
        self.vector = np.asarray(vector, dtype=np.float32)
        self.faces = []

    def embed(self, face_bgr):
        self.faces.append(face_bgr)
        return self.vector


# =============================================================================
# Helpers
# =============================================================================

def test_cosine_similarity_of_parallel_vectors():
    assert cosine_similarity(np.array([1.0, 2.0]), np.array([2.0, 4.0])) == pytest.approx(1.0)


def test_cosine_similarity_size_mismatch():
    with pytest.raises(InferenceError):
        cosine_similarity(np.ones(3), np.ones(4))


def test_embedding_from_blob_rejects_garbage():
    with pytest.raises(InferenceError):
        embedding_from_blob(b"abc")
    with pytest.raises(InferenceError):
        embedding_from_blob(b"")


# =============================================================================
# DeepFaceMatcher
# =============================================================================

def test_deepface_similarity_from_cosine_distance(make_frame):
    deepface = FakeDeepFace()
    matcher = DeepFaceMatcher(deepface, model_name="ArcFace")
    frame = make_frame(image_bytes=_png(blank_frame()))

    result = matcher.compare(frame, ReferenceDescriptor("alice", _png(blank_frame())))

    assert result.confident
    assert result.similarity == pytest.approx(0.88)
    call = deepface.calls[0]
    assert call["model_name"] == "ArcFace"
    assert call["distance_metric"] == "cosine"
    assert call["enforce_detection"] is True
    assert isinstance(call["img1_path"], np.ndarray)


def test_deepface_no_face_is_low_confidence(make_frame):
    matcher = DeepFaceMatcher(FakeDeepFace(error=ValueError("Face could not be detected")))
    frame = make_frame(image_bytes=_png(blank_frame()))

    result = matcher.compare(frame, ReferenceDescriptor("alice", _png(blank_frame())))

    assert not result.confident
    assert "Face could not be detected" in result.detail


def test_deepface_runtime_failure_raises_inference_error(make_frame):
    matcher = DeepFaceMatcher(FakeDeepFace(error=RuntimeError("tf session lost")))
    frame = make_frame(image_bytes=_png(blank_frame()))

    with pytest.raises(InferenceError):
        matcher.compare(frame, ReferenceDescriptor("alice", _png(blank_frame())))


def test_deepface_reference_must_be_an_image(make_frame):
    matcher = DeepFaceMatcher(FakeDeepFace())
    frame = make_frame(image_bytes=_png(blank_frame()))
    with pytest.raises(InferenceError):
        matcher.compare(frame, ReferenceDescriptor("alice", b"\x00\x01not-an-image"))


def test_deepface_nan_distance_is_an_inference_error(make_frame):
    matcher = DeepFaceMatcher(FakeDeepFace(result={"distance": float("nan")}))
    frame = make_frame(image_bytes=_png(blank_frame()))
    with pytest.raises(InferenceError):
        matcher.compare(frame, ReferenceDescriptor("alice", _png(blank_frame())))


def test_deepface_module_required():
    with pytest.raises(InferenceError):
        DeepFaceMatcher(None)


# =============================================================================
# EmbeddingMatcher
# =============================================================================

def test_embedding_matcher_compares_against_stored_vector(monkeypatch, make_frame, noise_image):
    monkeypatch.setattr(matchers, "largest_face", lambda image, cascade, min_size: (10, 10, 80, 80))
    vector = np.array([0.2, 0.4, 0.1, 0.9], dtype=np.float32)
    embedder = FakeEmbedder(vector)
    matcher = EmbeddingMatcher(embedder)

    result = matcher.compare(
        make_frame(image_bytes=_png(noise_image)),
        ReferenceDescriptor("alice", vector.tobytes()),
    )

    assert result.confident
    assert result.similarity == pytest.approx(1.0, abs=1e-5)
    assert embedder.faces[0].shape == (80, 80, 3)


def test_embedding_matcher_without_face_is_low_confidence(make_frame):
    matcher = EmbeddingMatcher(FakeEmbedder([1.0, 0.0]))
    result = matcher.compare(
        make_frame(image_bytes=_png(blank_frame())),
        ReferenceDescriptor("alice", np.ones(2, dtype=np.float32).tobytes()),
    )
    assert not result.confident
    assert result.detail == "no face in frame"


def test_embedding_matcher_undecodable_frame(make_frame):
    matcher = EmbeddingMatcher(FakeEmbedder([1.0, 0.0]))
    result = matcher.compare(make_frame(image_bytes=b"garbage"), ReferenceDescriptor("a", b"\x00" * 8))
    assert not result.confident


def test_embedding_matcher_blurry_face_is_low_confidence(monkeypatch, make_frame):
    monkeypatch.setattr(matchers, "largest_face", lambda image, cascade, min_size: (0, 0, 100, 100))
    matcher = EmbeddingMatcher(FakeEmbedder([1.0, 0.0]), min_quality=0.5)
    result = matcher.compare(
        make_frame(image_bytes=_png(blank_frame())),
        ReferenceDescriptor("alice", np.ones(2, dtype=np.float32).tobytes()),
    )
    assert not result.confident
    assert "quality" in result.detail


def test_embedding_matcher_wraps_embedder_failure(monkeypatch, make_frame, noise_image):
    monkeypatch.setattr(matchers, "largest_face", lambda image, cascade, min_size: (0, 0, 60, 60))

    class Failing:
        def embed(self, face_bgr):
            raise MemoryError("out of memory")

    matcher = EmbeddingMatcher(Failing())
    with pytest.raises(InferenceError):
        matcher.compare(
            make_frame(image_bytes=_png(noise_image)),
            ReferenceDescriptor("alice", np.ones(4, dtype=np.float32).tobytes()),
        )


# =============================================================================
# ArcFaceEmbedderONNX
# =============================================================================

class FakeSession:
    def __init__(self, output):
        self.output = np.asarray(output, dtype=np.float32)
        self.feeds = []

    def get_inputs(self):
        return [SimpleNamespace(name="input.1")]

    def get_outputs(self):
        return [SimpleNamespace(name="embedding")]

    def run(self, names, feeds):
        self.feeds.append((names, feeds))
        return [self.output]


def test_arcface_preprocess_and_normalize(noise_image):
    session = FakeSession([[3.0, 4.0]])
    embedder = ArcFaceEmbedderONNX(session=session)

    emb = embedder.embed(noise_image)

    names, feeds = session.feeds[0]
    assert names == ["embedding"]
    x = feeds["input.1"]
    assert x.shape == (1, 3, 112, 112)
    assert x.dtype == np.float32
    assert np.allclose(emb, [0.6, 0.8])


def test_arcface_requires_model_path():
    with pytest.raises(InferenceError):
        ArcFaceEmbedderONNX(model_path=None)
