"""Shared pytest configuration and fixtures for the face unlock test suite."""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

import numpy as np
import pytest

# Ensure the project root is in the path for imports
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from unlock_core.inference.verifier import ReferenceDescriptor  # noqa: E402
from unlock_core.unlock.config import UnlockConfig  # noqa: E402
from unlock_core.vision.capture_gate import CapturedFrame  # noqa: E402


# =============================================================================
# Shared Fixtures
# =============================================================================

@pytest.fixture
def reference() -> ReferenceDescriptor:
    return ReferenceDescriptor(identity="alice", blob=b"enrolled-face")


@pytest.fixture
def fast_config() -> UnlockConfig:
    """Session config with short cadences so threaded tests finish quickly."""
    return UnlockConfig(
        presence_threshold=0.6,
        match_threshold=0.8,
        liveness_threshold=0.7,
        dwell_count=2,
        sample_interval_ms=10,
        session_timeout_ms=5000,
        max_inconclusive_retries=3,
        detection_timeout_ms=200,
        staleness_ms=2000,
        max_stall_recoveries=1,
    )


@pytest.fixture
def make_frame():
    def _make(liveness: float = 0.85, image_bytes: bytes = b"jpeg") -> CapturedFrame:
        return CapturedFrame(
            image_bytes=image_bytes,
            captured_at=datetime.now(timezone.utc),
            presence_confidence_at_capture=liveness,
        )

    return _make


@pytest.fixture
def noise_image() -> np.ndarray:
    rng = np.random.default_rng(7)
    return rng.integers(0, 256, size=(120, 120, 3), dtype=np.uint8)


@pytest.fixture
def reset_root_logging():
    """Drop handlers installed by setup_logging once the test is over."""
    yield
    for name in (None, "audit"):
        logger = logging.getLogger(name)
        for handler in logger.handlers[:]:
            logger.removeHandler(handler)
            handler.close()
