"""
Configuration constants and settings
"""
import os
from pathlib import Path

from unlock_core.unlock.config import UnlockConfig

# Flask
SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
MAX_CONTENT_LENGTH = 1 * 1024 * 1024  # request bodies are small JSON payloads

# Logging
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
LOG_DIR = Path(os.getenv('LOG_DIR', 'logs'))

# Camera configuration
CAMERA_INDEX = int(os.getenv('CAMERA_INDEX', '0'))
CAMERA_WIDTH = int(os.getenv('CAMERA_WIDTH', '640'))
CAMERA_HEIGHT = int(os.getenv('CAMERA_HEIGHT', '480'))
CAMERA_WARMUP_FRAMES = int(os.getenv('CAMERA_WARMUP_FRAMES', '3'))
CAMERA_BUFFER_SIZE = int(os.getenv('CAMERA_BUFFER_SIZE', '2'))

# Unlock session defaults
UNLOCK_PRESENCE_THRESHOLD = float(os.getenv('UNLOCK_PRESENCE_THRESHOLD', '0.6'))
UNLOCK_MATCH_THRESHOLD = float(os.getenv('UNLOCK_MATCH_THRESHOLD', '0.8'))
UNLOCK_LIVENESS_THRESHOLD = float(os.getenv('UNLOCK_LIVENESS_THRESHOLD', '0.7'))
UNLOCK_DWELL_COUNT = max(1, int(os.getenv('UNLOCK_DWELL_COUNT', '2')))
UNLOCK_SAMPLE_INTERVAL_MS = int(os.getenv('UNLOCK_SAMPLE_INTERVAL_MS', '1000'))
UNLOCK_SESSION_TIMEOUT_MS = int(os.getenv('UNLOCK_SESSION_TIMEOUT_MS', '30000'))
UNLOCK_MAX_INCONCLUSIVE_RETRIES = max(0, int(os.getenv('UNLOCK_MAX_INCONCLUSIVE_RETRIES', '3')))
UNLOCK_DETECTION_TIMEOUT_MS = int(os.getenv('UNLOCK_DETECTION_TIMEOUT_MS', '500'))
UNLOCK_STALENESS_MS = int(os.getenv('UNLOCK_STALENESS_MS', '2000'))
UNLOCK_MAX_STALL_RECOVERIES = max(0, int(os.getenv('UNLOCK_MAX_STALL_RECOVERIES', '1')))

# Enrolled references (read-only)
REFERENCE_DIR = Path(os.getenv('REFERENCE_DIR', 'data/references'))

# Matching backend: 'deepface' or 'embedding'
MATCHER_BACKEND = os.getenv('MATCHER_BACKEND', 'deepface').strip().lower()
DEEPFACE_MODEL_NAME = os.getenv('DEEPFACE_MODEL_NAME', 'Facenet512')
DEEPFACE_DETECTOR_BACKEND = os.getenv('DEEPFACE_DETECTOR_BACKEND', 'opencv')
EMBEDDER_MODEL_PATH = os.getenv('EMBEDDER_MODEL_PATH', 'models/embedder_arcface.onnx')


def default_unlock_config() -> UnlockConfig:
    """Session defaults built from the environment."""
    return UnlockConfig(
        presence_threshold=UNLOCK_PRESENCE_THRESHOLD,
        match_threshold=UNLOCK_MATCH_THRESHOLD,
        liveness_threshold=UNLOCK_LIVENESS_THRESHOLD,
        dwell_count=UNLOCK_DWELL_COUNT,
        sample_interval_ms=UNLOCK_SAMPLE_INTERVAL_MS,
        session_timeout_ms=UNLOCK_SESSION_TIMEOUT_MS,
        max_inconclusive_retries=UNLOCK_MAX_INCONCLUSIVE_RETRIES,
        detection_timeout_ms=UNLOCK_DETECTION_TIMEOUT_MS,
        staleness_ms=UNLOCK_STALENESS_MS,
        max_stall_recoveries=UNLOCK_MAX_STALL_RECOVERIES,
        camera_index=CAMERA_INDEX,
    )
