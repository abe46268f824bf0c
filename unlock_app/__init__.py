"""
App package initialization
Builds the Flask application exposing face unlock
"""
import os

from flask import Flask

from logging_config import UnlockAuditLogger, setup_logging
from unlock_app import config
from unlock_app.models import EventBroadcaster, UnlockService
from unlock_app.services import DirectoryReferenceStore
from unlock_core.vision.camera_manager import CameraConfig, CameraHandle


def _init_matcher(app):
    """Build the face matching backend selected by MATCHER_BACKEND"""
    backend = str(app.config['MATCHER_BACKEND']).lower()

    if backend == 'deepface':
        try:
            from deepface import DeepFace
            from unlock_core.inference.matchers import DeepFaceMatcher

            matcher = DeepFaceMatcher(
                DeepFace,
                model_name=app.config['DEEPFACE_MODEL_NAME'],
                detector_backend=app.config['DEEPFACE_DETECTOR_BACKEND'],
                logger=app.logger,
            )
            app.logger.info(f"[STARTUP] DeepFace matcher ready ({matcher.model_name})")
            return matcher
        except Exception as e:
            app.logger.warning(f"[STARTUP] DeepFace not available: {e}")
            return None

    if backend == 'embedding':
        try:
            from unlock_core.inference.embedder import ArcFaceEmbedderONNX
            from unlock_core.inference.matchers import EmbeddingMatcher

            embedder = ArcFaceEmbedderONNX(
                model_path=app.config['EMBEDDER_MODEL_PATH'], logger=app.logger
            )
            app.logger.info("[STARTUP] Embedding matcher ready")
            return EmbeddingMatcher(embedder, logger=app.logger)
        except Exception as e:
            app.logger.warning(f"[STARTUP] Embedding matcher not available: {e}")
            return None

    app.logger.warning(f"[STARTUP] Unknown MATCHER_BACKEND '{backend}', face unlock disabled")
    return None


def _camera_factory(app):
    def factory(unlock_config):
        return CameraHandle(
            CameraConfig(
                index=unlock_config.camera_index,
                width=app.config['CAMERA_WIDTH'],
                height=app.config['CAMERA_HEIGHT'],
                warmup_frames=app.config['CAMERA_WARMUP_FRAMES'],
                buffer_size=app.config['CAMERA_BUFFER_SIZE'],
                staleness_window=unlock_config.staleness_window,
            ),
            logger=app.logger,
        )

    return factory


def create_app(
    config_overrides=None,
    *,
    matcher=None,
    reference_store=None,
    camera_factory=None,
    detector_factory=None,
):
    """Factory function creating the Flask application"""
    app = Flask(__name__)

    app.config['SECRET_KEY'] = config.SECRET_KEY
    app.config['MAX_CONTENT_LENGTH'] = config.MAX_CONTENT_LENGTH
    app.config.update(
        LOG_LEVEL=config.LOG_LEVEL,
        LOG_DIR=str(config.LOG_DIR),
        CAMERA_WIDTH=config.CAMERA_WIDTH,
        CAMERA_HEIGHT=config.CAMERA_HEIGHT,
        CAMERA_WARMUP_FRAMES=config.CAMERA_WARMUP_FRAMES,
        CAMERA_BUFFER_SIZE=config.CAMERA_BUFFER_SIZE,
        REFERENCE_DIR=str(config.REFERENCE_DIR),
        MATCHER_BACKEND=config.MATCHER_BACKEND,
        DEEPFACE_MODEL_NAME=config.DEEPFACE_MODEL_NAME,
        DEEPFACE_DETECTOR_BACKEND=config.DEEPFACE_DETECTOR_BACKEND,
        EMBEDDER_MODEL_PATH=config.EMBEDDER_MODEL_PATH,
        SSE_HEARTBEAT_SECONDS=30,
        UNLOCK_DEFAULTS=config.default_unlock_config(),
    )
    if config_overrides:
        app.config.update(config_overrides)

    setup_logging(app, log_level=app.config['LOG_LEVEL'], log_dir=app.config['LOG_DIR'])

    app.logger.info(f"[STARTUP] Working directory: {os.getcwd()}")
    app.logger.info(f"[STARTUP] Reference directory: {os.path.abspath(app.config['REFERENCE_DIR'])}")

    # 1. Matching backend
    if matcher is None:
        matcher = _init_matcher(app)

    # 2. Reference store
    if reference_store is None:
        reference_store = DirectoryReferenceStore(app.config['REFERENCE_DIR'], logger=app.logger)

    # 3. EventBroadcaster
    broadcaster = EventBroadcaster(logger=app.logger)
    app.logger.info("[STARTUP] EventBroadcaster initialized")

    # 4. UnlockService
    service = UnlockService(
        reference_store=reference_store,
        matcher=matcher,
        broadcaster=broadcaster,
        default_config=app.config['UNLOCK_DEFAULTS'],
        camera_factory=camera_factory or _camera_factory(app),
        detector_factory=detector_factory,
        audit=UnlockAuditLogger(),
        logger=app.logger,
    )
    app.extensions['event_broadcaster'] = broadcaster
    app.extensions['unlock_service'] = service
    app.logger.info("[STARTUP] UnlockService initialized")

    from unlock_app.routes import register_blueprints
    register_blueprints(app)

    return app
