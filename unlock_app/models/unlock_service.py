"""
Unlock Service - owns the single active unlock session of this process
The camera is exclusive, so at most one UnlockController runs at a time.
"""
import threading
import uuid
from typing import Any, Callable, Dict, Optional

from logging_config import UnlockAuditLogger
from unlock_core.inference.verifier import MatchingCapability
from unlock_core.unlock.config import UnlockConfig
from unlock_core.unlock.controller import (
    CameraFactory,
    SessionError,
    SessionResult,
    UnlockController,
)
from unlock_core.vision.capture_gate import NotReady
from unlock_core.vision.presence import PresenceDetector

from unlock_app.services.reference_store import ReferenceStore
from .event_broadcaster import EventBroadcaster


class BackendUnavailable(RuntimeError):
    """Raised when no matching backend could be initialized."""


class UnlockService:
    """Starts, drives and reports unlock sessions for the HTTP layer"""

    def __init__(
        self,
        reference_store: ReferenceStore,
        matcher: Optional[MatchingCapability],
        broadcaster: EventBroadcaster,
        default_config: Optional[UnlockConfig] = None,
        camera_factory: Optional[CameraFactory] = None,
        detector_factory: Optional[Callable[[], PresenceDetector]] = None,
        audit: Optional[UnlockAuditLogger] = None,
        logger=None,
    ):
        self.reference_store = reference_store
        self.matcher = matcher
        self.broadcaster = broadcaster
        self.default_config = default_config or UnlockConfig()
        self.camera_factory = camera_factory
        self.detector_factory = detector_factory
        self.audit = audit or UnlockAuditLogger()
        self.logger = logger

        self._lock = threading.Lock()
        self._controller: Optional[UnlockController] = None
        self._device_id: Optional[str] = None

    @property
    def controller(self) -> Optional[UnlockController]:
        return self._controller

    def _is_active(self) -> bool:
        controller = self._controller
        return (
            controller is not None
            and controller.session is not None
            and controller.result is None
        )

    def start(
        self,
        identity: str,
        overrides: Optional[Dict[str, Any]] = None,
        device_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Start a new unlock session

        Raises:
            SessionError: a session is already active
            ReferenceUnavailable: nothing enrolled for ``identity``
            BackendUnavailable: no matcher configured
            ValueError: invalid config overrides
            CameraError: the camera could not be acquired
        """
        with self._lock:
            if self._is_active():
                raise SessionError("An unlock session is already active")
            if self.matcher is None:
                raise BackendUnavailable("No face matching backend available")

            config = UnlockConfig.from_mapping(overrides, base=self.default_config)
            reference = self.reference_store.fetch(identity)
            device_id = device_id or str(uuid.uuid4())

            controller = UnlockController(
                self.matcher,
                reference,
                config,
                camera_factory=self.camera_factory,
                detector=self.detector_factory() if self.detector_factory else None,
                logger=self.logger,
            )
            controller.start_unlock()
            self.audit.log_unlock_started(identity, device_id, ip_address=ip_address)
            controller.subscribe(
                lambda result: self._on_finished(identity, device_id, result)
            )
            self._controller = controller
            self._device_id = device_id

        return self.status()

    def capture(self) -> Dict[str, Any]:
        controller = self._controller
        if controller is None:
            raise NotReady("No active unlock session")
        try:
            verdict = controller.request_capture()
        except NotReady as e:
            self.audit.log_capture_refused(
                controller.reference.identity, self._device_id, str(e)
            )
            raise
        return {
            'verdict': verdict.to_dict() if verdict else None,
            'status': controller.status(),
        }

    def cancel(self) -> Dict[str, Any]:
        controller = self._controller
        if controller is not None:
            controller.cancel()
        return self.status()

    def status(self) -> Dict[str, Any]:
        controller = self._controller
        if controller is None:
            return {'active': False, 'state': 'idle', 'result': None}
        status = controller.status()
        status['device_id'] = self._device_id
        return status

    def shutdown(self):
        """Cancel whatever session is still running and drop SSE clients"""
        if self._is_active():
            self._controller.cancel()
        self.broadcaster.cleanup()

    def _on_finished(self, identity: str, device_id: str, result: SessionResult):
        payload = result.to_dict()
        self.audit.log_unlock_finished(
            identity,
            device_id,
            result.outcome.value,
            result.attempts,
            confidence=result.verdict.confidence if result.verdict else None,
        )
        self.broadcaster.broadcast_unlock_finished(identity, payload)
