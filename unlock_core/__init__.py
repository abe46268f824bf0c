"""
Biometric unlock core.

This package provides:
- Camera handle with scoped acquisition and guaranteed release
- Presence sampling loop feeding a single-slot observation channel
- Capture gate state machine with dwell-based presence trust
- Verifier applying similarity + liveness policy over a pluggable matcher
- Unlock controller orchestrating one unlock attempt session
"""

from unlock_core.inference.verifier import (
    InferenceError,
    MatchResult,
    ReferenceDescriptor,
    VerdictOutcome,
    VerdictReason,
    VerificationVerdict,
    Verifier,
)
from unlock_core.unlock.config import UnlockConfig
from unlock_core.unlock.controller import (
    SessionError,
    SessionResult,
    UnlockController,
    UnlockOutcome,
)
from unlock_core.vision.camera_manager import (
    CameraError,
    CameraHandle,
    DeviceUnavailable,
    StreamStalled,
)
from unlock_core.vision.capture_gate import CapturedFrame, CaptureGate, GateState, NotReady
from unlock_core.vision.presence import PresenceObservation, PresenceSampler

__all__ = [
    'CameraError',
    'CameraHandle',
    'CaptureGate',
    'CapturedFrame',
    'DeviceUnavailable',
    'GateState',
    'InferenceError',
    'MatchResult',
    'NotReady',
    'PresenceObservation',
    'PresenceSampler',
    'ReferenceDescriptor',
    'SessionError',
    'SessionResult',
    'StreamStalled',
    'UnlockConfig',
    'UnlockController',
    'UnlockOutcome',
    'VerdictOutcome',
    'VerdictReason',
    'VerificationVerdict',
    'Verifier',
]
