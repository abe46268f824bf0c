"""Verification decision over one captured frame and one reference."""
from __future__ import annotations

import enum
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

from unlock_core.vision.capture_gate import CapturedFrame


class InferenceError(RuntimeError):
    """Raised when a matching capability cannot complete."""


class VerdictOutcome(enum.Enum):
    VERIFIED = "verified"
    REJECTED = "rejected"
    INCONCLUSIVE = "inconclusive"


class VerdictReason(enum.Enum):
    MATCH = "match"
    NO_MATCH = "no_match"
    LOW_LIVENESS = "low_liveness"
    LOW_MATCH_CONFIDENCE = "low_match_confidence"
    MATCHER_ERROR = "matcher_error"
    RETRIES_EXHAUSTED = "retries_exhausted"


@dataclass(frozen=True)
class ReferenceDescriptor:
    """Opaque enrolled identity supplied by the storage layer."""

    identity: str
    blob: bytes = field(repr=False)


@dataclass(frozen=True)
class MatchResult:
    similarity: float
    confident: bool = True
    detail: str = ""


@dataclass(frozen=True)
class VerificationVerdict:
    outcome: VerdictOutcome
    confidence: float
    reason: VerdictReason
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "confidence": round(self.confidence, 4),
            "reason": self.reason.value,
            "detail": self.detail,
        }


class MatchingCapability(Protocol):
    name: str

    def compare(self, frame: CapturedFrame, reference: ReferenceDescriptor) -> MatchResult:
        ...


class Verifier:
    """Applies the verdict policy on top of a matching capability.

    ``Verified`` needs both a similarity at or above ``match_threshold`` and a
    capture-time presence confidence at or above ``liveness_threshold``; a
    strong match on a weakly live frame stays ``Inconclusive``. Low confidence
    reported by the capability is ``Inconclusive`` too, never ``Rejected``.
    """

    def __init__(
        self,
        matcher: MatchingCapability,
        *,
        match_threshold: float = 0.8,
        liveness_threshold: float = 0.7,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.matcher = matcher
        self.match_threshold = float(match_threshold)
        self.liveness_threshold = float(liveness_threshold)
        self._logger = logger or logging.getLogger(__name__)

    def verify(self, frame: CapturedFrame, reference: ReferenceDescriptor) -> VerificationVerdict:
        name = getattr(self.matcher, "name", type(self.matcher).__name__)
        try:
            result = self.matcher.compare(frame, reference)
        except InferenceError as exc:
            self._logger.warning("[Verify] Matcher %s failed: %s", name, exc)
            return VerificationVerdict(
                VerdictOutcome.INCONCLUSIVE, 0.0, VerdictReason.MATCHER_ERROR, str(exc)
            )
        except Exception as exc:
            self._logger.exception("[Verify] Matcher %s crashed", name)
            return VerificationVerdict(
                VerdictOutcome.INCONCLUSIVE, 0.0, VerdictReason.MATCHER_ERROR, str(exc)
            )

        raw = float(result.similarity)
        if not math.isfinite(raw):
            self._logger.warning("[Verify] Matcher %s returned similarity %r", name, raw)
            return VerificationVerdict(
                VerdictOutcome.INCONCLUSIVE,
                0.0,
                VerdictReason.MATCHER_ERROR,
                f"non-finite similarity {raw!r}",
            )
        similarity = max(0.0, min(1.0, raw))
        liveness = frame.presence_confidence_at_capture

        if not result.confident:
            verdict = VerificationVerdict(
                VerdictOutcome.INCONCLUSIVE,
                similarity,
                VerdictReason.LOW_MATCH_CONFIDENCE,
                result.detail,
            )
        elif similarity >= self.match_threshold:
            if liveness >= self.liveness_threshold:
                verdict = VerificationVerdict(
                    VerdictOutcome.VERIFIED, similarity, VerdictReason.MATCH, result.detail
                )
            else:
                verdict = VerificationVerdict(
                    VerdictOutcome.INCONCLUSIVE,
                    similarity,
                    VerdictReason.LOW_LIVENESS,
                    f"liveness {liveness:.3f} < {self.liveness_threshold:.3f}",
                )
        else:
            verdict = VerificationVerdict(
                VerdictOutcome.REJECTED, similarity, VerdictReason.NO_MATCH, result.detail
            )

        self._logger.info(
            "[Verify] identity=%s matcher=%s similarity=%.3f liveness=%.3f -> %s (%s)",
            reference.identity,
            name,
            similarity,
            liveness,
            verdict.outcome.value,
            verdict.reason.value,
        )
        return verdict
