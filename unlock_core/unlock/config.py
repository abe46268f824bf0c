"""Session-scoped unlock configuration."""
from __future__ import annotations

import re
from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Dict, Mapping, Optional


def _snake(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


@dataclass(frozen=True)
class UnlockConfig:
    presence_threshold: float = 0.6
    match_threshold: float = 0.8
    liveness_threshold: float = 0.7
    dwell_count: int = 2
    sample_interval_ms: int = 1000
    session_timeout_ms: int = 30000
    max_inconclusive_retries: int = 3
    detection_timeout_ms: int = 500
    staleness_ms: int = 2000
    max_stall_recoveries: int = 1
    camera_index: int = 0

    def __post_init__(self) -> None:
        for name in ("presence_threshold", "match_threshold", "liveness_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be in [0, 1], got {value!r}")
        if self.dwell_count < 1:
            raise ValueError("dwell_count must be >= 1")
        for name in ("sample_interval_ms", "session_timeout_ms", "detection_timeout_ms", "staleness_ms"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")
        for name in ("max_inconclusive_retries", "max_stall_recoveries", "camera_index"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")

    @classmethod
    def from_mapping(
        cls, data: Optional[Mapping[str, Any]], base: Optional["UnlockConfig"] = None
    ) -> "UnlockConfig":
        """Build a config from camelCase or snake_case keys over ``base``."""
        base = base or cls()
        if not data:
            return base
        known = {f.name for f in fields(cls)}
        overrides: Dict[str, Any] = {}
        for key, value in data.items():
            name = _snake(str(key))
            if name not in known:
                raise ValueError(f"Unknown unlock option '{key}'")
            caster = float if getattr(base, name).__class__ is float else int
            try:
                overrides[name] = caster(value)
            except (TypeError, ValueError) as exc:
                raise ValueError(f"Invalid value for '{key}': {value!r}") from exc
        return replace(base, **overrides)

    @property
    def sample_interval(self) -> float:
        return self.sample_interval_ms / 1000.0

    @property
    def session_timeout(self) -> float:
        return self.session_timeout_ms / 1000.0

    @property
    def detection_timeout(self) -> float:
        return self.detection_timeout_ms / 1000.0

    @property
    def staleness_window(self) -> float:
        return self.staleness_ms / 1000.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
