"""Tunable audit settings, normally read from the ``audit`` section of settings.yaml."""

from dataclasses import dataclass, field
from typing import Any, Optional

from clinic_audit.modules.technical_audit.aggregator import ISSUE_THRESHOLDS
from clinic_audit.modules.technical_audit.checks import (
    CRAWL_FETCH_TIMEOUT,
    PERFORMANCE_WEIGHTS,
    SCHEMA_WEIGHTS,
)
from clinic_audit.modules.technical_audit.inspector import DEFAULT_NAVIGATION_TIMEOUT
from clinic_audit.modules.technical_audit.records import AuditType, CheckCategory, ViewportProfile

DEFAULT_CONCURRENCY = 4


def _positive(name: str, value: Any, cast: type) -> Any:
    try:
        converted = cast(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"audit.{name} must be a number, got {value!r}") from exc
    if converted <= 0:
        raise ValueError(f"audit.{name} must be positive, got {value!r}")
    return converted


def _weight(name: str, value: Any, cast: type) -> Any:
    try:
        converted = cast(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"audit.{name} must be a number, got {value!r}") from exc
    if converted < 0:
        raise ValueError(f"audit.{name} must not be negative, got {value!r}")
    return converted


@dataclass(frozen=True)
class AuditSettings:
    concurrency: int = DEFAULT_CONCURRENCY
    navigation_timeout: float = DEFAULT_NAVIGATION_TIMEOUT
    fetch_timeout: float = CRAWL_FETCH_TIMEOUT
    default_audit_type: AuditType = AuditType.COMPREHENSIVE
    default_profiles: tuple[ViewportProfile, ...] = (ViewportProfile.DESKTOP, ViewportProfile.MOBILE)
    issue_thresholds: dict[CheckCategory, float] = field(default_factory=lambda: dict(ISSUE_THRESHOLDS))
    performance_weights: dict[str, float] = field(default_factory=lambda: dict(PERFORMANCE_WEIGHTS))
    schema_weights: dict[str, int] = field(default_factory=lambda: dict(SCHEMA_WEIGHTS))

    @classmethod
    def from_mapping(cls, data: Optional[dict[str, Any]]) -> "AuditSettings":
        """Build settings from a plain mapping; unknown keys are ignored.

        Raises:
            ValueError: if a recognised key carries an invalid value.
        """
        data = data or {}
        defaults = cls()
        values: dict[str, Any] = {}

        if "concurrency" in data:
            values["concurrency"] = _positive("concurrency", data["concurrency"], int)
        if "navigation_timeout" in data:
            values["navigation_timeout"] = _positive("navigation_timeout", data["navigation_timeout"], float)
        if "fetch_timeout" in data:
            values["fetch_timeout"] = _positive("fetch_timeout", data["fetch_timeout"], float)
        if "default_audit_type" in data:
            values["default_audit_type"] = AuditType(data["default_audit_type"])
        if "default_profiles" in data:
            profiles = tuple(ViewportProfile(p) for p in data["default_profiles"] or ())
            if not profiles:
                raise ValueError("audit.default_profiles must not be empty")
            values["default_profiles"] = profiles

        if "issue_thresholds" in data:
            thresholds = dict(defaults.issue_thresholds)
            for key, value in (data["issue_thresholds"] or {}).items():
                thresholds[CheckCategory(key)] = float(value)
            values["issue_thresholds"] = thresholds

        if "performance_weights" in data:
            weights = dict(defaults.performance_weights)
            for key, value in (data["performance_weights"] or {}).items():
                if key not in weights:
                    raise ValueError(f"unknown performance metric {key!r}")
                weights[key] = _weight(f"performance_weights.{key}", value, float)
            if sum(weights.values()) <= 0:
                raise ValueError("audit.performance_weights must not all be zero")
            values["performance_weights"] = weights

        if "schema_weights" in data:
            weights = dict(defaults.schema_weights)
            for key, value in (data["schema_weights"] or {}).items():
                if key not in weights:
                    raise ValueError(f"unknown schema group {key!r}")
                weights[key] = _weight(f"schema_weights.{key}", value, int)
            values["schema_weights"] = weights

        return cls(**values)
