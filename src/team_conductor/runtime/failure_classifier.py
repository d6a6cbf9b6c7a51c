"""Deterministic classification of failed one-shot executions."""

from __future__ import annotations

from dataclasses import dataclass

from team_conductor.runtime.base import FailureClass

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credit balance",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "not logged in",
    "please run /login",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "overloaded",
    "429",
    "529",
    "try again later",
    "temporarily unavailable",
    "connection reset",
    "network error",
    "could not resolve host",
    "timed out",
)

_RULES: tuple[tuple[FailureClass, str, tuple[str, ...]], ...] = (
    (FailureClass.BILLING_OR_QUOTA, "billing_or_quota", _BILLING_OR_QUOTA_PATTERNS),
    (FailureClass.ACCESS_OR_AUTH, "access_or_auth", _ACCESS_OR_AUTH_PATTERNS),
    (FailureClass.MODEL_NOT_AVAILABLE, "model_not_available", _MODEL_NOT_AVAILABLE_PATTERNS),
    (FailureClass.TRANSIENT, "transient", _TRANSIENT_PATTERNS),
)


@dataclass(slots=True)
class FailureClassification:
    failure_class: FailureClass
    reason_code: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.failure_class == FailureClass.TRANSIENT


def classify_failure(*, runtime_id: str, stdout: str, stderr: str) -> FailureClassification:
    """Match stderr then stdout against ordered pattern groups; first group wins."""

    haystack = f"{stderr}\n{stdout}".lower()
    for failure_class, rule, patterns in _RULES:
        for pattern in patterns:
            if pattern in haystack:
                return FailureClassification(
                    failure_class=failure_class,
                    reason_code=f"{runtime_id}_{rule}",
                    matched_pattern=pattern,
                )
    return FailureClassification(
        failure_class=FailureClass.NON_RETRYABLE,
        reason_code=f"{runtime_id}_non_retryable",
        matched_pattern=None,
    )
