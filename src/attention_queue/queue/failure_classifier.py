"""Deterministic handler failure classification for worker retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from attention_queue.queue.errors import TaskHandlerError
from attention_queue.queue.models import FailureKind

HANDLER_FAILURE_CLASSIFIER_VERSION = 1

_INPUT_PATTERNS: tuple[str, ...] = (
    "insufficient data",
    "not enough",
    "no activity",
    "invalid payload",
    "malformed",
    "missing required",
)
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "please retry",
    "try again later",
    "overloaded",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "network error",
    "service unavailable",
    "503",
    "502",
)
_INPUT_EXCEPTION_TYPES: tuple[type[BaseException], ...] = (ValueError, KeyError, TypeError)
_TRANSIENT_EXCEPTION_TYPES: tuple[type[BaseException], ...] = (
    TimeoutError,
    ConnectionError,
    OSError,
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_kind: FailureKind
    retryable: bool
    reason_code: str
    matched_rule: str
    matched_pattern: str | None = None

    def to_event_details(self, *, task_type: str) -> dict[str, object]:
        """Serialize classifier diagnostics for task events."""

        return {
            "classifier_version": HANDLER_FAILURE_CLASSIFIER_VERSION,
            "task_type": task_type,
            "failure_kind": self.failure_kind.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_handler_failure(error: BaseException, *, task_type: str) -> FailureClassification:
    """Classify a handler exception into a retry class.

    Typed `TaskHandlerError` outcomes are trusted as-is. Untyped exceptions
    are matched against message patterns, then exception types; anything
    unrecognized counts as transient so collaborator hiccups get retried.
    """

    if isinstance(error, TaskHandlerError):
        return FailureClassification(
            failure_kind=error.failure_kind,
            retryable=error.retryable,
            reason_code=f"{task_type}_{error.failure_kind.value}",
            matched_rule="typed_handler_error",
        )

    haystack = str(error).lower()

    pattern = _first_match(haystack, _INPUT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_kind=FailureKind.INPUT,
            retryable=False,
            reason_code=f"{task_type}_input",
            matched_rule="input_message",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _RATE_LIMIT_TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_kind=FailureKind.TRANSIENT,
            retryable=True,
            reason_code=f"{task_type}_rate_limit_transient",
            matched_rule="rate_limit_transient",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None or isinstance(error, _TRANSIENT_EXCEPTION_TYPES):
        return FailureClassification(
            failure_kind=FailureKind.TRANSIENT,
            retryable=True,
            reason_code=f"{task_type}_transient",
            matched_rule="generic_transient" if pattern is not None else "transient_exception",
            matched_pattern=pattern,
        )

    if isinstance(error, _INPUT_EXCEPTION_TYPES):
        return FailureClassification(
            failure_kind=FailureKind.INPUT,
            retryable=False,
            reason_code=f"{task_type}_input",
            matched_rule="input_exception",
        )

    return FailureClassification(
        failure_kind=FailureKind.TRANSIENT,
        retryable=True,
        reason_code=f"{task_type}_transient",
        matched_rule="fallback_transient",
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
