"""Deterministic step failure classification for the task runner retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from coursegen.orchestrator.backend.base import StepErrorCategory, StepExecutionError
from coursegen.orchestrator.models import FailureClass

STEP_FAILURE_CLASSIFIER_VERSION = 1

RETRYABLE_FAILURE_CLASSES = frozenset(
    {
        FailureClass.TIMEOUT,
        FailureClass.RATE_LIMITED,
        FailureClass.BACKEND_TRANSIENT,
        FailureClass.CONNECTION,
        FailureClass.RESOURCE_EXHAUSTED,
        FailureClass.UNKNOWN,
    },
)

# Failures that block the whole course; smart recovery leaves them for a human.
CRITICAL_FAILURE_CLASSES = frozenset(
    {
        FailureClass.INSUFFICIENT_CONTENT,
        FailureClass.ACCESS_OR_AUTH,
        FailureClass.BILLING_OR_QUOTA,
    },
)


@dataclass(frozen=True, slots=True)
class _FailureRule:
    name: str
    failure_class: FailureClass
    patterns: tuple[str, ...]
    user_message: str
    suggested_actions: tuple[str, ...]


_RULES: tuple[_FailureRule, ...] = (
    _FailureRule(
        name="rate_limit",
        failure_class=FailureClass.RATE_LIMITED,
        patterns=("rate limit", "too many requests", "429"),
        user_message=(
            "The AI service is temporarily busy. "
            "We'll automatically retry in a few moments."
        ),
        suggested_actions=("Wait for automatic retry", "Reduce parallel generation"),
    ),
    _FailureRule(
        name="timeout",
        failure_class=FailureClass.TIMEOUT,
        patterns=("timed out", "timeout", "etimedout", "econnaborted"),
        user_message="The request took longer than expected. Retrying shortly.",
        suggested_actions=("Wait for automatic retry", "Split long sections into smaller ones"),
    ),
    _FailureRule(
        name="knowledge_base_empty",
        failure_class=FailureClass.INSUFFICIENT_CONTENT,
        patterns=("no documents found", "empty knowledge base", "no chunks available"),
        user_message=(
            "No learning materials found. Please upload documents before generating the course."
        ),
        suggested_actions=("Upload source documents", "Check document processing status"),
    ),
    _FailureRule(
        name="knowledge_base_insufficient",
        failure_class=FailureClass.INSUFFICIENT_CONTENT,
        patterns=("insufficient content", "not enough material", "minimal chunks"),
        user_message=(
            "Limited learning materials available. Upload more documents for better course quality."
        ),
        suggested_actions=("Upload more documents", "Skip the affected content"),
    ),
    _FailureRule(
        name="billing_or_quota",
        failure_class=FailureClass.BILLING_OR_QUOTA,
        patterns=("quota", "billing", "payment required", "credits", "usage limit"),
        user_message=(
            "The generation quota is used up. "
            "Generation resumes once the quota allows it."
        ),
        suggested_actions=("Check plan limits", "Retry after the quota resets"),
    ),
    _FailureRule(
        name="permission_denied",
        failure_class=FailureClass.ACCESS_OR_AUTH,
        patterns=(
            "permission denied",
            "access denied",
            "eacces",
            "unauthorized",
            "forbidden",
            "invalid api key",
        ),
        user_message="Permission issue encountered. Please contact support if this persists.",
        suggested_actions=("Check service credentials", "Contact support"),
    ),
    _FailureRule(
        name="content_policy",
        failure_class=FailureClass.CONTENT_POLICY,
        patterns=("content policy", "safety system", "flagged", "moderation"),
        user_message="This content was blocked by the safety filter.",
        suggested_actions=("Rephrase the section title", "Skip the affected content"),
    ),
    _FailureRule(
        name="data_conflict",
        failure_class=FailureClass.DATA_CONFLICT,
        patterns=("unique constraint", "duplicate key", "foreign key violation"),
        user_message="Data conflict detected. Our team has been notified to resolve this.",
        suggested_actions=("Skip the affected content", "Contact support"),
    ),
    _FailureRule(
        name="not_found",
        failure_class=FailureClass.NOT_FOUND,
        patterns=("not found", "does not exist", "no such"),
        user_message="Some referenced course content no longer exists.",
        suggested_actions=("Check the course outline", "Skip the affected content"),
    ),
    _FailureRule(
        name="invalid_input",
        failure_class=FailureClass.INVALID_INPUT,
        patterns=("invalid input", "validation error", "malformed", "bad request"),
        user_message="The generation request for this step was invalid.",
        suggested_actions=("Check the course outline", "Skip the affected content"),
    ),
    _FailureRule(
        name="database_connection",
        failure_class=FailureClass.CONNECTION,
        patterns=(
            "connection refused",
            "connection reset",
            "could not connect",
            "network error",
            "temporarily unavailable",
        ),
        user_message="Temporary connection issue. Automatically retrying...",
        suggested_actions=("Wait for automatic retry",),
    ),
    _FailureRule(
        name="memory_exceeded",
        failure_class=FailureClass.RESOURCE_EXHAUSTED,
        patterns=("out of memory", "enomem", "resource exhausted"),
        user_message="Resource limit reached. Adjusting settings and retrying...",
        suggested_actions=("Wait for automatic retry", "Reduce parallel generation"),
    ),
)

_CATEGORY_DEFAULTS: dict[StepErrorCategory, FailureClass] = {
    StepErrorCategory.TRANSIENT: FailureClass.BACKEND_TRANSIENT,
    StepErrorCategory.TIMEOUT: FailureClass.TIMEOUT,
    StepErrorCategory.PERMANENT: FailureClass.BACKEND_NON_RETRYABLE,
    StepErrorCategory.INVALID_INPUT: FailureClass.INVALID_INPUT,
}

_DEFAULT_USER_MESSAGES: dict[FailureClass, str] = {
    FailureClass.BACKEND_TRANSIENT: "A temporary generation error occurred. Retrying shortly.",
    FailureClass.TIMEOUT: "The request took longer than expected. Retrying shortly.",
    FailureClass.BACKEND_NON_RETRYABLE: "This step could not be generated.",
    FailureClass.INVALID_INPUT: "The generation request for this step was invalid.",
    FailureClass.UNKNOWN: "An unexpected error occurred. We're working to resolve it.",
}


@dataclass(slots=True)
class StepFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    retryable: bool
    reason_code: str
    matched_rule: str
    matched_pattern: str | None
    user_message: str
    suggested_actions: tuple[str, ...]

    def to_event_details(self, *, task_type: str) -> dict[str, object]:
        """Serialize classifier diagnostics for task error details and events."""

        return {
            "classifier_version": STEP_FAILURE_CLASSIFIER_VERSION,
            "task_type": task_type,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
            "retryable": self.retryable,
            "user_message": self.user_message,
            "suggested_actions": list(self.suggested_actions),
        }


def classify_step_failure(*, error: BaseException, task_type: str) -> StepFailureClassification:
    """Classify one failed attempt into a deterministic retry class.

    A ``StepExecutionError`` category decides retryability; message patterns only
    refine the class within it. Untyped exceptions are classified by message alone
    and default to retryable.
    """

    haystack = str(error).lower()
    if isinstance(error, TimeoutError):
        return _from_rule(_rule_named("timeout"), task_type=task_type, pattern=None)

    if isinstance(error, StepExecutionError):
        retryable = error.category in {StepErrorCategory.TRANSIENT, StepErrorCategory.TIMEOUT}
        for rule in _RULES:
            pattern = _first_match(haystack, rule.patterns)
            if pattern is not None and _is_retryable(rule.failure_class) == retryable:
                return _from_rule(rule, task_type=task_type, pattern=pattern)
        failure_class = _CATEGORY_DEFAULTS[error.category]
        return StepFailureClassification(
            failure_class=failure_class,
            retryable=retryable,
            reason_code=f"{task_type}_{failure_class.value}",
            matched_rule=f"category_{error.category.value}",
            matched_pattern=None,
            user_message=_DEFAULT_USER_MESSAGES[failure_class],
            suggested_actions=(
                ("Wait for automatic retry",)
                if retryable
                else ("Skip the affected content", "Contact support")
            ),
        )

    for rule in _RULES:
        pattern = _first_match(haystack, rule.patterns)
        if pattern is not None:
            return _from_rule(rule, task_type=task_type, pattern=pattern)

    return StepFailureClassification(
        failure_class=FailureClass.UNKNOWN,
        retryable=True,
        reason_code=f"{task_type}_unknown",
        matched_rule="fallback_retryable",
        matched_pattern=None,
        user_message=_DEFAULT_USER_MESSAGES[FailureClass.UNKNOWN],
        suggested_actions=("Retry the step", "Contact support if the error persists"),
    )


def user_message_for(failure_class: FailureClass) -> str:
    """Default user-facing message for a failure class."""

    for rule in _RULES:
        if rule.failure_class == failure_class:
            return rule.user_message
    return _DEFAULT_USER_MESSAGES.get(failure_class, _DEFAULT_USER_MESSAGES[FailureClass.UNKNOWN])


def _is_retryable(failure_class: FailureClass) -> bool:
    return failure_class in RETRYABLE_FAILURE_CLASSES


def _rule_named(name: str) -> _FailureRule:
    return next(rule for rule in _RULES if rule.name == name)


def _from_rule(
    rule: _FailureRule,
    *,
    task_type: str,
    pattern: str | None,
) -> StepFailureClassification:
    return StepFailureClassification(
        failure_class=rule.failure_class,
        retryable=_is_retryable(rule.failure_class),
        reason_code=f"{task_type}_{rule.name}",
        matched_rule=rule.name,
        matched_pattern=pattern,
        user_message=rule.user_message,
        suggested_actions=rule.suggested_actions,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
