from __future__ import annotations

import allure
import pytest

from coursegen.orchestrator.backend.base import StepErrorCategory, StepExecutionError
from coursegen.orchestrator.failure_classifier import (
    CRITICAL_FAILURE_CLASSES,
    classify_step_failure,
    user_message_for,
)
from coursegen.orchestrator.models import FailureClass

pytestmark = [
    allure.epic("Generation Orchestrator"),
    allure.feature("Failure Classification"),
]


@pytest.mark.parametrize(
    ("message", "expected_class", "expected_retryable"),
    [
        ("429 Too Many Requests", FailureClass.RATE_LIMITED, True),
        ("upstream request timed out", FailureClass.TIMEOUT, True),
        ("ECONNREFUSED: connection refused", FailureClass.CONNECTION, True),
        ("worker out of memory", FailureClass.RESOURCE_EXHAUSTED, True),
        ("No documents found for course", FailureClass.INSUFFICIENT_CONTENT, False),
        ("Permission denied for bucket", FailureClass.ACCESS_OR_AUTH, False),
        ("Monthly usage limit reached", FailureClass.BILLING_OR_QUOTA, False),
        ("Output flagged by moderation", FailureClass.CONTENT_POLICY, False),
        ("duplicate key value violates unique constraint", FailureClass.DATA_CONFLICT, False),
        ("lesson does not exist", FailureClass.NOT_FOUND, False),
        ("malformed prompt template", FailureClass.INVALID_INPUT, False),
        ("something odd happened", FailureClass.UNKNOWN, True),
    ],
)
def test_untyped_errors_are_classified_by_message(
    message: str,
    expected_class: FailureClass,
    expected_retryable: bool,
) -> None:
    classification = classify_step_failure(error=RuntimeError(message), task_type="lesson_section")

    assert classification.failure_class == expected_class
    assert classification.retryable is expected_retryable
    assert classification.user_message


def test_timeout_exception_type_is_retryable_timeout() -> None:
    classification = classify_step_failure(error=TimeoutError(""), task_type="class_exam")

    assert classification.failure_class == FailureClass.TIMEOUT
    assert classification.retryable is True
    assert classification.reason_code == "class_exam_timeout"


@pytest.mark.parametrize(
    ("category", "expected_class", "expected_retryable"),
    [
        (StepErrorCategory.TRANSIENT, FailureClass.BACKEND_TRANSIENT, True),
        (StepErrorCategory.TIMEOUT, FailureClass.TIMEOUT, True),
        (StepErrorCategory.PERMANENT, FailureClass.BACKEND_NON_RETRYABLE, False),
        (StepErrorCategory.INVALID_INPUT, FailureClass.INVALID_INPUT, False),
    ],
)
def test_typed_errors_follow_category(
    category: StepErrorCategory,
    expected_class: FailureClass,
    expected_retryable: bool,
) -> None:
    error = StepExecutionError(
        f"Simulated {category.value} failure for section-l1-0",
        category=category,
    )

    classification = classify_step_failure(error=error, task_type="lesson_section")

    assert classification.failure_class == expected_class
    assert classification.retryable is expected_retryable


def test_typed_category_wins_over_conflicting_message_pattern() -> None:
    error = StepExecutionError(
        "rate limit exceeded but the request body is invalid",
        category=StepErrorCategory.PERMANENT,
    )

    classification = classify_step_failure(error=error, task_type="path_quiz")

    assert classification.retryable is False
    assert classification.failure_class != FailureClass.RATE_LIMITED


def test_typed_error_refines_class_within_category() -> None:
    error = StepExecutionError(
        "knowledge base: no documents found",
        category=StepErrorCategory.PERMANENT,
    )

    classification = classify_step_failure(error=error, task_type="lesson_section")

    assert classification.failure_class == FailureClass.INSUFFICIENT_CONTENT
    assert classification.failure_class in CRITICAL_FAILURE_CLASSES
    assert classification.matched_rule == "knowledge_base_empty"


def test_event_details_carry_classifier_diagnostics() -> None:
    classification = classify_step_failure(
        error=RuntimeError("rate limit"),
        task_type="lesson_assessment",
    )

    details = classification.to_event_details(task_type="lesson_assessment")

    assert details["classifier_version"] == 1
    assert details["reason_code"] == "lesson_assessment_rate_limit"
    assert details["matched_pattern"] == "rate limit"
    assert details["retryable"] is True
    assert details["suggested_actions"]


def test_user_message_for_falls_back_to_unknown() -> None:
    assert "busy" in user_message_for(FailureClass.RATE_LIMITED)
    assert (
        user_message_for(FailureClass.BACKEND_NON_RETRYABLE) == "This step could not be generated."
    )
    assert "unexpected" in user_message_for(FailureClass.UNKNOWN)
