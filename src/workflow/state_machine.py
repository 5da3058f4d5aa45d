"""Transition table and routing rules for the OCR record lifecycle.

The table is data: each action lists the statuses it may start from and
the status it leaves the record in (``None`` keeps the current one).
"""

from enum import StrEnum

from src.errors import InvalidTransitionError
from src.models import OCRStatus

PROCESSING = OCRStatus.PROCESSING
COMPLETED = OCRStatus.COMPLETED
MANUAL_REVIEW = OCRStatus.MANUAL_REVIEW
FAILED = OCRStatus.FAILED


class Action(StrEnum):
    """Triggers that move a record between statuses."""

    AUTO_COMPLETE = "auto_complete"
    ROUTE_TO_REVIEW = "route_to_review"
    FAIL = "fail"
    REVIEW = "review"
    APPROVE = "approve"
    REJECT = "reject"
    RETRY = "retry"


TRANSITIONS: dict[Action, tuple[frozenset[OCRStatus], OCRStatus | None]] = {
    Action.AUTO_COMPLETE: (frozenset({PROCESSING}), COMPLETED),
    Action.ROUTE_TO_REVIEW: (frozenset({PROCESSING}), MANUAL_REVIEW),
    Action.FAIL: (frozenset({PROCESSING}), FAILED),
    Action.REVIEW: (frozenset({MANUAL_REVIEW}), None),
    Action.APPROVE: (frozenset({MANUAL_REVIEW, COMPLETED}), COMPLETED),
    Action.REJECT: (frozenset({MANUAL_REVIEW, COMPLETED}), FAILED),
    Action.RETRY: (frozenset({FAILED}), PROCESSING),
}

_REFUSALS: dict[Action, str] = {
    Action.REVIEW: "OCR data is not ready for review",
    Action.APPROVE: "OCR data cannot be approved in current state",
    Action.REJECT: "OCR data cannot be rejected in current state",
    Action.RETRY: "Can only retry failed OCR processing",
}

# Routing reasons recorded on the document.
REASON_FIELDS = "fields_need_review"
REASON_DUPLICATE = "duplicate"
REASON_QUALITY = "quality"


def allowed_from(action: Action) -> frozenset[OCRStatus]:
    return TRANSITIONS[action][0]


def next_status(action: Action, current: OCRStatus) -> OCRStatus:
    """Return the status ``action`` leads to from ``current``.

    Raises:
        InvalidTransitionError: ``action`` is not legal from ``current``.
    """
    sources, target = TRANSITIONS[action]
    if current not in sources:
        message = _REFUSALS.get(action, f"Cannot {action.value} from {current.value}")
        raise InvalidTransitionError(f"{message} (status {current.value})")
    return target if target is not None else current


def route(
    fields_need_review: bool,
    is_duplicate: bool,
    has_quality_issues: bool,
) -> tuple[Action, list[str]]:
    """Decide where a successful pipeline run leaves the document.

    Every condition that applies is reported; any one of them is enough
    to send the document to manual review.
    """
    reasons = []
    if fields_need_review:
        reasons.append(REASON_FIELDS)
    if is_duplicate:
        reasons.append(REASON_DUPLICATE)
    if has_quality_issues:
        reasons.append(REASON_QUALITY)
    return (Action.ROUTE_TO_REVIEW if reasons else Action.AUTO_COMPLETE), reasons
