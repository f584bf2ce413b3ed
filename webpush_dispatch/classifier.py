"""Classification of push gateway responses into delivery outcomes."""

from __future__ import annotations

from typing import Optional

from .models import ClassificationResult, SendMessageResponse

TOO_MANY_REQUESTS = 429
# Codes meaning the push endpoint is permanently dead
INVALID_SUBSCRIPTION_CODES = frozenset({401, 404, 410})


def failed_processing_result(error_message: Optional[str] = None) -> ClassificationResult:
    """Result used when the gateway call itself failed before any response."""
    return ClassificationResult(failed_processing=True, error_message=error_message)


def classify_send_response(response: Optional[SendMessageResponse]) -> ClassificationResult:
    """
    Classify the gateway response for a single-recipient call.

    Rules, in priority order:
        - no structured body (or no per-recipient entry) -> no-op result
        - ``isSuccess`` true -> delivered
        - 429 -> rate limited
        - 401, 404, 410 -> invalid subscription
        - any other code -> unknown failure carrying the provider message

    Returns:
        ClassificationResult: all flags false means "nothing to record".
    """
    if response is None or not response.responses:
        return ClassificationResult()

    # one subscription per call, so one entry
    result = response.responses[0]
    if result.is_success:
        return ClassificationResult(delivered_ok=True)

    exception = result.exception
    if exception is None:
        return ClassificationResult(unknown_failure=True)

    code = exception.messaging_error_code
    if code == TOO_MANY_REQUESTS:
        return ClassificationResult(rate_limited=True, error_message=exception.message)
    if code in INVALID_SUBSCRIPTION_CODES:
        return ClassificationResult(invalid_subscription=True, error_message=exception.message)
    return ClassificationResult(unknown_failure=True, error_message=exception.message)
