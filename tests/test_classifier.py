import pytest

from webpush_dispatch.classifier import classify_send_response, failed_processing_result
from webpush_dispatch.models import DeliveryOutcome, SendMessageResponse


def _response(is_success, code=None, message=None):
    entry = {"isSuccess": is_success, "subscription": {"endpoint": "https://push.example/abc"}}
    if code is not None:
        entry["exception"] = {"messagingErrorCode": code, "message": message}
    return SendMessageResponse.model_validate({"responses": [entry]})


def test_success_is_delivered():
    result = classify_send_response(_response(True))
    assert result.delivered_ok is True
    assert result.outcome is DeliveryOutcome.DELIVERED


def test_too_many_requests_is_rate_limited():
    result = classify_send_response(_response(False, 429, "slow down"))
    assert result.rate_limited is True
    assert result.invalid_subscription is False
    assert result.outcome is DeliveryOutcome.RATE_LIMITED


@pytest.mark.parametrize("code", [401, 404, 410])
def test_dead_endpoint_codes_are_invalid_subscriptions(code):
    result = classify_send_response(_response(False, code, "gone"))
    assert result.invalid_subscription is True
    assert result.outcome is DeliveryOutcome.INVALID_SUBSCRIPTION


def test_other_codes_carry_provider_message():
    result = classify_send_response(_response(False, 500, "provider exploded"))
    assert result.unknown_failure is True
    assert result.error_message == "provider exploded"
    assert result.outcome is DeliveryOutcome.UNKNOWN_FAILURE


def test_failure_without_exception_is_unknown():
    result = classify_send_response(_response(False))
    assert result.outcome is DeliveryOutcome.UNKNOWN_FAILURE
    assert result.error_message is None


def test_missing_body_records_nothing():
    assert classify_send_response(None).outcome is DeliveryOutcome.NO_RESPONSE
    empty = SendMessageResponse.model_validate({"responses": []})
    assert classify_send_response(empty).outcome is DeliveryOutcome.NO_RESPONSE


def test_failed_processing_wins_over_other_flags():
    result = failed_processing_result("connection reset")
    assert result.outcome is DeliveryOutcome.FAILED_PROCESSING
    assert result.error_message == "connection reset"


def test_classification_is_deterministic():
    response = _response(False, 410, "gone")
    assert classify_send_response(response) == classify_send_response(response)
