"""Pydantic models shared by the dispatcher, the publisher and the stats engine.

Models:
    - PushTask: one unit of pending work for a single recipient, carried by the queue
    - WebPushEvent: immutable delivery or interaction fact
    - MessageStats: hour-bucketed counters for one (domain, message)
    - ClassificationResult: transient outcome of a gateway call
    - SendMessageResponse: response body returned by the push gateway
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class WebPushEventType(IntEnum):
    """Event types. Values match the ones stored by the event log."""

    DELIVERED = 0
    RECEIVED = 1
    CLICKED = 2
    PROCESSING_FAILED = 3
    DELIVERY_FAILED = 4
    DELIVERY_FAILED_BUT_RETRY = 5
    ACTION_CLICK = 6


class WebPushEventSubType(IntEnum):
    NONE = 0
    INVALID_SUBSCRIPTION = 1


class DeliveryOutcome(str, Enum):
    """Fixed outcome taxonomy produced by the response classifier."""

    DELIVERED = "delivered"
    RATE_LIMITED = "rate_limited"
    INVALID_SUBSCRIPTION = "invalid_subscription"
    UNKNOWN_FAILURE = "unknown_failure"
    FAILED_PROCESSING = "failed_processing"
    NO_RESPONSE = "no_response"


# ----------------------------------------------------------------- push tasks
class SubscriptionKeys(BaseModel):
    model_config = ConfigDict(frozen=True)

    p256dh: Optional[str] = None
    auth: Optional[str] = None


class Subscription(BaseModel):
    """Browser push subscription of one recipient."""

    model_config = ConfigDict(frozen=True)

    endpoint: Optional[str] = None
    keys: Optional[SubscriptionKeys] = None

    def is_valid(self) -> bool:
        """Return ``True`` when endpoint and both keys are present."""
        return bool(self.endpoint and self.keys and self.keys.p256dh and self.keys.auth)


class SubscriptionInfo(BaseModel):
    """Subscription as returned by the contact store."""

    model_config = ConfigDict(frozen=True)

    push_contact_id: str
    domain: Optional[str] = None
    visitor_guid: Optional[str] = None
    subscription: Optional[Subscription] = None

    def is_valid(self) -> bool:
        return self.subscription is not None and self.subscription.is_valid()


class MessageAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: str
    title: Optional[str] = None
    icon: Optional[str] = None
    link: Optional[str] = None


class WebPushMessage(BaseModel):
    """Message content as requested by the caller, before fan-out."""

    model_config = ConfigDict(frozen=True)

    message_id: UUID
    domain: str
    title: str
    body: str
    on_click_link: Optional[str] = None
    image_url: Optional[str] = None
    icon_url: Optional[str] = None
    actions: List[MessageAction] = Field(default_factory=list)


class PushTask(BaseModel):
    """Delivery work for exactly one recipient. Lives only in the queue."""

    model_config = ConfigDict(frozen=True)

    message_id: UUID
    domain: str
    push_contact_id: Optional[str] = None
    subscription: Subscription
    title: str
    body: str
    on_click_link: Optional[str] = None
    image_url: Optional[str] = None
    icon_url: Optional[str] = None
    actions: List[MessageAction] = Field(default_factory=list)
    clicked_event_endpoint: Optional[str] = None
    received_event_endpoint: Optional[str] = None
    correlation_id: Optional[str] = None


class VisitorFields(BaseModel):
    """Targeted recipient with optional personalization values."""

    visitor_guid: str
    fields: Optional[Dict[str, Optional[str]]] = None

    @property
    def replace_fields(self) -> bool:
        return bool(self.fields)


# --------------------------------------------------------------------- events
class WebPushEvent(BaseModel):
    """Immutable delivery or interaction fact. Bucketed by ``date``."""

    model_config = ConfigDict(frozen=True)

    domain: str
    message_id: UUID
    date: datetime
    type: int
    sub_type: int = WebPushEventSubType.NONE
    push_contact_id: Optional[str] = None
    error_message: Optional[str] = None


class MessageStats(BaseModel):
    """Counters of one (domain, message, hour) bucket."""

    domain: str
    message_id: UUID
    date: datetime
    sent: int = 0
    delivered: int = 0
    not_delivered: int = 0
    received: int = 0
    click: int = 0
    action_click: int = 0
    billable_sends: int = 0


class MessageStatsTotals(BaseModel):
    sent: int = 0
    delivered: int = 0
    not_delivered: int = 0
    received: int = 0
    click: int = 0
    action_click: int = 0
    billable_sends: int = 0


class MessageStatsPeriod(MessageStatsTotals):
    """Totals of one reporting period (hour, day or month)."""

    date: datetime


class CounterDeltas(BaseModel):
    """Increments applied to the all-time counters of a message."""

    model_config = ConfigDict(frozen=True)

    sent: int = 0
    delivered: int = 0
    not_delivered: int = 0
    billable_sends: int = 0


# -------------------------------------------------------------------- gateway
class WebPushException(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    messaging_error_code: Optional[int] = Field(default=None, alias="messagingErrorCode")
    message: Optional[str] = None


class WebPushResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_success: bool = Field(default=False, alias="isSuccess")
    subscription: Optional[Any] = None
    exception: Optional[WebPushException] = None


class SendMessageResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    responses: List[WebPushResponse] = Field(default_factory=list)


class ClassificationResult(BaseModel):
    """Transient result of classifying one gateway call. Never persisted."""

    model_config = ConfigDict(frozen=True)

    delivered_ok: bool = False
    invalid_subscription: bool = False
    rate_limited: bool = False
    unknown_failure: bool = False
    failed_processing: bool = False
    error_message: Optional[str] = None

    @property
    def outcome(self) -> DeliveryOutcome:
        if self.failed_processing:
            return DeliveryOutcome.FAILED_PROCESSING
        if self.delivered_ok:
            return DeliveryOutcome.DELIVERED
        if self.rate_limited:
            return DeliveryOutcome.RATE_LIMITED
        if self.invalid_subscription:
            return DeliveryOutcome.INVALID_SUBSCRIPTION
        if self.unknown_failure:
            return DeliveryOutcome.UNKNOWN_FAILURE
        return DeliveryOutcome.NO_RESPONSE
