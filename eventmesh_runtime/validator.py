"""Validation of incoming client requests."""

from __future__ import annotations

from .models import (
    BatchMessage,
    GRPCType,
    Heartbeat,
    HeartbeatClientType,
    RequestHeader,
    SimpleMessage,
    Subscription,
)


class ValidationError(ValueError):
    """A request failed validation."""


class HeaderError(ValidationError):
    """The request header is incomplete."""


class MessageError(ValidationError):
    """A simple message is incomplete."""


class SubscriptionError(ValidationError):
    """A subscription request is incomplete."""


class HeartbeatError(ValidationError):
    """A heartbeat is incomplete."""


class BatchMessageError(ValidationError):
    """A batch message is incomplete."""


_HEADER_FIELDS = (
    ("idc", "no idc found in header"),
    ("ip", "no ip found in header"),
    ("env", "no env found in header"),
    ("pid", "no pid found in header"),
    ("sys", "no sys found in header"),
    ("username", "no username found in header"),
    ("password", "no passwd found in header"),
    ("language", "no language found in header"),
)

_MESSAGE_FIELDS = (
    ("unique_id", "no uid found in message"),
    ("producer_group", "no producer group found in message"),
    ("topic", "no topic found in message"),
    ("content", "no content found in message"),
    ("ttl", "no ttl found in message"),
)

_BATCH_ITEM_FIELDS = (
    ("content", "batch message no content provided"),
    ("seq_num", "batch message no seq num provided"),
    ("ttl", "batch message no ttl provided"),
    ("unique_id", "batch message no uid provided"),
)


def _require(obj: object, fields, error: type[ValidationError]) -> None:
    for name, message in fields:
        if not getattr(obj, name):
            raise error(message)


def validate_header(header: RequestHeader) -> RequestHeader:
    """Check that every required header field is set; return the header."""
    _require(header, _HEADER_FIELDS, HeaderError)
    return header


def validate_message(message: SimpleMessage) -> SimpleMessage:
    """Check that a simple message carries its required fields."""
    _require(message, _MESSAGE_FIELDS, MessageError)
    return message


def validate_subscription(grpc_type: GRPCType, subscription: Subscription) -> Subscription:
    """Check a subscription for the given delivery type."""
    if grpc_type is GRPCType.WEBHOOK and not subscription.url:
        raise SubscriptionError("no subscription url on webhook type")
    if not subscription.subscription_items:
        raise SubscriptionError("no items subscription on grpc type")
    return subscription


def validate_heartbeat(heartbeat: Heartbeat) -> Heartbeat:
    """Check that a heartbeat names its group and topics."""
    if heartbeat.client_type is HeartbeatClientType.SUB and not heartbeat.consumer_group:
        raise HeartbeatError("hearbeat SUB but consumer group is empty")
    if heartbeat.client_type is HeartbeatClientType.PUB and not heartbeat.producer_group:
        raise HeartbeatError("hearbeat PUB but producer group is empty")
    if any(not item.topic for item in heartbeat.heartbeat_items):
        raise HeartbeatError("hearbeat but topic is empty")
    return heartbeat


def validate_batch_message(message: BatchMessage) -> BatchMessage:
    """Check a batch message and each of its items."""
    if not message.topic:
        raise BatchMessageError("batch message no topic provided")
    if not message.producer_group:
        raise BatchMessageError("batch message no producer group provided")
    for item in message.message_items:
        _require(item, _BATCH_ITEM_FIELDS, BatchMessageError)
    return message