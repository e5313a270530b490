"""Core data types shared by the event mesh runtime."""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum, IntEnum
from typing import Any


class ServiceState(str, Enum):
    """Lifecycle state of a mesh consumer or producer."""

    INITED = "INITED"
    RUNNING = "RUNNING"
    STOPED = "STOPED"


class GRPCType(str, Enum):
    """How a subscriber receives its messages."""

    WEBHOOK = "WEBHOOK"
    STREAM = "STREAM"


class SubscriptionMode(IntEnum):
    """Delivery mode of a subscription."""

    CLUSTERING = 0
    BROADCASTING = 1


class HeartbeatClientType(IntEnum):
    """Kind of client sending a heartbeat."""

    PUB = 0
    SUB = 1


class StateAction(str, Enum):
    """Change applied to a consumer group."""

    NEW = "NEW"
    CHANGE = "CHANGE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the local mesh node."""

    env: str = ""
    idc: str = ""
    cluster: str = ""
    session_expired: timedelta = timedelta(seconds=60)
    subscribe_pool_size: int = 10
    reply_pool_size: int = 10
    send_pool_size: int = 10


@dataclass(frozen=True)
class StatusCode:
    """A protocol return code with its message."""

    ret_code: str
    err_msg: str

    def to_json(self) -> str:
        """Serialise the code as the compact JSON body sent to clients."""
        return json.dumps(
            {"retCode": self.ret_code, "errMsg": self.err_msg},
            separators=(",", ":"),
        )


@dataclass
class Event:
    """A cloud event travelling through the mesh."""

    id: str = ""
    source: str = ""
    type: str = ""
    subject: str = ""
    data_content_type: str = ""
    data: Any = None
    extensions: dict[str, Any] = field(default_factory=dict)

    def clone(self) -> Event:
        """Return an independent deep copy of the event."""
        return copy.deepcopy(self)


@dataclass
class RequestHeader:
    """Header carried by every client request."""

    env: str = ""
    region: str = ""
    idc: str = ""
    ip: str = ""
    pid: str = ""
    sys: str = ""
    username: str = ""
    password: str = ""
    language: str = ""
    protocol_type: str = ""
    protocol_version: str = ""
    protocol_desc: str = ""


@dataclass
class SimpleMessage:
    """A single message published or delivered by the mesh."""

    header: RequestHeader | None = None
    producer_group: str = ""
    topic: str = ""
    content: str = ""
    ttl: str = ""
    unique_id: str = ""
    seq_num: str = ""
    tag: str = ""
    properties: dict[str, str] = field(default_factory=dict)


@dataclass
class SubscriptionItem:
    """One topic inside a subscription request."""

    topic: str = ""
    mode: SubscriptionMode = SubscriptionMode.CLUSTERING


@dataclass
class Subscription:
    """A subscribe, unsubscribe or stream reply request."""

    header: RequestHeader | None = None
    consumer_group: str = ""
    subscription_items: list[SubscriptionItem] = field(default_factory=list)
    url: str = ""
    reply: SimpleMessage | None = None


@dataclass
class HeartbeatItem:
    """One topic a heartbeat refers to."""

    topic: str = ""
    url: str = ""


@dataclass
class Heartbeat:
    """A client heartbeat."""

    header: RequestHeader | None = None
    client_type: HeartbeatClientType = HeartbeatClientType.PUB
    producer_group: str = ""
    consumer_group: str = ""
    heartbeat_items: list[HeartbeatItem] = field(default_factory=list)


@dataclass
class BatchMessageItem:
    """One message inside a batch."""

    content: str = ""
    ttl: str = ""
    unique_id: str = ""
    seq_num: str = ""
    tag: str = ""
    properties: dict[str, str] = field(default_factory=dict)


@dataclass
class BatchMessage:
    """A batch of messages for one topic."""

    header: RequestHeader | None = None
    producer_group: str = ""
    topic: str = ""
    message_items: list[BatchMessageItem] = field(default_factory=list)


@dataclass
class ConsumerGroupTopicConfig:
    """Subscription details of one topic within a consumer group."""

    consumer_group: str
    topic: str
    subscription_mode: SubscriptionMode = SubscriptionMode.CLUSTERING
    grpc_type: GRPCType = GRPCType.WEBHOOK
    idc_webhook_urls: dict[str, set[str]] = field(default_factory=dict)
    all_urls: set[str] = field(default_factory=set)


@dataclass
class ConsumerGroupConfig:
    """A consumer group with its per-topic configuration."""

    consumer_group: str
    topic_configs: dict[str, ConsumerGroupTopicConfig] = field(default_factory=dict)


@dataclass
class ConsumerGroupTopicMetadata:
    """Published metadata of one topic within a consumer group."""

    consumer_group: str
    topic: str
    all_urls: set[str] = field(default_factory=set)


@dataclass
class ConsumerGroupMetadata:
    """Published metadata of a consumer group."""

    consumer_group: str
    topic_metadata: dict[str, ConsumerGroupTopicMetadata] = field(default_factory=dict)


@dataclass
class ConsumerGroupStateEvent:
    """Notification that a consumer group changed."""

    consumer_group: str
    consumer_group_config: ConsumerGroupConfig | None
    action: StateAction


@dataclass
class ConsumerGroupTopicConfChangeEvent:
    """Notification that a topic of a consumer group changed."""

    action: StateAction
    consumer_group: str
    topic_config: ConsumerGroupTopicConfig | None


@dataclass(frozen=True)
class ProducerGroupConfig:
    """Configuration of a producer group."""

    group_name: str


@dataclass
class SendMessageContext:
    """State carried along with a message being produced."""

    event: Event
    biz_seq_no: str = ""
    producer: Any = None
    create_time: datetime = field(default_factory=datetime.now)


@dataclass
class MessageContext:
    """State carried along with a message being pushed to subscribers."""

    event: Event
    consumer_group: str = ""
    subscription_mode: SubscriptionMode = SubscriptionMode.CLUSTERING
    grpc_type: GRPCType = GRPCType.WEBHOOK
    topic_config: Any = None
    msg_random_no: str = ""