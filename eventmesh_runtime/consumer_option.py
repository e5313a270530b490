"""Per-topic subscriber bookkeeping for consumer groups."""

from __future__ import annotations

import logging
import os
import socket
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from .emitter import EventEmitter, StreamEmitter
from .models import GRPCType, Settings, SubscriptionMode

log = logging.getLogger(__name__)


def _local_ip() -> str:
    """Best-effort address of this host on the local network."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(("10.255.255.255", 1))
            return sock.getsockname()[0]
    except OSError:
        return "127.0.0.1"


@dataclass(eq=False)
class GroupClient:
    """A client subscribed to one topic of a consumer group."""

    env: str = ""
    idc: str = ""
    consumer_group: str = ""
    topic: str = ""
    grpc_type: GRPCType = GRPCType.WEBHOOK
    url: str = ""
    subscription_mode: SubscriptionMode = SubscriptionMode.CLUSTERING
    sys: str = ""
    ip: str = ""
    pid: str = ""
    hostname: str = ""
    api_version: str = ""
    last_up_time: datetime = field(default_factory=datetime.now)
    emitter: Optional[EventEmitter] = None


def _default_client(settings: Settings, grpc_type: GRPCType, url: str,
                    emitter: Optional[EventEmitter]) -> GroupClient:
    return GroupClient(
        env=settings.env,
        idc=settings.idc,
        consumer_group="ConsumerGroup",
        topic="Topic",
        grpc_type=grpc_type,
        subscription_mode=SubscriptionMode.CLUSTERING,
        sys="test-SYS",
        ip=_local_ip(),
        pid=str(os.getpid()),
        hostname=socket.gethostname(),
        api_version="v1",
        url=url,
        last_up_time=datetime.now(),
        emitter=emitter,
    )


def default_stream_group_client(settings: Settings) -> GroupClient:
    """A stream client with default identity, bound to an empty emitter."""
    return _default_client(settings, GRPCType.STREAM, "", StreamEmitter(None))


def default_webhook_group_client(settings: Settings) -> GroupClient:
    """A webhook client with default identity and a sample URL."""
    return _default_client(settings, GRPCType.WEBHOOK, "http://test.com", None)


class ConsumerGroupTopicOption(ABC):
    """Subscribers of one topic within a consumer group."""

    def __init__(self, consumer_group: str, topic: str,
                 subscription_mode: SubscriptionMode, grpc_type: GRPCType) -> None:
        self.consumer_group = consumer_group
        self.topic = topic
        self.subscription_mode = subscription_mode
        self.grpc_type = grpc_type
        self._lock = threading.RLock()

    @abstractmethod
    def register_client(self, client: GroupClient) -> None:
        """Add ``client`` as a subscriber."""

    @abstractmethod
    def deregister_client(self, client: GroupClient) -> None:
        """Remove ``client`` as a subscriber."""

    @abstractmethod
    def idc_urls(self) -> dict[str, set[str]]:
        """Webhook URLs keyed by IDC."""

    @abstractmethod
    def all_urls(self) -> set[str]:
        """All webhook URLs regardless of IDC."""

    @abstractmethod
    def all_emitters(self) -> set[EventEmitter]:
        """All stream emitters regardless of IDC."""

    @abstractmethod
    def idc_emitters(self) -> dict[str, set[EventEmitter]]:
        """Stream emitters keyed by IDC."""

    @abstractmethod
    def size(self) -> int:
        """Number of distinct subscribers."""


class WebhookGroupTopicOption(ConsumerGroupTopicOption):
    """Subscribers reached through webhook URLs."""

    def __init__(self, consumer_group: str, topic: str,
                 subscription_mode: SubscriptionMode, grpc_type: GRPCType) -> None:
        super().__init__(consumer_group, topic, subscription_mode, grpc_type)
        self._idc_urls: dict[str, set[str]] = {}
        self._all_urls: set[str] = set()

    def register_client(self, client: GroupClient) -> None:
        if client.grpc_type is not GRPCType.WEBHOOK:
            log.warning("invalid grpc type:%s, with provide WEBHOOK", client.grpc_type)
            return
        with self._lock:
            self._idc_urls.setdefault(client.idc, set()).add(client.url)
            self._all_urls.add(client.url)

    def deregister_client(self, client: GroupClient) -> None:
        with self._lock:
            urls = self._idc_urls.get(client.idc)
            if urls is None:
                return
            urls.discard(client.url)
            self._all_urls.discard(client.url)

    def idc_urls(self) -> dict[str, set[str]]:
        with self._lock:
            return {idc: set(urls) for idc, urls in self._idc_urls.items()}

    def all_urls(self) -> set[str]:
        with self._lock:
            return set(self._all_urls)

    def all_emitters(self) -> set[EventEmitter]:
        raise TypeError("webhook no emitter")

    def idc_emitters(self) -> dict[str, set[EventEmitter]]:
        raise TypeError("webhook no emitter")

    def size(self) -> int:
        with self._lock:
            return len(self._all_urls)


def _client_key(ip: str, pid: str) -> str:
    return f"{ip}:{pid}"


class StreamGroupTopicOption(ConsumerGroupTopicOption):
    """Subscribers reached through open client streams."""

    def __init__(self, consumer_group: str, topic: str,
                 subscription_mode: SubscriptionMode, grpc_type: GRPCType) -> None:
        super().__init__(consumer_group, topic, subscription_mode, grpc_type)
        # IDC -> {"ip:pid" -> emitter}
        self._idc_emitter_map: dict[str, dict[str, EventEmitter]] = {}
        self._idc_emitters: dict[str, set[EventEmitter]] = {}
        self._total_emitters: set[EventEmitter] = set()

    def _rebuild(self) -> None:
        self._idc_emitters = {
            idc: set(by_client.values())
            for idc, by_client in self._idc_emitter_map.items()
        }
        self._total_emitters = set().union(*self._idc_emitters.values())

    def register_client(self, client: GroupClient) -> None:
        with self._lock:
            by_client = self._idc_emitter_map.setdefault(client.idc, {})
            by_client[_client_key(client.ip, client.pid)] = client.emitter
            self._rebuild()

    def deregister_client(self, client: GroupClient) -> None:
        with self._lock:
            by_client = self._idc_emitter_map.get(client.idc)
            if by_client is None:
                return
            by_client.pop(_client_key(client.ip, client.pid), None)
            if not by_client:
                del self._idc_emitter_map[client.idc]
            self._rebuild()

    def idc_urls(self) -> dict[str, set[str]]:
        raise TypeError("stream no idc urls")

    def all_urls(self) -> set[str]:
        raise TypeError("stream no all urls")

    def all_emitters(self) -> set[EventEmitter]:
        with self._lock:
            return set(self._total_emitters)

    def idc_emitters(self) -> dict[str, set[EventEmitter]]:
        with self._lock:
            return {idc: set(emitters) for idc, emitters in self._idc_emitters.items()}

    def size(self) -> int:
        with self._lock:
            return len(self._total_emitters)


def new_consumer_group_topic_option(consumer_group: str, topic: str,
                                    mode: SubscriptionMode,
                                    grpc_type: GRPCType) -> ConsumerGroupTopicOption:
    """Create the topic option matching the delivery type."""
    if grpc_type is GRPCType.WEBHOOK:
        return WebhookGroupTopicOption(consumer_group, topic, mode, grpc_type)
    return StreamGroupTopicOption(consumer_group, topic, mode, grpc_type)