"""Thin wrappers that drive connector consumers and producers."""

from __future__ import annotations

import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Optional

from .models import Event

EVENT_STORE_ENV = "EVENT_STORE"
DEFAULT_EVENT_STORE = "defibus"


class CommitAction(str, Enum):
    """What to do with a consumed message once it has been handled."""

    COMMIT_MESSAGE = "CommitMessage"
    RECONSUME_LATER = "ReconsumeLater"
    MANUAL_ACK = "ManualAck"


CommitFunc = Callable[[CommitAction], None]


@dataclass
class EventListener:
    """Receives events from a connector consumer."""

    consume: Callable[[Event, CommitFunc], None]


@dataclass
class SendCallback:
    """Completion hooks for a publish or reply."""

    on_success: Callable[[Any], None] = lambda result: None
    on_error: Callable[[BaseException], None] = lambda error: None


@dataclass
class RequestReplyCallback:
    """Completion hooks for a request awaiting a reply event."""

    on_success: Callable[[Event], None] = lambda event: None
    on_error: Callable[[BaseException], None] = lambda error: None


class ConnectorConsumer(ABC):
    """A message-queue consumer provided by a connector."""

    @abstractmethod
    def init_consumer(self, props: Mapping[str, str]) -> None:
        """Configure the consumer."""

    @abstractmethod
    def start(self) -> None:
        """Begin consuming."""

    @abstractmethod
    def shutdown(self) -> None:
        """Stop consuming."""

    @abstractmethod
    def subscribe(self, topic: str) -> None:
        """Subscribe to ``topic``."""

    @abstractmethod
    def unsubscribe(self, topic: str) -> None:
        """Drop the subscription to ``topic``."""

    @abstractmethod
    def register_event_listener(self, listener: EventListener) -> None:
        """Set the listener that receives consumed events."""

    @abstractmethod
    def update_offset(self, events: list[Event]) -> None:
        """Mark ``events`` as consumed."""


class ConnectorProducer(ABC):
    """A message-queue producer provided by a connector."""

    @abstractmethod
    def init_producer(self, props: Mapping[str, str]) -> None:
        """Configure the producer."""

    @abstractmethod
    def start(self) -> None:
        """Begin producing."""

    @abstractmethod
    def shutdown(self) -> None:
        """Stop producing."""

    @abstractmethod
    def publish(self, event: Event, callback: SendCallback) -> None:
        """Publish ``event`` asynchronously."""

    @abstractmethod
    def request(self, event: Event, callback: RequestReplyCallback,
                timeout: timedelta) -> None:
        """Publish ``event`` and wait for a reply."""

    @abstractmethod
    def reply(self, event: Event, callback: SendCallback) -> None:
        """Publish ``event`` as a reply to an earlier request."""


@dataclass
class Base:
    """Lifecycle flags shared by consumer and producer wrappers."""

    current_event_store: str = DEFAULT_EVENT_STORE
    started: bool = False
    inited: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def mark(self, *, started: Optional[bool] = None, inited: Optional[bool] = None) -> None:
        """Update the flags atomically."""
        with self._lock:
            if started is not None:
                self.started = started
            if inited is not None:
                self.inited = inited


def default_base_wrapper() -> Base:
    """A fresh base using the event store named in the environment."""
    return Base(current_event_store=os.environ.get(EVENT_STORE_ENV) or DEFAULT_EVENT_STORE)


def _to_timedelta(timeout: timedelta | float) -> timedelta:
    return timeout if isinstance(timeout, timedelta) else timedelta(seconds=timeout)


class Consumer:
    """Drives a connector consumer and tracks its lifecycle."""

    def __init__(self, connector: ConnectorConsumer, base: Optional[Base] = None) -> None:
        self.connector = connector
        self.base = base if base is not None else default_base_wrapper()

    def subscribe(self, topic: str) -> None:
        self.connector.subscribe(topic)

    def unsubscribe(self, topic: str) -> None:
        self.connector.unsubscribe(topic)

    def init(self, props: Mapping[str, str]) -> None:
        self.connector.init_consumer(dict(props))
        self.base.mark(inited=True)

    def start(self) -> None:
        self.connector.start()
        self.base.mark(started=True)

    def shutdown(self) -> None:
        self.connector.shutdown()
        self.base.mark(started=False, inited=False)

    def register_listener(self, listener: EventListener) -> None:
        self.connector.register_event_listener(listener)

    def update_offset(self, events: Iterable[Event]) -> None:
        self.connector.update_offset(list(events))


class Producer:
    """Drives a connector producer and tracks its lifecycle."""

    def __init__(self, connector: ConnectorProducer, base: Optional[Base] = None) -> None:
        self.connector = connector
        self.base = base if base is not None else default_base_wrapper()

    def send(self, event: Event, callback: SendCallback) -> None:
        self.connector.publish(event, callback)

    def request(self, event: Event, callback: RequestReplyCallback,
                timeout: timedelta | float) -> None:
        self.connector.request(event, callback, _to_timedelta(timeout))

    def reply(self, event: Event, callback: SendCallback) -> None:
        self.connector.reply(event, callback)

    def start(self) -> None:
        self.connector.start()
        self.base.mark(started=True)

    def shutdown(self) -> None:
        self.connector.shutdown()
        self.base.mark(started=False, inited=False)