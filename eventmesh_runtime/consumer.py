"""Mesh consumers per consumer group and the manager that owns them."""

from __future__ import annotations

import logging
import os
import threading
import time
from datetime import datetime
from typing import Callable, Mapping, Optional

from .consumer_option import (
    ConsumerGroupTopicOption,
    GroupClient,
    new_consumer_group_topic_option,
)
from .message_handler import MessageHandler
from .message_request import ProtocolAdapter
from .models import (
    Event,
    GRPCType,
    MessageContext,
    ServiceState,
    Settings,
    SubscriptionMode,
)
from .wrapper import (
    CommitAction,
    CommitFunc,
    Consumer,
    ConnectorConsumer,
    EventListener,
)

log = logging.getLogger(__name__)

REQ_MQ2EVENTMESH_TIMESTAMP = "reqmq2eventmeshtimestamp"
PROPERTY_MESSAGE_SEARCH_KEYS = "searchkeys"
RMB_UNIQ_ID = "rmbuniqid"
DEFAULT_RETRY_WAIT = 5.0

ConnectorFactory = Callable[[], ConnectorConsumer]


class ConsumerConnectorError(RuntimeError):
    """A connector consumer could not be created."""


def _mesh_client_id(group: str, cluster: str) -> str:
    return f"{group.strip()}({cluster.strip()})-{os.getpid()}"


def _new_wrapper(connector_factory: ConnectorFactory) -> Consumer:
    try:
        return Consumer(connector_factory())
    except Exception as err:
        raise ConsumerConnectorError("create consumer connector err") from err


class EventMeshConsumer:
    """Consumes the topics of one consumer group and pushes them to subscribers."""

    def __init__(self, consumer_group: str, connector_factory: ConnectorFactory,
                 settings: Settings,
                 adapters: Optional[Mapping[str, ProtocolAdapter]] = None, *,
                 message_handler: Optional[MessageHandler] = None,
                 retry_wait: float = DEFAULT_RETRY_WAIT) -> None:
        self.consumer_group = consumer_group
        self.settings = settings
        self.retry_wait = retry_wait
        self.message_handler = message_handler or MessageHandler(
            consumer_group, dict(adapters or {}), settings)
        self.persistent_consumer = _new_wrapper(connector_factory)
        self.broadcast_consumer = _new_wrapper(connector_factory)
        self._state: Optional[ServiceState] = None
        self._topic_options: dict[str, ConsumerGroupTopicOption] = {}
        self._lock = threading.RLock()

    def service_state(self) -> Optional[ServiceState]:
        """Current lifecycle state; None before the first init."""
        return self._state

    def _props(self) -> dict[str, str]:
        return {
            "isBroadcast": "false",
            "consumerGroup": self.consumer_group,
            "eventMeshIDC": self.settings.idc,
            "instanceName": _mesh_client_id(self.consumer_group, self.settings.cluster),
        }

    def init(self) -> None:
        """Initialise both connectors; a group with no topics is left alone."""
        if self.consumer_group_size() == 0:
            return
        self.persistent_consumer.init(self._props())
        self.persistent_consumer.register_listener(
            self._create_event_listener(SubscriptionMode.CLUSTERING))
        self.broadcast_consumer.init(self._props())
        self.broadcast_consumer.register_listener(
            self._create_event_listener(SubscriptionMode.BROADCASTING))
        self._state = ServiceState.INITED
        log.info("init the eventmesh consumer success, group:%s", self.consumer_group)

    def start(self) -> None:
        """Subscribe every topic by mode and start both connectors."""
        if self.consumer_group_size() == 0:
            return
        with self._lock:
            options = list(self._topic_options.items())
        for topic, option in options:
            if option.subscription_mode is SubscriptionMode.CLUSTERING:
                self.persistent_consumer.subscribe(topic)
            elif option.subscription_mode is SubscriptionMode.BROADCASTING:
                self.broadcast_consumer.subscribe(topic)
            else:
                log.warning("un support sub mode:%s", option.subscription_mode)
        self.broadcast_consumer.start()
        self.persistent_consumer.start()
        self._state = ServiceState.RUNNING

    def register_client(self, client: GroupClient) -> bool:
        """Record the client's topic; True if the topic is new and a restart is due."""
        with self._lock:
            option = self._topic_options.get(client.topic)
            restart = option is None
            if option is None:
                option = new_consumer_group_topic_option(
                    client.consumer_group, client.topic,
                    client.subscription_mode, client.grpc_type)
                self._topic_options[client.topic] = option
        option.register_client(client)
        return restart

    def deregister_client(self, client: GroupClient) -> bool:
        """Drop the client's topic; True if it was known and a restart is due."""
        with self._lock:
            option = self._topic_options.pop(client.topic, None)
        if option is None:
            return False
        option.deregister_client(client)
        return True

    def shutdown(self) -> None:
        """Shut both connectors down."""
        self.persistent_consumer.shutdown()
        self.broadcast_consumer.shutdown()
        self._state = ServiceState.STOPED

    def consumer_group_size(self) -> int:
        """Number of topics this group subscribes to."""
        with self._lock:
            return len(self._topic_options)

    def _create_event_listener(self, mode: SubscriptionMode) -> EventListener:
        def consume(event: Event, commit: CommitFunc) -> None:
            action = CommitAction.COMMIT_MESSAGE
            try:
                action = self._dispatch(event, mode)
            finally:
                commit(action)

        return EventListener(consume=consume)

    def _dispatch(self, event: Event, mode: SubscriptionMode) -> CommitAction:
        clone = event.clone()
        clone.extensions[REQ_MQ2EVENTMESH_TIMESTAMP] = int(time.time() * 1000)
        topic = event.subject
        log.info("mq to eventmesh, topic:%s, bizSeqNo:%s, uniqueID:%s", topic,
                 clone.extensions.get(PROPERTY_MESSAGE_SEARCH_KEYS),
                 clone.extensions.get(RMB_UNIQ_ID))
        with self._lock:
            option = self._topic_options.get(topic)
        if option is None:
            log.debug("no active consumer for topic:%s", topic)
            return CommitAction.COMMIT_MESSAGE
        context = MessageContext(
            event=clone,
            consumer_group=self.consumer_group,
            subscription_mode=mode,
            grpc_type=option.grpc_type,
            topic_config=option,
        )
        try:
            self.message_handler.handle(context)
        except Exception as err:  # noqa: BLE001 - the message goes back to the queue
            log.warning("handle msg err:%s, topic:%s, group:%s", err, topic, self.consumer_group)
            time.sleep(self.retry_wait)
            return CommitAction.COMMIT_MESSAGE
        return CommitAction.MANUAL_ACK


class ConsumerManager:
    """Tracks subscribed clients and one mesh consumer per consumer group."""

    def __init__(self, connector_factory: ConnectorFactory, settings: Settings,
                 adapters: Optional[Mapping[str, ProtocolAdapter]] = None) -> None:
        self.connector_factory = connector_factory
        self.settings = settings
        self.adapters = dict(adapters or {})
        self._clients: dict[str, list[GroupClient]] = {}
        self._consumers: dict[str, EventMeshConsumer] = {}
        self._lock = threading.RLock()
        self._stop_event: Optional[threading.Event] = None
        self._checker: Optional[threading.Thread] = None

    def __contains__(self, consumer_group: object) -> bool:
        with self._lock:
            return consumer_group in self._clients

    def __getitem__(self, consumer_group: str) -> tuple[GroupClient, ...]:
        with self._lock:
            return tuple(self._clients[consumer_group])

    def get_consumer(self, consumer_group: str) -> EventMeshConsumer:
        """Return the group's mesh consumer, creating it if needed."""
        with self._lock:
            consumer = self._consumers.get(consumer_group)
            if consumer is None:
                consumer = EventMeshConsumer(consumer_group, self.connector_factory,
                                             self.settings, self.adapters)
                self._consumers[consumer_group] = consumer
            return consumer

    def register_client(self, client: GroupClient) -> None:
        """Add a client, or refresh the group's known client with its details."""
        with self._lock:
            clients = self._clients.get(client.consumer_group)
            if clients is None:
                self._clients[client.consumer_group] = [client]
                return
            for known in clients:
                if known.grpc_type is GRPCType.WEBHOOK:
                    known.url = client.url
                    known.last_up_time = client.last_up_time
                    return
                if known.grpc_type is GRPCType.STREAM:
                    known.emitter = client.emitter
                    known.last_up_time = client.last_up_time
                    return
            clients.append(client)

    def deregister_client(self, client: GroupClient) -> None:
        """Remove every client of the group subscribed to the client's topic."""
        with self._lock:
            clients = self._clients.get(client.consumer_group)
            if clients is None:
                log.debug("no consumer group client found, name:%s", client.consumer_group)
                return
            remaining = [known for known in clients if known.topic != client.topic]
            if remaining:
                self._clients[client.consumer_group] = remaining
            else:
                del self._clients[client.consumer_group]

    def update_client_time(self, client: GroupClient) -> None:
        """Mark every client of the client's group as seen now."""
        with self._lock:
            clients = self._clients.get(client.consumer_group)
            if clients is None:
                log.debug("no consumer group client found, name:%s", client.consumer_group)
                return
            now = datetime.now()
            for known in clients:
                known.last_up_time = now

    def restart_consumer(self, consumer_group: str) -> None:
        """Shut down, re-initialise and start the group's consumer.

        A consumer that does not end up running is forgotten.
        """
        with self._lock:
            consumer = self._consumers.get(consumer_group)
        if consumer is None:
            return
        if consumer.service_state() is ServiceState.RUNNING:
            consumer.shutdown()
        consumer.init()
        consumer.start()
        if consumer.service_state() is not ServiceState.RUNNING:
            log.warning("restart eventmesh consumer failed, status:%s", consumer.service_state())
            with self._lock:
                self._consumers.pop(consumer_group, None)

    def check_clients(self) -> list[str]:
        """Remove clients whose session expired; return the groups restarted."""
        expired = self.settings.session_expired
        now = datetime.now()
        with self._lock:
            snapshot = {group: list(clients) for group, clients in self._clients.items()}
        restart: list[str] = []
        for clients in snapshot.values():
            for client in clients:
                if now - client.last_up_time <= expired:
                    continue
                log.warning("client:%s lastUpdate time:%s over three heartbeat cycles. Removing it",
                            client.consumer_group, client.last_up_time)
                try:
                    consumer = self.get_consumer(client.consumer_group)
                except Exception as err:  # noqa: BLE001
                    log.warning("get eventmesh consumer:%s failed, err:%s",
                                client.consumer_group, err)
                    break
                self.deregister_client(client)
                if not consumer.deregister_client(client):
                    log.warning("failed deregistry client:%s in eventmesh consumer",
                                client.consumer_group)
                    break
                if client.consumer_group not in restart:
                    restart.append(client.consumer_group)
        for group in restart:
            try:
                self.restart_consumer(group)
            except Exception as err:  # noqa: BLE001
                log.warning("deregistry consumer:%s  err:%s", group, err)
        return restart

    def _check_loop(self, stop: threading.Event, interval: float) -> None:
        while not stop.wait(interval):
            try:
                self.check_clients()
            except Exception as err:  # noqa: BLE001 - keep checking
                log.warning("client check failed, err:%s", err)

    def start(self) -> None:
        """Begin checking client sessions in the background."""
        log.info("start consumer manager")
        with self._lock:
            if self._checker is not None and self._checker.is_alive():
                return
            self._stop_event = threading.Event()
            interval = max(self.settings.session_expired.total_seconds(), 0.001)
            self._checker = threading.Thread(
                target=self._check_loop, args=(self._stop_event, interval), daemon=True)
            self._checker.start()

    def stop(self) -> None:
        """Stop the background session check."""
        with self._lock:
            stop_event, checker = self._stop_event, self._checker
            self._stop_event = self._checker = None
        if stop_event is not None:
            stop_event.set()
        if checker is not None:
            checker.join()