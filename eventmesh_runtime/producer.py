"""Mesh producers and the manager that owns them."""

from __future__ import annotations

import logging
import os
import threading
from datetime import timedelta
from typing import Callable, Optional

from .models import ProducerGroupConfig, SendMessageContext, ServiceState, Settings
from .wrapper import ConnectorProducer, Producer, RequestReplyCallback, SendCallback

log = logging.getLogger(__name__)

ConnectorFactory = Callable[[], ConnectorProducer]


def _mesh_client_id(group: str, cluster: str) -> str:
    return f"{group.strip()}({cluster.strip()})-{os.getpid()}"


class EventMeshProducer:
    """A producer bound to one producer group."""

    def __init__(self, config: ProducerGroupConfig, connector: ConnectorProducer,
                 settings: Settings) -> None:
        self.config = config
        self.producer = Producer(connector)
        connector.init_producer({
            "producerGroup": config.group_name,
            "instanceName": _mesh_client_id(config.group_name, settings.cluster),
            "eventMeshIDC": settings.idc,
        })
        self.service_state: Optional[ServiceState] = ServiceState.INITED

    def send(self, context: SendMessageContext, callback: SendCallback) -> None:
        self.producer.send(context.event, callback)

    def request(self, context: SendMessageContext, callback: RequestReplyCallback,
                timeout: timedelta | float) -> None:
        self.producer.request(context.event, callback, timeout)

    def reply(self, context: SendMessageContext, callback: SendCallback) -> None:
        self.producer.reply(context.event, callback)

    def start(self) -> None:
        """Start the producer unless it is already running."""
        if self.service_state in (None, ServiceState.RUNNING):
            return
        self.producer.start()
        self.service_state = ServiceState.RUNNING
        log.info("start eventmesh producer for groupName:%s", self.config.group_name)

    def shutdown(self) -> None:
        """Stop the producer if it was ever started."""
        if self.service_state in (None, ServiceState.INITED):
            return
        self.producer.shutdown()
        self.service_state = ServiceState.STOPED

    def status(self) -> Optional[ServiceState]:
        return self.service_state

    def __str__(self) -> str:
        state = self.service_state.value if self.service_state else ""
        return f"eventMeshProducer, status:{state},  groupName:{self.config.group_name}"


class ProducerManager:
    """Creates and caches one mesh producer per producer group."""

    def __init__(self, connector_factory: ConnectorFactory, settings: Settings) -> None:
        self.connector_factory = connector_factory
        self.settings = settings
        self._producers: dict[str, EventMeshProducer] = {}
        self._lock = threading.RLock()

    def get_producer(self, group_name: str) -> EventMeshProducer:
        """Return the producer of ``group_name``, creating it if needed."""
        with self._lock:
            existing = self._producers.get(group_name)
            if existing is not None:
                return existing
            return self.create_producer(ProducerGroupConfig(group_name=group_name))

    def create_producer(self, config: ProducerGroupConfig) -> EventMeshProducer:
        """Create and cache a producer for ``config`` unless one exists."""
        with self._lock:
            existing = self._producers.get(config.group_name)
            if existing is not None:
                return existing
            producer = EventMeshProducer(config, self.connector_factory(), self.settings)
            self._producers[config.group_name] = producer
            return producer

    def start(self) -> None:
        log.info("start producer manager")

    def shutdown(self) -> None:
        """Shut every producer down, logging rather than raising failures."""
        log.info("shutdown producer manager")
        with self._lock:
            producers = list(self._producers.items())
        for name, producer in producers:
            try:
                producer.shutdown()
            except Exception as err:  # noqa: BLE001 - keep shutting the others down
                log.info("shutdown eventmesh producer:%s, err:%s", name, err)