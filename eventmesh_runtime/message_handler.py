"""Dispatching consumed messages to their subscribers."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Mapping, Optional

from .message_request import (
    PostForm,
    ProtocolAdapter,
    Request,
    Response,
    StreamRequest,
    WebhookRequest,
)
from .models import GRPCType, MessageContext, Settings

log = logging.getLogger(__name__)

CONSUMER_GROUP_WAITING_REQUEST_THRESHOLD = 1000


class RequestLimitError(RuntimeError):
    """Too many requests are waiting; the message should go back to the queue."""


class MessageHandler:
    """Pushes messages of one consumer group to subscribers in the background."""

    def __init__(self, consumer_group: str, adapters: Mapping[str, ProtocolAdapter],
                 settings: Settings, *,
                 threshold: int = CONSUMER_GROUP_WAITING_REQUEST_THRESHOLD,
                 post: Optional[PostForm] = None,
                 max_workers: Optional[int] = None,
                 sweep_interval: float = 1.0) -> None:
        self.consumer_group = consumer_group
        self.adapters = adapters
        self.settings = settings
        self.threshold = threshold
        self._post = post
        self._lock = threading.Lock()
        self._waiting: dict[str, list[Request]] = {consumer_group: []}
        self._executor = ThreadPoolExecutor(max_workers=max_workers)
        self._stopped = threading.Event()
        self._sweep_interval = sweep_interval
        self._sweeper = threading.Thread(target=self._check_timeout, daemon=True)
        self._sweeper.start()

    def _check_timeout(self) -> None:
        while not self._stopped.wait(self._sweep_interval):
            with self._lock:
                for group, requests in self._waiting.items():
                    self._waiting[group] = [r for r in requests if not r.is_timeout()]

    def handle(self, context: MessageContext) -> Future:
        """Build the request for ``context`` and push it in the background."""
        if self.size() > self.threshold:
            log.warning("too many request, reject and send back to MQ, group:%s, threshold:%s",
                        context.consumer_group, self.threshold)
            raise RequestLimitError("request reach the max threshold")
        if context.grpc_type is GRPCType.WEBHOOK:
            request: Request = WebhookRequest(context, self.adapters, self.settings, post=self._post)
        else:
            request = StreamRequest(context, self.adapters)
        with self._lock:
            waiting = self._waiting.get(context.consumer_group)
            if waiting is not None:
                waiting.append(request)
        return self._executor.submit(self._run, request, context)

    @staticmethod
    def _run(request: Request, context: MessageContext) -> list[Response]:
        try:
            return request.try_send()
        except Exception as err:
            log.warning("failed to handle msg, group:%s, topic:%s, err:%s",
                        context.consumer_group, context.event.subject, err)
            raise

    def size(self) -> int:
        """Number of consumer groups with a waiting list."""
        with self._lock:
            return len(self._waiting)

    def close(self) -> None:
        """Stop the background sweeper and wait for pending pushes."""
        self._stopped.set()
        self._executor.shutdown(wait=True)
        self._sweeper.join()

    def __enter__(self) -> MessageHandler:
        return self

    def __exit__(self, *exc) -> None:
        self.close()