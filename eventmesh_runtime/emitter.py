"""Sending status responses back over a subscriber stream."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional, Protocol

from .models import RequestHeader, SimpleMessage, StatusCode


class MessageStream(Protocol):
    """Anything that can send a message to a connected client."""

    def send(self, message: SimpleMessage) -> None: ...


class EventEmitter(ABC):
    """Delivers status responses to a client."""

    @abstractmethod
    def send_stream_resp(self, header: Optional[RequestHeader], code: StatusCode) -> None:
        """Send ``code`` to the client that sent ``header``."""


class StreamEmitter(EventEmitter):
    """Emitter backed by a client stream."""

    def __init__(self, stream: Optional[MessageStream] = None) -> None:
        self.stream = stream

    def send_stream_resp(self, header: Optional[RequestHeader], code: StatusCode) -> None:
        if self.stream is None:
            raise RuntimeError("no stream attached to emitter")
        self.stream.send(SimpleMessage(header=header, content=code.to_json()))