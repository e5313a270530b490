"""Requests that push a consumed event out to its subscribers."""

from __future__ import annotations

import json
import logging
import random
import socket
import threading
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Mapping, Optional, Protocol

from .models import (
    Event,
    MessageContext,
    RequestHeader,
    Settings,
    SimpleMessage,
    SubscriptionMode,
)
from .retry import Retry

log = logging.getLogger(__name__)

PROTOCOL_TYPE_EXTENSION = "protocoltype"
REQ_EVENTMESH2C_TIMESTAMP = "reqeventmesh2ctimestamp"
HTTP_PUSH_CLIENT_ASYNC = "105"
DEFAULT_WEBHOOK_TIMEOUT = 5.0

HEADER_REQUEST_CODE = "code"
HEADER_LANGUAGE = "language"
HEADER_VERSION = "version"
HEADER_CLUSTER = "eventmeshcluster"
HEADER_ENV = "eventmeshenv"
HEADER_IP = "eventmeship"
HEADER_IDC = "eventmeshidc"
HEADER_PROTOCOL_TYPE = "protocoltype"
HEADER_PROTOCOL_DESC = "protocoldesc"
HEADER_PROTOCOL_VERSION = "protocolversion"
HEADER_CONTENT_TYPE = "contenttype"

FORM_CONTENT = "content"
FORM_BIZSEQNO = "bizseqno"
FORM_UNIQUEID = "uniqueid"
FORM_RANDOMNO = "randomno"
FORM_TOPIC = "topic"
FORM_EXTFIELDS = "extFields"

# post(url, form, headers, timeout) -> (status code, response body)
PostForm = Callable[[str, Mapping[str, str], Mapping[str, str], float], "tuple[int, bytes]"]


class NoProtocolError(LookupError):
    """The event names no protocol, or no adapter handles its protocol."""


class ProtocolAdapter(Protocol):
    """Converts cloud events into protocol messages."""

    def from_cloud_event(self, event: Event) -> SimpleMessage: ...


@dataclass
class Response:
    """Reply a webhook subscriber sends back."""

    ret_code: str = ""
    err_msg: str = ""

    @classmethod
    def from_json(cls, body: bytes | str) -> Response:
        """Parse a subscriber reply; raise ValueError if it is not a JSON object."""
        data = json.loads(body)
        if not isinstance(data, dict):
            raise ValueError("response is not a JSON object")
        return cls(ret_code=str(data.get("retCode", "")), err_msg=str(data.get("errMsg", "")))


def event_to_simple_message(event: Event, adapters: Mapping[str, ProtocolAdapter]) -> SimpleMessage:
    """Convert ``event`` with the adapter registered for its protocol type."""
    protocol_type = event.extensions.get(PROTOCOL_TYPE_EXTENSION)
    if protocol_type is None:
        raise NoProtocolError("no protocol type found in event message")
    adapter = adapters.get(str(protocol_type))
    if adapter is None:
        raise NoProtocolError(f"no protocol adapter for type {protocol_type!r}")
    return adapter.from_cloud_event(event)


def _local_ip() -> str:
    try:
        return socket.gethostbyname(socket.gethostname())
    except OSError:
        return "127.0.0.1"


def _http_post_form(url: str, form: Mapping[str, str], headers: Mapping[str, str],
                    timeout: float) -> tuple[int, bytes]:
    data = urllib.parse.urlencode(form).encode()
    request = urllib.request.Request(
        url,
        data=data,
        headers={**headers, "Content-Type": "application/x-www-form-urlencoded"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as resp:
            return resp.status, resp.read()
    except urllib.error.HTTPError as err:
        return err.code, err.read()


class Request:
    """A consumed message waiting to be pushed to a subscriber."""

    def __init__(self, context: MessageContext, adapters: Mapping[str, ProtocolAdapter]) -> None:
        self.message_context = context
        self.simple_message = event_to_simple_message(context.event, adapters)
        self.retry = Retry()
        self.create_time = datetime.now()
        self.last_push_time: Optional[datetime] = None
        self.complete = threading.Event()

    def is_timeout(self) -> bool:
        """Whether the request has outlived its wait; requests never linger."""
        return True

    def try_send(self) -> list[Response]:
        """Record a push attempt; a plain request has no destination."""
        self.last_push_time = datetime.now()
        return []


class StreamRequest(Request):
    """A message to be pushed over client streams."""

    def __init__(self, context: MessageContext, adapters: Mapping[str, ProtocolAdapter]) -> None:
        super().__init__(context, adapters)
        self.mode = context.subscription_mode
        self.start_idx = 0

    def try_send(self) -> list[Response]:
        """Stream pushes are delivered by the stream itself; nothing to post."""
        return []


class WebhookRequest(Request):
    """A message to be posted to subscriber webhook URLs."""

    def __init__(self, context: MessageContext, adapters: Mapping[str, ProtocolAdapter],
                 settings: Settings, post: Optional[PostForm] = None,
                 timeout: float = DEFAULT_WEBHOOK_TIMEOUT) -> None:
        super().__init__(context, adapters)
        topic_config = context.topic_config
        self.settings = settings
        self.idc_webhook_urls: dict[str, set[str]] = topic_config.idc_urls()
        self.all_urls: set[str] = topic_config.all_urls()
        size = topic_config.size()
        if size <= 0:
            raise ValueError("no subscribers for topic")
        self.start_idx = random.randrange(size)
        self.subscription_mode = context.subscription_mode
        self.timeout = timeout
        self._post = post or _http_post_form

    def _headers(self) -> dict[str, str]:
        msg = self.simple_message
        hdr = msg.header or RequestHeader()
        return {
            HEADER_REQUEST_CODE: HTTP_PUSH_CLIENT_ASYNC,
            HEADER_LANGUAGE: "Python",
            HEADER_VERSION: "1.0",
            HEADER_CLUSTER: self.settings.cluster,
            HEADER_ENV: self.settings.env,
            HEADER_IP: _local_ip(),
            HEADER_IDC: self.settings.idc,
            HEADER_PROTOCOL_TYPE: hdr.protocol_type,
            HEADER_PROTOCOL_DESC: hdr.protocol_desc,
            HEADER_PROTOCOL_VERSION: hdr.protocol_version,
            HEADER_CONTENT_TYPE: msg.properties.get(HEADER_CONTENT_TYPE, ""),
        }

    def try_send(self) -> list[Response]:
        """Post the message to the chosen URLs; return the replies that parsed."""
        self.last_push_time = datetime.now()
        msg = self.simple_message
        headers = self._headers()
        form = {
            FORM_CONTENT: msg.content,
            FORM_BIZSEQNO: msg.seq_num,
            FORM_UNIQUEID: msg.unique_id,
            FORM_RANDOMNO: self.message_context.msg_random_no,
            FORM_TOPIC: msg.topic,
            FORM_EXTFIELDS: json.dumps(msg.properties, separators=(",", ":")),
        }
        msg.properties[REQ_EVENTMESH2C_TIMESTAMP] = str(int(self.last_push_time.timestamp() * 1000))

        responses: list[Response] = []
        for url in self.get_urls():
            log.info("message|eventMesh2client|url=%s|topic=%s|bizSeqNo=%s|uniqueId=%s",
                     url, msg.topic, msg.seq_num, msg.unique_id)
            try:
                status, body = self._post(url, form, headers, self.timeout)
            except Exception as err:  # noqa: BLE001 - one failing subscriber must not stop the rest
                log.warning("err:%s in submit to url:%s|topic=%s|bizSeqNo=%s|uniqueId=%s",
                            err, url, msg.topic, msg.seq_num, msg.unique_id)
                continue
            if status != 200:
                log.warning("status code:%s to submit to url:%s|topic=%s|bizSeqNo=%s|uniqueId=%s",
                            status, url, msg.topic, msg.seq_num, msg.unique_id)
                continue
            try:
                responses.append(Response.from_json(body))
            except (ValueError, TypeError) as err:
                log.warning("err:%s in unmarshal response:%r url:%s|topic=%s|bizSeqNo=%s|uniqueId=%s",
                            err, body, url, msg.topic, msg.seq_num, msg.unique_id)
        return responses

    def get_urls(self) -> list[str]:
        """URLs this attempt goes to, by subscription mode."""
        urls = sorted(self.idc_webhook_urls.get(self.settings.idc, ()))
        if not urls:
            urls = sorted(self.all_urls)
        if not urls:
            log.warning("no handler for submitter")
            return []
        if self.subscription_mode is SubscriptionMode.CLUSTERING:
            return [urls[(self.retry.retry_times + self.start_idx) % len(urls)]]
        if self.subscription_mode is SubscriptionMode.BROADCASTING:
            return urls
        log.warning("invalid Subscription Mode, no message returning back to subscriber")
        return []