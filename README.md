# eventmesh-runtime

The runtime core of an event mesh node. It keeps track of consumer and
producer groups, registers subscribing clients (reached by webhook URL or by
an open stream), validates incoming requests, pushes consumed events to
webhook subscribers, and can run a small HTTP server that exposes profiling
data about the running process.

The package uses only the standard library. Tests need `pytest`
(`pip install .[test]`).

## Modules

| Module | What it holds |
| --- | --- |
| `eventmesh_runtime.models` | Shared data types: the enums `ServiceState`, `GRPCType`, `SubscriptionMode`, `HeartbeatClientType`, `StateAction`; `Settings` (env, IDC, cluster, session expiry, pool sizes); `StatusCode` with `to_json()`; `Event` with `clone()`; the request records `RequestHeader`, `SimpleMessage`, `Subscription`/`SubscriptionItem`, `Heartbeat`/`HeartbeatItem`, `BatchMessage`/`BatchMessageItem`; the group records `ConsumerGroupConfig`, `ConsumerGroupTopicConfig`, `ConsumerGroupMetadata`, `ConsumerGroupTopicMetadata`, `ConsumerGroupStateEvent`, `ConsumerGroupTopicConfChangeEvent`, `ProducerGroupConfig`; and the contexts `SendMessageContext` and `MessageContext`. |
| `eventmesh_runtime.validator` | `validate_header`, `validate_message`, `validate_subscription`, `validate_heartbeat`, `validate_batch_message`. Each returns its argument when valid and otherwise raises a subclass of `ValidationError` (itself a `ValueError`): `HeaderError`, `MessageError`, `SubscriptionError`, `HeartbeatError`, `BatchMessageError`. |
| `eventmesh_runtime.retry` | `Retry`: an attempt counter (`retry_times`) with a due time; `set_delay` takes a `timedelta` or seconds, `get_delay` returns the time left (negative once due). |
| `eventmesh_runtime.emitter` | `EventEmitter` (abstract) and `StreamEmitter`, which sends a `StatusCode` to a client as a `SimpleMessage` over any object with a `send(message)` method. With no stream attached it raises `RuntimeError`. |
| `eventmesh_runtime.consumer_option` | `GroupClient`, the subscriber record, and the per-topic subscriber sets `WebhookGroupTopicOption` and `StreamGroupTopicOption`, created by `new_consumer_group_topic_option`. `default_webhook_group_client(settings)` and `default_stream_group_client(settings)` build clients with default identity. |
| `eventmesh_runtime.message_request` | `Request`, `StreamRequest` and `WebhookRequest`, the delivery of one event; `event_to_simple_message`; `Response`, the parsed reply of a webhook; `NoProtocolError`. |
| `eventmesh_runtime.message_handler` | `MessageHandler`, which runs deliveries on a thread pool and raises `RequestLimitError` past its threshold. |
| `eventmesh_runtime.wrapper` | The connector interfaces `ConnectorConsumer` and `ConnectorProducer`; the wrappers `Consumer` and `Producer` that drive them and track lifecycle flags in a `Base` (`default_base_wrapper()` reads the `EVENT_STORE` environment variable, default `defibus`); `EventListener`, `SendCallback`, `RequestReplyCallback`, `CommitAction`. |
| `eventmesh_runtime.producer` | `EventMeshProducer`, one per producer group, and `ProducerManager`, which creates and caches them. |
| `eventmesh_runtime.consumer` | `EventMeshConsumer`, one per consumer group, and `ConsumerManager`: client registration, heartbeats, session expiry and consumer restarts. `ConsumerConnectorError` is raised when a connector cannot be created. |
| `eventmesh_runtime.server` | `GracefulServer` (abstract), `TCPServer`, `PProfServer`, the supervisor `Server`, the option records `TCPOption` and `PProfOption`, the abstract `Registry`, and `start(tcp_option, pprof_option)`. |

## Validating requests

```python
from eventmesh_runtime.models import GRPCType, Subscription, SubscriptionItem
from eventmesh_runtime.validator import SubscriptionError, validate_subscription

subscription = Subscription(
    consumer_group="orders-group",
    subscription_items=[SubscriptionItem(topic="orders")],
)
try:
    validate_subscription(GRPCType.WEBHOOK, subscription)
except SubscriptionError as exc:
    print(exc)  # no subscription url on webhook type
```

Rules, each checked in the order given and reported by the first that fails:

- Header: IDC, IP, environment, PID, system, username, password, language.
- Message: unique id, producer group, topic, content, TTL.
- Subscription: a webhook subscription needs a URL; every subscription needs
  at least one item.
- Heartbeat: a `SUB` heartbeat needs a consumer group, a `PUB` heartbeat a
  producer group, and every item a topic.
- Batch message: topic, producer group, then for each item content, sequence
  number, TTL and unique id.

## Consumer groups

Connectors are supplied by the caller: subclass `ConnectorConsumer` (or
`ConnectorProducer`) and pass a factory that returns a new instance.

```python
from eventmesh_runtime.consumer import ConsumerManager
from eventmesh_runtime.consumer_option import GroupClient
from eventmesh_runtime.models import GRPCType, ServiceState, Settings
from eventmesh_runtime.wrapper import ConnectorConsumer


class MemoryConsumer(ConnectorConsumer):
    def __init__(self):
        self.topics = set()
        self.listener = None

    def init_consumer(self, props): pass
    def start(self): pass
    def shutdown(self): pass
    def subscribe(self, topic): self.topics.add(topic)
    def unsubscribe(self, topic): self.topics.discard(topic)
    def register_event_listener(self, listener): self.listener = listener
    def update_offset(self, events): pass


settings = Settings(env="dev", idc="idc1", cluster="local")
manager = ConsumerManager(MemoryConsumer, settings)

client = GroupClient(
    consumer_group="orders-group",
    topic="orders",
    grpc_type=GRPCType.WEBHOOK,
    url="http://localhost:8080/hook",
    idc="idc1",
)
manager.register_client(client)
consumer = manager.get_consumer("orders-group")
if consumer.register_client(client):  # True when the topic is new
    manager.restart_consumer("orders-group")
assert consumer.service_state() is ServiceState.RUNNING
```

What the pieces do:

- `EventMeshConsumer` holds two connector consumers, one for clustering and
  one for broadcasting topics. `init()` and `start()` do nothing while the
  group has no topics. `service_state()` is `None` until the first `init()`,
  then `INITED`, `RUNNING` or `STOPED`.
- `register_client` returns `True` when the topic was new;
  `deregister_client` drops the whole topic and returns `True` if it was
  known.
- The listener given to each connector clones the event, stamps it with the
  receive time, and hands it to the group's `MessageHandler`. It commits with
  `CommitAction.COMMIT_MESSAGE` when no subscriber has the topic or when
  handling fails (after waiting `retry_wait` seconds, 5 by default), and with
  `CommitAction.MANUAL_ACK` when the delivery was queued.
- `ConsumerManager.register_client` stores the first client of a group; a
  later registration in the same group updates the URL (webhook) or emitter
  (stream) and the last-seen time of the group's existing client record.
  `deregister_client` removes every client of the group on the same topic;
  `update_client_time` marks every client of the group as seen now.
- `restart_consumer` shuts a running consumer down, re-initialises and starts
  it, and forgets it if it does not end up running.
- `check_clients()` removes clients not seen within
  `Settings.session_expired`, restarts their groups and returns the groups
  restarted. `start()` runs it in a background thread at that interval;
  `stop()` ends the thread.

`manager["orders-group"]` returns the group's clients as a tuple, and
`"orders-group" in manager` tells whether the group has any.

## Topic options

```python
from eventmesh_runtime.consumer_option import new_consumer_group_topic_option
from eventmesh_runtime.models import GRPCType, SubscriptionMode

option = new_consumer_group_topic_option(
    "orders-group", "orders", SubscriptionMode.CLUSTERING, GRPCType.WEBHOOK
)
assert option.size() == 0
```

A webhook option records subscriber URLs per IDC (`idc_urls()`,
`all_urls()`) and ignores clients that are not webhook clients. A stream
option records one emitter per client `ip:pid` per IDC (`idc_emitters()`,
`all_emitters()`). Asking a webhook option for emitters, or a stream option
for URLs, raises `TypeError`. Accessors return copies.

## Push delivery

`MessageHandler(consumer_group, adapters, settings)` turns a `MessageContext`
into a request and runs it on a thread pool; `handle()` returns a
`concurrent.futures.Future` whose result is the list of parsed `Response`
replies. `adapters` maps a protocol type to an object with
`from_cloud_event(event) -> SimpleMessage`; the event names its protocol type
in the `protocoltype` extension, and `NoProtocolError` is raised if it does
not or no adapter matches. Use the handler as a context manager, or call
`close()`, to stop it.

`WebhookRequest.try_send()` posts the message as a form to the chosen URLs,
with the node's cluster, environment, IDC and the message's protocol details
as headers. Only `200` replies are parsed; failures are logged and skipped.
URLs are taken from the local IDC when it has any, otherwise from all IDCs,
in sorted order. In clustering mode one URL is used, picked by
`(retry.retry_times + start_idx) % len(urls)` with `start_idx` chosen at
random; in broadcasting mode every URL is used. The HTTP call can be replaced
with the `post` argument, a callable `(url, form, headers, timeout) ->
(status, body)`. A webhook request for a topic with no subscribers raises
`ValueError`.

`StreamRequest.try_send()` posts nothing.

## Producers

`ProducerManager(connector_factory, settings).get_producer(group)` returns
the group's `EventMeshProducer`, creating and initialising it on first use
(state `INITED`). `send`, `request` and `reply` take a `SendMessageContext`
and a callback and pass the event to the connector. `start()` moves an
`INITED` or `STOPED` producer to `RUNNING`; `shutdown()` stops a running
producer and leaves an `INITED` one alone. `ProducerManager.shutdown()` shuts
every producer down and logs, rather than raises, failures.

## Servers

```python
from eventmesh_runtime.server import PProfOption, TCPOption, start

node = start(TCPOption(port=10000), PProfOption(enable=True, port=0))
# ... later
node.stop()
```

`start` builds a `TCPServer` when a TCP option is given and a `PProfServer`
when the profiling option is enabled, runs each in its own thread, and
returns the `Server` supervisor; if building one fails, those already built
are stopped. `Server` is also a context manager. `Server.stop()` stops the
servers in reverse order and raises the first failure after trying all of
them.

`PProfServer` serves, under `/debug/pprof/`: an index page, `cmdline`,
`profile` (sampled stack frames of other threads; `?seconds=`, default 30),
`trace` (live threads over time; `?seconds=`, default 1), `symbol`, and
stack traces of all threads. Port `0` binds a free port, readable from
`.port`. With `certfile` and `keyfile` set it serves over TLS.

## What this package does not do

- It has no network endpoint for client requests: nothing accepts subscribe,
  unsubscribe, heartbeat or publish calls. The validators, managers and
  emitters are the building blocks such an endpoint would call.
- `TCPServer.serve()` returns at once; it accepts no connections.
- It ships no message-queue connectors and no protocol adapters; both are
  supplied by the caller.
- `Registry` is an interface only; there is no service-registry client.
- There is no command-line program.