import time
from datetime import datetime, timedelta

import pytest

from eventmesh_runtime.consumer import (
    REQ_MQ2EVENTMESH_TIMESTAMP,
    ConsumerConnectorError,
    ConsumerManager,
    EventMeshConsumer,
)
from eventmesh_runtime.consumer_option import GroupClient, default_webhook_group_client
from eventmesh_runtime.emitter import EventEmitter
from eventmesh_runtime.message_handler import MessageHandler
from eventmesh_runtime.models import (
    Event,
    GRPCType,
    RequestHeader,
    ServiceState,
    Settings,
    SimpleMessage,
    SubscriptionMode,
)
from eventmesh_runtime.wrapper import CommitAction, Consumer, ConnectorConsumer

SETTINGS = Settings(env="env", idc="IDC", cluster="cluster")


class FakeConnector(ConnectorConsumer):
    def __init__(self, start_error=None):
        self.start_error = start_error
        self.props = None
        self.listener = None
        self.subscribed = []
        self.started = False
        self.shutdowns = 0

    def init_consumer(self, props):
        self.props = dict(props)

    def start(self):
        if self.start_error is not None:
            raise self.start_error
        self.started = True

    def shutdown(self):
        self.started = False
        self.shutdowns += 1

    def subscribe(self, topic):
        self.subscribed.append(topic)

    def unsubscribe(self, topic):
        self.subscribed.remove(topic)

    def register_event_listener(self, listener):
        self.listener = listener

    def update_offset(self, events):
        pass


class Factory:
    def __init__(self):
        self.created = []

    def __call__(self):
        connector = FakeConnector()
        self.created.append(connector)
        return connector


class RecordingEmitter(EventEmitter):
    def __init__(self):
        self.sent = []

    def send_stream_resp(self, header, code):
        self.sent.append((header, code))


def make_client(**overrides):
    values = dict(
        env="env", idc="IDC", consumer_group="ConsumerGroup", topic="Topic",
        grpc_type=GRPCType.WEBHOOK, subscription_mode=SubscriptionMode.CLUSTERING,
        sys="SYS", ip="IP", pid="1", hostname="test", api_version="v1",
        last_up_time=datetime.now(),
    )
    values.update(overrides)
    return GroupClient(**values)


def make_mesh(factory=None, **kwargs):
    return EventMeshConsumer("test-consumergroup", factory or Factory(), SETTINGS, **kwargs)


# --- EventMeshConsumer ---

def test_init_with_no_topics_leaves_state_unset():
    factory = Factory()
    mesh = make_mesh(factory)
    mesh.init()
    assert mesh.service_state() is None
    assert factory.created[0].props is None


def test_init_success_sets_inited_and_props():
    factory = Factory()
    mesh = make_mesh(factory)
    assert mesh.register_client(make_client()) is True
    mesh.init()
    assert mesh.service_state() is ServiceState.INITED
    persistent, broadcast = factory.created
    assert persistent.props["consumerGroup"] == "test-consumergroup"
    assert persistent.props["eventMeshIDC"] == "IDC"
    assert persistent.props["isBroadcast"] == "false"
    assert persistent.props["instanceName"].startswith("test-consumergroup(cluster)-")
    assert persistent.listener is not None
    assert broadcast.listener is not None


def test_start_with_no_topics_does_nothing():
    factory = Factory()
    mesh = make_mesh(factory)
    mesh.start()
    assert mesh.service_state() is None
    assert not any(c.started for c in factory.created)


def test_broadcast_start_failure_is_raised():
    mesh = make_mesh()
    mesh.init()
    error = RuntimeError("mock broadcast err")
    mesh.broadcast_consumer = Consumer(FakeConnector(start_error=error))
    mesh.register_client(default_webhook_group_client(SETTINGS))
    with pytest.raises(RuntimeError) as info:
        mesh.start()
    assert info.value is error
    assert mesh.service_state() is None


def test_persistent_start_failure_is_raised():
    mesh = make_mesh()
    mesh.init()
    error = RuntimeError("mock persistent err")
    failing = FakeConnector(start_error=error)
    mesh.persistent_consumer = Consumer(failing)
    mesh.register_client(default_webhook_group_client(SETTINGS))
    with pytest.raises(RuntimeError) as info:
        mesh.start()
    assert info.value is error
    assert failing.subscribed == ["Topic"]


def test_start_success_subscribes_by_mode():
    factory = Factory()
    mesh = make_mesh(factory)
    mesh.register_client(default_webhook_group_client(SETTINGS))
    mesh.register_client(make_client(topic="Broadcast",
                                     subscription_mode=SubscriptionMode.BROADCASTING))
    mesh.start()
    persistent, broadcast = factory.created
    assert persistent.subscribed == ["Topic"]
    assert broadcast.subscribed == ["Broadcast"]
    assert persistent.started and broadcast.started
    assert mesh.service_state() is ServiceState.RUNNING


def test_service_state_lifecycle():
    mesh = make_mesh()
    assert mesh.register_client(default_webhook_group_client(SETTINGS)) is True
    mesh.init()
    assert mesh.service_state() is ServiceState.INITED
    mesh.start()
    assert mesh.service_state() is ServiceState.RUNNING
    mesh.shutdown()
    assert mesh.service_state() is ServiceState.STOPED


def test_register_existing_topic_does_not_require_restart():
    mesh = make_mesh()
    assert mesh.register_client(make_client(url="http://a.example.com")) is True
    assert mesh.register_client(make_client(url="http://b.example.com")) is False
    assert mesh.consumer_group_size() == 1


def test_deregister_client():
    mesh = make_mesh()
    client = make_client(url="http://a.example.com")
    assert mesh.deregister_client(client) is False
    mesh.register_client(client)
    assert mesh.deregister_client(client) is True
    assert mesh.consumer_group_size() == 0


def test_connector_factory_failure():
    def broken():
        raise OSError("down")

    with pytest.raises(ConsumerConnectorError):
        EventMeshConsumer("g", broken, SETTINGS)


class FakeAdapter:
    def from_cloud_event(self, event):
        return SimpleMessage(
            header=RequestHeader(protocol_type="cloudevents"),
            topic=event.subject, content="hello", seq_num="1", unique_id="u1",
        )


def test_listener_pushes_to_webhook_and_acks():
    posted = []

    def post(url, form, headers, timeout):
        posted.append((url, dict(form)))
        return 200, b'{"retCode":"0","errMsg":"ok"}'

    handler = MessageHandler("test-consumergroup", {"cloudevents": FakeAdapter()},
                             SETTINGS, post=post)
    factory = Factory()
    mesh = make_mesh(factory, message_handler=handler, retry_wait=0)
    mesh.register_client(default_webhook_group_client(SETTINGS))
    mesh.init()
    listener = factory.created[0].listener
    event = Event(id="1", subject="Topic", extensions={"protocoltype": "cloudevents"})
    commits = []
    listener.consume(event, commits.append)
    handler.close()
    assert commits == [CommitAction.MANUAL_ACK]
    assert [url for url, _ in posted] == ["http://test.com"]
    assert posted[0][1]["content"] == "hello"
    assert REQ_MQ2EVENTMESH_TIMESTAMP not in event.extensions


def test_listener_commits_when_topic_unknown():
    handler = MessageHandler("test-consumergroup", {}, SETTINGS)
    factory = Factory()
    mesh = make_mesh(factory, message_handler=handler, retry_wait=0)
    mesh.register_client(default_webhook_group_client(SETTINGS))
    mesh.init()
    commits = []
    factory.created[0].listener.consume(Event(subject="Other"), commits.append)
    handler.close()
    assert commits == [CommitAction.COMMIT_MESSAGE]


def test_listener_commits_when_handler_rejects():
    handler = MessageHandler("test-consumergroup", {"cloudevents": FakeAdapter()},
                             SETTINGS, threshold=0)
    factory = Factory()
    mesh = make_mesh(factory, message_handler=handler, retry_wait=0)
    mesh.register_client(default_webhook_group_client(SETTINGS))
    mesh.init()
    commits = []
    event = Event(subject="Topic", extensions={"protocoltype": "cloudevents"})
    factory.created[1].listener.consume(event, commits.append)
    handler.close()
    assert commits == [CommitAction.COMMIT_MESSAGE]


# --- ConsumerManager ---

def test_get_consumer_returns_same_instance():
    mgr = ConsumerManager(Factory(), SETTINGS)
    first = mgr.get_consumer("consumergroup")
    second = mgr.get_consumer("consumergroup")
    assert first is second
    assert first.consumer_group == "consumergroup"


def test_register_new_client():
    mgr = ConsumerManager(Factory(), SETTINGS)
    client = make_client(url="http://test.com")
    mgr.register_client(client)
    assert "ConsumerGroup" in mgr
    assert mgr["ConsumerGroup"] == (client,)


def test_webhook_register_existing_updates_url_and_time():
    mgr = ConsumerManager(Factory(), SETTINGS)
    first_time = datetime.now() - timedelta(seconds=10)
    mgr.register_client(make_client(url="http://old.test.com", last_up_time=first_time))
    later = datetime.now()
    mgr.register_client(make_client(url="http://new.test.com", last_up_time=later))
    (stored,) = mgr["ConsumerGroup"]
    assert stored.url == "http://new.test.com"
    assert stored.last_up_time == later


def test_stream_register_existing_updates_emitter():
    mgr = ConsumerManager(Factory(), SETTINGS)
    old, new = RecordingEmitter(), RecordingEmitter()
    mgr.register_client(make_client(grpc_type=GRPCType.STREAM, emitter=old,
                                    last_up_time=datetime.now() - timedelta(seconds=5)))
    mgr.register_client(make_client(grpc_type=GRPCType.STREAM, emitter=new))
    (stored,) = mgr["ConsumerGroup"]
    assert stored.emitter is new


def test_deregister_unknown_group_is_ignored():
    mgr = ConsumerManager(Factory(), SETTINGS)
    mgr.deregister_client(GroupClient(consumer_group="not exist"))
    assert "not exist" not in mgr


def test_deregister_existing_removes_group():
    mgr = ConsumerManager(Factory(), SETTINGS)
    client = make_client()
    mgr.register_client(client)
    mgr.deregister_client(client)
    assert "ConsumerGroup" not in mgr


def test_update_client_time():
    mgr = ConsumerManager(Factory(), SETTINGS)
    first_time = datetime.now() - timedelta(seconds=3)
    mgr.register_client(make_client(last_up_time=first_time))
    mgr.update_client_time(make_client())
    (stored,) = mgr["ConsumerGroup"]
    assert stored.last_up_time > first_time


def test_update_client_time_unknown_group():
    mgr = ConsumerManager(Factory(), SETTINGS)
    mgr.update_client_time(GroupClient(consumer_group="not exist"))
    assert "not exist" not in mgr


def test_restart_unknown_consumer_is_noop():
    mgr = ConsumerManager(Factory(), SETTINGS)
    mgr.restart_consumer("not exist consumer group")
    assert "not exist consumer group" not in mgr


def test_restart_consumer_runs_and_restarts():
    factory = Factory()
    mgr = ConsumerManager(factory, SETTINGS)
    client = make_client()
    mgr.register_client(client)
    mesh = mgr.get_consumer(client.consumer_group)
    assert mesh.register_client(client) is True
    mgr.restart_consumer(client.consumer_group)
    assert mesh.service_state() is ServiceState.RUNNING
    mgr.restart_consumer(client.consumer_group)
    assert factory.created[0].shutdowns == 1
    assert mgr.get_consumer(client.consumer_group) is mesh


def test_restart_consumer_without_topics_forgets_it():
    mgr = ConsumerManager(Factory(), SETTINGS)
    mesh = mgr.get_consumer("empty")
    mgr.restart_consumer("empty")
    assert mgr.get_consumer("empty") is not mesh


def test_check_clients_removes_expired():
    settings = Settings(env="env", idc="IDC", cluster="cluster",
                        session_expired=timedelta(seconds=1))
    mgr = ConsumerManager(Factory(), settings)
    stale = make_client(last_up_time=datetime.now() - timedelta(seconds=10))
    mgr.register_client(stale)
    mgr.get_consumer(stale.consumer_group).register_client(stale)
    assert mgr.check_clients() == ["ConsumerGroup"]
    assert "ConsumerGroup" not in mgr


def test_check_clients_keeps_fresh():
    mgr = ConsumerManager(Factory(), SETTINGS)
    mgr.register_client(make_client())
    assert mgr.check_clients() == []
    assert "ConsumerGroup" in mgr


def test_background_check_removes_expired_clients():
    settings = Settings(session_expired=timedelta(milliseconds=20))
    mgr = ConsumerManager(Factory(), settings)
    stale = make_client(last_up_time=datetime.now() - timedelta(seconds=10))
    mgr.register_client(stale)
    mgr.get_consumer(stale.consumer_group).register_client(stale)
    mgr.start()
    deadline = time.monotonic() + 2
    while "ConsumerGroup" in mgr and time.monotonic() < deadline:
        time.sleep(0.01)
    mgr.stop()
    assert "ConsumerGroup" not in mgr