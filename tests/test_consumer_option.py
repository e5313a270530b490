import os

import pytest

from eventmesh_runtime.consumer_option import (
    GroupClient,
    StreamGroupTopicOption,
    WebhookGroupTopicOption,
    default_stream_group_client,
    default_webhook_group_client,
    new_consumer_group_topic_option,
)
from eventmesh_runtime.emitter import StreamEmitter
from eventmesh_runtime.models import GRPCType, Settings, SubscriptionMode


@pytest.mark.parametrize(
    "mode,grpc_type,expected_cls",
    [
        (SubscriptionMode.BROADCASTING, GRPCType.STREAM, StreamGroupTopicOption),
        (SubscriptionMode.CLUSTERING, GRPCType.STREAM, StreamGroupTopicOption),
        (SubscriptionMode.CLUSTERING, GRPCType.WEBHOOK, WebhookGroupTopicOption),
        (SubscriptionMode.BROADCASTING, GRPCType.WEBHOOK, WebhookGroupTopicOption),
    ],
)
def test_new_option_fields(mode, grpc_type, expected_cls):
    option = new_consumer_group_topic_option("consumergroup", "topic", mode, grpc_type)
    assert isinstance(option, expected_cls)
    assert option.topic == "topic"
    assert option.grpc_type is grpc_type
    assert option.consumer_group == "consumergroup"
    assert option.subscription_mode is mode
    assert option.size() == 0


@pytest.mark.parametrize("mode", list(SubscriptionMode))
def test_stream_option_empty_collections(mode):
    option = new_consumer_group_topic_option("consumergroup", "topic", mode, GRPCType.STREAM)
    assert option.idc_emitters() == {}
    assert option.all_emitters() == set()


@pytest.mark.parametrize("mode", list(SubscriptionMode))
def test_webhook_option_empty_collections(mode):
    option = new_consumer_group_topic_option("consumergroup", "topic", mode, GRPCType.WEBHOOK)
    assert option.idc_urls() == {}
    assert option.all_urls() == set()
    assert option.size() == 0


def test_webhook_register_and_deregister():
    option = new_consumer_group_topic_option(
        "cg", "topic", SubscriptionMode.CLUSTERING, GRPCType.WEBHOOK)
    a = GroupClient(idc="idc1", url="http://a.example.com", grpc_type=GRPCType.WEBHOOK)
    b = GroupClient(idc="idc2", url="http://b.example.com", grpc_type=GRPCType.WEBHOOK)
    option.register_client(a)
    option.register_client(b)
    option.register_client(a)
    assert option.size() == 2
    assert option.idc_urls() == {
        "idc1": {"http://a.example.com"},
        "idc2": {"http://b.example.com"},
    }
    option.deregister_client(a)
    assert option.all_urls() == {"http://b.example.com"}
    assert option.idc_urls()["idc1"] == set()


def test_webhook_ignores_stream_client():
    option = new_consumer_group_topic_option(
        "cg", "topic", SubscriptionMode.CLUSTERING, GRPCType.WEBHOOK)
    option.register_client(GroupClient(idc="idc", url="http://x.example.com",
                                       grpc_type=GRPCType.STREAM))
    assert option.size() == 0


def test_webhook_deregister_unknown_idc_is_noop():
    option = new_consumer_group_topic_option(
        "cg", "topic", SubscriptionMode.CLUSTERING, GRPCType.WEBHOOK)
    option.register_client(GroupClient(idc="idc", url="http://x.example.com"))
    option.deregister_client(GroupClient(idc="other", url="http://x.example.com"))
    assert option.all_urls() == {"http://x.example.com"}


def test_webhook_has_no_emitters():
    option = new_consumer_group_topic_option(
        "cg", "topic", SubscriptionMode.CLUSTERING, GRPCType.WEBHOOK)
    with pytest.raises(TypeError):
        option.all_emitters()
    with pytest.raises(TypeError):
        option.idc_emitters()


def test_stream_has_no_urls():
    option = new_consumer_group_topic_option(
        "cg", "topic", SubscriptionMode.CLUSTERING, GRPCType.STREAM)
    with pytest.raises(TypeError):
        option.all_urls()
    with pytest.raises(TypeError):
        option.idc_urls()


def test_stream_register_and_deregister():
    option = new_consumer_group_topic_option(
        "cg", "topic", SubscriptionMode.BROADCASTING, GRPCType.STREAM)
    e1, e2, e3 = StreamEmitter(), StreamEmitter(), StreamEmitter()
    c1 = GroupClient(idc="idc1", ip="10.0.0.1", pid="1", emitter=e1, grpc_type=GRPCType.STREAM)
    c2 = GroupClient(idc="idc1", ip="10.0.0.2", pid="2", emitter=e2, grpc_type=GRPCType.STREAM)
    c3 = GroupClient(idc="idc2", ip="10.0.0.3", pid="3", emitter=e3, grpc_type=GRPCType.STREAM)
    for client in (c1, c2, c3):
        option.register_client(client)
    assert option.size() == 3
    assert option.idc_emitters() == {"idc1": {e1, e2}, "idc2": {e3}}
    assert option.all_emitters() == {e1, e2, e3}

    option.deregister_client(c3)
    assert option.all_emitters() == {e1, e2}
    assert "idc2" not in option.idc_emitters()


def test_stream_reregister_replaces_emitter():
    option = new_consumer_group_topic_option(
        "cg", "topic", SubscriptionMode.CLUSTERING, GRPCType.STREAM)
    old, new = StreamEmitter(), StreamEmitter()
    client = GroupClient(idc="idc", ip="10.0.0.1", pid="7", emitter=old)
    option.register_client(client)
    client.emitter = new
    option.register_client(client)
    assert option.all_emitters() == {new}


def test_default_clients():
    settings = Settings(env="env", idc="idc")
    stream = default_stream_group_client(settings)
    webhook = default_webhook_group_client(settings)
    assert stream.grpc_type is GRPCType.STREAM
    assert stream.url == ""
    assert isinstance(stream.emitter, StreamEmitter)
    assert webhook.grpc_type is GRPCType.WEBHOOK
    assert webhook.url == "http://test.com"
    assert webhook.emitter is None
    for client in (stream, webhook):
        assert client.env == "env"
        assert client.idc == "idc"
        assert client.consumer_group == "ConsumerGroup"
        assert client.topic == "Topic"
        assert client.sys == "test-SYS"
        assert client.api_version == "v1"
        assert client.pid == str(os.getpid())
        assert client.subscription_mode is SubscriptionMode.CLUSTERING