import queue
import threading
from dataclasses import dataclass, field

import pytest

from lagwatch.app import ApplicationContext, Config, ConfigurationError, RequestType
from lagwatch.kafka_cluster import OFFSET_NEWEST, KafkaCluster, OffsetRequest

CONFIG = {
    "client-profile.p1.client-id": "testid",
    "cluster.test.class-name": "kafka",
    "cluster.test.servers": ["broker1.example.com:1234"],
    "cluster.test.client-profile": "p1",
}


@dataclass
class FakeBlock:
    offsets: list = field(default_factory=list)
    err: Exception | None = None


@dataclass
class FakeResponse:
    blocks: dict = field(default_factory=dict)


class FakeBroker:
    def __init__(self, broker_id=13, response=None, error=None):
        self.id = broker_id
        self.response = response
        self.error = error
        self.requests = []
        self.closed = False

    def get_available_offsets(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.response

    def close(self):
        self.closed = True


class FakeClient:
    def __init__(self, topics=None, partitions=None, leaders=None, version=(2, 1, 0, 0), groups=None):
        self._topics = topics or []
        self._partitions = partitions or {}
        self._leaders = leaders or {}
        self.version = version
        self._groups = groups or {}
        self.calls = []

    def refresh_metadata(self):
        self.calls.append("refresh_metadata")

    def topics(self):
        self.calls.append("topics")
        return self._topics

    def partitions(self, topic):
        self.calls.append(("partitions", topic))
        return self._partitions[topic]

    def leader(self, topic, partition):
        self.calls.append(("leader", topic, partition))
        leader = self._leaders[(topic, partition)]
        if isinstance(leader, Exception):
            raise leader
        return leader

    def list_consumer_groups(self):
        self.calls.append("list_consumer_groups")
        return self._groups


def no_leader():
    return RuntimeError("no leader error")


def topic_client(leaders, **kwargs):
    """Client knowing one topic, 'testtopic', whose partitions are the keys of leaders."""
    return FakeClient(
        topics=["testtopic"],
        partitions={"testtopic": list(leaders)},
        leaders={("testtopic", partition): leader for partition, leader in leaders.items()},
        **kwargs,
    )


def make_module(client_factory=None):
    config = Config()
    for key, value in CONFIG.items():
        config.set(key, value)
    module = KafkaCluster(app=ApplicationContext(config=config), client_factory=client_factory)
    module.configure("test", "cluster.test")
    return module


def module_with_partitions(*partitions):
    module = make_module()
    module.topic_partitions = {"testtopic": list(partitions)}
    module.fetch_metadata = False
    return module


def drain(channel):
    items = []
    while True:
        try:
            items.append(channel.get_nowait())
        except queue.Empty:
            return items


def assert_request(request, request_type, **fields):
    assert request.request_type is request_type
    assert {name: getattr(request, name) for name in fields} == fields


def test_configure_default_intervals():
    module = make_module()
    assert module.offset_refresh == 10
    assert module.topic_refresh == 60
    assert module.groups_reaper_refresh == 0
    assert module.client_profile == {"client-id": "testid"}


@pytest.mark.parametrize("servers", [[], ["noport.example.com"]])
def test_configure_bad_servers(servers):
    module = make_module()
    module.app.config.set("cluster.test.servers", servers)
    with pytest.raises(ConfigurationError):
        module.configure("test", "cluster.test")


def test_offset_request_add_block():
    request = OffsetRequest(version=1)
    request.add_block("testtopic", 3, OFFSET_NEWEST, 1)
    assert request.blocks == {"testtopic": {3: (OFFSET_NEWEST, 1)}}


def test_update_metadata_no_update():
    module = make_module()
    client = FakeClient()
    module.update_metadata(client)
    assert client.calls == []
    assert module.topic_partitions is None


@pytest.mark.parametrize(
    "previous, leaders, expected, counts, deleted",
    [
        (None, {0: FakeBroker()}, {"testtopic": [0]}, {"testtopic": 1}, []),
        (None, {0: no_leader(), 1: FakeBroker()}, {"testtopic": [1]}, {"testtopic": 2}, []),
        ({"topictodelete": list(range(10))}, {0: FakeBroker()}, {"testtopic": [0]}, {"testtopic": 1}, ["topictodelete"]),
    ],
)
def test_update_metadata(previous, leaders, expected, counts, deleted):
    module = make_module()
    client = topic_client(leaders)
    module.fetch_metadata = True
    module.topic_partitions = previous
    module.update_metadata(client)

    assert "refresh_metadata" in client.calls
    assert module.fetch_metadata is False
    assert module.topic_partitions == expected
    assert module.partition_counts == counts
    requests = drain(module.app.storage_channel)
    assert [r.topic for r in requests] == deleted
    for request in requests:
        assert_request(request, RequestType.SET_DELETE_TOPIC, cluster="test")


def test_generate_offset_requests():
    module = module_with_partitions(0)
    broker = FakeBroker(13)

    requests, brokers = module.generate_offset_requests(topic_client({0: broker}))

    assert brokers == {13: broker}
    assert list(requests) == [13]
    assert requests[13].version == 4
    assert requests[13].blocks == {"testtopic": {0: (OFFSET_NEWEST, 1)}}


@pytest.mark.parametrize(
    "version, expected",
    [((2, 0, 0, 0), 3), ((0, 11, 0, 0), 2), ((0, 10, 1, 0), 1), ((0, 10, 0, 0), 0)],
)
def test_generate_offset_requests_version(version, expected):
    module = module_with_partitions(0)
    requests, _ = module.generate_offset_requests(topic_client({0: FakeBroker(13)}, version=version))
    assert requests[13].version == expected


def test_generate_offset_requests_no_leader():
    module = module_with_partitions(0, 1)
    broker = FakeBroker(13)

    requests, brokers = module.generate_offset_requests(topic_client({0: no_leader(), 1: broker}))

    assert brokers == {13: broker}
    assert len(requests) == 1
    assert requests[13].blocks == {"testtopic": {1: (OFFSET_NEWEST, 1)}}
    assert module.fetch_metadata is True


def test_get_offsets():
    module = module_with_partitions(0, 1)
    broker = FakeBroker(13, response=FakeResponse(blocks={"testtopic": {0: FakeBlock(offsets=[8374])}}))

    module.get_offsets(topic_client({0: broker, 1: no_leader()}))

    requests = drain(module.app.storage_channel)
    assert len(requests) == 1
    assert_request(
        requests[0],
        RequestType.SET_BROKER_OFFSET,
        cluster="test",
        topic="testtopic",
        partition=0,
        topic_partition_count=2,
        offset=8374,
    )
    assert requests[0].timestamp % 1000 == 0
    assert module.fetch_metadata is True
    assert len(broker.requests) == 1


@pytest.mark.parametrize(
    "broker, closed, refresh",
    [
        (FakeBroker(13, error=RuntimeError("broker failed")), True, False),
        (
            FakeBroker(13, response=FakeResponse(blocks={"testtopic": {0: FakeBlock(err=RuntimeError("not leader"))}})),
            False,
            True,
        ),
    ],
)
def test_get_offsets_failures(broker, closed, refresh):
    module = module_with_partitions(0)

    module.get_offsets(topic_client({0: broker}))

    assert broker.closed is closed
    assert drain(module.app.storage_channel) == []
    assert module.fetch_metadata is refresh


def start_reaper(module, groups):
    client = FakeClient(groups=groups)
    worker = threading.Thread(target=module.reap_non_existing_groups, args=(client,))
    worker.start()
    return client, worker, module.app.storage_channel.get(timeout=5)


def test_reap_non_existing_groups():
    module = make_module()
    client, worker, request = start_reaper(module, {"group1": ""})
    assert_request(request, RequestType.FETCH_CONSUMERS, cluster="test")

    request.reply.put(["group1", "group2", "burrow-test"])
    request = module.app.storage_channel.get(timeout=5)
    worker.join(timeout=5)

    assert_request(request, RequestType.SET_DELETE_GROUP, cluster="test", group="group2")
    assert drain(module.app.storage_channel) == []
    assert client.calls == ["list_consumer_groups"]


def test_reap_with_no_storage_reply():
    module = make_module()
    _, worker, request = start_reaper(module, {})
    request.reply.put(None)
    worker.join(timeout=5)
    assert not worker.is_alive()
    assert drain(module.app.storage_channel) == []


def test_start_and_stop():
    response = FakeResponse(blocks={"testtopic": {0: FakeBlock(offsets=[42])}})
    client = topic_client({0: FakeBroker(7, response=response)})
    seen = []

    def factory(servers, profile):
        seen.append((servers, profile))
        return client

    module = make_module(client_factory=factory)
    module.start()
    module.stop()

    assert seen == [(["broker1.example.com:1234"], {"client-id": "testid"})]
    requests = drain(module.app.storage_channel)
    assert [(r.request_type, r.topic, r.offset, r.topic_partition_count) for r in requests] == [
        (RequestType.SET_BROKER_OFFSET, "testtopic", 42, 1)
    ]


def test_start_without_factory():
    module = make_module()
    with pytest.raises(RuntimeError):
        module.start()