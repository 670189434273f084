import pytest

from lagwatch.app import ApplicationContext, ConfigurationError, Config, Module
from lagwatch.coordinators import ClusterCoordinator, ConsumerCoordinator
from lagwatch.kafka_client import KafkaClient
from lagwatch.kafka_cluster import KafkaCluster


class RecordingModule(Module):
    def __init__(self, fail_start=False):
        super().__init__()
        self.calls = []
        self.fail_start = fail_start

    def configure(self, name, config_root):
        self.calls.append("configure")

    def start(self):
        self.calls.append("start")
        if self.fail_start:
            raise ValueError("boom")

    def stop(self):
        self.calls.append("stop")


def _cluster_config():
    config = Config()
    config.set("client-profile..client-id", "testid")
    config.set("cluster.test.class-name", "kafka")
    config.set("cluster.test.servers", ["broker1.example.com:1234"])
    return config


def _consumer_config():
    config = _cluster_config()
    config.set("consumer.test.class-name", "kafka")
    config.set("consumer.test.servers", ["broker1.example.com:1234"])
    config.set("consumer.test.cluster", "test")
    return config


def test_cluster_configure():
    coordinator = ClusterCoordinator(ApplicationContext(config=_cluster_config()))
    coordinator.configure()
    assert list(coordinator.modules) == ["test"]
    assert isinstance(coordinator.modules["test"], KafkaCluster)


def test_cluster_configure_two_modules():
    config = _cluster_config()
    config.set("cluster.anothertest.class-name", "kafka")
    config.set("cluster.anothertest.servers", ["broker1.example.com:1234"])
    coordinator = ClusterCoordinator(ApplicationContext(config=config))
    coordinator.configure()
    assert sorted(coordinator.modules) == ["anothertest", "test"]


def test_cluster_configure_unknown_class():
    config = _cluster_config()
    config.set("cluster.test.class-name", "nosuchclass")
    coordinator = ClusterCoordinator(ApplicationContext(config=config))
    with pytest.raises(ConfigurationError):
        coordinator.configure()


def test_cluster_start_stop():
    coordinator = ClusterCoordinator(ApplicationContext(config=_cluster_config()))
    coordinator.configure()
    mock_module = RecordingModule()
    coordinator.modules["test"] = mock_module
    coordinator.start()
    assert mock_module.calls == ["start"]
    coordinator.stop()
    assert mock_module.calls == ["start", "stop"]


def test_cluster_start_failure_is_wrapped():
    coordinator = ClusterCoordinator(ApplicationContext(config=_cluster_config()))
    coordinator.configure()
    coordinator.modules["test"] = RecordingModule(fail_start=True)
    with pytest.raises(RuntimeError, match="Error starting cluster module: boom"):
        coordinator.start()


def test_consumer_configure():
    coordinator = ConsumerCoordinator(ApplicationContext(config=_consumer_config()))
    coordinator.configure()
    assert list(coordinator.modules) == ["test"]
    assert isinstance(coordinator.modules["test"], KafkaClient)


def test_consumer_configure_bad_cluster():
    config = _consumer_config()
    config.set("consumer.test.cluster", "nocluster")
    coordinator = ConsumerCoordinator(ApplicationContext(config=config))
    with pytest.raises(ConfigurationError, match="nocluster"):
        coordinator.configure()


def test_consumer_configure_two_modules():
    config = _consumer_config()
    config.set("consumer.anothertest.class-name", "kafka")
    config.set("consumer.anothertest.servers", ["broker1.example.com:1234"])
    config.set("consumer.anothertest.cluster", "test")
    coordinator = ConsumerCoordinator(ApplicationContext(config=config))
    coordinator.configure()
    assert sorted(coordinator.modules) == ["anothertest", "test"]


def test_consumer_configure_unknown_class():
    config = _consumer_config()
    config.set("consumer.test.class-name", "nosuchclass")
    coordinator = ConsumerCoordinator(ApplicationContext(config=config))
    with pytest.raises(ConfigurationError):
        coordinator.configure()


def test_consumer_start_stop_sets_ready():
    app = ApplicationContext(config=_consumer_config())
    coordinator = ConsumerCoordinator(app)
    coordinator.configure()
    mock_module = RecordingModule()
    coordinator.modules["test"] = mock_module
    assert app.app_ready is False
    coordinator.start()
    assert mock_module.calls == ["start"]
    assert app.app_ready is True
    coordinator.stop()
    assert mock_module.calls == ["start", "stop"]


def test_consumer_start_failure_not_ready():
    app = ApplicationContext(config=_consumer_config())
    coordinator = ConsumerCoordinator(app)
    coordinator.configure()
    coordinator.modules["test"] = RecordingModule(fail_start=True)
    with pytest.raises(RuntimeError, match="Error starting consumer module"):
        coordinator.start()
    assert app.app_ready is False