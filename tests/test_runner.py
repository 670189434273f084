import threading

from lagwatch.app import ApplicationContext, Config
from lagwatch.coordinators import ClusterCoordinator, ConsumerCoordinator
from lagwatch.runner import configure_coordinators, new_coordinators, start


class FakeCoordinator:
    def __init__(self, name, record, fail_configure=False, fail_start=False):
        self.name = name
        self.record = record
        self.fail_configure = fail_configure
        self.fail_start = fail_start

    def configure(self):
        self.record.append(("configure", self.name))
        if self.fail_configure:
            raise ValueError("bad config")

    def start(self):
        self.record.append(("start", self.name))
        if self.fail_start:
            raise ValueError("cannot start")

    def stop(self):
        self.record.append(("stop", self.name))


def _set_event():
    event = threading.Event()
    event.set()
    return event


def test_new_coordinators_order():
    coordinators = new_coordinators(ApplicationContext())
    assert [type(c) for c in coordinators] == [ClusterCoordinator, ConsumerCoordinator]


def test_configure_coordinators_valid():
    app = ApplicationContext()
    record = []
    result = configure_coordinators(app, [FakeCoordinator("a", record), FakeCoordinator("b", record)])
    assert result is True
    assert app.configuration_valid is True
    assert record == [("configure", "a"), ("configure", "b")]


def test_configure_coordinators_invalid_stops_early():
    app = ApplicationContext()
    record = []
    coordinators = [
        FakeCoordinator("a", record, fail_configure=True),
        FakeCoordinator("b", record),
    ]
    assert configure_coordinators(app, coordinators) is False
    assert app.configuration_valid is False
    assert record == [("configure", "a")]


def test_start_clean_run_stops_in_reverse():
    record = []
    coordinators = [FakeCoordinator("a", record), FakeCoordinator("b", record)]
    assert start(ApplicationContext(), _set_event(), coordinators) == 0
    assert record == [
        ("configure", "a"),
        ("configure", "b"),
        ("start", "a"),
        ("start", "b"),
        ("stop", "b"),
        ("stop", "a"),
    ]


def test_start_configuration_failure_returns_one():
    record = []
    coordinators = [FakeCoordinator("a", record, fail_configure=True)]
    assert start(ApplicationContext(), _set_event(), coordinators) == 1
    assert ("start", "a") not in record


def test_start_failure_unwinds_started():
    record = []
    coordinators = [
        FakeCoordinator("a", record),
        FakeCoordinator("b", record),
        FakeCoordinator("c", record, fail_start=True),
    ]
    assert start(ApplicationContext(), _set_event(), coordinators) == 1
    assert record[-2:] == [("stop", "b"), ("stop", "a")]
    assert ("stop", "c") not in record


def test_start_waits_for_exit_event():
    record = []
    event = threading.Event()
    result = []
    thread = threading.Thread(
        target=lambda: result.append(start(ApplicationContext(), event, [FakeCoordinator("a", record)]))
    )
    thread.start()
    thread.join(0.2)
    assert ("stop", "a") not in record
    event.set()
    thread.join(5)
    assert result == [0]
    assert record[-1] == ("stop", "a")


def test_start_with_no_app_and_default_coordinators():
    assert start(None, _set_event()) == 0


def test_start_default_coordinators_bad_config():
    config = Config()
    config.set("cluster.test.class-name", "nosuchclass")
    app = ApplicationContext(config=config)
    assert start(app, _set_event()) == 1
    assert app.configuration_valid is False