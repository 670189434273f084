"""Application context, configuration store and shared helpers for modules."""

from __future__ import annotations

import enum
import ipaddress
import logging
import queue
import re
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

_log = logging.getLogger(__name__)

_HOSTNAME_LABEL = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")


class ConfigurationError(Exception):
    """Raised when the configuration cannot be used."""


class Config:
    """Hierarchical, dot-separated, case-insensitive configuration store."""

    def __init__(self, values: Mapping[str, Any] | None = None) -> None:
        self._values: dict[str, Any] = {}
        self._defaults: dict[str, Any] = {}
        for key, value in (values or {}).items():
            self.set(key, value)

    @staticmethod
    def _store(target: dict[str, Any], key: str, value: Any) -> None:
        key = key.lower()
        if isinstance(value, Mapping):
            for sub, sub_value in value.items():
                Config._store(target, f"{key}.{sub}", sub_value)
            return
        prefix = key + "."
        for existing in [k for k in target if k.startswith(prefix)]:
            del target[existing]
        target[key] = value

    def set(self, key: str, value: Any) -> None:
        """Set an explicit value; mappings are stored as nested keys."""
        self._store(self._values, key, value)

    def set_default(self, key: str, value: Any) -> None:
        """Set a value used only when no explicit value is present."""
        self._store(self._defaults, key, value)

    def _keys(self) -> Iterable[str]:
        return dict.fromkeys([*self._values, *self._defaults])

    def _subtree(self, key: str) -> dict[str, Any]:
        prefix = key + "."
        tree: dict[str, Any] = {}
        for full in self._keys():
            if not full.startswith(prefix):
                continue
            node = tree
            *parents, leaf = full[len(prefix):].split(".")
            for part in parents:
                node = node.setdefault(part, {})
            node[leaf] = self.get(full)
        return tree

    def get(self, key: str, default: Any = None) -> Any:
        """Return the value for a key, a dict for a subtree, or the default."""
        key = key.lower()
        if key in self._values:
            return self._values[key]
        if key in self._defaults:
            return self._defaults[key]
        subtree = self._subtree(key)
        return subtree if subtree else default

    def is_set(self, key: str) -> bool:
        """Whether the key, or anything beneath it, has a value."""
        key = key.lower()
        prefix = key + "."
        return any(k == key or k.startswith(prefix) for k in self._keys())

    def sub_keys(self, key: str) -> list[str]:
        """Names of the immediate children of a key, in insertion order."""
        prefix = key.lower() + "."
        children = (
            k[len(prefix):].split(".", 1)[0] for k in self._keys() if k.startswith(prefix)
        )
        return list(dict.fromkeys(children))


class RequestType(enum.Enum):
    """Kinds of request sent to the storage subsystem."""

    SET_BROKER_OFFSET = "set_broker_offset"
    SET_CONSUMER_OFFSET = "set_consumer_offset"
    SET_CONSUMER_OWNER = "set_consumer_owner"
    SET_DELETE_TOPIC = "set_delete_topic"
    SET_DELETE_GROUP = "set_delete_group"
    CLEAR_CONSUMER_OWNERS = "clear_consumer_owners"
    FETCH_CONSUMERS = "fetch_consumers"


@dataclass
class StorageRequest:
    """A message to the storage subsystem."""

    request_type: RequestType
    cluster: str = ""
    topic: str = ""
    partition: int = 0
    group: str = ""
    offset: int = 0
    timestamp: int = 0
    order: int = 0
    owner: str = ""
    client_id: str = ""
    topic_partition_count: int = 0
    reply: queue.Queue | None = None


@dataclass
class ApplicationContext:
    """State shared by every coordinator and module."""

    config: Config = field(default_factory=Config)
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("lagwatch"))
    storage_channel: queue.Queue = field(default_factory=queue.Queue)
    evaluator_channel: queue.Queue = field(default_factory=queue.Queue)
    configuration_valid: bool = False
    app_ready: bool = False


class Module(ABC):
    """A unit of work owned by a coordinator."""

    def __init__(self, app: ApplicationContext | None = None, log: logging.Logger | None = None):
        self.app = app if app is not None else ApplicationContext()
        self.log = log if log is not None else self.app.logger

    @abstractmethod
    def configure(self, name: str, config_root: str) -> None:
        """Validate and load configuration; raise ConfigurationError on problems."""

    @abstractmethod
    def start(self) -> None:
        """Begin work; raise on failure."""

    @abstractmethod
    def stop(self) -> None:
        """Stop work and wait until it has finished."""


def send_storage_request(channel: queue.Queue, request: StorageRequest, timeout: float) -> bool:
    """Put a request on the storage channel, giving up after timeout seconds."""
    try:
        channel.put(request, timeout=timeout)
    except queue.Full:
        _log.warning("storage request timed out: %s", request.request_type)
        return False
    return True


def _valid_host(host: str) -> bool:
    if host.startswith("[") and host.endswith("]"):
        try:
            ipaddress.IPv6Address(host[1:-1])
        except ValueError:
            return False
        return True
    try:
        ipaddress.IPv4Address(host)
        return True
    except ValueError:
        pass
    labels = host.rstrip(".").split(".")
    return bool(host) and all(_HOSTNAME_LABEL.match(label) for label in labels)


def _valid_host_port(entry: str) -> bool:
    host, sep, port = entry.rpartition(":")
    if not sep or not port.isdigit():
        return False
    return 0 < int(port) < 65536 and _valid_host(host)


def validate_host_list(hosts: Iterable[str]) -> bool:
    """Whether every entry has the form host:port."""
    return all(_valid_host_port(entry) for entry in hosts)


def start_modules(modules: Mapping[str, Module]) -> None:
    """Start every module in order; the first failure propagates."""
    for module in modules.values():
        module.start()


def stop_modules(modules: Mapping[str, Module]) -> None:
    """Stop every module; failures are logged and do not stop the rest."""
    for name, module in modules.items():
        try:
            module.stop()
        except Exception:  # noqa: BLE001 - stopping is best effort
            _log.exception("failed to stop module %s", name)