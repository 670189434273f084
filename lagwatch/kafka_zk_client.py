"""Consumer module that follows ZooKeeper-committed offsets of old-style consumer groups."""

from __future__ import annotations

import enum
import logging
import queue
import re
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from lagwatch.app import (
    ApplicationContext,
    ConfigurationError,
    Module,
    RequestType,
    StorageRequest,
    send_storage_request,
    validate_host_list,
)

_OFFSET_PATTERN = re.compile(rb"[+-]?[0-9]+")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


class EventType(enum.IntEnum):
    """Kinds of ZooKeeper watch and session events."""

    NODE_CREATED = 1
    NODE_DELETED = 2
    NODE_DATA_CHANGED = 3
    NODE_CHILDREN_CHANGED = 4
    SESSION = -1
    NOT_WATCHING = -2


class SessionState(enum.IntEnum):
    """States of a ZooKeeper session."""

    UNKNOWN = -1
    DISCONNECTED = 0
    CONNECTING = 1
    AUTH_FAILED = 4
    CONNECTED_READ_ONLY = 5
    SASL_AUTHENTICATED = 6
    EXPIRED = -112
    CONNECTED = 100
    HAS_SESSION = 101


@dataclass
class ZkEvent:
    """An event delivered on a watch or session queue."""

    type: EventType
    state: SessionState = SessionState.UNKNOWN
    path: str = ""
    err: Exception | None = None


@dataclass
class ZkStat:
    """The parts of a znode's stat structure that are used here."""

    mtime: int = 0
    mzxid: int = 0


class _WaitGroup:
    def __init__(self) -> None:
        self._count = 0
        self._cond = threading.Condition()

    def add(self) -> None:
        with self._cond:
            self._count += 1

    def done(self) -> None:
        with self._cond:
            self._count -= 1
            if self._count <= 0:
                self._cond.notify_all()

    def wait(self) -> None:
        with self._cond:
            self._cond.wait_for(lambda: self._count <= 0)


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return value.split()
    return [str(item) for item in value]


def _valid_zookeeper_path(path: str) -> bool:
    if not path.startswith("/") or (path != "/" and path.endswith("/")):
        return False
    return all(part and part not in (".", "..") for part in path.split("/")[1:])


def _parse_offset(data: bytes) -> int:
    if not _OFFSET_PATTERN.fullmatch(data):
        raise ValueError(f"invalid offset {data!r}")
    value = int(data)
    if not _INT64_MIN <= value <= _INT64_MAX:
        raise ValueError(f"offset out of range {data!r}")
    return value


class KafkaZkClient(Module):
    """Watches the /consumers tree in ZooKeeper and forwards offsets and owners to storage.

    ``connect_func(servers, timeout_seconds, log)`` returns ``(zk, session_events)``.
    The client offers ``children_w(path)``, ``exists_w(path)`` and ``get_w(path)``,
    returning ``(children | exists | data, stat, watch_queue)`` and raising on errors,
    and ``close()``. Watch queues deliver a single ``ZkEvent``; closing the client
    delivers ``NOT_WATCHING`` on every open watch and ``None`` on the session queue.
    """

    def __init__(
        self,
        app: ApplicationContext | None = None,
        log: logging.Logger | None = None,
        connect_func: Callable[[list[str], float, logging.Logger], tuple[Any, queue.Queue]] | None = None,
    ) -> None:
        super().__init__(app, log)
        self.connect_func = connect_func
        self.name = ""
        self.cluster = ""
        self.servers: list[str] = []
        self.zookeeper_timeout = 30
        self.zookeeper_path = "/consumers"
        self.zk: Any = None
        self.watches_set = False
        self.group_list: dict[str, dict[str, int]] = {}
        self.group_allowlist: re.Pattern[str] | None = None
        self.group_denylist: re.Pattern[str] | None = None
        self._group_lock = threading.Lock()
        self._running = _WaitGroup()

    def configure(self, name: str, config_root: str) -> None:
        """Load and validate this consumer's configuration."""
        self.log.info("configuring")
        config = self.app.config
        self.name = name
        self._running = _WaitGroup()
        with self._group_lock:
            self.group_list = {}

        self.servers = _as_list(config.get(config_root + ".servers"))
        if not self.servers:
            raise ConfigurationError("No Zookeeper servers specified for consumer " + name)
        if not validate_host_list(self.servers):
            raise ConfigurationError(
                f"Consumer '{name}' has one or more improperly formatted servers "
                "(must be host:port)"
            )

        config.set_default(config_root + ".zookeeper-timeout", 30)
        try:
            self.zookeeper_timeout = int(config.get(config_root + ".zookeeper-timeout"))
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Consumer '{name}' has a non-integer zookeeper timeout") from exc
        self.zookeeper_path = str(config.get(config_root + ".zookeeper-path", "")) + "/consumers"
        self.cluster = str(config.get(config_root + ".cluster", ""))

        if not _valid_zookeeper_path(self.zookeeper_path):
            raise ConfigurationError(f"Consumer '{name}' has a bad zookeeper path configuration")

        if config.is_set(config_root + ".group-whitelist") or config.is_set(
            config_root + ".group-blacklist"
        ):
            raise ConfigurationError("Please change configurations to allowlist and denylist")

        self.group_allowlist = self._compile(config.get(config_root + ".group-allowlist", ""), "allowlist")
        self.group_denylist = self._compile(config.get(config_root + ".group-denylist", ""), "denylist")

    @staticmethod
    def _compile(pattern: Any, kind: str) -> re.Pattern[str] | None:
        if not pattern:
            return None
        try:
            return re.compile(str(pattern))
        except re.error as exc:
            raise ConfigurationError(f"Failed to compile group {kind}: {exc}") from exc

    def start(self) -> None:
        """Connect to ZooKeeper, set up all watches and follow the session state."""
        self.log.info("starting")
        if self.connect_func is None:
            raise RuntimeError("no ZooKeeper connect function configured")
        zk, session_events = self.connect_func(self.servers, self.zookeeper_timeout, self.log)
        self.zk = zk

        # Set up all groups now; the first connected event may already have passed.
        self.reset_group_list_watch_and_add(False)
        self.watches_set = True
        self._spawn(self._connection_state_watcher, session_events)

    def stop(self) -> None:
        """Close the client, which ends every watch, and wait for all watchers."""
        self.log.info("stopping")
        if self.zk is not None:
            self.zk.close()
        self._running.wait()

    def _spawn(self, target: Callable[..., None], *args: Any) -> None:
        self._running.add()

        def run() -> None:
            try:
                target(*args)
            except Exception:  # noqa: BLE001 - a failing watcher must not kill the others
                self.log.exception("watcher failed")
            finally:
                self._running.done()

        threading.Thread(target=run, daemon=True).start()

    def _connection_state_watcher(self, events: queue.Queue) -> None:
        while (event := events.get()) is not None:
            if event.type != EventType.SESSION:
                continue
            if event.state == SessionState.EXPIRED:
                self.log.error("session expired")
                self.watches_set = False
            elif event.state == SessionState.CONNECTED and not self.watches_set:
                self.log.info("reinitializing watches")
                with self._group_lock:
                    self.group_list = {}
                self._spawn(self.reset_group_list_watch_and_add, False)

    def accept_consumer_group(self, group: str) -> bool:
        """Whether a group passes the configured allowlist and denylist."""
        if self.group_allowlist is not None and not self.group_allowlist.search(group):
            return False
        if self.group_denylist is not None and self.group_denylist.search(group):
            return False
        return True

    def _wait_for_node_to_exist(self, path: str) -> bool:
        try:
            exists, _stat, watch = self.zk.exists_w(path)
        except Exception as exc:  # noqa: BLE001
            self.log.debug("failed to check existence of znode %s: %s", path, exc)
            return False
        if exists:
            # Drain the watch created by the existence check whenever it fires.
            threading.Thread(target=watch.get, daemon=True).start()
            return True
        self.log.debug("waiting for node %s to exist", path)
        event = watch.get()
        if event.type == EventType.NOT_WATCHING:
            self.log.debug("exists watch on %s invalidated", path)
            return False
        return True

    def watch_group_list(self, events: queue.Queue) -> None:
        """Wait for the group list watch to fire and reset it."""
        event = events.get()
        if event.type == EventType.NOT_WATCHING:
            self.log.debug("group list watch invalidated")
            return
        self.log.debug("group list watch fired: %s", event.type)
        self._spawn(
            self.reset_group_list_watch_and_add,
            event.type != EventType.NODE_CHILDREN_CHANGED,
        )

    def reset_group_list_watch_and_add(self, reset_only: bool) -> None:
        """Re-read the group list, re-arm its watch and, unless reset_only, add new groups."""
        try:
            groups, _stat, watch = self.zk.children_w(self.zookeeper_path)
        except Exception as exc:  # noqa: BLE001
            self.log.error("failed to list groups: %s", exc)
            return
        self._spawn(self.watch_group_list, watch)
        if reset_only:
            return

        new_groups: list[str] = []
        with self._group_lock:
            for group in groups:
                if not self.accept_consumer_group(group):
                    self.log.debug("skip group %s: allowlist", group)
                    continue
                if group not in self.group_list:
                    self.group_list[group] = {}
                    self.log.debug("add group %s", group)
                    new_groups.append(group)
        for group in new_groups:
            self._spawn(self.reset_topic_list_watch_and_add, group, False)

    def _watch_topic_list(self, group: str, events: queue.Queue) -> None:
        event = events.get()
        if event.type == EventType.NOT_WATCHING:
            self.log.debug("topic list watch for %s invalidated", group)
            return
        self.log.debug("topic list watch for %s fired: %s", group, event.type)
        self._spawn(
            self.reset_topic_list_watch_and_add,
            group,
            event.type != EventType.NODE_CHILDREN_CHANGED,
        )

    def reset_topic_list_watch_and_add(self, group: str, reset_only: bool) -> None:
        """Re-read a group's topic list, re-arm its watch and, unless reset_only, add topics."""
        # The group node may exist before its offsets node does.
        path = f"{self.zookeeper_path}/{group}/offsets"
        if not self._wait_for_node_to_exist(path):
            return
        try:
            topics, _stat, watch = self.zk.children_w(path)
        except Exception as exc:  # noqa: BLE001
            self.log.debug("failed to read topic list of %s: %s", group, exc)
            return
        self._spawn(self._watch_topic_list, group, watch)
        if reset_only:
            return

        new_topics: list[str] = []
        with self._group_lock:
            known = self.group_list.setdefault(group, {})
            for topic in topics:
                if topic not in known:
                    known[topic] = 0
                    self.log.debug("add topic %s to group %s", topic, group)
                    new_topics.append(topic)
        for topic in new_topics:
            self._spawn(self.reset_partition_list_watch_and_add, group, topic, False)

    def _watch_partition_list(self, group: str, topic: str, events: queue.Queue) -> None:
        event = events.get()
        if event.type == EventType.NOT_WATCHING:
            self.log.debug("partition list watch for %s/%s invalidated", group, topic)
            return
        self.log.debug("partition list watch for %s/%s fired: %s", group, topic, event.type)
        self._spawn(
            self.reset_partition_list_watch_and_add,
            group,
            topic,
            event.type != EventType.NODE_CHILDREN_CHANGED,
        )

    def reset_partition_list_watch_and_add(self, group: str, topic: str, reset_only: bool) -> None:
        """Re-read a topic's partitions, re-arm the watch and, unless reset_only, add partitions."""
        path = f"{self.zookeeper_path}/{group}/offsets/{topic}"
        try:
            partitions, _stat, watch = self.zk.children_w(path)
        except Exception as exc:  # noqa: BLE001
            self.log.warning("failed to read partitions of %s/%s: %s", group, topic, exc)
            return
        self._spawn(self._watch_partition_list, group, topic, watch)
        if reset_only:
            return

        with self._group_lock:
            topics = self.group_list.setdefault(group, {})
            known = topics.get(topic, 0)
            total = len(partitions)
            new_partitions = range(known, total) if total >= known else range(0)
            if total >= known:
                topics[topic] = total
        for partition in new_partitions:
            self.log.debug("add partition %s/%s:%d", group, topic, partition)
            self.reset_offset_watch_and_send(group, topic, partition, False)

    def _watch_offset(self, group: str, topic: str, partition: int, events: queue.Queue) -> None:
        event = events.get()
        if event.type == EventType.NOT_WATCHING:
            self.log.debug("offset watch for %s/%s:%d invalidated", group, topic, partition)
            return
        self.log.debug("offset watch for %s/%s:%d fired: %s", group, topic, partition, event.type)
        self._spawn(
            self.reset_offset_watch_and_send,
            group,
            topic,
            partition,
            event.type != EventType.NODE_DATA_CHANGED,
        )

    def reset_offset_watch_and_send(self, group: str, topic: str, partition: int, reset_only: bool) -> None:
        """Read a partition's offset and owner, re-arm the watch and, unless reset_only, send them."""
        base = f"{self.zookeeper_path}/{group}"
        offset_error: Exception | None = None
        try:
            offset_data, offset_stat, watch = self.zk.get_w(f"{base}/offsets/{topic}/{partition}")
        except Exception as exc:  # noqa: BLE001
            offset_error = exc
        try:
            owner_data = self.zk.get_w(f"{base}/owners/{topic}/{partition}")[0]
        except Exception:  # noqa: BLE001 - a missing owner is reported as empty
            owner_data = b""

        if offset_error is not None:
            self.log.warning(
                "failed to read offset of %s/%s:%d: %s", group, topic, partition, offset_error
            )
            return
        self._spawn(self._watch_offset, group, topic, partition, watch)
        if reset_only:
            return

        try:
            offset = _parse_offset(bytes(offset_data))
        except ValueError as exc:
            self.log.error(
                "badly formatted offset of %s/%s:%d: %s", group, topic, partition, exc
            )
            return

        self.log.debug(
            "consumer offset %s %s:%d = %d at %d", group, topic, partition, offset, offset_stat.mtime
        )
        send_storage_request(
            self.app.storage_channel,
            StorageRequest(
                request_type=RequestType.SET_CONSUMER_OFFSET,
                cluster=self.cluster,
                topic=topic,
                partition=partition,
                group=group,
                timestamp=offset_stat.mtime,
                offset=offset,
                order=offset_stat.mzxid,
            ),
            1,
        )
        owner = owner_data.decode("utf-8", errors="replace") if owner_data else ""
        send_storage_request(
            self.app.storage_channel,
            StorageRequest(
                request_type=RequestType.SET_CONSUMER_OWNER,
                cluster=self.cluster,
                topic=topic,
                partition=partition,
                group=group,
                owner=owner,
            ),
            1,
        )