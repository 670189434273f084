"""Cluster module that tracks topics, partitions and broker end offsets."""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
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

OFFSET_NEWEST = -1
OFFSET_OLDEST = -2

DEFAULT_KAFKA_VERSION = (2, 1, 0, 0)
_GROUPS_REAPER_MIN_VERSION = (0, 11, 0, 0)

# Offset request versions by the lowest broker version that supports them.
_OFFSET_REQUEST_VERSIONS = (
    ((2, 1, 0, 0), 4),  # adds the current leader epoch, used for fencing
    ((2, 0, 0, 0), 3),  # same as version 2
    ((0, 11, 0, 0), 2),  # adds the isolation level for transactional reads
    ((0, 10, 1, 0), 1),  # drops MaxNumOffsets; a single offset is returned
)


def _parse_version(value: Any) -> tuple[int, ...]:
    if not value:
        return DEFAULT_KAFKA_VERSION
    if isinstance(value, tuple):
        parts = list(value)
    else:
        try:
            parts = [int(part) for part in str(value).split(".")]
        except ValueError as exc:
            raise ConfigurationError(f"Invalid kafka version '{value}'") from exc
    parts = (parts + [0, 0, 0, 0])[:4]
    return tuple(parts)


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return value.split()
    return [str(item) for item in value]


def _offset_request_version(version: tuple[int, ...]) -> int:
    for minimum, request_version in _OFFSET_REQUEST_VERSIONS:
        if tuple(version) >= minimum:
            return request_version
    return 0


@dataclass
class OffsetRequest:
    """A request for partition offsets, sent to a single broker."""

    version: int = 0
    blocks: dict[str, dict[int, tuple[int, int]]] = field(default_factory=dict)

    def add_block(self, topic: str, partition: int, time: int, max_offsets: int) -> None:
        """Ask for the offsets of one partition at the given time marker."""
        self.blocks.setdefault(topic, {})[partition] = (time, max_offsets)


class KafkaCluster(Module):
    """Keeps the topic list of one cluster and sends broker end offsets to storage.

    The connection is made by ``client_factory(servers, client_profile)``, which returns
    a client offering ``version`` (a tuple), ``refresh_metadata()``, ``topics()``,
    ``partitions(topic)``, ``leader(topic, partition)`` and ``list_consumer_groups()``.
    Brokers offer ``id``, ``get_available_offsets(request)`` and ``close()``; an offset
    response has ``blocks`` mapping topic to partition to a block with ``err`` (None on
    success) and ``offsets``.
    """

    def __init__(
        self,
        app: ApplicationContext | None = None,
        log: logging.Logger | None = None,
        client_factory: Callable[[list[str], dict], Any] | None = None,
    ) -> None:
        super().__init__(app, log)
        self.client_factory = client_factory
        self.name = ""
        self.servers: list[str] = []
        self.client_profile: dict = {}
        self.kafka_version: tuple[int, ...] = DEFAULT_KAFKA_VERSION
        self.offset_refresh = 10
        self.topic_refresh = 60
        self.groups_reaper_refresh = 0
        self.fetch_metadata = False
        self.topic_partitions: dict[str, list[int]] | None = None
        self.partition_counts: dict[str, int] = {}
        self._quit = threading.Event()
        self._thread: threading.Thread | None = None

    def configure(self, name: str, config_root: str) -> None:
        """Load and validate this cluster's configuration."""
        self.log.info("configuring")
        config = self.app.config
        self.name = name
        self._quit = threading.Event()

        profile = str(config.get(config_root + ".client-profile", ""))
        profile_values = config.get("client-profile." + profile, {})
        self.client_profile = profile_values if isinstance(profile_values, dict) else {}
        self.kafka_version = _parse_version(self.client_profile.get("kafka-version"))

        self.servers = _as_list(config.get(config_root + ".servers"))
        if not self.servers:
            raise ConfigurationError("No Kafka brokers specified for cluster " + name)
        if not validate_host_list(self.servers):
            raise ConfigurationError(
                f"Cluster '{name}' has one or more improperly formatted servers "
                "(must be host:port)"
            )

        config.set_default(config_root + ".offset-refresh", 10)
        config.set_default(config_root + ".topic-refresh", 60)
        config.set_default(config_root + ".groups-reaper-refresh", 0)
        try:
            self.offset_refresh = int(config.get(config_root + ".offset-refresh"))
            self.topic_refresh = int(config.get(config_root + ".topic-refresh"))
            self.groups_reaper_refresh = int(config.get(config_root + ".groups-reaper-refresh"))
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Cluster '{name}' has a non-integer refresh interval") from exc

    def start(self) -> None:
        """Connect, fetch offsets once, then refresh them periodically."""
        self.log.info("starting")
        if self.client_factory is None:
            raise RuntimeError("no Kafka client factory configured")
        client = self.client_factory(self.servers, self.client_profile)

        # Fetch once before the loop so consumers start with good data.
        self.fetch_metadata = True
        self.get_offsets(client)

        reaper_enabled = self.groups_reaper_refresh != 0
        if reaper_enabled and self.kafka_version < _GROUPS_REAPER_MIN_VERSION:
            reaper_enabled = False
            self.log.warning(
                "groups reaper disabled, it needs at least kafka v0.11.0.0 "
                "to get the list of consumer groups"
            )

        self._quit.clear()
        self._thread = threading.Thread(
            target=self._main_loop, args=(client, reaper_enabled), daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop the refresh loop and wait for it to finish."""
        self.log.info("stopping")
        self._quit.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def _main_loop(self, client: Any, reaper_enabled: bool) -> None:
        now = time.monotonic()
        next_offsets = now + self.offset_refresh
        next_metadata = now + self.topic_refresh
        next_reap = now + self.groups_reaper_refresh if reaper_enabled else None

        while True:
            due = [next_offsets, next_metadata]
            if next_reap is not None:
                due.append(next_reap)
            if self._quit.wait(max(min(due) - time.monotonic(), 0)):
                return
            now = time.monotonic()
            if now >= next_offsets:
                self.get_offsets(client)
                next_offsets = now + self.offset_refresh
            if now >= next_metadata:
                self.fetch_metadata = True
                next_metadata = now + self.topic_refresh
            if next_reap is not None and now >= next_reap:
                self.reap_non_existing_groups(client)
                next_reap = now + self.groups_reaper_refresh

    def update_metadata(self, client: Any) -> None:
        """Refresh the topic list when due, and tell storage about deleted topics."""
        if not self.fetch_metadata:
            return
        self.fetch_metadata = False
        client.refresh_metadata()

        try:
            topic_list = list(client.topics())
        except Exception as exc:  # noqa: BLE001 - the client reports failures as exceptions
            self.log.error("failed to fetch topic list: %s", exc)
            return

        topic_partitions: dict[str, list[int]] = {}
        partition_counts: dict[str, int] = {}
        for topic in topic_list:
            try:
                partitions = list(client.partitions(topic))
            except Exception as exc:  # noqa: BLE001
                self.log.error("failed to fetch partition list: %s", exc)
                return
            partition_counts[topic] = len(partitions)
            led: list[int] = []
            for partition in partitions:
                try:
                    client.leader(topic, partition)
                except Exception as exc:  # noqa: BLE001
                    self.log.warning(
                        "failed to fetch leader for partition %s:%d: %s", topic, partition, exc
                    )
                else:
                    led.append(partition)
            topic_partitions[topic] = led

        if self.topic_partitions is not None:
            for topic in self.topic_partitions:
                if topic not in topic_partitions:
                    send_storage_request(
                        self.app.storage_channel,
                        StorageRequest(
                            request_type=RequestType.SET_DELETE_TOPIC,
                            cluster=self.name,
                            topic=topic,
                        ),
                        1,
                    )

        self.topic_partitions = topic_partitions
        self.partition_counts = partition_counts

    def generate_offset_requests(self, client: Any) -> tuple[dict[int, OffsetRequest], dict[int, Any]]:
        """Bucket an offset request for every known partition by its leader broker."""
        requests: dict[int, OffsetRequest] = {}
        brokers: dict[int, Any] = {}
        for topic, partitions in (self.topic_partitions or {}).items():
            for partition in partitions:
                try:
                    broker = client.leader(topic, partition)
                except Exception as exc:  # noqa: BLE001
                    self.log.warning(
                        "failed to fetch leader for partition %s:%d: %s", topic, partition, exc
                    )
                    self.fetch_metadata = True
                    continue
                broker_id = broker.id
                if broker_id not in requests:
                    requests[broker_id] = OffsetRequest(
                        version=_offset_request_version(client.version)
                    )
                brokers[broker_id] = broker
                requests[broker_id].add_block(topic, partition, OFFSET_NEWEST, 1)
        return requests, brokers

    def _partition_count(self, topic: str) -> int:
        if topic in self.partition_counts:
            return self.partition_counts[topic]
        return len((self.topic_partitions or {}).get(topic, []))

    def _fetch_broker_offsets(self, broker_id: int, broker: Any, request: OffsetRequest) -> bool:
        """Send one broker's request; return whether any partition reported an error."""
        try:
            response = broker.get_available_offsets(request)
        except Exception as exc:  # noqa: BLE001
            self.log.error("failed to fetch offsets from broker %d: %s", broker_id, exc)
            broker.close()
            return False

        had_errors = False
        timestamp = int(time.time()) * 1000
        for topic, partitions in response.blocks.items():
            for partition, block in partitions.items():
                if block.err is not None:
                    self.log.warning(
                        "error in offset response from broker %d for %s:%d: %s",
                        broker_id, topic, partition, block.err,
                    )
                    had_errors = True
                    continue
                send_storage_request(
                    self.app.storage_channel,
                    StorageRequest(
                        request_type=RequestType.SET_BROKER_OFFSET,
                        cluster=self.name,
                        topic=topic,
                        partition=partition,
                        offset=block.offsets[0],
                        timestamp=timestamp,
                        topic_partition_count=self._partition_count(topic),
                    ),
                    1,
                )
        return had_errors

    def get_offsets(self, client: Any) -> None:
        """Fetch the newest offset of every partition from all leaders in parallel."""
        self.update_metadata(client)
        requests, brokers = self.generate_offset_requests(client)
        if not requests:
            return
        with ThreadPoolExecutor(max_workers=len(requests)) as pool:
            futures = [
                pool.submit(self._fetch_broker_offsets, broker_id, brokers[broker_id], request)
                for broker_id, request in requests.items()
            ]
            results = [future.result() for future in futures]
        # Topics with errors force a metadata refresh on the next run.
        if any(results):
            self.fetch_metadata = True

    def reap_non_existing_groups(self, client: Any) -> None:
        """Delete groups from storage that the cluster no longer knows about."""
        try:
            kafka_groups = client.list_consumer_groups()
        except Exception as exc:  # noqa: BLE001
            self.log.error("failed to get the list of available consumer groups: %s", exc)
            return

        reply: queue.Queue = queue.Queue()
        request = StorageRequest(
            request_type=RequestType.FETCH_CONSUMERS,
            cluster=self.name,
            reply=reply,
        )
        if not send_storage_request(self.app.storage_channel, request, 20):
            return

        result = reply.get()
        if result is None:
            self.log.warning("groups reaper: couldn't get list of consumer groups from storage")
            return

        own_group = "burrow-" + self.name
        for group in result:
            if group == own_group or group in kafka_groups:
                continue
            self.log.info(
                "groups reaper: removing non existing kafka consumer group (%s) from storage",
                group,
            )
            send_storage_request(
                self.app.storage_channel,
                StorageRequest(
                    request_type=RequestType.SET_DELETE_GROUP,
                    cluster=self.name,
                    group=group,
                ),
                1,
            )