"""Consumer module that reads group offsets and ownership from the offsets topic."""

from __future__ import annotations

import io
import logging
import queue
import re
import struct
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, BinaryIO

from lagwatch.app import (
    ApplicationContext,
    ConfigurationError,
    Module,
    RequestType,
    StorageRequest,
    send_storage_request,
    validate_host_list,
)
from lagwatch.codec import (
    DecodeError,
    OffsetKey,
    OffsetValue,
    decode_metadata_member,
    decode_metadata_value_header,
    decode_metadata_value_header_v2,
    decode_offset_key_v0,
    decode_offset_value_v0,
    decode_offset_value_v3,
    read_string,
)

OFFSET_NEWEST = -1
OFFSET_OLDEST = -2

_POLL_INTERVAL = 0.05
_INT16 = struct.Struct(">h")
_INT32 = struct.Struct(">i")
_TRUE_WORDS = frozenset({"1", "t", "true", "y", "yes", "on"})


@dataclass
class ConsumerMessage:
    """A record read from a partition of the offsets topic."""

    topic: str
    partition: int
    offset: int
    key: bytes = b""
    value: bytes = b""
    timestamp: float = 0.0


@dataclass
class ConsumerError:
    """An error reported by a partition consumer."""

    topic: str
    partition: int
    err: Exception


def _read_int(buf: BinaryIO, fmt: struct.Struct) -> int | None:
    data = buf.read(fmt.size)
    if len(data) != fmt.size:
        return None
    return fmt.unpack(data)[0]


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_WORDS
    return bool(value)


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return value.split()
    return [str(item) for item in value]


def _now_millis() -> int:
    return int(time.time()) * 1000


class KafkaClient(Module):
    """Reads a cluster's consumer offsets topic and forwards decoded data to storage.

    The Kafka connection is made by ``client_factory(servers, client_profile)``, which
    returns a client offering ``new_consumer()``, ``partitions(topic)``,
    ``get_offset(topic, partition, time)`` and ``close()``. Consumers offer
    ``consume_partition(topic, partition, offset)``, returning partition consumers
    with ``messages`` and ``errors`` queues and an ``async_close()`` method.
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
        self.cluster = ""
        self.servers: list[str] = []
        self.offsets_topic = "__consumer_offsets"
        self.start_latest = False
        self.backfill_earliest = False
        self.reported_consumer_group = ""
        self.client_profile: dict = {}
        self.group_allowlist: re.Pattern[str] | None = None
        self.group_denylist: re.Pattern[str] | None = None
        self._quit = threading.Event()
        self._lock = threading.Lock()
        self._threads: list[threading.Thread] = []

    def configure(self, name: str, config_root: str) -> None:
        """Load and validate this consumer's configuration."""
        self.log.info("configuring")
        config = self.app.config
        self.name = name
        self._quit = threading.Event()
        self._threads = []

        self.cluster = str(config.get(config_root + ".cluster", ""))
        if not config.is_set("cluster." + self.cluster):
            raise ConfigurationError(
                f"Consumer '{name}' references an unknown cluster '{self.cluster}'"
            )

        profile = str(config.get(config_root + ".client-profile", ""))
        profile_values = config.get("client-profile." + profile, {})
        self.client_profile = profile_values if isinstance(profile_values, dict) else {}

        self.servers = _as_list(config.get(config_root + ".servers"))
        if not self.servers:
            raise ConfigurationError("No Kafka brokers specified for consumer " + name)
        if not validate_host_list(self.servers):
            raise ConfigurationError(
                f"Consumer '{name}' has one or more improperly formatted servers "
                "(must be host:port)"
            )

        config.set_default(config_root + ".offsets-topic", "__consumer_offsets")
        self.offsets_topic = str(config.get(config_root + ".offsets-topic"))
        self.start_latest = _as_bool(config.get(config_root + ".start-latest", False))
        self.backfill_earliest = self.start_latest and _as_bool(
            config.get(config_root + ".backfill-earliest", False)
        )
        self.reported_consumer_group = "burrow-" + name

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
        """Connect to the cluster and start consuming the offsets topic."""
        self.log.info("starting")
        if self.client_factory is None:
            raise RuntimeError("no Kafka client factory configured")
        client = self.client_factory(self.servers, self.client_profile)
        try:
            self.start_kafka_consumer(client)
        except Exception:
            self.log.exception("failed to start consumer")
            client.close()
            raise

    def stop(self) -> None:
        """Signal every partition consumer to finish and wait for them."""
        self.log.info("stopping")
        self._quit.set()
        while True:
            with self._lock:
                if not self._threads:
                    break
                thread = self._threads.pop()
            thread.join()

    def _spawn(self, target: Callable[..., None], *args: Any) -> None:
        thread = threading.Thread(target=target, args=args, daemon=True)
        with self._lock:
            self._threads.append(thread)
        thread.start()

    def accept_consumer_group(self, group: str) -> bool:
        """Whether a group passes the configured allowlist and denylist."""
        if self.group_allowlist is not None and not self.group_allowlist.search(group):
            return False
        if self.group_denylist is not None and self.group_denylist.search(group):
            return False
        return True

    def _new_consumer(self, client: Any) -> Any:
        try:
            return client.new_consumer()
        except Exception:
            self.log.exception("failed to get new consumer")
            client.close()
            raise

    def start_kafka_consumer(self, client: Any) -> None:
        """Start a consumer for every partition of the offsets topic, plus backfill."""
        consumer = self._new_consumer(client)
        try:
            partitions = list(client.partitions(self.offsets_topic))
        except Exception:
            self.log.exception("failed to get partition count for %s", self.offsets_topic)
            client.close()
            raise

        start_from = OFFSET_NEWEST if self.start_latest else OFFSET_OLDEST
        self.log.info("starting %d consumers for %s", len(partitions), self.offsets_topic)
        for partition in partitions:
            try:
                pconsumer = consumer.consume_partition(self.offsets_topic, partition, start_from)
            except Exception:
                self.log.exception(
                    "failed to consume partition %s:%d", self.offsets_topic, partition
                )
                raise
            self._spawn(self.partition_consumer, pconsumer, None)

        if self.backfill_earliest and partitions:
            self.log.debug("backfilling consumer offsets")
            backfill_consumer = self._new_consumer(client)
            pool = ThreadPoolExecutor(max_workers=len(partitions))
            try:
                futures = [
                    pool.submit(self._start_backfill_partition_consumer, partition, client, backfill_consumer)
                    for partition in partitions
                ]
                for future in as_completed(futures):
                    if self._quit.is_set():
                        return
                    future.result()
            finally:
                pool.shutdown(wait=False)

    def _start_backfill_partition_consumer(self, partition: int, client: Any, consumer: Any) -> None:
        topic = self.offsets_topic
        try:
            pconsumer = consumer.consume_partition(topic, partition, OFFSET_OLDEST)
        except Exception:
            self.log.exception("failed to consume partition %s:%d", topic, partition)
            raise
        # The emptiness check comes after creating the consumer so an expiring
        # segment cannot make a non-empty partition look empty.
        oldest = client.get_offset(topic, partition, OFFSET_OLDEST)
        newest = client.get_offset(topic, partition, OFFSET_NEWEST)
        if newest > 0:
            newest -= 1
        if oldest >= newest:
            self.log.info(
                "not backfilling empty partition %s:%d (oldest %d, newest %d)",
                topic, partition, oldest, newest,
            )
            pconsumer.async_close()
            return
        self.log.debug("consuming backfill of partition %d from %d to %d", partition, oldest, newest)
        self._spawn(self.partition_consumer, pconsumer, newest)

    def partition_consumer(self, consumer: Any, stop_at_offset: int | None) -> None:
        """Process messages from one partition until stopped or the target offset is read."""
        try:
            while not self._quit.is_set():
                try:
                    msg = consumer.messages.get(timeout=_POLL_INTERVAL)
                except queue.Empty:
                    msg = None
                if msg is not None:
                    self._handle_message(msg)
                    if stop_at_offset is not None and msg.offset >= stop_at_offset:
                        self.log.debug(
                            "backfill consumer of partition %d reached offset %d",
                            msg.partition, stop_at_offset,
                        )
                        return
                self._drain_errors(consumer)
        finally:
            consumer.async_close()

    def _drain_errors(self, consumer: Any) -> None:
        while True:
            try:
                error = consumer.errors.get_nowait()
            except queue.Empty:
                return
            if error is not None:
                self.log.error("consume error on %s:%d: %s", error.topic, error.partition, error.err)

    def _handle_message(self, msg: ConsumerMessage) -> None:
        if self.reported_consumer_group:
            # Report our own progress as a consumer committing lastSeenOffset + 1.
            send_storage_request(
                self.app.storage_channel,
                StorageRequest(
                    request_type=RequestType.SET_CONSUMER_OFFSET,
                    cluster=self.cluster,
                    topic=msg.topic,
                    partition=msg.partition,
                    group=self.reported_consumer_group,
                    timestamp=_now_millis(),
                    offset=msg.offset + 1,
                    order=msg.offset,
                ),
                1,
            )
        self.process_consumer_offsets_message(msg)

    def process_consumer_offsets_message(self, msg: ConsumerMessage) -> None:
        """Decode one offsets-topic record and forward what it holds."""
        key_buffer = io.BytesIO(msg.key or b"")
        key_version = _read_int(key_buffer, _INT16)
        if key_version is None:
            self.log.warning("failed to decode offset %d: no key version", msg.offset)
            return
        if key_version in (0, 1):
            self.decode_key_and_offset(msg.offset, key_buffer, msg.value or b"")
        elif key_version == 2:
            self.decode_group_metadata(key_buffer, msg.value or b"")
        else:
            self.log.warning("failed to decode offset %d: key version %d", msg.offset, key_version)

    def decode_key_and_offset(self, offset_order: int, key_buffer: BinaryIO, value: bytes) -> None:
        """Decode an offset commit record and send it to storage."""
        try:
            key = decode_offset_key_v0(key_buffer)
        except DecodeError as exc:
            self.log.warning("failed to decode offset key: %s", exc.field)
            return

        if not self.accept_consumer_group(key.group):
            self.log.debug("dropped group %s: allowlist", key.group)
            return
        if not value:
            self.log.debug("dropped tombstone")
            return

        value_buffer = io.BytesIO(value)
        value_version = _read_int(value_buffer, _INT16)
        if value_version is None:
            self.log.warning("failed to decode offset of %s: no value version", key.group)
            return
        if value_version in (0, 1):
            self._decode_and_send_offset(offset_order, key, value_buffer, decode_offset_value_v0)
        elif value_version == 3:
            self._decode_and_send_offset(offset_order, key, value_buffer, decode_offset_value_v3)
        else:
            self.log.warning(
                "failed to decode offset of %s: value version %d", key.group, value_version
            )

    def _decode_and_send_offset(
        self,
        offset_order: int,
        key: OffsetKey,
        value_buffer: BinaryIO,
        decoder: Callable[[BinaryIO], OffsetValue],
    ) -> None:
        try:
            value = decoder(value_buffer)
        except DecodeError as exc:
            self.log.warning("failed to decode offset value of %s: %s", key.group, exc.field)
            return
        self.log.debug(
            "consumer offset %s %s:%d = %d", key.group, key.topic, key.partition, value.offset
        )
        send_storage_request(
            self.app.storage_channel,
            StorageRequest(
                request_type=RequestType.SET_CONSUMER_OFFSET,
                cluster=self.cluster,
                topic=key.topic,
                partition=key.partition,
                group=key.group,
                timestamp=value.timestamp,
                offset=value.offset,
                order=offset_order,
            ),
            1,
        )

    def decode_group_metadata(self, key_buffer: BinaryIO, value: bytes) -> None:
        """Decode a group metadata record; a tombstone deletes the group."""
        try:
            group = read_string(key_buffer)
        except DecodeError:
            self.log.warning("failed to decode metadata: group")
            return

        if not value:
            self.log.debug("removing consumer group %s due to tombstone", group)
            send_storage_request(
                self.app.storage_channel,
                StorageRequest(
                    request_type=RequestType.SET_DELETE_GROUP,
                    cluster=self.cluster,
                    group=group,
                ),
                1,
            )
            return

        value_buffer = io.BytesIO(value)
        value_version = _read_int(value_buffer, _INT16)
        if value_version is None:
            self.log.warning("failed to decode metadata of %s: no value version", group)
            return
        if value_version in (0, 1, 2, 3):
            self.decode_and_send_group_metadata(value_version, group, value_buffer)
        else:
            self.log.warning(
                "failed to decode metadata of %s: value version %d", group, value_version
            )

    def decode_and_send_group_metadata(self, value_version: int, group: str, value_buffer: BinaryIO) -> None:
        """Decode group members and send partition ownership to storage."""
        decode_header = (
            decode_metadata_value_header_v2 if value_version in (2, 3) else decode_metadata_value_header
        )
        try:
            header = decode_header(value_buffer)
        except DecodeError as exc:
            self.log.warning("failed to decode metadata of %s: %s", group, exc.field)
            return
        self.log.debug("group metadata of %s: %s", group, header)
        if header.protocol_type != "consumer":
            self.log.debug("skipped metadata of %s: protocol type %s", group, header.protocol_type)
            return

        member_count = _read_int(value_buffer, _INT32)
        if member_count is None:
            self.log.warning("failed to decode metadata of %s: no member size", group)
            return

        if member_count == 0:
            self.log.debug("clear owners of %s", group)
            send_storage_request(
                self.app.storage_channel,
                StorageRequest(
                    request_type=RequestType.CLEAR_CONSUMER_OWNERS,
                    cluster=self.cluster,
                    group=group,
                ),
                1,
            )
            return

        for _ in range(member_count):
            try:
                member = decode_metadata_member(value_buffer, value_version)
            except DecodeError as exc:
                self.log.warning("failed to decode metadata of %s: %s", group, exc.field)
                return
            for topic, partitions in member.assignment.items():
                for partition in partitions:
                    send_storage_request(
                        self.app.storage_channel,
                        StorageRequest(
                            request_type=RequestType.SET_CONSUMER_OWNER,
                            cluster=self.cluster,
                            topic=topic,
                            partition=partition,
                            group=group,
                            owner=member.client_host,
                            client_id=member.client_id,
                        ),
                        1,
                    )