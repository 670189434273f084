# lagwatch

The core of a consumer lag monitor. The package polls a cluster for the newest
broker offset of every topic partition. It follows the offsets that consumer
groups commit, either to the offsets topic or to a ZooKeeper `/consumers` tree.
All of this goes out as `StorageRequest` messages on a queue. Whatever stores
and evaluates lag reads from that queue.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Modules

### `lagwatch.app`

Shared plumbing.

- `Config` is a configuration store with dotted, case-insensitive keys. It offers `set`, `set_default`, `get`, `is_set` and `sub_keys`.
  - A mapping passed to `set` is stored as nested keys.
  - `get` on a parent key returns its subtree as a dict.
- `ApplicationContext` holds `config`, `logger`, `storage_channel` and `evaluator_channel`, which are both `queue.Queue`. It also holds the flags `configuration_valid` and `app_ready`.
- `StorageRequest` and `RequestType` describe the messages put on `storage_channel`. The request types are:
  - broker offset
  - consumer offset
  - consumer owner
  - clear consumer owners
  - delete topic
  - delete group
  - fetch consumers
- `Module` is the abstract base of every module. It has `configure(name, config_root)`, `start()` and `stop()`.
- Helpers:
  - `send_storage_request(channel, request, timeout)` returns `False` if the put times out.
  - `validate_host_list(hosts)` checks that every entry has the form `host:port`.
  - `start_modules(modules)` lets the first failure propagate.
  - `stop_modules(modules)` logs failures and carries on.
- `ConfigurationError` is raised for any configuration problem.

### `lagwatch.codec`

Decoders for the binary records of the offsets topic:

- `read_string`
- `decode_offset_key_v0`
- `decode_offset_value_v0`
- `decode_offset_value_v3`
- `decode_metadata_value_header`
- `decode_metadata_value_header_v2`
- `decode_metadata_member`
- `decode_member_assignment_v0`

Each decoder reads from a binary file object and returns a dataclass (`OffsetKey`, `OffsetValue`, `MetadataHeader` or `MetadataMember`) or a dict. `decode_member_assignment_v0` returns a dict that maps each topic to its partitions.

Malformed input raises `DecodeError`. Its `field` attribute names the field where decoding stopped, and `partial` holds what had been decoded up to that point.

```python
import io
from lagwatch.codec import decode_offset_key_v0

key = decode_offset_key_v0(io.BytesIO(b"\x00\x09testgroup\x00\x09testtopic\x00\x00\x00\x0b"))
# OffsetKey(group='testgroup', topic='testtopic', partition=11)
```

### `lagwatch.kafka_cluster.KafkaCluster`

Keeps the topic and partition list of one cluster and fetches the newest offset of every led partition.

- `update_metadata` refreshes the topic list. Topics that have disappeared are reported with a delete-topic request.
- `generate_offset_requests` builds one `OffsetRequest` per leader broker. The request version is chosen by the configured Kafka version.
- `get_offsets` queries the brokers in parallel. Each request carries the topic's full partition count.
- `reap_non_existing_groups` asks storage for its known groups. A fetch-consumers request brings the answer on `reply`. Groups that the cluster no longer lists are then deleted.
- `start` runs a background loop with separate intervals for offsets, topics and the groups reaper. `stop` ends the loop.

### `lagwatch.kafka_client.KafkaClient`

Consumes the offsets topic, one thread per partition.

- Offset commits (value versions 0, 1 and 3) become consumer-offset requests.
- Group metadata (value versions 0 to 3) with protocol type `consumer` becomes consumer-owner requests. An empty member list becomes a clear-owners request.
- A metadata tombstone becomes a delete-group request.
- The module reports its own progress as the group `burrow-<name>`.
- With `start-latest`, consumption starts at the newest offset. Adding `backfill-earliest` also replays each non-empty partition from the oldest offset up to the current end.

### `lagwatch.kafka_zk_client.KafkaZkClient`

Sets watches on `<zookeeper-path>/consumers` and its groups, topics and partitions. Each offset found is sent with its owner.

- When the session expires and later reconnects, the module rebuilds all of its watches.
- Types: `EventType`, `SessionState`, `ZkEvent`, `ZkStat`.

### `lagwatch.coordinators`

`ClusterCoordinator` and `ConsumerCoordinator` each build one module per entry under `cluster.*` or `consumer.*`. They then configure, start and stop those modules.

- The modules are chosen by `class-name`:
  - `kafka` for clusters
  - `kafka` or `kafka_zk` for consumers
- A consumer whose `cluster` is not configured is rejected.
- Once its modules have started, `ConsumerCoordinator` sets `app.app_ready`.

### `lagwatch.runner`

- `new_coordinators(app)` returns `[ClusterCoordinator, ConsumerCoordinator]`.
- `configure_coordinators(app, coordinators)` records the outcome in `app.configuration_valid`.
- `start(app, exit_event, coordinators)`:
  1. configures and starts the coordinators in order;
  2. waits on `exit_event.wait()`;
  3. stops the coordinators in reverse order.

  It returns 0 on a clean exit. It returns 1 if configuration or start-up fails; in that case the coordinators that had already started are stopped.

## Connecting to Kafka and ZooKeeper

The package contains no network client. The caller supplies one:

- `client_factory(servers, client_profile)` for `KafkaCluster` and `KafkaClient`. The methods the returned client must offer are listed in each class's docstring.
- `connect_func(servers, timeout_seconds, log)` for `KafkaZkClient`. It returns `(zk, session_event_queue)`.

Both coordinators pass these through: `client_factory` on both, and `zk_connect_func` on `ConsumerCoordinator`. A module started without them raises `RuntimeError`.

`new_coordinators` does not supply them. To run against real clusters, build the coordinators yourself and pass them to `start`:

```python
import threading
from lagwatch.app import ApplicationContext, Config
from lagwatch.coordinators import ClusterCoordinator, ConsumerCoordinator
from lagwatch.runner import start

config = Config()
config.set("cluster.local.class-name", "kafka")
config.set("cluster.local.servers", ["broker1.example.com:9092"])
config.set("consumer.local.class-name", "kafka")
config.set("consumer.local.cluster", "local")
config.set("consumer.local.servers", ["broker1.example.com:9092"])

app = ApplicationContext(config=config)
coordinators = [
    ClusterCoordinator(app, client_factory=make_client),
    ConsumerCoordinator(app, client_factory=make_client),
]
exit_event = threading.Event()
exit_code = start(app, exit_event, coordinators)  # blocks until exit_event is set
```

## Configuration

Per cluster (`cluster.<name>.*`):

| Key | Meaning | Default |
| --- | --- | --- |
| `servers` | list of `host:port` | required |
| `client-profile` | name of a profile | |
| `offset-refresh` | offset poll interval, seconds | 10 |
| `topic-refresh` | topic list refresh interval, seconds | 60 |
| `groups-reaper-refresh` | groups reaper interval, seconds | 0, off |

The client profile's `kafka-version` defaults to 2.1.0.0. Below 0.11 the groups reaper is disabled.

Per consumer (`consumer.<name>.*`):

- Common keys: `cluster`, `servers`, `group-allowlist`, `group-denylist`.
  - `group-allowlist` and `group-denylist` are regular expressions.
  - The older keys `group-whitelist` and `group-blacklist` are rejected.
- `kafka` consumers also take `client-profile`, `offsets-topic` (default `__consumer_offsets`), `start-latest` and `backfill-earliest`.
- `kafka_zk` consumers also take `zookeeper-path` (a prefix; `/consumers` is appended) and `zookeeper-timeout` (default 30 seconds).

## What this package does not do

- It does not store offsets, compute lag or evaluate group status. It only puts `StorageRequest` messages on `app.storage_channel`, and something else must read them.
- It has no HTTP API, no notifiers, no command-line program and no logging setup. The `lagwatch` logger has only a `NullHandler`.
- It does not speak the Kafka or ZooKeeper wire protocols. Clients must be supplied as described above.