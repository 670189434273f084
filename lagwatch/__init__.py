"""Consumer lag monitoring core: cluster offset polling, offsets-topic decoding, ZooKeeper offset watching and module coordination."""

__version__ = "0.1.0"

__all__ = [
    "app",
    "codec",
    "coordinators",
    "kafka_client",
    "kafka_cluster",
    "kafka_zk_client",
    "runner",
]