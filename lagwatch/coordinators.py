"""Coordinators that create, start and stop the cluster and consumer modules."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from lagwatch.app import (
    ApplicationContext,
    ConfigurationError,
    Module,
    start_modules,
    stop_modules,
)
from lagwatch.kafka_client import KafkaClient
from lagwatch.kafka_cluster import KafkaCluster
from lagwatch.kafka_zk_client import KafkaZkClient


class _Coordinator:
    """Shared behaviour: a named set of modules built from one configuration section."""

    section = ""

    def __init__(self, app: ApplicationContext, log: logging.Logger | None = None) -> None:
        self.app = app
        self.log = log if log is not None else app.logger.getChild(self.section)
        self.modules: dict[str, Module] = {}

    def _module_logger(self, name: str) -> logging.Logger:
        return self.app.logger.getChild(f"{self.section}.{name}")

    def _build(self, name: str, class_name: str) -> Module:
        raise NotImplementedError

    def _check(self, name: str, config_root: str) -> None:
        """Hook for section-specific validation before a module is built."""

    def configure(self) -> None:
        """Create every configured module and configure it; raise ConfigurationError on problems."""
        self.log.info("configuring")
        self.modules = {}
        config = self.app.config
        for name in config.sub_keys(self.section):
            config_root = f"{self.section}.{name}"
            self._check(name, config_root)
            class_name = str(config.get(config_root + ".class-name", ""))
            module = self._build(name, class_name)
            module.configure(name, config_root)
            self.modules[name] = module

    def start(self) -> None:
        """Start every module; the first failure stops the rest from starting."""
        self.log.info("starting")
        try:
            start_modules(self.modules)
        except Exception as exc:
            raise RuntimeError(f"Error starting {self.section} module: {exc}") from exc

    def stop(self) -> None:
        """Stop every module; failures are logged only."""
        self.log.info("stopping")
        stop_modules(self.modules)


class ClusterCoordinator(_Coordinator):
    """Manages the modules that watch Kafka clusters."""

    section = "cluster"

    def __init__(
        self,
        app: ApplicationContext,
        log: logging.Logger | None = None,
        client_factory: Callable[[list[str], dict], Any] | None = None,
    ) -> None:
        super().__init__(app, log)
        self.client_factory = client_factory

    def _build(self, name: str, class_name: str) -> Module:
        if class_name == "kafka":
            return KafkaCluster(self.app, self._module_logger(name), self.client_factory)
        raise ConfigurationError("Unknown cluster className provided: " + class_name)

    def configure(self) -> None:
        """Create and configure every cluster module."""
        super().configure()

    def start(self) -> None:
        """Start every cluster module."""
        super().start()

    def stop(self) -> None:
        """Stop every cluster module."""
        super().stop()


class ConsumerCoordinator(_Coordinator):
    """Manages the modules that read consumer group offsets."""

    section = "consumer"

    def __init__(
        self,
        app: ApplicationContext,
        log: logging.Logger | None = None,
        client_factory: Callable[[list[str], dict], Any] | None = None,
        zk_connect_func: Callable[..., Any] | None = None,
    ) -> None:
        super().__init__(app, log)
        self.client_factory = client_factory
        self.zk_connect_func = zk_connect_func

    def _check(self, name: str, config_root: str) -> None:
        cluster = str(self.app.config.get(config_root + ".cluster", ""))
        if not self.app.config.is_set("cluster." + cluster):
            raise ConfigurationError(
                f"Consumer '{name}' references an unknown cluster '{cluster}'"
            )

    def _build(self, name: str, class_name: str) -> Module:
        if class_name == "kafka":
            return KafkaClient(self.app, self._module_logger(name), self.client_factory)
        if class_name == "kafka_zk":
            return KafkaZkClient(self.app, self._module_logger(name), self.zk_connect_func)
        raise ConfigurationError("Unknown consumer className provided: " + class_name)

    def configure(self) -> None:
        """Create and configure every consumer module."""
        super().configure()

    def start(self) -> None:
        """Start every consumer module, then mark the application ready."""
        super().start()
        self.app.app_ready = True

    def stop(self) -> None:
        """Stop every consumer module."""
        super().stop()