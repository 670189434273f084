"""Builds the coordinators and runs them until told to exit."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from lagwatch.app import ApplicationContext
from lagwatch.coordinators import ClusterCoordinator, ConsumerCoordinator


def new_coordinators(app: ApplicationContext) -> list[Any]:
    """Coordinators in the order they are started (and, reversed, stopped)."""
    return [
        ClusterCoordinator(app, app.logger.getChild("cluster")),
        ConsumerCoordinator(app, app.logger.getChild("consumer")),
    ]


def configure_coordinators(app: ApplicationContext, coordinators: Sequence[Any]) -> bool:
    """Configure coordinators in order and record whether the configuration is usable."""
    try:
        for coordinator in coordinators:
            coordinator.configure()
    except Exception as exc:  # noqa: BLE001 - any configuration failure is fatal
        app.logger.error("configuration failed: %s", exc)
        app.configuration_valid = False
    else:
        app.configuration_valid = True
    return app.configuration_valid


def start(
    app: ApplicationContext | None = None,
    exit_event: Any = None,
    coordinators: Sequence[Any] | None = None,
) -> int:
    """Run until exit_event is set; return 0 on a clean exit and 1 on any failure.

    ``exit_event`` is anything with a blocking ``wait()``, such as ``threading.Event``.
    """
    if app is None:
        app = ApplicationContext()
    app.logger.info("Started")
    log = app.logger.getChild("main")

    if coordinators is None:
        coordinators = new_coordinators(app)
    coordinators = list(coordinators)

    if not configure_coordinators(app, coordinators):
        return 1

    for index, coordinator in enumerate(coordinators):
        try:
            coordinator.start()
        except Exception as exc:  # noqa: BLE001
            log.error("failed to start: %s", exc)
            for started in reversed(coordinators[:index]):
                started.stop()
            return 1

    if exit_event is not None:
        exit_event.wait()
    log.info("Shutdown triggered")

    for coordinator in reversed(coordinators):
        coordinator.stop()
    return 0


logging.getLogger("lagwatch").addHandler(logging.NullHandler())