"""Storage emulator liveness probe based on local listener introspection."""

from __future__ import annotations

import psutil
import structlog

from .config import StorageEmulatorSettings, TestConfiguration

LOGGER = structlog.get_logger("workflow_runner.storage")

_ANY_ADDRESSES = {"0.0.0.0", "::"}


def listening_ports(host: str) -> set[int]:
    """Ports with a TCP listener bound to ``host`` or to a wildcard address."""

    ports: set[int] = set()
    for connection in psutil.net_connections(kind="tcp"):
        if connection.status != psutil.CONN_LISTEN or not connection.laddr:
            continue
        address = connection.laddr.ip
        if address == host or address in _ANY_ADDRESSES:
            ports.add(connection.laddr.port)
    return ports


def is_reachable(config: TestConfiguration | StorageEmulatorSettings) -> bool:
    """True only when every configured storage port has a local listener.

    No network calls are made.
    """

    settings = config.storage if isinstance(config, TestConfiguration) else config
    logger = LOGGER.bind(host=settings.host, ports=settings.ports)
    try:
        bound = listening_ports(settings.host)
    except psutil.AccessDenied:
        logger.warning("storage_probe_access_denied")
        return False
    missing = [port for port in settings.ports if port not in bound]
    if missing:
        logger.info("storage_emulator_unreachable", missing_ports=missing)
        return False
    logger.debug("storage_emulator_reachable")
    return True
