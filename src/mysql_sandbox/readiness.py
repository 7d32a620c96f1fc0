"""Readiness polling for freshly launched servers.

There is no dependable operating-system signal that ``mysqld`` has opened its
listener, so readiness is established by performing the client handshake
until it succeeds. Each successful connection is closed straight away; the
probe only proves reachability.
"""
from __future__ import annotations

import logging
import socket
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

import pymysql

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
DEFAULT_POLL_INTERVAL = 0.1


class StartupTimeoutError(RuntimeError):
    """Raised when the server does not accept connections in time."""

    def __init__(self, timeout: float, last_error: BaseException | None) -> None:
        """Record the readiness window and the most recent connection error."""
        self.timeout = timeout
        self.last_error = last_error
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(f"Server could not be started within {timeout}s{detail}")


class ProcessExitedError(RuntimeError):
    """Raised when the probed process exits before becoming reachable."""


class Closeable(Protocol):
    """Minimal interface of a connection returned by a connector."""

    def close(self) -> Any:
        """Release the connection."""


@dataclass(frozen=True, slots=True)
class ConnectionTarget:
    """Endpoint and credentials used when probing the server."""

    port: int
    host: str = "localhost"
    user: str = "root"
    password: str = ""
    database: str | None = None
    connect_timeout: float = 1.0


Connector = Callable[[ConnectionTarget], Closeable]


def mysql_connector(target: ConnectionTarget) -> Closeable:
    """Open a MySQL client connection to *target*."""
    return pymysql.connect(
        host=target.host,
        port=target.port,
        user=target.user,
        password=target.password,
        database=target.database,
        connect_timeout=target.connect_timeout,
    )


def tcp_connector(target: ConnectionTarget) -> Closeable:
    """Open a plain TCP connection to *target*."""
    return socket.create_connection(
        (target.host, target.port), timeout=target.connect_timeout
    )


CONNECTORS: Mapping[str, Connector] = {
    "mysql": mysql_connector,
    "tcp": tcp_connector,
}


def resolve_connector(name: str) -> Connector:
    """Return the connector registered under *name*."""
    try:
        return CONNECTORS[name]
    except KeyError:
        allowed = ", ".join(sorted(CONNECTORS))
        raise ValueError(f"Unknown readiness connector '{name}'. Allowed: {allowed}.") from None


@dataclass(slots=True)
class ReadinessProbe:
    """Poll a connector until it succeeds or the timeout elapses."""

    connector: Connector = mysql_connector
    timeout: float = DEFAULT_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def wait_until_ready(
        self,
        target: ConnectionTarget,
        *,
        timeout: float | None = None,
        poll_interval: float | None = None,
        alive: Callable[[], bool] | None = None,
    ) -> float:
        """Block until *target* accepts a connection and return the elapsed seconds.

        When *alive* is supplied it is consulted before every attempt so a
        server that crashed during startup is reported immediately instead of
        after the full timeout.
        """
        total = self.timeout if timeout is None else timeout
        interval = self.poll_interval if poll_interval is None else poll_interval
        started = self.clock()
        last_error: BaseException | None = None

        while True:
            if alive is not None and not alive():
                raise ProcessExitedError(
                    f"Server process exited before accepting connections on port {target.port}."
                )
            try:
                connection = self.connector(target)
            except Exception as exc:  # noqa: BLE001 - any failure means "not ready yet"
                last_error = exc
                elapsed = self.clock() - started
                LOGGER.debug("Server on port %d not ready after %.3fs: %s", target.port, elapsed, exc)
                if elapsed > total:
                    raise StartupTimeoutError(total, last_error) from exc
                self.sleep(interval)
                continue

            _close_quietly(connection)
            elapsed = self.clock() - started
            LOGGER.info(
                "Database connection established after %d milliseconds", int(elapsed * 1000)
            )
            return elapsed


def _close_quietly(connection: Closeable) -> None:
    try:
        connection.close()
    except Exception as exc:  # noqa: BLE001 - reachability is already proven
        LOGGER.debug("Ignoring error while closing probe connection: %s", exc)


__all__ = [
    "CONNECTORS",
    "ConnectionTarget",
    "Connector",
    "ProcessExitedError",
    "ReadinessProbe",
    "StartupTimeoutError",
    "mysql_connector",
    "resolve_connector",
    "tcp_connector",
]
