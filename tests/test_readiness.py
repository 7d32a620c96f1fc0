"""Tests for the readiness probe."""
from __future__ import annotations

import logging
import socket
from typing import TYPE_CHECKING

import pytest

from mysql_sandbox import readiness
from mysql_sandbox.readiness import (
    ConnectionTarget,
    ProcessExitedError,
    ReadinessProbe,
    StartupTimeoutError,
    mysql_connector,
    resolve_connector,
    tcp_connector,
)

if TYPE_CHECKING:
    from conftest import FakeClock


class _Connection:
    def __init__(self, *, fail_close: bool = False) -> None:
        self.closed = False
        self.fail_close = fail_close

    def close(self) -> None:
        self.closed = True
        if self.fail_close:
            raise OSError("already closed")


class _ScriptedConnector:
    """Fail a fixed number of times, then hand out a connection."""

    def __init__(self, failures: int, connection: _Connection | None = None) -> None:
        self.failures = failures
        self.connection = connection or _Connection()
        self.calls: list[ConnectionTarget] = []

    def __call__(self, target: ConnectionTarget) -> _Connection:
        self.calls.append(target)
        if len(self.calls) <= self.failures:
            raise ConnectionRefusedError(f"attempt {len(self.calls)} refused")
        return self.connection


def _probe(connector: object, clock: FakeClock, **kwargs: float) -> ReadinessProbe:
    return ReadinessProbe(
        connector=connector,  # type: ignore[arg-type]
        clock=clock,
        sleep=clock.sleep,
        **kwargs,
    )


def test_ready_on_first_attempt(fake_clock: FakeClock) -> None:
    connector = _ScriptedConnector(failures=0)

    elapsed = _probe(connector, fake_clock).wait_until_ready(ConnectionTarget(port=3306))

    assert elapsed == 0
    assert connector.connection.closed is True
    assert fake_clock.sleeps == []


def test_three_refusals_then_success(
    fake_clock: FakeClock,
    caplog: pytest.LogCaptureFixture,
) -> None:
    connector = _ScriptedConnector(failures=3)
    probe = _probe(connector, fake_clock, timeout=10.0, poll_interval=0.1)

    with caplog.at_level(logging.INFO, logger="mysql_sandbox.readiness"):
        elapsed = probe.wait_until_ready(ConnectionTarget(port=3307))

    assert len(connector.calls) == 4
    assert fake_clock.sleeps == [0.1, 0.1, 0.1]
    assert elapsed == pytest.approx(0.3)
    assert connector.connection.closed is True
    assert "Database connection established after 300 milliseconds" in caplog.text


def test_timeout_reports_last_connection_error(fake_clock: FakeClock) -> None:
    connector = _ScriptedConnector(failures=10_000)
    probe = _probe(connector, fake_clock, timeout=1.0, poll_interval=0.25)

    with pytest.raises(StartupTimeoutError) as excinfo:
        probe.wait_until_ready(ConnectionTarget(port=3306))

    error = excinfo.value
    assert error.timeout == 1.0
    assert isinstance(error.last_error, ConnectionRefusedError)
    assert str(error.last_error) == f"attempt {len(connector.calls)} refused"
    assert error.__cause__ is error.last_error
    assert "within 1.0s" in str(error)
    # Attempts at 0, 0.25, 0.5, 0.75, 1.0 and the final one at 1.25.
    assert len(connector.calls) == 6


def test_call_arguments_override_probe_defaults(fake_clock: FakeClock) -> None:
    connector = _ScriptedConnector(failures=10_000)
    probe = _probe(connector, fake_clock, timeout=60.0, poll_interval=5.0)

    with pytest.raises(StartupTimeoutError) as excinfo:
        probe.wait_until_ready(ConnectionTarget(port=3306), timeout=0.2, poll_interval=0.1)

    assert excinfo.value.timeout == 0.2
    assert set(fake_clock.sleeps) == {0.1}


def test_exited_process_stops_polling(fake_clock: FakeClock) -> None:
    connector = _ScriptedConnector(failures=1)
    alive_answers = iter([True, False])
    probe = _probe(connector, fake_clock)

    with pytest.raises(ProcessExitedError, match="port 3306"):
        probe.wait_until_ready(ConnectionTarget(port=3306), alive=lambda: next(alive_answers))

    assert len(connector.calls) == 1


def test_close_errors_are_ignored(fake_clock: FakeClock) -> None:
    connection = _Connection(fail_close=True)
    connector = _ScriptedConnector(failures=0, connection=connection)

    _probe(connector, fake_clock).wait_until_ready(ConnectionTarget(port=3306))

    assert connection.closed is True


def test_resolve_connector_by_name() -> None:
    assert resolve_connector("mysql") is mysql_connector
    assert resolve_connector("tcp") is tcp_connector
    with pytest.raises(ValueError, match="Unknown readiness connector 'odbc'"):
        resolve_connector("odbc")


def test_mysql_connector_passes_target_to_pymysql(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}
    connection = _Connection()

    def fake_connect(**kwargs: object) -> _Connection:
        captured.update(kwargs)
        return connection

    monkeypatch.setattr(readiness.pymysql, "connect", fake_connect)

    result = mysql_connector(ConnectionTarget(port=3307, database="mydb", connect_timeout=2.0))

    assert result is connection
    assert captured == {
        "host": "localhost",
        "port": 3307,
        "user": "root",
        "password": "",
        "database": "mydb",
        "connect_timeout": 2.0,
    }


def test_tcp_connector_reaches_listening_socket() -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as listener:
        listener.bind(("127.0.0.1", 0))
        listener.listen(1)
        port = listener.getsockname()[1]

        connection = tcp_connector(ConnectionTarget(port=port, host="127.0.0.1"))
        connection.close()


def test_tcp_connector_refused_on_closed_port() -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe_socket:
        probe_socket.bind(("127.0.0.1", 0))
        port = probe_socket.getsockname()[1]

    with pytest.raises(OSError):
        tcp_connector(ConnectionTarget(port=port, host="127.0.0.1", connect_timeout=0.5))
