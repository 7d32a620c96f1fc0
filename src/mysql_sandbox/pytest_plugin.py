"""pytest plugin exposing a session-wide sandboxed MySQL server.

Registered through the ``pytest11`` entry point, so installing the package is
enough::

    def test_schema(mysql_server):
        engine = create_engine_from(mysql_server.connection_string("app"))
"""
from __future__ import annotations

from collections.abc import Iterator

import pytest

from .config import load_config
from .server import MySqlServer


def pytest_addoption(parser: pytest.Parser) -> None:
    """Register command-line options for the sandbox fixture."""
    group = parser.getgroup("mysql-sandbox")
    group.addoption(
        "--mysql-sandbox-port",
        action="store",
        type=int,
        default=None,
        help="Port for the sandboxed MySQL server (defaults to the configured port).",
    )
    group.addoption(
        "--mysql-sandbox-config",
        action="store",
        default=None,
        help="Path to a mysql-sandbox YAML config file.",
    )


@pytest.fixture(scope="session")
def mysql_server(request: pytest.FixtureRequest) -> Iterator[MySqlServer]:
    """Start one server for the whole session and tear it down afterwards."""
    config = load_config(config_file=request.config.getoption("--mysql-sandbox-config"))
    server = MySqlServer(config)
    server.start(request.config.getoption("--mysql-sandbox-port"))
    try:
        yield server
    finally:
        server.shutdown()
