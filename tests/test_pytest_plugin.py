"""Tests for the ``mysql_server`` pytest fixture."""
from __future__ import annotations

import socket
import sys
import uuid
from pathlib import Path

import psutil
import pytest
import yaml


def test_plugin_registers_command_line_options(pytester: pytest.Pytester) -> None:
    result = pytester.runpytest("--help")

    result.stdout.fnmatch_lines(["*--mysql-sandbox-port*", "*--mysql-sandbox-config*"])


@pytest.mark.posix_process
@pytest.mark.skipif(sys.platform == "win32", reason="stand-in server relies on shebang scripts")
def test_fixture_starts_and_stops_server_for_session(
    pytester: pytest.Pytester,
    tmp_path: Path,
) -> None:
    script = tmp_path / "dist" / "fake_mysqld"
    script.parent.mkdir(parents=True)
    script.write_text(
        f"#!{sys.executable}\n"
        "import socket, sys\n"
        "port = next(int(a.split('=', 1)[1]) for a in sys.argv if a.startswith('--port='))\n"
        "listener = socket.socket()\n"
        "listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)\n"
        "listener.bind(('127.0.0.1', port))\n"
        "listener.listen(16)\n"
        "while True:\n"
        "    listener.accept()[0].close()\n",
        encoding="utf-8",
    )
    script.chmod(0o755)
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
        probe.bind(("127.0.0.1", 0))
        port = probe.getsockname()[1]

    executable_name = f"msb{uuid.uuid4().hex[:8]}"
    base_dir = tmp_path / "sandbox"
    config_path = tmp_path / "config.yml"
    config_path.write_text(
        yaml.safe_dump(
            {
                "base_dir": str(base_dir),
                "server_binary": str(script),
                "executable_name": executable_name,
                "readiness": {"connector": "tcp"},
            }
        ),
        encoding="utf-8",
    )
    pytester.makepyfile(
        f"""
        import psutil


        def test_server_is_running(mysql_server):
            assert psutil.pid_exists(mysql_server.process_id)
            assert "Port={port};" in mysql_server.connection_string()


        def test_server_is_shared(mysql_server):
            assert mysql_server.server_port == {port}
        """
    )

    result = pytester.runpytest_subprocess(
        f"--mysql-sandbox-config={config_path}",
        f"--mysql-sandbox-port={port}",
    )

    result.assert_outcomes(passed=2)
    assert not (base_dir / "running_instances").exists()
    assert not (base_dir / "tempServer").exists()
    assert [
        proc.pid for proc in psutil.process_iter(["name"]) if proc.info.get("name") == executable_name
    ] == []
