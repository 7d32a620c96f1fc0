"""Entry point for starting and stopping a throwaway MySQL server.

Typical use in a test suite::

    from mysql_sandbox import MySqlServer

    with MySqlServer() as server:
        connect(server.connection_string("app_test"))

Leaving the ``with`` block always kills the server and removes its
directories, including when the block raises. Hosts that cannot use a
``with`` block may call :meth:`MySqlServer.start` and
:meth:`MySqlServer.shutdown` themselves, or use the module-level
:func:`get_or_create` / :func:`shutdown_instance` pair.
"""
from __future__ import annotations

import logging
from types import TracebackType

from .config import SandboxConfig, load_config
from .directories import CleanupTimeoutError, DirectoryManager
from .logging import StructuredLogger
from .models import InstanceLayout, InstanceState
from .providers import LaunchError, ProcessSupervisor, ReapResult, ServerFiles
from .readiness import ConnectionTarget, ReadinessProbe, resolve_connector
from .state import InstanceRegistry

LOGGER = logging.getLogger(__name__)

CONNECTION_STRING_TEMPLATE = "Server=localhost;Port={port};Protocol=pipe;SslMode=none;"


class MySqlServer:
    """Own one sandboxed server instance at a time."""

    def __init__(
        self,
        config: SandboxConfig | None = None,
        *,
        supervisor: ProcessSupervisor | None = None,
        probe: ReadinessProbe | None = None,
        files: ServerFiles | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        """Wire the collaborators from *config*, allowing any of them to be replaced."""
        self._config = config or load_config()
        if supervisor is None:
            readiness = self._config.readiness
            supervisor = ProcessSupervisor(
                registry=InstanceRegistry(self._config.registry_file),
                directories=DirectoryManager(retry_interval=self._config.cleanup.retry_interval),
                probe=probe
                or ReadinessProbe(
                    connector=resolve_connector(readiness.connector),
                    timeout=readiness.timeout,
                    poll_interval=readiness.poll_interval,
                ),
                executable_name=self._config.executable_name,
                exit_timeout=self._config.process.exit_timeout,
                cleanup_timeout=self._config.cleanup.timeout,
                extra_args=self._config.extra_args,
            )
        self._supervisor = supervisor
        self._files = files or ServerFiles.from_paths(
            self._config.server_binary, self._config.share_files
        )
        self._logger = logger or StructuredLogger(self._config.logs_dir)
        self._server_port = self._config.port
        self._layout = InstanceLayout.fresh(self._config.base_dir)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    @property
    def config(self) -> SandboxConfig:
        """Configuration the server was built from."""
        return self._config

    @property
    def server_port(self) -> int:
        """TCP port the server listens on, or will listen on once started."""
        return self._server_port

    @property
    def process_id(self) -> int:
        """OS process id of the server, or ``-1`` when it is not running."""
        return self._supervisor.process_id

    @property
    def state(self) -> InstanceState:
        """Current lifecycle state of the supervised process."""
        return self._supervisor.state

    @property
    def layout(self) -> InstanceLayout:
        """Directories used by the current, or most recent, start."""
        return self._layout

    @property
    def data_dir(self) -> str:
        """Path of the per-start data directory."""
        return str(self._layout.data_dir)

    def connection_string(self, database: str | None = None) -> str:
        """Return a connection string for the server, optionally selecting *database*."""
        value = CONNECTION_STRING_TEMPLATE.format(port=self._server_port)
        if database:
            value += f"Database={database};"
        return value

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self, port: int | None = None) -> None:
        """Start the server and block until it accepts connections.

        Returns immediately when the server is already running. A server
        left behind by a failed start is killed before launching again.
        """
        if self._supervisor.state is InstanceState.RUNNING and self._supervisor.is_running:
            LOGGER.debug("Server already running as process %d", self.process_id)
            return
        if port is not None:
            if not 1 <= port <= 65535:
                raise ValueError(f"port must be between 1 and 65535. Got {port}.")
            self._server_port = port

        layout = InstanceLayout.fresh(self._config.base_dir)
        self._layout = layout
        with self._logger.operation(
            "server start",
            args={"port": self._server_port},
            target={"kind": "server", "data_dir": layout.data_dir},
        ) as op:
            reaped = self._supervisor.kill_previous_instances(layout)
            op.add_step("processes.reap", detail=reaped.to_dict())

            self._supervisor.directories.prepare(layout.directories)
            op.add_step("directories.prepare", detail=layout.to_dict())

            try:
                executable = self._files.install(
                    layout.working_root, self._supervisor.executable_filename
                )
            except LaunchError:
                self._discard_directories(layout)
                raise
            op.add_step("files.install", detail=str(executable))

            self._supervisor.start(layout, self._server_port, self._target())
            op.success(
                "Server started.",
                changed=1,
                context={"pid": self.process_id, "port": self._server_port},
            )

    def shutdown(self) -> None:
        """Kill the server and remove its directories and registry file.

        Safe to call when nothing is running: the kill is skipped but the
        directories and registry file are still removed.
        """
        with self._logger.operation(
            "server shutdown",
            target={"kind": "server", "data_dir": self._layout.data_dir},
        ) as op:
            pid = self.process_id
            self._supervisor.shutdown(self._layout)
            op.success("Server stopped.", changed=int(pid != -1), context={"pid": pid})

    def kill_previous_instances(self) -> ReapResult:
        """Kill leftover servers from earlier runs and remove stale directories."""
        with self._logger.operation(
            "server reap",
            target={"kind": "server", "base_dir": self._config.base_dir},
        ) as op:
            result = self._supervisor.kill_previous_instances(self._layout)
            context = result.to_dict()
            if result.failures:
                op.warning(
                    "Some leftover processes could not be killed.",
                    warnings=[str(failure) for failure in result.failures],
                    changed=len(result.killed),
                    context=context,
                )
            else:
                op.success("Leftover processes reaped.", changed=len(result.killed), context=context)
            return result

    def __enter__(self) -> MySqlServer:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.shutdown()

    # ------------------------------------------------------------------
    def _target(self) -> ConnectionTarget:
        return ConnectionTarget(
            port=self._server_port,
            connect_timeout=self._config.readiness.connect_timeout,
        )

    def _discard_directories(self, layout: InstanceLayout) -> None:
        try:
            self._supervisor.directories.remove_all(
                layout.directories, self._supervisor.cleanup_timeout
            )
        except CleanupTimeoutError as exc:
            LOGGER.warning("Could not remove directories after failed start: %s", exc)


# Process-wide convenience instance. Not reentrant: callers must not invoke
# these helpers concurrently from several threads.
_instance: MySqlServer | None = None


def get_or_create(config: SandboxConfig | None = None) -> MySqlServer:
    """Return the shared :class:`MySqlServer`, creating it on first use.

    *config* is only honoured by the call that creates the instance. The host
    must call :func:`shutdown_instance` before exiting.
    """
    global _instance
    if _instance is None:
        _instance = MySqlServer(config)
    return _instance


def shutdown_instance() -> None:
    """Shut down and forget the shared :class:`MySqlServer`, if any.

    The instance is only forgotten once shutdown succeeds, so a failed
    shutdown can be retried.
    """
    global _instance
    if _instance is None:
        return
    _instance.shutdown()
    _instance = None


__all__ = [
    "CONNECTION_STRING_TEMPLATE",
    "MySqlServer",
    "get_or_create",
    "shutdown_instance",
]
