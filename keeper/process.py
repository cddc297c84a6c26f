"""
Dirkeeper - Process Supervision
=================================
Boundary between the lifecycle core and the directory server engine.

EmbeddedServer is what the controller drives: start, stop, is-running and
backend lookup. The engine's own restart primitive is never used (in the
embedded engine it terminates the host process); restart is always
stop + start.

CommandServer runs the engine as a child process using operator-supplied
command lines, e.g. for an OpenDJ install:

    start_command:  ["{install_root}/bin/start-ds", "--nodetach"]
    import_command: ["{install_root}/bin/import-ldif", "--offline",
                     "--backendID", "{backend_id}", "--ldifFile", "{ldif_file}",
                     "--clearBackend", "--skipSchemaValidation"]

Placeholders {install_root}, {backend_id} and {ldif_file} are substituted
in every argument.
"""

import os
import subprocess
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Sequence

from keeper.backends import Backend, ImportConfig, ImportResult, count_ldif_entries
from keeper.errors import DataImportError, LifecycleError
from keeper.log import SupervisorLogger


@dataclass(frozen=True)
class ServerOptions:
    """Environment descriptor handed to the engine at start."""
    disable_connection_handlers: bool = False
    maintain_config_archive: bool = False


class EmbeddedServer(ABC):
    """The managed directory server, as seen by the controller."""

    @abstractmethod
    def start_process(self, install_root: str, options: ServerOptions) -> None:
        """Start serving from `install_root`. Blocks until started or failed."""

    @abstractmethod
    def stop_process(self) -> None:
        """Stop serving. Blocks until stopped."""

    @abstractmethod
    def is_process_running(self) -> bool:
        ...

    @abstractmethod
    def get_backend(self, backend_id: str) -> Backend | None:
        """Live backend handle, or None if the server has no such backend."""


def _expand(command: Sequence[str], **values: str) -> list[str]:
    return [str(arg).format(**values) for arg in command]


class CommandBackend(Backend):
    """
    Backend of a CommandServer, reloaded through the engine's offline tools.

    finalize()/initialize() run the optional disable/enable commands;
    import_ldif() spools the stream to a file in the backend's db directory
    and runs the import command on it.
    """

    def __init__(self, backend_id: str, server: "CommandServer"):
        super().__init__(backend_id)
        self.server = server

    def finalize(self) -> None:
        if self.server.backend_disable_command:
            self.server.run_tool(self.server.backend_disable_command, backend_id=self.backend_id)

    def initialize(self) -> None:
        if self.server.backend_enable_command:
            self.server.run_tool(self.server.backend_enable_command, backend_id=self.backend_id)

    def import_ldif(self, config: ImportConfig) -> ImportResult:
        if not self.server.import_command:
            raise DataImportError("No import command configured")

        data = config.stream.read()
        spool_dir = os.path.join(self.server.install_root, "db")
        fd, ldif_file = tempfile.mkstemp(prefix=f"{self.backend_id}-", suffix=".ldif", dir=spool_dir)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            self.server.run_tool(
                self.server.import_command,
                backend_id=self.backend_id,
                ldif_file=ldif_file,
            )
        finally:
            os.remove(ldif_file)

        count = count_ldif_entries(data)
        return ImportResult(entries_read=count, entries_imported=count)


class CommandServer(EmbeddedServer):
    """
    Runs the engine as a child process.

    Attributes:
        start_command: Argument list that runs the server in the foreground.
        stop_command:  Optional argument list for a graceful stop.
        import_command, backend_disable_command, backend_enable_command:
                       Optional offline tool invocations used for reloads.
        stop_timeout:  Seconds to wait for the child before killing it.
        startup_grace: Seconds a fresh child must survive to count as started.
    """

    def __init__(
        self,
        start_command: Sequence[str],
        stop_command: Sequence[str] | None = None,
        import_command: Sequence[str] | None = None,
        backend_disable_command: Sequence[str] | None = None,
        backend_enable_command: Sequence[str] | None = None,
        stop_timeout: float = 30.0,
        tool_timeout: float = 600.0,
        startup_grace: float = 0.5,
        logger: SupervisorLogger | None = None,
    ):
        self.start_command = list(start_command)
        self.stop_command = list(stop_command or [])
        self.import_command = list(import_command or [])
        self.backend_disable_command = list(backend_disable_command or [])
        self.backend_enable_command = list(backend_enable_command or [])
        self.stop_timeout = stop_timeout
        self.tool_timeout = tool_timeout
        self.startup_grace = startup_grace
        self.logger = logger or SupervisorLogger(echo=False)

        self.install_root: str = ""
        self._process: subprocess.Popen | None = None

    def start_process(self, install_root: str, options: ServerOptions) -> None:
        if self.is_process_running():
            raise LifecycleError("Server process is already running")
        if not self.start_command:
            raise LifecycleError("No start command configured")

        self.install_root = install_root
        env = dict(os.environ)
        env["KEEPER_INSTALL_ROOT"] = install_root
        env["KEEPER_DISABLE_CONNECTION_HANDLERS"] = str(options.disable_connection_handlers).lower()
        env["KEEPER_MAINTAIN_CONFIG_ARCHIVE"] = str(options.maintain_config_archive).lower()

        command = _expand(self.start_command, install_root=install_root, backend_id="", ldif_file="")
        self.logger.debug(f"Launching: {' '.join(command)}")
        try:
            self._process = subprocess.Popen(
                command,
                cwd=install_root,
                env=env,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            raise LifecycleError("Error while starting embedded server.", e) from e

        # a start command that exits immediately never came up
        try:
            code = self._process.wait(timeout=self.startup_grace)
        except subprocess.TimeoutExpired:
            return
        self._process = None
        raise LifecycleError(f"Server process exited during start-up with code {code}")

    def stop_process(self) -> None:
        process = self._process
        if process is None:
            return

        if self.stop_command:
            try:
                self.run_tool(self.stop_command)
            except LifecycleError as e:
                self.logger.warning("Stop command failed, terminating server process", e)
        if process.poll() is None:
            process.terminate()
        try:
            process.wait(timeout=self.stop_timeout)
        except subprocess.TimeoutExpired:
            self.logger.warning(f"Server did not stop within {self.stop_timeout}s, killing it.")
            process.kill()
            process.wait()
        self._process = None

    def is_process_running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def get_backend(self, backend_id: str) -> Backend | None:
        if not self.install_root:
            return None
        if not os.path.isdir(os.path.join(self.install_root, "db", backend_id)):
            return None
        return CommandBackend(backend_id, self)

    def run_tool(self, command: Sequence[str], backend_id: str = "", ldif_file: str = "") -> str:
        """
        Run one of the engine's command-line tools to completion.

        Returns:
            The tool's standard output.

        Raises:
            LifecycleError: If the tool cannot be run or exits non-zero.
        """
        args = _expand(
            command,
            install_root=self.install_root,
            backend_id=backend_id,
            ldif_file=ldif_file,
        )
        self.logger.debug(f"Running: {' '.join(args)}")
        try:
            result = subprocess.run(
                args,
                cwd=self.install_root or None,
                capture_output=True,
                text=True,
                timeout=self.tool_timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise LifecycleError(f"Could not run {args[0]}", e) from e
        if result.returncode != 0:
            detail = (result.stderr or result.stdout).strip()[:500]
            raise LifecycleError(f"{args[0]} exited with code {result.returncode}: {detail}")
        return result.stdout
