"""
Dirkeeper - Lifecycle Controller
==================================
Orchestrates the managed directory server: first-run provisioning,
credential staging, start, stop, restart, bulk-data loading and
reconciliation of configuration updates.

States:
    STOPPED -> PROVISIONING -> STAGING_CREDENTIALS -> STARTING -> RUNNING
    RUNNING -> STOPPING -> STOPPED
    RUNNING -> RESTARTING -> (STOPPING -> ... -> RUNNING)

First run is detected solely by the install root not existing. A crash
after the root was created but before provisioning finished leaves a tree
that later starts treat as complete; clean it up (or pick a new data path)
before retrying.

One controller per install root, and its calls must be serialized by the
caller. The only locks taken are the server lock (held while running) and
the backend lock taken by DataLoader during a reload.

Usage:
    controller = LifecycleController(server, resolver, data_path="etc/ldap")
    controller.start()
    controller.update({"ldap.port": 9000})   # regenerates config, restarts
    controller.stop()
"""

import os
from enum import Enum
from typing import Any, Iterable, Mapping

from keeper.connectors import ConnectorKind, ConnectorRegistry, KeystoreBinding
from keeper.credentials import CredentialStaging
from keeper.errors import DataImportError, LifecycleError, LockError, SettingError
from keeper.loader import DataLoader
from keeper.locks import SERVER_LOCK, LockFileManager
from keeper.log import SupervisorLogger
from keeper.process import EmbeddedServer, ServerOptions
from keeper.provisioner import (
    CONFIG_RESOURCE,
    DEFAULT_BACKEND_ID,
    FileProvisioner,
    InstallLayout,
)
from keeper.resources import ResourceResolver
from keeper.templates import ConfigTemplateEngine


DEFAULT_DATA_PATH = "etc/keeper/ldap"

# Recognized update settings (port settings are the connectors' port tokens)
BASE_LDIF_SETTING = "base.ldif"
DATA_PATH_SETTING = "dataPath"

SEED_DATA_PATTERN = "default-*.ldif"


class ServerState(Enum):
    STOPPED = "stopped"
    PROVISIONING = "provisioning"
    STAGING_CREDENTIALS = "staging_credentials"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    RESTARTING = "restarting"


class LifecycleController:
    """
    Supervisor of one embedded directory server install.

    Attributes:
        server:     The engine being managed.
        resolver:   Source of default assets and seed data.
        connectors: Desired connector ports.
        keystores:  Key/trust store bindings (pin files staged on every start).
        data_path:  Install root setting (relative paths resolve against cwd).
        backend_id: Backend that receives seed data and base LDIF reloads.
        state:      Current ServerState.
    """

    def __init__(
        self,
        server: EmbeddedServer,
        resolver: ResourceResolver,
        data_path: str = DEFAULT_DATA_PATH,
        backend_id: str = DEFAULT_BACKEND_ID,
        connectors: ConnectorRegistry | None = None,
        keystores: Iterable[KeystoreBinding] | None = None,
        logger: SupervisorLogger | None = None,
    ):
        self.server = server
        self.resolver = resolver
        self.data_path = data_path
        self.backend_id = backend_id
        self.connectors = connectors or ConnectorRegistry()
        self.keystores = list(keystores or [])
        self.logger = logger or SupervisorLogger(echo=False)

        self.engine = ConfigTemplateEngine(self.logger)
        self.provisioner = FileProvisioner(resolver, self.engine, self.logger)
        self.credentials = CredentialStaging(self.logger)

        self.state = ServerState.STOPPED
        self.install_root: str | None = None
        self._locks: LockFileManager | None = None

    # =========================================================================
    # State
    # =========================================================================

    def _set_state(self, state: ServerState) -> None:
        self.state = state
        self.logger.status(state.value, {"install_root": self.install_root})

    @property
    def is_running(self) -> bool:
        return self.server.is_process_running()

    def get_port(self, kind: ConnectorKind) -> int:
        return self.connectors.port(kind)

    def set_port(self, kind: ConnectorKind, port: int) -> None:
        """Set a connector port for the next (re)start. Does not re-bind by itself."""
        self.connectors.set_port(kind, port)

    def layout(self) -> InstallLayout:
        root = self.install_root or os.path.abspath(self.data_path)
        return InstallLayout(root, self.backend_id)

    def _lock_manager(self) -> LockFileManager:
        layout = self.layout()
        if self._locks is None or self._locks.lock_dir != layout.locks_dir:
            self._locks = LockFileManager(layout.locks_dir)
        return self._locks

    def data_loader(self) -> DataLoader:
        """Loader bound to the active install root's lock directory."""
        return DataLoader(self.server.get_backend, self._lock_manager(), self.logger)

    # =========================================================================
    # Start / Stop / Restart
    # =========================================================================

    def start(self) -> None:
        """
        Start the server, provisioning the install root on first run.

        On first run the default-*.ldif seed data is loaded after the server
        is up; if that fails the server is stopped again, since a partly
        loaded base tree is unusable.

        Raises:
            LifecycleError: If the server is already running, or if
                            provisioning, credential staging, start-up or
                            seeding fails.
        """
        if self.server.is_process_running():
            raise LifecycleError("Server is already running")

        self.logger.info("Starting LDAP Server Configuration.")
        install_root = os.path.abspath(self.data_path)
        self.install_root = install_root
        layout = InstallLayout(install_root, self.backend_id)

        try:
            fresh_install = not os.path.exists(install_root)
            if fresh_install:
                self._set_state(ServerState.PROVISIONING)
                self.logger.debug("No initial configuration found, setting defaults.")
                self.provisioner.create_directory_tree(install_root, self.backend_id)
                self.logger.info(f"Storing LDAP configuration at: {install_root}")
                self.logger.info("Copying default files to configuration location.")
                self.provisioner.install_defaults(layout, self.connectors, self.keystores)
            else:
                self.logger.debug(
                    f"Configuration already exists at {install_root}, not setting up defaults."
                )

            self._set_state(ServerState.STAGING_CREDENTIALS)
            self.credentials.stage(self.keystores)

            self._set_state(ServerState.STARTING)
            self._start_process(install_root)
        except LifecycleError as e:
            self.logger.warning(e.message, e.cause)
            self._set_state(ServerState.STOPPED)
            raise

        self._set_state(ServerState.RUNNING)

        if fresh_install:
            self._load_seed_data()
        self.logger.info("LDAP server successfully started.")

    def _start_process(self, install_root: str) -> None:
        locks = self._lock_manager()
        if locks.is_held(SERVER_LOCK) and not self.server.is_process_running():
            # left over from a server that exited on its own
            self.logger.debug("Releasing stale server lock.")
            locks.release(SERVER_LOCK)
        locks.acquire_exclusive(SERVER_LOCK)
        options = ServerOptions(disable_connection_handlers=False, maintain_config_archive=False)
        self.logger.debug("Starting LDAP Server.")
        try:
            self.server.start_process(install_root, options)
        except Exception as e:
            try:
                locks.release(SERVER_LOCK)
            except LockError as le:
                self.logger.warning("Could not release the main server lock file.", le)
            if isinstance(e, LifecycleError):
                raise
            raise LifecycleError("Error while starting embedded server.", e) from e

    def _load_seed_data(self) -> None:
        loader = self.data_loader()
        try:
            # every source is searched, so fragments can ship seed data too
            for identifier, stream in self.resolver.resolve("", SEED_DATA_PATTERN):
                self.logger.debug(f"Installing default LDIF file: {identifier}")
                loader.load_bulk_data(stream, self.backend_id)
        except (LifecycleError, OSError) as e:
            message = "Error encountered during LDIF import, stopping server and cleaning up."
            self.logger.warning(message)
            self.stop()
            if isinstance(e, LifecycleError):
                raise
            raise LifecycleError(message, e) from e

    def stop(self) -> None:
        """
        Stop the server. Stopping a server that is not running is a no-op.

        A server lock that cannot be released is logged, not raised.
        """
        self.logger.info("Stopping LDAP Server")
        if not self.server.is_process_running():
            self.logger.info("Server was not started, it is still stopped.")
            self._set_state(ServerState.STOPPED)
            return

        self._set_state(ServerState.STOPPING)
        try:
            self.server.stop_process()
        except Exception as e:
            self._set_state(ServerState.RUNNING if self.server.is_process_running() else ServerState.STOPPED)
            if isinstance(e, LifecycleError):
                raise
            raise LifecycleError("Error while stopping embedded server.", e) from e

        try:
            self._lock_manager().release(SERVER_LOCK)
        except LockError as e:
            self.logger.warning(
                "Could not release the main server lock file. You may need to terminate "
                "the supervisor to restart the server.",
                e,
            )
        self._set_state(ServerState.STOPPED)
        self.logger.info("LDAP Server successfully stopped.")

    def restart(self) -> None:
        """Stop then start. The engine's own restart primitive is never used."""
        self.logger.info("--Restarting LDAP Server--")
        self._set_state(ServerState.RESTARTING)
        self.stop()
        self.start()
        self.logger.info("LDAP Server successfully restarted.")

    # =========================================================================
    # Bulk data
    # =========================================================================

    def load_ldif_file(self, path: str, backend_id: str | None = None) -> int:
        """
        Replace a backend's contents with the LDIF file at `path`.

        Raises:
            FileNotFoundError: If the file does not exist.
            DataImportError:   If the reload fails.
        """
        with open(path, "rb") as stream:
            return self.data_loader().load_bulk_data(stream, backend_id or self.backend_id)

    # =========================================================================
    # Configuration updates
    # =========================================================================

    def update(self, properties: Mapping[str, Any]) -> bool:
        """
        Reconcile a settings map against the current state.

        Recognized keys: ldap.port, ldaps.port, admin.port, base.ldif,
        dataPath. Anything else is ignored. Unchanged values are skipped.

        Every value is validated before anything changes, so a malformed
        entry leaves ports and data path untouched. A non-empty base.ldif
        is then loaded into the running backend; a missing file or a failed
        reload is only a warning. Port and data path changes need a
        restart, which happens once, after the main config is regenerated.

        Args:
            properties: Setting name -> new value.

        Returns:
            True if the server was restarted.

        Raises:
            SettingError:   On a malformed port value (nothing is applied).
            LifecycleError: If the restart fails.
        """
        self.logger.debug(f"Got an update with {len(properties)} items in it.")

        ports: dict[ConnectorKind, int] = {}
        base_ldif = ""
        new_data_path = None

        for key, value in properties.items():
            self.logger.debug(f"{key}={value}")
            connector = self.connectors.by_port_variable(key)
            if connector is not None:
                new_port = self._parse_port(key, value)
                if new_port == connector.current_port:
                    self.logger.debug(f"{connector.name} Port unchanged, not updating.")
                    continue
                ports[connector.spec.kind] = new_port

            elif key == BASE_LDIF_SETTING:
                base_ldif = "" if value is None else str(value)
                if not base_ldif:
                    self.logger.debug("No new base ldif file, not loading.")

            elif key == DATA_PATH_SETTING:
                path = "" if value is None else str(value)
                if path == self.data_path:
                    self.logger.debug("Data path unchanged, not updating.")
                    continue
                new_data_path = path

        if base_ldif:
            self._reload_base_ldif(base_ldif)

        for kind, port in ports.items():
            self.set_port(kind, port)
        if new_data_path is not None:
            self.data_path = new_data_path

        needs_restart = bool(ports) or new_data_path is not None
        if needs_restart:
            self._regenerate_config()
            self.logger.debug("Calling restart to update configurations.")
            self.restart()
        return needs_restart

    def _reload_base_ldif(self, location: str) -> None:
        try:
            self.load_ldif_file(location)
        except FileNotFoundError:
            self.logger.warning(
                f"Base LDIF file not found at {location}. Could not update base entries."
            )
        except (DataImportError, OSError) as e:
            self.logger.warning(f"Could not load base LDIF file {location}.", e)

    def _parse_port(self, key: str, value: Any) -> int:
        try:
            if isinstance(value, float):
                if not value.is_integer():
                    raise ValueError(f"{value} is not a whole number")
                port = int(value)
            else:
                port = int(str(value).strip())
        except ValueError as e:
            raise SettingError(f"Invalid value for {key}: {value!r}", e) from e
        if port < 0 or port > 65535:
            raise SettingError(f"Port out of range for {key}: {port}")
        return port

    def _regenerate_config(self) -> None:
        """Re-render config.ldif under the active install root with the new ports."""
        if self.install_root is None or not os.path.isdir(self.install_root):
            self.logger.debug("No active install root, config will be written on next start.")
            return
        layout = InstallLayout(self.install_root, self.backend_id)
        self.provisioner.copy_templated_config(
            CONFIG_RESOURCE, layout.config_file, self.connectors, self.keystores
        )
