"""
Dirkeeper - Server Manager
============================
Owns the single LifecycleController behind the management console.

Controller operations block (provisioning, process start/stop, offline
imports), so each one runs in a worker thread via asyncio.to_thread. One
asyncio.Lock serializes them: start/stop/restart/update/import never
overlap, which is the only concurrency guarantee the controller needs.

Log lines and state changes produced in the worker thread reach the
browser through the SupervisorLogger attached to the WebSocket manager.

Usage:
    manager = ServerManager(ws_manager, project_dir)
    await manager.start(config)
    await manager.update({"ldap.port": 9000})
    status = manager.status
"""

import asyncio
import os
from datetime import datetime, timezone
from typing import Any, Callable

from keeper.connectors import ConnectorKind, ConnectorRegistry, default_keystores
from keeper.errors import LifecycleError
from keeper.lifecycle import (
    BASE_LDIF_SETTING,
    DATA_PATH_SETTING,
    LifecycleController,
    ServerState,
)
from keeper.log import SupervisorLogger
from keeper.process import CommandServer
from keeper.resources import ResourceResolver
from server.websocket import WebSocketManager


class ServerManager:
    """
    Bridge between the console and the lifecycle controller.

    Attributes:
        ws:          WebSocket manager for broadcasting to the frontend.
        project_dir: Dirkeeper project root (relative data paths resolve here).
        logger:      Supervisor logger shared with the controller.
        controller:  The LifecycleController, built on first use.
        start_time:  When the server was last started successfully.
        last_error:  Message of the most recent failed operation.
    """

    def __init__(self, ws_manager: WebSocketManager, project_dir: str = ""):
        self.ws = ws_manager
        self.project_dir = project_dir
        self.logger = SupervisorLogger(
            log_dir=os.path.join(project_dir, "data", "logs") if project_dir else None,
            ws_manager=ws_manager,
            verbose=os.environ.get("DIRKEEPER_VERBOSE") == "1",
        )
        self.controller: LifecycleController | None = None
        self.start_time: str | None = None
        self.last_error: str | None = None
        self._lock = asyncio.Lock()

    def attach_loop(self, event_loop: asyncio.AbstractEventLoop) -> None:
        """Route worker-thread log broadcasts onto the console's event loop."""
        self.logger.attach(self.ws, event_loop)

    # -- Controller construction -----------------------------------------------

    def build_controller(self, config: dict, env: dict[str, str] | None = None) -> LifecycleController:
        """
        Create a controller from the "server" config section.

        Args:
            config: Full configuration dict from ConfigManager.load().
            env:    Keystore settings (KEY_STORE, KEY_STORE_PASSWORD, ...).
        """
        settings = config["server"]
        server = CommandServer(
            start_command=settings.get("start_command") or [],
            stop_command=settings.get("stop_command"),
            import_command=settings.get("import_command"),
            backend_disable_command=settings.get("backend_disable_command"),
            backend_enable_command=settings.get("backend_enable_command"),
            stop_timeout=float(settings.get("stop_timeout", 30)),
            logger=self.logger,
        )
        resolver = ResourceResolver(
            [self._resolve_path(d) for d in settings.get("resource_dirs") or []]
        )
        connectors = ConnectorRegistry({
            ConnectorKind.PLAIN: int(settings["ldap_port"]),
            ConnectorKind.TLS: int(settings["ldaps_port"]),
            ConnectorKind.ADMIN: int(settings["admin_port"]),
        })
        return LifecycleController(
            server,
            resolver,
            data_path=self._resolve_path(settings["data_path"]),
            backend_id=settings.get("backend_id") or "userRoot",
            connectors=connectors,
            keystores=default_keystores(env or {}),
            logger=self.logger,
        )

    def _resolve_path(self, path: str) -> str:
        if not path or os.path.isabs(path) or not self.project_dir:
            return path
        return os.path.join(self.project_dir, path)

    def _require_controller(self, config: dict | None, env: dict[str, str] | None) -> LifecycleController:
        if self.controller is None:
            if config is None:
                raise LifecycleError("Server has not been configured yet")
            self.controller = self.build_controller(config, env)
        return self.controller

    # -- Status ----------------------------------------------------------------

    @property
    def state(self) -> str:
        if self.controller is None:
            return ServerState.STOPPED.value
        return self.controller.state.value

    @property
    def is_running(self) -> bool:
        return self.controller is not None and self.controller.is_running

    @property
    def status(self) -> dict[str, Any]:
        """Snapshot for /api/server/status."""
        controller = self.controller
        return {
            "state": self.state,
            "is_running": self.is_running,
            "install_root": controller.install_root if controller else None,
            "ports": controller.connectors.as_dict() if controller else {},
            "start_time": self.start_time,
            "last_error": self.last_error,
            "ws_clients": self.ws.client_count,
        }

    # -- Serialized operations -------------------------------------------------

    async def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking controller call in a worker thread. Caller holds _lock."""
        try:
            result = await asyncio.to_thread(func, *args)
        except LifecycleError as e:
            self.last_error = str(e)
            raise
        self.last_error = None
        return result

    async def _run(self, func: Callable[..., Any], *args: Any) -> Any:
        async with self._lock:
            return await self._call(func, *args)

    async def start(self, config: dict, env: dict[str, str] | None = None) -> dict:
        """
        Start the server, building the controller on first use.

        Raises:
            RuntimeError:   If the server is already running.
            LifecycleError: If the controller fails to start it.
        """
        async with self._lock:
            controller = self._require_controller(config, env)
            if controller.is_running:
                raise RuntimeError("Server is already running")
            await self._call(controller.start)
        self.start_time = datetime.now(timezone.utc).isoformat()
        return self.status

    async def stop(self) -> dict:
        if self.controller is not None:
            await self._run(self.controller.stop)
        return self.status

    async def restart(self, config: dict, env: dict[str, str] | None = None) -> dict:
        controller = self._require_controller(config, env)
        await self._run(controller.restart)
        self.start_time = datetime.now(timezone.utc).isoformat()
        return self.status

    async def update(self, properties: dict[str, Any], config: dict | None = None,
                     env: dict[str, str] | None = None) -> dict:
        """
        Apply an update map (ldap.port, ldaps.port, admin.port, base.ldif, dataPath).

        Relative dataPath and base.ldif values resolve against project_dir,
        the same way build_controller resolves the configured data path.

        Returns:
            Status dict with "restarted" telling whether a restart happened.
        """
        controller = self._require_controller(config, env)
        properties = dict(properties)
        for key in (DATA_PATH_SETTING, BASE_LDIF_SETTING):
            if properties.get(key):
                properties[key] = self._resolve_path(str(properties[key]))
        restarted = await self._run(controller.update, properties)
        if restarted:
            self.start_time = datetime.now(timezone.utc).isoformat()
        return {**self.status, "restarted": restarted}

    async def import_ldif(self, path: str, backend_id: str | None = None) -> int:
        """
        Replace a backend's data with an LDIF file.

        Raises:
            LifecycleError: If the server is not running or the import fails.
        """
        if not self.is_running:
            raise LifecycleError("Server is not running")
        return await self._run(self.controller.load_ldif_file, self._resolve_path(path), backend_id)

    async def reset(self) -> None:
        """Drop a stopped controller so the next start picks up new settings."""
        async with self._lock:
            if self.controller is not None and not self.controller.is_running:
                self.controller = None

    async def shutdown(self) -> None:
        """Stop the server when the console exits."""
        if self.is_running:
            try:
                await self.stop()
            except LifecycleError as e:
                self.logger.error("Could not stop server on shutdown", e)
