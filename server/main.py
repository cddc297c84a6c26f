"""
Dirkeeper - Console Application
=================================
Application factory for the management console.

On startup the supervisor logger is bound to the running event loop,
config.yaml problems are reported, and the directory server is started
when server.autostart is set. On shutdown a running server is stopped.
"""

import asyncio
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from keeper.errors import LifecycleError
from server.auth import AuthManager
from server.config import ConfigManager
from server.manager import ServerManager
from server.routes import create_router
from server.websocket import WebSocketManager


PROJECT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def create_app(project_dir: str | None = None) -> FastAPI:
    """
    Build the console app.

    Args:
        project_dir: Holds config.yaml, .env and data/. Defaults to the
                     checkout this package lives in.
    """
    project_dir = project_dir or PROJECT_DIR
    data_dir = os.path.join(project_dir, "data")
    os.makedirs(data_dir, exist_ok=True)

    config_manager = ConfigManager(project_dir)
    auth_manager = AuthManager(data_dir)
    ws_manager = WebSocketManager()
    server_manager = ServerManager(ws_manager, project_dir=project_dir)

    async def autostart() -> None:
        config = config_manager.load()
        if "_config_error" in config:
            server_manager.logger.error(f"config.yaml ignored: {config['_config_error']}")
        if not config["server"].get("autostart"):
            return
        try:
            await server_manager.start(config, config_manager.keystore_env())
        except (RuntimeError, LifecycleError) as e:
            server_manager.logger.error("Autostart failed", e)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        server_manager.attach_loop(asyncio.get_running_loop())
        await autostart()
        yield
        await server_manager.shutdown()

    app = FastAPI(
        title="Dirkeeper",
        description="Supervisor console for an embedded LDAP directory server",
        version="1.0.0",
        redoc_url=None,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.config_manager = config_manager
    app.state.auth_manager = auth_manager
    app.state.ws_manager = ws_manager
    app.state.server_manager = server_manager

    app.include_router(create_router(auth_manager, config_manager, server_manager))

    @app.websocket("/ws")
    async def events(websocket: WebSocket):
        """Log lines and state changes; the current state is sent on connect."""
        await ws_manager.connect(websocket)
        await ws_manager.send_status(server_manager.state, server_manager.status)
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            ws_manager.disconnect(websocket)

    return app
