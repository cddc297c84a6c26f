"""
Dirkeeper - REST API
======================
Endpoints of the management console, all under /api:

    auth/status, auth/setup, auth/login      open
    auth/password                            token
    config, config/secrets                   token   (GET and PUT)
    server/status                            token
    server/start|stop|restart|update|import  token
    logs                                     token

Lifecycle failures map onto HTTP codes as follows: a malformed setting
is 400, a missing backend or file is 404, a busy lock or a server in the
wrong state is 409, and everything else is 500.
"""

from typing import Any, Awaitable

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from keeper.errors import BackendNotFoundError, LifecycleError, LockError, SettingError
from server.auth import MIN_PASSWORD_LENGTH, AuthManager, require_auth
from server.config import ConfigManager, update_request
from server.manager import ServerManager


# -- Payloads -----------------------------------------------------------------

class PasswordBody(BaseModel):
    password: str = Field(..., min_length=1)


class PasswordChangeBody(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=MIN_PASSWORD_LENGTH)


class TokenReply(BaseModel):
    token: str
    message: str = "success"


class ConfigPatch(BaseModel):
    """Sections to deep-merge into config.yaml; omitted sections stay as they are."""
    web: dict | None = None
    server: dict | None = None


class UpdateBody(BaseModel):
    """e.g. {"properties": {"ldap.port": 9000, "base.ldif": "/srv/base.ldif"}}"""
    properties: dict[str, Any]


class ImportBody(BaseModel):
    path: str = Field(..., min_length=1, description="LDIF file on the server host")
    backend_id: str | None = Field(None, description="Defaults to the configured backend")


ERROR_STATUS = (
    (SettingError, 400),
    (BackendNotFoundError, 404),
    (FileNotFoundError, 404),
    (LockError, 409),
    (RuntimeError, 409),
)


def _http_error(e: Exception) -> HTTPException:
    for error_type, code in ERROR_STATUS:
        if isinstance(e, error_type):
            return HTTPException(status_code=code, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


async def _lifecycle(call: Awaitable[Any]) -> Any:
    """Await a ServerManager call, turning lifecycle failures into HTTP errors."""
    try:
        return await call
    except (LifecycleError, RuntimeError, FileNotFoundError) as e:
        raise _http_error(e)


def create_router(
    auth_manager: AuthManager,
    config_manager: ConfigManager,
    server_manager: ServerManager,
) -> APIRouter:
    """
    Build the /api router.

    Args:
        auth_manager:   Operator password and token checks.
        config_manager: config.yaml and .env access.
        server_manager: Serialized access to the lifecycle controller.
    """
    router = APIRouter(prefix="/api")
    protected = [Depends(require_auth(auth_manager))]

    def settings() -> tuple[dict, dict[str, str]]:
        return config_manager.load(), config_manager.keystore_env()

    # -- Auth ------------------------------------------------------------------

    @router.get("/auth/status")
    async def auth_status():
        return {"is_configured": auth_manager.is_configured()}

    @router.post("/auth/setup", response_model=TokenReply)
    async def auth_setup(body: PasswordBody):
        """Set the first operator password. Refused once one exists."""
        try:
            token = auth_manager.setup_password(body.password)
        except (ValueError, RuntimeError) as e:
            raise HTTPException(status_code=400, detail=str(e))
        return TokenReply(token=token, message="Setup complete")

    @router.post("/auth/login", response_model=TokenReply)
    async def auth_login(body: PasswordBody):
        token = auth_manager.verify_password(body.password)
        if token is None:
            raise HTTPException(status_code=401, detail="Invalid password")
        return TokenReply(token=token)

    @router.post("/auth/password", response_model=TokenReply, dependencies=protected)
    async def auth_password(body: PasswordChangeBody):
        try:
            changed = auth_manager.change_password(body.current_password, body.new_password)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        if not changed:
            raise HTTPException(status_code=401, detail="Current password is incorrect")
        return TokenReply(token=auth_manager.verify_password(body.new_password),
                          message="Password changed")

    # -- Configuration ---------------------------------------------------------

    @router.get("/config", dependencies=protected)
    async def read_config():
        return config_manager.load()

    @router.put("/config", dependencies=protected)
    async def write_config(patch: ConfigPatch):
        """
        Merge and persist a partial config.

        If the server is running, changed ports, data path and base LDIF
        go through the update path right away. Otherwise a stopped
        controller is discarded so the next start is built from the new
        settings.
        """
        updates = patch.model_dump(exclude_none=True)
        if not updates:
            raise HTTPException(status_code=400, detail="No updates provided")

        before = config_manager.load()["server"]
        config = config_manager.update(updates)
        changes = update_request(before, config["server"])

        reply: dict[str, Any] = {"config": config, "applied": {}}
        if changes and server_manager.is_running:
            reply["server"] = await _lifecycle(
                server_manager.update(changes, config, config_manager.keystore_env())
            )
            reply["applied"] = changes
        elif "server" in updates:
            await server_manager.reset()
        return reply

    @router.get("/config/secrets", dependencies=protected)
    async def read_secrets():
        return config_manager.get_secrets()

    @router.put("/config/secrets", dependencies=protected)
    async def write_secrets(body: dict[str, Any]):
        """Store keystore settings; a running server picks them up after a stop."""
        try:
            config_manager.set_secrets(body)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        await server_manager.reset()
        return {"message": "Secrets updated", **config_manager.get_secrets()}

    # -- Server lifecycle ------------------------------------------------------

    @router.get("/server/status", dependencies=protected)
    async def server_status():
        return server_manager.status

    @router.post("/server/start", dependencies=protected)
    async def server_start():
        status = await _lifecycle(server_manager.start(*settings()))
        return {"message": "Server started", "status": status}

    @router.post("/server/stop", dependencies=protected)
    async def server_stop():
        status = await _lifecycle(server_manager.stop())
        return {"message": "Server stopped", "status": status}

    @router.post("/server/restart", dependencies=protected)
    async def server_restart():
        status = await _lifecycle(server_manager.restart(*settings()))
        return {"message": "Server restarted", "status": status}

    @router.post("/server/update", dependencies=protected)
    async def server_update(body: UpdateBody):
        """Apply an update map without writing it to config.yaml. Unknown keys are ignored."""
        status = await _lifecycle(server_manager.update(body.properties, *settings()))
        return {"message": "Update applied", "status": status}

    @router.post("/server/import", dependencies=protected)
    async def server_import(body: ImportBody):
        if not server_manager.is_running:
            raise HTTPException(status_code=409, detail="Server is not running")
        count = await _lifecycle(server_manager.import_ldif(body.path, body.backend_id))
        return {"message": f"{count} entries imported", "entries_imported": count}

    # -- Logs ------------------------------------------------------------------

    @router.get("/logs", dependencies=protected)
    async def logs(lines: int = Query(100, ge=1, le=1000)):
        return server_manager.logger.tail(lines)

    return router
