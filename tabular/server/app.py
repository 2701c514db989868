"""FastAPI application exposing the list API."""

import logging
from datetime import datetime
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..config import Config
from ..errors import TabularError, ValidationError
from ..events import require_int, require_str
from ..service import MutationService

logger = logging.getLogger(__name__)

STATUS_CODES = {
    "validation": 400,
    "not_found": 404,
    "storage": 503,
    "transport": 502,
}


async def _read_body(request: Request) -> dict[str, Any]:
    """Read a JSON or form-encoded request body."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            data = await request.json()
        except ValueError as e:
            raise ValidationError(f"Request body is not valid JSON: {e}") from e
    else:
        data = dict(await request.form())

    if not isinstance(data, dict):
        raise ValidationError("Request body must be an object")
    return data


def create_app(config: Config, service: MutationService) -> FastAPI:
    """Create the list API application.

    Args:
        config: Application configuration.
        service: Connected mutation service that owns store and broadcaster.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="Tabular",
        description="Shared users list with real-time sync",
        version="0.1.0",
    )

    app.state.config = config
    app.state.service = service

    @app.exception_handler(TabularError)
    async def handle_tabular_error(request: Request, exc: TabularError):
        status_code = STATUS_CODES.get(exc.kind, 500)
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected: {exc}")
        return JSONResponse(
            status_code=status_code,
            content={"error": exc.kind, "detail": str(exc)},
        )

    @app.get("/")
    async def index() -> str:
        return "It works!"

    @app.get("/users")
    async def list_users() -> list[dict[str, Any]]:
        """All items in display order."""
        return [item.to_dict() for item in await service.list()]

    @app.post("/add")
    async def add_user(request: Request) -> dict[str, Any]:
        data = await _read_body(request)
        device_id = require_str(data, "deviceId")

        item = await service.add(data.get("name", ""), device_id)
        return {**item.to_dict(), "deviceId": device_id}

    @app.post("/delete")
    async def delete_user(request: Request) -> dict[str, Any]:
        data = await _read_body(request)
        device_id = require_str(data, "deviceId")
        item_id = require_int(data, "id")
        index = require_int(data, "index")

        result = await service.remove(item_id, index, device_id)
        return {"id": result.id, "index": result.index, "deviceId": device_id}

    @app.post("/move")
    async def move_user(request: Request) -> dict[str, Any]:
        data = await _read_body(request)
        device_id = require_str(data, "deviceId")
        src_id = require_int(data, "src_id")
        dest_id = require_int(data, "dest_id")
        src = require_int(data, "src")
        dest = require_int(data, "dest")

        result = await service.move(src_id, dest_id, src, dest, device_id)
        return {
            "src": result.src_index,
            "dest": result.dest_index,
            "src_id": src_id,
            "dest_id": dest_id,
            "deviceId": device_id,
        }

    @app.get("/api/health")
    async def api_health() -> dict[str, Any]:
        """Health check endpoint for monitoring and load balancers.

        Always returns 200 OK; component failures are reported in the body.
        """
        health: dict[str, Any] = {
            "status": "ok",
            "timestamp": datetime.now().isoformat(),
            "device_id": config.device.id,
            "components": service.get_status(),
        }

        try:
            health["components"].update(service.store.get_stats())
        except TabularError as e:
            health["status"] = "degraded"
            health["components"]["store_error"] = str(e)

        return health

    return app
