"""FastAPI dashboard application."""

import json
import logging
from datetime import datetime
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .. import __version__
from ..config import Config
from ..device import RATE_LIMITED, Device
from ..drinks import DrinkCategory

logger = logging.getLogger(__name__)


def create_app(config: Config, device: Device) -> FastAPI:
    """Create the FastAPI dashboard application.

    Args:
        config: Application configuration.
        device: The device whose replica is shown and written.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="SipSync Dashboard",
        description="Drink log, statistics and sync status for one device",
        version=__version__,
    )

    # Store references for route handlers
    app.state.config = config
    app.state.device = device

    # ==================== API Routes (JSON) ====================

    @app.get("/api/stats")
    async def api_stats() -> dict[str, Any]:
        """Get derived statistics for the current replica."""
        stats = device.stats().to_dict()
        stats["device"] = config.device.name
        return stats

    @app.get("/api/entries")
    async def api_entries(limit: int = 50) -> dict[str, Any]:
        """List entries, newest first."""
        entries = device.entries(limit=max(limit, 0))
        return {
            "count": len(entries),
            "total": len(device.replica()),
            "entries": [e.to_dict() for e in entries],
        }

    @app.post("/api/entries")
    async def api_log_entry(request: Request) -> JSONResponse:
        """Log a drink, subject to this device's cooldown and entry bounds."""
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError, RecursionError):
            return JSONResponse({"error": "Body must be JSON"}, status_code=400)

        if not isinstance(body, dict) or "drink_type" not in body:
            return JSONResponse({"error": "drink_type is required"}, status_code=400)
        if not isinstance(body["drink_type"], str):
            return JSONResponse({"error": "drink_type must be a string"}, status_code=400)

        custom_ounces = body.get("custom_ounces")
        if custom_ounces is not None and (
            isinstance(custom_ounces, bool) or not isinstance(custom_ounces, (int, float))
        ):
            return JSONResponse({"error": "custom_ounces must be a number"}, status_code=400)

        note = body.get("note")
        if note is not None and not isinstance(note, str):
            return JSONResponse({"error": "note must be a string"}, status_code=400)

        try:
            timestamp = None
            if body.get("timestamp") is not None:
                timestamp = datetime.fromisoformat(body["timestamp"])
            result = await device.log_drink(
                body["drink_type"],
                custom_ounces=custom_ounces,
                note=note,
                timestamp=timestamp,
            )
        except (TypeError, ValueError, OverflowError) as e:
            return JSONResponse({"error": str(e)}, status_code=400)

        if not result.allowed:
            return JSONResponse(
                {"allowed": False, "message": result.message, "reason": result.reason},
                status_code=429 if result.reason == RATE_LIMITED else 422,
            )

        return JSONResponse(
            {"allowed": True, "entry": result.entry.to_dict()},
            status_code=201,
        )

    @app.get("/api/changes")
    async def api_changes() -> dict[str, Any]:
        """Report whether synced data arrived since the last poll, and clear it."""
        changed = False
        if device.coordinator:
            changed = device.coordinator.acknowledge_data_changed()
        return {"changed": changed}

    @app.get("/api/status")
    async def api_status() -> dict[str, Any]:
        """Get storage, rate limiter and sync status."""
        status = device.get_status()
        status["timestamp"] = datetime.now().isoformat()
        return status

    @app.get("/api/drink-types")
    async def api_drink_types() -> dict[str, Any]:
        """List drink types grouped by category."""
        return {
            "categories": [
                {
                    "name": category.value,
                    "types": [
                        {
                            "type": t.value,
                            "short_name": t.short_name,
                            "ounces": t.ounces,
                        }
                        for t in category.types
                    ],
                }
                for category in DrinkCategory
            ]
        }

    @app.get("/api/health")
    async def api_health() -> dict[str, Any]:
        """Health check endpoint.

        Always returns 200 OK; component problems are reported in the body.
        """
        health: dict[str, Any] = {
            "status": "ok",
            "timestamp": datetime.now().isoformat(),
            "device": config.device.name,
            "components": {
                "sync": device.coordinator is not None,
            },
        }

        try:
            health["components"]["entries"] = len(device.replica())
            decode_error = device.store.last_decode_error
            if decode_error:
                health["components"]["store_error"] = decode_error
        except Exception as e:
            logger.error(f"Health check failed to read store: {e}")
            health["components"]["store_error"] = str(e)

        if device.coordinator:
            health["components"]["sync_state"] = device.coordinator.state.value

        return health

    return app
