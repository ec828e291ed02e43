from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Dict, List, Sequence

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config_file import ConfigWriteError
from .server import ShadowsocksServer
from .types import AccessKey, ProcessState

LOGGER = logging.getLogger("SSSupervisor.API")


class AccessKeySet(BaseModel):
    """Full desired key set pushed by key-management tooling."""

    keys: List[Dict[str, Any]] = Field(default_factory=list)


def create_app(
    server: ShadowsocksServer,
    *,
    initial_keys: Sequence[AccessKey] | None = None,
) -> FastAPI:
    app = FastAPI(title="Shadowsocks Supervisor", version="0.1.0")

    @app.on_event("startup")
    async def _startup() -> None:  # pragma: no cover - FastAPI lifecycle glue
        if initial_keys is not None:
            await server.update(initial_keys)

    @app.on_event("shutdown")
    async def _shutdown() -> None:  # pragma: no cover - FastAPI lifecycle glue
        await server.shutdown()

    @app.get("/live")
    async def live() -> Dict[str, str]:
        return {"status": "alive"}

    @app.get("/ready")
    async def ready() -> JSONResponse:
        snapshot = server.supervisor.snapshot()
        running = server.supervisor.state is ProcessState.RUNNING
        status_code = 200 if running else 503
        if not running:
            LOGGER.warning(
                "Supervisor readiness failing: outline-ss-server is %s.",
                snapshot["state"],
            )
        return JSONResponse(
            status_code=status_code,
            content={"status": "ready" if running else "degraded", **snapshot},
        )

    @app.put("/access-keys")
    async def put_access_keys(payload: AccessKeySet) -> Dict[str, Any]:
        LOGGER.info("Received key set with %s record(s).", len(payload.keys))
        try:
            result = await server.update(payload.keys)
        except ConfigWriteError as exc:
            LOGGER.error("Failed to persist key set: %s", exc)
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return asdict(result)

    return app
