from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from fastapi import FastAPI, HTTPException, status
from pydantic import BaseModel, Field

from src.cluster.store import ObjectStore
from src.common.readiness import ReadyFlag
from src.status.manager import StatusManager


class ProbeResponse(BaseModel):
    status: str = Field(..., description="Probe outcome")
    flags: Dict[str, bool] = Field(default_factory=dict, description="Readiness flag per watched API")


def create_app(
    status_manager: StatusManager,
    flags: Mapping[str, ReadyFlag],
    store: Optional[ObjectStore] = None,
) -> FastAPI:
    app = FastAPI(
        title="Intrusion Detection Operator",
        description="Health and status probes for the intrusion detection reconciler.",
        version="0.1.0",
    )

    @app.get("/healthz", response_model=ProbeResponse)
    def healthz() -> ProbeResponse:
        return ProbeResponse(status="ok")

    @app.get("/readyz", response_model=ProbeResponse)
    def readyz() -> ProbeResponse:
        current = {name: flag.is_ready() for name, flag in flags.items()}
        if not all(current.values()):
            waiting = sorted(name for name, ready in current.items() if not ready)
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=f"Waiting for {', '.join(waiting)}",
            )
        return ProbeResponse(status="ready", flags=current)

    @app.get("/status")
    def component_status() -> Dict[str, Any]:
        return status_manager.snapshot(store)

    return app


__all__ = ["ProbeResponse", "create_app"]
