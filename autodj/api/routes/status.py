"""Read-only status endpoints."""
from __future__ import annotations

from pathlib import Path

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import HTMLResponse, PlainTextResponse, Response
from starlette.templating import Jinja2Templates

from autodj.schemas import HealthStatus, StatusResponse
from autodj.services.engine import RelayEngine

router = APIRouter()

templates = Jinja2Templates(directory=str(Path(__file__).resolve().parents[2] / "templates"))


def _engine(request: Request) -> RelayEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Relay engine not ready")
    return engine


@router.get("/", response_class=PlainTextResponse)
def root() -> str:
    return "ok"


@router.get("/status", response_model=StatusResponse)
def get_status(request: Request, html: bool = False) -> Response | StatusResponse:
    """Return the current relay state, as JSON or as a small HTML page."""

    snapshot = _engine(request).status_snapshot()
    if html:
        return templates.TemplateResponse(request, "status.html", {"status": snapshot})
    return snapshot


@router.get("/health", response_model=HealthStatus)
def get_health(request: Request) -> HealthStatus:
    """Encoder, disk, CPU and memory checks."""

    return _engine(request).health()
