from __future__ import annotations

import logging
from typing import Any, Optional

import httpx
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field

from .config import Settings, settings as default_settings
from .errors import ScenarioError, SessionNotFound
from .models import Target
from .scenarios import PRESETS, resolve
from .server import HarnessServer
from .ui import router as ui_router

logger = logging.getLogger("harness")


class StartRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    target_a_url: Optional[str] = Field(default=None, alias="targetAUrl")
    target_b_url: Optional[str] = Field(default=None, alias="targetBUrl")
    target_a_name: Optional[str] = Field(default=None, alias="targetAName")
    target_b_name: Optional[str] = Field(default=None, alias="targetBName")
    scenario_name: Optional[str] = Field(default=None, alias="scenarioName")
    custom_scenario: Optional[Any] = Field(default=None, alias="customScenario")


def create_app(
    settings: Optional[Settings] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    settings = settings or default_settings
    logger.setLevel(settings.log_level)

    harness = HarnessServer(settings, transport=transport)
    app = FastAPI(title="Runtime comparison load harness", version="1.0")
    app.state.harness = harness
    app.include_router(ui_router)

    @app.on_event("startup")
    async def _startup() -> None:
        await harness.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await harness.shutdown()

    @app.get("/health")
    def health() -> dict:
        return harness.health()

    @app.get("/metrics", response_class=PlainTextResponse)
    def get_metrics() -> str:
        return harness.metrics.snapshot()

    @app.get("/api/configurations")
    def configurations() -> dict:
        return {name: cfg.to_dict() for name, cfg in PRESETS.items()}

    @app.get("/api/sessions")
    def sessions() -> list:
        return [s.summary() for s in harness.sessions.values()]

    @app.post("/api/test/start", status_code=202)
    async def start_test(body: StartRequest) -> dict:
        if not body.target_a_url or not body.target_b_url:
            raise HTTPException(status_code=400, detail="Both targetAUrl and targetBUrl are required")
        try:
            scenario = resolve(body.scenario_name, body.custom_scenario)
            session = harness.start_session(
                Target(body.target_a_name or settings.target_a_name, body.target_a_url),
                Target(body.target_b_name or settings.target_b_name, body.target_b_url),
                scenario,
            )
        except ScenarioError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"sessionId": session.id, "message": "Comparison test started"}

    @app.post("/api/test/stop/{session_id}")
    async def stop_test(session_id: str) -> dict:
        try:
            session = await harness.stop_session(session_id)
        except SessionNotFound:
            raise HTTPException(status_code=404, detail="Session not found")
        return {"message": "Test stopped", "sessionId": session.id, "status": session.status.value}

    @app.get("/api/test/results/{session_id}")
    def results(session_id: str) -> JSONResponse:
        try:
            session = harness.get_session(session_id)
        except SessionNotFound:
            raise HTTPException(status_code=404, detail="Session not found")
        return JSONResponse(session.to_dict())

    @app.websocket("/ws")
    async def stream(ws: WebSocket) -> None:
        await ws.accept()
        harness.broadcaster.add(ws)
        logger.info("Observer connected (%d total)", len(harness.broadcaster))
        try:
            while True:
                # inbound messages carry no meaning; log and ignore
                message = await ws.receive_text()
                logger.debug("Observer message: %s", message)
        except WebSocketDisconnect:
            pass
        finally:
            harness.broadcaster.discard(ws)
            logger.info("Observer disconnected (%d total)", len(harness.broadcaster))

    return app


app = create_app()
