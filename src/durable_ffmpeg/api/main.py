from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from durable_ffmpeg.config import resolve_config
from durable_ffmpeg.errors import EncodingError, TransientEncodingError
from durable_ffmpeg.jobs import JobOutcome, ProcessingRequest, SuspendSignal
from durable_ffmpeg.journal import StepRecord
from durable_ffmpeg.logging_config import configure_logging
from durable_ffmpeg.models import ServiceConfig
from durable_ffmpeg.probe import ProbeRequest, ProbeResponse
from durable_ffmpeg.service import HealthReport, MediaService


def create_app(
    config: Optional[ServiceConfig] = None,
    service: Optional[MediaService] = None,
) -> FastAPI:
    """Build the orchestrator-facing app.

    With ``service`` given the app uses it as-is and never shuts it down;
    otherwise the lifespan builds one from ``config`` (or the resolved
    configuration) and shuts it down on exit.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = None
        if getattr(app.state, "service", None) is None:
            cfg = config or resolve_config()
            configure_logging(cfg.logging.level, cfg.logging.format)
            owned = MediaService(cfg)
            app.state.service = owned
        yield
        if owned is not None:
            await asyncio.to_thread(owned.shutdown)
            app.state.service = None

    app = FastAPI(title="durable-ffmpeg", lifespan=lifespan)
    app.state.service = service

    # --- JOBS ---

    @app.post("/jobs", response_model=JobOutcome, responses={202: {"model": SuspendSignal}})
    async def submit_job(request: ProcessingRequest, svc: MediaService = Depends(get_service)):
        try:
            result = await asyncio.to_thread(svc.handle, request)
        except RuntimeError as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

        if isinstance(result, SuspendSignal):
            return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=jsonable_encoder(result))
        return result

    @app.get("/jobs/{key}")
    async def get_job(key: str, svc: MediaService = Depends(get_service)):
        job = await asyncio.to_thread(svc.status, key)
        if job is None:
            raise HTTPException(status_code=404, detail=f"Unknown request key: {key}")
        return job

    @app.get("/jobs/{key}/steps", response_model=List[StepRecord])
    async def get_job_steps(key: str, svc: MediaService = Depends(get_service)):
        steps = await asyncio.to_thread(svc.steps, key)
        if not steps and svc.journal.get_request(key) is None:
            raise HTTPException(status_code=404, detail=f"Unknown request key: {key}")
        return steps

    @app.post("/jobs/{key}/cancel")
    async def cancel_job(key: str, svc: MediaService = Depends(get_service)):
        cancelled = await asyncio.to_thread(svc.cancel, key)
        return {"request_key": key, "cancelled": cancelled}

    # --- PROBE ---

    @app.post("/probe", response_model=ProbeResponse)
    async def probe(request: ProbeRequest, svc: MediaService = Depends(get_service)):
        try:
            return await asyncio.to_thread(svc.probe, request)
        except TransientEncodingError as e:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail={"code": e.kind.value, "message": e.message},
            )
        except EncodingError as e:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail={"code": e.kind.value, "message": e.message},
            )

    # --- HEALTH ---

    @app.get("/health")
    async def health():
        """Liveness: the process is up."""
        return {"status": "ok"}

    @app.get("/ready", response_model=HealthReport)
    async def ready(svc: MediaService = Depends(get_service)):
        report = await asyncio.to_thread(svc.health)
        if not report.ready:
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=jsonable_encoder(report)
            )
        return report

    return app


def get_service(request: Request) -> MediaService:
    service = request.app.state.service
    if service is None:
        raise HTTPException(status_code=503, detail="Service not started")
    return service


app = create_app()
