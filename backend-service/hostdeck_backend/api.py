from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import replace
from typing import Any

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse, StreamingResponse

from .events import Subscription, encode_sse
from .integrations import toolchain_status
from .schemas import (
    DeployRejection,
    DeployRequest,
    ProcessResponse,
    RunResponse,
    RuntimeConfigResponse,
    RuntimeConfigUpdateRequest,
    StepOutputResponse,
    StepResponse,
)
from .service_container import Services
from .slots import DeployRejectedError
from .steps import STEP_LABELS
from .supervisor import SupervisorError
from .types import DeployRun

logger = logging.getLogger(__name__)

KEEPALIVE_SECONDS = 15.0
SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


def _coerce_port(value: Any) -> int:
    # bool is an int subclass; JSON true must not become port 1.
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise DeployRejectedError("invalid-port", "Port must be an integer between 1 and 65535")


def _rejection(exc: DeployRejectedError) -> HTTPException:
    status_code = 409 if exc.reason == "slot-occupied" else 400
    detail = DeployRejection(reason=exc.reason, message=exc.message)  # type: ignore[arg-type]
    return HTTPException(status_code=status_code, detail=detail.model_dump())


def _run_response(run: DeployRun, *, include_output: bool) -> RunResponse:
    steps = [
        StepResponse(
            id=step.id,
            label=STEP_LABELS.get(step.id, step.id),
            command=step.command,
            cwd=step.cwd,
            status=step.status,  # type: ignore[arg-type]
            exit_code=step.exit_code,
            timed_out=step.timed_out,
            started_at=step.started_at,
            finished_at=step.finished_at,
            truncated_bytes=step.truncated_bytes,
            output=[StepOutputResponse(stream=f.stream, text=f.text) for f in step.output] if include_output else None,  # type: ignore[arg-type]
        )
        for step in run.steps
    ]
    return RunResponse(
        id=run.run_id,
        slot=run.slot_key,
        repo=run.spec.repo,
        branch=run.spec.branch,
        port=run.spec.port,
        status=run.status,  # type: ignore[arg-type]
        error=run.error,
        created_at=run.created_at,
        finished_at=run.finished_at,
        steps=steps,
    )


async def _event_source(subscription: Subscription) -> AsyncIterator[str]:
    try:
        while True:
            try:
                event = await asyncio.wait_for(subscription.__anext__(), timeout=KEEPALIVE_SECONDS)
            except asyncio.TimeoutError:
                yield ": ping\n\n"
                continue
            except StopAsyncIteration:
                return
            yield encode_sse(event)
    finally:
        # A closed browser tab only drops this subscriber; the run keeps going.
        subscription.close()


async def _registered_names(services: Services) -> set[str] | None:
    try:
        return await services.supervisor.registered_names()
    except SupervisorError as exc:
        logger.warning("Supervisor list unavailable; falling back to working copy probe: %s", exc)
        return None


def create_app(services: Services) -> FastAPI:
    app = FastAPI(title="Hostdeck Backend", version="0.1.0")

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await services.orchestrator.shutdown()

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"ok": True, "active_deploys": services.orchestrator.active_runs()}

    @app.get("/health/integrations")
    async def health_integrations() -> dict[str, Any]:
        return toolchain_status(services.settings, services.runtime_config.get())

    @app.get("/v1/runtime/config", response_model=RuntimeConfigResponse)
    async def get_runtime_config() -> RuntimeConfigResponse:
        return RuntimeConfigResponse(**services.runtime_config.public_view())

    @app.patch("/v1/runtime/config", response_model=RuntimeConfigResponse)
    async def patch_runtime_config(request: RuntimeConfigUpdateRequest) -> RuntimeConfigResponse:
        services.runtime_config.update(
            default_branch=request.default_branch,
            install_command=request.install_command,
            build_command=request.build_command,
            github_owner=request.github_owner,
            clear_github_owner=request.clear_github_owner,
        )
        return RuntimeConfigResponse(**services.runtime_config.public_view())

    @app.get("/v1/processes", response_model=list[ProcessResponse])
    async def list_processes() -> list[ProcessResponse]:
        try:
            processes = await services.supervisor.list_processes()
        except SupervisorError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return [
            ProcessResponse(
                name=p.name,
                status=p.status,
                pid=p.pid,
                cpu=p.cpu,
                memory=p.memory,
                cwd=p.cwd,
                restarts=p.restarts,
            )
            for p in processes
        ]

    @app.post("/v1/deploy/pipeline")
    async def deploy_pipeline(request: DeployRequest) -> StreamingResponse:
        try:
            # Reject bad or occupied requests before waiting on pm2.
            spec = services.resolver.resolve(
                repo=request.repo,
                port=_coerce_port(request.port),
                process_name=request.pm2_name,
                branch=request.branch,
            )
            registered = await _registered_names(services)
            if registered is not None:
                spec = replace(spec, registered=spec.slot_key in registered)
            run = services.orchestrator.start_run(spec)
        except DeployRejectedError as exc:
            logger.info("Deploy rejected repo=%s reason=%s", request.repo, exc.reason)
            raise _rejection(exc) from exc

        subscription = services.orchestrator.subscribe(run.run_id)
        if subscription is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return StreamingResponse(
            _event_source(subscription),
            media_type="text/event-stream",
            headers={**SSE_HEADERS, "X-Run-Id": run.run_id},
        )

    @app.get("/v1/deploy/runs", response_model=list[RunResponse])
    async def list_runs() -> list[RunResponse]:
        return [_run_response(run, include_output=False) for run in services.orchestrator.list_runs()]

    @app.get("/v1/deploy/runs/{run_id}", response_model=RunResponse)
    async def get_run(run_id: str, include_output: bool = Query(default=True)) -> RunResponse:
        run = services.orchestrator.get_run(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return _run_response(run, include_output=include_output)

    @app.get("/v1/deploy/runs/{run_id}/events")
    async def stream_run_events(run_id: str) -> StreamingResponse:
        subscription = services.orchestrator.subscribe(run_id)
        if subscription is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return StreamingResponse(
            _event_source(subscription),
            media_type="text/event-stream",
            headers={**SSE_HEADERS, "X-Run-Id": run_id},
        )

    @app.post("/v1/deploy/runs/{run_id}/cancel", response_model=RunResponse)
    async def cancel_run(run_id: str) -> RunResponse:
        run = await services.orchestrator.cancel_run(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return _run_response(run, include_output=False)

    @app.exception_handler(ValueError)
    async def value_error_handler(_request: Any, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    return app
