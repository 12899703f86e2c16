"""
Execution and recovery endpoints.

Execution control, status polling, DOM capture, the event WebSocket and
the fix surface all share the engine held on ``app.state``.
"""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, WebSocket, WebSocketDisconnect

from autoflow.api.schemas import (
    AnalyzeRequest,
    AnalyzeResponse,
    CaptureDomResponse,
    ControlResponse,
    ExecuteRequest,
    ExecuteResponse,
    FixRequest,
    FixResponse,
    PauseControlRequest,
    StatusResponse,
)
from autoflow.core.errors import (
    ExecutionInProgress,
    ExecutionStateError,
    GraphStructureError,
    InvalidGraph,
)
from autoflow.core.types import ErrorAnalysis
from autoflow.engine.engine import ExecutionEngine
from autoflow.recovery.service import RecoveryService

logger = logging.getLogger(__name__)

router = APIRouter()


def get_engine(request: Request) -> ExecutionEngine:
    return request.app.state.engine


def get_recovery(request: Request) -> RecoveryService:
    return request.app.state.recovery


@router.get("/health")
async def health():
    return {"status": "healthy"}


# ----------------------------------------------------------------------
# Execution
# ----------------------------------------------------------------------


@router.post("/execute", response_model=ExecuteResponse)
async def execute_workflow(body: ExecuteRequest, engine: ExecutionEngine = Depends(get_engine)):
    """Start a run. 400 for a malformed graph, 409 while another run is active."""
    breakpoints = body.breakpoint_config.to_config() if body.breakpoint_config else None
    try:
        state = await engine.execute(
            body.workflow.to_workflow(),
            breakpoints,
            trace_logs=body.trace_logs,
            record_session=body.record_session,
        )
    except ExecutionInProgress as e:
        raise HTTPException(status_code=409, detail=str(e))
    except (InvalidGraph, GraphStructureError) as e:
        logger.warning(f"Rejected workflow: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    return ExecuteResponse(execution_id=state.execution_id, status=state.status.value)


@router.get("/execution/status", response_model=StatusResponse, response_model_exclude_none=True)
async def execution_status(engine: ExecutionEngine = Depends(get_engine)):
    state = engine.status()
    return StatusResponse(
        execution_id=state.execution_id,
        status=state.status.value,
        current_node_id=state.current_node_id,
        error=state.error,
        paused_node_id=state.paused_node_id,
        pause_reason=state.pause_reason.value if state.pause_reason else None,
    )


@router.post("/execution/stop", response_model=ControlResponse)
async def stop_execution(engine: ExecutionEngine = Depends(get_engine)):
    if engine.stop():
        return ControlResponse(success=True, message="Execution stopped")
    return ControlResponse(success=False, message="No execution running")


@router.post("/execution/pause-control", response_model=ControlResponse)
async def pause_control(body: PauseControlRequest, engine: ExecutionEngine = Depends(get_engine)):
    if body.action == "skip":
        done = engine.skip()
        message = "Node skipped"
    else:
        done = engine.resume()
        message = "Execution resumed"
    if not done:
        return ControlResponse(success=False, message="Execution is not paused")
    return ControlResponse(success=True, message=message)


@router.post("/execution/capture-dom", response_model=CaptureDomResponse)
async def capture_dom(engine: ExecutionEngine = Depends(get_engine)):
    try:
        info = await engine.capture_dom()
    except ExecutionStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error(f"DOM capture failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    return CaptureDomResponse(success=True, debug_info=info.to_dict())


@router.websocket("/execution/events")
async def execution_events(websocket: WebSocket):
    """Push every ExecutionEvent to the client as JSON until it disconnects."""
    engine: ExecutionEngine = websocket.app.state.engine
    subscription = engine.event_bus.subscribe()
    await websocket.accept()
    logger.info(f"Event subscriber connected. Total subscribers: {engine.event_bus.subscriber_count}")

    async def forward() -> None:
        async for event in subscription:
            await websocket.send_json(event.to_dict())

    sender = asyncio.create_task(forward())
    try:
        # Client messages are ignored; receiving only detects the disconnect
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        sender.cancel()
        engine.event_bus.unsubscribe(subscription)
        logger.info(f"Event subscriber disconnected. Total subscribers: {engine.event_bus.subscriber_count}")


# ----------------------------------------------------------------------
# Recovery
# ----------------------------------------------------------------------


@router.post("/workflow/analyze", response_model=AnalyzeResponse)
async def analyze_errors(body: AnalyzeRequest, recovery: RecoveryService = Depends(get_recovery)):
    analyses = recovery.analyze_errors(
        body.workflow.to_workflow(),
        body.error_message,
        logs=body.logs,
        current_node_id=body.current_node_id,
        execution_id=body.execution_id,
    )
    return AnalyzeResponse(analyses=[a.to_dict() for a in analyses])


@router.post("/workflow/fix", response_model=FixResponse)
async def fix_workflow(body: FixRequest, recovery: RecoveryService = Depends(get_recovery)):
    workflow = body.workflow.to_workflow()
    if body.error_analysis is not None:
        try:
            analyses = [ErrorAnalysis.from_dict(raw) for raw in body.error_analysis]
        except ValueError as e:
            raise HTTPException(status_code=422, detail=f"Invalid errorAnalysis: {e}")
    elif body.error_message:
        analyses = recovery.analyze_errors(
            workflow,
            body.error_message,
            logs=body.logs,
            current_node_id=body.current_node_id,
            execution_id=body.execution_id,
        )
    else:
        raise HTTPException(status_code=422, detail="Provide errorAnalysis or errorMessage")

    try:
        result = await recovery.fix_workflow(
            workflow,
            analyses,
            execution_id=body.execution_id,
            use_dom_capture=body.use_dom_capture,
            error_message=body.error_message or "",
            logs=body.logs,
        )
    except Exception as e:
        logger.error(f"Error fixing workflow: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    payload = result.to_dict()
    return FixResponse(
        success=result.recovered,
        workflow=payload["workflow"],
        strategy=result.strategy,
        updates=payload["updates"],
        failures=payload["failures"],
        unsupported=payload["unsupported"],
        attempts=payload["attempts"],
    )
