"""
REST API routes for the flow engine.
"""

import logging
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, HTTPException, Query

from ..core.errors import (
    FlowEngineError,
    FlowNotFoundError,
    FlowValidationError,
    RunLockedError,
    RunNotFoundError,
    RunNotResumableError,
)
from ..models.flow import FlowDefinition, FlowStatus
from ..models.requests import (
    FlowSummary,
    InboundMessage,
    FlowTestRequest,
    ValidationReport,
    WebhookTriggerRequest,
)
from ..models.run import ExecutionReplay, FlowRunResult, ResumeEvent, RunState, RunSummary, TriggerContext
from ..templates import list_templates, load_template

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["flows"])


# Set by the main app
_service = None


def set_dependencies(service):
    """Set dependencies from main app."""
    global _service
    _service = service


def get_service():
    """The wired service, or None before startup."""
    return _service


def _get_service():
    if not _service:
        raise HTTPException(status_code=503, detail="Service not ready")
    return _service


def _http_error(e: FlowEngineError) -> HTTPException:
    if isinstance(e, (FlowNotFoundError, RunNotFoundError)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (RunNotResumableError, RunLockedError)):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, FlowValidationError):
        return HTTPException(status_code=422, detail={"error": str(e), "problems": e.problems})
    return HTTPException(status_code=400, detail=str(e))


def _summary(flow: FlowDefinition) -> FlowSummary:
    return FlowSummary(
        id=flow.id,
        version=flow.version,
        name=flow.name,
        description=flow.description,
        status=flow.status.value,
        trigger=flow.trigger.type.value if flow.trigger else None,
    )


# Flow Definitions

@router.post("/flows", response_model=FlowSummary)
async def create_flow(flow: FlowDefinition):
    """Create a flow, or a new version when the id already exists."""
    service = _get_service()
    saved = await service.flow_store.save_flow_definition(flow)
    return _summary(saved)


@router.get("/flows", response_model=List[FlowSummary])
async def list_flows(active_only: bool = Query(default=False)):
    """List the latest version of every flow."""
    service = _get_service()
    if active_only:
        flows = await service.flow_store.list_active_flows()
    else:
        flows = await service.flow_store.list_flows()
    return [_summary(flow) for flow in flows]


@router.post("/flows/validate", response_model=ValidationReport)
async def validate_flow(flow: FlowDefinition):
    """Check a definition without saving it."""
    problems = _get_service().validate_flow(flow)
    return ValidationReport(valid=not problems, problems=problems)


@router.post("/flows/import", response_model=FlowSummary)
async def import_flow(data: Dict[str, Any]):
    """Import a flow exported from the builder. Malformed flows are rejected."""
    service = _get_service()
    try:
        flow = FlowDefinition.model_validate(data)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    problems = service.validate_flow(flow)
    if problems:
        raise _http_error(FlowValidationError(problems))

    saved = await service.flow_store.save_flow_definition(flow)
    logger.info(f"Imported flow {saved.id} v{saved.version}")
    return _summary(saved)


@router.get("/flows/{flow_id}")
async def get_flow(flow_id: str, version: Optional[int] = None):
    """Get a flow definition in the builder's JSON shape."""
    service = _get_service()
    try:
        flow = await service.load_flow(flow_id, version)
    except FlowEngineError as e:
        raise _http_error(e)
    return flow.export()


@router.get("/flows/{flow_id}/export")
async def export_flow(flow_id: str, version: Optional[int] = None):
    """Export a flow for re-import elsewhere."""
    return await get_flow(flow_id, version)


@router.put("/flows/{flow_id}", response_model=FlowSummary)
async def update_flow(flow_id: str, flow: FlowDefinition):
    """Save a new version of an existing flow."""
    service = _get_service()
    try:
        await service.load_flow(flow_id)
    except FlowEngineError as e:
        raise _http_error(e)
    flow.id = flow_id
    saved = await service.flow_store.save_flow_definition(flow)
    return _summary(saved)


@router.delete("/flows/{flow_id}")
async def delete_flow(flow_id: str):
    service = _get_service()
    if not await service.flow_store.delete_flow(flow_id):
        raise HTTPException(status_code=404, detail="Flow not found")
    return {"status": "deleted", "flow_id": flow_id}


@router.post("/flows/{flow_id}/duplicate", response_model=FlowSummary)
async def duplicate_flow(flow_id: str):
    """Copy the latest version into a new draft flow."""
    service = _get_service()
    try:
        flow = await service.load_flow(flow_id)
    except FlowEngineError as e:
        raise _http_error(e)

    copy = flow.model_copy(update={
        "id": None,
        "version": 1,
        "name": f"{flow.name or flow_id} (Copy)",
        "status": FlowStatus.DRAFT,
        "created_at": None,
        "updated_at": None,
    })
    saved = await service.flow_store.save_flow_definition(copy)
    return _summary(saved)


async def _set_status(flow_id: str, status: FlowStatus) -> FlowSummary:
    service = _get_service()
    try:
        flow = await service.load_flow(flow_id)
        if status == FlowStatus.ACTIVE:
            problems = service.validate_flow(flow)
            if problems:
                raise FlowValidationError(problems)
    except FlowEngineError as e:
        raise _http_error(e)

    if flow.status == status:
        return _summary(flow)
    flow.status = status
    saved = await service.flow_store.save_flow_definition(flow)
    logger.info(f"Flow {flow_id} is now {status.value} (v{saved.version})")
    return _summary(saved)


@router.post("/flows/{flow_id}/activate", response_model=FlowSummary)
async def activate_flow(flow_id: str):
    """Make a flow eligible for triggers. Malformed flows are refused."""
    return await _set_status(flow_id, FlowStatus.ACTIVE)


@router.post("/flows/{flow_id}/deactivate", response_model=FlowSummary)
async def deactivate_flow(flow_id: str):
    """Take a flow back to draft; running runs are unaffected."""
    return await _set_status(flow_id, FlowStatus.DRAFT)


@router.post("/flows/{flow_id}/execute", response_model=FlowRunResult)
async def execute_flow(flow_id: str, trigger: TriggerContext):
    """Start a run of the flow's latest version."""
    service = _get_service()
    try:
        return await service.start_flow(flow_id, trigger)
    except FlowEngineError as e:
        raise _http_error(e)


@router.post("/flows/{flow_id}/test", response_model=FlowRunResult)
async def test_flow(flow_id: str, request: FlowTestRequest):
    """Dry-run a flow with recorded messages and literal placeholders."""
    service = _get_service()
    try:
        flow = await service.load_flow(flow_id)
    except FlowEngineError as e:
        raise _http_error(e)
    return await service.test_flow(flow, request.variables, request.inputs, request.contact)


# Templates

@router.get("/templates")
async def get_templates():
    """List available pre-built flow templates."""
    return {"templates": list_templates()}


@router.post("/templates/{key}/instantiate", response_model=FlowSummary)
async def instantiate_template(key: str):
    """Create a draft flow from a template."""
    service = _get_service()
    try:
        flow = load_template(key)
    except FlowEngineError as e:
        raise _http_error(e)
    saved = await service.flow_store.save_flow_definition(flow)
    return _summary(saved)


# Runs

@router.get("/runs/{run_id}", response_model=RunState)
async def get_run(run_id: str):
    service = _get_service()
    try:
        return await service.get_run(run_id)
    except FlowEngineError as e:
        raise _http_error(e)


@router.post("/runs/{run_id}/resume", response_model=FlowRunResult)
async def resume_run(run_id: str, event: ResumeEvent):
    """Deliver a reply or timer event to a waiting run."""
    service = _get_service()
    try:
        return await service.resume_flow(run_id, event)
    except FlowEngineError as e:
        raise _http_error(e)


@router.post("/runs/{run_id}/cancel", response_model=FlowRunResult)
async def cancel_run(run_id: str):
    service = _get_service()
    try:
        return await service.cancel_run(run_id)
    except FlowEngineError as e:
        raise _http_error(e)


@router.get("/runs/{run_id}/logs")
async def get_run_logs(run_id: str):
    """Get the execution log of a run."""
    service = _get_service()
    try:
        state = await service.get_run(run_id)
    except FlowEngineError as e:
        raise _http_error(e)
    return {"run_id": run_id, "execution_path": state.execution_path, "logs": state.logs}


@router.get("/runs/{run_id}/replay", response_model=ExecutionReplay)
async def get_run_replay(run_id: str):
    service = _get_service()
    try:
        return await service.get_replay(run_id)
    except FlowEngineError as e:
        raise _http_error(e)


@router.get("/conversations/{conversation_id}/runs", response_model=List[RunSummary])
async def list_conversation_runs(conversation_id: str, limit: int = Query(default=100, le=1000)):
    return await _get_service().list_runs(conversation_id=conversation_id, limit=limit)


# Ingress

@router.post("/inbound")
async def inbound_message(message: InboundMessage):
    """Route an inbound message to a waiting run or a matching trigger."""
    service = _get_service()
    try:
        result = await service.handle_inbound_message(
            message.conversation_id,
            message.contact_id,
            message.text,
            contact=message.contact,
            is_new_conversation=message.is_new_conversation,
            kind=message.kind,
        )
    except FlowEngineError as e:
        raise _http_error(e)

    if result is None:
        return {"handled": False}
    return {"handled": True, "result": result}


@router.post("/triggers/webhook")
async def webhook_trigger(request: WebhookTriggerRequest):
    """Start flows whose webhook trigger conditions match the payload."""
    results = await _get_service().handle_webhook_event(
        request.payload,
        conversation_id=request.conversation_id,
        contact_id=request.contact_id,
    )
    return {"started": len(results), "results": results}


@router.post("/scheduler/tick")
async def scheduler_tick(limit: int = Query(default=100, le=1000)):
    """Resume delayed runs that are due. Called by an external scheduler."""
    results = await _get_service().resume_due_runs(limit=limit)
    return {"resumed": len(results), "results": results}
