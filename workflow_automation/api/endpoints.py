"""FastAPI REST endpoints for the workflow automation engine."""

from typing import Any, Dict, List, NoReturn, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from ..core.exceptions import (
    WorkflowAutomationError,
    create_error_response,
    get_status_code_for_error,
)
from ..core.execution_engine import ExecutionEngine
from ..core.logging import get_logger
from ..core.schedule_service import ScheduleService
from ..core.workflow_manager import WorkflowManager
from ..models.core import (
    ExecutionFilter,
    ExecutionLogEntry,
    ExecutionRecord,
    ExecutionStatusEnum,
    PoolStatus,
    ScheduleCreate,
    ScheduledWorkflow,
    ScheduleUpdate,
    StartExecutionRequest,
    ValidationResult,
    WorkflowDefinition,
    WorkflowRecord,
    WorkflowSummary,
    WorkflowUpdate,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["workflow"])

# Initialized by the application factory
_workflow_manager: Optional[WorkflowManager] = None
_execution_engine: Optional[ExecutionEngine] = None
_schedule_service: Optional[ScheduleService] = None


def init_dependencies(
    workflow_manager: WorkflowManager,
    execution_engine: ExecutionEngine,
    schedule_service: Optional[ScheduleService] = None
):
    """Initialize the global dependencies."""
    global _workflow_manager, _execution_engine, _schedule_service
    _workflow_manager = workflow_manager
    _execution_engine = execution_engine
    _schedule_service = schedule_service


def get_workflow_manager() -> WorkflowManager:
    """Dependency to get the workflow manager."""
    if _workflow_manager is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Workflow manager not initialized"
        )
    return _workflow_manager


def get_execution_engine() -> ExecutionEngine:
    """Dependency to get the execution engine."""
    if _execution_engine is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Execution engine not initialized"
        )
    return _execution_engine


def get_schedule_service() -> ScheduleService:
    """Dependency to get the schedule service."""
    if _schedule_service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Scheduler is disabled"
        )
    return _schedule_service


def _raise_http_error(error: WorkflowAutomationError, action: str) -> NoReturn:
    status_code = get_status_code_for_error(error)
    if status_code >= 500:
        logger.error(f"Failed to {action}: {error.message}")
    else:
        logger.warning(f"Failed to {action}: {error.message}")
    raise HTTPException(status_code=status_code, detail=create_error_response(error))


# Request/Response models

class CreateWorkflowResponse(BaseModel):
    """Response model for workflow creation."""
    workflow: WorkflowRecord = Field(..., description="The stored workflow")
    validation: ValidationResult = Field(..., description="Structural validation of the definition")


class StartExecutionResponse(BaseModel):
    """Response model for starting an execution."""
    execution_id: str = Field(..., description="ID of the Pending execution")
    status: ExecutionStatusEnum = Field(..., description="Initial execution status")
    message: str = Field(..., description="Success message")


class StopExecutionResponse(BaseModel):
    """Response model for stopping an execution."""
    execution_id: str = Field(..., description="ID of the execution")
    stopped: bool = Field(..., description="Whether a cancellation was requested")
    message: str = Field(..., description="Result message")


# Workflows

@router.post(
    "/workflows",
    response_model=CreateWorkflowResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a workflow"
)
def create_workflow(
    definition: WorkflowDefinition,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> CreateWorkflowResponse:
    """
    Store a new workflow definition.

    The definition is stored even when it would fail validation at execution
    start; the validation result is returned alongside it.
    """
    try:
        validation = workflow_manager.validate(definition)
        workflow = workflow_manager.create_workflow(definition)
        return CreateWorkflowResponse(workflow=workflow, validation=validation)
    except WorkflowAutomationError as e:
        _raise_http_error(e, "create workflow")


@router.get("/workflows", response_model=List[WorkflowSummary], summary="List workflows")
def list_workflows(
    active_only: bool = Query(False, description="Only list active workflows"),
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> List[WorkflowSummary]:
    try:
        return workflow_manager.list_workflows(active_only=active_only)
    except WorkflowAutomationError as e:
        _raise_http_error(e, "list workflows")


@router.get("/workflows/{workflow_id}", response_model=WorkflowRecord, summary="Get a workflow")
def get_workflow(
    workflow_id: str,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> WorkflowRecord:
    try:
        return workflow_manager.get_workflow(workflow_id)
    except WorkflowAutomationError as e:
        _raise_http_error(e, f"get workflow {workflow_id}")


@router.put("/workflows/{workflow_id}", response_model=WorkflowRecord, summary="Update a workflow")
def update_workflow(
    workflow_id: str,
    update: WorkflowUpdate,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> WorkflowRecord:
    """Update a workflow; executions already running keep their snapshot."""
    try:
        return workflow_manager.update_workflow(workflow_id, update)
    except WorkflowAutomationError as e:
        _raise_http_error(e, f"update workflow {workflow_id}")


@router.delete("/workflows/{workflow_id}", summary="Delete a workflow")
def delete_workflow(
    workflow_id: str,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> Dict[str, Any]:
    try:
        deleted = workflow_manager.delete_workflow(workflow_id)
    except WorkflowAutomationError as e:
        _raise_http_error(e, f"delete workflow {workflow_id}")

    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "NotFoundError", "message": f"Workflow {workflow_id} not found"}
        )
    return {"workflow_id": workflow_id, "message": "Workflow deleted successfully"}


@router.post("/workflows/validate", response_model=ValidationResult, summary="Validate a workflow definition")
def validate_workflow_definition(
    definition: WorkflowDefinition,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> ValidationResult:
    return workflow_manager.validate(definition)


@router.get(
    "/workflows/{workflow_id}/validate",
    response_model=ValidationResult,
    summary="Validate a stored workflow"
)
def validate_stored_workflow(
    workflow_id: str,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> ValidationResult:
    try:
        return workflow_manager.validate_stored(workflow_id)
    except WorkflowAutomationError as e:
        _raise_http_error(e, f"validate workflow {workflow_id}")


# Executions

@router.post(
    "/workflows/{workflow_id}/execute",
    response_model=StartExecutionResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a workflow execution"
)
def start_execution(
    workflow_id: str,
    request: Optional[StartExecutionRequest] = None,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> StartExecutionResponse:
    """
    Start a workflow execution and return at once.

    Poll ``GET /executions/{execution_id}`` for progress.
    """
    request = request or StartExecutionRequest()
    try:
        execution_id = execution_engine.start_execution(
            workflow_id, input_data=request.input_data, user_id=request.user_id
        )
    except WorkflowAutomationError as e:
        _raise_http_error(e, f"start workflow {workflow_id}")

    return StartExecutionResponse(
        execution_id=execution_id,
        status=ExecutionStatusEnum.PENDING,
        message="Workflow execution started"
    )


@router.get("/executions", response_model=List[ExecutionRecord], summary="List executions")
def list_executions(
    workflow_id: Optional[str] = Query(None, description="Filter by workflow"),
    status_filter: Optional[ExecutionStatusEnum] = Query(None, alias="status", description="Filter by status"),
    user_id: Optional[str] = Query(None, description="Filter by user"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> List[ExecutionRecord]:
    """List executions, newest first."""
    execution_filter = ExecutionFilter(
        workflow_id=workflow_id, status=status_filter, user_id=user_id, limit=limit, offset=offset
    )
    try:
        return execution_engine.list_executions(execution_filter)
    except WorkflowAutomationError as e:
        _raise_http_error(e, "list executions")


@router.get("/executions/pool", response_model=PoolStatus, summary="Execution pool saturation")
def get_pool_status(
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> PoolStatus:
    return execution_engine.get_pool_status()


@router.get("/executions/{execution_id}", response_model=ExecutionRecord, summary="Get an execution")
def get_execution(
    execution_id: str,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> ExecutionRecord:
    try:
        return execution_engine.get_execution(execution_id)
    except WorkflowAutomationError as e:
        _raise_http_error(e, f"get execution {execution_id}")


@router.get(
    "/executions/{execution_id}/logs",
    response_model=List[ExecutionLogEntry],
    summary="Get the node log of an execution"
)
def get_execution_logs(
    execution_id: str,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> List[ExecutionLogEntry]:
    try:
        return execution_engine.get_execution_logs(execution_id)
    except WorkflowAutomationError as e:
        _raise_http_error(e, f"get logs of execution {execution_id}")


@router.post(
    "/executions/{execution_id}/stop",
    response_model=StopExecutionResponse,
    summary="Stop an execution"
)
def stop_execution(
    execution_id: str,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> StopExecutionResponse:
    try:
        stopped = execution_engine.stop_execution(execution_id)
    except WorkflowAutomationError as e:
        _raise_http_error(e, f"stop execution {execution_id}")

    message = "Cancellation requested" if stopped else "Execution already finished"
    return StopExecutionResponse(execution_id=execution_id, stopped=stopped, message=message)


# Schedules

@router.post(
    "/schedules",
    response_model=ScheduledWorkflow,
    status_code=status.HTTP_201_CREATED,
    summary="Create a schedule"
)
def create_schedule(
    request: ScheduleCreate,
    schedule_service: ScheduleService = Depends(get_schedule_service)
) -> ScheduledWorkflow:
    try:
        return schedule_service.create_schedule(request)
    except WorkflowAutomationError as e:
        _raise_http_error(e, "create schedule")


@router.get("/schedules", response_model=List[ScheduledWorkflow], summary="List schedules")
def list_schedules(
    workflow_id: Optional[str] = Query(None, description="Filter by workflow"),
    schedule_service: ScheduleService = Depends(get_schedule_service)
) -> List[ScheduledWorkflow]:
    try:
        return schedule_service.list_schedules(workflow_id=workflow_id)
    except WorkflowAutomationError as e:
        _raise_http_error(e, "list schedules")


@router.get("/schedules/{schedule_id}", response_model=ScheduledWorkflow, summary="Get a schedule")
def get_schedule(
    schedule_id: str,
    schedule_service: ScheduleService = Depends(get_schedule_service)
) -> ScheduledWorkflow:
    try:
        return schedule_service.get_schedule(schedule_id)
    except WorkflowAutomationError as e:
        _raise_http_error(e, f"get schedule {schedule_id}")


@router.put("/schedules/{schedule_id}", response_model=ScheduledWorkflow, summary="Update a schedule")
def update_schedule(
    schedule_id: str,
    update: ScheduleUpdate,
    schedule_service: ScheduleService = Depends(get_schedule_service)
) -> ScheduledWorkflow:
    try:
        return schedule_service.update_schedule(schedule_id, update)
    except WorkflowAutomationError as e:
        _raise_http_error(e, f"update schedule {schedule_id}")


@router.delete("/schedules/{schedule_id}", summary="Delete a schedule")
def delete_schedule(
    schedule_id: str,
    schedule_service: ScheduleService = Depends(get_schedule_service)
) -> Dict[str, Any]:
    try:
        deleted = schedule_service.delete_schedule(schedule_id)
    except WorkflowAutomationError as e:
        _raise_http_error(e, f"delete schedule {schedule_id}")

    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "NotFoundError", "message": f"Schedule {schedule_id} not found"}
        )
    return {"schedule_id": schedule_id, "message": "Schedule deleted successfully"}


@router.post(
    "/schedules/{schedule_id}/activate",
    response_model=ScheduledWorkflow,
    summary="Activate a schedule"
)
def activate_schedule(
    schedule_id: str,
    schedule_service: ScheduleService = Depends(get_schedule_service)
) -> ScheduledWorkflow:
    try:
        return schedule_service.activate_schedule(schedule_id)
    except WorkflowAutomationError as e:
        _raise_http_error(e, f"activate schedule {schedule_id}")


@router.post(
    "/schedules/{schedule_id}/deactivate",
    response_model=ScheduledWorkflow,
    summary="Deactivate a schedule"
)
def deactivate_schedule(
    schedule_id: str,
    schedule_service: ScheduleService = Depends(get_schedule_service)
) -> ScheduledWorkflow:
    try:
        return schedule_service.deactivate_schedule(schedule_id)
    except WorkflowAutomationError as e:
        _raise_http_error(e, f"deactivate schedule {schedule_id}")
