"""
Workflows Router — workflow definitions, trigger events and manual runs.
"""

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from api.deps import get_current_user, get_runtime, get_tenant_id
from core.container import AutomationRuntime
from core.exceptions import WorkflowNotFoundError
from db.domain import (
    ActionType,
    ConditionOperator,
    LogicalOperator,
    TriggerType,
    Workflow,
    WorkflowAction,
    WorkflowCondition,
    WorkflowExecution,
    WorkflowTrigger,
)

router = APIRouter(prefix="/api/v1/workflows", tags=["workflows"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class ConditionBody(BaseModel):
    field: str
    operator: ConditionOperator
    value: Any = None
    logical_operator: LogicalOperator = LogicalOperator.AND


class ActionBody(BaseModel):
    action_type: ActionType
    config: dict[str, Any] = Field(default_factory=dict)
    order: int = 0


class WorkflowCreate(BaseModel):
    name: str
    description: str | None = None
    trigger_type: TriggerType
    trigger_config: dict[str, Any] = Field(default_factory=dict)
    conditions: list[ConditionBody] = Field(default_factory=list)
    actions: list[ActionBody] = Field(default_factory=list)
    enabled: bool = True


class WorkflowResponse(BaseModel):
    workflow_id: str
    name: str
    description: str | None
    trigger_type: str
    conditions: list[dict[str, Any]]
    actions: list[dict[str, Any]]
    enabled: bool
    execution_count: int
    last_executed_at: datetime | None

    @classmethod
    def from_workflow(cls, workflow: Workflow) -> "WorkflowResponse":
        return cls(
            workflow_id=workflow.workflow_id,
            name=workflow.name,
            description=workflow.description,
            trigger_type=workflow.trigger.trigger_type.value,
            conditions=[condition.to_dict() for condition in workflow.conditions],
            actions=[action.to_dict() for action in workflow.actions],
            enabled=workflow.enabled,
            execution_count=workflow.execution_count,
            last_executed_at=workflow.last_executed_at,
        )


class TriggerRequest(BaseModel):
    trigger_type: TriggerType
    context: dict[str, Any] = Field(default_factory=dict)


class RunRequest(BaseModel):
    context: dict[str, Any] = Field(default_factory=dict)


class ExecutionResponse(BaseModel):
    execution_id: str
    workflow_id: str
    status: str
    triggered_by: str
    triggered_at: datetime
    duration_ms: int
    results: list[dict[str, Any]]

    @classmethod
    def from_execution(cls, execution: WorkflowExecution) -> "ExecutionResponse":
        return cls(
            execution_id=execution.execution_id,
            workflow_id=execution.workflow_id,
            status=execution.status.value,
            triggered_by=execution.triggered_by,
            triggered_at=execution.triggered_at,
            duration_ms=execution.duration_ms,
            results=[result.to_dict() for result in execution.results],
        )


def _with_actor(context: dict[str, Any], user: dict) -> dict[str, Any]:
    context = dict(context)
    if not context.get("user_id") and user.get("sub"):
        context["user_id"] = user["sub"]
    return context


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.post("/", response_model=WorkflowResponse, status_code=status.HTTP_201_CREATED)
async def create_workflow(
    body: WorkflowCreate,
    tenant_id: str = Depends(get_tenant_id),
    runtime: AutomationRuntime = Depends(get_runtime),
):
    workflow = Workflow(
        tenant_id=tenant_id,
        name=body.name,
        description=body.description,
        trigger=WorkflowTrigger(trigger_type=body.trigger_type, config=body.trigger_config),
        conditions=[WorkflowCondition(**condition.model_dump()) for condition in body.conditions],
        actions=[WorkflowAction(**action.model_dump()) for action in body.actions],
        enabled=body.enabled,
    )
    saved = await runtime.store.save_workflow(workflow)
    return WorkflowResponse.from_workflow(saved)


@router.get("/", response_model=list[WorkflowResponse])
async def list_workflows(
    trigger_type: TriggerType | None = None,
    tenant_id: str = Depends(get_tenant_id),
    runtime: AutomationRuntime = Depends(get_runtime),
):
    workflows = await runtime.store.list_workflows(tenant_id, trigger_type, enabled_only=False)
    return [WorkflowResponse.from_workflow(workflow) for workflow in workflows]


@router.post("/trigger", response_model=list[ExecutionResponse])
async def fire_trigger(
    body: TriggerRequest,
    tenant_id: str = Depends(get_tenant_id),
    user: dict = Depends(get_current_user),
    runtime: AutomationRuntime = Depends(get_runtime),
):
    """Run every enabled workflow listening for this trigger."""
    executions = await runtime.workflow_engine.execute_trigger(
        tenant_id, body.trigger_type, _with_actor(body.context, user)
    )
    return [ExecutionResponse.from_execution(execution) for execution in executions]


@router.post("/{workflow_id}/execute", response_model=ExecutionResponse)
async def execute_workflow(
    workflow_id: str,
    body: RunRequest | None = None,
    tenant_id: str = Depends(get_tenant_id),
    user: dict = Depends(get_current_user),
    runtime: AutomationRuntime = Depends(get_runtime),
):
    """Run one workflow now, regardless of its trigger."""
    workflow = await runtime.store.get_workflow(workflow_id)
    if workflow is None or workflow.tenant_id != tenant_id:
        raise HTTPException(status_code=404, detail="Workflow not found")
    context = _with_actor(body.context if body else {}, user)
    try:
        execution = await runtime.workflow_engine.execute_workflow_by_id(workflow_id, context)
    except WorkflowNotFoundError:
        raise HTTPException(status_code=404, detail="Workflow not found")
    return ExecutionResponse.from_execution(execution)


@router.get("/{workflow_id}/executions", response_model=list[ExecutionResponse])
async def list_executions(
    workflow_id: str,
    tenant_id: str = Depends(get_tenant_id),
    runtime: AutomationRuntime = Depends(get_runtime),
):
    workflow = await runtime.store.get_workflow(workflow_id)
    if workflow is None or workflow.tenant_id != tenant_id:
        raise HTTPException(status_code=404, detail="Workflow not found")
    executions = await runtime.store.list_workflow_executions(workflow_id)
    return [ExecutionResponse.from_execution(execution) for execution in executions]
