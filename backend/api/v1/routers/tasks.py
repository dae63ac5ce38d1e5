"""
Tasks Router — scheduled task definitions and manual runs.
"""

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from api.deps import get_runtime, get_tenant_id
from core.container import AutomationRuntime
from db.domain import Frequency, NewTask, ScheduledTask, TaskExecution, TaskType
from scheduler.handlers import TASK_TEMPLATES

router = APIRouter(prefix="/api/v1/tasks", tags=["tasks"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class TaskCreate(BaseModel):
    name: str
    task_type: TaskType
    frequency: Frequency
    cron_expression: str | None = None
    description: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True
    recipients: list[str] = Field(default_factory=list)


class TaskResponse(BaseModel):
    task_id: str
    name: str
    description: str | None
    task_type: str
    frequency: str
    cron_expression: str | None
    config: dict[str, Any]
    enabled: bool
    recipients: list[str]
    last_run_at: datetime | None
    last_run_status: str | None
    next_run_at: datetime

    @classmethod
    def from_task(cls, task: ScheduledTask) -> "TaskResponse":
        return cls(
            task_id=task.task_id,
            name=task.name,
            description=task.description,
            task_type=task.task_type.value,
            frequency=task.frequency.value,
            cron_expression=task.cron_expression,
            config=task.config,
            enabled=task.enabled,
            recipients=task.recipients,
            last_run_at=task.last_run_at,
            last_run_status=task.last_run_status.value if task.last_run_status else None,
            next_run_at=task.next_run_at,
        )


class ExecutionResponse(BaseModel):
    execution_id: str
    task_id: str
    status: str
    started_at: datetime
    completed_at: datetime | None
    duration_ms: int | None
    output: dict[str, Any] | None
    error: str | None

    @classmethod
    def from_execution(cls, execution: TaskExecution) -> "ExecutionResponse":
        return cls(
            execution_id=execution.execution_id,
            task_id=execution.task_id,
            status=execution.status.value,
            started_at=execution.started_at,
            completed_at=execution.completed_at,
            duration_ms=execution.duration_ms,
            output=execution.output,
            error=execution.error,
        )


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/templates")
async def list_templates():
    """Pre-configured task definitions."""
    return {
        key: {
            "name": template.name,
            "description": template.description,
            "task_type": template.task_type.value,
            "frequency": template.frequency.value,
            "config": template.config,
        }
        for key, template in TASK_TEMPLATES.items()
    }


@router.post("/", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
async def create_task(
    body: TaskCreate,
    tenant_id: str = Depends(get_tenant_id),
    runtime: AutomationRuntime = Depends(get_runtime),
):
    task_id = await runtime.scheduler.create_task(tenant_id, NewTask(**body.model_dump()))
    return TaskResponse.from_task(await runtime.store.get_task(task_id))


@router.post("/templates/{template_key}", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
async def create_task_from_template(
    template_key: str,
    tenant_id: str = Depends(get_tenant_id),
    runtime: AutomationRuntime = Depends(get_runtime),
):
    template = TASK_TEMPLATES.get(template_key)
    if template is None:
        raise HTTPException(status_code=404, detail="Template not found")
    task_id = await runtime.scheduler.create_task(tenant_id, template)
    return TaskResponse.from_task(await runtime.store.get_task(task_id))


@router.get("/", response_model=list[TaskResponse])
async def list_tasks(
    tenant_id: str = Depends(get_tenant_id),
    runtime: AutomationRuntime = Depends(get_runtime),
):
    return [TaskResponse.from_task(task) for task in await runtime.store.list_tasks(tenant_id)]


@router.get("/due", response_model=list[TaskResponse])
async def list_due_tasks(
    tenant_id: str = Depends(get_tenant_id),
    runtime: AutomationRuntime = Depends(get_runtime),
):
    """Enabled tasks of this tenant whose next run has passed."""
    due = await runtime.scheduler.get_due_tasks()
    return [TaskResponse.from_task(task) for task in due if task.tenant_id == tenant_id]


async def _tenant_task(runtime: AutomationRuntime, tenant_id: str, task_id: str) -> ScheduledTask:
    task = await runtime.store.get_task(task_id)
    if task is None or task.tenant_id != tenant_id:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


@router.post("/{task_id}/run", response_model=ExecutionResponse)
async def run_task(
    task_id: str,
    tenant_id: str = Depends(get_tenant_id),
    runtime: AutomationRuntime = Depends(get_runtime),
):
    """Execute a task now, outside its schedule."""
    await _tenant_task(runtime, tenant_id, task_id)
    execution = await runtime.scheduler.execute_task(task_id)
    return ExecutionResponse.from_execution(execution)


@router.get("/{task_id}/executions", response_model=list[ExecutionResponse])
async def list_executions(
    task_id: str,
    tenant_id: str = Depends(get_tenant_id),
    runtime: AutomationRuntime = Depends(get_runtime),
):
    await _tenant_task(runtime, tenant_id, task_id)
    executions = await runtime.store.list_task_executions(task_id)
    return [ExecutionResponse.from_execution(execution) for execution in executions]
