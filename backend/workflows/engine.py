"""
Workflow Engine — trigger → conditions → ordered actions.

Execution lifecycle: running → success | partial | failed (terminal).

  - conditions not met          → failed, single ``conditions_check`` result,
                                  no action runs
  - an action fails or raises   → partial, the remaining actions still run
  - error outside the actions   → failed, ``workflow_execution`` result

Workflows fired by the same trigger run one after another; a workflow that
blows up is logged and skipped so its siblings still run.
"""

import time
from typing import Any

import structlog

from core import clock
from core.exceptions import WorkflowNotFoundError
from db.domain import (
    ActionResult,
    ActionType,
    ExecutionStatus,
    TriggerType,
    Workflow,
    WorkflowExecution,
)
from db.store import DataStore, with_timeout
from workflows.actions import ActionHandler
from workflows.conditions import evaluate_conditions

logger = structlog.get_logger()

CONDITIONS_CHECK = "conditions_check"
WORKFLOW_EXECUTION = "workflow_execution"
SYSTEM_ACTOR = "system"


class WorkflowEngine:
    def __init__(
        self,
        store: DataStore,
        handlers: dict[ActionType, ActionHandler],
        store_timeout: float | None = None,
    ):
        missing = set(ActionType) - set(handlers)
        if missing:
            raise ValueError(f"Missing action handlers for: {', '.join(sorted(a.value for a in missing))}")
        self.store = store
        self.handlers = handlers
        self.store_timeout = store_timeout

    async def _call(self, awaitable):
        return await with_timeout(awaitable, self.store_timeout)

    async def execute_trigger(
        self,
        tenant_id: str,
        trigger_type: TriggerType | str,
        context: dict[str, Any] | None = None,
    ) -> list[WorkflowExecution]:
        """Run every enabled workflow registered for ``trigger_type``."""
        trigger_type = TriggerType(trigger_type)
        context = context or {}
        log = logger.bind(tenant_id=tenant_id, trigger_type=trigger_type.value)

        workflows = await self._call(self.store.list_workflows(tenant_id, trigger_type, enabled_only=True))
        log.info("workflow.trigger_fired", workflows=len(workflows))

        executions = []
        for workflow in workflows:
            try:
                execution = await self.execute_workflow(workflow, context)
                await self._call(self.store.save_workflow_execution(execution))
            except Exception as exc:  # noqa: BLE001
                log.error("workflow.run_failed", workflow_id=workflow.workflow_id, error=str(exc), exc_info=True)
                continue
            executions.append(execution)
        return executions

    async def execute_workflow_by_id(self, workflow_id: str, context: dict[str, Any] | None = None) -> WorkflowExecution:
        workflow = await self._call(self.store.get_workflow(workflow_id))
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        execution = await self.execute_workflow(workflow, context or {})
        await self._call(self.store.save_workflow_execution(execution))
        return execution

    async def execute_workflow(self, workflow: Workflow, context: dict[str, Any]) -> WorkflowExecution:
        log = logger.bind(tenant_id=workflow.tenant_id, workflow_id=workflow.workflow_id)
        started = time.perf_counter()
        execution = WorkflowExecution(
            workflow_id=workflow.workflow_id,
            tenant_id=workflow.tenant_id,
            triggered_by=str(context.get("user_id") or SYSTEM_ACTOR),
            triggered_at=clock.now(),
        )

        try:
            if not evaluate_conditions(workflow.conditions, context):
                execution.status = ExecutionStatus.FAILED
                execution.results.append(
                    ActionResult(action=CONDITIONS_CHECK, success=False, message="Workflow conditions not met")
                )
                execution.duration_ms = self._elapsed_ms(started)
                log.info("workflow.conditions_not_met")
                return execution

            execution.status = ExecutionStatus.SUCCESS
            for action in sorted(workflow.actions, key=lambda action: action.order):
                try:
                    result = await self.handlers[action.action_type].execute(
                        action.config, context, workflow.tenant_id
                    )
                except Exception as exc:  # noqa: BLE001
                    result = ActionResult(
                        action=action.action_type.value,
                        success=False,
                        error=str(exc) or exc.__class__.__name__,
                    )
                execution.results.append(result)
                if not result.success:
                    execution.status = ExecutionStatus.PARTIAL
                    log.warning("workflow.action_failed", action=result.action, error=result.error)
        except Exception as exc:  # noqa: BLE001
            execution.status = ExecutionStatus.FAILED
            execution.results.append(ActionResult(action=WORKFLOW_EXECUTION, success=False, error=str(exc)))
            log.error("workflow.execution_failed", error=str(exc), exc_info=True)

        execution.duration_ms = self._elapsed_ms(started)
        try:
            await self._call(self.store.record_workflow_run(workflow.workflow_id, execution.triggered_at))
        except Exception as exc:  # noqa: BLE001
            log.warning("workflow.stats_update_failed", error=str(exc))

        log.info(
            "workflow.executed",
            status=execution.status.value,
            actions=len(execution.results),
            duration_ms=execution.duration_ms,
        )
        return execution

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.perf_counter() - started) * 1000)
