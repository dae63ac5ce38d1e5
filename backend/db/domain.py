"""
Automation domain types.

Plain dataclasses shared by every DataStore implementation, the engines and
the API layer. Discriminators are ``str`` enums so they serialize straight to
the JSON/VARCHAR columns in ``db.models``.
"""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any


def new_id() -> str:
    return str(uuid.uuid4())


# ── Alerts ─────────────────────────────────────────────────────────────────


class AlertType(str, Enum):
    LOW_STOCK = "low_stock"
    OUT_OF_STOCK = "out_of_stock"
    OVERSTOCK = "overstock"
    EXPIRING_INVENTORY = "expiring_inventory"
    QUALITY_ISSUE = "quality_issue"
    CYCLE_COUNT_VARIANCE = "cycle_count_variance"
    SLOW_MOVING = "slow_moving"
    PRODUCTION_DELAY = "production_delay"
    PURCHASE_ORDER_DUE = "purchase_order_due"
    REORDER_POINT_REACHED = "reorder_point_reached"
    SAFETY_STOCK_BREACH = "safety_stock_breach"
    HIGH_SCRAP_RATE = "high_scrap_rate"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertChannel(str, Enum):
    EMAIL = "email"
    IN_APP = "in_app"


@dataclass
class AlertRule:
    """Configuration for one breach category."""

    rule_id: str
    alert_type: AlertType
    name: str
    enabled: bool = True
    cooldown_minutes: int = 240
    channels: tuple[AlertChannel, ...] = (AlertChannel.EMAIL, AlertChannel.IN_APP)
    recipients: list[str] = field(default_factory=list)


@dataclass
class Alert:
    tenant_id: str
    rule_id: str
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    entity_type: str
    entity_id: str
    metadata: dict[str, Any] = field(default_factory=dict)
    triggered_at: datetime | None = None
    acknowledged_at: datetime | None = None
    acknowledged_by: str | None = None
    resolved: bool = False
    resolved_at: datetime | None = None
    alert_id: str = field(default_factory=new_id)

    @property
    def dedup_key(self) -> str:
        return build_dedup_key(self.tenant_id, self.alert_type, self.entity_id)

    def __setattr__(self, name: str, value: Any) -> None:
        # Severity is assigned once, at creation.
        if name == "severity" and "severity" in self.__dict__:
            raise AttributeError("Alert severity is immutable once assigned")
        super().__setattr__(name, value)


def build_dedup_key(tenant_id: str, alert_type: AlertType | str, entity_id: str) -> str:
    type_value = alert_type.value if isinstance(alert_type, AlertType) else alert_type
    return f"{tenant_id}:{type_value}:{entity_id}"


# ── Notifications ──────────────────────────────────────────────────────────


@dataclass
class Notification:
    """In-app notification record."""

    tenant_id: str
    category: str
    title: str
    message: str
    severity: str = AlertSeverity.INFO.value
    link: str | None = None
    reference_type: str | None = None
    reference_id: str | None = None
    user_id: str | None = None
    created_at: datetime | None = None
    read: bool = False
    notification_id: str = field(default_factory=new_id)


@dataclass
class User:
    user_id: str
    tenant_id: str
    email: str
    role: str
    alert_preferences: dict[str, bool] = field(default_factory=dict)

    def wants(self, category: str) -> bool:
        """Only an explicit ``False`` opts a user out of a category."""
        return self.alert_preferences.get(category) is not False


# ── Read-side snapshots consumed by the threshold monitor ─────────────────


@dataclass
class ItemStock:
    item_id: str
    sku: str
    name: str
    on_hand: float
    reorder_point: float = 0
    unit_cost: float = 0


@dataclass
class LotStock:
    lot_id: str
    lot_number: str
    item_id: str
    item_name: str
    sku: str
    expiration_date: date
    quantity: float


@dataclass
class ProductionOrderSnapshot:
    order_id: str
    order_number: str | None
    item_name: str
    item_sku: str
    status: str
    scheduled_end: datetime


@dataclass
class PurchaseOrderSnapshot:
    po_id: str
    po_number: str | None
    supplier_name: str
    status: str
    expected_delivery: datetime


# ── Scheduled tasks ────────────────────────────────────────────────────────


class TaskType(str, Enum):
    REPORT = "report"
    EXPORT = "export"
    BACKUP = "backup"
    ALERT_CHECK = "alert_check"
    SYNC = "sync"
    CLEANUP = "cleanup"


class Frequency(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


class TaskRunStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class NewTask:
    """Task definition as supplied by configuration, before scheduling."""

    name: str
    task_type: TaskType
    frequency: Frequency
    config: dict[str, Any] = field(default_factory=dict)
    cron_expression: str | None = None
    description: str | None = None
    enabled: bool = True
    recipients: list[str] = field(default_factory=list)


@dataclass
class ScheduledTask:
    tenant_id: str
    name: str
    task_type: TaskType
    frequency: Frequency
    next_run_at: datetime
    config: dict[str, Any] = field(default_factory=dict)
    cron_expression: str | None = None
    description: str | None = None
    enabled: bool = True
    recipients: list[str] = field(default_factory=list)
    last_run_at: datetime | None = None
    last_run_status: TaskRunStatus | None = None
    created_at: datetime | None = None
    task_id: str = field(default_factory=new_id)


@dataclass
class TaskExecution:
    task_id: str
    started_at: datetime
    status: TaskRunStatus = TaskRunStatus.RUNNING
    completed_at: datetime | None = None
    output: dict[str, Any] | None = None
    error: str | None = None
    duration_ms: int | None = None
    execution_id: str = field(default_factory=new_id)


# ── Workflows ──────────────────────────────────────────────────────────────


class TriggerType(str, Enum):
    ITEM_CREATED = "item_created"
    ITEM_UPDATED = "item_updated"
    STOCK_BELOW_THRESHOLD = "stock_below_threshold"
    STOCK_ABOVE_THRESHOLD = "stock_above_threshold"
    TRANSACTION_CREATED = "transaction_created"
    ORDER_CREATED = "order_created"
    ORDER_COMPLETED = "order_completed"
    CYCLE_COUNT_COMPLETED = "cycle_count_completed"
    SCHEDULED = "scheduled"
    MANUAL = "manual"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    IN = "in"
    NOT_IN = "not_in"
    IS_NULL = "is_null"
    IS_NOT_NULL = "is_not_null"


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


class ActionType(str, Enum):
    SEND_EMAIL = "send_email"
    CREATE_PURCHASE_ORDER = "create_purchase_order"
    ADJUST_INVENTORY = "adjust_inventory"
    UPDATE_ITEM = "update_item"
    CREATE_ALERT = "create_alert"
    CALL_WEBHOOK = "call_webhook"
    UPDATE_STATUS = "update_status"
    RUN_REPORT = "run_report"
    ASSIGN_TO_USER = "assign_to_user"
    EXECUTE_SCRIPT = "execute_script"


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass
class WorkflowCondition:
    field: str
    operator: ConditionOperator
    value: Any = None
    # Joins this condition to the *next* one in the list.
    logical_operator: LogicalOperator = LogicalOperator.AND

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkflowCondition":
        return cls(
            field=data["field"],
            operator=ConditionOperator(data["operator"]),
            value=data.get("value"),
            logical_operator=LogicalOperator(data.get("logical_operator") or "AND"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "operator": self.operator.value,
            "value": self.value,
            "logical_operator": self.logical_operator.value,
        }


@dataclass
class WorkflowAction:
    action_type: ActionType
    config: dict[str, Any] = field(default_factory=dict)
    order: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkflowAction":
        return cls(
            action_type=ActionType(data["action_type"]),
            config=dict(data.get("config") or {}),
            order=int(data.get("order", 0)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"action_type": self.action_type.value, "config": self.config, "order": self.order}


@dataclass
class WorkflowTrigger:
    trigger_type: TriggerType
    config: dict[str, Any] = field(default_factory=dict)


@dataclass
class Workflow:
    tenant_id: str
    name: str
    trigger: WorkflowTrigger
    conditions: list[WorkflowCondition] = field(default_factory=list)
    actions: list[WorkflowAction] = field(default_factory=list)
    description: str | None = None
    enabled: bool = True
    execution_count: int = 0
    last_executed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    workflow_id: str = field(default_factory=new_id)


@dataclass
class ActionResult:
    action: str
    success: bool
    message: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"action": self.action, "success": self.success, "message": self.message, "error": self.error}


@dataclass
class WorkflowExecution:
    workflow_id: str
    tenant_id: str
    triggered_by: str
    triggered_at: datetime
    status: ExecutionStatus = ExecutionStatus.RUNNING
    results: list[ActionResult] = field(default_factory=list)
    duration_ms: int = 0
    execution_id: str = field(default_factory=new_id)
