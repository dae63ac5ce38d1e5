"""
StockSentry Database Models

Multi-tenant via tenant_id on all tables.

Tables:
  Business data (read by the threshold monitor, written by workflow actions):
  1. tenants               - Tenant organizations
  2. users                 - Tenant users + per-category alert opt-ins
  3. sites                 - Warehouses / plants
  4. items                 - Item master (reorder point, unit cost)
  5. inventory_balances    - On-hand quantity per item per site
  6. inventory_events      - Stock movements (receipts, issues, adjustments)
  7. lots                  - Produced lots/batches with expiration dates
  8. suppliers             - Vendors
  9. production_orders     - Work orders with scheduled end dates
  10. purchase_orders      - POs with expected delivery dates
  11. purchase_order_lines - PO line items

  Automation records:
  12. alerts               - Threshold breaches
  13. notifications        - In-app notifications
  14. scheduled_tasks      - Recurring task definitions
  15. task_executions      - One row per task run (append-only)
  16. workflows            - Trigger/condition/action rules
  17. workflow_executions  - One row per workflow run
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from db.session import Base


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        return str(value)


# ─── 1. Tenants ─────────────────────────────────────────────────────────────


class Tenant(Base):
    __tablename__ = "tenants"

    tenant_id = Column(GUID(), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("status IN ('active', 'inactive', 'trial', 'churned')", name="ck_tenant_status"),
    )


# ─── 2. Users ───────────────────────────────────────────────────────────────


class User(Base):
    __tablename__ = "users"

    user_id = Column(GUID(), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    email = Column(String(255), nullable=False)
    role = Column(String(50), nullable=False, default="viewer")
    # {"low_stock": false, ...}; only an explicit false opts out
    alert_preferences = Column(JSON, default=dict)

    __table_args__ = (Index("ix_users_tenant_role", "tenant_id", "role"),)


# ─── 3. Sites ───────────────────────────────────────────────────────────────


class Site(Base):
    __tablename__ = "sites"

    site_id = Column(GUID(), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    name = Column(String(255), nullable=False)


# ─── 4. Items ───────────────────────────────────────────────────────────────


class Item(Base):
    __tablename__ = "items"

    item_id = Column(GUID(), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    sku = Column(String(100), nullable=False)
    name = Column(String(255), nullable=False)
    status = Column(String(30), nullable=False, default="active")
    reorder_point = Column(Float, nullable=False, default=0)
    unit_cost = Column(Float, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    balances = relationship("InventoryBalance", back_populates="item", cascade="all, delete-orphan")

    __table_args__ = (Index("ix_items_tenant_sku", "tenant_id", "sku", unique=True),)


# ─── 5. Inventory Balances ──────────────────────────────────────────────────


class InventoryBalance(Base):
    __tablename__ = "inventory_balances"

    balance_id = Column(GUID(), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    item_id = Column(GUID(), ForeignKey("items.item_id"), nullable=False)
    site_id = Column(GUID(), ForeignKey("sites.site_id"), nullable=False)
    quantity = Column(Float, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    item = relationship("Item", back_populates="balances")

    __table_args__ = (Index("ix_balances_item_site", "item_id", "site_id", unique=True),)


# ─── 6. Inventory Events ────────────────────────────────────────────────────


class InventoryEvent(Base):
    __tablename__ = "inventory_events"

    event_id = Column(GUID(), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    item_id = Column(GUID(), ForeignKey("items.item_id"), nullable=False)
    site_id = Column(GUID(), ForeignKey("sites.site_id"))
    event_type = Column(String(30), nullable=False)
    quantity = Column(Float, nullable=False)
    reason = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_events_item_created", "tenant_id", "item_id", "created_at"),
        CheckConstraint(
            "event_type IN ('receive', 'issue', 'consume', 'sale', 'ship', 'scrap', 'adjust', 'transfer', 'count')",
            name="ck_event_type",
        ),
    )


# ─── 7. Lots ────────────────────────────────────────────────────────────────


class Lot(Base):
    __tablename__ = "lots"

    lot_id = Column(GUID(), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    item_id = Column(GUID(), ForeignKey("items.item_id"), nullable=False)
    site_id = Column(GUID(), ForeignKey("sites.site_id"))
    lot_number = Column(String(100), nullable=False)
    expiration_date = Column(Date)
    quantity = Column(Float, nullable=False, default=0)

    item = relationship("Item")


# ─── 8. Suppliers ───────────────────────────────────────────────────────────


class Supplier(Base):
    __tablename__ = "suppliers"

    supplier_id = Column(GUID(), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    name = Column(String(255), nullable=False)
    contact_email = Column(String(255))


# ─── 9. Production Orders ───────────────────────────────────────────────────


class ProductionOrder(Base):
    __tablename__ = "production_orders"

    order_id = Column(GUID(), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    site_id = Column(GUID(), ForeignKey("sites.site_id"))
    item_id = Column(GUID(), ForeignKey("items.item_id"), nullable=False)
    order_number = Column(String(50))
    status = Column(String(20), nullable=False, default="planned")
    scheduled_end = Column(DateTime)

    item = relationship("Item")

    __table_args__ = (
        CheckConstraint(
            "status IN ('planned', 'released', 'in_progress', 'completed', 'cancelled')",
            name="ck_production_status",
        ),
    )


# ─── 10. Purchase Orders ────────────────────────────────────────────────────


class PurchaseOrder(Base):
    __tablename__ = "purchase_orders"

    po_id = Column(GUID(), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    site_id = Column(GUID(), ForeignKey("sites.site_id"))
    supplier_id = Column(GUID(), ForeignKey("suppliers.supplier_id"), nullable=False)
    po_number = Column(String(50))
    status = Column(String(30), nullable=False, default="draft")
    expected_delivery = Column(DateTime)
    source = Column(String(30), nullable=False, default="manual")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    supplier = relationship("Supplier")
    lines = relationship("PurchaseOrderLine", back_populates="purchase_order", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint(
            "status IN ('draft', 'approved', 'sent', 'partially_received', 'received', 'cancelled')",
            name="ck_po_status",
        ),
    )


# ─── 11. Purchase Order Lines ───────────────────────────────────────────────


class PurchaseOrderLine(Base):
    __tablename__ = "purchase_order_lines"

    line_id = Column(GUID(), primary_key=True, default=lambda: str(uuid.uuid4()))
    po_id = Column(GUID(), ForeignKey("purchase_orders.po_id"), nullable=False)
    item_id = Column(GUID(), ForeignKey("items.item_id"), nullable=False)
    quantity = Column(Float, nullable=False)

    purchase_order = relationship("PurchaseOrder", back_populates="lines")


# ─── 12. Alerts ─────────────────────────────────────────────────────────────


class AlertRecord(Base):
    __tablename__ = "alerts"

    alert_id = Column(GUID(), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    rule_id = Column(String(100), nullable=False)
    alert_type = Column(String(50), nullable=False)
    severity = Column(String(20), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(100), nullable=False)
    dedup_key = Column(String(255), nullable=False)
    alert_metadata = Column("metadata", JSON, default=dict)
    triggered_at = Column(DateTime, nullable=False)
    acknowledged_at = Column(DateTime)
    acknowledged_by = Column(String(255))
    resolved = Column(Boolean, nullable=False, default=False)
    resolved_at = Column(DateTime)

    __table_args__ = (
        Index("ix_alerts_dedup", "dedup_key", "triggered_at"),
        Index("ix_alerts_tenant_resolved", "tenant_id", "resolved"),
        CheckConstraint("severity IN ('info', 'warning', 'critical')", name="ck_alert_severity"),
    )


# ─── 13. Notifications ──────────────────────────────────────────────────────


class NotificationRecord(Base):
    __tablename__ = "notifications"

    notification_id = Column(GUID(), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    user_id = Column(GUID(), ForeignKey("users.user_id"))
    category = Column(String(50), nullable=False)
    severity = Column(String(20), nullable=False, default="info")
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    link = Column(String(500))
    reference_type = Column(String(50))
    reference_id = Column(String(100))
    read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False)

    __table_args__ = (Index("ix_notifications_tenant_created", "tenant_id", "created_at"),)


# ─── 14. Scheduled Tasks ────────────────────────────────────────────────────


class ScheduledTaskRecord(Base):
    __tablename__ = "scheduled_tasks"

    task_id = Column(GUID(), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    task_type = Column(String(30), nullable=False)
    frequency = Column(String(20), nullable=False)
    cron_expression = Column(String(100))
    config = Column(JSON, default=dict)
    enabled = Column(Boolean, nullable=False, default=True)
    recipients = Column(JSON, default=list)
    last_run_at = Column(DateTime)
    last_run_status = Column(String(20))
    next_run_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_tasks_due", "enabled", "next_run_at"),
        CheckConstraint(
            "task_type IN ('report', 'export', 'backup', 'alert_check', 'sync', 'cleanup')",
            name="ck_task_type",
        ),
        CheckConstraint(
            "frequency IN ('hourly', 'daily', 'weekly', 'monthly', 'custom')",
            name="ck_task_frequency",
        ),
    )


# ─── 15. Task Executions ────────────────────────────────────────────────────


class TaskExecutionRecord(Base):
    __tablename__ = "task_executions"

    execution_id = Column(GUID(), primary_key=True, default=lambda: str(uuid.uuid4()))
    task_id = Column(GUID(), ForeignKey("scheduled_tasks.task_id"), nullable=False)
    status = Column(String(20), nullable=False)
    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime)
    output = Column(JSON)
    error = Column(Text)
    duration_ms = Column(Integer)

    __table_args__ = (
        Index("ix_task_executions_task", "task_id", "started_at"),
        CheckConstraint("status IN ('running', 'success', 'failed')", name="ck_task_execution_status"),
    )


# ─── 16. Workflows ──────────────────────────────────────────────────────────


class WorkflowRecord(Base):
    __tablename__ = "workflows"

    workflow_id = Column(GUID(), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    enabled = Column(Boolean, nullable=False, default=True)
    trigger_type = Column(String(50), nullable=False)
    trigger_config = Column(JSON, default=dict)
    conditions = Column(JSON, default=list)
    actions = Column(JSON, default=list)
    execution_count = Column(Integer, nullable=False, default=0)
    last_executed_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (Index("ix_workflows_trigger", "tenant_id", "trigger_type", "enabled"),)


# ─── 17. Workflow Executions ────────────────────────────────────────────────


class WorkflowExecutionRecord(Base):
    __tablename__ = "workflow_executions"

    execution_id = Column(GUID(), primary_key=True, default=lambda: str(uuid.uuid4()))
    workflow_id = Column(GUID(), ForeignKey("workflows.workflow_id"), nullable=False)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    triggered_by = Column(String(255), nullable=False)
    triggered_at = Column(DateTime, nullable=False)
    status = Column(String(20), nullable=False)
    results = Column(JSON, default=list)
    duration_ms = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("ix_workflow_executions_workflow", "workflow_id", "triggered_at"),
        CheckConstraint(
            "status IN ('running', 'success', 'partial', 'failed')",
            name="ck_workflow_execution_status",
        ),
    )
