"""
Alerts Router — threshold checks and alert lifecycle endpoints.
"""

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from api.deps import get_current_user, get_runtime, get_tenant_id
from core.container import AutomationRuntime
from core.exceptions import AlertNotFoundError
from db.domain import Alert

router = APIRouter(prefix="/api/v1/alerts", tags=["alerts"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class AlertResponse(BaseModel):
    alert_id: str
    rule_id: str
    tenant_id: str
    alert_type: str
    severity: str
    title: str
    message: str
    entity_type: str
    entity_id: str
    metadata: dict[str, Any]
    triggered_at: datetime | None
    acknowledged_at: datetime | None
    acknowledged_by: str | None
    resolved: bool
    resolved_at: datetime | None

    @classmethod
    def from_alert(cls, alert: Alert) -> "AlertResponse":
        return cls(
            alert_id=alert.alert_id,
            rule_id=alert.rule_id,
            tenant_id=alert.tenant_id,
            alert_type=alert.alert_type.value,
            severity=alert.severity.value,
            title=alert.title,
            message=alert.message,
            entity_type=alert.entity_type,
            entity_id=alert.entity_id,
            metadata=alert.metadata,
            triggered_at=alert.triggered_at,
            acknowledged_at=alert.acknowledged_at,
            acknowledged_by=alert.acknowledged_by,
            resolved=alert.resolved,
            resolved_at=alert.resolved_at,
        )


class AlertCheckRequest(BaseModel):
    site_id: str | None = None


class AlertCheckResponse(BaseModel):
    triggered: int
    critical: int
    warning: int
    info: int
    suppressed: int
    failed_categories: list[str]
    alerts: list[AlertResponse]


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/", response_model=list[AlertResponse])
async def list_alerts(
    include_resolved: bool = False,
    tenant_id: str = Depends(get_tenant_id),
    runtime: AutomationRuntime = Depends(get_runtime),
):
    """List the tenant's alerts, oldest first."""
    alerts = await runtime.store.list_alerts(tenant_id, include_resolved)
    return [AlertResponse.from_alert(alert) for alert in alerts]


@router.post("/check", response_model=AlertCheckResponse)
async def check_alerts(
    body: AlertCheckRequest | None = None,
    tenant_id: str = Depends(get_tenant_id),
    runtime: AutomationRuntime = Depends(get_runtime),
):
    """Run every threshold scan now for the caller's tenant."""
    result = await runtime.alert_engine.run_checks(tenant_id, body.site_id if body else None)
    return AlertCheckResponse(
        **result.summary(),
        alerts=[AlertResponse.from_alert(alert) for alert in result.alerts],
    )


async def _tenant_alert(runtime: AutomationRuntime, tenant_id: str, alert_id: str) -> Alert:
    alert = await runtime.store.get_alert(alert_id)
    if alert is None or alert.tenant_id != tenant_id:
        raise HTTPException(status_code=404, detail="Alert not found")
    return alert


@router.patch("/{alert_id}/acknowledge", response_model=AlertResponse)
async def acknowledge_alert(
    alert_id: str,
    tenant_id: str = Depends(get_tenant_id),
    user: dict = Depends(get_current_user),
    runtime: AutomationRuntime = Depends(get_runtime),
):
    """Acknowledge an alert."""
    await _tenant_alert(runtime, tenant_id, alert_id)
    try:
        alert = await runtime.alert_engine.acknowledge_alert(alert_id, user.get("sub", "unknown"))
    except AlertNotFoundError:
        raise HTTPException(status_code=404, detail="Alert not found")
    return AlertResponse.from_alert(alert)


@router.patch("/{alert_id}/resolve", response_model=AlertResponse)
async def resolve_alert(
    alert_id: str,
    tenant_id: str = Depends(get_tenant_id),
    runtime: AutomationRuntime = Depends(get_runtime),
):
    """Resolve an alert."""
    existing = await _tenant_alert(runtime, tenant_id, alert_id)
    if existing.resolved:
        raise HTTPException(status_code=400, detail="Alert is already resolved")
    try:
        alert = await runtime.alert_engine.resolve_alert(alert_id)
    except AlertNotFoundError:
        raise HTTPException(status_code=404, detail="Alert not found")
    return AlertResponse.from_alert(alert)
