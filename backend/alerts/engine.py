"""
Alert Engine — threshold monitoring, cooldown dedup, and alert lifecycle.

Categories scanned on every pass:
  - low_stock:           0 < on_hand <= reorder_point
  - out_of_stock:        on_hand <= 0
  - expiring_inventory:  lots expiring within 30 days with stock remaining
  - slow_moving:         stock on hand, no movement in 90 days
  - production_delay:    open production orders past scheduled end
  - purchase_order_due:  open POs expected within 7 days

Each category runs in isolation: a failing scan is logged and reported on
the result while the others still produce alerts. Candidates matching an
unresolved alert (same tenant + type + entity) inside the rule's cooldown
window are dropped before persistence, so re-scanning an unchanged breach
does not pile up duplicate rows or emails.
"""

import math
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import structlog

from alerts.rules import (
    CONSUMPTION_WINDOW_DAYS,
    EXPIRY_CRITICAL_DAYS,
    EXPIRY_WARNING_DAYS,
    EXPIRY_WINDOW_DAYS,
    LOW_STOCK_CRITICAL_RATIO,
    PO_DUE_WARNING_DAYS,
    PO_DUE_WINDOW_DAYS,
    PRODUCTION_DELAY_CRITICAL_DAYS,
    SLOW_MOVING_DAYS,
    AlertRuleSet,
)
from core import clock
from core.exceptions import AlertNotFoundError, AlertScanError
from db.domain import Alert, AlertRule, AlertSeverity, AlertType
from db.store import DataStore, with_timeout
from notifications.dispatcher import NotificationDispatcher

logger = structlog.get_logger()

SECONDS_PER_DAY = 86400
NO_STOCKOUT_RISK = "no stockout risk"


@dataclass
class AlertCheckResult:
    alerts: list[Alert] = field(default_factory=list)
    suppressed: int = 0
    errors: dict[str, str] = field(default_factory=dict)

    def count(self, severity: AlertSeverity) -> int:
        return sum(1 for alert in self.alerts if alert.severity == severity)

    def summary(self) -> dict:
        return {
            "triggered": len(self.alerts),
            "critical": self.count(AlertSeverity.CRITICAL),
            "warning": self.count(AlertSeverity.WARNING),
            "info": self.count(AlertSeverity.INFO),
            "suppressed": self.suppressed,
            "failed_categories": sorted(self.errors),
        }


def _whole_days(delta: timedelta) -> int:
    return math.floor(delta.total_seconds() / SECONDS_PER_DAY)


def _fmt_qty(value: float) -> str:
    return f"{value:g}"


class AlertEngine:
    def __init__(
        self,
        store: DataStore,
        dispatcher: NotificationDispatcher,
        rules: AlertRuleSet | None = None,
        store_timeout: float | None = None,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.rules = rules or AlertRuleSet()
        self.store_timeout = store_timeout
        self._scans: dict[AlertType, Callable[..., Awaitable[list[Alert]]]] = {
            AlertType.LOW_STOCK: self.check_low_stock,
            AlertType.OUT_OF_STOCK: self.check_out_of_stock,
            AlertType.EXPIRING_INVENTORY: self.check_expiring_inventory,
            AlertType.SLOW_MOVING: self.check_slow_moving,
            AlertType.PRODUCTION_DELAY: self.check_production_delays,
            AlertType.PURCHASE_ORDER_DUE: self.check_purchase_orders_due,
        }

    # ── Public API ──────────────────────────────────────────────────────

    async def check_alerts(
        self,
        tenant_id: str,
        site_id: str | None = None,
        *,
        raise_on_error: bool = False,
    ) -> list[Alert]:
        """
        Scan every enabled category, persist and notify new alerts.

        With ``raise_on_error`` a scan failure raises ``AlertScanError``
        after the alerts from healthy categories have been delivered.
        """
        result = await self.run_checks(tenant_id, site_id)
        if raise_on_error and result.errors:
            raise AlertScanError(result.errors)
        return result.alerts

    async def run_checks(self, tenant_id: str, site_id: str | None = None) -> AlertCheckResult:
        log = logger.bind(tenant_id=tenant_id, site_id=site_id)
        now = clock.now()
        result = AlertCheckResult()

        candidates: list[tuple[AlertRule, Alert]] = []
        for alert_type, scan in self._scans.items():
            rule = self.rules.get(alert_type)
            if rule is None or not rule.enabled:
                continue
            try:
                found = await scan(tenant_id, site_id, now=now)
            except Exception as exc:  # noqa: BLE001
                log.error("alerts.scan_failed", category=alert_type.value, error=str(exc))
                result.errors[alert_type.value] = str(exc)
                continue
            candidates.extend((rule, alert) for alert in found)

        created: list[tuple[AlertRule, Alert]] = []
        for rule, alert in candidates:
            try:
                persisted = await self._persist_unless_cooling_down(rule, alert, now)
            except Exception as exc:  # noqa: BLE001
                log.error("alerts.persist_failed", category=alert.alert_type.value, error=str(exc))
                result.errors.setdefault(alert.alert_type.value, str(exc))
                continue
            if persisted:
                created.append((rule, alert))
                result.alerts.append(alert)
            else:
                result.suppressed += 1

        for rule, alert in created:
            await self.dispatcher.dispatch_alert(alert, rule.recipients, rule.channels)

        log.info("alerts.check_complete", **result.summary())
        return result

    async def acknowledge_alert(self, alert_id: str, user_id: str) -> Alert:
        alert = await with_timeout(
            self.store.mark_alert_acknowledged(alert_id, user_id, clock.now()), self.store_timeout
        )
        if alert is None:
            raise AlertNotFoundError(alert_id)
        logger.info("alerts.acknowledged", alert_id=alert_id, user_id=user_id)
        return alert

    async def resolve_alert(self, alert_id: str) -> Alert:
        alert = await with_timeout(self.store.mark_alert_resolved(alert_id, clock.now()), self.store_timeout)
        if alert is None:
            raise AlertNotFoundError(alert_id)
        logger.info("alerts.resolved", alert_id=alert_id)
        return alert

    # ── Category scans ──────────────────────────────────────────────────

    async def check_low_stock(self, tenant_id: str, site_id: str | None = None, *, now: datetime | None = None):
        now = now or clock.now()
        items = await self._read(self.store.list_item_stock(tenant_id, site_id, with_reorder_point=True))
        low = [item for item in items if 0 < item.on_hand <= item.reorder_point]
        if not low:
            return []

        since = now - timedelta(days=CONSUMPTION_WINDOW_DAYS)
        consumed = await self._read(self.store.consumption_totals(tenant_id, since, site_id))

        alerts = []
        for item in low:
            daily_usage = consumed.get(item.item_id, 0) / CONSUMPTION_WINDOW_DAYS
            days_until_stockout = math.floor(item.on_hand / daily_usage) if daily_usage > 0 else None
            horizon = (
                f"Estimated {days_until_stockout} days until stockout."
                if days_until_stockout is not None
                else f"Estimated horizon: {NO_STOCKOUT_RISK}."
            )
            severity = (
                AlertSeverity.CRITICAL
                if item.on_hand <= item.reorder_point * LOW_STOCK_CRITICAL_RATIO
                else AlertSeverity.WARNING
            )
            alerts.append(
                self._build(
                    tenant_id,
                    AlertType.LOW_STOCK,
                    severity,
                    title=f"Low Stock Alert: {item.name}",
                    message=(
                        f'Item "{item.name}" (SKU: {item.sku}) is running low. '
                        f"Current stock: {_fmt_qty(item.on_hand)}, "
                        f"Reorder point: {_fmt_qty(item.reorder_point)}. {horizon}"
                    ),
                    entity_type="item",
                    entity_id=item.item_id,
                    metadata={
                        "sku": item.sku,
                        "current_stock": item.on_hand,
                        "reorder_point": item.reorder_point,
                        "daily_usage": round(daily_usage, 2),
                        "days_until_stockout": days_until_stockout,
                    },
                    now=now,
                )
            )
        return alerts

    async def check_out_of_stock(self, tenant_id: str, site_id: str | None = None, *, now: datetime | None = None):
        now = now or clock.now()
        items = await self._read(self.store.list_item_stock(tenant_id, site_id))
        return [
            self._build(
                tenant_id,
                AlertType.OUT_OF_STOCK,
                AlertSeverity.CRITICAL,
                title=f"OUT OF STOCK: {item.name}",
                message=(
                    f'CRITICAL: Item "{item.name}" (SKU: {item.sku}) is completely out of stock. '
                    "Immediate action required."
                ),
                entity_type="item",
                entity_id=item.item_id,
                metadata={"sku": item.sku, "current_stock": item.on_hand, "reorder_point": item.reorder_point},
                now=now,
            )
            for item in items
            if item.on_hand <= 0
        ]

    async def check_expiring_inventory(
        self, tenant_id: str, site_id: str | None = None, *, now: datetime | None = None
    ):
        now = now or clock.now()
        today = now.date()
        lots = await self._read(
            self.store.list_expiring_lots(tenant_id, today, today + timedelta(days=EXPIRY_WINDOW_DAYS), site_id)
        )

        alerts = []
        for lot in lots:
            days_left = (lot.expiration_date - today).days
            if days_left <= EXPIRY_CRITICAL_DAYS:
                severity = AlertSeverity.CRITICAL
            elif days_left <= EXPIRY_WARNING_DAYS:
                severity = AlertSeverity.WARNING
            else:
                severity = AlertSeverity.INFO
            alerts.append(
                self._build(
                    tenant_id,
                    AlertType.EXPIRING_INVENTORY,
                    severity,
                    title=f"Inventory Expiring: {lot.item_name} (Lot {lot.lot_number})",
                    message=(
                        f'Lot {lot.lot_number} of "{lot.item_name}" (SKU: {lot.sku}) expires in '
                        f"{days_left} days on {lot.expiration_date.isoformat()}. "
                        f"Remaining quantity: {_fmt_qty(lot.quantity)}."
                    ),
                    entity_type="lot",
                    entity_id=lot.lot_id,
                    metadata={
                        "sku": lot.sku,
                        "lot_number": lot.lot_number,
                        "item_id": lot.item_id,
                        "quantity": lot.quantity,
                        "expiration_date": lot.expiration_date.isoformat(),
                        "days_until_expiry": days_left,
                    },
                    now=now,
                )
            )
        return alerts

    async def check_slow_moving(self, tenant_id: str, site_id: str | None = None, *, now: datetime | None = None):
        now = now or clock.now()
        items = await self._read(self.store.list_item_stock(tenant_id, site_id))
        stocked = [item for item in items if item.on_hand > 0]
        if not stocked:
            return []

        since = now - timedelta(days=SLOW_MOVING_DAYS)
        moved = await self._read(self.store.items_with_movement(tenant_id, since, site_id))

        alerts = []
        for item in stocked:
            if item.item_id in moved:
                continue
            value = item.on_hand * (item.unit_cost or 0)
            alerts.append(
                self._build(
                    tenant_id,
                    AlertType.SLOW_MOVING,
                    AlertSeverity.INFO,
                    title=f"Slow-Moving Inventory: {item.name}",
                    message=(
                        f'Item "{item.name}" (SKU: {item.sku}) has not moved in {SLOW_MOVING_DAYS}+ days. '
                        f"Current stock: {_fmt_qty(item.on_hand)}, Value: ${value:.2f}. "
                        "Consider markdown or disposal."
                    ),
                    entity_type="item",
                    entity_id=item.item_id,
                    metadata={
                        "sku": item.sku,
                        "current_stock": item.on_hand,
                        "value": round(value, 2),
                        "days_without_movement": SLOW_MOVING_DAYS,
                    },
                    now=now,
                )
            )
        return alerts

    async def check_production_delays(
        self, tenant_id: str, site_id: str | None = None, *, now: datetime | None = None
    ):
        now = now or clock.now()
        orders = await self._read(self.store.list_overdue_production_orders(tenant_id, now, site_id))

        alerts = []
        for order in orders:
            days_delayed = _whole_days(now - order.scheduled_end)
            severity = (
                AlertSeverity.CRITICAL if days_delayed > PRODUCTION_DELAY_CRITICAL_DAYS else AlertSeverity.WARNING
            )
            label = order.order_number or order.order_id
            alerts.append(
                self._build(
                    tenant_id,
                    AlertType.PRODUCTION_DELAY,
                    severity,
                    title=f"Production Order Delayed: {label}",
                    message=(
                        f'Production order for "{order.item_name}" is {days_delayed} days overdue. '
                        f"Scheduled completion: {order.scheduled_end.date().isoformat()}. "
                        f"Current status: {order.status}."
                    ),
                    entity_type="production_order",
                    entity_id=order.order_id,
                    metadata={
                        "order_number": order.order_number,
                        "item_sku": order.item_sku,
                        "days_delayed": days_delayed,
                        "scheduled_end": order.scheduled_end.isoformat(),
                        "status": order.status,
                    },
                    now=now,
                )
            )
        return alerts

    async def check_purchase_orders_due(
        self, tenant_id: str, site_id: str | None = None, *, now: datetime | None = None
    ):
        now = now or clock.now()
        orders = await self._read(
            self.store.list_purchase_orders_due(tenant_id, now, now + timedelta(days=PO_DUE_WINDOW_DAYS), site_id)
        )

        alerts = []
        for po in orders:
            days_until_due = _whole_days(po.expected_delivery - now)
            severity = AlertSeverity.WARNING if days_until_due <= PO_DUE_WARNING_DAYS else AlertSeverity.INFO
            label = po.po_number or po.po_id
            alerts.append(
                self._build(
                    tenant_id,
                    AlertType.PURCHASE_ORDER_DUE,
                    severity,
                    title=f"Purchase Order Due Soon: {label}",
                    message=(
                        f'PO from "{po.supplier_name}" is due in {days_until_due} days on '
                        f"{po.expected_delivery.date().isoformat()}. Ensure receiving area is prepared."
                    ),
                    entity_type="purchase_order",
                    entity_id=po.po_id,
                    metadata={
                        "order_number": po.po_number,
                        "supplier": po.supplier_name,
                        "days_until_due": days_until_due,
                        "expected_delivery": po.expected_delivery.isoformat(),
                    },
                    now=now,
                )
            )
        return alerts

    # ── Internals ───────────────────────────────────────────────────────

    async def _read(self, awaitable):
        return await with_timeout(awaitable, self.store_timeout)

    def _build(self, tenant_id, alert_type, severity, *, title, message, entity_type, entity_id, metadata, now):
        rule = self.rules.get(alert_type)
        return Alert(
            tenant_id=tenant_id,
            rule_id=rule.rule_id if rule else f"{alert_type.value}-default",
            alert_type=alert_type,
            severity=severity,
            title=title,
            message=message,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata=metadata,
            triggered_at=now,
        )

    async def _persist_unless_cooling_down(self, rule: AlertRule, alert: Alert, now: datetime) -> bool:
        since = now - timedelta(minutes=rule.cooldown_minutes)
        existing = await self._read(self.store.find_active_alert(alert.dedup_key, since))
        if existing is not None:
            logger.debug("alerts.suppressed", dedup_key=alert.dedup_key, existing_alert_id=existing.alert_id)
            return False
        await self._read(self.store.save_alert(alert))
        return True
