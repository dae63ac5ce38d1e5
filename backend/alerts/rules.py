"""
Alert rules — one per breach category the monitor scans.

Thresholds for each category live in the engine; the rule carries the
operational knobs: enabled flag, cooldown window, delivery channels and
extra recipients. Tenants override defaults through ``AlertRuleSet``.
"""

from dataclasses import replace
from typing import Any

from db.domain import AlertChannel, AlertRule, AlertType

# ──────────────────────────────────────────────────────────────────────────
# Category thresholds
# ──────────────────────────────────────────────────────────────────────────

LOW_STOCK_CRITICAL_RATIO = 0.5
CONSUMPTION_WINDOW_DAYS = 30
EXPIRY_WINDOW_DAYS = 30
EXPIRY_CRITICAL_DAYS = 7
EXPIRY_WARNING_DAYS = 14
SLOW_MOVING_DAYS = 90
PRODUCTION_DELAY_CRITICAL_DAYS = 7
PO_DUE_WINDOW_DAYS = 7
PO_DUE_WARNING_DAYS = 2

DEFAULT_RULE_IDS = {
    AlertType.LOW_STOCK: "low-stock-default",
    AlertType.OUT_OF_STOCK: "out-of-stock-default",
    AlertType.EXPIRING_INVENTORY: "expiring-inventory-default",
    AlertType.SLOW_MOVING: "slow-moving-default",
    AlertType.PRODUCTION_DELAY: "production-delay-default",
    AlertType.PURCHASE_ORDER_DUE: "po-due-default",
}

DEFAULT_RULE_NAMES = {
    AlertType.LOW_STOCK: "Low stock",
    AlertType.OUT_OF_STOCK: "Out of stock",
    AlertType.EXPIRING_INVENTORY: "Expiring inventory",
    AlertType.SLOW_MOVING: "Slow-moving inventory",
    AlertType.PRODUCTION_DELAY: "Production delay",
    AlertType.PURCHASE_ORDER_DUE: "Purchase order due",
}


def default_rules(cooldown_minutes: int = 240) -> dict[AlertType, AlertRule]:
    return {
        alert_type: AlertRule(
            rule_id=rule_id,
            alert_type=alert_type,
            name=DEFAULT_RULE_NAMES[alert_type],
            cooldown_minutes=cooldown_minutes,
        )
        for alert_type, rule_id in DEFAULT_RULE_IDS.items()
    }


class AlertRuleSet:
    """Rules keyed by alert type, seeded with the defaults."""

    def __init__(self, rules: dict[AlertType, AlertRule] | None = None, cooldown_minutes: int = 240):
        self._rules = default_rules(cooldown_minutes)
        for rule in (rules or {}).values():
            self._rules[rule.alert_type] = rule

    def get(self, alert_type: AlertType) -> AlertRule | None:
        return self._rules.get(alert_type)

    def is_enabled(self, alert_type: AlertType) -> bool:
        rule = self._rules.get(alert_type)
        return rule is not None and rule.enabled

    def override(self, alert_type: AlertType, **changes: Any) -> AlertRule:
        """Replace fields of one rule, e.g. ``override(AlertType.SLOW_MOVING, enabled=False)``."""
        if "channels" in changes:
            changes["channels"] = tuple(AlertChannel(channel) for channel in changes["channels"])
        rule = replace(self._rules[alert_type], **changes)
        self._rules[alert_type] = rule
        return rule

    def __iter__(self):
        return iter(self._rules.values())

    def __len__(self) -> int:
        return len(self._rules)
