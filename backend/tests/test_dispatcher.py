"""
Tests for the Notification Dispatcher and channels.
"""

from datetime import datetime

import pytest
from structlog.testing import CapturingLogger

from db.domain import Alert, AlertChannel, AlertSeverity, AlertType, User
from notifications.channels import LogChannel, normalize_recipients
from notifications.dispatcher import NotificationDispatcher, NotificationEvent

TENANT_ID = "00000000-0000-0000-0000-000000000001"


def _alert(alert_type=AlertType.LOW_STOCK) -> Alert:
    return Alert(
        tenant_id=TENANT_ID,
        rule_id="low-stock-default",
        alert_type=alert_type,
        severity=AlertSeverity.WARNING,
        title="Low Stock Alert: Widget",
        message="Widget is running low.",
        entity_type="item",
        entity_id="item-1",
        metadata={"sku": "SKU-1"},
        triggered_at=datetime(2024, 3, 15, 10, 0),
    )


@pytest.fixture
def dispatcher(store, channel):
    return NotificationDispatcher(store, channel, "https://app.test/")


class TestRecipients:
    async def test_admins_and_supervisors(self, dispatcher):
        assert sorted(await dispatcher.select_recipients(TENANT_ID, "low_stock")) == [
            "admin@acme.test",
            "super@acme.test",
        ]

    async def test_explicit_opt_out(self, dispatcher, store):
        store.add_user(
            User(
                user_id="u-quiet",
                tenant_id=TENANT_ID,
                email="quiet@acme.test",
                role="Admin",
                alert_preferences={"low_stock": False, "out_of_stock": True},
            )
        )

        assert "quiet@acme.test" not in await dispatcher.select_recipients(TENANT_ID, "low_stock")
        assert "quiet@acme.test" in await dispatcher.select_recipients(TENANT_ID, "out_of_stock")
        # Categories without a preference default to opted in
        assert "quiet@acme.test" in await dispatcher.select_recipients(TENANT_ID, "slow_moving")

    def test_normalize_recipients(self):
        assert normalize_recipients("a@x.test; b@x.test, a@x.test ,") == ["a@x.test", "b@x.test"]
        assert normalize_recipients(["", " c@x.test "]) == ["c@x.test"]


class TestDispatchAlert:
    async def test_in_app_and_email(self, dispatcher, store, channel):
        alert = _alert()

        await dispatcher.dispatch(alert)

        [notification] = store.notifications.values()
        assert notification.link == f"https://app.test/alerts/{alert.alert_id}"
        assert notification.category == "low_stock"
        [email] = channel.sent
        assert email["subject"] == "[WARNING] Low Stock Alert: Widget"
        assert f"https://app.test/alerts/{alert.alert_id}" in email["html"]

    async def test_extra_recipients_are_merged(self, dispatcher, channel):
        await dispatcher.dispatch_alert(_alert(), ["buyer@acme.test", "admin@acme.test"])

        assert sorted(channel.sent[0]["to"]) == ["admin@acme.test", "buyer@acme.test", "super@acme.test"]

    async def test_in_app_only_channel(self, dispatcher, store, channel):
        await dispatcher.dispatch_alert(_alert(), channels=(AlertChannel.IN_APP,))

        assert len(store.notifications) == 1
        assert channel.sent == []

    async def test_no_recipients_skips_email(self, store, channel):
        dispatcher = NotificationDispatcher(store, channel, "https://app.test")

        await dispatcher.dispatch_alert(
            Alert(
                tenant_id="tenant-without-users",
                rule_id="r",
                alert_type=AlertType.OUT_OF_STOCK,
                severity=AlertSeverity.CRITICAL,
                title="t",
                message="m",
                entity_type="item",
                entity_id="i",
            )
        )

        assert channel.sent == []
        assert len(store.notifications) == 1


class TestBestEffort:
    async def test_channel_raising_is_swallowed(self, store, channel_factory):
        channel = channel_factory(error=RuntimeError("smtp down"))
        dispatcher = NotificationDispatcher(store, channel, "https://app.test")

        await dispatcher.dispatch_alert(_alert())

        assert len(store.notifications) == 1

    async def test_channel_returning_false_is_swallowed(self, store, channel_factory):
        channel = channel_factory(result=False)
        dispatcher = NotificationDispatcher(store, channel, "https://app.test")

        await dispatcher.dispatch_alert(_alert())

        assert len(channel.sent) == 1

    async def test_store_failure_still_sends_email(self, store, channel, monkeypatch):
        async def broken(notification):
            raise RuntimeError("db down")

        monkeypatch.setattr(store, "save_notification", broken)
        dispatcher = NotificationDispatcher(store, channel, "https://app.test")

        await dispatcher.dispatch_alert(_alert())

        assert len(channel.sent) == 1

    async def test_recipient_lookup_failure_keeps_explicit_recipients(self, store, channel, monkeypatch):
        async def broken(tenant_id, roles):
            raise RuntimeError("db down")

        monkeypatch.setattr(store, "list_users", broken)
        dispatcher = NotificationDispatcher(store, channel, "https://app.test")

        await dispatcher.dispatch_alert(_alert(), ["buyer@acme.test"])

        assert channel.sent[0]["to"] == ["buyer@acme.test"]


class TestDispatchEvent:
    async def test_event_without_admins(self, dispatcher, store, channel):
        await dispatcher.dispatch(
            NotificationEvent(
                tenant_id=TENANT_ID,
                category="sync",
                title="Sync finished",
                message="42 records",
                recipients=["ops@acme.test"],
                include_tenant_admins=False,
            )
        )

        [notification] = store.notifications.values()
        assert notification.title == "Sync finished"
        [email] = channel.sent
        assert email["to"] == ["ops@acme.test"]
        assert email["subject"] == "Sync finished"
        assert email["html"] == "<p>42 records</p>"


class TestLogChannel:
    async def test_logs_instead_of_sending(self, monkeypatch):
        captured = CapturingLogger()
        monkeypatch.setattr("notifications.channels.logger", captured)
        channel = LogChannel()

        assert await channel.send("a@x.test, b@x.test", "Hello", "<p>hi</p>") is True
        assert await channel.send("c@x.test", "Again", "<p>hi</p>") is True

        assert [call.args for call in captured.calls] == [("email.logged",), ("email.logged",)]
        assert captured.calls[0].kwargs["recipients"] == ["a@x.test", "b@x.test"]
        assert captured.calls[0].kwargs["subject"] == "Hello"
        # Nothing is retained per message
        assert vars(channel) == {}

    async def test_no_recipients(self):
        assert await LogChannel().send("", "Hello", "<p>hi</p>") is False
