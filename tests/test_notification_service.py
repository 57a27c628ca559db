"""Tests for DR alert persistence and Slack delivery."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import httpx

from dr_engine.models.dr_alert import AlertSeverity
from dr_engine.services.notification_service import NotificationService

WEBHOOK = "https://hooks.slack.example/services/T000/B000/XXXX"


def test_alert_is_persisted_without_webhook(db_session):
    with patch("dr_engine.services.notification_service.httpx.post") as mock_post:
        alert = NotificationService(db_session, webhook_url="").notify(
            AlertSeverity.warning, "Backup verification failed\nchecksum mismatch", {"job": "accounts"}
        )
    mock_post.assert_not_called()
    assert alert.title == "Backup verification failed"
    assert alert.dispatched is False
    assert alert.context == {"job": "accounts"}


def test_webhook_delivery(db_session):
    resp = MagicMock(status_code=200)
    with patch("dr_engine.services.notification_service.httpx.post", return_value=resp) as mock_post:
        alert = NotificationService(db_session, webhook_url=WEBHOOK).notify(
            AlertSeverity.critical, "Failover rollback failed", {"event_id": "abc"}, title="Rollback failed"
        )

    assert alert.dispatched is True
    args, kwargs = mock_post.call_args
    assert args == (WEBHOOK,)
    blocks = kwargs["json"]["blocks"]
    assert blocks[0]["text"]["text"] == "Rollback failed"
    assert blocks[2]["fields"] == [{"type": "mrkdwn", "text": "*event_id*\nabc"}]
    assert kwargs["json"]["attachments"][0]["color"] == "#dc3545"


def test_webhook_error_status_is_not_dispatched(db_session):
    resp = MagicMock(status_code=500, text="boom")
    with patch("dr_engine.services.notification_service.httpx.post", return_value=resp):
        alert = NotificationService(db_session, webhook_url=WEBHOOK).notify(AlertSeverity.info, "Drill passed")
    assert alert.dispatched is False


def test_transport_failure_keeps_alert(db_session):
    with patch(
        "dr_engine.services.notification_service.httpx.post",
        side_effect=httpx.ConnectError("connection refused"),
    ):
        svc = NotificationService(db_session, webhook_url=WEBHOOK)
        alert = svc.notify(AlertSeverity.warning, "Replica lagging")
    assert alert.dispatched is False
    assert [a.alert_id for a in svc.recent()] == [alert.alert_id]


def test_recent_filters_by_severity(db_session):
    svc = NotificationService(db_session, webhook_url="")
    svc.notify(AlertSeverity.info, "one")
    critical = svc.notify(AlertSeverity.critical, "two")
    assert [a.alert_id for a in svc.recent(severity=AlertSeverity.critical)] == [critical.alert_id]
