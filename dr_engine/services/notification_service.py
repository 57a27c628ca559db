"""Notification Service — persist DR alerts and forward them to a Slack webhook."""

from __future__ import annotations

import logging
from typing import Protocol

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from dr_engine.config import settings
from dr_engine.models.dr_alert import AlertSeverity, DRAlert

logger = logging.getLogger(__name__)

_SEVERITY_COLORS = {
    AlertSeverity.info: "#36a64f",
    AlertSeverity.warning: "#daa520",
    AlertSeverity.critical: "#dc3545",
}


class Notifier(Protocol):
    def notify(
        self,
        severity: AlertSeverity,
        message: str,
        context: dict | None = None,
        *,
        title: str | None = None,
    ) -> object: ...


class NotificationService:
    def __init__(self, db: Session, webhook_url: str | None = None) -> None:
        self.db = db
        self.webhook_url = webhook_url if webhook_url is not None else settings.alert_webhook_url

    def notify(
        self,
        severity: AlertSeverity,
        message: str,
        context: dict | None = None,
        *,
        title: str | None = None,
    ) -> DRAlert:
        """Record an alert and push it to the webhook when one is configured.

        Delivery is best-effort; the persisted alert is the source of truth.
        """
        alert = DRAlert(
            severity=severity,
            title=(title or message.split("\n", 1)[0])[:200],
            message=message,
            context=context or {},
        )
        self.db.add(alert)
        self.db.flush()

        log = logger.warning if severity != AlertSeverity.info else logger.info
        log("DR alert [%s] %s", severity.value, alert.title)

        if self.webhook_url:
            alert.dispatched = _send_slack(self.webhook_url, alert)
            self.db.flush()
        return alert

    def recent(self, limit: int = 50, severity: AlertSeverity | None = None) -> list[DRAlert]:
        stmt = select(DRAlert).order_by(DRAlert.created_at.desc()).limit(limit)
        if severity is not None:
            stmt = stmt.where(DRAlert.severity == severity)
        return list(self.db.scalars(stmt).all())


def _send_slack(webhook_url: str, alert: DRAlert) -> bool:
    blocks: list[dict[str, object]] = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": alert.title[:150]},
        },
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": alert.message},
        },
    ]
    if alert.context:
        fields = [{"type": "mrkdwn", "text": f"*{k}*\n{v}"} for k, v in sorted(alert.context.items())][:10]
        blocks.append({"type": "section", "fields": fields})

    payload: dict[str, object] = {
        "blocks": blocks,
        "attachments": [{"color": _SEVERITY_COLORS.get(alert.severity, "#36a64f"), "text": ""}],
    }

    try:
        resp = httpx.post(webhook_url, json=payload, timeout=10.0)
        if resp.status_code == 200:
            logger.info("Slack alert sent: %s", alert.title)
            return True
        logger.warning("Slack webhook returned %d: %s", resp.status_code, resp.text[:500])
        return False
    except httpx.HTTPError:
        logger.exception("Failed to send Slack alert")
        return False
