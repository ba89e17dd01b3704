"""Alert sinks.

Alerts are fire-and-forget: delivery failures are logged and never
propagate into the pipeline.  Payloads are redacted before they leave the
process.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from src.pipeline_shared.constants import (
    ALERT_BLOCKED,
    ALERT_FAILED,
    ALERT_PRODUCTION_ATTEMPT,
)
from src.pipeline_shared.logging import redact_object, redact_text
from src.pipeline_shared.protocols import AlertSink
from src.pipeline_shared.utils import now_iso

logger = logging.getLogger(__name__)

ALERT_STYLES: dict[str, dict[str, str]] = {
    ALERT_FAILED: {"color": "#F44336", "title": "Pipeline Alert: RUN FAILED", "priority": "high"},
    ALERT_BLOCKED: {"color": "#FF9800", "title": "Pipeline Alert: RUN BLOCKED", "priority": "medium"},
    ALERT_PRODUCTION_ATTEMPT: {
        "color": "#2196F3",
        "title": "Pipeline Alert: PRODUCTION ATTEMPT",
        "priority": "critical",
    },
}


def build_event(
    alert_type: str,
    *,
    client: str,
    stage: str,
    run_id: str,
    reason: str = "",
    missing_gates: list[str] | None = None,
) -> dict[str, Any]:
    """Assemble an alert event dict."""
    style = ALERT_STYLES.get(alert_type, ALERT_STYLES[ALERT_FAILED])
    event: dict[str, Any] = {
        "type": alert_type,
        "title": style["title"],
        "priority": style["priority"],
        "client": client,
        "stage": stage,
        "run_id": run_id,
        "reason": reason,
        "timestamp": now_iso(),
    }
    if missing_gates:
        event["missing_gates"] = list(missing_gates)
    return event


def to_webhook_payload(event: dict[str, Any]) -> dict[str, Any]:
    """Render *event* as a Slack-style attachment payload."""
    style = ALERT_STYLES.get(event.get("type", ""), ALERT_STYLES[ALERT_FAILED])
    fields = [
        {"title": "Client", "value": event.get("client") or "N/A", "short": True},
        {"title": "Stage", "value": event.get("stage") or "N/A", "short": True},
        {"title": "Run ID", "value": event.get("run_id") or "N/A", "short": False},
    ]
    if event.get("reason"):
        fields.append({"title": "Reason", "value": event["reason"], "short": False})
    if event.get("missing_gates"):
        fields.append(
            {"title": "Missing Gates", "value": ", ".join(event["missing_gates"]), "short": False}
        )
    return {
        "text": event.get("title", style["title"]),
        "attachments": [
            {
                "color": style["color"],
                "fields": fields,
                "footer": f"priority: {style['priority']}",
                "ts": event.get("timestamp", ""),
            }
        ],
    }


class LoggingAlertSink:
    """Writes alerts to the log.  Used when no webhook is configured."""

    async def send(self, event: dict[str, Any]) -> bool:
        clean = redact_object(event)
        logger.warning(
            "ALERT [%s] %s/%s run=%s: %s",
            clean.get("type"),
            clean.get("client"),
            clean.get("stage"),
            clean.get("run_id"),
            clean.get("reason", ""),
        )
        return True


class WebhookAlertSink:
    """Posts alerts to a webhook via httpx."""

    def __init__(
        self,
        url: str,
        timeout_s: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout_s
        self._transport = transport

    async def send(self, event: dict[str, Any]) -> bool:
        payload = to_webhook_payload(redact_object(event))
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as http:
                resp = await http.post(self._url, json=payload)
            if resp.status_code >= 400:
                logger.warning(
                    "Alert webhook returned HTTP %d for %s (non-blocking)",
                    resp.status_code,
                    event.get("type"),
                )
                return False
            return True
        except httpx.HTTPError as exc:
            logger.warning("Alert delivery failed (non-blocking): %s", redact_text(str(exc)))
            return False


class AlertDispatcher:
    """Sends alerts through a sink, never raising."""

    def __init__(self, sink: AlertSink | None = None, enabled: bool = True) -> None:
        self._sink = sink or LoggingAlertSink()
        self._enabled = enabled
        self.sent: list[dict[str, Any]] = []

    async def alert(
        self,
        alert_type: str,
        *,
        client: str,
        stage: str,
        run_id: str,
        reason: str = "",
        missing_gates: list[str] | None = None,
    ) -> bool:
        """Build and deliver one alert.  Returns False on any failure."""
        if not self._enabled:
            return False
        event = build_event(
            alert_type,
            client=client,
            stage=stage,
            run_id=run_id,
            reason=reason,
            missing_gates=missing_gates,
        )
        self.sent.append(event)
        try:
            return await self._sink.send(event)
        except Exception as exc:
            logger.warning("Alert sink raised (non-blocking): %s", exc)
            return False


def make_sink(webhook_url: str, timeout_s: float = 10.0) -> AlertSink:
    """Webhook sink when a URL is configured, logging sink otherwise."""
    if webhook_url:
        return WebhookAlertSink(webhook_url, timeout_s=timeout_s)
    return LoggingAlertSink()
