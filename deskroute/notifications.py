"""
Notification dispatch: notify(recipient, type, payload), fire-and-forget.

Every notification is recorded in the activity log. When WEBHOOK_URL is set the event is
also POSTed as a Slack/Discord-style payload from a background thread; delivery failures
are logged and never reach the caller.
"""

import json
import logging
import ssl
import threading
import urllib.error
import urllib.request
from typing import Any

from deskroute.activity import publish_event
from deskroute.config import WEBHOOK_URL

logger = logging.getLogger(__name__)

TICKET_ASSIGNED = "ticket_assigned"
TICKET_UNASSIGNED = "ticket_unassigned"
SLA_BREACH_IMMINENT = "sla_breach_imminent"
SLA_BREACHED = "sla_breached"


def _build_webhook_payload(recipient: str, notification_type: str, payload: dict[str, Any]) -> dict[str, Any]:
    ticket = payload.get("ticket_id", "-")
    details = "\n".join(f"*{k}:* {v}" for k, v in sorted(payload.items()) if k != "ticket_id")
    return {
        "text": f"[{notification_type}] ticket {ticket} -> {recipient}",
        "blocks": [
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": f"*Ticket:* `{ticket}`\n*Recipient:* {recipient}\n{details}",
                },
            },
        ],
    }


def _do_post(url: str, payload: dict[str, Any]) -> None:
    """Synchronous POST (run in thread)."""
    data = json.dumps(payload, default=str).encode("utf-8")
    req = urllib.request.Request(
        url,
        data=data,
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    ctx = ssl.create_default_context()
    try:
        urllib.request.urlopen(req, timeout=5, context=ctx)
    except (urllib.error.URLError, OSError) as e:
        logger.warning("Webhook delivery to %s failed: %s", url, e)


def notify(recipient: str, notification_type: str, payload: dict[str, Any], webhook_url: str = WEBHOOK_URL) -> None:
    """Send a notification without waiting for delivery."""
    event = {"recipient": recipient, **payload}
    publish_event(notification_type, event)
    logger.info("Notification %s -> %s (%s).", notification_type, recipient, payload.get("ticket_id", "-"))
    if not webhook_url:
        return
    body = _build_webhook_payload(recipient, notification_type, payload)
    threading.Thread(target=_do_post, args=(webhook_url, body), daemon=True).start()
