"""SLA monitor: response/resolution state of open tickets and breach alerts."""

import logging
from datetime import datetime
from typing import Callable, Optional

from deskroute.config import ADMIN_RECIPIENT
from deskroute.models import SLAState, SLAStatus, Ticket, as_utc, utcnow
from deskroute.notifications import SLA_BREACH_IMMINENT, SLA_BREACHED, notify
from deskroute.services.sla import SLACalculator

logger = logging.getLogger(__name__)


def deadline_state(
    start: datetime, due: Optional[datetime], done_at: Optional[datetime], now: datetime, warning_threshold: int
) -> SLAState:
    """State of one deadline: met once done, overdue past due, warning once threshold% of the budget is used."""
    if done_at is not None:
        return SLAState.MET
    if due is None:
        return SLAState.OK
    start, due, now = as_utc(start), as_utc(due), as_utc(now)
    if now > due:
        return SLAState.OVERDUE
    budget = (due - start).total_seconds()
    if budget > 0 and (now - start).total_seconds() / budget * 100 >= warning_threshold:
        return SLAState.WARNING
    return SLAState.OK


class SLAMonitor:
    """Checks open tickets and sends each breach alert at most once per ticket and kind."""

    def __init__(self, store, sla: SLACalculator, notifier: Callable[[str, str, dict], None] = notify):
        self.store = store
        self.sla = sla
        self.notifier = notifier

    def status(self, ticket: Ticket, now: Optional[datetime] = None) -> SLAStatus:
        now = now or utcnow()
        threshold = self.sla.resolve_policy(ticket.priority, ticket.category).warning_threshold
        resolved_at = ticket.resolved_at
        if resolved_at is None and not ticket.is_open:
            resolved_at = ticket.created_at
        return SLAStatus(
            ticket_id=ticket.ticket_id,
            response=deadline_state(ticket.created_at, ticket.response_due, ticket.first_response_at, now, threshold),
            resolution=deadline_state(ticket.created_at, ticket.resolution_due, resolved_at, now, threshold),
            response_due=ticket.response_due,
            resolution_due=ticket.resolution_due,
        )

    def check(self, now: Optional[datetime] = None) -> list[SLAStatus]:
        now = now or utcnow()
        statuses = []
        for ticket in sorted(self.store.list_tickets(), key=lambda t: t.ticket_id):
            if not ticket.is_open:
                continue
            status = self.status(ticket, now)
            statuses.append(status)
            self._alert(ticket, status)
        return statuses

    def _alert(self, ticket: Ticket, status: SLAStatus) -> None:
        deadlines = {
            "response": (status.response, status.response_due),
            "resolution": (status.resolution, status.resolution_due),
        }
        for deadline, (state, due) in deadlines.items():
            if state == SLAState.OVERDUE:
                kind, recipient = SLA_BREACHED, ADMIN_RECIPIENT
            elif state == SLAState.WARNING:
                kind, recipient = SLA_BREACH_IMMINENT, ticket.assigned_agent_id or ADMIN_RECIPIENT
            else:
                continue
            if not self.store.mark_sla_alert(ticket.ticket_id, f"{kind}:{deadline}"):
                continue
            logger.warning("SLA %s for ticket %s (%s deadline).", state.value, ticket.ticket_id, deadline)
            self.notifier(recipient, kind, {
                "ticket_id": ticket.ticket_id,
                "deadline": deadline,
                "due": due.isoformat() if due else None,
                "assigned_agent_id": ticket.assigned_agent_id,
            })
