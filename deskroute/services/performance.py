"""Rolling per-agent performance metrics computed from historical ticket data."""

import logging
from datetime import datetime, timedelta
from typing import Iterable, Optional

from deskroute.config import DEFAULT_RESOLUTION_RATE, DEFAULT_SATISFACTION, PERFORMANCE_WINDOW_DAYS
from deskroute.models import AgentPerformance, TicketStatus, as_utc, utcnow

logger = logging.getLogger(__name__)


class PerformanceMetricsProvider:
    """
    Resolution rate and mean satisfaction over the last PERFORMANCE_WINDOW_DAYS.

    resolution_rate = resolved / assigned for tickets created in the window.
    Agents with no tickets in the window get the defaults (0.8 rate, 4.0 satisfaction).
    """

    def __init__(self, store, window_days: int = PERFORMANCE_WINDOW_DAYS):
        self.store = store
        self.window = timedelta(days=window_days)

    def metrics(self, agent_ids: Iterable[str], now: Optional[datetime] = None) -> dict[str, AgentPerformance]:
        now = as_utc(now or utcnow())
        since = now - self.window
        wanted = set(agent_ids)
        assigned: dict[str, int] = {aid: 0 for aid in wanted}
        resolved: dict[str, int] = {aid: 0 for aid in wanted}
        ratings: dict[str, list[float]] = {aid: [] for aid in wanted}

        for ticket in self.store.list_tickets():
            aid = ticket.assigned_agent_id
            if aid not in wanted or ticket.created_at < since:
                continue
            assigned[aid] += 1
            if ticket.status in (TicketStatus.RESOLVED, TicketStatus.CLOSED):
                resolved[aid] += 1
                if ticket.satisfaction_rating is not None:
                    ratings[aid].append(ticket.satisfaction_rating)

        logger.debug("Performance window since %s: %d agents, %d assigned tickets.",
                     since.isoformat(), len(wanted), sum(assigned.values()))
        out = {}
        for aid in sorted(wanted):
            if assigned[aid] == 0:
                rate = DEFAULT_RESOLUTION_RATE
            else:
                rate = resolved[aid] / assigned[aid]
            satisfaction = sum(ratings[aid]) / len(ratings[aid]) if ratings[aid] else DEFAULT_SATISFACTION
            out[aid] = AgentPerformance(
                agent_id=aid,
                resolution_rate=round(rate, 6),
                satisfaction=round(satisfaction, 6),
                resolved_count=resolved[aid],
                assigned_count=assigned[aid],
            )
        return out
