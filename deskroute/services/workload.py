"""
Workload aggregation: each agent's weighted count of open/in-progress tickets.

Weights: urgent=3, high=2, medium=1.5, low=1. Snapshots are derived views taken from a
single consistent store read and are never cached across assignment decisions.
"""

import logging
from typing import Iterable

import numpy as np

from deskroute.models import Ticket

logger = logging.getLogger(__name__)


def weighted_load(tickets: Iterable[Ticket]) -> float:
    """Sum of priority weights over the open tickets in `tickets`."""
    return float(sum(t.weight for t in tickets if t.is_open))


def load_stddev(loads: Iterable[float]) -> float:
    """Population standard deviation of a workload distribution (0 for fewer than two agents)."""
    values = np.asarray(list(loads), dtype=np.float64)
    if values.size < 2:
        return 0.0
    return round(float(np.std(values)), 6)


class WorkloadAggregator:
    """Computes AgentWorkloadSnapshot maps from the store."""

    def __init__(self, store):
        self.store = store

    def snapshot(self, agent_ids: Iterable[str]) -> dict[str, float]:
        """agent_id -> weighted open load, from one consistent read. Unknown agents map to 0."""
        agent_ids = sorted(set(agent_ids))
        loads = self.store.workload_snapshot(agent_ids)
        logger.debug("Workload snapshot for %d agents: %s", len(agent_ids), loads)
        return {aid: float(loads.get(aid, 0.0)) for aid in agent_ids}

    def open_tickets(self, agent_id: str) -> list[Ticket]:
        """Open tickets currently assigned to the agent, least recently assigned first."""
        tickets = self.store.open_tickets_for_agent(agent_id)
        return sorted(tickets, key=lambda t: (t.assigned_at or t.created_at, t.ticket_id))
