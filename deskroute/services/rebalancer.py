"""
Workload rebalancer.

Moves least-recently-assigned tickets from overloaded agents to underloaded ones until the
load standard deviation drops to the target or no safe move remains. A move is safe when
the destination is active, available and has a skill matching the ticket's category, the
ticket has no first response yet, the destination stays within capacity and the move
strictly narrows the gap between the two agents. Only one run executes at a time.
"""

import logging
from typing import Optional

from deskroute.config import (
    REBALANCE_LOCK_TTL_SECONDS,
    REBALANCE_MAX_MOVES,
    REBALANCE_OVERLOAD_THRESHOLD,
    REBALANCE_TARGET_STDDEV,
    REBALANCE_UNDERLOAD_THRESHOLD,
)
from deskroute.errors import AssignmentConflict, RebalanceInProgress
from deskroute.models import (
    Agent,
    DecisionPath,
    RebalanceMove,
    RebalanceReport,
    RebalanceScope,
    Ticket,
)
from deskroute.services.coordinator import AssignmentCoordinator
from deskroute.services.scoring import agent_capacity, skill_match
from deskroute.services.workload import WorkloadAggregator, load_stddev

logger = logging.getLogger(__name__)

LOCK_NAME = "rebalance"
REBALANCE_REASON = "rebalance"


class Rebalancer:
    def __init__(
        self,
        store,
        coordinator: AssignmentCoordinator,
        overload_threshold: float = REBALANCE_OVERLOAD_THRESHOLD,
        underload_threshold: float = REBALANCE_UNDERLOAD_THRESHOLD,
        target_stddev: float = REBALANCE_TARGET_STDDEV,
        max_moves: int = REBALANCE_MAX_MOVES,
        lock_ttl: int = REBALANCE_LOCK_TTL_SECONDS,
    ):
        self.store = store
        self.coordinator = coordinator
        self.workload = WorkloadAggregator(store)
        self.overload_threshold = overload_threshold
        self.underload_threshold = underload_threshold
        self.target_stddev = target_stddev
        self.max_moves = max_moves
        self.lock_ttl = lock_ttl

    def rebalance(self, scope: Optional[RebalanceScope] = None) -> RebalanceReport:
        scope = scope or RebalanceScope()
        if not self.store.acquire_lock(LOCK_NAME, self.lock_ttl):
            raise RebalanceInProgress("a rebalance run is already in progress")
        try:
            return self._run(scope)
        finally:
            self.store.release_lock(LOCK_NAME)

    def _run(self, scope: RebalanceScope) -> RebalanceReport:
        view = self.coordinator.directory.snapshot()
        agents = {a.agent_id: a for a in view.agents if a.active}
        if scope.agent_ids is not None:
            agents = {aid: a for aid, a in agents.items() if aid in set(scope.agent_ids)}
        loads = self.workload.snapshot(agents)

        report = RebalanceReport(
            dry_run=scope.dry_run,
            overloaded=sorted(aid for aid, load in loads.items() if load > self.overload_threshold),
            underloaded=sorted(aid for aid, load in loads.items() if load < self.underload_threshold),
            stddev_before=load_stddev(loads.values()),
        )
        report.stddev_after = report.stddev_before
        if not report.overloaded:
            logger.info("Rebalance: no overloaded agents (stddev %.3f); nothing to do.", report.stddev_before)
            return report
        if view.degraded:
            logger.warning("Rebalance skipped: agent directory unavailable, availability unknown.")
            report.skipped["*"] = "agent directory unavailable"
            return report

        limit = scope.max_moves if scope.max_moves is not None else self.max_moves
        tried: set[str] = set()
        while len(report.moves) < limit and load_stddev(loads.values()) > self.target_stddev:
            move = self._next_move(agents, loads, tried, report)
            if move is None:
                break
            ticket, source, destination = move
            tried.add(ticket.ticket_id)
            if not scope.dry_run:
                try:
                    self.coordinator.commit(
                        ticket,
                        destination.agent_id,
                        DecisionPath.REBALANCE,
                        REBALANCE_REASON,
                        capacity=agent_capacity(destination),
                    )
                except AssignmentConflict as e:
                    logger.warning("Rebalance move of %s skipped: %s", ticket.ticket_id, e)
                    report.skipped[ticket.ticket_id] = "assignment changed concurrently"
                    continue
            loads[source] -= ticket.weight
            loads[destination.agent_id] += ticket.weight
            report.moves.append(RebalanceMove(
                ticket_id=ticket.ticket_id,
                from_agent_id=source,
                to_agent_id=destination.agent_id,
                weight=ticket.weight,
                executed=not scope.dry_run,
            ))

        report.stddev_after = load_stddev(loads.values())
        logger.info("Rebalance %s: %d move(s), stddev %.3f -> %.3f.",
                    "proposed" if scope.dry_run else "done",
                    len(report.moves), report.stddev_before, report.stddev_after)
        return report

    def _next_move(
        self,
        agents: dict[str, Agent],
        loads: dict[str, float],
        tried: set[str],
        report: RebalanceReport,
    ) -> Optional[tuple[Ticket, str, Agent]]:
        sources = sorted(
            (aid for aid, load in loads.items() if load > self.overload_threshold),
            key=lambda aid: (-loads[aid], aid),
        )
        destinations = sorted(
            (agents[aid] for aid, load in loads.items() if load < self.underload_threshold),
            key=lambda a: (loads[a.agent_id], a.agent_id),
        )
        for source in sources:
            for ticket in self.workload.open_tickets(source):
                if ticket.ticket_id in tried or ticket.ticket_id in report.skipped:
                    continue
                if ticket.first_response_at is not None:
                    report.skipped[ticket.ticket_id] = "first response already sent"
                    continue
                destination = self._safe_destination(ticket, source, destinations, loads)
                if destination is None:
                    report.skipped[ticket.ticket_id] = "no safe destination"
                    continue
                return ticket, source, destination
        return None

    @staticmethod
    def _safe_destination(
        ticket: Ticket, source: str, destinations: list[Agent], loads: dict[str, float]
    ) -> Optional[Agent]:
        for agent in destinations:
            if not (agent.active and agent.available) or not skill_match(agent, ticket):
                continue
            after = loads[agent.agent_id] + ticket.weight
            if after > agent_capacity(agent):
                continue
            # Strictly narrows the gap between source and destination.
            if ticket.weight >= loads[source] - loads[agent.agent_id]:
                continue
            return agent
        return None
