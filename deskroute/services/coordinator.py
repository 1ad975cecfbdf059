"""
Assignment coordinator: rules -> (optional) scoring -> atomic assignment write -> SLA stamping -> audit.

The write is a compare-and-swap on the ticket's current assignee ("unassigned" for new
tickets, "assigned to X" for reassignment) that re-checks the chosen agent's load against
capacity inside the same transaction. A lost race is retried once on fresh state; a second
conflict surfaces as AssignmentConflict.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from deskroute.config import ADMIN_RECIPIENT
from deskroute.errors import AgentNotFound, AssignmentConflict, ProviderUnavailable, TicketNotFound
from deskroute.models import (
    Agent,
    AssignmentDecision,
    AssignmentResult,
    AssignmentStatus,
    CandidateFilter,
    DecisionPath,
    ForceAssign,
    RestrictPool,
    ScoreBreakdown,
    Ticket,
    utcnow,
)
from deskroute.notifications import TICKET_ASSIGNED, TICKET_UNASSIGNED, notify
from deskroute.services.performance import PerformanceMetricsProvider
from deskroute.services.provider_guard import DirectoryView, GuardedDirectory, call_with_timeout
from deskroute.services.rules import RuleCache, RuleEngine
from deskroute.services.scoring import ScoringEngine, ScoringSnapshot, agent_capacity
from deskroute.services.sla import SLACalculator
from deskroute.services.workload import WorkloadAggregator

logger = logging.getLogger(__name__)

NO_ELIGIBLE_AGENT = "no eligible agent"


@dataclass
class _Choice:
    agent_id: Optional[str]
    path: DecisionPath
    reason: str
    rule_id: Optional[str] = None
    scores: list[ScoreBreakdown] = field(default_factory=list)
    capacity: Optional[float] = None


def apply_filter(agents: list[Agent], pool_filter: CandidateFilter) -> list[Agent]:
    """Agents meeting every non-empty criterion of the filter."""
    ids = set(pool_filter.agent_ids)
    groups = {g.lower() for g in pool_filter.groups}
    skills = {s.lower() for s in pool_filter.skills}
    languages = {lang.lower() for lang in pool_filter.languages}
    out = []
    for agent in agents:
        if ids and agent.agent_id not in ids:
            continue
        if groups and not groups & {g.lower() for g in agent.groups}:
            continue
        if skills and not skills & {s.lower() for s in agent.skills}:
            continue
        if languages and not languages & {lang.lower() for lang in agent.languages}:
            continue
        out.append(agent)
    return out


class AssignmentCoordinator:
    def __init__(
        self,
        store,
        directory,
        rule_cache: RuleCache,
        sla: SLACalculator,
        rule_engine: Optional[RuleEngine] = None,
        scorer: Optional[ScoringEngine] = None,
        performance: Optional[PerformanceMetricsProvider] = None,
        notifier: Callable[[str, str, dict], None] = notify,
    ):
        self.store = store
        self.directory = directory if isinstance(directory, GuardedDirectory) else GuardedDirectory(directory)
        self.rule_cache = rule_cache
        self.sla = sla
        self.rule_engine = rule_engine or RuleEngine()
        self.scorer = scorer or ScoringEngine()
        self.performance = performance or PerformanceMetricsProvider(store)
        self.workload = WorkloadAggregator(store)
        self.notifier = notifier

    # --- Entry points ---

    def on_ticket_created(self, ticket: Ticket, now: Optional[datetime] = None) -> AssignmentResult:
        """TicketCreated: persist the ticket first (so it exists whatever happens next), then assign."""
        if self.store.get_ticket(ticket.ticket_id) is None:
            self.store.save_ticket(ticket.model_copy(update={
                "assigned_agent_id": None,
                "assigned_at": None,
                "response_due": None,
                "resolution_due": None,
            }))
        return self.assign(ticket.ticket_id, now)

    def assign(self, ticket_id: str, now: Optional[datetime] = None) -> AssignmentResult:
        """Assign a newly created (unassigned) ticket."""
        return self._with_retry(ticket_id, lambda: self._assign_once(ticket_id, now or utcnow()))

    def reassign(self, ticket_id: str, reason: str = "reassignment requested",
                 now: Optional[datetime] = None) -> AssignmentResult:
        """Move a ticket off its current assignee through rules and scoring."""
        return self._with_retry(ticket_id, lambda: self._reassign_once(ticket_id, reason, now or utcnow()))

    def assign_manually(self, ticket_id: str, agent_id: str, reason: str = "manual assignment") -> AssignmentResult:
        """Admin override: bypasses rules and scoring, same atomic write and audit trail."""
        agent = self.directory.get_agent(agent_id)
        if agent is None or not agent.active:
            raise AgentNotFound(agent_id)
        return self._with_retry(
            ticket_id,
            lambda: self.commit(self._get_ticket(ticket_id), agent_id, DecisionPath.MANUAL, reason),
        )

    # --- Internals ---

    def _with_retry(self, ticket_id: str, attempt: Callable[[], AssignmentResult]) -> AssignmentResult:
        try:
            return attempt()
        except AssignmentConflict as e:
            logger.warning("Assignment conflict on ticket %s (%s); retrying once on fresh state.", ticket_id, e)
        return attempt()

    def _get_ticket(self, ticket_id: str) -> Ticket:
        ticket = self.store.get_ticket(ticket_id)
        if ticket is None:
            raise TicketNotFound(ticket_id)
        return ticket

    def _assign_once(self, ticket_id: str, now: datetime) -> AssignmentResult:
        ticket = self._get_ticket(ticket_id)
        if ticket.assigned_agent_id is not None:
            raise AssignmentConflict(ticket_id, f"already assigned to {ticket.assigned_agent_id}")
        choice = self._decide(ticket, exclude=set(), now=now)
        if choice.agent_id is None:
            return self._leave_unassigned(ticket, choice)
        return self.commit(ticket, choice.agent_id, choice.path, choice.reason,
                           rule_id=choice.rule_id, scores=choice.scores, capacity=choice.capacity)

    def _reassign_once(self, ticket_id: str, reason: str, now: datetime) -> AssignmentResult:
        ticket = self._get_ticket(ticket_id)
        exclude = {ticket.assigned_agent_id} if ticket.assigned_agent_id else set()
        choice = self._decide(ticket, exclude=exclude, now=now)
        choice.reason = f"{reason}; {choice.reason}"
        if choice.agent_id is None:
            return self._leave_unassigned(ticket, choice)
        return self.commit(ticket, choice.agent_id, choice.path, choice.reason,
                           rule_id=choice.rule_id, scores=choice.scores, capacity=choice.capacity)

    def _decide(self, ticket: Ticket, exclude: set[str], now: datetime) -> _Choice:
        outcome = self.rule_engine.evaluate(ticket, self.rule_cache.get(), now)
        view = self.directory.snapshot()
        pool = [a for a in view.agents if a.active and a.agent_id not in exclude]
        action = outcome.action

        if isinstance(action, ForceAssign):
            target = self._resolve_force_target(action, pool)
            if target is not None:
                return _Choice(
                    agent_id=target,
                    path=DecisionPath.RULE,
                    rule_id=outcome.rule_id,
                    reason=f"rule match: {outcome.rule_name or outcome.rule_id}",
                )
            logger.warning("Rule %s force-assign target %s (%s) not assignable; falling back to scoring.",
                           outcome.rule_id, action.target, action.target_type)
        team = pool
        if isinstance(action, RestrictPool):
            pool = apply_filter(pool, action.filter)

        scores = self.scorer.rank(ticket, pool, self._scoring_snapshot(ticket, team, view, now))
        if not scores:
            return _Choice(agent_id=None, path=DecisionPath.UNASSIGNED, reason=NO_ELIGIBLE_AGENT,
                           rule_id=outcome.rule_id)
        best = scores[0]
        capacity = agent_capacity(next(a for a in pool if a.agent_id == best.agent_id))
        if isinstance(action, RestrictPool):
            return _Choice(agent_id=best.agent_id, path=DecisionPath.RULE, rule_id=outcome.rule_id,
                           reason=f"rule match (restricted pool): {outcome.rule_name or outcome.rule_id}; "
                                  f"top score {best.total:.3f}",
                           scores=scores, capacity=capacity)
        return _Choice(agent_id=best.agent_id, path=DecisionPath.SCORING,
                       reason=f"top score {best.total:.3f} of {len(scores)} candidates",
                       scores=scores, capacity=capacity)

    def _resolve_force_target(self, action: ForceAssign, pool: list[Agent]) -> Optional[str]:
        """Agent target must be an active agent; group target resolves to its least-loaded active member."""
        if action.target_type == "agent":
            return action.target if any(a.agent_id == action.target for a in pool) else None
        members = [a for a in pool if action.target in a.groups]
        if not members:
            return None
        loads = self.workload.snapshot([a.agent_id for a in members])
        return min(members, key=lambda a: (loads[a.agent_id], a.agent_id)).agent_id

    def _scoring_snapshot(self, ticket: Ticket, team: list[Agent], view: DirectoryView, now: datetime) -> ScoringSnapshot:
        """Loads and metrics cover the whole active team, not just the candidate pool."""
        agent_ids = [a.agent_id for a in team]
        try:
            metrics = call_with_timeout(lambda: self.performance.metrics(agent_ids, now), "performance metrics")
        except ProviderUnavailable as e:
            logger.warning("Degraded mode: %s; scoring with neutral performance.", e)
            metrics = None
        return ScoringSnapshot(
            loads=self.workload.snapshot(agent_ids),
            now=now,
            metrics=metrics,
            history_agents=self.store.requester_agents(ticket.requester_id),
            directory_degraded=view.degraded,
        )

    def _leave_unassigned(self, ticket: Ticket, choice: _Choice) -> AssignmentResult:
        decision = AssignmentDecision(
            ticket_id=ticket.ticket_id,
            agent_id=None,
            previous_agent_id=ticket.assigned_agent_id,
            path=DecisionPath.UNASSIGNED,
            rule_id=choice.rule_id,
            reason=choice.reason,
        )
        self.store.append_decision(decision)
        logger.warning("Ticket %s left unassigned: %s.", ticket.ticket_id, choice.reason)
        self.notifier(ADMIN_RECIPIENT, TICKET_UNASSIGNED, {
            "ticket_id": ticket.ticket_id,
            "priority": ticket.priority.value,
            "category": ticket.category,
            "reason": choice.reason,
        })
        return AssignmentResult(
            status=AssignmentStatus.UNASSIGNED,
            ticket_id=ticket.ticket_id,
            agent_id=ticket.assigned_agent_id,
            response_due=ticket.response_due,
            resolution_due=ticket.resolution_due,
            decision=decision,
        )

    def commit(
        self,
        ticket: Ticket,
        agent_id: str,
        path: DecisionPath,
        reason: str,
        rule_id: Optional[str] = None,
        scores: Optional[list[ScoreBreakdown]] = None,
        capacity: Optional[float] = None,
        notify_agent: bool = True,
    ) -> AssignmentResult:
        """
        Atomic write of assignee + SLA deadlines + decision, conditioned on the ticket still being
        assigned to ticket.assigned_agent_id. capacity=None skips the load re-check (rule and manual paths).
        """
        response_due, resolution_due = self.sla.compute_deadlines(ticket.priority, ticket.category, ticket.created_at)
        decision = AssignmentDecision(
            ticket_id=ticket.ticket_id,
            agent_id=agent_id,
            previous_agent_id=ticket.assigned_agent_id,
            path=path,
            rule_id=rule_id,
            scores=scores or [],
            reason=reason,
        )
        self.store.commit_assignment(
            ticket.ticket_id,
            ticket.assigned_agent_id,
            agent_id,
            response_due,
            resolution_due,
            decision,
            capacity=capacity,
        )
        logger.info("Ticket %s assigned to %s via %s (%s).", ticket.ticket_id, agent_id, path.value, reason)
        if notify_agent:
            self.notifier(agent_id, TICKET_ASSIGNED, {
                "ticket_id": ticket.ticket_id,
                "priority": ticket.priority.value,
                "category": ticket.category,
                "path": path.value,
                "response_due": response_due.isoformat(),
                "resolution_due": resolution_due.isoformat(),
            })
        return AssignmentResult(
            status=AssignmentStatus.ASSIGNED,
            ticket_id=ticket.ticket_id,
            agent_id=agent_id,
            response_due=response_due,
            resolution_due=resolution_due,
            decision=decision,
        )
