"""
In-memory implementation of the assignment store.

Same interface as RedisStore. A single re-entrant lock serializes every read-decide-write
sequence, so compare-and-swap and workload snapshots are consistent within one process.
"""

import threading
import time
from datetime import datetime
from typing import Iterable, Optional

from deskroute.errors import AssignmentConflict, TicketNotFound
from deskroute.models import (
    AssignmentDecision,
    AssignmentRule,
    Priority,
    SLAPolicy,
    Ticket,
)


class MemoryStore:
    """Process-local ticket, rule, policy and audit storage."""

    def __init__(self):
        self._lock = threading.RLock()
        self._tickets: dict[str, Ticket] = {}
        self._decisions: list[AssignmentDecision] = []
        self._rules: dict[str, AssignmentRule] = {}
        self._policies: dict[str, SLAPolicy] = {}
        self._alerts: set[str] = set()
        self._locks: dict[str, float] = {}

    # --- Tickets ---

    def save_ticket(self, ticket: Ticket) -> None:
        """Upsert a ticket as written by the ticket lifecycle collaborator."""
        with self._lock:
            self._tickets[ticket.ticket_id] = ticket

    def get_ticket(self, ticket_id: str) -> Optional[Ticket]:
        with self._lock:
            return self._tickets.get(ticket_id)

    def list_tickets(self) -> list[Ticket]:
        with self._lock:
            return list(self._tickets.values())

    def open_tickets_for_agent(self, agent_id: str) -> list[Ticket]:
        with self._lock:
            return [t for t in self._tickets.values() if t.assigned_agent_id == agent_id and t.is_open]

    def workload_snapshot(self, agent_ids: Iterable[str]) -> dict[str, float]:
        """Weighted open load per agent, read under one lock acquisition."""
        with self._lock:
            return {aid: self._load_of(aid) for aid in agent_ids}

    def _load_of(self, agent_id: str, exclude_ticket_id: Optional[str] = None) -> float:
        return sum(
            t.weight
            for t in self._tickets.values()
            if t.assigned_agent_id == agent_id and t.is_open and t.ticket_id != exclude_ticket_id
        )

    def requester_agents(self, requester_id: Optional[str]) -> set[str]:
        """Agents that have been assigned a ticket from this requester."""
        if not requester_id:
            return set()
        with self._lock:
            ticket_ids = {t.ticket_id for t in self._tickets.values() if t.requester_id == requester_id}
            agents = {self._tickets[tid].assigned_agent_id for tid in ticket_ids}
            # Earlier assignees of reassigned tickets count too.
            agents.update(d.agent_id for d in self._decisions if d.ticket_id in ticket_ids)
            agents.discard(None)
            return agents

    def commit_assignment(
        self,
        ticket_id: str,
        expected_agent_id: Optional[str],
        agent_id: str,
        response_due: datetime,
        resolution_due: datetime,
        decision: AssignmentDecision,
        capacity: Optional[float] = None,
    ) -> Ticket:
        """
        Atomically set assignee and SLA deadlines and append the decision.
        Fails with AssignmentConflict if the ticket's assignee is no longer expected_agent_id,
        or if capacity is given and the agent's load (other tickets) has reached it.
        """
        with self._lock:
            ticket = self._tickets.get(ticket_id)
            if ticket is None:
                raise TicketNotFound(ticket_id)
            if ticket.assigned_agent_id != expected_agent_id:
                raise AssignmentConflict(
                    ticket_id,
                    f"expected assignee {expected_agent_id!r}, found {ticket.assigned_agent_id!r}",
                )
            if capacity is not None and self._load_of(agent_id, exclude_ticket_id=ticket_id) >= capacity:
                raise AssignmentConflict(ticket_id, f"agent {agent_id} reached capacity")
            updated = ticket.model_copy(update={
                "assigned_agent_id": agent_id,
                "assigned_at": decision.created_at,
                "response_due": response_due,
                "resolution_due": resolution_due,
            })
            self._tickets[ticket_id] = updated
            self._decisions.append(decision)
            return updated

    # --- Audit ---

    def append_decision(self, decision: AssignmentDecision) -> None:
        with self._lock:
            self._decisions.append(decision)

    def list_decisions(self, ticket_id: Optional[str] = None, limit: int = 100) -> list[AssignmentDecision]:
        """Decisions in commit order (oldest first), most recent `limit` entries."""
        with self._lock:
            out = [d for d in self._decisions if ticket_id is None or d.ticket_id == ticket_id]
        return out[-limit:]

    # --- Rules ---

    def list_rules(self) -> list[AssignmentRule]:
        with self._lock:
            return list(self._rules.values())

    def get_rule(self, rule_id: str) -> Optional[AssignmentRule]:
        with self._lock:
            return self._rules.get(rule_id)

    def save_rule(self, rule: AssignmentRule) -> None:
        with self._lock:
            self._rules[rule.rule_id] = rule

    def delete_rule(self, rule_id: str) -> bool:
        with self._lock:
            return self._rules.pop(rule_id, None) is not None

    # --- SLA policies ---

    def list_sla_policies(self) -> list[SLAPolicy]:
        with self._lock:
            return list(self._policies.values())

    def save_sla_policy(self, policy: SLAPolicy) -> None:
        with self._lock:
            self._policies[policy.key] = policy

    def delete_sla_policy(self, priority: Priority, category: str) -> bool:
        with self._lock:
            return self._policies.pop(f"{Priority(priority).value}:{category}", None) is not None

    def mark_sla_alert(self, ticket_id: str, kind: str) -> bool:
        """Record that an alert was sent; False if it was already recorded."""
        key = f"{ticket_id}:{kind}"
        with self._lock:
            if key in self._alerts:
                return False
            self._alerts.add(key)
            return True

    # --- Locks ---

    def acquire_lock(self, name: str, ttl_seconds: int) -> bool:
        now = time.monotonic()
        with self._lock:
            expires = self._locks.get(name)
            if expires is not None and expires > now:
                return False
            self._locks[name] = now + ttl_seconds
            return True

    def release_lock(self, name: str) -> None:
        with self._lock:
            self._locks.pop(name, None)

    def clear(self) -> None:
        """Drop all state (e.g. for tests)."""
        with self._lock:
            self._tickets.clear()
            self._decisions.clear()
            self._rules.clear()
            self._policies.clear()
            self._alerts.clear()
            self._locks.clear()
