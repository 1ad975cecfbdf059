"""
Redis-backed assignment store.

Keys:
  ticket:{id}             JSON ticket
  tickets:all             set of ticket ids
  agent_load:{agent_id}   hash ticket_id -> priority weight (open/in_progress tickets only)
  requester_agents:{id}   set of agent ids that handled the requester's tickets
  decisions:{ticket_id}   list of JSON decisions (append-only)
  decisions:log           list of JSON decisions across all tickets (append-only)
  assignment_rules        hash rule_id -> JSON rule
  sla_policies            hash "priority:category" -> JSON policy
  sla_alerts              set of "ticket_id:kind"
  lock:{name}             single-flight locks (SET NX EX)

Assignment writes WATCH the ticket key and the new assignee's load hash, so a concurrent
assignment of the same ticket, or a concurrent change to that agent's load, aborts the
transaction and surfaces as AssignmentConflict.
"""

import logging
from datetime import datetime
from typing import Iterable, Optional
from uuid import uuid4

from deskroute.config import REDIS_URL
from deskroute.errors import AssignmentConflict, TicketNotFound
from deskroute.models import AssignmentDecision, AssignmentRule, Priority, SLAPolicy, Ticket

logger = logging.getLogger(__name__)

TICKET_PREFIX = "ticket:"
TICKETS_ALL_SET = "tickets:all"
AGENT_LOAD_PREFIX = "agent_load:"
REQUESTER_AGENTS_PREFIX = "requester_agents:"
DECISIONS_PREFIX = "decisions:"
DECISIONS_LOG = "decisions:log"
RULES_HASH = "assignment_rules"
SLA_POLICIES_HASH = "sla_policies"
SLA_ALERTS_SET = "sla_alerts"
LOCK_PREFIX = "lock:"

_redis_client = None


def _redis():
    import redis
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(REDIS_URL, decode_responses=True)
    return _redis_client


def _ticket_key(ticket_id: str) -> str:
    return f"{TICKET_PREFIX}{ticket_id}"


def _load_key(agent_id: str) -> str:
    return f"{AGENT_LOAD_PREFIX}{agent_id}"


class RedisStore:
    """Ticket, rule, policy and audit storage in Redis."""

    def __init__(self, client=None):
        self.r = client if client is not None else _redis()
        self._lock_tokens: dict[str, str] = {}

    # --- Tickets ---

    def save_ticket(self, ticket: Ticket) -> None:
        """Upsert a ticket and keep the per-agent load index in sync."""
        import redis

        key = _ticket_key(ticket.ticket_id)
        with self.r.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key)
                    raw = pipe.get(key)
                    previous = Ticket.model_validate_json(raw) if raw else None
                    pipe.multi()
                    pipe.set(key, ticket.model_dump_json())
                    pipe.sadd(TICKETS_ALL_SET, ticket.ticket_id)
                    if previous and previous.assigned_agent_id:
                        pipe.hdel(_load_key(previous.assigned_agent_id), ticket.ticket_id)
                    self._index_ticket(pipe, ticket)
                    pipe.execute()
                    return
                except redis.WatchError:
                    logger.debug("Ticket %s changed during save; retrying.", ticket.ticket_id)
                    continue

    @staticmethod
    def _index_ticket(pipe, ticket: Ticket) -> None:
        if ticket.assigned_agent_id and ticket.is_open:
            pipe.hset(_load_key(ticket.assigned_agent_id), ticket.ticket_id, ticket.weight)
        if ticket.assigned_agent_id and ticket.requester_id:
            pipe.sadd(f"{REQUESTER_AGENTS_PREFIX}{ticket.requester_id}", ticket.assigned_agent_id)

    def get_ticket(self, ticket_id: str) -> Optional[Ticket]:
        raw = self.r.get(_ticket_key(ticket_id))
        if not raw:
            return None
        return Ticket.model_validate_json(raw)

    def _get_many(self, ticket_ids: list[str]) -> list[Ticket]:
        if not ticket_ids:
            return []
        raws = self.r.mget([_ticket_key(tid) for tid in ticket_ids])
        return [Ticket.model_validate_json(raw) for raw in raws if raw]

    def list_tickets(self) -> list[Ticket]:
        return self._get_many(sorted(self.r.smembers(TICKETS_ALL_SET)))

    def open_tickets_for_agent(self, agent_id: str) -> list[Ticket]:
        ids = sorted(self.r.hkeys(_load_key(agent_id)))
        return [t for t in self._get_many(ids) if t.assigned_agent_id == agent_id and t.is_open]

    def workload_snapshot(self, agent_ids: Iterable[str]) -> dict[str, float]:
        """Weighted open load per agent from one MULTI/EXEC read."""
        agent_ids = list(agent_ids)
        if not agent_ids:
            return {}
        pipe = self.r.pipeline(transaction=True)
        for aid in agent_ids:
            pipe.hvals(_load_key(aid))
        results = pipe.execute()
        return {aid: sum(float(v) for v in vals) for aid, vals in zip(agent_ids, results)}

    def requester_agents(self, requester_id: Optional[str]) -> set[str]:
        if not requester_id:
            return set()
        return set(self.r.smembers(f"{REQUESTER_AGENTS_PREFIX}{requester_id}"))

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
        """Compare-and-swap the assignee and SLA deadlines; append the decision in the same transaction."""
        import redis

        key = _ticket_key(ticket_id)
        load_key = _load_key(agent_id)
        with self.r.pipeline() as pipe:
            try:
                pipe.watch(key, load_key)
                raw = pipe.get(key)
                if not raw:
                    raise TicketNotFound(ticket_id)
                ticket = Ticket.model_validate_json(raw)
                if ticket.assigned_agent_id != expected_agent_id:
                    raise AssignmentConflict(
                        ticket_id,
                        f"expected assignee {expected_agent_id!r}, found {ticket.assigned_agent_id!r}",
                    )
                if capacity is not None:
                    loads = pipe.hgetall(load_key)
                    current = sum(float(v) for tid, v in loads.items() if tid != ticket_id)
                    if current >= capacity:
                        raise AssignmentConflict(ticket_id, f"agent {agent_id} reached capacity")
                updated = ticket.model_copy(update={
                    "assigned_agent_id": agent_id,
                    "assigned_at": decision.created_at,
                    "response_due": response_due,
                    "resolution_due": resolution_due,
                })
                payload = decision.model_dump_json()
                pipe.multi()
                pipe.set(key, updated.model_dump_json())
                if ticket.assigned_agent_id:
                    pipe.hdel(_load_key(ticket.assigned_agent_id), ticket_id)
                self._index_ticket(pipe, updated)
                pipe.rpush(f"{DECISIONS_PREFIX}{ticket_id}", payload)
                pipe.rpush(DECISIONS_LOG, payload)
                pipe.execute()
            except redis.WatchError:
                raise AssignmentConflict(ticket_id) from None
        logger.info("Committed assignment of ticket %s to agent %s.", ticket_id, agent_id)
        return updated

    # --- Audit ---

    def append_decision(self, decision: AssignmentDecision) -> None:
        payload = decision.model_dump_json()
        pipe = self.r.pipeline(transaction=True)
        pipe.rpush(f"{DECISIONS_PREFIX}{decision.ticket_id}", payload)
        pipe.rpush(DECISIONS_LOG, payload)
        pipe.execute()

    def list_decisions(self, ticket_id: Optional[str] = None, limit: int = 100) -> list[AssignmentDecision]:
        key = f"{DECISIONS_PREFIX}{ticket_id}" if ticket_id else DECISIONS_LOG
        return [AssignmentDecision.model_validate_json(raw) for raw in self.r.lrange(key, -limit, -1)]

    # --- Rules ---

    def list_rules(self) -> list[AssignmentRule]:
        return [AssignmentRule.model_validate_json(raw) for raw in self.r.hvals(RULES_HASH)]

    def get_rule(self, rule_id: str) -> Optional[AssignmentRule]:
        raw = self.r.hget(RULES_HASH, rule_id)
        return AssignmentRule.model_validate_json(raw) if raw else None

    def save_rule(self, rule: AssignmentRule) -> None:
        self.r.hset(RULES_HASH, rule.rule_id, rule.model_dump_json())

    def delete_rule(self, rule_id: str) -> bool:
        return bool(self.r.hdel(RULES_HASH, rule_id))

    # --- SLA policies ---

    def list_sla_policies(self) -> list[SLAPolicy]:
        return [SLAPolicy.model_validate_json(raw) for raw in self.r.hvals(SLA_POLICIES_HASH)]

    def save_sla_policy(self, policy: SLAPolicy) -> None:
        self.r.hset(SLA_POLICIES_HASH, policy.key, policy.model_dump_json())

    def delete_sla_policy(self, priority: Priority, category: str) -> bool:
        return bool(self.r.hdel(SLA_POLICIES_HASH, f"{Priority(priority).value}:{category}"))

    def mark_sla_alert(self, ticket_id: str, kind: str) -> bool:
        return bool(self.r.sadd(SLA_ALERTS_SET, f"{ticket_id}:{kind}"))

    # --- Locks ---

    def acquire_lock(self, name: str, ttl_seconds: int) -> bool:
        token = uuid4().hex
        if self.r.set(f"{LOCK_PREFIX}{name}", token, nx=True, ex=ttl_seconds):
            self._lock_tokens[name] = token
            return True
        return False

    def release_lock(self, name: str) -> None:
        """Release only if we still own the lock (it may have expired and been re-acquired)."""
        import redis

        token = self._lock_tokens.pop(name, None)
        if token is None:
            return
        key = f"{LOCK_PREFIX}{name}"
        with self.r.pipeline() as pipe:
            try:
                pipe.watch(key)
                if pipe.get(key) != token:
                    return
                pipe.multi()
                pipe.delete(key)
                pipe.execute()
            except redis.WatchError:
                logger.warning("Lock %s changed while releasing; leaving it to expire.", name)

    def clear(self) -> None:
        """Delete every key this store owns (e.g. for tests)."""
        patterns = [
            f"{TICKET_PREFIX}*", f"{AGENT_LOAD_PREFIX}*", f"{REQUESTER_AGENTS_PREFIX}*",
            f"{DECISIONS_PREFIX}*", f"{LOCK_PREFIX}*",
        ]
        for pattern in patterns:
            for key in self.r.scan_iter(match=pattern):
                self.r.delete(key)
        self.r.delete(TICKETS_ALL_SET, RULES_HASH, SLA_POLICIES_HASH, SLA_ALERTS_SET)
