"""
Agent directory reader: agents, roles, availability, skills, languages, office hours.

The user-management collaborator owns these records. RedisAgentDirectory reads the
registry it publishes to Redis (agent:{id} JSON, agents:all set); register_agent exists
so that collaborator (and local setups) can upsert records. MemoryAgentDirectory holds
the same data in-process.
"""

import logging
import threading
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from pydantic import ValidationError

from deskroute.models import WEEKDAYS, Agent

logger = logging.getLogger(__name__)

AGENT_PREFIX = "agent:"
AGENTS_ALL_SET = "agents:all"


def _agent_key(agent_id: str) -> str:
    return f"{AGENT_PREFIX}{agent_id}"


def within_office_hours(agent: Agent, now: datetime) -> bool:
    """True if `now` falls inside the agent's declared window (always True when none is declared)."""
    hours = agent.office_hours
    if hours is None:
        return True
    local = now.astimezone(ZoneInfo(hours.timezone))
    current = local.time().replace(tzinfo=None)
    day = WEEKDAYS[local.weekday()]
    if hours.start <= hours.end:
        return day in hours.days and hours.start <= current < hours.end
    # Overnight window: the part after midnight belongs to the previous day's shift.
    if current >= hours.start:
        return day in hours.days
    previous_day = WEEKDAYS[(local.weekday() - 1) % 7]
    return current < hours.end and previous_day in hours.days


class RedisAgentDirectory:
    """Reads agent records from the Redis registry."""

    def __init__(self, client=None):
        if client is None:
            from deskroute.store.redis_store import _redis
            client = _redis()
        self.r = client

    def register_agent(self, agent: Agent) -> None:
        """Upsert an agent record."""
        self.r.set(_agent_key(agent.agent_id), agent.model_dump_json())
        self.r.sadd(AGENTS_ALL_SET, agent.agent_id)
        logger.info("Agent %s registered (skills: %s, available=%s).",
                    agent.agent_id, ",".join(agent.skills) or "-", agent.available)

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        raw = self.r.get(_agent_key(agent_id))
        if not raw:
            return None
        return Agent.model_validate_json(raw)

    def list_agents(self) -> list[Agent]:
        ids = sorted(self.r.smembers(AGENTS_ALL_SET))
        if not ids:
            return []
        raws = self.r.mget([_agent_key(aid) for aid in ids])
        agents = []
        for aid, raw in zip(ids, raws):
            if not raw:
                logger.warning("Agent %s listed but record missing; skipping.", aid)
                continue
            try:
                agents.append(Agent.model_validate_json(raw))
            except ValidationError as e:
                logger.warning("Agent %s record is invalid; skipping: %s", aid, e)
        return agents

    def set_availability(self, agent_id: str, available: bool) -> None:
        agent = self.get_agent(agent_id)
        if agent is None:
            return
        agent.available = available
        self.r.set(_agent_key(agent_id), agent.model_dump_json())


class MemoryAgentDirectory:
    """In-process agent directory."""

    def __init__(self, agents: Optional[list[Agent]] = None):
        self._lock = threading.Lock()
        self._agents: dict[str, Agent] = {a.agent_id: a for a in agents or []}

    def register_agent(self, agent: Agent) -> None:
        with self._lock:
            self._agents[agent.agent_id] = agent

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        with self._lock:
            return self._agents.get(agent_id)

    def list_agents(self) -> list[Agent]:
        with self._lock:
            return [self._agents[aid] for aid in sorted(self._agents)]

    def set_availability(self, agent_id: str, available: bool) -> None:
        with self._lock:
            agent = self._agents.get(agent_id)
            if agent is not None:
                self._agents[agent_id] = agent.model_copy(update={"available": available})
