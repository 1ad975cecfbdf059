"""
Multi-factor scoring of candidate agents for one ticket.

Each candidate gets five components in [0, 1]:
  workload      1 - load / capacity, clamped
  performance   50/50 blend of resolution rate and satisfaction, each min-max
                normalized over the team range (every agent in snapshot.metrics);
                degenerate range or missing -> 0.5
  availability  1 available and in office hours, PARTIAL_AVAILABILITY_CREDIT if available
                outside hours, 0 unavailable, 0.5 when directory data is degraded
                or the office-hours record cannot be evaluated
  skill         1 if skills intersect {category, subcategory}, else SKILL_BASELINE
  history       1 if the agent handled a ticket from the same requester before

total = weights . components (+ LANGUAGE_BONUS on a language match).
Candidates with availability 0 or load >= capacity are excluded. Ranking is
total desc, load asc, agent_id asc, so the output is a pure function of the inputs.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfoNotFoundError

import numpy as np

from deskroute.config import (
    CAPACITY_CEILING,
    LANGUAGE_BONUS,
    NEUTRAL_SCORE,
    PARTIAL_AVAILABILITY_CREDIT,
    SCORING_WEIGHTS,
    SKILL_BASELINE,
    ScoringWeights,
)
from deskroute.models import Agent, AgentPerformance, ScoreBreakdown, Ticket
from deskroute.services.agent_directory import within_office_hours

logger = logging.getLogger(__name__)


@dataclass
class ScoringSnapshot:
    """Everything the scorer reads for one decision, captured once."""

    loads: dict[str, float]
    now: datetime
    metrics: Optional[dict[str, AgentPerformance]] = None
    history_agents: set[str] = field(default_factory=set)
    directory_degraded: bool = False


def agent_capacity(agent: Agent) -> float:
    return agent.capacity if agent.capacity is not None else CAPACITY_CEILING


def skill_match(agent: Agent, ticket: Ticket) -> bool:
    wanted = {ticket.category.strip().lower()}
    if ticket.subcategory:
        wanted.add(ticket.subcategory.strip().lower())
    return any(s.strip().lower() in wanted for s in agent.skills)


def language_match(agent: Agent, ticket: Ticket) -> bool:
    if not ticket.language:
        return False
    lang = ticket.language.strip().lower()
    return any(known.strip().lower() == lang for known in agent.languages)


def availability_score(agent: Agent, now: datetime, degraded: bool = False) -> float:
    if degraded:
        return NEUTRAL_SCORE
    if not agent.available:
        return 0.0
    try:
        in_hours = within_office_hours(agent, now)
    except (ZoneInfoNotFoundError, ValueError) as e:
        logger.warning("Agent %s has unusable office hours (%s); scoring availability as neutral.",
                       agent.agent_id, e)
        return NEUTRAL_SCORE
    if in_hours:
        return 1.0
    return PARTIAL_AVAILABILITY_CREDIT


def _min_max(values: np.ndarray, reference: np.ndarray) -> np.ndarray:
    """Normalize to [0, 1] over the reference range; NaN (missing) and degenerate ranges map to 0.5."""
    out = np.full(values.shape, NEUTRAL_SCORE, dtype=np.float64)
    known = ~np.isnan(values)
    if not known.any() or reference.size == 0:
        return out
    lo, hi = reference.min(), reference.max()
    if hi - lo <= 1e-12:
        return out
    out[known] = np.clip((values[known] - lo) / (hi - lo), 0.0, 1.0)
    return out


def performance_scores(agents: list[Agent], metrics: Optional[dict[str, AgentPerformance]]) -> np.ndarray:
    """Candidates are normalized against the range observed across every agent in `metrics`."""
    if not metrics:
        return np.full(len(agents), NEUTRAL_SCORE, dtype=np.float64)
    rates = np.array(
        [metrics[a.agent_id].resolution_rate if a.agent_id in metrics else np.nan for a in agents],
        dtype=np.float64,
    )
    satisfaction = np.array(
        [metrics[a.agent_id].satisfaction if a.agent_id in metrics else np.nan for a in agents],
        dtype=np.float64,
    )
    team = list(metrics.values())
    team_rates = np.array([m.resolution_rate for m in team], dtype=np.float64)
    team_satisfaction = np.array([m.satisfaction for m in team], dtype=np.float64)
    return 0.5 * _min_max(rates, team_rates) + 0.5 * _min_max(satisfaction, team_satisfaction)


class ScoringEngine:
    """Ranks candidate agents for a ticket. Holds no state between calls."""

    def __init__(self, weights: ScoringWeights = SCORING_WEIGHTS):
        self.weights = np.asarray(weights.as_vector(), dtype=np.float64)

    def rank(self, ticket: Ticket, candidates: list[Agent], snapshot: ScoringSnapshot) -> list[ScoreBreakdown]:
        eligible = []
        for agent in sorted(candidates, key=lambda a: a.agent_id):
            load = snapshot.loads.get(agent.agent_id, 0.0)
            availability = availability_score(agent, snapshot.now, snapshot.directory_degraded)
            if availability <= 0.0:
                logger.debug("Excluding %s: unavailable.", agent.agent_id)
                continue
            if load >= agent_capacity(agent):
                logger.debug("Excluding %s: at capacity (%.1f).", agent.agent_id, load)
                continue
            eligible.append((agent, load, availability))
        if not eligible:
            return []

        agents = [a for a, _, _ in eligible]
        performance = performance_scores(agents, snapshot.metrics)
        components = np.zeros((len(eligible), 5), dtype=np.float64)
        for i, (agent, load, availability) in enumerate(eligible):
            components[i] = [
                min(1.0, max(0.0, 1.0 - load / agent_capacity(agent))),
                performance[i],
                availability,
                1.0 if skill_match(agent, ticket) else SKILL_BASELINE,
                1.0 if agent.agent_id in snapshot.history_agents else 0.0,
            ]
        totals = components @ self.weights

        ranked = []
        for i, (agent, load, _) in enumerate(eligible):
            bonus = LANGUAGE_BONUS if language_match(agent, ticket) else 0.0
            workload, perf, availability, skill, history = (round(float(v), 6) for v in components[i])
            ranked.append(ScoreBreakdown(
                agent_id=agent.agent_id,
                workload=workload,
                performance=perf,
                availability=availability,
                skill=skill,
                history=history,
                language_bonus=bonus,
                total=round(float(totals[i]) + bonus, 6),
                weighted_load=load,
            ))
        ranked.sort(key=lambda s: (-s.total, s.weighted_load, s.agent_id))
        return ranked
