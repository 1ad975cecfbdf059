"""Configuration for the assignment engine, read from environment variables."""

import json
import os

from pydantic import BaseModel, Field, model_validator

REDIS_URL: str = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
REDIS_CONN_TIMEOUT: int = int(os.environ.get("REDIS_CONN_TIMEOUT", "5"))
# "redis" in production; "memory" keeps all state in-process (tests, single-node demos).
STORE_BACKEND: str = os.environ.get("STORE_BACKEND", "redis")
# Optional: Slack/Discord-style webhook receiving notification events; no-op if unset.
WEBHOOK_URL: str = os.environ.get("WEBHOOK_URL", "")
ADMIN_RECIPIENT: str = os.environ.get("ADMIN_RECIPIENT", "admins")

# --- Scoring ---
CAPACITY_CEILING: float = float(os.environ.get("CAPACITY_CEILING", "10"))
SKILL_BASELINE: float = float(os.environ.get("SKILL_BASELINE", "0.3"))
LANGUAGE_BONUS: float = float(os.environ.get("LANGUAGE_BONUS", "0.05"))
# Score for an agent flagged available but outside declared office hours.
PARTIAL_AVAILABILITY_CREDIT: float = float(os.environ.get("PARTIAL_AVAILABILITY_CREDIT", "0.5"))
NEUTRAL_SCORE: float = 0.5

PRIORITY_WEIGHTS: dict[str, float] = {
    "urgent": 3.0,
    "high": 2.0,
    "medium": 1.5,
    "low": 1.0,
}

# --- Performance metrics ---
PERFORMANCE_WINDOW_DAYS: int = int(os.environ.get("PERFORMANCE_WINDOW_DAYS", "30"))
DEFAULT_RESOLUTION_RATE: float = 0.8
DEFAULT_SATISFACTION: float = 4.0

# --- External reads ---
PROVIDER_TIMEOUT_SECONDS: float = float(os.environ.get("PROVIDER_TIMEOUT_SECONDS", "2.0"))

# --- Rules ---
RULE_CACHE_TTL_SECONDS: int = int(os.environ.get("RULE_CACHE_TTL_SECONDS", "300"))

# --- SLA ---
# Calendar time by default; "true" consumes budgets only inside business hours.
SLA_BUSINESS_HOURS_ONLY: bool = os.environ.get("SLA_BUSINESS_HOURS_ONLY", "false").lower() in ("1", "true", "yes")
BUSINESS_TIMEZONE: str = os.environ.get("BUSINESS_TIMEZONE", "UTC")
BUSINESS_HOURS_START: str = os.environ.get("BUSINESS_HOURS_START", "09:00")
BUSINESS_HOURS_END: str = os.environ.get("BUSINESS_HOURS_END", "18:00")
BUSINESS_DAYS: list[str] = os.environ.get("BUSINESS_DAYS", "mon,tue,wed,thu,fri").split(",")
SLA_WARNING_THRESHOLD: int = int(os.environ.get("SLA_WARNING_THRESHOLD", "75"))

# (response_hours, resolution_hours) used when no policy row matches.
DEFAULT_SLA_HOURS: dict[str, tuple[float, float]] = {
    "urgent": (1.0, 4.0),
    "high": (2.0, 8.0),
    "medium": (4.0, 24.0),
    "low": (8.0, 48.0),
}

# --- Rebalancer ---
REBALANCE_OVERLOAD_THRESHOLD: float = float(os.environ.get("REBALANCE_OVERLOAD_THRESHOLD", "6"))
REBALANCE_UNDERLOAD_THRESHOLD: float = float(os.environ.get("REBALANCE_UNDERLOAD_THRESHOLD", "3"))
REBALANCE_TARGET_STDDEV: float = float(os.environ.get("REBALANCE_TARGET_STDDEV", "1.0"))
REBALANCE_MAX_MOVES: int = int(os.environ.get("REBALANCE_MAX_MOVES", "20"))
REBALANCE_LOCK_TTL_SECONDS: int = int(os.environ.get("REBALANCE_LOCK_TTL_SECONDS", "300"))
REBALANCE_INTERVAL_MINUTES: int = int(os.environ.get("REBALANCE_INTERVAL_MINUTES", "15"))


class ScoringWeights(BaseModel):
    """Weights of the five scoring components; must sum to 1 (within tolerance)."""

    workload: float = Field(default=0.25, ge=0.0, le=1.0)
    performance: float = Field(default=0.25, ge=0.0, le=1.0)
    availability: float = Field(default=0.20, ge=0.0, le=1.0)
    skill: float = Field(default=0.15, ge=0.0, le=1.0)
    history: float = Field(default=0.15, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_total(self) -> "ScoringWeights":
        total = self.workload + self.performance + self.availability + self.skill + self.history
        if abs(total - 1.0) > 0.01:
            raise ValueError(f"scoring weights must sum to 1.0, got {total:.3f}")
        return self

    def as_vector(self) -> list[float]:
        """Weights in component order: workload, performance, availability, skill, history."""
        return [self.workload, self.performance, self.availability, self.skill, self.history]


def load_scoring_weights(raw: str | None = None) -> ScoringWeights:
    """Parse SCORING_WEIGHTS (JSON object) or return the defaults."""
    raw = os.environ.get("SCORING_WEIGHTS", "") if raw is None else raw
    if not raw.strip():
        return ScoringWeights()
    return ScoringWeights.model_validate(json.loads(raw))


SCORING_WEIGHTS: ScoringWeights = load_scoring_weights()
