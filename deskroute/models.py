"""Data models for the assignment engine."""

from datetime import datetime, time, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from uuid import uuid4
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator

from deskroute.config import PRIORITY_WEIGHTS


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    """Offset-less timestamps are taken as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return PRIORITY_ORDER.index(self)


PRIORITY_ORDER = [Priority.LOW, Priority.MEDIUM, Priority.HIGH, Priority.URGENT]

# Day names used by office hours, business calendars and day_of_week rules (Monday first).
WEEKDAYS = ["mon", "tue", "wed", "thu", "fri", "sat", "sun"]


class TicketStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"


OPEN_STATUSES = (TicketStatus.OPEN, TicketStatus.IN_PROGRESS)


# --- Tickets ---


class Ticket(BaseModel):
    """A help-desk ticket as seen by the assignment engine."""

    ticket_id: str = Field(..., description="Unique ticket identifier")
    title: str = Field(default="", description="Ticket title")
    description: str = Field(default="", description="Ticket body/description")
    requester_id: Optional[str] = Field(None, description="Customer who opened the ticket")
    priority: Priority = Priority.MEDIUM
    category: str = Field(default="General", description="Category name or id")
    subcategory: Optional[str] = None
    language: Optional[str] = Field(None, description="Detected language code (e.g. 'en')")
    created_at: datetime = Field(default_factory=utcnow)
    status: TicketStatus = TicketStatus.OPEN
    assigned_agent_id: Optional[str] = None
    assigned_at: Optional[datetime] = None
    response_due: Optional[datetime] = None
    resolution_due: Optional[datetime] = None
    first_response_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    satisfaction_rating: Optional[float] = Field(None, ge=1.0, le=5.0)

    @field_validator(
        "created_at", "assigned_at", "response_due", "resolution_due", "first_response_at", "resolved_at"
    )
    @classmethod
    def normalize_to_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v) if v is not None else None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def weight(self) -> float:
        """Priority weight this ticket contributes to its assignee's workload."""
        return priority_weight(self.priority)


def priority_weight(priority: Priority) -> float:
    return PRIORITY_WEIGHTS[Priority(priority).value]


# --- Agent directory ---


class AgentRole(str, Enum):
    AGENT = "agent"
    ADMIN = "admin"


class OfficeHours(BaseModel):
    """Declared working window; overnight windows (start > end) wrap past midnight."""

    start: time = time(9, 0)
    end: time = time(17, 0)
    days: list[str] = Field(default_factory=lambda: ["mon", "tue", "wed", "thu", "fri"])
    timezone: str = "UTC"

    @field_validator("days")
    @classmethod
    def check_days(cls, v: list[str]) -> list[str]:
        days = [d.strip().lower()[:3] for d in v]
        unknown = [d for d, norm in zip(v, days) if norm not in WEEKDAYS]
        if unknown:
            raise ValueError(f"unknown day(s) {unknown}")
        return days

    @field_validator("timezone")
    @classmethod
    def check_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown time zone {v!r}") from None
        return v


class Agent(BaseModel):
    """An agent record owned by the user-management directory (read-only here)."""

    agent_id: str = Field(..., description="Unique agent identifier")
    display_name: str = Field(default="", description="Display name")
    role: AgentRole = AgentRole.AGENT
    active: bool = Field(default=True, description="False when the account is explicitly disabled")
    available: bool = Field(default=True, description="Agent-controlled availability flag")
    skills: list[str] = Field(default_factory=list)
    languages: list[str] = Field(default_factory=lambda: ["en"])
    groups: list[str] = Field(default_factory=list)
    office_hours: Optional[OfficeHours] = Field(None, description="None means no declared window")
    capacity: Optional[float] = Field(None, gt=0, description="Weighted-load ceiling; defaults to CAPACITY_CEILING")


class AgentPerformance(BaseModel):
    """Rolling performance metrics for one agent."""

    agent_id: str
    resolution_rate: float = Field(..., ge=0.0, le=1.0)
    satisfaction: float = Field(..., ge=0.0, le=5.0)
    resolved_count: int = 0
    assigned_count: int = 0


# --- Assignment rules ---


class ConditionField(str, Enum):
    PRIORITY = "priority"
    CATEGORY = "category"
    SUBCATEGORY = "subcategory"
    KEYWORD = "keyword"
    TIME_OF_DAY = "time_of_day"
    DAY_OF_WEEK = "day_of_week"


class RuleCondition(BaseModel):
    """One (field, operator, value) test. Field/operator are strings so bad rules can be stored and reported."""

    field: str
    operator: str
    value: Any = None


class CandidateFilter(BaseModel):
    """Restricts the scoring pool; every non-empty criterion must hold."""

    agent_ids: list[str] = Field(default_factory=list)
    groups: list[str] = Field(default_factory=list)
    skills: list[str] = Field(default_factory=list)
    languages: list[str] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.agent_ids or self.groups or self.skills or self.languages)


class ForceAssign(BaseModel):
    kind: Literal["force_assign"] = "force_assign"
    target: str = Field(..., description="Agent id or group name")
    target_type: Literal["agent", "group"] = "agent"


class RestrictPool(BaseModel):
    kind: Literal["restrict_pool"] = "restrict_pool"
    filter: CandidateFilter


class Defer(BaseModel):
    kind: Literal["defer"] = "defer"


RuleAction = Annotated[Union[ForceAssign, RestrictPool, Defer], Field(discriminator="kind")]


class AssignmentRule(BaseModel):
    """An admin-configured condition -> action rule. Lower priority value evaluates first."""

    rule_id: str = Field(default_factory=lambda: uuid4().hex)
    name: str = ""
    description: str = ""
    priority: int = 100
    enabled: bool = True
    conditions: list[RuleCondition] = Field(default_factory=list)
    action: RuleAction = Field(default_factory=Defer)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("created_at", "updated_at")
    @classmethod
    def normalize_to_utc(cls, v: datetime) -> datetime:
        return as_utc(v)


class AssignmentRuleInput(BaseModel):
    """Payload accepted by the rule configuration API."""

    name: str = ""
    description: str = ""
    priority: int = 100
    enabled: bool = True
    conditions: list[RuleCondition] = Field(default_factory=list)
    action: RuleAction = Field(default_factory=Defer)


class RuleOutcome(BaseModel):
    """Result of rule evaluation: the action to take and the rule that produced it (if any)."""

    action: RuleAction = Field(default_factory=Defer)
    rule_id: Optional[str] = None
    rule_name: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.rule_id is not None


# --- SLA ---

WILDCARD_CATEGORY = "*"


class SLAPolicy(BaseModel):
    """Response/resolution budgets for a (priority, category) pair; category '*' matches any."""

    priority: Priority
    category: str = WILDCARD_CATEGORY
    response_hours: float
    resolution_hours: float
    warning_threshold: int = Field(default=75, ge=1, le=100, description="Percent of budget that triggers a warning")

    @property
    def key(self) -> str:
        return f"{self.priority.value}:{self.category}"


class SLAState(str, Enum):
    OK = "ok"
    WARNING = "warning"
    OVERDUE = "overdue"
    MET = "met"


class SLAStatus(BaseModel):
    ticket_id: str
    response: SLAState
    resolution: SLAState
    response_due: Optional[datetime] = None
    resolution_due: Optional[datetime] = None


# --- Scoring and audit ---


class ScoreBreakdown(BaseModel):
    """Per-candidate score components, each in [0, 1], plus bonus and total."""

    agent_id: str
    workload: float
    performance: float
    availability: float
    skill: float
    history: float
    language_bonus: float = 0.0
    total: float
    weighted_load: float


class DecisionPath(str, Enum):
    RULE = "rule"
    SCORING = "scoring"
    MANUAL = "manual"
    REBALANCE = "rebalance"
    UNASSIGNED = "unassigned"


class AssignmentDecision(BaseModel):
    """Immutable audit record explaining why a ticket ended up with an agent (or with none)."""

    decision_id: str = Field(default_factory=lambda: uuid4().hex)
    ticket_id: str
    agent_id: Optional[str] = None
    previous_agent_id: Optional[str] = None
    path: DecisionPath
    rule_id: Optional[str] = None
    scores: list[ScoreBreakdown] = Field(default_factory=list)
    reason: str = ""
    created_at: datetime = Field(default_factory=utcnow)

    model_config = {"frozen": True}


class AssignmentStatus(str, Enum):
    ASSIGNED = "assigned"
    UNASSIGNED = "unassigned"


class AssignmentResult(BaseModel):
    status: AssignmentStatus
    ticket_id: str
    agent_id: Optional[str] = None
    response_due: Optional[datetime] = None
    resolution_due: Optional[datetime] = None
    decision: AssignmentDecision

    @property
    def assigned(self) -> bool:
        return self.status == AssignmentStatus.ASSIGNED


# --- Rebalancing ---


class RebalanceScope(BaseModel):
    agent_ids: Optional[list[str]] = Field(None, description="Limit to these agents; None = all active agents")
    dry_run: bool = Field(default=False, description="Propose moves without writing")
    max_moves: Optional[int] = Field(None, ge=0)


class RebalanceMove(BaseModel):
    ticket_id: str
    from_agent_id: str
    to_agent_id: str
    weight: float
    executed: bool = False


class RebalanceReport(BaseModel):
    moves: list[RebalanceMove] = Field(default_factory=list)
    overloaded: list[str] = Field(default_factory=list)
    underloaded: list[str] = Field(default_factory=list)
    stddev_before: float = 0.0
    stddev_after: float = 0.0
    skipped: dict[str, str] = Field(default_factory=dict, description="ticket_id -> reason")
    dry_run: bool = False
    started_at: datetime = Field(default_factory=utcnow)


# --- Lifecycle events (consumed) ---


class TicketCreated(BaseModel):
    ticket: Ticket


class TicketReassigned(BaseModel):
    ticket_id: str
    reason: str = "reassignment requested"


class ManualAssignment(BaseModel):
    agent_id: str
    reason: str = "manual assignment"
